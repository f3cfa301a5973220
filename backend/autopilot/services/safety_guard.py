"""
Safety Guard — run-scoped gating of every mutation.

The RunContext is built once after the gate check and handed to every
reconciler and to the executor. Nothing in it changes during a run.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from autopilot.models import (
    ConfigSnapshot, IntentKind, LiveCampaign, LiveState, NEGATIVE_KINDS, RunMode,
)
from autopilot.utils import AutopilotError

logger = logging.getLogger(__name__)

# Used when the tenant config carries no reserved list of its own
DEFAULT_RESERVED_KEYWORDS = ("proofkit", "brand", "competitor", "important")


class GateViolation(AutopilotError):
    """The promote gate could not be evaluated for this snapshot."""
    pass


def evaluate_promote_gate(config: ConfigSnapshot, tenant_id: str) -> None:
    """
    Raise GateViolation when mutations for this snapshot cannot be gated safely:
    the snapshot belongs to another tenant, or promote is on without a label
    marker (touched entities could not be recognised on the next run).
    """
    if config.tenant_id != tenant_id:
        raise GateViolation(
            f"Config tenant {config.tenant_id!r} does not match requested tenant {tenant_id!r}",
            {"tenant": tenant_id, "config_tenant": config.tenant_id},
        )
    if config.promote and not config.label_marker.strip():
        raise GateViolation(
            "PROMOTE is enabled but no label marker is configured",
            {"tenant": tenant_id},
        )


@dataclass(frozen=True)
class SafetyGuard:
    promote_active: bool
    neg_guard_active: bool
    reserved_keywords: tuple[str, ...]
    exclusions: dict = field(default_factory=dict)
    canary_label: Optional[str] = None

    @classmethod
    def for_run(cls, config: ConfigSnapshot, mode: RunMode) -> "SafetyGuard":
        preview = mode in (RunMode.PREVIEW, RunMode.IDEMPOTENCY_TEST)
        promote_active = config.promote and not preview and mode != RunMode.IDEMPOTENCY_TEST
        reserved = tuple(k.lower() for k in config.reserved_keywords if k.strip())
        if not reserved:
            reserved = DEFAULT_RESERVED_KEYWORDS
        return cls(
            promote_active=promote_active,
            neg_guard_active=promote_active,
            reserved_keywords=reserved,
            exclusions=dict(config.exclusions),
            canary_label=config.canary_label_filter or None,
        )

    def allow(self, kind: IntentKind) -> bool:
        if kind in NEGATIVE_KINDS:
            return self.neg_guard_active
        return self.promote_active

    def is_reserved(self, term: str) -> bool:
        """Case-insensitive substring match against the reserved list."""
        text = (term or "").lower()
        return any(r in text for r in self.reserved_keywords)

    def is_excluded_campaign(self, campaign_name: str) -> bool:
        """True only for campaigns excluded as a whole."""
        return campaign_name in self.exclusions and self.exclusions[campaign_name] is None

    def is_excluded_ad_group(self, campaign_name: str, ad_group_name: str) -> bool:
        if campaign_name not in self.exclusions:
            return False
        ad_groups = self.exclusions[campaign_name]
        return ad_groups is None or ad_group_name in ad_groups

    def in_scope(self, campaign: LiveCampaign) -> bool:
        if self.is_excluded_campaign(campaign.name):
            return False
        if self.canary_label and self.canary_label not in campaign.labels:
            return False
        return True


@dataclass
class LabelSet:
    """
    Entities carrying the label marker, seeded from live state and
    extended by the executor after each successful apply. Passed forward
    so later families see labels written earlier in the same run.
    """
    marker: str
    entities: set = field(default_factory=set)
    labelled_ad_groups: set = field(default_factory=set)

    @classmethod
    def from_live(cls, live: LiveState, marker: str) -> "LabelSet":
        labels = cls(marker=marker)
        for c in live.campaigns:
            if marker in c.labels:
                labels.entities.add(("campaign", c.id))
        for ag in live.ad_groups:
            if marker in ag.labels:
                labels.entities.add(("ad_group", ag.id))
        for ad in live.ads:
            if marker in ad.labels:
                labels.entities.add(("ad", ad.id))
                labels.labelled_ad_groups.add(ad.ad_group_id)
        return labels

    def add(self, entity_type: str, entity_id: str, ad_group_id: Optional[str] = None) -> None:
        self.entities.add((entity_type, entity_id))
        if entity_type == "ad" and ad_group_id:
            self.labelled_ad_groups.add(ad_group_id)

    def has(self, entity_type: str, entity_id: str) -> bool:
        return (entity_type, entity_id) in self.entities

    def ad_group_has_labelled_ad(self, ad_group_id: str) -> bool:
        return ad_group_id in self.labelled_ad_groups


@dataclass(frozen=True)
class RunContext:
    """Everything a reconciler or the executor may consult. Never mutated."""
    tenant_id: str
    mode: RunMode
    config: ConfigSnapshot
    guard: SafetyGuard

    @classmethod
    def build(cls, config: ConfigSnapshot, mode: RunMode) -> "RunContext":
        guard = SafetyGuard.for_run(config, mode)
        logger.info(
            f"Guards for {config.tenant_id}: mode={mode.value} promote={config.promote} "
            f"promote_active={guard.promote_active} reserved={len(guard.reserved_keywords)} "
            f"exclusions={len(guard.exclusions)} canary={guard.canary_label or '-'}"
        )
        return cls(tenant_id=config.tenant_id, mode=mode, config=config, guard=guard)

    @property
    def preview(self) -> bool:
        return self.mode != RunMode.PRODUCTION

    @property
    def label_marker(self) -> str:
        return self.config.label_marker

    def campaigns_in_scope(self, live: LiveState) -> list[LiveCampaign]:
        return [c for c in live.campaigns if self.guard.in_scope(c)]
