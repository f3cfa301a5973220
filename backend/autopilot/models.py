"""
Autopilot — Data Models
Typed desired state (ConfigSnapshot), read-only live-state projections,
mutation intents, pacing signals and the run report.
All maps are validated when the snapshot is built, never inside reconcilers.
"""

import enum
import json
import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator,
)

from autopilot.utils import stable_hash, utcnow

logger = logging.getLogger(__name__)

DEFAULT_BUSINESS_DAYS = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY")
DEFAULT_LABEL_MARKER = "PROOFKIT_AUTOMATED"
DEFAULT_MASTER_LIST_NAME = "Proofkit • Master Negatives"

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off", ""}


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class RunMode(str, enum.Enum):
    PRODUCTION = "PRODUCTION"
    PREVIEW = "PREVIEW"
    IDEMPOTENCY_TEST = "IDEMPOTENCY_TEST"


class RunState(str, enum.Enum):
    LOADING_CONFIG = "LOADING_CONFIG"
    GATE_CHECK = "GATE_CHECK"
    GUARDS_INIT = "GUARDS_INIT"
    RECONCILE = "RECONCILE"
    REPORT = "REPORT"
    DISABLED = "DISABLED"
    GATE_BLOCKED = "GATE_BLOCKED"
    COMPLETE = "COMPLETE"


class IntentKind(str, enum.Enum):
    BUDGET_CHANGE = "BUDGET_CHANGE"
    BIDDING_STRATEGY_CHANGE = "BIDDING_STRATEGY_CHANGE"
    AD_SCHEDULE_ADD = "AD_SCHEDULE_ADD"
    MASTER_NEGATIVE_ADD = "MASTER_NEGATIVE_ADD"
    NEGATIVE_LIST_ATTACH = "NEGATIVE_LIST_ATTACH"
    ADGROUP_NEGATIVE_ADD = "ADGROUP_NEGATIVE_ADD"
    RSA_CREATE = "RSA_CREATE"
    AUDIENCE_ATTACH = "AUDIENCE_ATTACH"
    AUDIENCE_DETACH = "AUDIENCE_DETACH"
    ADGROUP_PAUSE = "ADGROUP_PAUSE"
    CAMPAIGN_BUDGET_CHANGE = "CAMPAIGN_BUDGET_CHANGE"
    BID_MODIFIER_CHANGE = "BID_MODIFIER_CHANGE"


NEGATIVE_KINDS = frozenset({
    IntentKind.MASTER_NEGATIVE_ADD,
    IntentKind.NEGATIVE_LIST_ATTACH,
    IntentKind.ADGROUP_NEGATIVE_ADD,
})


class AudienceMode(str, enum.Enum):
    OBSERVE = "OBSERVE"
    TARGET = "TARGET"
    EXCLUDE = "EXCLUDE"


class PaceAction(str, enum.Enum):
    PAUSE = "PAUSE"
    REDUCE_BUDGET = "REDUCE_BUDGET"
    INCREASE_BUDGET = "INCREASE_BUDGET"
    MONITOR_MARGIN = "MONITOR_MARGIN"
    MAINTAIN = "MAINTAIN"


class MutationStatus(str, enum.Enum):
    PLANNED = "planned"
    APPLIED = "applied"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════════════
#  DESIRED STATE
# ══════════════════════════════════════════════════════════════════════

def _coerce_flag(value: Any) -> bool:
    """Backend flags arrive as booleans or as "TRUE"/"false" strings."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f"not a boolean flag: {value!r}")


def _string_list(value: Any) -> tuple:
    """Accept a list or a comma/newline separated string; strip and drop blanks."""
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.replace("\n", ",").split(",")
    return tuple(str(v).strip() for v in value if v is not None and str(v).strip())


class RsaContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    headlines: tuple[str, ...] = Field((), validation_alias=AliasChoices("headlines", "H"))
    descriptions: tuple[str, ...] = Field((), validation_alias=AliasChoices("descriptions", "D"))

    @field_validator("headlines", "descriptions", mode="before")
    @classmethod
    def _listify(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,)
        return tuple(str(item) for item in v if item is not None)


class AudienceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_list_id: str = Field(validation_alias=AliasChoices("user_list_id", "list_id", "listId"))
    mode: AudienceMode = AudienceMode.OBSERVE
    bid_modifier: Optional[float] = None

    @field_validator("user_list_id", mode="before")
    @classmethod
    def _list_id(cls, v):
        text = str(v).strip() if v is not None else ""
        if not text:
            raise ValueError("user_list_id is required")
        return text

    @field_validator("mode", mode="before")
    @classmethod
    def _mode(cls, v):
        if isinstance(v, AudienceMode):
            return v
        text = str(v or "OBSERVE").strip().upper()
        if text not in AudienceMode.__members__:
            logger.warning(f"Invalid audience mode {v!r}; falling back to OBSERVE")
            return AudienceMode.OBSERVE
        return AudienceMode(text)

    @field_validator("bid_modifier", mode="before")
    @classmethod
    def _bid_modifier(cls, v):
        if v is None or v == "":
            return None
        try:
            value = float(v)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric bid modifier {v!r}")
            return None
        if value <= 0:
            logger.warning(f"Ignoring non-positive bid modifier {v!r}")
            return None
        return value


class ConfigSnapshot(BaseModel):
    """
    Desired state for one tenant, immutable for the duration of a run.
    Accepts both snake_case keys and the config backend's legacy keys
    (PROMOTE, BUDGET_CAPS, RSA_MAP, AUDIENCE_MAP, …).
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    tenant_id: str = Field(validation_alias=AliasChoices("tenant_id", "tenant"))
    enabled: bool = False
    promote: bool = Field(False, validation_alias=AliasChoices("promote", "PROMOTE"))
    label_marker: str = Field(DEFAULT_LABEL_MARKER, validation_alias=AliasChoices("label_marker", "label"))

    # Budgets and bidding
    daily_budget_cap_default: Optional[float] = None
    budget_caps: dict[str, float] = Field(
        default_factory=dict, validation_alias=AliasChoices("budget_caps", "BUDGET_CAPS"))
    cpc_ceiling_default: Optional[float] = None
    cpc_ceilings: dict[str, float] = Field(
        default_factory=dict, validation_alias=AliasChoices("cpc_ceilings", "CPC_CEILINGS"))

    # Schedule
    add_business_hours_if_none: bool = False
    business_days: tuple[str, ...] = Field(
        DEFAULT_BUSINESS_DAYS, validation_alias=AliasChoices("business_days", "business_days_csv"))
    business_start: str = "09:00"
    business_end: str = "18:00"

    # Negatives
    master_negative_list_name: str = Field(
        DEFAULT_MASTER_LIST_NAME,
        validation_alias=AliasChoices("master_negative_list_name", "master_neg_list_name"))
    master_negative_keywords: tuple[str, ...] = Field(
        (), validation_alias=AliasChoices("master_negative_keywords", "MASTER_NEGATIVES"))
    waste_negative_map: dict[str, dict[str, tuple[str, ...]]] = Field(
        default_factory=dict, validation_alias=AliasChoices("waste_negative_map", "WASTE_NEGATIVE_MAP"))
    reserved_keywords: tuple[str, ...] = Field(
        (), validation_alias=AliasChoices("reserved_keywords", "RESERVED_KEYWORDS"))

    # Scope
    exclusions: dict[str, Optional[tuple[str, ...]]] = Field(
        default_factory=dict, validation_alias=AliasChoices("exclusions", "EXCLUSIONS"))
    canary_label_filter: Optional[str] = Field(
        None, validation_alias=AliasChoices("canary_label_filter", "CANARY_LABEL_FILTER"))

    # Creative
    rsa_default: RsaContent = Field(
        default_factory=RsaContent, validation_alias=AliasChoices("rsa_default", "RSA_DEFAULT"))
    rsa_overrides: dict[str, dict[str, RsaContent]] = Field(
        default_factory=dict, validation_alias=AliasChoices("rsa_overrides", "RSA_MAP"))
    default_final_url: Optional[str] = None

    # Audiences
    feature_audience_attach: bool = Field(
        True, validation_alias=AliasChoices("feature_audience_attach", "FEATURE_AUDIENCE_ATTACH"))
    audience_min_size: int = Field(
        1000, validation_alias=AliasChoices("audience_min_size", "AUDIENCE_MIN_SIZE"))
    audience_map: dict[str, dict[str, AudienceSpec]] = Field(
        default_factory=dict, validation_alias=AliasChoices("audience_map", "AUDIENCE_MAP"))

    # Search-term mining
    st_lookback: str = "LAST_7_DAYS"
    st_min_clicks: int = 2
    st_min_cost: float = 2.82

    # Pacing
    pacing_bid_modifiers: bool = Field(
        False, validation_alias=AliasChoices("pacing_bid_modifiers", "PACING_BID_MODIFIERS"))

    @field_validator(
        "enabled", "promote", "add_business_hours_if_none",
        "feature_audience_attach", "pacing_bid_modifiers", mode="before",
    )
    @classmethod
    def _flags(cls, v):
        return _coerce_flag(v)

    @field_validator("business_days", mode="before")
    @classmethod
    def _days(cls, v):
        days = tuple(d.upper() for d in _string_list(v))
        return days or DEFAULT_BUSINESS_DAYS

    @field_validator("master_negative_keywords", "reserved_keywords", mode="before")
    @classmethod
    def _terms(cls, v):
        return _string_list(v)

    @field_validator("budget_caps", "cpc_ceilings", mode="before")
    @classmethod
    def _amount_map(cls, v):
        if not v:
            return {}
        return {str(k): amount for k, amount in dict(v).items() if amount is not None and amount != ""}

    @field_validator("waste_negative_map", mode="before")
    @classmethod
    def _waste_map(cls, v):
        cleaned = {}
        for campaign, ad_groups in (v or {}).items():
            if not isinstance(ad_groups, dict):
                logger.warning(f"Dropping malformed waste-negative entry for campaign {campaign!r}")
                continue
            cleaned[str(campaign)] = {str(ag): _string_list(terms) for ag, terms in ad_groups.items()}
        return cleaned

    @field_validator("exclusions", mode="before")
    @classmethod
    def _exclusions(cls, v):
        """
        campaign → None excludes the whole campaign; campaign → names only
        those ad groups. Accepts {ag: true} maps and lists of names.
        """
        cleaned = {}
        for campaign, value in (v or {}).items():
            if value is False:
                continue
            if value is True or value is None or value == [] or value == {}:
                cleaned[str(campaign)] = None
            elif isinstance(value, dict):
                names = tuple(str(ag) for ag, flag in value.items() if flag)
                cleaned[str(campaign)] = names or None
            else:
                cleaned[str(campaign)] = _string_list(value) or None
        return cleaned

    @field_validator("rsa_overrides", mode="before")
    @classmethod
    def _rsa_map(cls, v):
        cleaned = {}
        for campaign, ad_groups in (v or {}).items():
            if not isinstance(ad_groups, dict):
                logger.warning(f"Dropping malformed RSA override for campaign {campaign!r}")
                continue
            cleaned[str(campaign)] = {
                str(ag): content for ag, content in ad_groups.items() if isinstance(content, (dict, RsaContent))
            }
        return cleaned

    @field_validator("audience_map", mode="before")
    @classmethod
    def _audience_map(cls, v):
        """Drop entries that cannot be attached instead of failing the snapshot."""
        cleaned = {}
        for campaign, ad_groups in (v or {}).items():
            if not isinstance(ad_groups, dict):
                logger.warning(f"Dropping malformed audience entry for campaign {campaign!r}")
                continue
            rows = {}
            for ag, row in ad_groups.items():
                if isinstance(row, AudienceSpec):
                    rows[str(ag)] = row
                    continue
                if not isinstance(row, dict):
                    logger.warning(f"Dropping malformed audience row {campaign!r} › {ag!r}")
                    continue
                list_id = row.get("user_list_id") or row.get("list_id") or row.get("listId")
                if list_id is None or not str(list_id).strip():
                    logger.warning(f"Missing user_list_id for {campaign!r} › {ag!r}; entry dropped")
                    continue
                rows[str(ag)] = row
            cleaned[str(campaign)] = rows
        return cleaned

    @model_validator(mode="after")
    def _non_negative_amounts(self) -> "ConfigSnapshot":
        for label, amount in (
            ("daily_budget_cap_default", self.daily_budget_cap_default),
            ("cpc_ceiling_default", self.cpc_ceiling_default),
            *((f"budget_caps[{k}]", a) for k, a in self.budget_caps.items()),
            *((f"cpc_ceilings[{k}]", a) for k, a in self.cpc_ceilings.items()),
        ):
            if amount is not None and amount < 0:
                raise ValueError(f"{label} must not be negative (got {amount})")
        if self.audience_min_size < 0:
            raise ValueError("audience_min_size must not be negative")
        return self

    def effective_budget_cap(self, campaign_name: str) -> Optional[float]:
        """Campaign-specific override, else the tenant default."""
        if campaign_name in self.budget_caps:
            return self.budget_caps[campaign_name]
        return self.daily_budget_cap_default

    def effective_cpc_ceiling(self, campaign_name: str) -> Optional[float]:
        if campaign_name in self.cpc_ceilings:
            return self.cpc_ceilings[campaign_name]
        return self.cpc_ceiling_default

    def rsa_override(self, campaign_name: str, ad_group_name: str) -> Optional[RsaContent]:
        return self.rsa_overrides.get(campaign_name, {}).get(ad_group_name)


# ══════════════════════════════════════════════════════════════════════
#  LIVE STATE (read-only projections of the platform)
# ══════════════════════════════════════════════════════════════════════

class LiveCampaign(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    status: str = "ENABLED"
    budget_amount: float = 0.0
    bidding_strategy: Optional[str] = None
    cpc_ceiling: Optional[float] = None
    has_schedule: bool = False
    labels: tuple[str, ...] = ()
    negative_list_ids: tuple[str, ...] = ()


class LiveAdGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    campaign_id: str
    status: str = "ENABLED"
    negative_keywords: tuple[str, ...] = ()
    bid_modifier: Optional[float] = None
    labels: tuple[str, ...] = ()


class LiveAd(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    ad_group_id: str
    headlines: tuple[str, ...] = ()
    descriptions: tuple[str, ...] = ()
    final_url: Optional[str] = None
    labels: tuple[str, ...] = ()
    is_dynamic_search_ad: bool = False
    status: str = "ENABLED"


class NegativeKeywordList(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    terms: tuple[str, ...] = ()


class AudienceAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    list_id: str
    campaign_id: str
    mode: AudienceMode = AudienceMode.OBSERVE
    bid_modifier: Optional[float] = None


class SearchTermRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    campaign_name: str = ""
    ad_group_id: str = ""
    ad_group_name: str = ""
    search_term: str = ""
    clicks: int = 0
    cost: float = 0.0
    conversions: float = 0.0

    def to_row(self, harvested_at: datetime) -> list:
        return [
            harvested_at.isoformat(), self.campaign_name, self.ad_group_name,
            self.search_term, self.clicks, self.cost, self.conversions,
        ]


class MetricsRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str  # campaign | ad_group
    campaign_name: str = ""
    ad_group_name: str = ""
    entity_id: str = ""
    name: str = ""
    clicks: int = 0
    cost: float = 0.0
    conversions: float = 0.0
    impressions: int = 0
    ctr: float = 0.0

    def to_row(self, harvested_at: datetime) -> list:
        return [
            harvested_at.isoformat(), self.level, self.campaign_name, self.ad_group_name,
            self.entity_id, self.name, self.clicks, self.cost, self.conversions,
            self.impressions, self.ctr,
        ]


class LiveState(BaseModel):
    """Everything the reconcilers see for one tenant, read once per run."""
    model_config = ConfigDict(frozen=True)

    campaigns: tuple[LiveCampaign, ...] = ()
    ad_groups: tuple[LiveAdGroup, ...] = ()
    ads: tuple[LiveAd, ...] = ()
    negative_lists: tuple[NegativeKeywordList, ...] = ()
    audience_attachments: tuple[AudienceAttachment, ...] = ()
    audience_sizes: dict[str, Optional[int]] = Field(default_factory=dict)
    search_terms: tuple[SearchTermRow, ...] = ()
    metrics: tuple[MetricsRow, ...] = ()
    read_errors: dict[str, str] = Field(default_factory=dict)

    def campaign_by_name(self, name: str) -> Optional[LiveCampaign]:
        return next((c for c in self.campaigns if c.name == name), None)

    def campaign_by_id(self, campaign_id: str) -> Optional[LiveCampaign]:
        return next((c for c in self.campaigns if c.id == campaign_id), None)

    def ad_group_by_id(self, ad_group_id: str) -> Optional[LiveAdGroup]:
        return next((ag for ag in self.ad_groups if ag.id == ad_group_id), None)

    def ad_groups_for(self, campaign_id: str) -> list[LiveAdGroup]:
        return [ag for ag in self.ad_groups if ag.campaign_id == campaign_id]

    def ads_for(self, ad_group_id: str) -> list[LiveAd]:
        return [ad for ad in self.ads if ad.ad_group_id == ad_group_id]

    def negative_list_named(self, name: str) -> Optional[NegativeKeywordList]:
        return next((nl for nl in self.negative_lists if nl.name == name), None)

    def attachments_for(self, campaign_id: str) -> list[AudienceAttachment]:
        return [a for a in self.audience_attachments if a.campaign_id == campaign_id]


# ══════════════════════════════════════════════════════════════════════
#  INTENTS
# ══════════════════════════════════════════════════════════════════════

class EntityRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_type: str  # campaign | ad_group | negative_list
    entity_id: Optional[str] = None
    name: str = ""
    campaign_name: Optional[str] = None

    def __str__(self) -> str:
        if self.entity_type == "ad_group" and self.campaign_name:
            return f"{self.campaign_name} › {self.name}"
        return self.name or f"{self.entity_type}:{self.entity_id}"


class MutationIntent(BaseModel):
    """A single desired change. Created by a reconciler, consumed once by the executor."""
    model_config = ConfigDict(frozen=True)

    kind: IntentKind
    target: EntityRef
    before: Any = None
    after: Any = None
    reason: str = ""

    @property
    def intent_id(self) -> str:
        return stable_hash(
            self.kind.value,
            self.target.entity_type,
            self.target.entity_id or self.target.name,
            json.dumps(self.after, sort_keys=True, default=str),
        )

    def describe(self) -> str:
        return f"{self.kind.value} {self.target}: {self.before!r} → {self.after!r}"


# ══════════════════════════════════════════════════════════════════════
#  PACING SIGNALS
# ══════════════════════════════════════════════════════════════════════

class PaceSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    ad_group_id: str = Field(validation_alias=AliasChoices("ad_group_id", "adGroupId"))
    action: PaceAction = PaceAction.MAINTAIN
    pace_signal: float = Field(1.0, validation_alias=AliasChoices("pace_signal", "paceSignal"))
    reason: str = ""
    min_stock: Optional[float] = Field(None, validation_alias=AliasChoices("min_stock", "minStock"))
    avg_margin: Optional[float] = Field(None, validation_alias=AliasChoices("avg_margin", "avgMargin"))

    @field_validator("ad_group_id", mode="before")
    @classmethod
    def _ad_group_id(cls, v):
        if v is None or not str(v).strip():
            raise ValueError("ad_group_id is required")
        return str(v).strip()

    @field_validator("action", mode="before")
    @classmethod
    def _action(cls, v):
        if isinstance(v, PaceAction):
            return v
        text = str(v or "MAINTAIN").strip().upper()
        if text not in PaceAction.__members__:
            logger.warning(f"Unknown pacing action {v!r}; treating as MAINTAIN")
            return PaceAction.MAINTAIN
        return PaceAction(text)


# ══════════════════════════════════════════════════════════════════════
#  RUN REPORT
# ══════════════════════════════════════════════════════════════════════

class KindCounts(BaseModel):
    planned: int = 0
    applied: int = 0
    failed: int = 0


class RunReport(BaseModel):
    tenant_id: str
    mode: RunMode
    status: RunState
    states: list[RunState] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    counts: dict[str, KindCounts] = Field(default_factory=dict)
    mutations: list[dict] = Field(default_factory=list)
    metrics: list[list] = Field(default_factory=list)
    search_terms: list[list] = Field(default_factory=list)
    run_logs: list[list] = Field(default_factory=list)
    errors: list[dict] = Field(default_factory=list)

    @property
    def planned_count(self) -> int:
        return sum(c.planned for c in self.counts.values())

    @property
    def applied_count(self) -> int:
        return sum(c.applied for c in self.counts.values())

    @property
    def failed_count(self) -> int:
        return sum(c.failed for c in self.counts.values())

    @property
    def intent_count(self) -> int:
        return len(self.mutations)
