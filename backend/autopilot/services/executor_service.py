"""
Mutation Executor — applies or plans each intent exactly once.

Every intent lands in the run's MutationLog as planned, applied or failed.
Platform errors are caught per intent and never abort the run.
"""

import logging
from typing import Optional

from autopilot.models import (
    IntentKind, KindCounts, MutationIntent, MutationStatus,
)
from autopilot.platform_client import AdsPlatformClient
from autopilot.services.safety_guard import LabelSet, RunContext
from autopilot.utils import AutopilotError, Result, truncate, utcnow

logger = logging.getLogger(__name__)

LABELLED_ENTITY_TYPES = ("campaign", "ad_group", "ad")


class MutationError(AutopilotError):
    """A single platform call failed for one intent."""
    pass


class MutationLog:
    """Append-only per-run ledger keyed by intent id."""

    def __init__(self, mode: str = ""):
        self.mode = mode
        self._entries: list[dict] = []
        self._by_id: dict[str, dict] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, intent_id: str) -> bool:
        return intent_id in self._by_id

    def get(self, intent_id: str) -> Optional[dict]:
        return self._by_id.get(intent_id)

    def record(
        self,
        intent: MutationIntent,
        status: MutationStatus,
        error: Optional[AutopilotError] = None,
        result: Optional[str] = None,
    ) -> dict:
        intent_id = intent.intent_id
        if intent_id in self._by_id:
            raise ValueError(f"Intent {intent_id} already recorded")
        entry = {
            "intent_id": intent_id,
            "type": intent.kind.value,
            "target": str(intent.target),
            "entity_type": intent.target.entity_type,
            "entity_id": intent.target.entity_id,
            "before": intent.before,
            "after": intent.after,
            "reason": intent.reason,
            "status": status.value,
            "error": error.message if error else None,
            "result": result,
            "timestamp": utcnow().isoformat(),
            "mode": self.mode,
        }
        self._entries.append(entry)
        self._by_id[intent_id] = entry
        return entry

    @property
    def entries(self) -> list[dict]:
        return list(self._entries)

    def counts(self) -> dict[str, KindCounts]:
        counts: dict[str, KindCounts] = {}
        for e in self._entries:
            c = counts.setdefault(e["type"], KindCounts())
            if e["status"] == MutationStatus.PLANNED.value:
                c.planned += 1
            elif e["status"] == MutationStatus.APPLIED.value:
                c.applied += 1
            else:
                c.failed += 1
        return counts

    def lines(self) -> list[str]:
        """Human-readable run-log lines."""
        out = []
        for e in self._entries:
            line = f"MUTATION_{e['status'].upper()}: {e['type']} {e['target']} → {e['after']!r}"
            if e["error"]:
                line += f" ! {truncate(e['error'])}"
            out.append(line)
        return out


class MutationExecutor:
    """Dispatches intents to the platform client behind the run's safety guard."""

    def __init__(
        self,
        client: AdsPlatformClient,
        ctx: RunContext,
        log: MutationLog,
        labels: LabelSet,
    ):
        self.client = client
        self.ctx = ctx
        self.log = log
        self.labels = labels

    async def execute(self, intent: MutationIntent) -> Result[bool]:
        """
        Result value is True when the platform was mutated.
        A repeated intent returns its recorded outcome without a platform call.
        """
        recorded = self.log.get(intent.intent_id)
        if recorded is not None:
            if recorded["status"] == MutationStatus.FAILED.value:
                return Result.failure(MutationError(recorded["error"] or "failed", {"intent_id": intent.intent_id}))
            return Result.success(recorded["status"] == MutationStatus.APPLIED.value, duplicate=True)

        if not self.ctx.guard.allow(intent.kind):
            self.log.record(intent, MutationStatus.PLANNED)
            tag = "PREVIEW" if self.ctx.preview else "PROMOTE=FALSE"
            logger.info(f"Planned [{tag}]: {intent.describe()}")
            return Result.success(False)

        try:
            created_id = await self._apply(intent)
        except Exception as e:
            error = MutationError(
                f"{intent.kind.value} failed for {intent.target}: {e}",
                {"intent_id": intent.intent_id, "kind": intent.kind.value, "target": str(intent.target)},
            )
            self.log.record(intent, MutationStatus.FAILED, error=error)
            logger.error(error.message)
            return Result.failure(error)

        self.log.record(intent, MutationStatus.APPLIED, result=created_id)
        logger.info(f"Applied: {intent.describe()}")
        await self._label(intent, created_id)
        return Result.success(True)

    async def execute_all(self, intents: list[MutationIntent]) -> list[Result[bool]]:
        results = []
        for intent in intents:
            results.append(await self.execute(intent))
        return results

    async def _apply(self, intent: MutationIntent) -> Optional[str]:
        client = self.client
        target = intent.target
        after = intent.after
        kind = intent.kind

        if kind in (IntentKind.BUDGET_CHANGE, IntentKind.CAMPAIGN_BUDGET_CHANGE):
            await client.set_campaign_budget(target.entity_id, float(after))
        elif kind == IntentKind.BIDDING_STRATEGY_CHANGE:
            await client.set_bidding_strategy(target.entity_id, after["strategy"], after.get("cpc_ceiling"))
        elif kind == IntentKind.AD_SCHEDULE_ADD:
            await client.add_ad_schedule(target.entity_id, list(after))
        elif kind == IntentKind.MASTER_NEGATIVE_ADD:
            await client.add_list_negative(target.name, after)
        elif kind == IntentKind.NEGATIVE_LIST_ATTACH:
            await client.attach_negative_list(target.entity_id, after)
        elif kind == IntentKind.ADGROUP_NEGATIVE_ADD:
            await client.add_ad_group_negative(target.entity_id, after, "EXACT")
        elif kind == IntentKind.RSA_CREATE:
            return await client.create_responsive_search_ad(
                target.entity_id, after["final_url"], list(after["headlines"]), list(after["descriptions"])
            )
        elif kind == IntentKind.AUDIENCE_ATTACH:
            await client.attach_audience(target.entity_id, after["list_id"], after["mode"], after.get("bid_modifier"))
        elif kind == IntentKind.AUDIENCE_DETACH:
            await client.detach_audience(target.entity_id, after["list_id"])
        elif kind == IntentKind.ADGROUP_PAUSE:
            await client.pause_ad_group(target.entity_id)
        elif kind == IntentKind.BID_MODIFIER_CHANGE:
            await client.set_ad_group_bid_modifier(target.entity_id, float(after))
        else:
            raise MutationError(f"No handler for {kind.value}")
        return None

    async def _label(self, intent: MutationIntent, created_id: Optional[str]) -> None:
        """Mark the touched entity; a failed label never fails the intent."""
        marker = self.labels.marker
        if intent.kind == IntentKind.RSA_CREATE:
            entity_type, entity_id = "ad", created_id
        else:
            entity_type, entity_id = intent.target.entity_type, intent.target.entity_id
        if not marker or not entity_id or entity_type not in LABELLED_ENTITY_TYPES:
            return
        if self.labels.has(entity_type, entity_id):
            return
        try:
            await self.client.apply_label(entity_type, entity_id, marker)
        except Exception as e:
            logger.warning(f"Label guard: could not label {entity_type} {entity_id}: {e}")
            return
        ad_group_id = intent.target.entity_id if entity_type == "ad" else None
        self.labels.add(entity_type, entity_id, ad_group_id=ad_group_id)
