"""
Run Orchestrator — one linear reconciliation pass for one tenant.

LOADING_CONFIG → GATE_CHECK → GUARDS_INIT → RECONCILE → REPORT → COMPLETE
with early terminals DISABLED (no/disabled config) and GATE_BLOCKED.

Families reconcile in a fixed order and each family's intents are executed
before the next family plans, so labels written early are visible later.
"""

import logging
from typing import Callable, Optional

from autopilot.config import Settings, get_settings
from autopilot.models import (
    ConfigSnapshot, LiveState, MutationIntent, RunMode, RunReport, RunState,
)
from autopilot.platform_client import AdsPlatformClient
from autopilot.services.audience_service import reconcile_audiences
from autopilot.services.bidding_service import reconcile_bidding
from autopilot.services.budget_service import reconcile_budgets
from autopilot.services.executor_service import MutationExecutor, MutationLog
from autopilot.services.live_state_service import LiveStateReader, has_core_errors
from autopilot.services.negative_keyword_service import reconcile_negatives
from autopilot.services.pacing_service import reconcile_pacing
from autopilot.services.reporting_service import RunLog, build_report, harvest_metrics
from autopilot.services.rsa_service import reconcile_rsa
from autopilot.services.safety_guard import GateViolation, LabelSet, RunContext, evaluate_promote_gate
from autopilot.services.schedule_service import reconcile_schedules
from autopilot.services.search_term_service import mine_search_terms
from autopilot.transport import BackendClient
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)


class _RunState:
    """Visited states for one run; a state is never entered twice."""

    def __init__(self, run_log: RunLog):
        self.states: list[RunState] = []
        self.run_log = run_log

    def enter(self, state: RunState) -> None:
        if state in self.states:
            raise RuntimeError(f"State {state.value} re-entered")
        self.states.append(state)
        self.run_log.add(f"STATE: {state.value}")


class RunOrchestrator:
    def __init__(
        self,
        client: AdsPlatformClient,
        backend: BackendClient,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.backend = backend
        self.settings = settings or get_settings()

    async def run(self, tenant_id: str, mode: RunMode = RunMode.PRODUCTION, upload: bool = True) -> RunReport:
        started_at = utcnow()
        run_log = RunLog()
        machine = _RunState(run_log)
        errors: list[dict] = []
        logger.info(f"═══ Run start: {tenant_id} [{mode.value}] ═══")

        # ── LOADING_CONFIG ───────────────────────────────────────────
        machine.enter(RunState.LOADING_CONFIG)
        fetched = await self.backend.fetch_config(tenant_id)
        config: Optional[ConfigSnapshot] = fetched.value
        if not fetched.ok:
            errors.append(fetched.error.to_dict())
        if config is None or not config.enabled:
            reason = "config unavailable" if config is None else "enabled=false"
            run_log.add(f"Run disabled for {tenant_id}: {reason}")
            logger.info(f"Run disabled for {tenant_id}: {reason}")
            machine.enter(RunState.DISABLED)
            return build_report(tenant_id, mode, RunState.DISABLED, machine.states, started_at,
                                run_log=run_log, errors=errors)

        # ── GATE_CHECK ───────────────────────────────────────────────
        machine.enter(RunState.GATE_CHECK)
        try:
            evaluate_promote_gate(config, tenant_id)
        except GateViolation as e:
            logger.warning(f"Promote gate blocked run for {tenant_id}: {e}")
            run_log.add(f"! PROMOTE GATE: {e.message}")
            errors.append(e.to_dict())
            machine.enter(RunState.GATE_BLOCKED)
            report = build_report(tenant_id, mode, RunState.GATE_BLOCKED, machine.states, started_at,
                                  run_log=run_log, errors=errors)
            if upload:
                await self._upload(tenant_id, report)
            return report

        # ── GUARDS_INIT ──────────────────────────────────────────────
        machine.enter(RunState.GUARDS_INIT)
        ctx = RunContext.build(config, mode)
        run_log.extend([
            f"PROMOTE: {'ENABLED' if config.promote else 'DISABLED'}",
            f"NEG_GUARD: {'ACTIVE' if ctx.guard.neg_guard_active else 'INACTIVE'}",
            f"LABEL_GUARD: {config.label_marker}",
            f"PREVIEW_MODE: {'TRUE' if ctx.preview else 'FALSE'}",
            f"RUN_MODE: {mode.value}",
            f"RESERVED_KEYWORDS: [{', '.join(ctx.guard.reserved_keywords)}]",
        ])

        # ── RECONCILE ────────────────────────────────────────────────
        machine.enter(RunState.RECONCILE)
        log = MutationLog(mode=mode.value)
        harvested_at = utcnow()
        search_rows: list[list] = []
        live = await LiveStateReader(self.client).read(config)
        for family, message in live.read_errors.items():
            errors.append({"type": "PlatformError", "message": message, "context": {"read": family}})

        if has_core_errors(live):
            run_log.add("! Core live-state read failed; reconciliation skipped this run")
        else:
            search_rows = await self._reconcile(ctx, live, log, run_log, errors, harvested_at)

        # ── REPORT ───────────────────────────────────────────────────
        machine.enter(RunState.REPORT)
        run_log.extend(log.lines())
        machine.enter(RunState.COMPLETE)
        report = build_report(
            tenant_id, mode, RunState.COMPLETE, machine.states, started_at,
            log=log,
            metrics=harvest_metrics(live, harvested_at),
            search_terms=search_rows,
            run_log=run_log,
            errors=errors,
        )
        if upload:
            await self._upload(tenant_id, report)
        logger.info(
            f"═══ Run complete: {tenant_id} [{mode.value}] "
            f"{report.planned_count} planned / {report.applied_count} applied / {report.failed_count} failed ═══"
        )
        return report

    async def _reconcile(
        self,
        ctx: RunContext,
        live: LiveState,
        log: MutationLog,
        run_log: RunLog,
        errors: list[dict],
        harvested_at,
    ) -> list[list]:
        labels = LabelSet.from_live(live, ctx.label_marker)
        executor = MutationExecutor(self.client, ctx, log, labels)
        planned_negatives: set = set()
        planned_budgets: dict[str, float] = {}
        search_rows: list[list] = []

        async def family(name: str, plan: Callable[[], list[MutationIntent]]) -> list[MutationIntent]:
            try:
                intents = plan()
            except Exception as e:
                logger.exception(f"{name} reconcile failed")
                errors.append({"type": type(e).__name__, "message": str(e), "context": {"family": name}})
                run_log.add(f"! {name}: {e}")
                return []
            results = await executor.execute_all(intents)
            applied = sum(1 for r in results if r.ok and r.value)
            failed = sum(1 for r in results if not r.ok)
            run_log.add(f"• {name}: {len(intents)} intent(s), {applied} applied, {failed} failed")
            return intents

        budget_intents = await family("Budget", lambda: reconcile_budgets(ctx, live))
        for intent in budget_intents:
            planned_budgets[intent.target.entity_id] = intent.after

        await family("Bidding", lambda: reconcile_bidding(ctx, live))
        await family("Schedule", lambda: reconcile_schedules(ctx, live))
        await family("Negatives", lambda: reconcile_negatives(ctx, live, planned_negatives))

        if "search_terms" in live.read_errors:
            run_log.add("• SearchTermMining: skipped (read failed)")
        else:
            def mine():
                intents, rows = mine_search_terms(ctx, live, planned_negatives, harvested_at)
                search_rows.extend(rows)
                return intents
            await family("SearchTermMining", mine)

        await family("CreativeAssets", lambda: reconcile_rsa(ctx, live, labels))

        if "audiences" in live.read_errors:
            run_log.add("• AudienceAttachment: skipped (read failed)")
        else:
            await family("AudienceAttachment", lambda: reconcile_audiences(ctx, live))

        signals = await self.backend.fetch_pace_signals(ctx.tenant_id)
        if not signals.ok:
            errors.append(signals.error.to_dict())
            run_log.add("• Pacing: skipped (signal fetch failed)")
        elif signals.value is None:
            run_log.add("• Pacing: no signals this run")
        else:
            await family("Pacing", lambda: reconcile_pacing(ctx, live, signals.value, planned_budgets))

        return search_rows

    async def _upload(self, tenant_id: str, report: RunReport) -> None:
        result = await self.backend.upload_report(
            tenant_id, report, max_mutations=self.settings.run_log_mutation_cap
        )
        if not result.ok:
            report.errors.append(result.error.to_dict())

    async def run_idempotency_test(self, tenant_id: str, upload: bool = True) -> dict:
        """
        Two consecutive IDEMPOTENCY_TEST runs; passes when the second plans nothing.
        Only the second report is uploaded, with the verdict appended.
        """
        logger.info(f"=== STARTING IDEMPOTENCY TEST: {tenant_id} ===")
        first = await self.run(tenant_id, RunMode.IDEMPOTENCY_TEST, upload=False)
        second = await self.run(tenant_id, RunMode.IDEMPOTENCY_TEST, upload=False)
        passed = second.status == RunState.COMPLETE and second.intent_count == 0
        verdict = {
            "tenant": tenant_id,
            "passed": passed,
            "first_run_mutations": first.intent_count,
            "second_run_mutations": second.intent_count,
            "first_status": first.status.value,
            "second_status": second.status.value,
            "second_run_types": sorted({m["type"] for m in second.mutations}),
        }
        line = (
            f"IDEMPOTENCY_TEST: {'PASSED' if passed else 'FAILED'} "
            f"({first.intent_count} then {second.intent_count} mutation(s))"
        )
        second.run_logs.append([utcnow().isoformat(), line])
        logger.info(line)
        if upload:
            await self._upload(tenant_id, second)
        return verdict
