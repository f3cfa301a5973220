"""
Reporting Service — run-log buffer and RunReport assembly.
"""

import logging
from datetime import datetime
from typing import Optional

from autopilot.models import LiveState, RunMode, RunReport, RunState
from autopilot.services.executor_service import MutationLog
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)


class RunLog:
    """Timestamped run-log lines, uploaded as [timestamp, message] rows."""

    def __init__(self):
        self.lines: list[list] = []

    def add(self, message: str) -> None:
        self.lines.append([utcnow().isoformat(), message])
        logger.debug(message)

    def extend(self, messages: list[str]) -> None:
        for m in messages:
            self.add(m)


def harvest_metrics(live: Optional[LiveState], harvested_at: datetime) -> list[list]:
    if live is None:
        return []
    return [row.to_row(harvested_at) for row in live.metrics]


def build_report(
    tenant_id: str,
    mode: RunMode,
    status: RunState,
    states: list[RunState],
    started_at: datetime,
    log: Optional[MutationLog] = None,
    metrics: Optional[list[list]] = None,
    search_terms: Optional[list[list]] = None,
    run_log: Optional[RunLog] = None,
    errors: Optional[list[dict]] = None,
) -> RunReport:
    report = RunReport(
        tenant_id=tenant_id,
        mode=mode,
        status=status,
        states=list(states),
        started_at=started_at,
        finished_at=utcnow(),
        counts=log.counts() if log is not None else {},
        mutations=log.entries if log is not None else [],
        metrics=metrics or [],
        search_terms=search_terms or [],
        run_logs=run_log.lines if run_log is not None else [],
        errors=errors or [],
    )
    logger.info(
        f"Run report {tenant_id} [{mode.value}] {status.value}: "
        f"{report.planned_count} planned, {report.applied_count} applied, {report.failed_count} failed, "
        f"{len(report.metrics)} metric rows, {len(report.search_terms)} search-term rows"
    )
    return report


def summarize(report: RunReport) -> dict:
    """Compact dict for HTTP responses and logs."""
    return {
        "tenant": report.tenant_id,
        "mode": report.mode.value,
        "status": report.status.value,
        "states": [s.value for s in report.states],
        "planned": report.planned_count,
        "applied": report.applied_count,
        "failed": report.failed_count,
        "counts": {kind: c.model_dump() for kind, c in report.counts.items()},
        "errors": report.errors,
    }
