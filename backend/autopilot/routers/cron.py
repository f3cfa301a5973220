"""
Cron / Scheduled Jobs — endpoints for the external scheduler.

The scheduler invokes one reconciliation run per tenant per call. Requests
carry CRON_SECRET either as `X-Cron-Secret: <secret>` or as
`Authorization: Bearer <secret>`.

The hosting process registers a platform client factory on
`app.state.platform_factory` (tenant id → AdsPlatformClient) at startup.
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from autopilot.config import get_settings
from autopilot.models import RunMode
from autopilot.platform_client import AdsPlatformClient
from autopilot.services.orchestrator_service import RunOrchestrator
from autopilot.services.reporting_service import summarize
from autopilot.transport import BackendClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])

PlatformFactory = Callable[[str], AdsPlatformClient]


def _get_cron_secret() -> str:
    return get_settings().cron_secret


async def _require_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    authorization: Optional[str] = Header(None),
) -> None:
    """Verify the request came from the scheduler with a valid secret."""
    secret = _get_cron_secret()
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


def get_platform_factory(request: Request) -> PlatformFactory:
    factory = getattr(request.app.state, "platform_factory", None)
    if factory is None:
        raise HTTPException(503, "Platform client not configured")
    return factory


def get_backend() -> BackendClient:
    return BackendClient.from_settings()


def _parse_mode(mode: Optional[str]) -> RunMode:
    text = (mode or get_settings().default_run_mode).strip().upper()
    if text not in RunMode.__members__:
        raise HTTPException(422, f"Unknown run mode {mode!r}; use PRODUCTION, PREVIEW or IDEMPOTENCY_TEST")
    return RunMode(text)


@router.post("/run/{tenant_id}")
async def cron_run(
    tenant_id: str,
    mode: Optional[str] = Query(None),
    _: None = Depends(_require_cron_secret),
    factory: PlatformFactory = Depends(get_platform_factory),
    backend: BackendClient = Depends(get_backend),
):
    """
    One reconciliation pass for `tenant_id`. Call from the scheduler:
    POST /api/cron/run/<tenant>?mode=PREVIEW
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    run_mode = _parse_mode(mode)
    try:
        orchestrator = RunOrchestrator(factory(tenant_id), backend)
        report = await orchestrator.run(tenant_id, run_mode)
    except Exception as e:
        logger.exception(f"Cron run failed for {tenant_id}")
        raise HTTPException(500, str(e))
    logger.info(f"Cron run {tenant_id} [{run_mode.value}] finished: {report.status.value}")
    return {"status": "ok", "result": summarize(report)}


@router.post("/idempotency-test/{tenant_id}")
async def cron_idempotency_test(
    tenant_id: str,
    _: None = Depends(_require_cron_secret),
    factory: PlatformFactory = Depends(get_platform_factory),
    backend: BackendClient = Depends(get_backend),
):
    """Two consecutive dry runs; the second must plan zero mutations."""
    try:
        orchestrator = RunOrchestrator(factory(tenant_id), backend)
        verdict = await orchestrator.run_idempotency_test(tenant_id)
    except Exception as e:
        logger.exception(f"Idempotency test failed for {tenant_id}")
        raise HTTPException(500, str(e))
    return {"status": "ok", "result": verdict}
