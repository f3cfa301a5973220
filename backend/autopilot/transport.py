"""
Backend Transport — config fetch, pacing-signal fetch and report upload.
Every call returns a Result; nothing here raises into the orchestrator.
Calls are bounded by the configured timeout and never retried within a run.
"""

import json
import logging
import time
from typing import Optional

import httpx
from pydantic import ValidationError

from autopilot.config import Settings, get_settings
from autopilot.models import ConfigSnapshot, PaceSignal, RunReport
from autopilot.services.pacing_service import compute_pace_signals
from autopilot.utils import AutopilotError, Result, chunked, truncate

logger = logging.getLogger(__name__)

USER_AGENT = "Autopilot-Reconciler/1.0"


class TransportError(AutopilotError):
    """Config/signal fetch or report upload failed."""
    pass


class ConfigError(AutopilotError):
    """The backend answered but the snapshot could not be validated."""
    pass


class BackendClient:
    """
    Talks to the config/metrics backend for one or more tenants.
    `transport` lets tests plug in an httpx.MockTransport.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        chunk_size: int = 500,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "BackendClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.backend_url,
            api_key=settings.backend_api_key,
            timeout=settings.http_timeout_seconds,
            chunk_size=settings.report_chunk_size,
            **kwargs,
        )

    @property
    def headers(self) -> dict[str, str]:
        h = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _get_json(self, path: str, tenant_id: str) -> dict:
        async with self._client() as client:
            response = await client.get(path, params={"tenant": tenant_id})
        if response.status_code < 200 or response.status_code >= 300:
            raise TransportError(
                f"{path} HTTP {response.status_code}: {truncate(response.text)}",
                {"tenant": tenant_id, "path": path, "status_code": response.status_code},
            )
        try:
            return response.json() or {}
        except ValueError:
            raise TransportError(
                f"{path} parse error: {truncate(response.text)}",
                {"tenant": tenant_id, "path": path},
            )

    # ── Config ───────────────────────────────────────────────────────

    async def fetch_config(self, tenant_id: str) -> Result[Optional[ConfigSnapshot]]:
        """
        GET /config?tenant=… → {"config": {...}}.
        A 2xx answer with no config is a successful "no config" (value None).
        """
        try:
            payload = await self._get_json("/config", tenant_id)
        except TransportError as e:
            logger.warning(f"Config fetch failed for {tenant_id}: {e}")
            return Result.failure(e)
        except httpx.HTTPError as e:
            logger.warning(f"Config fetch error for {tenant_id}: {e}")
            return Result.failure(TransportError(f"Config fetch error: {e}", {"tenant": tenant_id}))

        raw = payload.get("config") if isinstance(payload, dict) else None
        if not raw:
            return Result.success(None)
        if not isinstance(raw, dict):
            return Result.failure(ConfigError("Config payload is not an object", {"tenant": tenant_id}))

        data = dict(raw)
        data.setdefault("tenant_id", data.get("tenant") or tenant_id)
        try:
            return Result.success(ConfigSnapshot.model_validate(data))
        except ValidationError as e:
            logger.warning(f"Invalid config for {tenant_id}: {e.error_count()} validation error(s)")
            return Result.failure(ConfigError(
                "Config failed validation",
                {"tenant": tenant_id, "errors": [err["msg"] for err in e.errors()][:10]},
            ))

    # ── Pacing signals ───────────────────────────────────────────────

    async def fetch_pace_signals(self, tenant_id: str) -> Result[Optional[list[PaceSignal]]]:
        """
        GET /pace-signals?tenant=… → {"signals": [...]} or raw inventory
        {"margins": {sku: m}, "stock": {sku: n}, "ad_group_skus": {ag: [sku]}}.
        Absence (value None) disables pacing for this run only.
        """
        try:
            payload = await self._get_json("/pace-signals", tenant_id)
        except TransportError as e:
            logger.warning(f"Pace signal fetch failed for {tenant_id}: {e}")
            return Result.failure(e)
        except httpx.HTTPError as e:
            logger.warning(f"Pace signal fetch error for {tenant_id}: {e}")
            return Result.failure(TransportError(f"Pace signal fetch error: {e}", {"tenant": tenant_id}))

        if not isinstance(payload, dict):
            return Result.success(None)

        if payload.get("signals") is not None:
            signals = []
            for row in payload["signals"]:
                try:
                    signals.append(PaceSignal.model_validate(row))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed pace signal {row!r}: {e.error_count()} error(s)")
            return Result.success(signals)

        if payload.get("ad_group_skus"):
            margins = payload.get("margins") or {}
            stock = payload.get("stock") or {}
            skus = payload["ad_group_skus"]
            if not all(isinstance(part, dict) for part in (margins, stock, skus)):
                return Result.failure(TransportError(
                    "Raw inventory payload must map margins, stock and ad_group_skus as objects",
                    {"tenant": tenant_id, "path": "/pace-signals"},
                ))
            try:
                signals = compute_pace_signals(margins=margins, stock=stock, ad_group_skus=skus)
            except (TypeError, ValueError, ValidationError) as e:
                logger.warning(f"Malformed raw inventory for {tenant_id}: {e}")
                return Result.failure(TransportError(
                    f"Malformed raw inventory: {truncate(str(e))}",
                    {"tenant": tenant_id, "path": "/pace-signals"},
                ))
            return Result.success(signals)

        return Result.success(None)

    # ── Report upload ────────────────────────────────────────────────

    def build_chunks(self, report: RunReport, max_mutations: int = 50) -> list[dict]:
        """
        Split metrics and search-term rows into payloads of at most
        `chunk_size` rows each. Run logs ride on the first chunk only.
        """
        metric_chunks = list(chunked(report.metrics, self.chunk_size))
        term_chunks = list(chunked(report.search_terms, self.chunk_size))
        total = max(len(metric_chunks), len(term_chunks), 1)
        nonce = int(time.time() * 1000)

        run_logs = [list(line) for line in report.run_logs]
        if report.mutations:
            run_logs.append([
                report.finished_at.isoformat() if report.finished_at else "",
                "MUTATION_LOG: " + json.dumps({
                    "mode": report.mode.value,
                    "mutationCount": len(report.mutations),
                    "mutations": report.mutations[:max_mutations],
                }, default=str),
            ])

        payloads = []
        for i in range(total):
            payloads.append({
                "nonce": nonce + i,
                "chunk": i + 1,
                "chunks": total,
                "metrics": metric_chunks[i] if i < len(metric_chunks) else [],
                "search_terms": term_chunks[i] if i < len(term_chunks) else [],
                "run_logs": run_logs if i == 0 else [],
            })
        return payloads

    async def upload_report(self, tenant_id: str, report: RunReport, max_mutations: int = 50) -> Result[int]:
        """
        POST /metrics?tenant=… once per chunk. A failed chunk is logged and
        the remaining chunks are still sent. Value = chunks accepted.
        """
        payloads = self.build_chunks(report, max_mutations=max_mutations)
        sent = 0
        failures = []

        async with self._client() as client:
            for payload in payloads:
                try:
                    response = await client.post("/metrics", params={"tenant": tenant_id}, json=payload)
                    if response.status_code < 200 or response.status_code >= 300:
                        raise TransportError(
                            f"metrics chunk {payload['chunk']}/{payload['chunks']} HTTP "
                            f"{response.status_code}: {truncate(response.text)}",
                            {"tenant": tenant_id, "chunk": payload["chunk"]},
                        )
                    sent += 1
                except TransportError as e:
                    logger.error(f"Report upload failed: {e}")
                    failures.append(e)
                except httpx.HTTPError as e:
                    logger.error(f"Report upload error on chunk {payload['chunk']}: {e}")
                    failures.append(TransportError(str(e), {"tenant": tenant_id, "chunk": payload["chunk"]}))

        logger.info(f"Report upload for {tenant_id}: {sent}/{len(payloads)} chunk(s) accepted")
        if failures:
            return Result.failure(
                TransportError(
                    f"{len(failures)} of {len(payloads)} report chunk(s) failed",
                    {"tenant": tenant_id, "failed_chunks": [f.context.get("chunk") for f in failures]},
                ),
                sent=sent,
            )
        return Result.success(sent)

    # ── Health ───────────────────────────────────────────────────────

    async def check_connection(self) -> bool:
        """Test backend reachability."""
        try:
            async with self._client() as client:
                response = await client.get("/health")
            return 200 <= response.status_code < 300
        except httpx.HTTPError as e:
            logger.error(f"Backend connection failed: {e}")
            return False
