"""
Live State Service — reads the tenant's current platform truth once per run
and projects it into typed, read-only models.

Core families (campaigns, ad groups, ads, negative lists) are required for
reconciliation. Auxiliary families (audiences, search terms, performance)
only degrade their own feature when their read fails.
"""

import logging
from typing import Optional

from pydantic import BaseModel, ValidationError

from autopilot.models import (
    AudienceAttachment, ConfigSnapshot, LiveAd, LiveAdGroup, LiveCampaign, LiveState,
    MetricsRow, NegativeKeywordList, SearchTermRow,
)
from autopilot.platform_client import AdsPlatformClient
from autopilot.utils import safe_float, safe_int

logger = logging.getLogger(__name__)

CORE_FAMILIES = ("campaigns", "ad_groups", "ads", "negative_lists")


class LiveStateReader:
    """Reads campaigns, ad groups, ads, lists, audiences and the harvest rows."""

    def __init__(self, client: AdsPlatformClient):
        self.client = client

    async def read(self, config: ConfigSnapshot, include_search_terms: bool = True) -> LiveState:
        errors: dict[str, str] = {}

        campaigns = await self._read("campaigns", self.client.list_campaigns, LiveCampaign, errors)
        ad_groups = await self._read("ad_groups", self.client.list_ad_groups, LiveAdGroup, errors)
        ads = await self._read("ads", self.client.list_ads, LiveAd, errors)
        negative_lists = await self._read(
            "negative_lists", self.client.list_negative_keyword_lists, NegativeKeywordList, errors
        )

        attachments: list = []
        sizes: dict[str, Optional[int]] = {}
        if config.feature_audience_attach:
            attachments = await self._read(
                "audiences", self.client.list_audience_attachments, AudienceAttachment, errors
            )
            if "audiences" not in errors:
                sizes = await self._read_audience_sizes(config, attachments, errors)

        search_terms: list = []
        if include_search_terms:
            try:
                raw = await self.client.query_search_terms(config.st_lookback, config.st_min_clicks)
                search_terms = [r for r in (_search_term_row(row) for row in raw or []) if r]
            except Exception as e:
                logger.warning(f"Search term read failed: {e}")
                errors["search_terms"] = str(e)

        metrics: list = []
        try:
            raw = await self.client.query_performance(config.st_lookback)
            metrics = [r for r in (_metrics_row(row) for row in raw or []) if r]
        except Exception as e:
            logger.warning(f"Performance read failed: {e}")
            errors["metrics"] = str(e)

        state = LiveState(
            campaigns=tuple(campaigns),
            ad_groups=tuple(ad_groups),
            ads=tuple(ads),
            negative_lists=tuple(negative_lists),
            audience_attachments=tuple(attachments),
            audience_sizes=sizes,
            search_terms=tuple(search_terms),
            metrics=tuple(metrics),
            read_errors=errors,
        )
        logger.info(
            f"Live state for {config.tenant_id}: {len(campaigns)} campaigns, {len(ad_groups)} ad groups, "
            f"{len(ads)} ads, {len(negative_lists)} lists, {len(attachments)} audiences, "
            f"{len(search_terms)} search terms, {len(metrics)} metric rows"
            + (f", read errors: {sorted(errors)}" if errors else "")
        )
        return state

    async def _read(self, family: str, call, model: type[BaseModel], errors: dict) -> list:
        try:
            rows = await call()
        except Exception as e:
            logger.error(f"Live read of {family} failed: {e}")
            errors[family] = str(e)
            return []
        return _project(family, rows, model)

    async def _read_audience_sizes(
        self, config: ConfigSnapshot, attachments: list[AudienceAttachment], errors: dict
    ) -> dict[str, Optional[int]]:
        list_ids = {spec.user_list_id for groups in config.audience_map.values() for spec in groups.values()}
        list_ids.update(a.list_id for a in attachments)
        if not list_ids:
            return {}
        try:
            sizes = await self.client.get_audience_sizes(sorted(list_ids))
        except Exception as e:
            # Sizes unknown: audiences still attach, bid modifiers are withheld
            logger.warning(f"Audience size lookup failed: {e}")
            errors["audience_sizes"] = str(e)
            return {}
        return {str(k): (safe_int(v) if v is not None else None) for k, v in (sizes or {}).items()}


def has_core_errors(state: LiveState) -> bool:
    return any(family in state.read_errors for family in CORE_FAMILIES)


def _project(family: str, rows, model: type[BaseModel]) -> list:
    projected = []
    for row in rows or []:
        try:
            projected.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {family} row: {e.error_count()} validation error(s)")
    return projected


def _search_term_row(row: dict) -> Optional[SearchTermRow]:
    term = str(row.get("search_term") or row.get("query") or "").strip()
    if not term:
        return None
    return SearchTermRow(
        campaign_name=str(row.get("campaign_name") or ""),
        ad_group_id=str(row.get("ad_group_id") or ""),
        ad_group_name=str(row.get("ad_group_name") or ""),
        search_term=term,
        clicks=safe_int(row.get("clicks")),
        cost=safe_float(row.get("cost")),
        conversions=safe_float(row.get("conversions")),
    )


def _metrics_row(row: dict) -> Optional[MetricsRow]:
    level = str(row.get("level") or "").lower()
    if level not in ("campaign", "ad_group"):
        return None
    impressions = safe_int(row.get("impressions"))
    clicks = safe_int(row.get("clicks"))
    ctr = row.get("ctr")
    return MetricsRow(
        level=level,
        campaign_name=str(row.get("campaign_name") or ""),
        ad_group_name=str(row.get("ad_group_name") or ""),
        entity_id=str(row.get("id") or row.get("entity_id") or ""),
        name=str(row.get("name") or ""),
        clicks=clicks,
        cost=safe_float(row.get("cost")),
        conversions=safe_float(row.get("conversions")),
        impressions=impressions,
        ctr=safe_float(ctr) if ctr is not None else (clicks / impressions if impressions else 0.0),
    )
