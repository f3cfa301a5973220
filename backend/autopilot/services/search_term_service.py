"""
Search Term Service — mines recent search-term performance for waste.

Terms with clicks but zero conversions and spend at or above the cost
threshold become exact ad-group negatives, through the same path as the
waste map. All rows are returned for the metrics harvest.
"""

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Optional

from autopilot.models import LiveState, MutationIntent, SearchTermRow
from autopilot.services.negative_keyword_service import ad_group_negative_intents
from autopilot.services.safety_guard import RunContext
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)


def is_wasted(row: SearchTermRow, min_clicks: int, min_cost: float) -> bool:
    return row.clicks >= min_clicks and row.conversions == 0 and row.cost >= min_cost


def find_wasted_terms(rows, min_clicks: int, min_cost: float) -> "OrderedDict[str, list[str]]":
    """ad_group_id → lower-cased wasted terms, in report order."""
    bucket: "OrderedDict[str, list[str]]" = OrderedDict()
    for row in rows:
        if row.ad_group_id and is_wasted(row, min_clicks, min_cost):
            bucket.setdefault(row.ad_group_id, []).append(row.search_term.lower())
    return bucket


def mine_search_terms(
    ctx: RunContext,
    live: LiveState,
    planned: Optional[set] = None,
    harvested_at: Optional[datetime] = None,
) -> tuple[list[MutationIntent], list[list]]:
    """Return (negative intents, harvest rows)."""
    config = ctx.config
    planned = planned if planned is not None else set()
    harvested_at = harvested_at or utcnow()
    rows = [row.to_row(harvested_at) for row in live.search_terms]

    intents = []
    bucket = find_wasted_terms(live.search_terms, config.st_min_clicks, config.st_min_cost)
    for ad_group_id, terms in bucket.items():
        ad_group = live.ad_group_by_id(ad_group_id)
        if ad_group is None:
            continue
        campaign = live.campaign_by_id(ad_group.campaign_id)
        if campaign is None or not ctx.guard.in_scope(campaign):
            continue
        if ctx.guard.is_excluded_ad_group(campaign.name, ad_group.name):
            continue
        intents.extend(ad_group_negative_intents(
            ctx, campaign, ad_group, terms, planned, source="search-term mining",
        ))

    logger.info(
        f"Search-term mining: {len(live.search_terms)} rows, "
        f"{sum(len(t) for t in bucket.values())} wasted, {len(intents)} new negative(s)"
    )
    return intents, rows
