"""
Bidding reconciler — every in-scope campaign bids TARGET_SPEND with a CPC ceiling.
"""

import logging
from typing import Optional

from autopilot.models import EntityRef, IntentKind, LiveCampaign, LiveState, MutationIntent
from autopilot.services.safety_guard import RunContext

logger = logging.getLogger(__name__)

TARGET_STRATEGY = "TARGET_SPEND"


def _matches(campaign: LiveCampaign, ceiling: Optional[float]) -> bool:
    if (campaign.bidding_strategy or "").upper() != TARGET_STRATEGY:
        return False
    if ceiling is None:
        return True
    return campaign.cpc_ceiling is not None and abs(campaign.cpc_ceiling - ceiling) < 0.005


def reconcile_bidding(ctx: RunContext, live: LiveState) -> list[MutationIntent]:
    """
    Emits a BIDDING_STRATEGY_CHANGE only where the live strategy or ceiling
    differs from the desired one, so a converged account plans nothing.
    """
    intents = []
    for campaign in ctx.campaigns_in_scope(live):
        ceiling = ctx.config.effective_cpc_ceiling(campaign.name)
        if _matches(campaign, ceiling):
            continue
        after = {"strategy": TARGET_STRATEGY, "cpc_ceiling": ceiling}
        intents.append(MutationIntent(
            kind=IntentKind.BIDDING_STRATEGY_CHANGE,
            target=EntityRef(entity_type="campaign", entity_id=campaign.id, name=campaign.name),
            before={"strategy": campaign.bidding_strategy, "cpc_ceiling": campaign.cpc_ceiling},
            after=after,
            reason="Enforce TARGET_SPEND" + (f" with ceiling {ceiling:.2f}" if ceiling is not None else ""),
        ))
    logger.debug(f"Bidding reconcile: {len(intents)} intent(s)")
    return intents
