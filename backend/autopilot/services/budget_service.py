"""
Budget reconciler — caps daily budgets, never raises them.
Raising spend is the pacing consumer's job.
"""

import logging

from autopilot.models import EntityRef, IntentKind, LiveState, MutationIntent
from autopilot.services.safety_guard import RunContext

logger = logging.getLogger(__name__)


def reconcile_budgets(ctx: RunContext, live: LiveState) -> list[MutationIntent]:
    intents = []
    for campaign in ctx.campaigns_in_scope(live):
        cap = ctx.config.effective_budget_cap(campaign.name)
        if cap is None:
            continue
        if campaign.budget_amount > cap:
            intents.append(MutationIntent(
                kind=IntentKind.BUDGET_CHANGE,
                target=EntityRef(entity_type="campaign", entity_id=campaign.id, name=campaign.name),
                before=campaign.budget_amount,
                after=cap,
                reason=f"Daily budget {campaign.budget_amount:.2f} exceeds cap {cap:.2f}",
            ))
    logger.debug(f"Budget reconcile: {len(intents)} intent(s)")
    return intents
