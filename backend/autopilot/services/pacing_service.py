"""
Pacing Service — turns profit/inventory pace signals into budget, pause
and bid-modifier intents.

Signals are usually computed upstream and fetched per run. When the backend
delivers raw SKU margin/stock data instead, `compute_pace_signals` derives
them here with the same rules.
"""

import logging
from typing import Optional

from autopilot.models import (
    EntityRef, IntentKind, LiveAdGroup, LiveState, MutationIntent, PaceAction, PaceSignal,
)
from autopilot.services.safety_guard import RunContext
from autopilot.utils import safe_float

logger = logging.getLogger(__name__)

# ── Signal thresholds ────────────────────────────────────────────────
OUT_OF_STOCK_THRESHOLD = 0
LOW_STOCK_THRESHOLD = 10
HIGH_MARGIN_THRESHOLD = 0.3
LOW_MARGIN_THRESHOLD = 0.1
MIN_MULTIPLIER = 0.1
MAX_MULTIPLIER = 2.0

# ── Budget bounds ────────────────────────────────────────────────────
MIN_BUDGET = 1.0
MAX_BUDGET = 100.0
HYSTERESIS = 0.05

MAX_MARGIN_BOOST = 0.4
MAX_BID_PACE = 1.5


# ══════════════════════════════════════════════════════════════════════
#  SIGNAL COMPUTATION
# ══════════════════════════════════════════════════════════════════════

def pace_multiplier(margin: float, min_stock: float) -> float:
    multiplier = 1.0
    if min_stock <= OUT_OF_STOCK_THRESHOLD:
        multiplier = MIN_MULTIPLIER
    elif min_stock <= LOW_STOCK_THRESHOLD:
        multiplier *= 0.3 + 0.7 * (min_stock / LOW_STOCK_THRESHOLD)
    else:
        multiplier *= 1.1

    if margin >= HIGH_MARGIN_THRESHOLD:
        multiplier *= 1.0 + (margin - HIGH_MARGIN_THRESHOLD) * 2
    elif margin <= LOW_MARGIN_THRESHOLD:
        multiplier *= 0.5 + (margin / LOW_MARGIN_THRESHOLD) * 0.5

    return max(MIN_MULTIPLIER, min(MAX_MULTIPLIER, multiplier))


def determine_action(margin: float, min_stock: float, signal: float) -> PaceAction:
    if min_stock <= OUT_OF_STOCK_THRESHOLD:
        return PaceAction.PAUSE
    if min_stock <= LOW_STOCK_THRESHOLD:
        return PaceAction.REDUCE_BUDGET
    if signal >= 1.5:
        return PaceAction.INCREASE_BUDGET
    if signal <= 0.5:
        return PaceAction.REDUCE_BUDGET
    if margin <= LOW_MARGIN_THRESHOLD:
        return PaceAction.MONITOR_MARGIN
    return PaceAction.MAINTAIN


def signal_reason(margin: float, min_stock: float, signal: float) -> str:
    reasons = []
    if min_stock <= OUT_OF_STOCK_THRESHOLD:
        reasons.append("Out of stock")
    elif min_stock <= LOW_STOCK_THRESHOLD:
        reasons.append(f"Low stock ({min_stock:g})")

    if margin >= HIGH_MARGIN_THRESHOLD:
        reasons.append(f"High margin ({margin * 100:.1f}%)")
    elif margin <= LOW_MARGIN_THRESHOLD:
        reasons.append(f"Low margin ({margin * 100:.1f}%)")

    if signal >= 1.5:
        reasons.append("Strong profit potential")
    elif signal <= 0.5:
        reasons.append("Poor profit outlook")

    return ", ".join(reasons) if reasons else "Normal conditions"


def compute_pace_signals(margins: dict, stock: dict, ad_group_skus: dict) -> list[PaceSignal]:
    """
    Aggregate SKU margin/stock per ad group (mean margin, minimum stock) and
    derive the pace signal. Sorted by signal, strongest first.
    """
    signals = []
    for ad_group_id, skus in ad_group_skus.items():
        if isinstance(skus, str):
            skus = [s.strip() for s in skus.split(",") if s.strip()]
        if not skus:
            continue
        # non-numeric values count as missing
        sku_margins = [safe_float(margins.get(sku)) for sku in skus]
        sku_stock = [safe_float(stock.get(sku)) for sku in skus]
        avg_margin = sum(sku_margins) / len(sku_margins)
        min_stock = min(sku_stock)

        value = pace_multiplier(avg_margin, min_stock)
        signals.append(PaceSignal(
            ad_group_id=str(ad_group_id),
            action=determine_action(avg_margin, min_stock, value),
            pace_signal=round(value, 3),
            reason=signal_reason(avg_margin, min_stock, value),
            min_stock=min_stock,
            avg_margin=round(avg_margin, 3),
        ))
    signals.sort(key=lambda s: s.pace_signal, reverse=True)
    return signals


# ══════════════════════════════════════════════════════════════════════
#  SIGNAL CONSUMPTION
# ══════════════════════════════════════════════════════════════════════

def paced_budget(
    action: PaceAction, current: float, pace: float, cap: Optional[float] = None
) -> Optional[float]:
    """
    New budget for a budget action, or None when hysteresis suppresses it.
    Increases never exceed `cap`. Hysteresis is measured on the final,
    unrounded change; only the returned amount is rounded.
    """
    if action == PaceAction.REDUCE_BUDGET:
        new_budget = max(current * max(pace, MIN_MULTIPLIER), MIN_BUDGET)
    elif action == PaceAction.INCREASE_BUDGET:
        new_budget = min(current * min(pace, MAX_MULTIPLIER), MAX_BUDGET)
        if cap is not None:
            new_budget = min(new_budget, cap)
            if new_budget <= current:
                return None
    else:
        return None
    if current <= 0 or abs(new_budget - current) / current < HYSTERESIS:
        return None
    return round(new_budget, 2)


def consume_signal(
    ctx: RunContext,
    live: LiveState,
    signal: PaceSignal,
    budgets: dict[str, float],
) -> Optional[MutationIntent]:
    """
    At most one intent per signal. `budgets` maps campaign id to the budget
    as already planned this run (after the budget reconciler).
    """
    ad_group = live.ad_group_by_id(signal.ad_group_id)
    if ad_group is None:
        logger.debug(f"Pace signal for unknown ad group {signal.ad_group_id}")
        return None
    campaign = live.campaign_by_id(ad_group.campaign_id)
    if campaign is None or not ctx.guard.in_scope(campaign):
        return None
    if ctx.guard.is_excluded_ad_group(campaign.name, ad_group.name):
        return None

    if signal.action == PaceAction.PAUSE:
        if ad_group.status == "PAUSED":
            return None
        return MutationIntent(
            kind=IntentKind.ADGROUP_PAUSE,
            target=EntityRef(
                entity_type="ad_group", entity_id=ad_group.id,
                name=ad_group.name, campaign_name=campaign.name,
            ),
            before=ad_group.status,
            after="PAUSED",
            reason=signal.reason or "Out of stock",
        )

    if signal.action not in (PaceAction.REDUCE_BUDGET, PaceAction.INCREASE_BUDGET):
        return None

    current = budgets.get(campaign.id, campaign.budget_amount)
    cap = ctx.config.effective_budget_cap(campaign.name)
    new_budget = paced_budget(signal.action, current, signal.pace_signal, cap)
    if new_budget is None:
        return None

    return MutationIntent(
        kind=IntentKind.CAMPAIGN_BUDGET_CHANGE,
        target=EntityRef(entity_type="campaign", entity_id=campaign.id, name=campaign.name),
        before=current,
        after=new_budget,
        reason=f"{signal.action.value} via ad group {ad_group.name} (pace {signal.pace_signal:g}): {signal.reason}",
    )


def margin_factor(margin: float) -> float:
    if margin >= HIGH_MARGIN_THRESHOLD:
        return 1.0 + min((margin - HIGH_MARGIN_THRESHOLD) * 2, MAX_MARGIN_BOOST)
    if margin <= LOW_MARGIN_THRESHOLD:
        return 0.5 + (max(margin, 0.0) / LOW_MARGIN_THRESHOLD) * 0.5
    return 1.0


def bid_modifier_intent(ad_group: LiveAdGroup, campaign_name: str, signal: PaceSignal) -> Optional[MutationIntent]:
    if signal.avg_margin is None or signal.action == PaceAction.PAUSE:
        return None
    modifier = margin_factor(signal.avg_margin) * min(signal.pace_signal, MAX_BID_PACE)
    modifier = round(max(MIN_MULTIPLIER, min(MAX_MULTIPLIER, modifier)), 3)
    current = ad_group.bid_modifier or 1.0
    if abs(modifier - current) / current <= HYSTERESIS:
        return None
    return MutationIntent(
        kind=IntentKind.BID_MODIFIER_CHANGE,
        target=EntityRef(
            entity_type="ad_group", entity_id=ad_group.id,
            name=ad_group.name, campaign_name=campaign_name,
        ),
        before=ad_group.bid_modifier,
        after=modifier,
        reason=f"Margin {signal.avg_margin * 100:.1f}% × pace {signal.pace_signal:g}",
    )


def reconcile_pacing(
    ctx: RunContext,
    live: LiveState,
    signals: Optional[list[PaceSignal]],
    planned_budgets: Optional[dict[str, float]] = None,
) -> list[MutationIntent]:
    if signals is None:
        logger.info("No pace signals this run; pacing skipped")
        return []

    budgets = dict(planned_budgets or {})
    paced_campaigns = set()
    intents = []

    for signal in signals:
        intent = consume_signal(ctx, live, signal, budgets)
        if intent is not None and intent.kind == IntentKind.CAMPAIGN_BUDGET_CHANGE:
            if intent.target.entity_id in paced_campaigns:
                intent = None
            else:
                paced_campaigns.add(intent.target.entity_id)
                budgets[intent.target.entity_id] = intent.after
        if intent is not None:
            intents.append(intent)

        if ctx.config.pacing_bid_modifiers:
            ad_group = live.ad_group_by_id(signal.ad_group_id)
            campaign = live.campaign_by_id(ad_group.campaign_id) if ad_group else None
            if ad_group is None or campaign is None or not ctx.guard.in_scope(campaign):
                continue
            if ctx.guard.is_excluded_ad_group(campaign.name, ad_group.name):
                continue
            modifier = bid_modifier_intent(ad_group, campaign.name, signal)
            if modifier is not None:
                intents.append(modifier)

    actions = {}
    for s in signals:
        actions[s.action.value] = actions.get(s.action.value, 0) + 1
    logger.info(f"Pacing: {len(signals)} signal(s) {actions}, {len(intents)} intent(s)")
    return intents
