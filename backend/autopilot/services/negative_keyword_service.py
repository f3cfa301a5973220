"""
Negative Keyword reconciler.

Two independent paths:
- master list: shared list terms (case-insensitive set difference, minus
  reserved) plus attaching the list to every in-scope campaign
- waste map: exact-match ad-group negatives from campaign → ad group → terms

Search-term mining feeds the ad-group path through `ad_group_negative_intents`.
"""

import logging
from typing import Iterable, Optional

from autopilot.models import (
    EntityRef, IntentKind, LiveAdGroup, LiveCampaign, LiveState, MutationIntent,
)
from autopilot.services.safety_guard import RunContext

logger = logging.getLogger(__name__)


def reconcile_master_negatives(ctx: RunContext, live: LiveState) -> list[MutationIntent]:
    config = ctx.config
    guard = ctx.guard
    list_name = config.master_negative_list_name
    shared = live.negative_list_named(list_name)
    existing = {t.lower() for t in (shared.terms if shared else ())}
    target = EntityRef(
        entity_type="negative_list",
        entity_id=shared.id if shared else None,
        name=list_name,
    )

    intents = []
    for term in config.master_negative_keywords:
        key = term.strip().lower()
        if not key or key in existing:
            continue
        if guard.is_reserved(key):
            logger.info(f"Reserved keyword guard blocked master negative {term!r}")
            continue
        existing.add(key)
        intents.append(MutationIntent(
            kind=IntentKind.MASTER_NEGATIVE_ADD,
            target=target,
            after=term.strip(),
            reason=f"Missing from {list_name}",
        ))

    if shared is None and not intents:
        # nothing to share yet; don't create an empty list
        return intents

    for campaign in ctx.campaigns_in_scope(live):
        if shared and shared.id in campaign.negative_list_ids:
            continue
        intents.append(MutationIntent(
            kind=IntentKind.NEGATIVE_LIST_ATTACH,
            target=EntityRef(entity_type="campaign", entity_id=campaign.id, name=campaign.name),
            after=list_name,
            reason="Shared negative list not attached",
        ))
    return intents


def ad_group_negative_intents(
    ctx: RunContext,
    campaign: LiveCampaign,
    ad_group: LiveAdGroup,
    terms: Iterable[str],
    planned: set,
    source: str = "waste map",
) -> list[MutationIntent]:
    """
    One ADGROUP_NEGATIVE_ADD per unique lower-cased term that is not reserved,
    not already on the ad group and not already planned this run.
    `planned` holds (ad_group_id, term) pairs and is updated in place.
    """
    existing = {t.lower() for t in ad_group.negative_keywords}
    intents = []
    for raw in terms:
        term = str(raw or "").strip().lower()
        if not term or term in existing or (ad_group.id, term) in planned:
            continue
        if ctx.guard.is_reserved(term):
            logger.info(f"Reserved keyword guard blocked {term!r} in {campaign.name} › {ad_group.name}")
            continue
        planned.add((ad_group.id, term))
        intents.append(MutationIntent(
            kind=IntentKind.ADGROUP_NEGATIVE_ADD,
            target=EntityRef(
                entity_type="ad_group", entity_id=ad_group.id,
                name=ad_group.name, campaign_name=campaign.name,
            ),
            after=term,
            reason=f"Exact negative from {source}",
        ))
    return intents


def reconcile_waste_negatives(
    ctx: RunContext, live: LiveState, planned: Optional[set] = None
) -> list[MutationIntent]:
    planned = planned if planned is not None else set()
    intents = []
    for campaign_name, ad_group_terms in ctx.config.waste_negative_map.items():
        campaign = live.campaign_by_name(campaign_name)
        if campaign is None or not ctx.guard.in_scope(campaign):
            continue
        by_name = {ag.name: ag for ag in live.ad_groups_for(campaign.id)}
        for ad_group_name, terms in ad_group_terms.items():
            if ctx.guard.is_excluded_ad_group(campaign_name, ad_group_name):
                continue
            ad_group = by_name.get(ad_group_name)
            if ad_group is None:
                logger.info(f"Waste map: ad group {ad_group_name!r} not found in {campaign_name!r}")
                continue
            intents.extend(ad_group_negative_intents(ctx, campaign, ad_group, terms, planned))
    return intents


def reconcile_negatives(ctx: RunContext, live: LiveState, planned: Optional[set] = None) -> list[MutationIntent]:
    return reconcile_master_negatives(ctx, live) + reconcile_waste_negatives(ctx, live, planned)
