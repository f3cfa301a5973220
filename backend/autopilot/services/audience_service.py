"""
Audience reconciler — keeps campaign-level audience attachments in line with the audience map.
"""

import logging

from autopilot.models import AudienceMode, EntityRef, IntentKind, LiveState, MutationIntent
from autopilot.services.safety_guard import RunContext

logger = logging.getLogger(__name__)


def reconcile_audiences(ctx: RunContext, live: LiveState) -> list[MutationIntent]:
    """
    Attach every mapped list not yet attached to its campaign and detach
    attachments whose list is no longer mapped for that campaign.
    Bid modifiers are only proposed for lists of known size at or above
    the configured minimum, and never for EXCLUDE.
    """
    config = ctx.config
    if not config.feature_audience_attach:
        logger.info("Audience attach disabled")
        return []

    intents = []
    for campaign_name, ad_groups in config.audience_map.items():
        campaign = live.campaign_by_name(campaign_name)
        if campaign is None:
            logger.info(f"Audience map: campaign {campaign_name!r} not found")
            continue
        if not ctx.guard.in_scope(campaign):
            continue

        target = EntityRef(entity_type="campaign", entity_id=campaign.id, name=campaign.name)
        attached = {a.list_id for a in live.attachments_for(campaign.id)}
        mapped = {spec.user_list_id for spec in ad_groups.values()}
        planned = set()

        for ad_group_name, spec in ad_groups.items():
            if ctx.guard.is_excluded_ad_group(campaign_name, ad_group_name):
                continue
            list_id = spec.user_list_id
            if list_id in attached or list_id in planned:
                continue
            planned.add(list_id)

            size = live.audience_sizes.get(list_id)
            bid_modifier = None
            if spec.bid_modifier is not None and spec.mode != AudienceMode.EXCLUDE:
                if size is not None and size >= config.audience_min_size:
                    bid_modifier = spec.bid_modifier
                else:
                    logger.info(
                        f"Audience {list_id} size {size if size is not None else 'unknown'} "
                        f"below {config.audience_min_size}; attaching without bid modifier"
                    )

            intents.append(MutationIntent(
                kind=IntentKind.AUDIENCE_ATTACH,
                target=target,
                after={"list_id": list_id, "mode": spec.mode.value, "bid_modifier": bid_modifier},
                reason=f"Mapped from ad group {ad_group_name}",
            ))

        for attachment in live.attachments_for(campaign.id):
            if attachment.list_id in mapped:
                continue
            intents.append(MutationIntent(
                kind=IntentKind.AUDIENCE_DETACH,
                target=target,
                before={"list_id": attachment.list_id, "mode": attachment.mode.value},
                after={"list_id": attachment.list_id},
                reason="No longer in audience map",
            ))
    return intents
