"""
Schedule reconciler — adds business-hours ad schedule blocks to campaigns that have none.
"""

import logging
import re

from autopilot.models import DEFAULT_BUSINESS_DAYS, EntityRef, IntentKind, LiveState, MutationIntent
from autopilot.services.safety_guard import RunContext

logger = logging.getLogger(__name__)

VALID_DAYS = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY")
_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def _default_blocks() -> list[dict]:
    return [
        {"day": day, "start_hour": 9, "start_minute": 0, "end_hour": 18, "end_minute": 0}
        for day in DEFAULT_BUSINESS_DAYS
    ]


def _parse_time(text: str):
    match = _TIME_RE.match(text or "")
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 24 or minute > 59 or (hour == 24 and minute != 0):
        return None
    return hour, minute


def parse_schedule(days, start: str, end: str) -> list[dict]:
    """
    Turn days + "HH:MM" start/end into platform day blocks.
    Any malformed part falls back to Mon–Fri 09:00–18:00.
    """
    start_t = _parse_time(start)
    end_t = _parse_time(end)
    day_list = [str(d).strip().upper() for d in (days or ()) if str(d).strip()]

    if start_t is None or end_t is None or start_t >= end_t:
        logger.warning(f"Malformed business hours {start!r}-{end!r}; using Mon–Fri 09:00–18:00")
        return _default_blocks()
    if not day_list or any(d not in VALID_DAYS for d in day_list):
        logger.warning(f"Malformed business days {days!r}; using Mon–Fri 09:00–18:00")
        return _default_blocks()

    seen = []
    for d in day_list:
        if d not in seen:
            seen.append(d)
    return [
        {"day": d, "start_hour": start_t[0], "start_minute": start_t[1],
         "end_hour": end_t[0], "end_minute": end_t[1]}
        for d in seen
    ]


def reconcile_schedules(ctx: RunContext, live: LiveState) -> list[MutationIntent]:
    config = ctx.config
    if not config.add_business_hours_if_none:
        return []

    blocks = parse_schedule(config.business_days, config.business_start, config.business_end)
    intents = []
    for campaign in ctx.campaigns_in_scope(live):
        if campaign.has_schedule:
            continue
        intents.append(MutationIntent(
            kind=IntentKind.AD_SCHEDULE_ADD,
            target=EntityRef(entity_type="campaign", entity_id=campaign.id, name=campaign.name),
            before=None,
            after=blocks,
            reason=f"No ad schedule; add {len(blocks)} business-hours block(s)",
        ))
    return intents
