"""
RSA Service — responsive search ad creation for ad groups the engine has not touched yet.

Content resolution order: per ad-group override → tenant default → built-in
default. Everything passes through `lint_content` before an intent is built.
"""

import logging
import re
from typing import Optional

from autopilot.models import EntityRef, IntentKind, LiveAd, LiveState, MutationIntent
from autopilot.services.safety_guard import LabelSet, RunContext

logger = logging.getLogger(__name__)

# ── Platform limits ──────────────────────────────────────────────────
HEADLINE_MAX_LEN = 30
HEADLINE_MAX_ITEMS = 15
HEADLINE_MIN_LEN = 3
DESCRIPTION_MAX_LEN = 90
DESCRIPTION_MAX_ITEMS = 4
DESCRIPTION_MIN_LEN = 10
MIN_HEADLINES = 3
MIN_DESCRIPTIONS = 2

DEFAULT_HEADLINES = (
    "Digital Certificates",
    "Compliance Reports",
    "Export Clean PDFs",
    "Generate Certs Fast",
    "Audit-Ready Reports",
    "Start Free Today",
)
DEFAULT_DESCRIPTIONS = (
    "Create inspector-ready PDFs fast.",
    "Replace spreadsheets with an auditable system.",
    "Templates enforce SOPs. Audit trail included.",
    "Setup in under 10 minutes.",
)

_WS = re.compile(r"\s+")


def dedupe_words(text: str) -> str:
    """Drop repeated words (case-insensitive) and collapse whitespace."""
    seen = set()
    words = []
    for word in _WS.split(text.strip()):
        key = word.lower()
        if not word or key in seen:
            continue
        seen.add(key)
        words.append(word)
    return " ".join(words)


def lint_content(items, max_len: int, max_items: int, min_len: int) -> list[str]:
    output = []
    seen = set()
    for item in items or ():
        if len(output) >= max_items:
            break
        text = str(item or "").strip()
        if not text:
            continue
        text = dedupe_words(text)
        if len(text) > max_len:
            text = text[:max_len].rstrip()
        if len(text) < min_len:
            continue
        key = text.lower()
        if key in seen:
            continue
        seen.add(key)
        output.append(text)
    return output


def infer_final_url(ads: list[LiveAd]) -> Optional[str]:
    for ad in ads:
        if ad.status in ("ENABLED", "PAUSED") and ad.final_url:
            return ad.final_url
    return None


def reconcile_rsa(ctx: RunContext, live: LiveState, labels: LabelSet) -> list[MutationIntent]:
    config = ctx.config
    intents = []

    for campaign in ctx.campaigns_in_scope(live):
        for ad_group in live.ad_groups_for(campaign.id):
            if ad_group.status not in ("ENABLED", "PAUSED"):
                continue
            if ctx.guard.is_excluded_ad_group(campaign.name, ad_group.name):
                continue
            if labels.ad_group_has_labelled_ad(ad_group.id):
                continue
            ads = live.ads_for(ad_group.id)
            if any(ad.is_dynamic_search_ad for ad in ads):
                continue

            final_url = infer_final_url(ads) or config.default_final_url
            if not final_url:
                logger.warning(f"No final URL for {campaign.name} › {ad_group.name}; RSA skipped")
                continue

            override = config.rsa_override(campaign.name, ad_group.name)
            headlines = (
                (override.headlines if override else ())
                or config.rsa_default.headlines
                or DEFAULT_HEADLINES
            )
            descriptions = (
                (override.descriptions if override else ())
                or config.rsa_default.descriptions
                or DEFAULT_DESCRIPTIONS
            )
            headlines = lint_content(headlines, HEADLINE_MAX_LEN, HEADLINE_MAX_ITEMS, HEADLINE_MIN_LEN)
            descriptions = lint_content(
                descriptions, DESCRIPTION_MAX_LEN, DESCRIPTION_MAX_ITEMS, DESCRIPTION_MIN_LEN
            )
            if len(headlines) < MIN_HEADLINES or len(descriptions) < MIN_DESCRIPTIONS:
                logger.warning(
                    f"RSA content for {campaign.name} › {ad_group.name} too thin after lint "
                    f"({len(headlines)} headlines, {len(descriptions)} descriptions); skipped"
                )
                continue

            intents.append(MutationIntent(
                kind=IntentKind.RSA_CREATE,
                target=EntityRef(
                    entity_type="ad_group", entity_id=ad_group.id,
                    name=ad_group.name, campaign_name=campaign.name,
                ),
                after={"final_url": final_url, "headlines": headlines, "descriptions": descriptions},
                reason="No labelled ad in ad group",
            ))
    return intents
