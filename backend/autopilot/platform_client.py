"""
Ads Platform Client
Capability interface the engine uses to read and mutate an advertising account.
The concrete client (Google Ads, Microsoft Ads, …) is supplied by the hosting
process; the engine only depends on the operations below.
Read methods return plain dicts as delivered by the platform; the live-state
service projects them into typed models.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from autopilot.utils import AutopilotError

logger = logging.getLogger(__name__)


class PlatformError(AutopilotError):
    """Custom exception for platform call failures."""
    pass


class AdsPlatformClient(ABC):
    """
    Async CRUD-style operations per entity family.
    Every mutating call must be idempotent at the platform level:
    applying the same value twice is a no-op.
    """

    # ── Reads ────────────────────────────────────────────────────────

    @abstractmethod
    async def list_campaigns(self) -> list[dict]:
        """Search campaigns in ENABLED or PAUSED state."""

    @abstractmethod
    async def list_ad_groups(self) -> list[dict]:
        """Ad groups of the listed campaigns, including their negative keywords."""

    @abstractmethod
    async def list_ads(self) -> list[dict]:
        ...

    @abstractmethod
    async def list_negative_keyword_lists(self) -> list[dict]:
        ...

    @abstractmethod
    async def list_audience_attachments(self) -> list[dict]:
        ...

    @abstractmethod
    async def get_audience_sizes(self, list_ids: list[str]) -> dict[str, Optional[int]]:
        """Known size per user list; None when the platform does not report one."""

    @abstractmethod
    async def query_search_terms(self, lookback: str, min_clicks: int) -> list[dict]:
        ...

    @abstractmethod
    async def query_performance(self, lookback: str = "LAST_7_DAYS") -> list[dict]:
        """Campaign- and ad-group-level performance rows."""

    # ── Campaign mutations ───────────────────────────────────────────

    @abstractmethod
    async def set_campaign_budget(self, campaign_id: str, amount: float) -> None:
        ...

    @abstractmethod
    async def set_bidding_strategy(
        self, campaign_id: str, strategy: str, cpc_ceiling: Optional[float] = None
    ) -> None:
        ...

    @abstractmethod
    async def add_ad_schedule(self, campaign_id: str, blocks: list[dict]) -> None:
        """blocks: [{day, start_hour, start_minute, end_hour, end_minute}]"""

    # ── Negative keywords ────────────────────────────────────────────

    @abstractmethod
    async def add_list_negative(self, list_name: str, term: str) -> None:
        """Add a term to the shared list, creating the list when it does not exist."""

    @abstractmethod
    async def attach_negative_list(self, campaign_id: str, list_name: str) -> None:
        ...

    @abstractmethod
    async def add_ad_group_negative(self, ad_group_id: str, term: str, match_type: str = "EXACT") -> None:
        ...

    # ── Creative ─────────────────────────────────────────────────────

    @abstractmethod
    async def create_responsive_search_ad(
        self,
        ad_group_id: str,
        final_url: str,
        headlines: list[str],
        descriptions: list[str],
    ) -> str:
        """Create an RSA and return the new ad id."""

    # ── Audiences ────────────────────────────────────────────────────

    @abstractmethod
    async def attach_audience(
        self,
        campaign_id: str,
        list_id: str,
        mode: str,
        bid_modifier: Optional[float] = None,
    ) -> None:
        ...

    @abstractmethod
    async def detach_audience(self, campaign_id: str, list_id: str) -> None:
        ...

    # ── Ad groups ────────────────────────────────────────────────────

    @abstractmethod
    async def pause_ad_group(self, ad_group_id: str) -> None:
        ...

    @abstractmethod
    async def set_ad_group_bid_modifier(self, ad_group_id: str, modifier: float) -> None:
        ...

    # ── Labels ───────────────────────────────────────────────────────

    @abstractmethod
    async def apply_label(self, entity_type: str, entity_id: str, label: str) -> None:
        """Apply `label` to a campaign, ad group or ad; creates the label if needed."""

