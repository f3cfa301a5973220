"""
Shared fixtures: an in-memory ad platform and a mock config/metrics backend.
"""

import copy
import json
from typing import Optional

import httpx
import pytest

from autopilot.config import Settings
from autopilot.models import ConfigSnapshot, RunMode
from autopilot.platform_client import AdsPlatformClient, PlatformError
from autopilot.services.safety_guard import RunContext
from autopilot.transport import BackendClient

TENANT = "acme"


class FakePlatform(AdsPlatformClient):
    """Applies mutations to its own state so a second run sees the result."""

    def __init__(
        self,
        campaigns: Optional[list] = None,
        ad_groups: Optional[list] = None,
        ads: Optional[list] = None,
        negative_lists: Optional[list] = None,
        attachments: Optional[list] = None,
        audience_sizes: Optional[dict] = None,
        search_terms: Optional[list] = None,
        performance: Optional[list] = None,
    ):
        self.campaigns = {c["id"]: copy.deepcopy(c) for c in campaigns or []}
        self.ad_groups = {ag["id"]: copy.deepcopy(ag) for ag in ad_groups or []}
        self.ads = {ad["id"]: copy.deepcopy(ad) for ad in ads or []}
        self.negative_lists = [copy.deepcopy(nl) for nl in negative_lists or []]
        self.attachments = [copy.deepcopy(a) for a in attachments or []]
        self.audience_sizes = dict(audience_sizes or {})
        self.search_terms = list(search_terms or [])
        self.performance = list(performance or [])
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        self._seq = 0

    def _call(self, method: str, *args):
        self.calls.append((method, *args))
        if method in self.failures:
            raise self.failures[method]

    def mutation_calls(self) -> list[tuple]:
        reads = {"list_campaigns", "list_ad_groups", "list_ads", "list_negative_keyword_lists",
                 "list_audience_attachments", "get_audience_sizes", "query_search_terms",
                 "query_performance"}
        return [c for c in self.calls if c[0] not in reads]

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def _list_named(self, name: str, create: bool = True) -> Optional[dict]:
        for nl in self.negative_lists:
            if nl["name"] == name:
                return nl
        if not create:
            return None
        nl = {"id": self._next_id("nl"), "name": name, "terms": []}
        self.negative_lists.append(nl)
        return nl

    # ── Reads ────────────────────────────────────────────────────────

    async def list_campaigns(self):
        self._call("list_campaigns")
        return copy.deepcopy(list(self.campaigns.values()))

    async def list_ad_groups(self):
        self._call("list_ad_groups")
        return copy.deepcopy(list(self.ad_groups.values()))

    async def list_ads(self):
        self._call("list_ads")
        return copy.deepcopy(list(self.ads.values()))

    async def list_negative_keyword_lists(self):
        self._call("list_negative_keyword_lists")
        return copy.deepcopy(self.negative_lists)

    async def list_audience_attachments(self):
        self._call("list_audience_attachments")
        return copy.deepcopy(self.attachments)

    async def get_audience_sizes(self, list_ids):
        self._call("get_audience_sizes", tuple(list_ids))
        return {lid: self.audience_sizes.get(lid) for lid in list_ids}

    async def query_search_terms(self, lookback, min_clicks):
        self._call("query_search_terms", lookback, min_clicks)
        return [r for r in self.search_terms if r.get("clicks", 0) >= min_clicks]

    async def query_performance(self, lookback="LAST_7_DAYS"):
        self._call("query_performance", lookback)
        return list(self.performance)

    # ── Mutations ────────────────────────────────────────────────────

    async def set_campaign_budget(self, campaign_id, amount):
        self._call("set_campaign_budget", campaign_id, amount)
        self.campaigns[campaign_id]["budget_amount"] = amount

    async def set_bidding_strategy(self, campaign_id, strategy, cpc_ceiling=None):
        self._call("set_bidding_strategy", campaign_id, strategy, cpc_ceiling)
        self.campaigns[campaign_id]["bidding_strategy"] = strategy
        self.campaigns[campaign_id]["cpc_ceiling"] = cpc_ceiling

    async def add_ad_schedule(self, campaign_id, blocks):
        self._call("add_ad_schedule", campaign_id, len(blocks))
        self.campaigns[campaign_id]["has_schedule"] = True

    async def add_list_negative(self, list_name, term):
        self._call("add_list_negative", list_name, term)
        self._list_named(list_name)["terms"].append(term)

    async def attach_negative_list(self, campaign_id, list_name):
        self._call("attach_negative_list", campaign_id, list_name)
        nl = self._list_named(list_name)
        self.campaigns[campaign_id].setdefault("negative_list_ids", []).append(nl["id"])

    async def add_ad_group_negative(self, ad_group_id, term, match_type="EXACT"):
        self._call("add_ad_group_negative", ad_group_id, term, match_type)
        self.ad_groups[ad_group_id].setdefault("negative_keywords", []).append(term)

    async def create_responsive_search_ad(self, ad_group_id, final_url, headlines, descriptions):
        self._call("create_responsive_search_ad", ad_group_id, final_url)
        ad_id = self._next_id("ad")
        self.ads[ad_id] = {
            "id": ad_id, "ad_group_id": ad_group_id, "final_url": final_url,
            "headlines": list(headlines), "descriptions": list(descriptions), "labels": [],
        }
        return ad_id

    async def attach_audience(self, campaign_id, list_id, mode, bid_modifier=None):
        self._call("attach_audience", campaign_id, list_id, mode, bid_modifier)
        self.attachments.append(
            {"list_id": list_id, "campaign_id": campaign_id, "mode": mode, "bid_modifier": bid_modifier}
        )

    async def detach_audience(self, campaign_id, list_id):
        self._call("detach_audience", campaign_id, list_id)
        self.attachments = [
            a for a in self.attachments if not (a["campaign_id"] == campaign_id and a["list_id"] == list_id)
        ]

    async def pause_ad_group(self, ad_group_id):
        self._call("pause_ad_group", ad_group_id)
        self.ad_groups[ad_group_id]["status"] = "PAUSED"

    async def set_ad_group_bid_modifier(self, ad_group_id, modifier):
        self._call("set_ad_group_bid_modifier", ad_group_id, modifier)
        self.ad_groups[ad_group_id]["bid_modifier"] = modifier

    async def apply_label(self, entity_type, entity_id, label):
        self._call("apply_label", entity_type, entity_id, label)
        store = {"campaign": self.campaigns, "ad_group": self.ad_groups, "ad": self.ads}[entity_type]
        labels = store[entity_id].setdefault("labels", [])
        if label not in labels:
            labels.append(label)


# ── Builders ─────────────────────────────────────────────────────────

def make_config(**overrides) -> ConfigSnapshot:
    data = {"tenant_id": TENANT, "enabled": True, "promote": True}
    data.update(overrides)
    return ConfigSnapshot.model_validate(data)


def make_ctx(mode: RunMode = RunMode.PRODUCTION, **overrides) -> RunContext:
    return RunContext.build(make_config(**overrides), mode)


def campaign(cid: str, name: str, **kw) -> dict:
    row = {
        "id": cid, "name": name, "status": "ENABLED", "budget_amount": 10.0,
        "bidding_strategy": "TARGET_SPEND", "cpc_ceiling": None, "has_schedule": True,
        "labels": [], "negative_list_ids": [],
    }
    row.update(kw)
    return row


def ad_group(agid: str, name: str, campaign_id: str, **kw) -> dict:
    row = {"id": agid, "name": name, "campaign_id": campaign_id, "status": "ENABLED",
           "negative_keywords": [], "labels": []}
    row.update(kw)
    return row


def ad(ad_id: str, ad_group_id: str, **kw) -> dict:
    row = {"id": ad_id, "ad_group_id": ad_group_id, "final_url": "https://example.com/landing",
           "headlines": [], "descriptions": [], "labels": []}
    row.update(kw)
    return row


class MockBackend:
    """Serves /config and /pace-signals, records /metrics uploads."""

    def __init__(self, config: Optional[dict] = None, signals=None, status_code: int = 200,
                 fail_upload_chunks: tuple = ()):
        self.config = config
        self.signals = signals
        self.status_code = status_code
        self.fail_upload_chunks = set(fail_upload_chunks)
        self.uploads: list[dict] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/config"):
            if self.status_code != 200:
                return httpx.Response(self.status_code, text="backend down")
            return httpx.Response(200, json={"config": self.config})
        if path.endswith("/pace-signals"):
            if self.signals is None:
                return httpx.Response(200, json={})
            if isinstance(self.signals, dict):
                return httpx.Response(200, json=self.signals)
            return httpx.Response(200, json={"signals": self.signals})
        if path.endswith("/metrics"):
            payload = json.loads(request.content)
            if payload["chunk"] in self.fail_upload_chunks:
                return httpx.Response(502, text="bad gateway")
            self.uploads.append(payload)
            return httpx.Response(200, json={"ok": True})
        if path.endswith("/health"):
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    def client(self, chunk_size: int = 500) -> BackendClient:
        return BackendClient(
            "http://backend.test/api", api_key="k", timeout=5.0, chunk_size=chunk_size,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="development", cron_secret="s3cret")
