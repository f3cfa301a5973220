"""
End-to-end runs against the in-memory platform and the mock backend.
"""

import pytest

from autopilot.models import IntentKind, RunMode, RunState
from autopilot.platform_client import PlatformError
from autopilot.services.orchestrator_service import RunOrchestrator
from tests.conftest import FakePlatform, MockBackend, TENANT, ad, ad_group, campaign

MARKER = "PROOFKIT_AUTOMATED"


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _orchestrator(platform, backend: MockBackend, settings) -> RunOrchestrator:
    return RunOrchestrator(platform, backend.client(), settings=settings)


def _config(**kw) -> dict:
    data = {"tenant_id": TENANT, "enabled": True, "PROMOTE": True}
    data.update(kw)
    return data


def _types(report) -> list[str]:
    return [m["type"] for m in report.mutations]


def _full_account() -> FakePlatform:
    return FakePlatform(
        campaigns=[
            campaign("c1", "Shoes", budget_amount=5.0, bidding_strategy="MANUAL_CPC", has_schedule=False),
            campaign("c2", "Boots", budget_amount=2.0),
        ],
        ad_groups=[
            ad_group("ag1", "Running", "c1"),
            ad_group("ag2", "Hiking", "c2"),
        ],
        ads=[ad("ad1", "ag1"), ad("ad2", "ag2", labels=[MARKER])],
        search_terms=[
            {"campaign_name": "Shoes", "ad_group_id": "ag1", "ad_group_name": "Running",
             "search_term": "Shoe Repair", "clicks": 5, "cost": 7.5, "conversions": 0},
            {"campaign_name": "Shoes", "ad_group_id": "ag1", "ad_group_name": "Running",
             "search_term": "running shoes", "clicks": 12, "cost": 20.0, "conversions": 3},
        ],
        performance=[
            {"level": "campaign", "id": "c1", "name": "Shoes", "campaign_name": "Shoes",
             "clicks": 10, "cost": 12.5, "conversions": 1, "impressions": 200},
            {"level": "ad_group", "id": "ag1", "name": "Running", "campaign_name": "Shoes",
             "ad_group_name": "Running", "clicks": 10, "cost": 12.5, "conversions": 1, "impressions": 200},
        ],
    )


def _full_config(**kw) -> dict:
    return _config(
        daily_budget_cap_default=3.0,
        cpc_ceiling_default=1.0,
        add_business_hours_if_none=True,
        MASTER_NEGATIVES=["free", "jobs"],
        WASTE_NEGATIVE_MAP={"Shoes": {"Running": ["used shoes", "Used Shoes"]}},
        AUDIENCE_MAP={"Shoes": {"Running": {"user_list_id": "999", "bid_modifier": 1.25}}},
        **kw,
    )


# ── Example scenarios ────────────────────────────────────────────────

@pytest.mark.anyio
async def test_budget_cap_applied_then_converged(settings):
    platform = FakePlatform(campaigns=[campaign("c1", "Shoes", budget_amount=5.0)])
    backend = MockBackend(_config(daily_budget_cap_default=3.0))
    orchestrator = _orchestrator(platform, backend, settings)

    first = await orchestrator.run(TENANT, RunMode.PRODUCTION)
    assert first.status == RunState.COMPLETE
    budget = [m for m in first.mutations if m["type"] == "BUDGET_CHANGE"]
    assert len(budget) == 1
    assert (budget[0]["before"], budget[0]["after"], budget[0]["status"]) == (5.0, 3.0, "applied")

    second = await orchestrator.run(TENANT, RunMode.PRODUCTION)
    assert "BUDGET_CHANGE" not in _types(second)


@pytest.mark.anyio
async def test_reserved_waste_term_never_planned(settings):
    platform = FakePlatform(
        campaigns=[campaign("c1", "Shoes")],
        ad_groups=[ad_group("ag1", "Running", "c1")],
        ads=[ad("ad1", "ag1", labels=[MARKER])],
    )
    backend = MockBackend(_config(
        reserved_keywords=["brand"], WASTE_NEGATIVE_MAP={"Shoes": {"Running": ["mybrand shoes"]}},
    ))
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    assert "ADGROUP_NEGATIVE_ADD" not in _types(report)
    assert platform.ad_groups["ag1"]["negative_keywords"] == []


@pytest.mark.anyio
async def test_unknown_size_audience_attached_without_modifier(settings):
    platform = FakePlatform(campaigns=[campaign("c1", "Shoes")])
    backend = MockBackend(_config(
        AUDIENCE_MAP={"Shoes": {"Running": {"user_list_id": 999, "bid_modifier": 1.25}}},
    ))
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    attaches = [m for m in report.mutations if m["type"] == "AUDIENCE_ATTACH"]
    assert len(attaches) == 1
    assert attaches[0]["status"] == "applied"
    assert ("attach_audience", "c1", "999", "OBSERVE", None) in platform.calls


# ── Properties ───────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_full_account_second_run_is_empty(settings):
    platform = _full_account()
    backend = MockBackend(_full_config())
    orchestrator = _orchestrator(platform, backend, settings)

    first = await orchestrator.run(TENANT)
    kinds = set(_types(first))
    assert {
        "BUDGET_CHANGE", "BIDDING_STRATEGY_CHANGE", "AD_SCHEDULE_ADD", "MASTER_NEGATIVE_ADD",
        "NEGATIVE_LIST_ATTACH", "ADGROUP_NEGATIVE_ADD", "RSA_CREATE", "AUDIENCE_ATTACH",
    } <= kinds
    assert first.failed_count == 0
    assert first.planned_count == 0
    negatives = [m["after"] for m in first.mutations if m["type"] == "ADGROUP_NEGATIVE_ADD"]
    assert negatives == ["used shoes", "shoe repair"]

    second = await orchestrator.run(TENANT)
    assert second.mutations == []


@pytest.mark.anyio
@pytest.mark.parametrize("mode,promote", [
    (RunMode.PREVIEW, True),
    (RunMode.IDEMPOTENCY_TEST, True),
    (RunMode.PRODUCTION, False),
])
async def test_promote_gate_never_applies(settings, mode, promote):
    platform = _full_account()
    backend = MockBackend(_full_config() | {"PROMOTE": promote})
    report = await _orchestrator(platform, backend, settings).run(TENANT, mode)
    assert report.status == RunState.COMPLETE
    assert report.applied_count == 0
    assert report.planned_count > 0
    assert platform.mutation_calls() == []


@pytest.mark.anyio
async def test_fully_excluded_campaign_untouched(settings):
    platform = _full_account()
    backend = MockBackend(_full_config(EXCLUSIONS={"Shoes": True}))
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    for m in report.mutations:
        assert m["entity_id"] not in ("c1", "ag1")
        assert not m["target"].startswith("Shoes")
    assert platform.campaigns["c1"]["budget_amount"] == 5.0


# ── Terminal states ──────────────────────────────────────────────────

@pytest.mark.anyio
async def test_states_visited_in_order(settings):
    platform = FakePlatform(campaigns=[campaign("c1", "Shoes")])
    report = await _orchestrator(platform, MockBackend(_config()), settings).run(TENANT)
    assert report.states == [
        RunState.LOADING_CONFIG, RunState.GATE_CHECK, RunState.GUARDS_INIT,
        RunState.RECONCILE, RunState.REPORT, RunState.COMPLETE,
    ]


@pytest.mark.anyio
@pytest.mark.parametrize("config", [None, {"tenant_id": TENANT, "enabled": False, "PROMOTE": True}])
async def test_missing_or_disabled_config_stops_before_reads(settings, config):
    platform = _full_account()
    backend = MockBackend(config)
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    assert report.status == RunState.DISABLED
    assert report.states == [RunState.LOADING_CONFIG, RunState.DISABLED]
    assert platform.calls == []
    assert backend.uploads == []


@pytest.mark.anyio
async def test_config_fetch_failure_is_disabled_not_fault(settings):
    platform = _full_account()
    backend = MockBackend(_full_config(), status_code=503)
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    assert report.status == RunState.DISABLED
    assert report.errors[0]["type"] == "TransportError"
    assert platform.calls == []


@pytest.mark.anyio
async def test_gate_blocked_for_foreign_snapshot(settings):
    platform = _full_account()
    backend = MockBackend(_full_config() | {"tenant_id": "other"})
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    assert report.status == RunState.GATE_BLOCKED
    assert report.errors[0]["type"] == "GateViolation"
    assert platform.calls == []
    assert len(backend.uploads) == 1
    assert any("PROMOTE GATE" in line[1] for line in backend.uploads[0]["run_logs"])


# ── Degradation ──────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_core_read_failure_skips_reconcile_but_reports(settings):
    platform = _full_account()
    platform.failures["list_ads"] = PlatformError("timeout")
    backend = MockBackend(_full_config())
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    assert report.status == RunState.COMPLETE
    assert report.mutations == []
    assert platform.mutation_calls() == []
    assert any(e["context"].get("read") == "ads" for e in report.errors)
    assert len(backend.uploads) == 1
    assert len(backend.uploads[0]["metrics"]) == 2


@pytest.mark.anyio
async def test_per_entity_failure_does_not_abort_run(settings):
    platform = _full_account()
    platform.failures["set_bidding_strategy"] = PlatformError("invalid ceiling")
    backend = MockBackend(_full_config())
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    assert report.status == RunState.COMPLETE
    assert report.counts["BIDDING_STRATEGY_CHANGE"].failed >= 1
    assert report.counts["BUDGET_CHANGE"].applied == 1
    assert report.counts["RSA_CREATE"].applied == 1


@pytest.mark.anyio
async def test_search_term_read_failure_only_skips_mining(settings):
    platform = _full_account()
    platform.failures["query_search_terms"] = PlatformError("report unavailable")
    backend = MockBackend(_full_config())
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    negatives = [m["after"] for m in report.mutations if m["type"] == "ADGROUP_NEGATIVE_ADD"]
    assert negatives == ["used shoes"]
    assert report.search_terms == []


# ── Pacing ───────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_pace_signals_drive_pause_and_budget(settings):
    platform = FakePlatform(
        campaigns=[campaign("c1", "Shoes", budget_amount=20.0), campaign("c2", "Boots", budget_amount=10.0)],
        ad_groups=[ad_group("ag1", "Running", "c1"), ad_group("ag2", "Hiking", "c2")],
        ads=[ad("a1", "ag1", labels=[MARKER]), ad("a2", "ag2", labels=[MARKER])],
    )
    backend = MockBackend(
        _config(),
        signals=[
            {"ad_group_id": "ag1", "action": "PAUSE", "pace_signal": 0.1, "reason": "Out of stock"},
            {"adGroupId": "ag2", "action": "REDUCE_BUDGET", "paceSignal": 0.5},
        ],
    )
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    assert platform.ad_groups["ag1"]["status"] == "PAUSED"
    assert platform.campaigns["c2"]["budget_amount"] == 5.0
    assert report.counts[IntentKind.ADGROUP_PAUSE.value].applied == 1
    assert report.counts[IntentKind.CAMPAIGN_BUDGET_CHANGE.value].applied == 1


@pytest.mark.anyio
async def test_raw_inventory_signals_are_computed(settings):
    platform = FakePlatform(
        campaigns=[campaign("c1", "Shoes")],
        ad_groups=[ad_group("ag1", "Running", "c1")],
        ads=[ad("a1", "ag1", labels=[MARKER])],
    )
    backend = MockBackend(
        _config(),
        signals={"margins": {"SKU1": 0.4}, "stock": {"SKU1": 0}, "ad_group_skus": {"ag1": ["SKU1"]}},
    )
    await _orchestrator(platform, backend, settings).run(TENANT)
    assert platform.ad_groups["ag1"]["status"] == "PAUSED"


@pytest.mark.anyio
async def test_malformed_inventory_skips_pacing_only(settings):
    platform = FakePlatform(
        campaigns=[campaign("c1", "Shoes", budget_amount=5.0)],
        ad_groups=[ad_group("ag1", "Running", "c1")],
        ads=[ad("a1", "ag1", labels=[MARKER])],
    )
    backend = MockBackend(
        _config(daily_budget_cap_default=3.0),
        signals={"margins": {"SKU1": 0.4}, "stock": {"SKU1": 0}, "ad_group_skus": ["ag1"]},
    )
    report = await _orchestrator(platform, backend, settings).run(TENANT)
    assert report.status == RunState.COMPLETE
    assert report.counts["BUDGET_CHANGE"].applied == 1
    assert platform.ad_groups["ag1"]["status"] == "ENABLED"
    assert any(e["type"] == "TransportError" for e in report.errors)
    assert len(backend.uploads) == 1


# ── Idempotency harness ──────────────────────────────────────────────

@pytest.mark.anyio
async def test_idempotency_harness_passes_on_converged_account(settings):
    platform = _full_account()
    backend = MockBackend(_full_config())
    orchestrator = _orchestrator(platform, backend, settings)
    await orchestrator.run(TENANT)
    calls_before = len(platform.mutation_calls())

    verdict = await orchestrator.run_idempotency_test(TENANT)
    assert verdict["passed"] is True
    assert verdict["second_run_mutations"] == 0
    assert len(platform.mutation_calls()) == calls_before
    last_upload = backend.uploads[-1]
    assert any("IDEMPOTENCY_TEST: PASSED" in line[1] for line in last_upload["run_logs"])


@pytest.mark.anyio
async def test_idempotency_harness_fails_on_divergent_account(settings):
    platform = _full_account()
    backend = MockBackend(_full_config())
    verdict = await _orchestrator(platform, backend, settings).run_idempotency_test(TENANT)
    assert verdict["passed"] is False
    assert verdict["first_run_mutations"] == verdict["second_run_mutations"] > 0
    assert platform.mutation_calls() == []
