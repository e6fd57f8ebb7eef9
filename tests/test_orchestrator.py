"""
Tests for the aggregation orchestrator: fan-out, partial failure, stale serving,
single-flight, determinism and the ingestion path.
"""
from __future__ import annotations

import asyncio
import math
from datetime import timedelta

import pytest

from conftest import NOW
from market_drivers.core.errors import AllSourcesFailed, InternalScoringError, UnknownViewError
from market_drivers.core.types import BiasDirection, Direction, DriverType, PriceTick, SessionKey
from market_drivers.engines.bias_aggregator import aggregate
from market_drivers.engines.orchestrator import AggregationOrchestrator, guarded
from market_drivers.engines.sweep_detector import Bar, SweepType

QUOTE_SOURCES = 10  # ES, 8 correlations, VIX front month


def make(contracts, provider, **kwargs):
    kwargs.setdefault("now_fn", lambda: NOW)
    return AggregationOrchestrator(contracts, provider, **kwargs)


def test_full_cycle_ranks_drivers_and_scores_bias(contracts, provider):
    orch = make(contracts, provider)
    view = asyncio.run(orch.get_aggregated_view("command-center"))

    assert view.failures == []
    assert view.session.key is SessionKey.US_RTH
    assert view.next_session.key is SessionKey.SETTLEMENT
    assert [d.name for d in view.drivers] == [
        "VIX Spike 8.0%",
        "Nvidia -2.0%",
        "Fed signals rate cut at next meeting",
        "10Y Yield -3bp",
        "Technology +1.0%",
        "Tech Leading",
    ]
    assert view.drivers[2].type is DriverType.NEWS
    # bullish 5 + 4.5 + 3.2 = 12.7, bearish 16 + 6 = 22
    assert view.bias.direction is BiasDirection.MIXED
    assert view.bias.confidence == 63
    assert view.stale is False
    assert view.config_hash == contracts.config_hash


def test_bias_is_scored_over_the_drivers_shown(contracts, provider_cls):
    quotes = provider_cls().quotes
    quotes["^VIX"] = {"price": 20.0, "change": 0.1, "change_percent": 0.5}
    provider = provider_cls(
        quotes=quotes,
        sectors={"XLF": {"price": 40.0, "change": -0.4, "change_percent": -1.0}},
        constituents={
            "AAPL": {"price": 200.0, "change": 4.0, "change_percent": 2.0},
            "MSFT": {"price": 400.0, "change": 8.0, "change_percent": 2.0},
            "NVDA": {"price": 100.0, "change": 2.0, "change_percent": 2.0},
            "GOOGL": {"price": 150.0, "change": 3.0, "change_percent": 2.0},
            "AMZN": {"price": 180.0, "change": 3.6, "change_percent": 2.0},
            "META": {"price": 500.0, "change": -10.0, "change_percent": -2.0},
            "TSLA": {"price": 250.0, "change": -5.0, "change_percent": -2.0},
        },
        news=[],
    )
    view = asyncio.run(make(contracts, provider).get_aggregated_view("command-center"))

    assert len(view.drivers) > len(view.top_drivers) == 6
    assert all(d.direction is Direction.BULLISH for d in view.top_drivers)
    hidden = [d for d in view.drivers[6:] if d.direction is Direction.BEARISH]
    assert [d.name for d in hidden] == ["Meta -2.0%", "Tesla -2.0%", "Financials -1.0%"]
    # The hidden bearish drivers do not dilute the headline bias
    assert view.bias == aggregate(view.top_drivers)
    assert view.bias.direction is BiasDirection.BULLISH
    assert view.bias.confidence == 100
    assert view.bias.bearish_score == 0.0


def test_payload_sections(contracts, provider):
    orch = make(contracts, provider)
    payload = asyncio.run(orch.get_aggregated_view("command-center")).to_payload()

    assert payload["primary"]["value"] == 6000.0
    assert set(payload["correlations"]) == {"VIX", "TNX", "DXY", "HYG", "TLT", "NQ", "RTY", "YM"}
    assert payload["sectors"]["XLK"]["label"] == "Technology"
    assert payload["mag7"]["NVDA"]["change_percent"] == -2.0
    assert payload["news"][0]["recency_minutes"] == 10
    assert payload["institutional"]["vix_term_structure"]["structure"] == "FLAT"
    assert payload["institutional"]["opex_calendar"]["opex_status"] == "OPEX_WEEK"
    assert len(payload["drivers"]) <= 6


def test_partial_failure_is_tolerated(contracts, provider_cls):
    provider = provider_cls(fail={"ES=F", "^TNX", "sectors", "news"})
    orch = make(contracts, provider)
    view = asyncio.run(orch.get_aggregated_view("command-center"))

    failed = {f.source for f in view.failures}
    assert failed == {"quote:ES", "quote:TNX", "sectors", "news"}
    assert all("down" in f.error for f in view.failures)
    names = [d.name for d in view.drivers]
    assert "VIX Spike 8.0%" in names
    assert "Tech Leading" not in names  # ES leg missing
    assert view.sections["primary"] is None
    assert view.sections["sectors"] == {}
    assert view.sections["institutional"]["gap_analysis"] == {"error": "Unable to calculate gap"}


def test_malformed_quote_counts_as_source_failure(contracts, provider_cls):
    provider = provider_cls()
    provider.quotes["^VIX"] = {"symbol": "^VIX"}  # no price
    view = asyncio.run(make(contracts, provider).get_aggregated_view("command-center"))
    assert [f.source for f in view.failures] == ["quote:VIX"]


def test_non_finite_quote_counts_as_source_failure(contracts, provider_cls):
    provider = provider_cls()
    provider.quotes["^VIX"] = {"price": 22.0, "change": 1.0, "change_percent": float("inf")}
    provider.quotes["^TNX"] = {"price": float("nan"), "change": -0.03, "change_percent": -0.7}
    view = asyncio.run(make(contracts, provider).get_aggregated_view("command-center"))

    assert [f.source for f in view.failures] == ["quote:VIX", "quote:TNX"]
    assert all(d.name not in ("VIX Spike 8.0%", "10Y Yield -3bp") for d in view.drivers)
    assert math.isfinite(view.bias.bullish_score) and math.isfinite(view.bias.bearish_score)


def test_all_sources_failing_raises(contracts, provider_cls):
    orch = make(contracts, provider_cls(fail={"all"}))
    with pytest.raises(AllSourcesFailed) as exc:
        asyncio.run(orch.get_aggregated_view("command-center"))
    assert exc.value.retryable is True
    assert len(exc.value.failures) == QUOTE_SOURCES + 3


def test_all_sources_failing_serves_stale(contracts, provider):
    orch = make(contracts, provider)

    async def scenario():
        fresh = await orch.get_aggregated_view("command-center")
        provider.fail = {"all"}
        orch.invalidate_cache("command-center")
        stale = await orch.get_aggregated_view("command-center")
        return fresh, stale

    fresh, stale = asyncio.run(scenario())
    assert stale.stale is True
    assert stale.to_payload()["stale"] is True
    assert [d.name for d in stale.drivers] == [d.name for d in fresh.drivers]
    assert stale.generated_at == fresh.generated_at


def test_concurrent_requests_share_one_fan_out(contracts, provider_cls):
    provider = provider_cls(delays={"^VIX": 0.02})
    orch = make(contracts, provider)

    async def scenario():
        return await asyncio.gather(*(orch.get_aggregated_view("command-center") for _ in range(10)))

    views = asyncio.run(scenario())
    assert provider.quote_calls == QUOTE_SOURCES
    assert orch.cache.computations == 1
    assert all(v is views[0] for v in views)


def test_cached_view_is_reused_within_ttl(contracts, provider):
    orch = make(contracts, provider)

    async def scenario():
        a = await orch.get_aggregated_view("command-center")
        b = await orch.get_aggregated_view("command-center")
        c = await orch.get_aggregated_view("command-center", force_refresh=True)
        return a, b, c

    a, b, c = asyncio.run(scenario())
    assert a is b
    assert c is not a
    assert provider.quote_calls == 2 * QUOTE_SOURCES


def test_ranking_does_not_depend_on_arrival_order(contracts, provider_cls):
    symbols = ["ES=F", "^VIX", "^TNX", "NQ=F", "HYG"]
    early = {s: 0.001 * i for i, s in enumerate(symbols)}
    late = {s: 0.001 * (len(symbols) - i) for i, s in enumerate(symbols)}

    a = asyncio.run(make(contracts, provider_cls(delays=early)).get_aggregated_view("command-center"))
    b = asyncio.run(make(contracts, provider_cls(delays=late)).get_aggregated_view("command-center"))
    assert [d.to_payload() for d in a.drivers] == [d.to_payload() for d in b.drivers]
    assert a.bias == b.bias


def test_slow_source_times_out(contracts, provider_cls):
    contracts.views["fetch_timeout_seconds"] = 0.05
    provider = provider_cls(delays={"^VIX": 1.0})
    view = asyncio.run(make(contracts, provider).get_aggregated_view("command-center"))

    assert [f.source for f in view.failures] == ["quote:VIX"]
    assert "TimeoutError" in view.failures[0].error
    assert all(d.name != "VIX Spike 8.0%" for d in view.drivers)


def test_sync_provider_methods_are_supported(contracts, provider_cls):
    fake = provider_cls()

    class SyncProvider:
        def fetch_quote(self, symbol):
            return fake.quotes[symbol]

        def fetch_sector_performance(self):
            return fake.sectors

        def fetch_top_constituents(self):
            return fake.constituents

        def fetch_filtered_news(self, session_key):
            return fake.news

    view = asyncio.run(make(contracts, SyncProvider()).get_aggregated_view("command-center"))
    assert view.failures == []
    assert view.drivers[0].name == "VIX Spike 8.0%"


def test_scoring_defect_is_not_swallowed(contracts, provider):
    class BrokenDetector:
        def detect(self, observations, news=None, now=None):
            raise ZeroDivisionError("bad weight")

    orch = make(contracts, provider, detector=BrokenDetector())
    with pytest.raises(InternalScoringError):
        asyncio.run(orch.get_aggregated_view("command-center"))


def test_guarded_wraps_failures():
    async def boom():
        raise ValueError("nope")

    async def ok():
        return 42

    bad = asyncio.run(guarded("x", boom, timeout=1))
    good = asyncio.run(guarded("y", ok, timeout=1))
    assert not bad.ok and bad.failure.source == "x"
    assert good.ok and good.value == 42


def test_unknown_view(contracts, provider):
    orch = make(contracts, provider)
    with pytest.raises(UnknownViewError):
        asyncio.run(orch.get_aggregated_view("horoscope"))
    # Configured TTL but no weather collaborator
    assert "weather-report" not in orch.view_kinds
    with pytest.raises(UnknownViewError):
        asyncio.run(orch.get_aggregated_view("weather-report"))
    with pytest.raises(UnknownViewError):
        orch.invalidate_cache("horoscope")


def test_every_configured_view_is_served(contracts, provider, weather):
    orch = make(contracts, provider, weather=weather)
    assert orch.view_kinds == sorted(contracts.views["ttl_by_kind"])
    for kind in orch.view_kinds:
        assert asyncio.run(orch.get_aggregated_view(kind)).kind == kind


def test_registered_view_uses_configured_ttl(contracts, provider):
    orch = make(contracts, provider)
    seen = []

    async def build_weather(o, force_refresh):
        seen.append(force_refresh)
        return await o.get_aggregated_view("command-center", force_refresh)

    orch.register_view("weather-report", build_weather)
    assert "weather-report" in orch.view_kinds
    view = asyncio.run(orch.get_aggregated_view("weather-report", force_refresh=True))
    assert view.kind == "command-center"
    assert seen == [True]
    assert orch.cache.peek("weather-report").ttl == 1800.0

    with pytest.raises(UnknownViewError):
        orch.register_view("horoscope", build_weather)
    orch.register_view("horoscope", build_weather, ttl=5)
    assert orch.cache.peek("horoscope") is None


def test_market_brief(contracts, provider):
    orch = make(contracts, provider)
    brief = asyncio.run(orch.get_aggregated_view("market-brief"))

    assert brief.kind == "market-brief"
    assert len(brief.top_drivers) == 3
    assert brief.bias.direction is BiasDirection.MIXED
    assert brief.sections["headline"] == "US Regular: MIXED (63%); led by VIX Spike 8.0%"
    assert orch.cache.peek("command-center") is not None


def test_forced_market_brief_recomputes_command_center(contracts, provider):
    orch = make(contracts, provider)

    async def scenario():
        first = await orch.get_aggregated_view("market-brief")
        provider.quotes["^VIX"] = {"price": 20.0, "change": 0.1, "change_percent": 0.5}
        cached = await orch.get_aggregated_view("market-brief")
        forced = await orch.get_aggregated_view("market-brief", force_refresh=True)
        return first, cached, forced

    first, cached, forced = asyncio.run(scenario())
    assert cached is first
    assert forced.top_drivers[0].name == "Nvidia -2.0%"
    assert provider.quote_calls == 2 * QUOTE_SOURCES


def test_dashboard_combines_command_center_event_risk_and_levels(contracts, provider):
    orch = make(contracts, provider)
    orch.record_price_tick(SessionKey.US_RTH, PriceTick(open=6000, high=6010, low=5990), now=NOW)

    async def scenario():
        dashboard = await orch.get_aggregated_view("dashboard")
        center = await orch.get_aggregated_view("command-center")
        return dashboard, center

    dashboard, center = asyncio.run(scenario())
    assert dashboard.kind == "dashboard"
    assert dashboard.bias == center.bias
    assert dashboard.top_drivers == center.top_drivers
    assert dashboard.sections["mag7"] == center.sections["mag7"]
    assert dashboard.sections["event_risk"]["risk_level"] == "EXTREME"
    assert dashboard.sections["session_summary"]["high"] == 6010
    assert dashboard.sections["levels"]["sessions"]["US_RTH"]["low"] == 5990
    assert provider.quote_calls == QUOTE_SOURCES


def test_dashboard_outside_tracked_sessions(contracts, provider):
    saturday = NOW.replace(day=3, hour=12)
    view = asyncio.run(make(contracts, provider, now_fn=lambda: saturday).get_aggregated_view("dashboard"))
    assert view.session.key is SessionKey.WEEKEND
    assert view.sections["session_summary"] is None
    assert view.sections["event_risk"]["risk_level"] == "LOW"


def test_reports_calendar_needs_no_provider(contracts, provider_cls):
    provider = provider_cls(fail={"all"})
    view = asyncio.run(make(contracts, provider).get_aggregated_view("reports-calendar"))

    assert provider.quote_calls == 0
    assert view.failures == []
    risk = view.sections["event_risk"]
    assert risk["day_of_week"] == "WEDNESDAY"
    assert [r["report"] for r in risk["reports"]] == [
        "EIA Petroleum Status", "USDA WASDE", "US CPI", "US PPI", "US Retail Sales",
    ]
    assert risk["flags"]["is_eia_day"] is True
    assert "US CPI" in [r["report"] for r in view.sections["primary_reports"]["monthly"]]
    assert "FOMC" in view.sections["primary_reports"]["central_banks"]
    assert set(view.sections["schedule"]) == {"weekly", "monthly", "quarterly", "annual", "central_banks"}


def test_weather_report(contracts, provider, weather):
    orch = make(contracts, provider, weather=weather)
    view = asyncio.run(orch.get_aggregated_view("weather-report"))

    assert view.failures == []
    assert view.bias is None
    assert view.sections["drought"]["severe_drought"] == pytest.approx(10.0)
    assert view.sections["outlook"]["temperature"]["dominant"] == "Above Normal Temps"
    assert view.sections["degree_days"]["season"] == "Fall"
    assert view.sections["ag_impact"]["corn"]["bias"] == "slightly bullish"
    assert view.sections["headline"].endswith("Season: Fall (Injection for NG)")
    assert provider.quote_calls == 0


def test_weather_report_partial_and_total_failure(contracts, provider, weather_cls):
    partial = weather_cls(fail={"outlook"})
    view = asyncio.run(make(contracts, provider, weather=partial).get_aggregated_view("weather-report"))
    assert [f.source for f in view.failures] == ["outlook"]
    assert view.sections["outlook"] is None
    assert view.sections["drought"] is not None

    broken = weather_cls(fail={"drought", "outlook"})
    with pytest.raises(AllSourcesFailed) as exc:
        asyncio.run(make(contracts, provider, weather=broken).get_aggregated_view("weather-report"))
    assert exc.value.kind == "weather-report"


def test_malformed_drought_rows_count_as_source_failure(contracts, provider, weather_cls):
    weather = weather_cls(drought=[])
    view = asyncio.run(make(contracts, provider, weather=weather).get_aggregated_view("weather-report"))
    assert [f.source for f in view.failures] == ["drought"]
    assert view.sections["ag_impact"]["corn"]["factors"][0].startswith("Above normal temps")


def test_bias_breakdown(contracts, provider):
    orch = make(contracts, provider)
    breakdown = asyncio.run(orch.get_bias_breakdown())

    assert breakdown["final_bias"]["direction"] == "MIXED"
    categories = breakdown["categories"]
    assert categories["correlations"][0]["factor"] == "VIX Spike 8.0%"
    assert categories["correlations"][0]["score"] == -16
    assert categories["mag7"][0]["score"] == -6
    assert categories["event_risk"][0]["score"] == 5
    assert any(c["factor"] == "OPEX" for c in categories["context"])
    assert breakdown["totals"]["net"] == breakdown["totals"]["bullish"] - breakdown["totals"]["bearish"]


def test_resolve_sessions_use_injected_clock(contracts, provider):
    orch = make(contracts, provider)
    assert orch.resolve_current_session().key is SessionKey.US_RTH
    assert orch.resolve_next_session().minutes_until == 360


def test_ticks_extend_ib_only_inside_ib_window(contracts, provider):
    orch = make(contracts, provider)
    ib_time = NOW.replace(hour=9, minute=45)
    later = NOW.replace(hour=11, minute=0)

    orch.record_price_tick(SessionKey.US_RTH, PriceTick(open=6000, high=6005, low=5995), now=ib_time)
    orch.record_price_tick(SessionKey.US_RTH, PriceTick(high=6030, low=5970), now=later)

    ib = orch.store.get_initial_balance(SessionKey.US_RTH)
    levels = orch.store.get_levels(SessionKey.US_RTH)
    assert (ib.high, ib.low) == (6005, 5995)
    assert (levels.high, levels.low) == (6030, 5970)


def test_ticks_for_other_session_do_not_touch_ib(contracts, provider):
    orch = make(contracts, provider)
    # 09:45 is inside the RTH IB, not London's
    orch.record_price_tick(SessionKey.LONDON, PriceTick(high=6005, low=5995), now=NOW.replace(hour=9, minute=45))
    assert orch.store.get_initial_balance(SessionKey.LONDON).high is None


def test_ingest_bar_records_reclaimed_sweeps(contracts, provider):
    orch = make(contracts, provider)
    after_ib = NOW.replace(hour=11)
    orch.record_price_tick(SessionKey.US_RTH, PriceTick(open=6002, high=6010, low=6000), now=after_ib)

    signals = orch.ingest_bar(SessionKey.US_RTH, Bar(open=6003, high=6006, low=5996, close=6004),
                               now=after_ib)

    assert [(s.level_name, s.type) for s in signals] == [("session_low", SweepType.BULLISH_SWEEP)]
    levels = orch.store.get_levels(SessionKey.US_RTH)
    assert [(s.level, s.price, s.reclaimed) for s in levels.sweeps] == [("session_low", 6000, True)]
    assert levels.low == 5996


def test_complete_and_reset(contracts, provider):
    orch = make(contracts, provider)
    orch.record_price_tick(SessionKey.US_RTH, PriceTick(high=6005, low=5995), now=NOW.replace(hour=9, minute=40))
    orch.complete_initial_balance(SessionKey.US_RTH)
    assert orch.store.get_initial_balance(SessionKey.US_RTH).complete is True

    orch.reset_session(SessionKey.US_RTH)
    assert orch.store.get_levels(SessionKey.US_RTH).high is None
    assert orch.store.get_initial_balance(SessionKey.US_RTH).complete is False


def test_news_recency_is_measured_from_cycle_time(contracts, provider_cls):
    from market_drivers.core.types import NewsImpact, NewsItem

    old = NewsItem("CPI hotter than expected", NOW - timedelta(minutes=300), bias=Direction.BEARISH,
                   impact=NewsImpact.HIGH)
    view = asyncio.run(make(contracts, provider_cls(news=[old])).get_aggregated_view("command-center"))
    assert all(d.type is not DriverType.NEWS for d in view.drivers)
    assert view.sections["news"][0]["recency_minutes"] == 300
