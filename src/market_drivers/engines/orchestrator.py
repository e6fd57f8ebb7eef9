"""
Aggregation Orchestrator - the single entry point for aggregated views.

Pipeline per refresh:
  session clock → guarded fan-out to every collaborator → normalize
  → detect drivers → aggregate bias → assemble view → cache (single-flight)

A failed or timed-out source becomes a FetchFailure and its section falls back
to an empty default. Only a cycle where every source failed raises.

market-brief and dashboard are derived from the cached command center. reports-calendar
reads only the contracts. weather-report runs its own fan-out over the weather collaborator
and is registered only when one is configured.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from ..core.cache import SingleFlightCache
from ..core.config import Contracts
from ..core.errors import AllSourcesFailed, InternalScoringError, SourceUnavailable, UnknownViewError
from ..core.state_store import SessionStateStore
from ..core.types import (
    Driver,
    FetchFailure,
    NetBias,
    NewsItem,
    NextSession,
    Observation,
    PriceTick,
    SessionKey,
    SessionWindow,
    SweepEvent,
)
from .bias_aggregator import aggregate, build_breakdown
from .driver_detector import DriverDetector, top_drivers
from .institutional import build_institutional_context
from .normalizer import finalize_news, normalize_observation, normalize_observation_map
from .reports import event_risk_summary, reports_for_symbol
from .session_clock import SessionClock
from .sweep_detector import Bar, SweepSignal, detect_sweeps
from .weather import ag_impact, drought_summary, outlook_summary, seasonal_degree_days, weather_headline

logger = logging.getLogger(__name__)

COMMAND_CENTER = "command-center"
MARKET_BRIEF = "market-brief"
DASHBOARD = "dashboard"
REPORTS_CALENDAR = "reports-calendar"
WEATHER_REPORT = "weather-report"
VIX_FRONT = "VX_FRONT"


class MarketDataProvider(Protocol):
    """External collaborator contract. Each method may be sync or async."""

    def fetch_quote(self, symbol: str) -> Any: ...

    def fetch_sector_performance(self) -> Any: ...

    def fetch_top_constituents(self) -> Any: ...

    def fetch_filtered_news(self, session_key: str) -> Any: ...


class WeatherDataProvider(Protocol):
    """Optional collaborator for the weather report. Each method may be sync or async."""

    def fetch_drought_statistics(self) -> Any: ...

    def fetch_outlook(self) -> Any: ...


@dataclass(frozen=True)
class FetchOutcome:
    source: str
    value: Any = None
    failure: Optional[FetchFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


async def call_collaborator(fetch: Callable[..., Any], *args: Any) -> Any:
    """Await coroutine functions; run plain callables in a worker thread."""
    if inspect.iscoroutinefunction(fetch):
        return await fetch(*args)
    value = await asyncio.to_thread(fetch, *args)
    if inspect.isawaitable(value):
        value = await value
    return value


async def guarded(source: str, fetch: Callable[..., Any], *args: Any, timeout: float) -> FetchOutcome:
    """Run one collaborator call under its own timeout, turning any failure into a FetchOutcome."""
    try:
        value = await asyncio.wait_for(call_collaborator(fetch, *args), timeout)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        err = SourceUnavailable(source, e)
        logger.warning(f"{err}")
        return FetchOutcome(source, failure=err.to_failure())
    return FetchOutcome(source, value=value)


@dataclass(frozen=True)
class AggregatedView:
    kind: str
    generated_at: datetime
    session: SessionWindow
    next_session: NextSession
    drivers: List[Driver] = field(default_factory=list)
    top_drivers: List[Driver] = field(default_factory=list)
    bias: Optional[NetBias] = None
    sections: Dict[str, Any] = field(default_factory=dict)
    failures: List[FetchFailure] = field(default_factory=list)
    config_hash: str = ""
    stale: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "timestamp": self.generated_at.isoformat(),
            "stale": self.stale,
            "session": self.session.to_payload(),
            "next_session": self.next_session.to_payload(),
            "drivers": [d.to_payload() for d in self.top_drivers],
            "all_drivers": [d.to_payload() for d in self.drivers],
            "bias": self.bias.to_payload() if self.bias else None,
            **self.sections,
            "failures": [f.to_payload() for f in self.failures],
            "config_hash": self.config_hash,
        }


ViewBuilder = Callable[["AggregationOrchestrator", bool], Awaitable[AggregatedView]]


class AggregationOrchestrator:
    """Builds, caches and serves aggregated views, and fronts the session state store."""

    def __init__(
        self,
        contracts: Contracts,
        provider: MarketDataProvider,
        clock: Optional[SessionClock] = None,
        detector: Optional[DriverDetector] = None,
        store: Optional[SessionStateStore] = None,
        cache: Optional[SingleFlightCache] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
        weather: Optional[WeatherDataProvider] = None,
    ):
        self.contracts = contracts
        self.provider = provider
        self.weather = weather
        self.clock = clock or SessionClock.from_contracts(contracts)
        self.detector = detector or DriverDetector.from_contracts(contracts)
        self.store = store or SessionStateStore.from_contracts(contracts)
        self.cache = cache or SingleFlightCache()
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))

        views = contracts.views
        self.fetch_timeout = float(views["fetch_timeout_seconds"])
        self.top_n = int(views["top_n"])
        self.news_limit = int(views.get("news_limit", 10))
        self._ttls: Dict[str, float] = dict(views["ttl_by_kind"])
        self._builders: Dict[str, ViewBuilder] = {}
        self.register_view(COMMAND_CENTER, AggregationOrchestrator._build_command_center)
        self.register_view(MARKET_BRIEF, AggregationOrchestrator._build_market_brief)
        self.register_view(DASHBOARD, AggregationOrchestrator._build_dashboard)
        self.register_view(REPORTS_CALENDAR, AggregationOrchestrator._build_reports_calendar)
        if weather is not None:
            self.register_view(WEATHER_REPORT, AggregationOrchestrator._build_weather_report)

    def register_view(self, kind: str, builder: ViewBuilder, ttl: Optional[float] = None) -> None:
        if ttl is not None:
            self._ttls[kind] = float(ttl)
        if kind not in self._ttls:
            raise UnknownViewError(kind)
        self._builders[kind] = builder

    @property
    def view_kinds(self) -> List[str]:
        return sorted(self._builders)

    # ─────────────────────────────────────────────────────────────────────
    # Read path
    # ─────────────────────────────────────────────────────────────────────

    async def get_aggregated_view(self, kind: str, force_refresh: bool = False) -> AggregatedView:
        builder = self._builders.get(kind)
        if builder is None:
            raise UnknownViewError(kind)

        cached = await self.cache.get(
            kind,
            lambda: builder(self, force_refresh),
            ttl=self._ttls[kind],
            force_refresh=force_refresh,
            serve_stale_on=(AllSourcesFailed,),
        )
        if cached.stale:
            return replace(cached.payload, stale=True)
        return cached.payload

    def invalidate_cache(self, kind: str) -> None:
        if kind not in self._builders:
            raise UnknownViewError(kind)
        self.cache.invalidate(kind)

    async def get_bias_breakdown(self, force_refresh: bool = False) -> Dict[str, Any]:
        view = await self.get_aggregated_view(COMMAND_CENTER, force_refresh)
        breakdown = build_breakdown(view.top_drivers, view.sections.get("institutional"))
        breakdown.update({
            "timestamp": view.generated_at.isoformat(),
            "primary": view.sections.get("primary"),
            "final_bias": view.bias.to_payload() if view.bias else None,
            "stale": view.stale,
        })
        return breakdown

    def resolve_current_session(self, now: Optional[datetime] = None) -> SessionWindow:
        return self.clock.resolve_session(now or self.now_fn())

    def resolve_next_session(self, now: Optional[datetime] = None) -> NextSession:
        return self.clock.resolve_next_session(now or self.now_fn())

    # ─────────────────────────────────────────────────────────────────────
    # Ingestion path
    # ─────────────────────────────────────────────────────────────────────

    def record_price_tick(self, session_key, tick: PriceTick, now: Optional[datetime] = None) -> None:
        """Apply a tick, extending the IB when the session is currently inside its IB window."""
        window = self.resolve_current_session(now)
        in_ib = window.key is SessionKey(session_key) and window.is_initial_balance
        self.store.record_tick(session_key, tick, in_initial_balance=in_ib)

    def record_sweep(self, session_key, sweep: SweepEvent) -> None:
        self.store.record_sweep(session_key, sweep)

    def complete_initial_balance(self, session_key) -> None:
        self.store.mark_initial_balance_complete(session_key)

    def reset_session(self, session_key) -> None:
        self.store.reset_session(session_key)

    def ingest_bar(
        self,
        session_key,
        bar: Bar,
        levels: Optional[Mapping[str, Optional[float]]] = None,
        now: Optional[datetime] = None,
    ) -> List[SweepSignal]:
        """Check a bar for sweeps against the given levels (default: the session's own levels and IB),
        record reclaimed sweeps, then apply the bar as a tick."""
        if levels is None:
            current = self.store.get_levels(session_key)
            ib = self.store.get_initial_balance(session_key)
            levels = {"session_high": current.high, "session_low": current.low, "ib_high": ib.high, "ib_low": ib.low}

        now = now or self.now_fn()
        signals = detect_sweeps(bar, levels, now)
        for signal in signals:
            if signal.reclaimed:
                self.store.record_sweep(session_key, signal.to_event())
        self.record_price_tick(
            session_key,
            PriceTick(open=bar.open, high=bar.high, low=bar.low, close=bar.close),
            now,
        )
        return signals

    # ─────────────────────────────────────────────────────────────────────
    # View builders
    # ─────────────────────────────────────────────────────────────────────

    def _quote_targets(self, session_key: SessionKey) -> Dict[str, Dict[str, Any]]:
        """name -> instrument config for every single-symbol quote this cycle."""
        instruments = self.contracts.instruments
        primary = instruments["primary"]
        targets: Dict[str, Dict[str, Any]] = {primary["key"]: primary}
        targets.update(instruments.get("correlations", {}))
        if instruments.get("vix_front_symbol"):
            targets[VIX_FRONT] = {"symbol": instruments["vix_front_symbol"], "name": "VIX Front Month"}
        targets.update(instruments.get("international", {}).get(session_key.value, {}))
        return targets

    async def _fetch_quote(self, name: str, cfg: Mapping[str, Any]) -> Observation:
        raw = await call_collaborator(self.provider.fetch_quote, cfg["symbol"])
        return normalize_observation(name, raw, unit=cfg.get("unit"), label=cfg.get("name"), symbol=cfg["symbol"])

    async def _fetch_map(self, fetch: Callable[[], Any], config: Mapping[str, Mapping[str, Any]]) -> Dict[str, Observation]:
        raw = await call_collaborator(fetch)
        return normalize_observation_map(raw or {}, config)

    async def _fetch_news(self, session_key: SessionKey) -> List[NewsItem]:
        raw = await call_collaborator(self.provider.fetch_filtered_news, session_key.value)
        return finalize_news(raw or [], self.now_fn())[: self.news_limit]

    async def _build_command_center(self, force_refresh: bool = False) -> AggregatedView:
        now = self.now_fn()
        window = self.clock.resolve_session(now)
        next_session = self.clock.resolve_next_session(now)
        instruments = self.contracts.instruments
        targets = self._quote_targets(window.key)
        sectors_cfg = instruments.get("sectors", {})
        stocks_cfg = instruments.get("top_constituents", {}).get("stocks", {})

        calls = [
            guarded(f"quote:{name}", self._fetch_quote, name, cfg, timeout=self.fetch_timeout)
            for name, cfg in targets.items()
        ]
        calls.append(guarded("sectors", self._fetch_map, self.provider.fetch_sector_performance, sectors_cfg,
                             timeout=self.fetch_timeout))
        calls.append(guarded("constituents", self._fetch_map, self.provider.fetch_top_constituents, stocks_cfg,
                             timeout=self.fetch_timeout))
        calls.append(guarded("news", self._fetch_news, window.key, timeout=self.fetch_timeout))

        outcomes: List[FetchOutcome] = await asyncio.gather(*calls)
        failures = [o.failure for o in outcomes if not o.ok]
        if len(failures) == len(outcomes):
            raise AllSourcesFailed(COMMAND_CENTER, failures)
        results = {o.source: o.value for o in outcomes if o.ok}

        quotes: Dict[str, Observation] = {
            name: results[f"quote:{name}"] for name in targets if f"quote:{name}" in results
        }
        sectors: Dict[str, Observation] = results.get("sectors") or {}
        constituents: Dict[str, Observation] = results.get("constituents") or {}
        news: List[NewsItem] = results.get("news") or []

        observations: Dict[str, Observation] = {}
        observations.update(quotes)
        observations.update(sectors)
        observations.update(constituents)
        observations.pop(VIX_FRONT, None)

        try:
            drivers = self.detector.detect(observations, news, now)
            ranked = top_drivers(drivers, self.top_n)
            bias = aggregate(ranked)
            institutional = build_institutional_context(
                quotes,
                self.clock.to_local(now).date(),
                self.contracts.views.get("fomc", []),
                primary_key=instruments["primary"]["key"],
                vix_front_key=VIX_FRONT,
            )
        except InternalScoringError:
            logger.exception("scoring failed for command-center")
            raise
        except Exception as e:
            logger.exception("scoring failed for command-center")
            raise InternalScoringError(f"scoring failed: {e!r}") from e

        primary_key = instruments["primary"]["key"]
        international_names = set(instruments.get("international", {}).get(window.key.value, {}))
        correlations = {n: o.to_payload() for n, o in quotes.items() if n in instruments.get("correlations", {})}

        return AggregatedView(
            kind=COMMAND_CENTER,
            generated_at=now,
            session=window,
            next_session=next_session,
            drivers=drivers,
            top_drivers=ranked,
            bias=bias,
            sections={
                "primary": quotes[primary_key].to_payload() if primary_key in quotes else None,
                "correlations": correlations,
                "international": {n: o.to_payload() for n, o in quotes.items() if n in international_names},
                "sectors": {n: o.to_payload() for n, o in sectors.items()},
                "mag7": {n: o.to_payload() for n, o in constituents.items()},
                "news": [item.to_payload() for item in news],
                "institutional": institutional,
            },
            failures=failures,
            config_hash=self.contracts.config_hash,
        )

    async def _build_market_brief(self, force_refresh: bool = False) -> AggregatedView:
        """Compact view over the command center. A forced brief also recomputes the command center."""
        source = await self.get_aggregated_view(COMMAND_CENTER, force_refresh)
        brief_drivers = top_drivers(source.drivers, min(self.top_n, 3))
        return AggregatedView(
            kind=MARKET_BRIEF,
            generated_at=source.generated_at,
            session=source.session,
            next_session=source.next_session,
            drivers=brief_drivers,
            top_drivers=brief_drivers,
            bias=source.bias,
            sections={
                "primary": source.sections.get("primary"),
                "headline": _brief_headline(source),
            },
            failures=source.failures,
            config_hash=source.config_hash,
            stale=source.stale,
        )

    async def _build_dashboard(self, force_refresh: bool = False) -> AggregatedView:
        """Command center plus the day's event risk and the session levels handoff."""
        source = await self.get_aggregated_view(COMMAND_CENTER, force_refresh)
        today = self.clock.to_local(source.generated_at).date()
        current = source.session.key
        return replace(
            source,
            kind=DASHBOARD,
            sections={
                **source.sections,
                "headline": _brief_headline(source),
                "event_risk": event_risk_summary(today, self.contracts.reports),
                "session_summary": (
                    self.store.session_summary(current) if current in self.store.session_keys else None
                ),
                "levels": self.store.handoff(source.generated_at),
            },
        )

    async def _build_reports_calendar(self, force_refresh: bool = False) -> AggregatedView:
        """Scheduled reports from the contract. Needs no collaborator, so it never fails a fetch."""
        now = self.now_fn()
        today = self.clock.to_local(now).date()
        reports = self.contracts.reports
        return AggregatedView(
            kind=REPORTS_CALENDAR,
            generated_at=now,
            session=self.clock.resolve_session(now),
            next_session=self.clock.resolve_next_session(now),
            sections={
                "event_risk": event_risk_summary(today, reports),
                "primary_reports": reports_for_symbol(self.contracts.instruments["primary"]["key"], reports),
                "schedule": {
                    "weekly": reports["weekly"],
                    "monthly": reports["monthly"],
                    "quarterly": reports["quarterly"],
                    "annual": reports["annual"],
                    "central_banks": reports["central_banks"],
                },
            },
            config_hash=self.contracts.config_hash,
        )

    async def _fetch_drought(self) -> Dict[str, Any]:
        return drought_summary(await call_collaborator(self.weather.fetch_drought_statistics))

    async def _fetch_outlook(self) -> Dict[str, Any]:
        return outlook_summary(await call_collaborator(self.weather.fetch_outlook))

    async def _build_weather_report(self, force_refresh: bool = False) -> AggregatedView:
        """Drought and outlook fetched in parallel; degree days are a seasonal estimate and always present."""
        now = self.now_fn()
        today = self.clock.to_local(now).date()

        outcomes: List[FetchOutcome] = await asyncio.gather(
            guarded("drought", self._fetch_drought, timeout=self.fetch_timeout),
            guarded("outlook", self._fetch_outlook, timeout=self.fetch_timeout),
        )
        failures = [o.failure for o in outcomes if not o.ok]
        if len(failures) == len(outcomes):
            raise AllSourcesFailed(WEATHER_REPORT, failures)
        drought, outlook = (o.value if o.ok else None for o in outcomes)

        degree_days = seasonal_degree_days(today)
        return AggregatedView(
            kind=WEATHER_REPORT,
            generated_at=now,
            session=self.clock.resolve_session(now),
            next_session=self.clock.resolve_next_session(now),
            sections={
                "drought": drought,
                "outlook": outlook,
                "degree_days": degree_days,
                "ag_impact": ag_impact(drought, outlook),
                "headline": weather_headline(drought, outlook, degree_days),
            },
            failures=failures,
            config_hash=self.contracts.config_hash,
        )


def _brief_headline(view: AggregatedView) -> str:
    if view.bias is None:
        return view.session.name
    lead = f"; led by {view.top_drivers[0].name}" if view.top_drivers else ""
    return f"{view.session.name}: {view.bias.direction.value} ({view.bias.confidence}%){lead}"
