"""
FastAPI surface for aggregated market-driver views and session state ingestion.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from ..core.config import Contracts, load_contracts
from ..core.errors import AllSourcesFailed, UnknownSessionError, UnknownViewError
from ..core.types import PriceTick, SessionKey, SweepEvent
from ..engines.orchestrator import AggregationOrchestrator, MarketDataProvider, WeatherDataProvider
from ..engines.sweep_detector import Bar, summarize_sweeps
from .models import BarRequest, SweepRequest, TickRequest

logger = logging.getLogger(__name__)


def _session_key(key: str) -> SessionKey:
    try:
        return SessionKey(key.upper())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"unknown session: {key}") from None


def create_app(
    orchestrator: Optional[AggregationOrchestrator] = None,
    contracts: Optional[Contracts] = None,
    provider: Optional[MarketDataProvider] = None,
    weather: Optional[WeatherDataProvider] = None,
) -> FastAPI:
    """Build the app around an orchestrator (or one assembled from contracts + providers)."""
    if orchestrator is None:
        contracts = contracts or load_contracts()
        if provider is None:
            from ..integrations import YahooQuoteProvider
            provider = YahooQuoteProvider(contracts)
        if weather is None:
            from ..integrations.weather import WeatherProvider
            weather = WeatherProvider()
        orchestrator = AggregationOrchestrator(contracts, provider, weather=weather)

    app = FastAPI(title="Market Drivers API", version="1.0.0")
    app.state.orchestrator = orchestrator

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ─────────────────────────────────────────────────────────────────────
    # Aggregated views
    # ─────────────────────────────────────────────────────────────────────

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "config_hash": orchestrator.contracts.config_hash,
            "views": orchestrator.view_kinds,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/views/{kind}")
    async def get_view(kind: str, refresh: bool = Query(default=False)):
        try:
            view = await orchestrator.get_aggregated_view(kind, force_refresh=refresh)
        except UnknownViewError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except AllSourcesFailed as e:
            raise HTTPException(
                status_code=503,
                detail={"error": str(e), "retryable": e.retryable, "failures": [f.to_payload() for f in e.failures]},
            ) from e
        return view.to_payload()

    @app.post("/api/views/{kind}/invalidate")
    async def invalidate_view(kind: str):
        try:
            orchestrator.invalidate_cache(kind)
        except UnknownViewError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return {"status": "invalidated", "kind": kind}

    @app.get("/api/bias/breakdown")
    async def bias_breakdown(refresh: bool = Query(default=False)):
        try:
            return await orchestrator.get_bias_breakdown(force_refresh=refresh)
        except AllSourcesFailed as e:
            raise HTTPException(status_code=503, detail={"error": str(e), "retryable": e.retryable}) from e

    # ─────────────────────────────────────────────────────────────────────
    # Session clock + state
    # ─────────────────────────────────────────────────────────────────────

    @app.get("/api/session/current")
    async def current_session():
        return {
            "current": orchestrator.resolve_current_session().to_payload(),
            "next": orchestrator.resolve_next_session().to_payload(),
        }

    @app.get("/api/session/levels")
    async def session_levels():
        return orchestrator.store.handoff()

    @app.get("/api/session/summary/{key}")
    async def session_summary(key: str):
        try:
            return orchestrator.store.session_summary(_session_key(key))
        except UnknownSessionError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.post("/api/session/{key}/tick")
    async def record_tick(key: str, body: TickRequest):
        session_key = _session_key(key)
        try:
            orchestrator.record_price_tick(session_key, PriceTick(**body.model_dump()))
            return {"status": "ok", "levels": orchestrator.store.get_levels(session_key).to_payload()}
        except UnknownSessionError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.post("/api/session/{key}/sweep")
    async def record_sweep(key: str, body: SweepRequest):
        session_key = _session_key(key)
        sweep = SweepEvent(
            level=body.level,
            price=body.price,
            time=body.time or datetime.now(timezone.utc).isoformat(),
            reclaimed=body.reclaimed,
        )
        try:
            orchestrator.record_sweep(session_key, sweep)
        except UnknownSessionError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return {"status": "ok", "sweep": sweep.to_payload()}

    @app.post("/api/session/{key}/bars")
    async def ingest_bar(key: str, body: BarRequest):
        session_key = _session_key(key)
        bar = Bar(open=body.open, high=body.high, low=body.low, close=body.close)
        try:
            signals = orchestrator.ingest_bar(session_key, bar, body.levels)
        except UnknownSessionError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return {
            "sweeps": [s.to_payload() for s in signals],
            "summary": summarize_sweeps(signals),
        }

    @app.post("/api/session/{key}/ib-complete")
    async def complete_ib(key: str):
        session_key = _session_key(key)
        try:
            orchestrator.complete_initial_balance(session_key)
            return {"status": "ok", "initial_balance": orchestrator.store.get_initial_balance(session_key).to_payload()}
        except UnknownSessionError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.post("/api/session/{key}/reset")
    async def reset_session(key: str):
        session_key = _session_key(key)
        try:
            orchestrator.reset_session(session_key)
        except UnknownSessionError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        logger.info(f"session {session_key.value} reset")
        return {"status": "reset", "session": session_key.value}

    return app
