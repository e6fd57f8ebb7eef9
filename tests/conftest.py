from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from market_drivers.core.config import load_contracts
from market_drivers.core.types import Direction, NewsImpact, NewsItem

ET = ZoneInfo("America/New_York")

# Wednesday, mid-morning RTH
NOW = datetime(2026, 10, 14, 10, 0, tzinfo=ET)


def quote(price: float, pct: float, **extra):
    q = {"price": price, "change": price * pct / 100, "change_percent": pct}
    q.update(extra)
    return q


def default_quotes():
    return {
        "ES=F": quote(6000.0, 0.2, previous_close=5988.0, day_high=6010.0, day_low=5980.0),
        "^VIX": {"price": 22.0, "change": 1.63, "change_percent": 8.0},
        "^TNX": {"price": 4.2, "change": -0.03, "change_percent": -0.7},
        "DX-Y.NYB": quote(104.0, 0.1),
        "HYG": quote(80.0, 0.1),
        "TLT": quote(90.0, 0.0),
        "NQ=F": quote(21000.0, 0.6),
        "RTY=F": quote(2400.0, 0.2),
        "YM=F": quote(44000.0, 0.1),
        "VX=F": quote(23.0, 1.0),
    }


class FakeProvider:
    """In-memory collaborator. `fail` names sources that raise: symbols, 'sectors', 'constituents', 'news' or 'all'."""

    def __init__(self, quotes=None, sectors=None, constituents=None, news=None, fail=(), delays=None):
        self.quotes = default_quotes() if quotes is None else quotes
        self.sectors = {"XLK": quote(200.0, 1.0)} if sectors is None else sectors
        self.constituents = {"NVDA": quote(100.0, -2.0)} if constituents is None else constituents
        self.news = [
            NewsItem(
                headline="Fed signals rate cut at next meeting",
                published_at=NOW - timedelta(minutes=10),
                source="Wire",
                bias=Direction.BULLISH,
                impact=NewsImpact.HIGH,
            )
        ] if news is None else news
        self.fail = set(fail)
        self.delays = delays or {}
        self.quote_calls = 0

    def _failing(self, source):
        return "all" in self.fail or source in self.fail

    async def fetch_quote(self, symbol):
        self.quote_calls += 1
        await asyncio.sleep(self.delays.get(symbol, 0))
        if self._failing(symbol):
            raise ConnectionError(f"{symbol} down")
        return self.quotes[symbol]

    async def fetch_sector_performance(self):
        if self._failing("sectors"):
            raise ConnectionError("sectors down")
        return self.sectors

    async def fetch_top_constituents(self):
        if self._failing("constituents"):
            raise ConnectionError("constituents down")
        return self.constituents

    async def fetch_filtered_news(self, session_key):
        if self._failing("news"):
            raise ConnectionError("news down")
        return self.news


def drought_rows(none=60.0, d0=20.0, d1=10.0, d2=5.0, d3=3.0, d4=2.0):
    return [{"mapDate": "2026-10-13T00:00:00", "none": none, "d0": d0, "d1": d1, "d2": d2, "d3": d3, "d4": d4}]


def outlook_features(*cats):
    return [{"attributes": {"cat": cat, "prob": 40}} for cat in cats]


class FakeWeather:
    """In-memory weather collaborator. `fail` names sources that raise: 'drought', 'outlook'."""

    def __init__(self, drought=None, outlook=None, fail=()):
        self.drought = drought_rows() if drought is None else drought
        self.outlook = {
            "temperature": outlook_features("Above", "Above", "Below"),
            "precipitation": outlook_features("Below", "Below", "Normal"),
        } if outlook is None else outlook
        self.fail = set(fail)
        self.calls = 0

    async def fetch_drought_statistics(self):
        self.calls += 1
        if "drought" in self.fail:
            raise ConnectionError("drought down")
        return self.drought

    async def fetch_outlook(self):
        self.calls += 1
        if "outlook" in self.fail:
            raise ConnectionError("outlook down")
        return self.outlook


@pytest.fixture
def contracts():
    """Packaged contracts, loaded fresh per test."""
    return load_contracts()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def provider_cls():
    return FakeProvider


@pytest.fixture
def weather():
    return FakeWeather()


@pytest.fixture
def weather_cls():
    return FakeWeather
