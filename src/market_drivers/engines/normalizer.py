"""
Metric normalizer - shapes raw provider responses into Observations and NewsItems.

Providers may hand back an Observation, a flat quote mapping, or a Yahoo chart payload.
"""
from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..core.types import Direction, NewsImpact, NewsItem, Observation

YIELD_PERCENT = "yield_percent"


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _require_finite(name: str, **values: Optional[float]) -> None:
    for field, value in values.items():
        if value is not None and not math.isfinite(value):
            raise ValueError(f"quote for {name} has non-finite {field}: {value!r}")


def basis_points(change_absolute: float, unit: Optional[str]) -> Optional[float]:
    """Yield quotes are in percent, so one hundredth of a point is one basis point."""
    if unit != YIELD_PERCENT:
        return None
    return float(round(change_absolute * 100))


def observation_from_quote(
    name: str,
    raw: Mapping[str, Any],
    unit: Optional[str] = None,
    label: Optional[str] = None,
    symbol: Optional[str] = None,
) -> Observation:
    """Build an Observation from a flat quote mapping.

    Accepts price/previous_close and derives change fields when they are missing.
    """
    price = _first(raw, "price", "value", "last")
    if price is None:
        raise ValueError(f"quote for {name} has no price")
    price = float(price)
    prev = _first(raw, "previous_close", "previousClose", "prev_close")
    prev = float(prev) if prev is not None else None

    change = _first(raw, "change", "change_absolute")
    if change is None:
        if prev is None:
            raise ValueError(f"quote for {name} has neither change nor previous close")
        change = price - prev
    change = float(change)

    change_pct = _first(raw, "change_percent", "changePercent")
    if change_pct is None:
        base = prev if prev else price - change
        if not base:
            raise ValueError(f"quote for {name} has no base for percent change")
        change_pct = change / base * 100
    change_pct = float(change_pct)

    bps = _first(raw, "change_basis_points", "changeBps")
    bps = float(bps) if bps is not None else basis_points(change, unit)
    _require_finite(name, price=price, change=change, change_percent=change_pct, change_basis_points=bps)

    return Observation(
        name=name,
        value=price,
        change_absolute=change,
        change_percent=change_pct,
        change_basis_points=bps,
        label=label or raw.get("name"),
        symbol=symbol or raw.get("symbol"),
        previous_close=prev,
        day_high=_first(raw, "day_high", "dayHigh", "high"),
        day_low=_first(raw, "day_low", "dayLow", "low"),
        volume=raw.get("volume"),
    )


def observation_from_chart(
    name: str,
    payload: Mapping[str, Any],
    unit: Optional[str] = None,
    label: Optional[str] = None,
    symbol: Optional[str] = None,
) -> Observation:
    """Build an Observation from a Yahoo v8 chart response."""
    results = (payload.get("chart") or {}).get("result") or []
    if not results:
        raise ValueError(f"chart payload for {name} has no result")
    meta = results[0].get("meta") or {}
    quote = {
        "price": meta.get("regularMarketPrice"),
        "previous_close": _first(meta, "chartPreviousClose", "previousClose"),
        "day_high": meta.get("regularMarketDayHigh"),
        "day_low": meta.get("regularMarketDayLow"),
        "volume": meta.get("regularMarketVolume"),
        "symbol": meta.get("symbol"),
    }
    return observation_from_quote(name, quote, unit=unit, label=label, symbol=symbol)


def normalize_observation(
    name: str,
    raw: Any,
    unit: Optional[str] = None,
    label: Optional[str] = None,
    symbol: Optional[str] = None,
) -> Observation:
    if isinstance(raw, Observation):
        _require_finite(
            name,
            price=raw.value,
            change=raw.change_absolute,
            change_percent=raw.change_percent,
            change_basis_points=raw.change_basis_points,
        )
        updates: Dict[str, Any] = {"name": name}
        if label and not raw.label:
            updates["label"] = label
        if symbol and not raw.symbol:
            updates["symbol"] = symbol
        if raw.change_basis_points is None and unit:
            updates["change_basis_points"] = basis_points(raw.change_absolute, unit)
        return replace(raw, **updates)
    if isinstance(raw, Mapping):
        if "chart" in raw:
            return observation_from_chart(name, raw, unit=unit, label=label, symbol=symbol)
        return observation_from_quote(name, raw, unit=unit, label=label, symbol=symbol)
    raise TypeError(f"cannot normalize {type(raw).__name__} for {name}")


def normalize_observation_map(
    raw: Mapping[str, Any],
    config: Mapping[str, Mapping[str, Any]],
) -> Dict[str, Observation]:
    """Normalize a provider's symbol->quote map, keeping configured symbols in config order."""
    out: Dict[str, Observation] = {}
    for name, cfg in config.items():
        if name in raw and raw[name] is not None:
            out[name] = normalize_observation(name, raw[name], label=cfg.get("name"), symbol=cfg.get("symbol", name))
    return out


# ─────────────────────────────────────────────────────────────────────────────
# News
# ─────────────────────────────────────────────────────────────────────────────

def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Epoch seconds or milliseconds
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"unparseable news timestamp: {value!r}")


def _direction(value: Any) -> Direction:
    if isinstance(value, Direction):
        return value
    try:
        return Direction(str(value or "neutral").upper())
    except ValueError:
        return Direction.NEUTRAL


def normalize_news_item(raw: Any) -> NewsItem:
    if isinstance(raw, NewsItem):
        return raw
    headline = _first(raw, "headline", "title")
    if not headline:
        raise ValueError("news item has no headline")
    impact = raw.get("impact")
    return NewsItem(
        headline=str(headline),
        published_at=_parse_time(_first(raw, "published_at", "timestamp", "datetime")),
        source=raw.get("source") or "News",
        bias=_direction(raw.get("bias")),
        impact=NewsImpact(str(impact).upper()) if impact else None,
        recency_minutes=raw.get("recency_minutes"),
        url=raw.get("url"),
    )


def _matches(headline: str, keywords: Iterable[str]) -> bool:
    return any(k.lower() in headline for k in keywords)


def tag_news(
    items: Sequence[Any],
    session_key: str,
    keywords: Mapping[str, Any],
    now: Optional[datetime] = None,
    limit: int = 10,
) -> List[NewsItem]:
    """Keep headlines matching instrument keywords, tag impact and recency.

    HIGH if any high-impact keyword matches, otherwise MEDIUM. Sorted HIGH first,
    then most recent first.
    """
    now = now or datetime.now(timezone.utc)
    high = keywords.get("high_impact", [])
    medium = list(keywords.get("medium_impact", [])) + list(keywords.get("by_session", {}).get(session_key, []))

    tagged: List[NewsItem] = []
    for raw in items:
        item = normalize_news_item(raw)
        headline = item.headline.lower()
        if _matches(headline, high):
            impact = NewsImpact.HIGH
        elif _matches(headline, medium):
            impact = NewsImpact.MEDIUM
        else:
            continue
        recency = max(0, round((now - item.published_at).total_seconds() / 60))
        tagged.append(replace(item, impact=impact, recency_minutes=recency))

    tagged.sort(key=lambda n: (n.impact is not NewsImpact.HIGH, n.recency_minutes))
    return tagged[:limit]


def finalize_news(items: Sequence[Any], now: Optional[datetime] = None) -> List[NewsItem]:
    """Normalize already-filtered news, filling recency where the provider left it out."""
    now = now or datetime.now(timezone.utc)
    out: List[NewsItem] = []
    for raw in items:
        item = normalize_news_item(raw)
        if item.recency_minutes is None:
            recency = max(0, round((now - item.published_at).total_seconds() / 60))
            item = replace(item, recency_minutes=recency)
        out.append(item)
    return out
