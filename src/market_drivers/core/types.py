from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import json
import hashlib


def stable_json(obj: Any) -> str:
    # Deterministic JSON serialization
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)

def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


class SessionKey(str, Enum):
    ASIA = "ASIA"
    LONDON = "LONDON"
    US_PRE = "US_PRE"
    US_RTH = "US_RTH"
    SETTLEMENT = "SETTLEMENT"
    WEEKEND = "WEEKEND"


class DriverType(str, Enum):
    CORRELATION = "CORRELATION"
    DIVERGENCE = "DIVERGENCE"
    INTERNATIONAL = "INTERNATIONAL"
    SECTOR = "SECTOR"
    MAG7 = "MAG7"
    NEWS = "NEWS"


class Direction(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class BiasDirection(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    MIXED = "MIXED"
    NEUTRAL = "NEUTRAL"


class NewsImpact(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


# ─────────────────────────────────────────────────────────────────────────────
# Sessions
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionDefinition:
    """Static registry definition of a trading session (reference timezone)."""
    key: SessionKey
    name: str
    start_time: Optional[time]
    end_time: Optional[time]
    crosses_midnight: bool = False
    ib_duration_minutes: int = 0
    focus_instruments: Tuple[str, ...] = ()
    description: str = ""
    track_levels: bool = False

    @property
    def start_minutes(self) -> int:
        return self.start_time.hour * 60 + self.start_time.minute

    @property
    def end_minutes(self) -> int:
        return self.end_time.hour * 60 + self.end_time.minute

    def contains(self, minute_of_day: int) -> bool:
        """[start, end) membership, wrapping past midnight when configured."""
        if self.start_time is None or self.end_time is None:
            return False
        if self.crosses_midnight:
            return minute_of_day >= self.start_minutes or minute_of_day < self.end_minutes
        return self.start_minutes <= minute_of_day < self.end_minutes

    def to_payload(self) -> Dict[str, Any]:
        return {
            "key": self.key.value,
            "name": self.name,
            "start": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end": self.end_time.strftime("%H:%M") if self.end_time else None,
            "crosses_midnight": self.crosses_midnight,
            "ib_duration_minutes": self.ib_duration_minutes,
            "focus": list(self.focus_instruments),
            "description": self.description,
        }


@dataclass(frozen=True)
class SessionWindow:
    """Active session at a point in time. Derived fresh on every query."""
    definition: SessionDefinition
    is_initial_balance: bool
    ib_minutes_remaining: int
    current_local_time: datetime

    @property
    def key(self) -> SessionKey:
        return self.definition.key

    @property
    def name(self) -> str:
        return self.definition.name

    def to_payload(self) -> Dict[str, Any]:
        payload = self.definition.to_payload()
        payload.update({
            "is_initial_balance": self.is_initial_balance,
            "ib_minutes_remaining": self.ib_minutes_remaining,
            "current_time": self.current_local_time.strftime("%I:%M %p"),
            "current_local_time": self.current_local_time.isoformat(),
        })
        return payload


@dataclass(frozen=True)
class NextSession:
    definition: SessionDefinition
    minutes_until: int

    @property
    def key(self) -> SessionKey:
        return self.definition.key

    @property
    def countdown(self) -> str:
        return f"{self.minutes_until // 60}h {self.minutes_until % 60}m"

    def to_payload(self) -> Dict[str, Any]:
        payload = self.definition.to_payload()
        payload.update({"minutes_until": self.minutes_until, "countdown": self.countdown})
        return payload


@dataclass(frozen=True)
class PriceTick:
    """Price/order-flow update pushed by the ingestion path.

    delta and volume are cumulative session counters supplied by the caller.
    """
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    delta: Optional[float] = None
    volume: Optional[float] = None


@dataclass(frozen=True)
class SweepEvent:
    level: str
    price: float
    time: str
    reclaimed: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionLevels:
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None
    close: Optional[float] = None
    delta: float = 0.0
    volume: float = 0.0
    sweeps: List[SweepEvent] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "high": self.high,
            "low": self.low,
            "open": self.open,
            "close": self.close,
            "delta": self.delta,
            "volume": self.volume,
            "sweeps": [s.to_payload() for s in self.sweeps],
        }


@dataclass
class InitialBalanceLevels:
    high: Optional[float] = None
    low: Optional[float] = None
    complete: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


# ─────────────────────────────────────────────────────────────────────────────
# Observations and drivers
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Observation:
    """Normalized metric snapshot for one aggregation cycle."""
    name: str
    value: float
    change_absolute: float
    change_percent: float
    change_basis_points: Optional[float] = None
    label: Optional[str] = None
    symbol: Optional[str] = None
    previous_close: Optional[float] = None
    day_high: Optional[float] = None
    day_low: Optional[float] = None
    volume: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.label or self.name

    def to_payload(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class NewsItem:
    headline: str
    published_at: datetime
    source: str = "News"
    bias: Direction = Direction.NEUTRAL
    impact: Optional[NewsImpact] = None
    recency_minutes: Optional[int] = None
    url: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "headline": self.headline,
            "published_at": self.published_at.isoformat(),
            "source": self.source,
            "bias": self.bias.value,
            "impact": self.impact.value if self.impact else None,
            "recency_minutes": self.recency_minutes,
            "url": self.url,
        }


@dataclass(frozen=True)
class Driver:
    type: DriverType
    name: str
    direction: Direction
    impact: float
    reason: str
    raw_observation: Any = None
    value: Optional[str] = None
    change: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "name": self.name,
            "direction": self.direction.value,
            "impact": round(self.impact, 4),
            "reason": self.reason,
            "value": self.value,
            "change": self.change,
        }


@dataclass(frozen=True)
class NetBias:
    direction: BiasDirection
    confidence: int
    bullish_score: float = 0.0
    bearish_score: float = 0.0
    summary: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "confidence": self.confidence,
            "bullish_score": round(self.bullish_score, 4),
            "bearish_score": round(self.bearish_score, 4),
            "summary": self.summary,
        }


@dataclass(frozen=True)
class FetchFailure:
    source: str
    error: str

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)
