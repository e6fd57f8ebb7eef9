"""
Sweep detection: classifies a bar against named price levels.

A sweep is a wick through a level that closes back on the original side.
A break is a move through the level that holds.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..core.types import SweepEvent


class SweepType(str, Enum):
    BULLISH_SWEEP = "BULLISH_SWEEP"
    BEARISH_SWEEP = "BEARISH_SWEEP"
    FAILED_SUPPORT = "FAILED_SUPPORT"
    BREAKOUT = "BREAKOUT"


@dataclass(frozen=True)
class Bar:
    open: float
    high: float
    low: float
    close: float


@dataclass(frozen=True)
class SweepSignal:
    level_name: str
    level_price: float
    type: SweepType
    sweep_price: float
    close_price: float
    reclaimed: bool
    timestamp: str
    interpretation: str

    def to_event(self) -> SweepEvent:
        return SweepEvent(level=self.level_name, price=self.level_price, time=self.timestamp, reclaimed=self.reclaimed)

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        return payload


def detect_sweeps(bar: Bar, levels: Mapping[str, Optional[float]], now: Optional[datetime] = None) -> List[SweepSignal]:
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    out: List[SweepSignal] = []
    for name, price in levels.items():
        if not price:
            continue

        def _signal(kind: SweepType, sweep_price: float, reclaimed: bool, text: str) -> SweepSignal:
            return SweepSignal(name, price, kind, sweep_price, bar.close, reclaimed, stamp, text)

        if bar.low < price < bar.close and bar.open > price:
            out.append(_signal(SweepType.BULLISH_SWEEP, bar.low, True, f"{name} swept and reclaimed, bullish liquidity grab"))
        if bar.high > price > bar.close and bar.open < price:
            out.append(_signal(SweepType.BEARISH_SWEEP, bar.high, True, f"{name} swept and reclaimed, bearish liquidity grab"))
        if bar.low < price and bar.close < price < bar.open:
            out.append(_signal(SweepType.FAILED_SUPPORT, bar.low, False, f"{name} broken, support failed"))
        if bar.high > price and bar.open < price < bar.close:
            out.append(_signal(SweepType.BREAKOUT, bar.high, False, f"{name} broken, resistance failed"))
    return out


def summarize_sweeps(signals: Sequence[SweepSignal]) -> Dict[str, Any]:
    counts = {kind: sum(1 for s in signals if s.type is kind) for kind in SweepType}
    bullish = counts[SweepType.BULLISH_SWEEP]
    bearish = counts[SweepType.BEARISH_SWEEP]
    failed = counts[SweepType.FAILED_SUPPORT]
    breakouts = counts[SweepType.BREAKOUT]

    bias = "NEUTRAL"
    if bullish > bearish + 1:
        bias = "BULLISH"
    elif bearish > bullish + 1:
        bias = "BEARISH"

    context = ""
    if failed > breakouts:
        context = "Support levels failing, bearish pressure"
        if bias == "NEUTRAL":
            bias = "BEARISH"
    elif breakouts > failed:
        context = "Resistance levels failing, bullish pressure"
        if bias == "NEUTRAL":
            bias = "BULLISH"

    return {
        "total": len(signals),
        "bullish_sweeps": bullish,
        "bearish_sweeps": bearish,
        "failed_supports": failed,
        "breakouts": breakouts,
        "bias": bias,
        "context": context,
    }
