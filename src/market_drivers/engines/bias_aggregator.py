"""
Bias Aggregator - reduces a driver list to one NetBias.

Pure and deterministic: no clock, no randomness.
"""
from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..core.errors import InternalScoringError
from ..core.types import BiasDirection, Direction, Driver, DriverType, NetBias

CLASSIFICATION_PCT = 65.0


def _check(driver: Driver) -> None:
    if not isinstance(driver.impact, (int, float)) or not math.isfinite(driver.impact) or driver.impact < 0:
        raise InternalScoringError(f"driver {driver.name!r} has invalid impact {driver.impact!r}")


def aggregate(drivers: Sequence[Driver]) -> NetBias:
    bullish = 0.0
    bearish = 0.0
    for d in drivers:
        _check(d)
        if d.direction is Direction.BULLISH:
            bullish += d.impact
        elif d.direction is Direction.BEARISH:
            bearish += d.impact

    total = bullish + bearish
    if total == 0:
        return NetBias(BiasDirection.NEUTRAL, 50, 0.0, 0.0, "No strong drivers active")

    bullish_pct = bullish / total * 100
    bearish_pct = bearish / total * 100

    if bullish_pct > CLASSIFICATION_PCT:
        count = sum(1 for d in drivers if d.direction is Direction.BULLISH)
        return NetBias(BiasDirection.BULLISH, round(bullish_pct), bullish, bearish, f"{count} bullish drivers active")
    if bearish_pct > CLASSIFICATION_PCT:
        count = sum(1 for d in drivers if d.direction is Direction.BEARISH)
        return NetBias(BiasDirection.BEARISH, round(bearish_pct), bullish, bearish, f"{count} bearish drivers active")
    return NetBias(
        BiasDirection.MIXED,
        round(max(bullish_pct, bearish_pct)),
        bullish,
        bearish,
        "Conflicting drivers, choppy conditions",
    )


# ─────────────────────────────────────────────────────────────────────────────
# Breakdown
# ─────────────────────────────────────────────────────────────────────────────

CATEGORY_BY_TYPE = {
    DriverType.CORRELATION: "correlations",
    DriverType.DIVERGENCE: "correlations",
    DriverType.INTERNATIONAL: "international",
    DriverType.SECTOR: "sectors",
    DriverType.MAG7: "mag7",
    DriverType.NEWS: "event_risk",
}

CATEGORIES = ("correlations", "event_risk", "international", "sectors", "mag7", "context")


def signed_score(driver: Driver) -> int:
    if driver.direction is Direction.BULLISH:
        return round(driver.impact)
    if driver.direction is Direction.BEARISH:
        return -round(driver.impact)
    return 0


def _usable(section: Optional[Mapping[str, Any]]) -> bool:
    return bool(section) and "error" not in section


def institutional_entries(institutional: Mapping[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    """Fixed scores for the institutional context read, grouped by category."""
    out: Dict[str, List[Dict[str, Any]]] = {"correlations": [], "context": []}

    vix = institutional.get("vix_term_structure")
    if _usable(vix):
        out["correlations"].append({
            "factor": "VIX Structure",
            "value": vix["structure"],
            "score": -8 if vix["structure"] == "BACKWARDATION" else 2,
            "reason": vix["signal"],
        })

    gap = institutional.get("gap_analysis")
    if _usable(gap):
        pct = gap["gap_percent"]
        out["context"].append({
            "factor": "Gap",
            "value": f"{pct:.2f}%",
            "score": -3 if pct < -0.3 else 3 if pct > 0.3 else 0,
            "reason": gap["context"],
        })

    seasonality = institutional.get("seasonality")
    if _usable(seasonality):
        bias = seasonality["overall_bias"]
        out["context"].append({
            "factor": "Seasonality",
            "value": seasonality["month"],
            "score": 3 if bias == "BULLISH" else -3 if bias == "BEARISH" else 0,
            "reason": f"{seasonality['month']} historically {bias.lower()}",
        })

    opex = institutional.get("opex_calendar")
    if _usable(opex):
        status = opex["opex_status"]
        out["context"].append({
            "factor": "OPEX",
            "value": status,
            "score": -3 if status == "OPEX_TODAY" else -2 if status == "OPEX_TOMORROW" else 0,
            "reason": opex["context"],
        })
    return out


def build_breakdown(drivers: Sequence[Driver], institutional: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    categories: Dict[str, List[Dict[str, Any]]] = {name: [] for name in CATEGORIES}

    for d in drivers:
        _check(d)
        categories[CATEGORY_BY_TYPE[d.type]].append({
            "factor": d.name,
            "value": d.value,
            "score": signed_score(d),
            "reason": d.reason,
        })

    if institutional:
        for category, entries in institutional_entries(institutional).items():
            categories[category].extend(entries)

    bullish = sum(item["score"] for items in categories.values() for item in items if item["score"] > 0)
    bearish = sum(-item["score"] for items in categories.values() for item in items if item["score"] < 0)

    return {
        "categories": categories,
        "totals": {
            "bullish": bullish,
            "bearish": bearish,
            "net": bullish - bearish,
            "normalized": round((bullish - bearish) / max(bullish + bearish, 1) * 100),
        },
    }
