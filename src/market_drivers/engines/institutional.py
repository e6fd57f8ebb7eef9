"""
Institutional context - desk-level reads derived from already-fetched quotes.

All functions are pure. A missing input yields an {"error": ...} section
instead of raising, so one absent quote never blanks the whole context.
"""
from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..core.types import Observation

ES_ATR_14 = 45.0
QUARTERLY_MONTHS = (3, 6, 9, 12)

# Average S&P daily return by weekday (Monday=0) and by month, in percent.
DAY_AVG_RETURN = {0: 0.05, 1: 0.08, 2: 0.02, 3: 0.03, 4: -0.02, 5: 0.0, 6: 0.0}
MONTH_AVG_RETURN = {
    1: 0.10, 2: -0.02, 3: 0.05, 4: 0.12, 5: 0.01, 6: 0.02,
    7: 0.08, 8: -0.03, 9: -0.08, 10: 0.15, 11: 0.18, 12: 0.12,
}


def vix_term_structure(spot: Optional[Observation], front: Optional[Observation]) -> Dict[str, Any]:
    if spot is None or front is None:
        return {"error": "Unable to fetch VIX structure"}
    spread = spot.value - front.value
    if spread > 0.5:
        structure, signal = "BACKWARDATION", "Near-term fear elevated, risk-off warning"
    elif spread < -1:
        structure, signal = "CONTANGO", "Normal term structure, market calm"
    else:
        structure, signal = "FLAT", "Transitioning, watch for direction"
    return {
        "vix_spot": spot.value,
        "vix_front": front.value,
        "spread": round(spread, 2),
        "structure": structure,
        "signal": signal,
        "is_warning": structure == "BACKWARDATION",
    }


def credit_spread(hyg: Optional[Observation], tlt: Optional[Observation]) -> Dict[str, Any]:
    if hyg is None or tlt is None:
        return {"error": "Unable to fetch credit spread"}
    hyg_chg, tlt_chg = hyg.change_percent, tlt.change_percent
    if hyg_chg < -0.2 and tlt_chg > 0.2:
        signal, interpretation = "WIDENING", "Credit selling, treasuries bid. Flight to quality, RISK-OFF"
    elif hyg_chg > 0.2 and tlt_chg < -0.2:
        signal, interpretation = "NARROWING", "Credit bid, treasuries selling. Risk appetite healthy, RISK-ON"
    elif hyg_chg < -0.3:
        signal, interpretation = "CREDIT_STRESS", "High yield selling hard. Credit leading lower, WARNING"
    else:
        signal, interpretation = "NEUTRAL", "No significant credit signal"
    return {
        "hyg": {"price": hyg.value, "change": hyg_chg},
        "tlt": {"price": tlt.value, "change": tlt_chg},
        "spread_direction": round(hyg_chg - tlt_chg, 4),
        "signal": signal,
        "interpretation": interpretation,
        "is_warning": signal in ("WIDENING", "CREDIT_STRESS"),
    }


def gap_analysis(primary: Optional[Observation], atr: float = ES_ATR_14) -> Dict[str, Any]:
    """Overnight gap of the primary instrument from its previous close."""
    if primary is None or not primary.previous_close:
        return {"error": "Unable to calculate gap"}
    prev = primary.previous_close
    gap_points = primary.value - prev
    gap_percent = gap_points / prev * 100
    high = primary.day_high if primary.day_high is not None else primary.value
    low = primary.day_low if primary.day_low is not None else primary.value
    overnight_range = high - low

    if gap_percent > 0.05:
        gap_type = "GAP_UP"
    elif gap_percent < -0.05:
        gap_type = "GAP_DOWN"
    else:
        gap_type = "FLAT"

    abs_gap = abs(gap_percent)
    if abs_gap > 0.5:
        fill_probability, context = 52, "Large gap, may not fill today"
    elif abs_gap > 0.3:
        fill_probability, context = 68, "Moderate gap, likely to test fill level"
    else:
        fill_probability, context = 78, "Small gap, high fill probability"

    return {
        "previous_close": prev,
        "current_price": primary.value,
        "gap_points": round(gap_points, 2),
        "gap_percent": round(gap_percent, 4),
        "gap_type": gap_type,
        "globex_high": primary.day_high,
        "globex_low": primary.day_low,
        "overnight_range": round(overnight_range, 2),
        "atr14": atr,
        "range_vs_atr": round(overnight_range / atr * 100, 1),
        "fill_probability": fill_probability,
        "fill_level": prev,
        "context": context,
    }


def third_friday(year: int, month: int) -> date:
    first = date(year, month, 1)
    offset = (calendar.FRIDAY - first.weekday()) % 7
    return first + timedelta(days=offset + 14)


def opex_calendar(today: date) -> Dict[str, Any]:
    """Monthly options expiration status. Rolls to next month once this month's OPEX has passed."""
    opex = third_friday(today.year, today.month)
    if opex < today:
        year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        opex = third_friday(year, month)
    days = (opex - today).days
    quarterly = opex.month in QUARTERLY_MONTHS

    if days == 0:
        status = "OPEX_TODAY"
        context = "QUARTERLY OPEX, triple witching" if quarterly else "Monthly OPEX, expect pinning"
    elif days == 1:
        status, context = "OPEX_TOMORROW", "Day before OPEX, volatility expected"
    elif days <= 3:
        status, context = "OPEX_WEEK", "OPEX week, elevated gamma"
    else:
        status, context = "NORMAL", "No immediate OPEX impact"

    return {
        "monthly_opex": opex.isoformat(),
        "days_to_opex": days,
        "is_quarterly": quarterly,
        "opex_status": status,
        "context": context,
        "pin_risk": "HIGH" if days <= 1 else "MODERATE" if days <= 3 else "LOW",
    }


def seasonality(today: date) -> Dict[str, Any]:
    month_avg = MONTH_AVG_RETURN[today.month]
    special: List[str] = []
    if today.day <= 5:
        special.append("Start of month, typically bullish inflows")
    if today.day >= 28:
        special.append("End of month, rebalancing flows")
    if today.month == 9:
        special.append("September, historically weakest month")
    if today.month >= 10:
        special.append("Q4, historically strongest quarter")

    if month_avg > 0.05:
        overall = "BULLISH"
    elif month_avg < -0.03:
        overall = "BEARISH"
    else:
        overall = "NEUTRAL"

    return {
        "day_of_week": calendar.day_name[today.weekday()],
        "day_avg_return": DAY_AVG_RETURN[today.weekday()],
        "month": calendar.month_name[today.month],
        "month_avg_return": month_avg,
        "week_of_month": (today.day - 1) // 7 + 1,
        "special_context": special or ["No special seasonal context"],
        "overall_bias": overall,
    }


def fomc_blackout(today: date, schedule: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fed communication blackout status from the configured meeting schedule."""
    def _d(value: Any) -> date:
        return value if isinstance(value, date) else date.fromisoformat(str(value))

    current = None
    upcoming = None
    for entry in sorted(schedule, key=lambda e: _d(e["meeting"])):
        if _d(entry["blackout_start"]) <= today <= _d(entry["blackout_end"]) and current is None:
            current = entry
        if _d(entry["meeting"]) > today and upcoming is None:
            upcoming = entry

    def _plain(entry):
        return {k: str(v) for k, v in entry.items()} if entry else None

    return {
        "in_blackout": current is not None,
        "current_blackout": _plain(current),
        "next_meeting": str(upcoming["meeting"]) if upcoming else "TBD",
        "next_blackout_start": str(upcoming["blackout_start"]) if upcoming else "TBD",
    }


def build_institutional_context(
    quotes: Mapping[str, Observation],
    today: date,
    fomc: Sequence[Mapping[str, Any]] = (),
    primary_key: str = "ES",
    vix_front_key: str = "VX_FRONT",
) -> Dict[str, Any]:
    """Assemble every institutional section from the cycle's quotes."""
    return {
        "vix_term_structure": vix_term_structure(quotes.get("VIX"), quotes.get(vix_front_key)),
        "credit_spread": credit_spread(quotes.get("HYG"), quotes.get("TLT")),
        "gap_analysis": gap_analysis(quotes.get(primary_key)),
        "opex_calendar": opex_calendar(today),
        "seasonality": seasonality(today),
        "fomc_blackout": fomc_blackout(today, fomc),
    }
