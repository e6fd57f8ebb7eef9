"""
Report calendar - scheduled economic reports and the day's event risk.

Pure functions over the reports contract. Monthly release days are approximate
windows, so a monthly match means "likely today", not a confirmed release.
"""
from __future__ import annotations

import calendar
from datetime import date
from typing import Any, Dict, List, Mapping, Sequence

from .institutional import third_friday

WEEKDAY_NAMES = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY")
ALL_SYMBOLS = "ALL"


def weekday_name(day: date) -> str:
    return WEEKDAY_NAMES[day.weekday()]


def is_first_friday(day: date) -> bool:
    return day.weekday() == 4 and day.day <= 7


def is_third_friday(day: date) -> bool:
    return day == third_friday(day.year, day.month)


def is_last_friday(day: date) -> bool:
    last = calendar.monthrange(day.year, day.month)[1]
    return day.weekday() == 4 and day.day > last - 7


def is_crop_season(day: date, months: Sequence[int] = (4, 11)) -> bool:
    start, end = months
    return start <= day.month <= end


def _monthly_matches(report: Mapping[str, Any], day: date) -> bool:
    if "day_range" in report:
        first, last = report["day_range"]
        return first <= day.day <= last
    if "day_of_month" in report:
        return day.day == report["day_of_month"]
    rule = report.get("day_rule")
    if rule == "third_friday":
        return is_third_friday(day)
    if rule == "last_friday":
        return is_last_friday(day)
    # "varies" has no computable date
    return False


def todays_reports(day: date, schedule: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Weekly reports for the weekday, then monthly and annual reports likely out today."""
    out: List[Dict[str, Any]] = []
    season = schedule.get("crop_season_months", (4, 11))

    for report in schedule.get("weekly", {}).get(weekday_name(day), []):
        if report.get("first_friday_only") and not is_first_friday(day):
            continue
        if report.get("crop_season_only") and not is_crop_season(day, season):
            continue
        out.append({**report, "frequency": "WEEKLY", "confirmed": True})

    for report in schedule.get("monthly", []):
        if _monthly_matches(report, day):
            out.append({**report, "frequency": "MONTHLY", "confirmed": False})

    stamp = day.strftime("%m-%d")
    for report in schedule.get("annual", []):
        if report.get("date") == stamp:
            out.append({**report, "frequency": "ANNUAL", "confirmed": False})

    return out


def risk_level(reports: Sequence[Mapping[str, Any]]) -> str:
    very_high = sum(1 for r in reports if r["impact"] == "VERY_HIGH")
    high = sum(1 for r in reports if r["impact"] == "HIGH")
    if very_high >= 2:
        return "EXTREME"
    if very_high >= 1:
        return "HIGH"
    if high >= 2:
        return "ELEVATED"
    if high >= 1 or len(reports) >= 2:
        return "MODERATE"
    return "LOW"


def event_warnings(reports: Sequence[Mapping[str, Any]], level: str) -> List[str]:
    warnings: List[str] = []
    if level in ("EXTREME", "HIGH"):
        warnings.append("HIGH_EVENT_RISK: market-moving reports scheduled today")
    warnings.extend(r["warning"] for r in reports if r.get("warning"))
    return warnings


def event_risk_summary(day: date, schedule: Mapping[str, Any]) -> Dict[str, Any]:
    reports = todays_reports(day, schedule)
    level = risk_level(reports)

    affected: List[str] = []
    for report in reports:
        for symbol in report["affects"]:
            if symbol != ALL_SYMBOLS and symbol not in affected:
                affected.append(symbol)

    name = weekday_name(day)
    flag_days = schedule.get("flag_weekdays", {})
    return {
        "date": day.isoformat(),
        "day_of_week": name,
        "risk_level": level,
        "report_count": len(reports),
        "very_high_impact": sum(1 for r in reports if r["impact"] == "VERY_HIGH"),
        "high_impact": sum(1 for r in reports if r["impact"] == "HIGH"),
        "reports": reports,
        "affected_symbols": affected,
        "flags": {
            "is_nfp_day": is_first_friday(day),
            "is_eia_day": name == flag_days.get("eia_day"),
            "is_ng_storage_day": name == flag_days.get("ng_storage_day"),
            "is_crop_season": is_crop_season(day, schedule.get("crop_season_months", (4, 11))),
        },
        "warnings": event_warnings(reports, level),
    }


def reports_for_symbol(symbol: str, schedule: Mapping[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    """Every recurring report that moves `symbol`, grouped by frequency."""
    weekly = [
        {**report, "day": day}
        for day, items in schedule.get("weekly", {}).items()
        for report in items
        if symbol in report["affects"] or ALL_SYMBOLS in report["affects"]
    ]
    return {
        "weekly": weekly,
        "monthly": [r for r in schedule.get("monthly", []) if symbol in r["affects"]],
        "quarterly": [r for r in schedule.get("quarterly", []) if symbol in r["affects"]],
        "central_banks": sorted(
            name for name, bank in schedule.get("central_banks", {}).items() if symbol in bank["affects"]
        ),
    }
