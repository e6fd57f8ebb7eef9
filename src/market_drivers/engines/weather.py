"""
Weather context for agricultural and energy futures.

Shapes US Drought Monitor statistics and NOAA CPC 6-10 day outlook layers into
summaries, adds seasonal degree-day estimates and reads the result into a
per-commodity bias. All functions are pure.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

DROUGHT_LEVELS = ("none", "d0", "d1", "d2", "d3", "d4")
SEVERE_DROUGHT_LEVELS = ("d2", "d3", "d4")

# Percent of the US in D2+ drought
SEVERE_DROUGHT_BULLISH = 20.0
SEVERE_DROUGHT_WATCH = 10.0

INJECTION_MONTHS = range(4, 11)

COMMODITIES = {
    "corn": "ZC",
    "soybeans": "ZS",
    "wheat": "ZW",
    "cattle": "LE",
    "hogs": "HE",
}


def drought_summary(rows: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Percent of area per drought level from the most recent USDM row (areas in square miles)."""
    if not rows:
        raise ValueError("drought statistics are empty")
    latest = rows[0]
    areas = {level: float(latest.get(level) or 0.0) for level in DROUGHT_LEVELS}
    total = sum(areas.values())
    if total <= 0:
        raise ValueError("drought statistics cover no area")

    pct = {level: area / total * 100 for level, area in areas.items()}
    map_date = latest.get("mapDate") or latest.get("MapDate")
    return {
        "date": str(map_date).split("T")[0] if map_date else None,
        "statistics": {level: round(value, 2) for level, value in pct.items()},
        "total_drought": round(sum(v for k, v in pct.items() if k != "none"), 2),
        "severe_drought": round(sum(pct[k] for k in SEVERE_DROUGHT_LEVELS), 2),
        "source": "US Drought Monitor",
    }


def _category(attributes: Mapping[str, Any]) -> str:
    cat = str(attributes.get("cat") or attributes.get("Cat") or "").strip().lower()
    if cat.startswith("a"):
        return "above"
    if cat.startswith("b"):
        return "below"
    return "near"


def outlook_layer(features: Sequence[Mapping[str, Any]], kind: str) -> Dict[str, Any]:
    """Count above/below/near-normal areas in one outlook layer and name the dominant one."""
    counts = {"above": 0, "below": 0, "near": 0}
    for feature in features:
        counts[_category(feature.get("attributes") or {})] += 1

    noun = "Temps" if kind == "temperature" else "Precip"
    if counts["above"] > counts["below"]:
        dominant = f"Above Normal {noun}"
    elif counts["below"] > counts["above"]:
        dominant = f"Below Normal {noun}"
    else:
        dominant = "Near Normal"
    return {
        "dominant": dominant,
        "above_normal_areas": counts["above"],
        "below_normal_areas": counts["below"],
        "near_normal_areas": counts["near"],
    }


def outlook_summary(layers: Mapping[str, Sequence[Mapping[str, Any]]]) -> Dict[str, Any]:
    if "temperature" not in layers:
        raise ValueError("outlook has no temperature layer")
    return {
        "period": "6-10 Day",
        "temperature": outlook_layer(layers["temperature"], "temperature"),
        "precipitation": outlook_layer(layers.get("precipitation") or [], "precipitation"),
        "source": "NOAA Climate Prediction Center",
    }


def seasonal_degree_days(today: date) -> Dict[str, Any]:
    """Seasonal heating/cooling degree-day estimates and the natural gas storage season."""
    month = today.month
    if month >= 11 or month <= 2:
        season = "Winter"
        hdd = {"weekly": 180, "vs_normal": "+5%", "impact": "Bullish NG"}
        cdd = {"weekly": 0, "vs_normal": None, "impact": "Neutral"}
    elif 6 <= month <= 8:
        season = "Summer"
        hdd = {"weekly": 0, "vs_normal": None, "impact": "Neutral"}
        cdd = {"weekly": 85, "vs_normal": "+10%", "impact": "Bullish NG (power gen)"}
    elif 3 <= month <= 5:
        season = "Spring"
        hdd = {"weekly": 45, "vs_normal": "-2%", "impact": "Neutral to Bearish NG"}
        cdd = {"weekly": 10, "vs_normal": "Normal", "impact": "Neutral"}
    else:
        season = "Fall"
        hdd = {"weekly": 80, "vs_normal": "+3%", "impact": "Bullish NG"}
        cdd = {"weekly": 5, "vs_normal": "Normal", "impact": "Neutral"}

    return {
        "season": season,
        "heating_degree_days": hdd,
        "cooling_degree_days": cdd,
        "ng_storage_season": "Injection" if month in INJECTION_MONTHS else "Withdrawal",
        "source": "Seasonal Estimate",
    }


def ag_impact(drought: Optional[Mapping[str, Any]], outlook: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Per-commodity bias and the weather factors behind it."""
    impacts: Dict[str, Dict[str, Any]] = {
        name: {"symbol": symbol, "bias": "neutral", "factors": []} for name, symbol in COMMODITIES.items()
    }

    def note(name: str, factor: str) -> None:
        impacts[name]["factors"].append(factor)

    if drought is not None:
        severe = drought["severe_drought"]
        if severe > SEVERE_DROUGHT_BULLISH:
            for grain in ("corn", "soybeans", "wheat"):
                impacts[grain]["bias"] = "bullish"
            impacts["cattle"]["bias"] = "bearish"
            note("corn", f"{severe:.1f}% of US in severe drought, supply concerns")
            note("soybeans", "Drought stress during the growing period")
            note("wheat", "Winter wheat stress from dry conditions")
            note("cattle", "Drought stressing pastures, higher feed costs")
            note("hogs", "Higher feed costs from grain prices")
        elif severe > SEVERE_DROUGHT_WATCH:
            note("corn", f"Moderate drought coverage ({severe:.1f}%), monitoring")
            note("soybeans", "Some drought stress in growing regions")
            note("cattle", "Pasture conditions slightly stressed")
        else:
            note("corn", "Favorable moisture conditions")
            note("soybeans", "Adequate precipitation for crop development")
            note("cattle", "Good pasture conditions")
            note("hogs", "Stable feed costs expected")

    if outlook is not None:
        temp = outlook["temperature"]["dominant"]
        if temp.startswith("Above"):
            note("corn", "Above normal temps forecast, accelerated development")
            note("soybeans", "Heat stress possible during pod fill")
            if impacts["cattle"]["bias"] == "neutral":
                impacts["cattle"]["bias"] = "slightly bearish"
            note("cattle", "Heat stress reduces weight gain")
            note("hogs", "Heat stress may slow weight gain")
        elif temp.startswith("Below"):
            note("corn", "Below normal temps, slower maturity")
            note("wheat", "Cool temps favorable for winter wheat")
            note("cattle", "Cold temps increase feed requirements")
            note("hogs", "Higher energy needs in cold weather")

        precip = outlook["precipitation"]["dominant"]
        if precip.startswith("Below"):
            if impacts["corn"]["bias"] == "neutral":
                impacts["corn"]["bias"] = "slightly bullish"
            note("corn", "Below normal precip forecast, drought expansion risk")
            note("cattle", "Dry conditions may stress pastures further")
        elif precip.startswith("Above"):
            note("corn", "Above normal precip, relief for dry areas")
            note("wheat", "Wet conditions may delay harvest")
            note("cattle", "Good moisture supports pasture recovery")

    return impacts


def weather_headline(
    drought: Optional[Mapping[str, Any]],
    outlook: Optional[Mapping[str, Any]],
    degree_days: Mapping[str, Any],
) -> str:
    parts: List[str] = []
    if drought is not None and drought["severe_drought"] > 0:
        parts.append(f"{drought['severe_drought']:.1f}% of US in severe drought (D2+)")
    if outlook is not None:
        parts.append(f"6-10 day temp outlook: {outlook['temperature']['dominant']}")
    parts.append(f"Season: {degree_days['season']} ({degree_days['ng_storage_season']} for NG)")
    return ". ".join(parts)
