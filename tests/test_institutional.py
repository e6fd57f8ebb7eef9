from __future__ import annotations

from datetime import date

import pytest

from market_drivers.core.types import Observation
from market_drivers.engines.institutional import (
    build_institutional_context,
    credit_spread,
    fomc_blackout,
    gap_analysis,
    opex_calendar,
    seasonality,
    third_friday,
    vix_term_structure,
)


def obs(value, pct=0.0, **extra):
    return Observation(name="x", value=value, change_absolute=value * pct / 100, change_percent=pct, **extra)


@pytest.mark.parametrize("year,month,expected", [
    (2026, 10, date(2026, 10, 16)),
    (2026, 1, date(2026, 1, 16)),
    (2026, 9, date(2026, 9, 18)),
    (2026, 11, date(2026, 11, 20)),
])
def test_third_friday(year, month, expected):
    assert third_friday(year, month) == expected


def test_opex_today_monthly():
    opex = opex_calendar(date(2026, 10, 16))
    assert opex["opex_status"] == "OPEX_TODAY"
    assert opex["is_quarterly"] is False
    assert opex["pin_risk"] == "HIGH"


def test_opex_today_quarterly_is_triple_witching():
    opex = opex_calendar(date(2026, 9, 18))
    assert opex["is_quarterly"] is True
    assert "triple witching" in opex["context"]


def test_opex_tomorrow_and_week():
    assert opex_calendar(date(2026, 10, 15))["opex_status"] == "OPEX_TOMORROW"
    week = opex_calendar(date(2026, 10, 14))
    assert (week["opex_status"], week["days_to_opex"], week["pin_risk"]) == ("OPEX_WEEK", 2, "MODERATE")


def test_opex_rolls_to_next_month_after_expiration():
    opex = opex_calendar(date(2026, 10, 17))
    assert opex["monthly_opex"] == "2026-11-20"
    assert opex["opex_status"] == "NORMAL"
    assert opex["pin_risk"] == "LOW"


def test_opex_rolls_over_year_end():
    assert opex_calendar(date(2026, 12, 30))["monthly_opex"] == "2027-01-15"


def test_vix_term_structure():
    assert vix_term_structure(obs(22.0), obs(21.0))["structure"] == "BACKWARDATION"
    assert vix_term_structure(obs(22.0), obs(21.0))["is_warning"] is True
    assert vix_term_structure(obs(18.0), obs(20.0))["structure"] == "CONTANGO"
    assert vix_term_structure(obs(20.0), obs(21.0))["structure"] == "FLAT"
    assert "error" in vix_term_structure(obs(20.0), None)


def test_credit_spread_signals():
    assert credit_spread(obs(80, -0.3), obs(90, 0.3))["signal"] == "WIDENING"
    assert credit_spread(obs(80, 0.3), obs(90, -0.3))["signal"] == "NARROWING"
    assert credit_spread(obs(80, -0.5), obs(90, 0.0))["signal"] == "CREDIT_STRESS"
    assert credit_spread(obs(80, 0.1), obs(90, 0.1))["signal"] == "NEUTRAL"


def test_gap_analysis():
    gap = gap_analysis(obs(6030.0, previous_close=6000.0, day_high=6040.0, day_low=6010.0))
    assert gap["gap_type"] == "GAP_UP"
    assert gap["gap_points"] == 30.0
    assert gap["gap_percent"] == 0.5
    assert gap["fill_probability"] == 68
    assert gap["overnight_range"] == 30.0


def test_gap_analysis_small_and_large():
    assert gap_analysis(obs(6001.0, previous_close=6000.0))["gap_type"] == "FLAT"
    assert gap_analysis(obs(6001.0, previous_close=6000.0))["fill_probability"] == 78
    down = gap_analysis(obs(5940.0, previous_close=6000.0))
    assert (down["gap_type"], down["fill_probability"]) == ("GAP_DOWN", 52)


def test_gap_needs_previous_close():
    assert gap_analysis(obs(6000.0)) == {"error": "Unable to calculate gap"}


def test_seasonality():
    september = seasonality(date(2026, 9, 10))
    assert september["overall_bias"] == "BEARISH"
    assert "September, historically weakest month" in september["special_context"]

    october = seasonality(date(2026, 10, 14))
    assert october["overall_bias"] == "BULLISH"
    assert october["day_of_week"] == "Wednesday"
    assert october["week_of_month"] == 2


def test_fomc_blackout(contracts):
    schedule = contracts.views["fomc"]
    inside = fomc_blackout(date(2026, 10, 17), schedule)
    assert inside["in_blackout"] is True
    assert inside["next_meeting"] == "2026-10-28"

    outside = fomc_blackout(date(2026, 10, 14), schedule)
    assert outside["in_blackout"] is False
    assert outside["next_blackout_start"] == "2026-10-17"

    assert fomc_blackout(date(2027, 6, 1), schedule)["next_meeting"] == "TBD"


def test_context_marks_missing_quotes_as_errors():
    context = build_institutional_context({}, date(2026, 10, 14))
    assert "error" in context["vix_term_structure"]
    assert "error" in context["credit_spread"]
    assert "error" in context["gap_analysis"]
    assert context["opex_calendar"]["opex_status"] == "OPEX_WEEK"
    assert context["fomc_blackout"]["next_meeting"] == "TBD"
