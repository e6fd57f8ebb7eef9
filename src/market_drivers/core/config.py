from __future__ import annotations
from dataclasses import dataclass
from datetime import date, time
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import os

import yaml

from .errors import InvalidConfiguration
from .types import SessionKey, DriverType, sha256_hex, stable_json

CONTRACT_FILES = [
    "sessions.yaml",
    "thresholds.yaml",
    "instruments.yaml",
    "views.yaml",
    "reports.yaml",
]

DEFAULT_CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"
CONTRACTS_ENV_VAR = "MARKET_DRIVERS_CONTRACTS"

BASES = ("percent", "basis_points")
POLARITIES = ("direct", "inverse", "neutral")
INSTRUMENT_CLASSES = ("INTERNATIONAL", "SECTOR", "MAG7")
MINUTES_PER_DAY = 24 * 60
REPORT_IMPACTS = ("LOW", "MEDIUM", "HIGH", "VERY_HIGH")
WEEKDAYS = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY")
DAY_RULES = ("third_friday", "last_friday", "varies")

@dataclass(frozen=True)
class Contracts:
    root: Path
    docs: Dict[str, Dict[str, Any]]
    config_hash: str

    @property
    def sessions(self) -> Dict[str, Any]:
        return self.docs["sessions.yaml"]

    @property
    def thresholds(self) -> Dict[str, Any]:
        return self.docs["thresholds.yaml"]

    @property
    def instruments(self) -> Dict[str, Any]:
        return self.docs["instruments.yaml"]

    @property
    def views(self) -> Dict[str, Any]:
        return self.docs["views.yaml"]

    @property
    def reports(self) -> Dict[str, Any]:
        return self.docs["reports.yaml"]

def resolve_contracts_dir(contracts_dir: Optional[str] = None) -> Path:
    if contracts_dir:
        return Path(contracts_dir)
    env_dir = os.getenv(CONTRACTS_ENV_VAR)
    return Path(env_dir) if env_dir else DEFAULT_CONTRACTS_DIR

def load_yaml_contract(contracts_dir: Optional[str], filename: str) -> Dict[str, Any]:
    """Load a single YAML contract file.

    Args:
        contracts_dir: Directory containing contract YAML files (None for the packaged defaults)
        filename: Name of the YAML file to load (e.g., "thresholds.yaml")

    Returns:
        Parsed YAML contract as a dictionary
    """
    contract_path = resolve_contracts_dir(contracts_dir) / filename
    try:
        with contract_path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise InvalidConfiguration(f"cannot load {contract_path}: {e}") from e

def load_contracts(contracts_dir: Optional[str] = None) -> Contracts:
    root = resolve_contracts_dir(contracts_dir)
    docs: Dict[str, Dict[str, Any]] = {}
    for fn in CONTRACT_FILES:
        docs[fn] = load_yaml_contract(str(root), fn)
    return build_contracts(docs, root=root)

def build_contracts(docs: Dict[str, Dict[str, Any]], root: Optional[Path] = None) -> Contracts:
    """Normalize and validate raw contract documents (fail-closed)."""
    for fn in CONTRACT_FILES:
        _require(fn in docs, f"missing contract document: {fn}")

    docs["sessions.yaml"] = normalize_sessions(docs["sessions.yaml"])
    docs["instruments.yaml"] = normalize_instruments(docs["instruments.yaml"])
    docs["thresholds.yaml"] = normalize_thresholds(docs["thresholds.yaml"], docs["instruments.yaml"])
    docs["views.yaml"] = normalize_views(docs["views.yaml"])
    docs["reports.yaml"] = normalize_reports(docs["reports.yaml"])

    # Hash normalized representation (stable_json)
    config_hash = sha256_hex(stable_json(docs))
    return Contracts(root=root or DEFAULT_CONTRACTS_DIR, docs=docs, config_hash=config_hash)


def _require(condition: bool, msg: str) -> None:
    """Fail-closed helper for contract validation."""
    if not condition:
        raise InvalidConfiguration(msg)


def parse_hhmm(value: Any, where: str) -> time:
    _require(isinstance(value, str), f"{where} must be an 'HH:MM' string")
    try:
        hh, mm = value.strip().split(":")
        return time(int(hh), int(mm))
    except ValueError as e:
        raise InvalidConfiguration(f"{where} is not a valid 'HH:MM' time: {value!r}") from e


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_sessions(sessions: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize session table into a validated shape.

    Expectations:
    - reference_timezone is a valid IANA zone
    - sessions is an ordered LIST with unique keys from SessionKey (WEEKEND excluded)
    - windows [start, end) cover every minute of the day exactly once
    - weekend closure has valid weekdays and times
    """
    _require(isinstance(sessions, dict), "sessions must be a mapping")

    tz_name = sessions.get("reference_timezone")
    _require(isinstance(tz_name, str) and tz_name.strip(), "sessions.reference_timezone missing")
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidConfiguration(f"unknown reference timezone: {tz_name}") from e

    weekend = sessions.get("weekend")
    _require(isinstance(weekend, dict), "sessions.weekend must be a mapping")
    for day_field in ("close_weekday", "open_weekday"):
        day = weekend.get(day_field)
        _require(isinstance(day, int) and 0 <= day <= 6, f"sessions.weekend.{day_field} must be 0-6")
    parse_hhmm(weekend.get("close_time"), "sessions.weekend.close_time")
    parse_hhmm(weekend.get("open_time"), "sessions.weekend.open_time")

    items = sessions.get("sessions", [])
    _require(isinstance(items, list) and items, "sessions.sessions must be a non-empty list")

    valid_keys = {k.value for k in SessionKey if k is not SessionKey.WEEKEND}
    by_key: Dict[str, Any] = {}
    coverage = [0] * MINUTES_PER_DAY
    for idx, item in enumerate(items):
        _require(isinstance(item, dict), f"sessions[{idx}] must be an object")
        key = item.get("key")
        _require(key in valid_keys, f"sessions[{idx}].key must be one of {sorted(valid_keys)}")
        _require(key not in by_key, f"duplicate session key: {key}")

        start = parse_hhmm(item.get("start"), f"sessions[{idx}].start")
        end = parse_hhmm(item.get("end"), f"sessions[{idx}].end")
        start_m = start.hour * 60 + start.minute
        end_m = end.hour * 60 + end.minute
        crosses = bool(item.get("crosses_midnight", False))
        _require(crosses == (end_m <= start_m),
                 f"sessions[{idx}] crosses_midnight does not match its start/end times")

        length = (MINUTES_PER_DAY - start_m + end_m) if crosses else (end_m - start_m)
        ib = item.get("ib_duration_minutes", 0)
        _require(isinstance(ib, int) and 0 <= ib <= length,
                 f"sessions[{idx}].ib_duration_minutes must be an int within the session length")

        focus = item.get("focus", [])
        _require(isinstance(focus, list), f"sessions[{idx}].focus must be a list")

        for offset in range(length):
            coverage[(start_m + offset) % MINUTES_PER_DAY] += 1
        by_key[key] = item

    gaps = [m for m, n in enumerate(coverage) if n == 0]
    overlaps = [m for m, n in enumerate(coverage) if n > 1]
    _require(not gaps, f"session table leaves minute {gaps[0] if gaps else 0} of the day uncovered")
    _require(not overlaps, f"session table overlaps at minute {overlaps[0] if overlaps else 0} of the day")

    sessions["sessions_by_key"] = by_key
    sessions["session_order"] = [item["key"] for item in items]
    return sessions


def normalize_instruments(instruments: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize instrument universe: primary, correlations, sectors, top constituents."""
    _require(isinstance(instruments, dict), "instruments must be a mapping")

    primary = instruments.get("primary")
    _require(isinstance(primary, dict) and primary.get("key") and primary.get("symbol"),
             "instruments.primary needs 'key' and 'symbol'")

    correlations = instruments.get("correlations", {})
    _require(isinstance(correlations, dict), "instruments.correlations must be a mapping")
    for name, cfg in correlations.items():
        _require(isinstance(cfg, dict) and cfg.get("symbol"), f"instruments.correlations.{name} missing 'symbol'")

    international = instruments.get("international", {})
    _require(isinstance(international, dict), "instruments.international must be a mapping")
    for session_key, symbols in international.items():
        _require(isinstance(symbols, dict), f"instruments.international.{session_key} must be a mapping")
        for name, cfg in symbols.items():
            _require(isinstance(cfg, dict) and cfg.get("symbol"),
                     f"instruments.international.{session_key}.{name} missing 'symbol'")

    sectors = instruments.get("sectors", {})
    _require(isinstance(sectors, dict), "instruments.sectors must be a mapping")
    for symbol, cfg in sectors.items():
        _require(isinstance(cfg, dict) and _is_number(cfg.get("weight")) and cfg["weight"] >= 0,
                 f"instruments.sectors.{symbol} needs a non-negative numeric 'weight'")

    top = instruments.get("top_constituents", {})
    _require(isinstance(top, dict), "instruments.top_constituents must be a mapping")
    _require(_is_number(top.get("reference_price")) and top["reference_price"] > 0,
             "instruments.top_constituents.reference_price must be positive")
    stocks = top.get("stocks", {})
    _require(isinstance(stocks, dict), "instruments.top_constituents.stocks must be a mapping")
    for symbol, cfg in stocks.items():
        _require(isinstance(cfg, dict) and _is_number(cfg.get("weight")) and cfg["weight"] >= 0,
                 f"instruments.top_constituents.stocks.{symbol} needs a non-negative numeric 'weight'")

    keywords = instruments.get("news_keywords", {})
    _require(isinstance(keywords, dict), "instruments.news_keywords must be a mapping")
    keywords.setdefault("high_impact", [])
    keywords.setdefault("medium_impact", [])
    keywords.setdefault("by_session", {})
    instruments["news_keywords"] = keywords
    return instruments


def _validate_rule(rule: Dict[str, Any], where: str, require_weight: bool = True) -> None:
    _require(isinstance(rule, dict), f"{where} must be an object")
    _require(rule.get("basis", "percent") in BASES, f"{where}.basis must be one of {BASES}")
    _require(_is_number(rule.get("threshold")) and rule["threshold"] >= 0,
             f"{where}.threshold must be a non-negative number")
    if require_weight:
        _require(_is_number(rule.get("weight")) and rule["weight"] >= 0,
                 f"{where}.weight must be a non-negative number")
    _require(rule.get("polarity") in POLARITIES, f"{where}.polarity must be one of {POLARITIES}")
    for template in ("up_name", "down_name", "up_reason", "down_reason"):
        _require(isinstance(rule.get(template), str), f"{where}.{template} must be a string")


def normalize_thresholds(thresholds: Dict[str, Any], instruments: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize threshold table: metric rules, class defaults, divergences, news."""
    _require(isinstance(thresholds, dict), "thresholds must be a mapping")

    metrics = thresholds.get("metrics", [])
    _require(isinstance(metrics, list), "thresholds.metrics must be a list")
    correlations = instruments.get("correlations", {})
    by_name: Dict[str, Any] = {}
    for idx, rule in enumerate(metrics):
        where = f"thresholds.metrics[{idx}]"
        _validate_rule(rule, where)
        name = rule.get("name")
        _require(isinstance(name, str) and name.strip(), f"{where} missing non-empty 'name'")
        _require(name not in by_name, f"duplicate threshold metric: {name}")
        _require(name in correlations, f"{where} refers to unknown instrument: {name}")
        try:
            DriverType(rule.get("driver_type"))
        except ValueError as e:
            raise InvalidConfiguration(f"{where}.driver_type is invalid: {rule.get('driver_type')}") from e
        by_name[name] = rule

    classes = thresholds.get("classes", {})
    _require(isinstance(classes, dict), "thresholds.classes must be a mapping")
    for cls in INSTRUMENT_CLASSES:
        _require(cls in classes, f"thresholds.classes missing {cls}")
        _validate_rule(classes[cls], f"thresholds.classes.{cls}", require_weight=(cls == "INTERNATIONAL"))
    _require(_is_number(classes["SECTOR"].get("weight_divisor")) and classes["SECTOR"]["weight_divisor"] > 0,
             "thresholds.classes.SECTOR.weight_divisor must be positive")

    known_legs = set(correlations) | {instruments["primary"]["key"]}
    divergences = thresholds.get("divergences", [])
    _require(isinstance(divergences, list), "thresholds.divergences must be a list")
    seen: List[str] = []
    for idx, rule in enumerate(divergences):
        where = f"thresholds.divergences[{idx}]"
        _validate_rule(rule, where)
        _require(rule.get("name") and rule["name"] not in seen, f"{where} needs a unique 'name'")
        _require(rule.get("leg") in known_legs and rule.get("base") in known_legs,
                 f"{where} legs must be configured instruments")
        seen.append(rule["name"])

    news = thresholds.get("news", {})
    _require(isinstance(news, dict), "thresholds.news must be a mapping")
    _require(_is_number(news.get("high_window_minutes")) and _is_number(news.get("medium_window_minutes")),
             "thresholds.news needs numeric recency windows")
    _require(news["medium_window_minutes"] <= news["high_window_minutes"],
             "thresholds.news.medium_window_minutes must not exceed high_window_minutes")
    impacts = news.get("impacts", {})
    _require(isinstance(impacts, dict) and _is_number(impacts.get("HIGH")) and _is_number(impacts.get("MEDIUM")),
             "thresholds.news.impacts needs numeric HIGH and MEDIUM")

    thresholds["metrics_by_name"] = by_name
    return thresholds


def normalize_views(views: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize aggregated-view table: unique kinds with positive TTLs."""
    _require(isinstance(views, dict), "views must be a mapping")
    _require(_is_number(views.get("fetch_timeout_seconds")) and views["fetch_timeout_seconds"] > 0,
             "views.fetch_timeout_seconds must be positive")
    _require(isinstance(views.get("top_n"), int) and views["top_n"] > 0, "views.top_n must be a positive int")
    views.setdefault("news_limit", 10)

    items = views.get("views", [])
    _require(isinstance(items, list), "views.views must be a list")
    ttl_by_kind: Dict[str, float] = {}
    for idx, item in enumerate(items):
        _require(isinstance(item, dict), f"views[{idx}] must be an object")
        kind = item.get("kind")
        _require(isinstance(kind, str) and kind.strip(), f"views[{idx}] missing non-empty 'kind'")
        _require(kind not in ttl_by_kind, f"duplicate view kind: {kind}")
        ttl = item.get("ttl_seconds")
        _require(_is_number(ttl) and ttl > 0, f"views[{idx}].ttl_seconds must be positive")
        ttl_by_kind[kind] = float(ttl)

    fomc = views.get("fomc", [])
    _require(isinstance(fomc, list), "views.fomc must be a list")

    views["ttl_by_kind"] = ttl_by_kind
    return views


def _validate_report(report: Dict[str, Any], where: str) -> None:
    _require(isinstance(report, dict), f"{where} must be an object")
    _require(isinstance(report.get("report"), str) and report["report"].strip(), f"{where} missing 'report'")
    _require(report.get("impact") in REPORT_IMPACTS, f"{where}.impact must be one of {REPORT_IMPACTS}")
    affects = report.get("affects")
    _require(isinstance(affects, list) and affects and all(isinstance(s, str) for s in affects),
             f"{where}.affects must be a non-empty list of symbols")
    if "time" in report:
        parse_hhmm(report["time"], f"{where}.time")


def normalize_reports(reports: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize the report schedule.

    Expectations:
    - weekly is keyed by weekday name
    - each monthly report has exactly one of day_range, day_of_month or day_rule
    - impacts come from REPORT_IMPACTS
    """
    _require(isinstance(reports, dict), "reports must be a mapping")

    season = reports.get("crop_season_months", [4, 11])
    _require(isinstance(season, list) and len(season) == 2 and all(isinstance(m, int) and 1 <= m <= 12 for m in season),
             "reports.crop_season_months must be [start_month, end_month]")
    reports["crop_season_months"] = season

    flags = reports.setdefault("flag_weekdays", {})
    _require(isinstance(flags, dict) and all(day in WEEKDAYS for day in flags.values()),
             f"reports.flag_weekdays values must be one of {WEEKDAYS}")

    weekly = reports.setdefault("weekly", {})
    _require(isinstance(weekly, dict), "reports.weekly must be a mapping")
    for day, items in weekly.items():
        _require(day in WEEKDAYS, f"reports.weekly.{day} is not a weekday name")
        _require(isinstance(items, list), f"reports.weekly.{day} must be a list")
        for idx, report in enumerate(items):
            _validate_report(report, f"reports.weekly.{day}[{idx}]")

    monthly = reports.setdefault("monthly", [])
    _require(isinstance(monthly, list), "reports.monthly must be a list")
    for idx, report in enumerate(monthly):
        where = f"reports.monthly[{idx}]"
        _validate_report(report, where)
        given = [k for k in ("day_range", "day_of_month", "day_rule") if k in report]
        _require(len(given) == 1, f"{where} needs exactly one of day_range, day_of_month or day_rule")
        if "day_range" in report:
            first_last = report["day_range"]
            _require(isinstance(first_last, list) and len(first_last) == 2
                     and all(isinstance(d, int) and 1 <= d <= 31 for d in first_last)
                     and first_last[0] <= first_last[1],
                     f"{where}.day_range must be [first, last] days of the month")
        elif "day_of_month" in report:
            _require(isinstance(report["day_of_month"], int) and 1 <= report["day_of_month"] <= 31,
                     f"{where}.day_of_month must be 1-31")
        else:
            _require(report["day_rule"] in DAY_RULES, f"{where}.day_rule must be one of {DAY_RULES}")

    for section in ("quarterly", "annual"):
        items = reports.setdefault(section, [])
        _require(isinstance(items, list), f"reports.{section} must be a list")
        for idx, report in enumerate(items):
            _validate_report(report, f"reports.{section}[{idx}]")

    for idx, report in enumerate(reports["annual"]):
        try:
            month, day = (int(part) for part in str(report.get("date", "")).split("-"))
            date(2024, month, day)
        except ValueError as e:
            raise InvalidConfiguration(f"reports.annual[{idx}].date must be 'MM-DD': {report.get('date')!r}") from e

    banks = reports.setdefault("central_banks", {})
    _require(isinstance(banks, dict), "reports.central_banks must be a mapping")
    for name, bank in banks.items():
        _validate_report({"report": name, **bank}, f"reports.central_banks.{name}")

    return reports
