"""
Driver Detector - turns normalized observations into ranked market drivers.

Every metric is scored by one generic rule: emit a Driver when the selected change
field reaches its threshold, with impact = abs(change) * weight and a direction taken
from the metric's configured polarity. Divergences compare two observations' percent
changes. News drivers carry a fixed impact.
Constituent impact is quoted at a reference index level and rescaled by the live
primary quote when one is present in the cycle.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.config import Contracts
from ..core.errors import InvalidConfiguration
from ..core.types import Direction, Driver, DriverType, NewsImpact, NewsItem, Observation

DEFAULT_TOP_N = 6

Observations = Union[Mapping[str, Observation], Iterable[Observation]]


def polarity_direction(polarity: str, rising: bool) -> Direction:
    if polarity == "neutral":
        return Direction.NEUTRAL
    if polarity == "direct":
        return Direction.BULLISH if rising else Direction.BEARISH
    return Direction.BEARISH if rising else Direction.BULLISH


@dataclass(frozen=True)
class MetricRule:
    """Threshold, weight and polarity for one named observation."""
    name: str
    driver_type: DriverType
    basis: str
    threshold: float
    weight: float
    polarity: str
    up_name: str
    down_name: str
    up_reason: str
    down_reason: str
    label: Optional[str] = None
    scales_with_primary: bool = False

    def change_metric(self, obs: Observation) -> Optional[float]:
        if self.basis == "basis_points":
            return obs.change_basis_points
        return obs.change_percent

    def evaluate(self, obs: Observation, scale: float = 1.0) -> Optional[Driver]:
        change = self.change_metric(obs)
        if change is None or not abs(change) >= self.threshold:
            return None
        rising = change > 0
        fields = {
            "label": obs.label or self.label or self.name,
            "change": change,
            "abs_change": abs(change),
            "value": obs.value,
        }
        unit = "bp" if self.basis == "basis_points" else "%"
        return Driver(
            type=self.driver_type,
            name=(self.up_name if rising else self.down_name).format(**fields),
            direction=polarity_direction(self.polarity, rising),
            impact=abs(change) * self.weight * scale,
            reason=(self.up_reason if rising else self.down_reason).format(**fields),
            raw_observation=obs,
            value=f"{obs.value:.2f}",
            change=f"{change:+.2f}{unit}",
        )


@dataclass(frozen=True)
class DivergenceRule:
    """Relative performance of `leg` versus `base`, in percentage points."""
    name: str
    leg: str
    base: str
    threshold: float
    weight: float
    polarity: str
    up_name: str
    down_name: str
    up_reason: str
    down_reason: str

    def evaluate(self, leg: Observation, base: Observation) -> Optional[Driver]:
        spread = leg.change_percent - base.change_percent
        if not abs(spread) >= self.threshold:
            return None
        rising = spread > 0
        fields = {"label": self.name, "change": spread, "abs_change": abs(spread), "value": spread}
        return Driver(
            type=DriverType.DIVERGENCE,
            name=(self.up_name if rising else self.down_name).format(**fields),
            direction=polarity_direction(self.polarity, rising),
            impact=abs(spread) * self.weight,
            reason=(self.up_reason if rising else self.down_reason).format(**fields),
            raw_observation=(leg, base),
            value=f"{self.leg} {spread:+.2f}% vs {self.base}",
            change=f"{spread:.2f}%",
        )


@dataclass(frozen=True)
class NewsRule:
    high_window_minutes: float
    medium_window_minutes: float
    high_impact: float
    medium_impact: float
    max_name_length: int = 50


@dataclass(frozen=True)
class ThresholdTable:
    """Declarative scoring table, built once at startup from the contracts."""
    metrics: Mapping[str, MetricRule]
    divergences: Tuple[DivergenceRule, ...]
    news: NewsRule
    primary_key: Optional[str] = None
    reference_price: Optional[float] = None

    @classmethod
    def from_contracts(cls, contracts: Contracts) -> "ThresholdTable":
        thresholds = contracts.thresholds
        instruments = contracts.instruments
        correlations = instruments.get("correlations", {})
        metrics: Dict[str, MetricRule] = {}

        for rule in thresholds.get("metrics", []):
            metrics[rule["name"]] = _metric_rule(
                rule["name"], DriverType(rule["driver_type"]), rule, rule["weight"],
                correlations.get(rule["name"], {}).get("name"),
            )

        classes = thresholds["classes"]
        intl = classes["INTERNATIONAL"]
        for symbols in instruments.get("international", {}).values():
            for name, cfg in symbols.items():
                metrics.setdefault(name, _metric_rule(name, DriverType.INTERNATIONAL, intl, intl["weight"], cfg.get("name")))

        sector = classes["SECTOR"]
        for name, cfg in instruments.get("sectors", {}).items():
            weight = cfg["weight"] / sector["weight_divisor"]
            metrics[name] = _metric_rule(name, DriverType.SECTOR, sector, weight, cfg.get("name"))

        mag7 = classes["MAG7"]
        top = instruments.get("top_constituents", {})
        for name, cfg in top.get("stocks", {}).items():
            # Index points moved per 1% change in the stock, at the reference index level
            weight = cfg["weight"] * top["reference_price"] / 100
            metrics[name] = replace(
                _metric_rule(name, DriverType.MAG7, mag7, weight, cfg.get("name")), scales_with_primary=True
            )

        divergences = tuple(
            DivergenceRule(
                name=d["name"], leg=d["leg"], base=d["base"],
                threshold=float(d["threshold"]), weight=float(d["weight"]), polarity=d["polarity"],
                up_name=d["up_name"], down_name=d["down_name"],
                up_reason=d["up_reason"], down_reason=d["down_reason"],
            )
            for d in thresholds.get("divergences", [])
        )

        news_cfg = thresholds["news"]
        news = NewsRule(
            high_window_minutes=float(news_cfg["high_window_minutes"]),
            medium_window_minutes=float(news_cfg["medium_window_minutes"]),
            high_impact=float(news_cfg["impacts"]["HIGH"]),
            medium_impact=float(news_cfg["impacts"]["MEDIUM"]),
            max_name_length=int(news_cfg.get("max_name_length", 50)),
        )

        table = cls(
            metrics=metrics,
            divergences=divergences,
            news=news,
            primary_key=instruments.get("primary", {}).get("key"),
            reference_price=float(top["reference_price"]) if top.get("reference_price") else None,
        )
        table.check_templates()
        return table

    def check_templates(self) -> None:
        """Render every template once so a bad placeholder fails at startup, not mid-cycle."""
        sample = {"label": "X", "change": 1.0, "abs_change": 1.0, "value": 1.0}
        rules: List[Any] = list(self.metrics.values()) + list(self.divergences)
        for rule in rules:
            for template in (rule.up_name, rule.down_name, rule.up_reason, rule.down_reason):
                try:
                    template.format(**sample)
                except (KeyError, IndexError, ValueError) as e:
                    raise InvalidConfiguration(f"bad template for {rule.name}: {template!r} ({e})") from e


def _metric_rule(name: str, driver_type: DriverType, cfg: Mapping[str, Any], weight: float, label: Optional[str]) -> MetricRule:
    return MetricRule(
        name=name,
        driver_type=driver_type,
        basis=cfg.get("basis", "percent"),
        threshold=float(cfg["threshold"]),
        weight=float(weight),
        polarity=cfg["polarity"],
        up_name=cfg["up_name"],
        down_name=cfg["down_name"],
        up_reason=cfg["up_reason"],
        down_reason=cfg["down_reason"],
        label=label,
    )


def _by_name(observations: Observations) -> Dict[str, Observation]:
    if isinstance(observations, Mapping):
        return dict(observations)
    return {obs.name: obs for obs in observations}


def rank_key(driver: Driver):
    # Ties broken on type then name so ranking never depends on fetch arrival order.
    return (-driver.impact, driver.type.value, driver.name)


class DriverDetector:
    """Generic reducer over a ThresholdTable."""

    def __init__(self, table: ThresholdTable):
        self.table = table

    @classmethod
    def from_contracts(cls, contracts: Contracts) -> "DriverDetector":
        return cls(ThresholdTable.from_contracts(contracts))

    def detect(
        self,
        observations: Observations,
        news: Optional[Sequence[NewsItem]] = None,
        now: Optional[datetime] = None,
    ) -> List[Driver]:
        """Return every driver that cleared its threshold, sorted by impact descending.

        Observations without a rule are ignored. Callers truncate with `top_drivers`.
        """
        by_name = _by_name(observations)
        drivers: List[Driver] = []
        scale = self.primary_scale(by_name)

        for name, obs in by_name.items():
            rule = self.table.metrics.get(name)
            if rule is None:
                continue
            driver = rule.evaluate(obs, scale if rule.scales_with_primary else 1.0)
            if driver is not None:
                drivers.append(driver)

        for rule in self.table.divergences:
            leg, base = by_name.get(rule.leg), by_name.get(rule.base)
            if leg is None or base is None:
                continue
            driver = rule.evaluate(leg, base)
            if driver is not None:
                drivers.append(driver)

        if news:
            drivers.extend(self.news_drivers(news, now))

        drivers.sort(key=rank_key)
        return drivers

    def primary_scale(self, by_name: Mapping[str, Observation]) -> float:
        """Live primary level over the reference level; 1.0 when the primary quote is missing."""
        table = self.table
        primary = by_name.get(table.primary_key) if table.primary_key else None
        if primary is None or not table.reference_price:
            return 1.0
        if not math.isfinite(primary.value) or primary.value <= 0:
            return 1.0
        return primary.value / table.reference_price

    def news_drivers(self, news: Sequence[NewsItem], now: Optional[datetime] = None) -> List[Driver]:
        rule = self.table.news
        now = now or datetime.now(timezone.utc)
        out: List[Driver] = []
        for item in news:
            if item.recency_minutes is not None:
                recency = item.recency_minutes
            else:
                recency = max(0, round((now - item.published_at).total_seconds() / 60))

            if item.impact is NewsImpact.HIGH and recency < rule.high_window_minutes:
                impact = rule.high_impact
            elif item.impact is NewsImpact.MEDIUM and recency < rule.medium_window_minutes:
                impact = rule.medium_impact
            else:
                continue

            headline = item.headline
            name = headline[:rule.max_name_length] + ("..." if len(headline) > rule.max_name_length else "")
            out.append(Driver(
                type=DriverType.NEWS,
                name=name,
                direction=item.bias,
                impact=impact,
                reason=headline,
                raw_observation=item,
                value=item.source,
                change=f"{recency} min ago",
            ))
        return out


def top_drivers(drivers: Sequence[Driver], n: int = DEFAULT_TOP_N) -> List[Driver]:
    return list(drivers[:n])
