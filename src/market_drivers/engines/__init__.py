"""
Market Drivers Engines

- SessionClock: wall-clock time -> active session, IB status, next session
- DriverDetector: observations -> ranked drivers (declarative ThresholdTable)
- aggregate: drivers -> NetBias
- AggregationOrchestrator: guarded fan-out, scoring, single-flight cached views
"""

from .session_clock import SessionClock, WeekendClosure
from .driver_detector import DriverDetector, ThresholdTable, MetricRule, DivergenceRule, top_drivers
from .bias_aggregator import aggregate, build_breakdown
from .orchestrator import (
    AggregationOrchestrator,
    AggregatedView,
    FetchOutcome,
    MarketDataProvider,
    guarded,
)
