"""
Error taxonomy for the aggregation engine.

SourceUnavailable is always recovered locally by the orchestrator.
Everything else propagates to the caller.
"""
from __future__ import annotations

from typing import List, Sequence

from .types import FetchFailure


class MarketDriversError(Exception):
    """Base class for engine errors."""


class SourceUnavailable(MarketDriversError):
    """A single external collaborator failed or timed out."""

    def __init__(self, source: str, cause: BaseException):
        self.source = source
        self.cause = cause
        super().__init__(f"{source} unavailable: {cause!r}")

    def to_failure(self) -> FetchFailure:
        return FetchFailure(source=self.source, error=repr(self.cause))


class AllSourcesFailed(MarketDriversError):
    """Every fetch in an aggregation cycle failed. Retryable."""

    retryable = True

    def __init__(self, kind: str, failures: Sequence[FetchFailure]):
        self.kind = kind
        self.failures: List[FetchFailure] = list(failures)
        super().__init__(f"all {len(self.failures)} sources failed for {kind}")


class InvalidConfiguration(MarketDriversError, ValueError):
    """Threshold or session table is malformed. Raised at startup."""


class InternalScoringError(MarketDriversError):
    """Defect in the deterministic scoring path. Never swallowed."""


class UnknownViewError(MarketDriversError, KeyError):
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"unknown aggregated view: {kind}")

    def __str__(self) -> str:
        return self.args[0]


class UnknownSessionError(MarketDriversError, KeyError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"session not tracked: {key}")

    def __str__(self) -> str:
        return self.args[0]
