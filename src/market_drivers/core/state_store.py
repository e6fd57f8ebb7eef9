from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from .errors import UnknownSessionError
from .types import (
    InitialBalanceLevels,
    PriceTick,
    SessionKey,
    SessionLevels,
    SweepEvent,
)


class _SessionSlot:
    """Levels + IB for one session key, guarded by its own lock."""

    def __init__(self):
        self.lock = threading.Lock()
        self.levels = SessionLevels()
        self.ib = InitialBalanceLevels()


def _max(current: Optional[float], value: Optional[float]) -> Optional[float]:
    if value is None:
        return current
    return value if current is None or value > current else current


def _min(current: Optional[float], value: Optional[float]) -> Optional[float]:
    if value is None:
        return current
    return value if current is None or value < current else current


class SessionStateStore:
    """In-memory per-session price levels and Initial Balance levels.

    Mutated by the ingestion path (ticks, sweeps). The store has no wall-clock
    awareness: callers decide when a session instance starts (`reset_session`)
    and whether a tick falls inside the IB window.

    Every mutator and reader runs under the session key's lock, and readers
    receive copies, so a read never observes a partially applied tick.
    """

    def __init__(self, session_keys: Iterable[SessionKey]):
        self._slots: Dict[SessionKey, _SessionSlot] = {SessionKey(k): _SessionSlot() for k in session_keys}

    @classmethod
    def from_contracts(cls, contracts) -> "SessionStateStore":
        items = contracts.sessions["sessions"]
        return cls(SessionKey(item["key"]) for item in items if item.get("track_levels", False))

    @property
    def session_keys(self):
        return list(self._slots)

    def _slot(self, session_key) -> _SessionSlot:
        try:
            return self._slots[SessionKey(session_key)]
        except (KeyError, ValueError):
            raise UnknownSessionError(str(getattr(session_key, "value", session_key))) from None

    # ─────────────────────────────────────────────────────────────────────
    # Mutators
    # ─────────────────────────────────────────────────────────────────────

    def record_tick(self, session_key, tick: PriceTick, in_initial_balance: bool = False) -> None:
        slot = self._slot(session_key)
        with slot.lock:
            levels = slot.levels
            levels.high = _max(levels.high, tick.high)
            levels.low = _min(levels.low, tick.low)
            if levels.open is None and tick.open is not None:
                levels.open = tick.open
            if tick.close is not None:
                levels.close = tick.close
            if tick.delta is not None:
                levels.delta = tick.delta
            if tick.volume is not None:
                levels.volume = tick.volume

            if in_initial_balance and not slot.ib.complete:
                slot.ib.high = _max(slot.ib.high, tick.high)
                slot.ib.low = _min(slot.ib.low, tick.low)

    def record_initial_balance(self, session_key, high: Optional[float], low: Optional[float]) -> None:
        """Extend IB high/low directly. Ignored once the IB is complete."""
        slot = self._slot(session_key)
        with slot.lock:
            if slot.ib.complete:
                return
            slot.ib.high = _max(slot.ib.high, high)
            slot.ib.low = _min(slot.ib.low, low)

    def record_sweep(self, session_key, sweep: SweepEvent) -> None:
        slot = self._slot(session_key)
        with slot.lock:
            slot.levels.sweeps.append(sweep)

    def mark_initial_balance_complete(self, session_key) -> None:
        slot = self._slot(session_key)
        with slot.lock:
            slot.ib.complete = True

    def reset_session(self, session_key) -> None:
        slot = self._slot(session_key)
        with slot.lock:
            slot.levels = SessionLevels()
            slot.ib = InitialBalanceLevels()

    # ─────────────────────────────────────────────────────────────────────
    # Readers (copies)
    # ─────────────────────────────────────────────────────────────────────

    def get_levels(self, session_key) -> SessionLevels:
        slot = self._slot(session_key)
        with slot.lock:
            return copy.deepcopy(slot.levels)

    def get_initial_balance(self, session_key) -> InitialBalanceLevels:
        slot = self._slot(session_key)
        with slot.lock:
            return copy.deepcopy(slot.ib)

    def _snapshot(self, session_key):
        slot = self._slot(session_key)
        with slot.lock:
            return copy.deepcopy(slot.levels), copy.deepcopy(slot.ib)

    def handoff(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """All session and IB levels, for handing context between sessions."""
        sessions: Dict[str, Any] = {}
        initial_balances: Dict[str, Any] = {}
        for key in self._slots:
            levels, ib = self._snapshot(key)
            sessions[key.value] = levels.to_payload()
            initial_balances[key.value] = ib.to_payload()
        return {
            "sessions": sessions,
            "initial_balances": initial_balances,
            "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
        }

    def session_summary(self, session_key) -> Dict[str, Any]:
        levels, ib = self._snapshot(session_key)

        price_range = levels.high - levels.low if levels.high is not None and levels.low is not None else 0.0
        delta_percent = round(levels.delta / levels.volume * 100, 1) if levels.volume > 0 else 0.0
        if levels.delta > 0:
            control = "BUYERS"
        elif levels.delta < 0:
            control = "SELLERS"
        else:
            control = "NEUTRAL"

        return {
            "session": SessionKey(session_key).value,
            "high": levels.high,
            "low": levels.low,
            "open": levels.open,
            "close": levels.close,
            "range": price_range,
            "delta": levels.delta,
            "delta_percent": delta_percent,
            "volume": levels.volume,
            "control": control,
            "sweeps": [s.to_payload() for s in levels.sweeps],
            "ib_high": ib.high,
            "ib_low": ib.low,
            "ib_complete": ib.complete,
            "ib_range": ib.high - ib.low if ib.high is not None and ib.low is not None else 0.0,
        }
