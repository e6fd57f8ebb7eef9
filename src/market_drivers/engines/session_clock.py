"""
Session clock: maps wall-clock time to the active trading session.

All session logic runs in the configured reference timezone (America/New_York),
with [start, end) window semantics. Pure: no I/O, no state.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import List, Optional
from zoneinfo import ZoneInfo

from ..core.config import Contracts, parse_hhmm
from ..core.errors import InvalidConfiguration
from ..core.types import NextSession, SessionDefinition, SessionKey, SessionWindow

MINUTES_PER_DAY = 24 * 60
MINUTES_PER_WEEK = 7 * MINUTES_PER_DAY


@dataclass(frozen=True)
class WeekendClosure:
    """Weekly closure from (close_weekday, close_time) to (open_weekday, open_time)."""
    close_weekday: int
    close_time: time
    open_weekday: int
    open_time: time

    @property
    def close_minute_of_week(self) -> int:
        return self.close_weekday * MINUTES_PER_DAY + self.close_time.hour * 60 + self.close_time.minute

    @property
    def open_minute_of_week(self) -> int:
        return self.open_weekday * MINUTES_PER_DAY + self.open_time.hour * 60 + self.open_time.minute

    def contains(self, minute_of_week: int) -> bool:
        close, reopen = self.close_minute_of_week, self.open_minute_of_week
        if close <= reopen:
            return close <= minute_of_week < reopen
        return minute_of_week >= close or minute_of_week < reopen

    def minutes_until_close(self, minute_of_week: int) -> int:
        return (self.close_minute_of_week - minute_of_week) % MINUTES_PER_WEEK

    def minutes_until_open(self, minute_of_week: int) -> int:
        return (self.open_minute_of_week - minute_of_week) % MINUTES_PER_WEEK


class SessionClock:
    """Resolves the current and next session for a timestamp."""

    def __init__(
        self,
        sessions: List[SessionDefinition],
        weekend: WeekendClosure,
        weekend_definition: SessionDefinition,
        reference_tz: ZoneInfo,
    ):
        if not sessions:
            raise InvalidConfiguration("session clock needs at least one session")
        self.sessions = list(sessions)
        self.weekend = weekend
        self.weekend_definition = weekend_definition
        self.reference_tz = reference_tz

    @classmethod
    def from_contracts(cls, contracts: Contracts) -> "SessionClock":
        doc = contracts.sessions
        sessions = [
            SessionDefinition(
                key=SessionKey(item["key"]),
                name=item.get("name", item["key"]),
                start_time=parse_hhmm(item["start"], f"{item['key']}.start"),
                end_time=parse_hhmm(item["end"], f"{item['key']}.end"),
                crosses_midnight=bool(item.get("crosses_midnight", False)),
                ib_duration_minutes=int(item.get("ib_duration_minutes", 0)),
                focus_instruments=tuple(item.get("focus", [])),
                description=item.get("description", ""),
                track_levels=bool(item.get("track_levels", False)),
            )
            for item in doc["sessions"]
        ]
        wk = doc["weekend"]
        weekend = WeekendClosure(
            close_weekday=wk["close_weekday"],
            close_time=parse_hhmm(wk["close_time"], "weekend.close_time"),
            open_weekday=wk["open_weekday"],
            open_time=parse_hhmm(wk["open_time"], "weekend.open_time"),
        )
        weekend_definition = SessionDefinition(
            key=SessionKey.WEEKEND,
            name=wk.get("name", "Weekend"),
            start_time=None,
            end_time=None,
            description=wk.get("description", "Markets closed"),
        )
        return cls(sessions, weekend, weekend_definition, ZoneInfo(doc["reference_timezone"]))

    # ─────────────────────────────────────────────────────────────────────

    def to_local(self, now: Optional[datetime] = None, tz: Optional[ZoneInfo] = None) -> datetime:
        """Convert to the reference zone. Naive datetimes are taken as reference-zone wall time."""
        zone = tz or self.reference_tz
        if now is None:
            return datetime.now(zone)
        if now.tzinfo is None:
            return now.replace(tzinfo=zone)
        return now.astimezone(zone)

    @staticmethod
    def _minute_of_day(local: datetime) -> int:
        return local.hour * 60 + local.minute

    def _minute_of_week(self, local: datetime) -> int:
        return local.weekday() * MINUTES_PER_DAY + self._minute_of_day(local)

    def definition_at(self, minute_of_day: int) -> SessionDefinition:
        for definition in self.sessions:
            if definition.contains(minute_of_day):
                return definition
        # Unreachable with a validated table.
        raise InvalidConfiguration(f"no session covers minute {minute_of_day}")

    def get(self, key) -> SessionDefinition:
        key = SessionKey(key)
        if key is SessionKey.WEEKEND:
            return self.weekend_definition
        for definition in self.sessions:
            if definition.key is key:
                return definition
        raise KeyError(key.value)

    def resolve_session(self, now: Optional[datetime] = None, tz: Optional[ZoneInfo] = None) -> SessionWindow:
        """Return the active session window, including Initial Balance status."""
        local = self.to_local(now, tz)
        t = self._minute_of_day(local)

        if self.weekend.contains(self._minute_of_week(local)):
            return SessionWindow(self.weekend_definition, False, 0, local)

        definition = self.definition_at(t)
        is_ib = False
        ib_remaining = 0
        if definition.ib_duration_minutes > 0:
            minutes_in = minutes_into_session(definition, t)
            if 0 <= minutes_in < definition.ib_duration_minutes:
                is_ib = True
                ib_remaining = definition.ib_duration_minutes - minutes_in

        return SessionWindow(definition, is_ib, ib_remaining, local)

    def first_session_after_weekend(self) -> SessionDefinition:
        reopen = self.weekend.open_time.hour * 60 + self.weekend.open_time.minute
        return self.definition_at(reopen)

    def resolve_next_session(self, now: Optional[datetime] = None, tz: Optional[ZoneInfo] = None) -> NextSession:
        """Return the next session in cyclical order and the minutes until it starts.

        When the weekend closure starts before that session would, the next session is
        the first one after the weekend and the countdown runs to the weekend reopen.
        """
        local = self.to_local(now, tz)
        t = self._minute_of_day(local)
        mow = self._minute_of_week(local)

        if self.weekend.contains(mow):
            return NextSession(self.first_session_after_weekend(), self.weekend.minutes_until_open(mow))

        current = self.definition_at(t)
        idx = self.sessions.index(current)
        nxt = self.sessions[(idx + 1) % len(self.sessions)]

        start = nxt.start_minutes
        minutes_until = start - t if start > t else (MINUTES_PER_DAY - t) + start

        if self.weekend.minutes_until_close(mow) <= minutes_until:
            return NextSession(self.first_session_after_weekend(), self.weekend.minutes_until_open(mow))
        return NextSession(nxt, minutes_until)


def minutes_into_session(definition: SessionDefinition, minute_of_day: int) -> int:
    start = definition.start_minutes
    if definition.crosses_midnight and minute_of_day < definition.end_minutes:
        # After midnight in a session that started the previous evening
        return (MINUTES_PER_DAY - start) + minute_of_day
    return minute_of_day - start
