"""
Tests for the session state store: level tracking, IB lifecycle, resets, copies, locking.
"""
from __future__ import annotations

import threading

import pytest

from market_drivers.core.errors import UnknownSessionError
from market_drivers.core.state_store import SessionStateStore
from market_drivers.core.types import PriceTick, SessionKey, SweepEvent


@pytest.fixture
def store(contracts):
    return SessionStateStore.from_contracts(contracts)


def test_tracked_sessions_come_from_contracts(store):
    assert set(store.session_keys) == {SessionKey.ASIA, SessionKey.LONDON, SessionKey.US_RTH}


def test_first_tick_seeds_levels(store):
    store.record_tick("US_RTH", PriceTick(open=6000, high=6005, low=5995, close=6002, delta=100, volume=1000))
    levels = store.get_levels(SessionKey.US_RTH)
    assert (levels.high, levels.low, levels.open, levels.close) == (6005, 5995, 6000, 6002)
    assert levels.delta == 100
    assert levels.volume == 1000


def test_ticks_extend_range_and_keep_open(store):
    store.record_tick(SessionKey.US_RTH, PriceTick(open=6000, high=6005, low=5995, close=6001))
    store.record_tick(SessionKey.US_RTH, PriceTick(open=6001, high=6003, low=5990, close=5992, delta=-40, volume=500))
    store.record_tick(SessionKey.US_RTH, PriceTick(high=6012, low=5999, close=6010, delta=25, volume=900))

    levels = store.get_levels(SessionKey.US_RTH)
    assert levels.high == 6012
    assert levels.low == 5990
    assert levels.open == 6000
    assert levels.close == 6010
    # Cumulative counters are overwritten, not summed
    assert levels.delta == 25
    assert levels.volume == 900


def test_initial_balance_only_extends_when_flagged(store):
    store.record_tick(SessionKey.US_RTH, PriceTick(high=6005, low=5995), in_initial_balance=True)
    store.record_tick(SessionKey.US_RTH, PriceTick(high=6020, low=5980))

    ib = store.get_initial_balance(SessionKey.US_RTH)
    assert (ib.high, ib.low, ib.complete) == (6005, 5995, False)


def test_mark_ib_complete_is_idempotent_and_freezes_levels(store):
    store.record_initial_balance(SessionKey.LONDON, 6010, 5990)
    store.mark_initial_balance_complete(SessionKey.LONDON)
    store.mark_initial_balance_complete(SessionKey.LONDON)
    store.record_tick(SessionKey.LONDON, PriceTick(high=6050, low=5950), in_initial_balance=True)
    store.record_initial_balance(SessionKey.LONDON, 6100, 5900)

    ib = store.get_initial_balance(SessionKey.LONDON)
    assert (ib.high, ib.low, ib.complete) == (6010, 5990, True)


def test_sweeps_append_and_reset_clears(store):
    store.record_tick(SessionKey.ASIA, PriceTick(open=6000, high=6001, low=5999), in_initial_balance=True)
    store.record_sweep(SessionKey.ASIA, SweepEvent("ib_low", 5999, "2026-10-14T18:20:00-04:00", True))
    store.record_sweep(SessionKey.ASIA, SweepEvent("session_high", 6001, "2026-10-14T19:05:00-04:00"))
    assert len(store.get_levels(SessionKey.ASIA).sweeps) == 2

    store.reset_session(SessionKey.ASIA)
    levels = store.get_levels(SessionKey.ASIA)
    ib = store.get_initial_balance(SessionKey.ASIA)
    assert levels.high is None and levels.open is None and levels.sweeps == []
    assert levels.delta == 0.0
    assert ib.high is None and ib.complete is False


def test_reset_only_touches_one_session(store):
    store.record_tick(SessionKey.ASIA, PriceTick(high=1, low=1))
    store.record_tick(SessionKey.LONDON, PriceTick(high=2, low=2))
    store.reset_session(SessionKey.ASIA)
    assert store.get_levels(SessionKey.LONDON).high == 2


def test_readers_receive_copies(store):
    store.record_sweep(SessionKey.US_RTH, SweepEvent("vwap", 6000, "t"))
    levels = store.get_levels(SessionKey.US_RTH)
    levels.high = 9999
    levels.sweeps.clear()

    fresh = store.get_levels(SessionKey.US_RTH)
    assert fresh.high is None
    assert len(fresh.sweeps) == 1


def test_untracked_session_raises(store):
    with pytest.raises(UnknownSessionError):
        store.record_tick(SessionKey.US_PRE, PriceTick(high=1, low=1))
    with pytest.raises(KeyError):
        store.get_levels("NOT_A_SESSION")


def test_session_summary(store):
    store.record_tick(SessionKey.US_RTH, PriceTick(open=6000, high=6010, low=5990, close=6008, delta=300, volume=1200),
                      in_initial_balance=True)
    summary = store.session_summary(SessionKey.US_RTH)
    assert summary["range"] == 20
    assert summary["control"] == "BUYERS"
    assert summary["delta_percent"] == 25.0
    assert summary["ib_range"] == 20
    assert summary["ib_complete"] is False


def test_session_summary_empty(store):
    summary = store.session_summary(SessionKey.LONDON)
    assert summary["range"] == 0.0
    assert summary["control"] == "NEUTRAL"
    assert summary["delta_percent"] == 0.0


def test_handoff_lists_every_tracked_session(store):
    store.record_tick(SessionKey.ASIA, PriceTick(high=6001, low=5999))
    handoff = store.handoff()
    assert set(handoff["sessions"]) == {"ASIA", "LONDON", "US_RTH"}
    assert handoff["sessions"]["ASIA"]["high"] == 6001
    assert "timestamp" in handoff


def test_concurrent_ticks_keep_extremes(store):
    def writer(base):
        for i in range(500):
            store.record_tick(SessionKey.US_RTH, PriceTick(high=base + i, low=base - i))

    threads = [threading.Thread(target=writer, args=(6000 + n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    levels = store.get_levels(SessionKey.US_RTH)
    assert levels.high == 6007 + 499
    assert levels.low == 6000 - 499


def test_reads_never_observe_torn_ticks(store):
    stop = threading.Event()
    torn = []

    def writer():
        for i in range(1, 3000):
            store.record_tick(SessionKey.US_RTH, PriceTick(high=float(i), low=0.0, delta=float(i), volume=float(i)))
        stop.set()

    def reader():
        while not stop.is_set():
            levels = store.get_levels(SessionKey.US_RTH)
            if levels.high is not None and not (levels.high == levels.delta == levels.volume):
                torn.append((levels.high, levels.delta, levels.volume))

    threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert torn == []
