"""
Tests for the versioned feed state and the timer-driven indicator engine.
"""

import asyncio

import pytest

from src.indicators import (
    INDICATOR_NAMES,
    BookLevel,
    Candle,
    FeedState,
    FeedStatus,
    IndicatorEngine,
    TradeTick,
)

NOW = 1_700_000_000_000


def candles(n, start=100.0):
    return [
        Candle(NOW + i * 60_000, start + i, start + i + 1, start + i - 1, start + i + 0.5, 10.0)
        for i in range(n)
    ]


@pytest.fixture
def state():
    return FeedState(trade_window_seconds=10, max_trades=100, max_candles=50, clock=lambda: NOW)


@pytest.fixture
def live_state(state):
    """Connected feed with a book and a full candle buffer."""
    state.set_status(FeedStatus.CONNECTED)
    state.set_book([BookLevel(99.9, 5), BookLevel(99.8, 3)], [BookLevel(100.1, 2), BookLevel(100.2, 1)])
    state.set_candles(candles(40))
    state.add_trades([TradeTick(NOW - 1000, 100, 1.0, True), TradeTick(NOW - 500, 100, 0.5, False)])
    return state


class TestFeedState:
    """Tests for snapshot swapping."""

    def test_set_book_sorts_and_sets_mid(self, state):
        state.set_book([BookLevel(99.0, 1), BookLevel(99.5, 1)], [BookLevel(101.0, 1), BookLevel(100.5, 1)])
        snap = state.snapshot()
        assert snap.bids[0].price == 99.5
        assert snap.asks[0].price == 100.5
        assert snap.mid == 100.0

    def test_one_sided_book_keeps_mid(self, state):
        state.set_book([BookLevel(99.0, 1)], [BookLevel(101.0, 1)])
        state.set_book([BookLevel(99.0, 1)], [])
        assert state.snapshot().mid == 100.0

    def test_versions_increase_and_snapshots_are_immutable(self, state):
        before = state.snapshot()
        state.set_book([BookLevel(99.0, 1)], [BookLevel(101.0, 1)])
        after = state.snapshot()

        assert after.version == before.version + 1
        assert before.bids == ()
        assert after.updated_at == NOW

    def test_trades_pruned_by_window(self, state):
        state.add_trades([TradeTick(NOW, 1, 1, True), TradeTick(NOW + 5000, 1, 1, True)])
        state.add_trade(TradeTick(NOW + 20_000, 1, 1, False))
        assert [t.time for t in state.snapshot().trades] == [NOW + 20_000]

    def test_trades_capped(self):
        state = FeedState(trade_window_seconds=600, max_trades=3)
        state.add_trades([TradeTick(NOW + i, 1, 1, True) for i in range(5)])
        assert [t.time for t in state.snapshot().trades] == [NOW + 2, NOW + 3, NOW + 4]

    def test_empty_trade_batch_is_noop(self, state):
        version = state.version
        state.add_trades([])
        assert state.version == version

    def test_upsert_candle(self, state):
        state.set_candles(candles(3))
        last = state.snapshot().candles[-1]

        updated = Candle(last.open_time, 1, 2, 0.5, 1.5, 99)
        state.upsert_candle(updated)
        assert state.snapshot().candles[-1] == updated
        assert len(state.snapshot().candles) == 3

        state.upsert_candle(Candle(last.open_time + 60_000, 1, 2, 0.5, 1.5, 1))
        assert len(state.snapshot().candles) == 4

        version = state.version
        state.upsert_candle(Candle(NOW - 60_000, 1, 2, 0.5, 1.5, 1))
        assert state.version == version

    def test_candles_capped(self, state):
        state.set_candles(candles(80))
        snap = state.snapshot()
        assert len(snap.candles) == 50
        assert snap.candles[-1].open_time == NOW + 79 * 60_000

    def test_status_listener(self, state):
        seen = []
        unsubscribe = state.on_status(seen.append)

        state.set_status(FeedStatus.CONNECTING)
        state.set_status(FeedStatus.CONNECTING)
        unsubscribe()
        state.set_status(FeedStatus.CONNECTED)

        assert seen == [FeedStatus.CONNECTING]
        assert state.status is FeedStatus.CONNECTED

    def test_is_usable(self, state, live_state):
        assert live_state.snapshot().is_usable
        live_state.set_status(FeedStatus.DISCONNECTED)
        assert not live_state.snapshot().is_usable


class TestIndicatorEngine:
    """Tests for recompute ticks."""

    def test_tick_produces_full_reading(self, live_state):
        engine = IndicatorEngine(live_state, clock=lambda: NOW)
        reading = engine.tick()

        assert reading is not None
        assert set(reading.results) == set(INDICATOR_NAMES)
        assert reading.feed_version == live_state.version
        assert reading.computed_at == NOW
        assert not reading.stale
        assert engine.latest is reading
        assert reading.get("rsi") is not None
        assert reading.get("macd") is not None

    def test_unknown_indicator_name(self, live_state):
        reading = IndicatorEngine(live_state, clock=lambda: NOW).tick()
        with pytest.raises(KeyError):
            reading.get("stochastic")

    def test_short_history_gives_none_results(self, state):
        state.set_status(FeedStatus.CONNECTED)
        state.set_book([BookLevel(99.9, 1)], [BookLevel(100.1, 1)])
        state.set_candles(candles(5))

        reading = IndicatorEngine(state, clock=lambda: NOW).tick()

        assert reading.get("macd") is None
        assert reading.get("rsi") is None
        assert reading.get("obi") is not None

    def test_unusable_feed_returns_none(self, state):
        engine = IndicatorEngine(state)
        assert engine.tick() is None
        assert engine.latest is None

    def test_disconnect_marks_last_reading_stale(self, live_state):
        engine = IndicatorEngine(live_state, clock=lambda: NOW)
        first = engine.tick()

        live_state.set_status(FeedStatus.DISCONNECTED)
        assert engine.tick() is None
        assert engine.latest.stale
        assert engine.latest.bias == first.bias

        live_state.set_status(FeedStatus.CONNECTED)
        assert not engine.tick().stale

    def test_listeners_receive_readings(self, live_state):
        engine = IndicatorEngine(live_state, clock=lambda: NOW)
        received = []
        engine.on_reading(received.append)
        engine.on_reading(lambda r: 1 / 0)

        engine.tick()

        assert len(received) == 1

    def test_compute_is_deterministic(self, live_state):
        engine = IndicatorEngine(live_state)
        snap = live_state.snapshot()
        assert engine.compute(snap, NOW) == engine.compute(snap, NOW)

    @pytest.mark.asyncio
    async def test_run_ticks_until_stopped(self, live_state):
        engine = IndicatorEngine(live_state, interval=0.01, clock=lambda: NOW)
        task = asyncio.create_task(engine.run())

        await asyncio.sleep(0.05)
        engine.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert engine.tick_count >= 2
        assert task.done()
