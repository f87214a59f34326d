"""
Versioned feed state.

The feed listener thread owns the write side: every update builds a new
immutable FeedSnapshot and swaps it in under a lock. Readers call
``snapshot()`` and get a consistent point-in-time view without locking.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Iterable, Optional

from ..config import CANDLE_BUFFER_MAX, TRADE_BUFFER_MAX, TRADE_BUFFER_SECONDS
from .models import BookLevel, Candle, FeedSnapshot, FeedStatus, TradeTick

logger = logging.getLogger(__name__)

StatusListener = Callable[[FeedStatus], None]


class FeedState:
    """
    Holder of the current FeedSnapshot.

    Attributes:
        trade_window_ms: Trades older than this (relative to the newest) are pruned.
        max_trades: Upper bound on buffered trades.
        max_candles: Upper bound on buffered candles.
    """

    def __init__(
        self,
        trade_window_seconds: int = TRADE_BUFFER_SECONDS,
        max_trades: int = TRADE_BUFFER_MAX,
        max_candles: int = CANDLE_BUFFER_MAX,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.trade_window_ms = trade_window_seconds * 1000
        self.max_trades = max_trades
        self.max_candles = max_candles
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._lock = threading.Lock()
        self._snapshot = FeedSnapshot()
        self._status_listeners: list[StatusListener] = []

    def snapshot(self) -> FeedSnapshot:
        """Current snapshot. Safe to call from any thread."""
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    @property
    def status(self) -> FeedStatus:
        return self._snapshot.status

    def on_status(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener; returns an unsubscribe callable."""
        self._status_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Writers
    # -------------------------------------------------------------------------

    def set_status(self, status: FeedStatus) -> None:
        with self._lock:
            if self._snapshot.status is status:
                return
            self._swap(status=status)
        logger.info(f"Feed status: {status}")
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                logger.warning(f"Status listener failed: {e}")

    def set_book(self, bids: Iterable[BookLevel], asks: Iterable[BookLevel]) -> None:
        """Replace the order book; mid is recomputed from the best levels."""
        bid_levels = tuple(sorted(bids, key=lambda lvl: lvl.price, reverse=True))
        ask_levels = tuple(sorted(asks, key=lambda lvl: lvl.price))
        with self._lock:
            mid = self._snapshot.mid
            if bid_levels and ask_levels:
                mid = (bid_levels[0].price + ask_levels[0].price) / 2
            self._swap(bids=bid_levels, asks=ask_levels, mid=mid)

    def add_trades(self, trades: Iterable[TradeTick]) -> None:
        new = tuple(trades)
        if not new:
            return
        with self._lock:
            merged = self._snapshot.trades + new
            cutoff = max(t.time for t in merged) - self.trade_window_ms
            merged = tuple(t for t in merged if t.time >= cutoff)
            if len(merged) > self.max_trades:
                merged = merged[-self.max_trades:]
            self._swap(trades=merged)

    def add_trade(self, trade: TradeTick) -> None:
        self.add_trades((trade,))

    def upsert_candle(self, candle: Candle) -> None:
        """Replace the in-progress candle or append a newer one."""
        with self._lock:
            candles = list(self._snapshot.candles)
            if candles and candles[-1].open_time == candle.open_time:
                candles[-1] = candle
            elif not candles or candle.open_time > candles[-1].open_time:
                candles.append(candle)
            else:
                logger.debug(f"Ignoring out-of-order candle {candle.open_time}")
                return
            if len(candles) > self.max_candles:
                candles = candles[-self.max_candles:]
            self._swap(candles=tuple(candles))

    def set_candles(self, candles: Iterable[Candle]) -> None:
        """Replace the candle buffer (bootstrap from REST)."""
        ordered = tuple(sorted(candles, key=lambda c: c.open_time))[-self.max_candles:]
        with self._lock:
            self._swap(candles=ordered)

    def _swap(self, **changes) -> None:
        # Caller holds the lock.
        current = self._snapshot
        self._snapshot = replace(
            current,
            version=current.version + 1,
            updated_at=self._clock(),
            **changes,
        )
