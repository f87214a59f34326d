"""
Indicator Engine.

Recomputes all twelve indicators and the composite bias on a fixed timer
from the latest immutable FeedSnapshot, independent of how bursty the
feed is.

Example:
    >>> engine = IndicatorEngine(feed_state)
    >>> task = asyncio.create_task(engine.run())
    >>> engine.latest.bias.signal
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from ..config import INDICATOR_INTERVAL
from . import calculations as calc
from .bias import BiasAggregator
from .feed_state import FeedState
from .models import FeedSnapshot, IndicatorReading, IndicatorResult

logger = logging.getLogger(__name__)

ReadingListener = Callable[[IndicatorReading], None]


def compute_indicators(snapshot: FeedSnapshot, now_ms: int) -> dict[str, Optional[IndicatorResult]]:
    """Run every indicator against one snapshot."""
    closes = calc.closes_of(snapshot.candles)
    return {
        "obi": calc.compute_obi(snapshot.bids, snapshot.asks, snapshot.mid),
        "cvd": calc.compute_cvd(snapshot.trades, now_ms),
        "rsi": calc.compute_rsi(closes),
        "macd": calc.compute_macd(closes),
        "ema_cross": calc.compute_ema_cross(closes),
        "vwap": calc.compute_vwap(snapshot.candles, snapshot.mid),
        "heikin_ashi": calc.compute_heikin_ashi(snapshot.candles),
        "poc": calc.compute_poc(snapshot.candles, snapshot.mid),
        "walls": calc.compute_walls(snapshot.bids, snapshot.asks),
        "bbands": calc.compute_bbands(closes, snapshot.mid),
        "flow_toxicity": calc.compute_flow_toxicity(snapshot.trades, now_ms),
        "roc": calc.compute_roc(closes),
    }


class IndicatorEngine:
    """
    Timer-driven indicator recompute loop.

    Attributes:
        feed: Source of FeedSnapshots.
        aggregator: Bias aggregator applied to each reading.
        interval: Seconds between recomputes.
        latest: Last reading, flagged stale while the feed is unusable.
        tick_count: Number of readings produced.
    """

    def __init__(
        self,
        feed: FeedState,
        aggregator: Optional[BiasAggregator] = None,
        interval: float = INDICATOR_INTERVAL,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.feed = feed
        self.aggregator = aggregator or BiasAggregator()
        self.interval = interval
        self.latest: Optional[IndicatorReading] = None
        self.tick_count = 0

        self._clock = clock or (lambda: int(time.time() * 1000))
        self._listeners: list[ReadingListener] = []
        self._shutdown_event = asyncio.Event()
        self._feed_down = False

    def compute(self, snapshot: FeedSnapshot, now_ms: int) -> IndicatorReading:
        """Pure recompute of one reading from a snapshot."""
        results = compute_indicators(snapshot, now_ms)
        return IndicatorReading(
            computed_at=now_ms,
            feed_version=snapshot.version,
            results=results,
            bias=self.aggregator.compute(results),
        )

    def on_reading(self, listener: ReadingListener) -> None:
        self._listeners.append(listener)

    def tick(self) -> Optional[IndicatorReading]:
        """
        Produce one reading from the current snapshot.

        Returns None (and flags the previous reading stale) when the feed is
        disconnected or has no book/candles yet.
        """
        snapshot = self.feed.snapshot()
        if not snapshot.is_usable:
            if not self._feed_down:
                logger.warning(f"Feed unavailable ({snapshot.status}), indicator readings are stale")
                self._feed_down = True
            if self.latest is not None and not self.latest.stale:
                self.latest = self.latest.as_stale()
            return None

        if self._feed_down:
            logger.info("Feed recovered, resuming indicator readings")
            self._feed_down = False

        reading = self.compute(snapshot, self._clock())
        self.latest = reading
        self.tick_count += 1
        logger.debug(
            f"Indicators v{snapshot.version}: bias {reading.bias.score:+.1f} ({reading.bias.signal})"
        )
        for listener in list(self._listeners):
            try:
                listener(reading)
            except Exception as e:
                logger.warning(f"Reading listener failed: {e}")
        return reading

    async def run(self) -> None:
        """Recompute every ``interval`` seconds until stopped."""
        logger.info(f"Starting indicator engine (interval={self.interval}s)")
        self._shutdown_event.clear()
        try:
            while not self._shutdown_event.is_set():
                try:
                    self.tick()
                except Exception as e:
                    logger.error(f"Indicator tick failed: {e}", exc_info=True)

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Indicator engine cancelled")
        finally:
            logger.info("Indicator engine stopped")

    def stop(self) -> None:
        self._shutdown_event.set()
