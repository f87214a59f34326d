"""
Live paper trader for 5-minute BTC Up/Down markets.

Tracks the current market by slug, builds a MarketContext from the CLOB
quotes every cycle, runs the shared RuleExecutor against the paper ledger,
settles finished markets once Gamma reports their outcome and feeds those
outcomes to the AOI aggregator. The indicator engine runs alongside on its
own timer.

Example:
    >>> trader = LiveTrader(rules, ledger)
    >>> await trader.bootstrap_aoi()
    >>> await trader.run()
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from ..analytics.aoi import OutcomeLike, RollingOutcomeAggregator
from ..api.clob_ws import ClobMarketFeed, TokenQuote
from ..api.gamma import GammaClient, MarketInfo
from ..config import (
    AOI_WINDOW,
    AOI_WINDOWS,
    FALLBACK_TRIGGER_TTC,
    MARKET_DURATION,
    QUOTE_MAX_AGE_SECONDS,
    RULE_CYCLE_INTERVAL,
    market_slug,
)
from ..indicators.engine import IndicatorEngine
from ..indicators.models import FeedStatus
from ..rules.executor import RuleExecutor, RuleMode
from ..rules.models import TradingRule, build_market_context
from ..trading.ledger import PaperLedger
from ..trading.models import Outcome

logger = logging.getLogger(__name__)

SETTLEMENT_POLL_SECONDS = 10
MARKET_RETRY_SECONDS = 5


def current_window_start(now_ms: int) -> int:
    """Start (epoch seconds) of the 5-minute window containing ``now_ms``."""
    now_s = now_ms // 1000
    return now_s - now_s % MARKET_DURATION


def _binary(outcome: str) -> int:
    return 1 if Outcome.parse(outcome) is Outcome.YES else 0


@dataclass
class TraderState:
    """
    Current state of the live trader.

    Attributes:
        is_running: Whether the loop is running.
        cycle_count: Cycles completed.
        current_slug: Slug of the market being traded.
        executions: Rule executions this session.
        settlements: Markets settled this session.
        last_error: Last cycle error, if any.
    """

    is_running: bool = False
    cycle_count: int = 0
    current_slug: Optional[str] = None
    executions: int = 0
    settlements: int = 0
    last_error: Optional[str] = None
    pending: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class LiveTrader:
    """
    Live rule loop on the paper ledger.

    Args:
        rules: Rules to run.
        ledger: Paper ledger receiving trades.
        gamma: Market metadata client.
        clob: CLOB quote feed.
        indicator_engine: Optional indicator engine started with the loop.
        rule_mode: INDEPENDENT or EXCLUSIVE.
        aoi_window: AOI window for the "aoi" condition field.
        cycle_interval: Seconds between rule cycles.
        clock: Epoch-ms clock.
        fallback_rule: Rule fired near the close of a market where no
            primary rule fired.
        fallback_trigger_ttc: Seconds before close at which the fallback
            is considered.
        outcomes: Already resolved markets seeding the AOI.
        max_quote_age: Quotes older than this many seconds are not traded on.
    """

    def __init__(
        self,
        rules: Sequence[TradingRule],
        ledger: PaperLedger,
        gamma: Optional[GammaClient] = None,
        clob: Optional[ClobMarketFeed] = None,
        indicator_engine: Optional[IndicatorEngine] = None,
        rule_mode: RuleMode = RuleMode.INDEPENDENT,
        aoi_window: int = AOI_WINDOW,
        cycle_interval: float = RULE_CYCLE_INTERVAL,
        clock: Optional[Callable[[], int]] = None,
        fallback_rule: Optional[TradingRule] = None,
        fallback_trigger_ttc: float = FALLBACK_TRIGGER_TTC,
        outcomes: Optional[Iterable[OutcomeLike]] = None,
        max_quote_age: float = QUOTE_MAX_AGE_SECONDS,
    ) -> None:
        self.ledger = ledger
        self.gamma = gamma or GammaClient()
        self.clob = clob or ClobMarketFeed()
        self.indicator_engine = indicator_engine
        self.executor = RuleExecutor(
            rules,
            ledger,
            mode=rule_mode,
            fallback_rule=fallback_rule,
            fallback_trigger_ttc=fallback_trigger_ttc,
        )
        self.aoi = RollingOutcomeAggregator(set(AOI_WINDOWS) | {aoi_window})
        if outcomes is not None:
            self.aoi.extend(sorted(outcomes, key=lambda o: o.start_time))
        self.aoi_window = aoi_window
        self.cycle_interval = cycle_interval
        self.max_quote_age = max_quote_age

        self.state = TraderState()
        self.market: Optional[MarketInfo] = None
        self._pending: dict[str, MarketInfo] = {}
        self._last_settle_check: dict[str, int] = {}
        self._last_lookup = 0
        # Finished markets not yet in the AOI, with their outcome once known
        self._aoi_backlog: dict[str, MarketInfo] = {}
        self._resolved: dict[str, int] = {}
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._shutdown_event = asyncio.Event()

        logger.info(
            f"LiveTrader initialized: {len(rules)} rules, mode={rule_mode}, aoi{aoi_window} "
            f"({len(self.aoi)} outcomes)"
        )

    def _setup_signal_handlers(self) -> None:
        try:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)
        except (ValueError, RuntimeError):
            # Signal handlers can only be set in main thread
            pass

    def _signal_handler(self, signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, initiating shutdown...")
        self.stop()

    # =========================================================================
    # AOI history
    # =========================================================================

    async def bootstrap_aoi(self, count: Optional[int] = None) -> int:
        """
        Seed the AOI with the markets just before the current window.

        Looks up the previous ``count`` slugs (default: the AOI window)
        on Gamma, oldest first. Resolved markets go straight into the
        AOI; markets still awaiting resolution are polled like any
        finished market and join the AOI in order once they resolve.

        Returns:
            Number of outcomes in the AOI afterwards.
        """
        count = self.aoi_window if count is None else count
        window_start = current_window_start(self._clock())
        last_time = self.aoi.last_time

        for k in range(count, 0, -1):
            slug = market_slug(window_start - k * MARKET_DURATION)
            info = await asyncio.to_thread(self.gamma.get_market_info, slug)
            if info is None:
                logger.warning(f"AOI bootstrap: {slug} not found on Gamma")
                continue
            if last_time is not None and info.start_time <= last_time:
                continue
            self._aoi_backlog[slug] = info
            if info.outcome is not None:
                self._resolved[slug] = _binary(info.outcome)
            else:
                self._pending[slug] = info

        self.state.pending = list(self._pending)
        self._flush_aoi()
        logger.info(f"AOI bootstrapped with {len(self.aoi)} outcomes, {len(self._aoi_backlog)} awaiting resolution")
        return len(self.aoi)

    def _flush_aoi(self) -> None:
        # Append in start_time order only; a later market waits for every
        # earlier finished market to resolve.
        for info in sorted(self._aoi_backlog.values(), key=lambda i: i.start_time):
            binary = self._resolved.get(info.slug)
            if binary is None:
                break
            del self._aoi_backlog[info.slug]
            del self._resolved[info.slug]
            last_time = self.aoi.last_time
            if last_time is not None and info.start_time <= last_time:
                continue
            self.aoi.append(info.start_time, binary)

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self) -> dict[str, Any]:
        """
        Run one rule cycle.

        1. Roll over to the current 5-minute market if needed
        2. Build the context from fresh live quotes and run the rules
        3. Mark positions to market
        4. Settle finished markets whose outcome is known
        """
        now = self._clock()
        result: dict[str, Any] = {"timestamp": now, "executions": [], "settled": []}

        slug = market_slug(current_window_start(now))
        if slug != self.state.current_slug:
            await self._roll_over(slug, now)
        elif self.market is None and now - self._last_lookup >= MARKET_RETRY_SECONDS * 1000:
            await self._load_market(slug, now)

        if self.market is not None:
            quote = self._fresh_quote(now)
            if quote is not None:
                context = self._build_context(now, quote)
                executions = self.executor.process(context, self.market.market_id, now)
                self.ledger.mark_to_market(self.market.market_id, context.price_yes)
                self.state.executions += len(executions)
                result["executions"] = [e.to_dict() for e in executions]
            else:
                result["stale"] = True

        result["settled"] = await self._settle_finished(now)
        self.state.cycle_count += 1
        return result

    async def _roll_over(self, slug: str, now: int) -> None:
        if self.market is not None:
            self._pending[self.market.slug] = self.market
            self._aoi_backlog[self.market.slug] = self.market
            self.state.pending = list(self._pending)

        logger.info(f"New market window: {slug}")
        self.state.current_slug = slug
        self.market = None
        await self._load_market(slug, now)

    async def _load_market(self, slug: str, now: int) -> None:
        self._last_lookup = now
        self.market = await asyncio.to_thread(self.gamma.get_market_info, slug)
        if self.market is None:
            logger.warning(f"Market {slug} not found on Gamma, retrying in {MARKET_RETRY_SECONDS}s")
            return
        self.clob.subscribe(self.market.token_ids)

    def _fresh_quote(self, now: int) -> Optional[TokenQuote]:
        if self.clob.status is not FeedStatus.CONNECTED:
            logger.debug(f"CLOB feed {self.clob.status}, skipping rules")
            return None
        quote = self.clob.quote(self.market.yes_token_id)
        if quote is None:
            logger.debug(f"No quote yet for {self.market.slug}")
            return None
        age = now - quote.updated_at
        if age > self.max_quote_age * 1000:
            logger.debug(f"Quote for {self.market.slug} is {age / 1000:.1f}s old, skipping rules")
            return None
        return quote

    def _build_context(self, now: int, quote: TokenQuote):
        return build_market_context(
            slug=self.market.slug,
            now_ms=now,
            end_time_ms=self.market.end_time,
            mid_price=quote.mid,
            last_trade_price=quote.last_trade_price,
            best_bid=quote.best_bid,
            best_ask=quote.best_ask,
            volume=self.market.volume,
            aoi=self.aoi.latest(self.aoi_window),
        )

    async def _settle_finished(self, now: int) -> list[str]:
        settled = []
        for slug, info in sorted(self._pending.items(), key=lambda kv: kv[1].start_time):
            if now < info.end_time:
                continue
            if now - self._last_settle_check.get(slug, 0) < SETTLEMENT_POLL_SECONDS * 1000:
                continue
            self._last_settle_check[slug] = now

            resolved = await asyncio.to_thread(self.gamma.get_market_info, slug)
            if resolved is None or resolved.outcome is None:
                logger.debug(f"{slug} not resolved yet")
                continue

            self.ledger.settle_market(info.market_id, slug, Outcome.parse(resolved.outcome), timestamp=now)
            if slug in self._aoi_backlog:
                self._resolved[slug] = _binary(resolved.outcome)
            settled.append(slug)
            logger.info(f"Market {slug} resolved {resolved.outcome}")

        for slug in settled:
            self._pending.pop(slug, None)
            self._last_settle_check.pop(slug, None)
        self._flush_aoi()
        self.state.settlements += len(settled)
        self.state.pending = list(self._pending)
        return settled

    # =========================================================================
    # Loop
    # =========================================================================

    async def run(self, duration: Optional[float] = None) -> None:
        """
        Main loop: rule cycles every ``cycle_interval`` seconds until stopped
        (or until ``duration`` seconds have passed).
        """
        logger.info("Starting LiveTrader main loop")
        self._setup_signal_handlers()
        self.state.is_running = True
        self.clob.connect()
        indicator_task = None
        if self.indicator_engine is not None:
            indicator_task = asyncio.create_task(self.indicator_engine.run())

        deadline = None if duration is None else time.monotonic() + duration
        try:
            while not self._shutdown_event.is_set():
                if deadline is not None and time.monotonic() >= deadline:
                    logger.info("Run duration reached")
                    break
                try:
                    await self.run_cycle()
                    self.state.last_error = None
                except Exception as e:
                    logger.error(f"Unexpected error in cycle: {e}", exc_info=True)
                    self.state.last_error = str(e)

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.cycle_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("LiveTrader run cancelled")
        finally:
            if self.indicator_engine is not None:
                self.indicator_engine.stop()
            if indicator_task is not None:
                await asyncio.gather(indicator_task, return_exceptions=True)
            self.clob.disconnect()
            self.state.is_running = False
            logger.info("LiveTrader stopped")

    def stop(self) -> None:
        """Stop the loop gracefully."""
        logger.info("Stopping LiveTrader...")
        self._shutdown_event.set()

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self.state.to_dict(),
            "ledger": self.ledger.get_stats(),
            "aoi": self.aoi.latest(self.aoi_window),
            "recent_executions": [e.to_dict() for e in list(self.executor.executions)[:10]],
            "indicators": None
            if self.indicator_engine is None or self.indicator_engine.latest is None
            else {
                "bias": self.indicator_engine.latest.bias.score,
                "signal": str(self.indicator_engine.latest.bias.signal),
                "stale": self.indicator_engine.latest.stale,
            },
        }
