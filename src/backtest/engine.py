"""
Backtest engine for trading rules on 5-minute Up/Down markets.

Replays historical markets in start_time order and their snapshots in
recorded_at order through the same RuleExecutor and PaperLedger used live:

1. Build a MarketContext per snapshot (AOI from outcomes of earlier markets)
2. Run the rules and apply matched actions to the run's private ledger
3. Mark open positions to market and sample equity
4. Settle every position when the market ends

A run depends only on its config and input rows: the random source is
seeded from the config, trade ids are sequential and every timestamp comes
from the data, so identical inputs give an identical result.
"""

import itertools
import logging
import random
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Optional, Sequence

from ..analytics.aoi import RollingOutcomeAggregator
from ..config import AOI_WINDOWS
from ..rules.executor import RuleExecutor
from ..rules.models import MarketContext, build_market_context
from ..trading.fees import ParabolicFee
from ..trading.ledger import PaperLedger
from ..trading.models import Outcome
from .metrics import BacktestMetrics
from .models import (
    BacktestConfig,
    BacktestResult,
    EquityPoint,
    HistoricalMarket,
    HistoricalOutcome,
    HistoricalSnapshot,
    MalformedRowError,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def derive_outcomes(markets: Sequence[HistoricalMarket]) -> list[HistoricalOutcome]:
    """Binary outcome view (Up = 1, Down = 0) of resolved markets, by start_time."""
    resolved = sorted(
        (m for m in markets if m.outcome is not None),
        key=lambda m: (m.start_time, m.id),
    )
    return [
        HistoricalOutcome(
            id=m.id,
            slug=m.slug,
            start_time=m.start_time,
            outcome=m.outcome,
            outcome_binary=1 if m.outcome == "Up" else 0,
        )
        for m in resolved
    ]


def snapshot_context(
    market: HistoricalMarket,
    snapshot: HistoricalSnapshot,
    aoi: Optional[float],
) -> MarketContext:
    """MarketContext of one historical snapshot; raises MalformedRowError if unusable."""
    context = build_market_context(
        slug=market.slug,
        now_ms=snapshot.recorded_at,
        end_time_ms=market.end_time,
        mid_price=snapshot.mid_price_yes,
        last_trade_price=snapshot.last_trade_price,
        best_bid=snapshot.best_bid_yes,
        best_ask=snapshot.best_ask_yes,
        volume=market.volume or 0.0,
        aoi=aoi,
    )
    if context is None:
        raise MalformedRowError(
            f"Snapshot of market {market.id} at {snapshot.recorded_at} has no usable price "
            f"(mid={snapshot.mid_price_yes}, last={snapshot.last_trade_price})"
        )
    return context


class BacktestEngine:
    """
    Deterministic replay of rules over historical data.

    Each call to ``run`` creates its own ledger, executor and random source;
    nothing is shared between runs or with the caller.
    """

    def __init__(self, config: Optional[BacktestConfig] = None):
        """
        Initialize the backtest engine.

        Args:
            config: Backtest configuration. Uses defaults if not provided.
        """
        self.config = config or BacktestConfig()
        self.config.validate()

    def run(
        self,
        markets: Sequence[HistoricalMarket],
        snapshots: Sequence[HistoricalSnapshot],
        outcomes: Optional[Sequence[HistoricalOutcome]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> BacktestResult:
        """
        Replay ``markets`` and return the complete result.

        Args:
            markets: Markets to replay; unresolved ones are skipped.
            snapshots: Price snapshots of those markets.
            outcomes: Binary outcome view; derived from ``markets`` if omitted.
            progress: Called with percent complete (0-100).

        Returns:
            BacktestResult

        Raises:
            Any exception other than MalformedRowError aborts the run.
        """
        config = self.config
        report = progress or (lambda percent: None)

        counter = itertools.count(1)
        ledger = PaperLedger(
            initial_balance=Decimal(str(config.starting_balance)),
            fee_model=ParabolicFee(config.fee_rate),
            id_factory=lambda: f"bt-{next(counter)}",
            clock=lambda: 0,
        )
        rng = random.Random(config.seed)
        executor = RuleExecutor(
            config.rules,
            ledger,
            mode=config.rule_mode,
            rng=rng.random,
            fallback_rule=config.fallback_rule,
            fallback_trigger_ttc=config.fallback_trigger_ttc,
        )

        aoi = RollingOutcomeAggregator(set(AOI_WINDOWS) | {config.aoi_window})
        outcome_rows = list(outcomes) if outcomes else derive_outcomes(markets)
        aoi.extend(sorted(outcome_rows, key=lambda o: (o.start_time, o.id)))

        resolved = [m for m in markets if m.outcome is not None]
        if len(resolved) < len(markets):
            logger.warning(f"Skipping {len(markets) - len(resolved)} unresolved market(s)")
        ordered = sorted(resolved, key=lambda m: (m.start_time, m.id))

        by_market: dict[int, list[HistoricalSnapshot]] = defaultdict(list)
        for snap in snapshots:
            by_market[snap.market_id].append(snap)
        for rows in by_market.values():
            rows.sort(key=lambda s: s.recorded_at)

        logger.info(
            f"Starting backtest on {len(ordered)} markets, {len(snapshots)} snapshots, "
            f"{len(config.rules)} rules ({config.rule_mode})"
        )

        equity_curve: list[EquityPoint] = []
        rows_skipped = 0
        last_percent = 0
        report(0)

        for i, market in enumerate(ordered):
            if config.reset_cooldowns_per_market:
                executor.reset()
            market_aoi = aoi.value_before(market.start_time, config.aoi_window)

            for snap in by_market.get(market.id, []):
                try:
                    context = snapshot_context(market, snap, market_aoi)
                except MalformedRowError as e:
                    rows_skipped += 1
                    logger.warning(f"Skipping malformed row: {e}")
                    continue

                executor.process(context, market.id, snap.recorded_at)
                ledger.mark_to_market(market.id, context.price_yes)
                equity_curve.append(
                    EquityPoint(
                        time=snap.recorded_at,
                        balance=float(ledger.balance),
                        equity=float(ledger.equity()),
                    )
                )

            ledger.settle_market(
                market.id, market.slug, Outcome.parse(market.outcome), timestamp=market.end_time
            )
            equity_curve.append(
                EquityPoint(
                    time=market.end_time,
                    balance=float(ledger.balance),
                    equity=float(ledger.equity()),
                    settlement=True,
                )
            )

            percent = (i + 1) * 100 // len(ordered)
            if percent != last_percent:
                last_percent = percent
                report(percent)

        if last_percent != 100:
            report(100)

        stats = BacktestMetrics.calculate(
            ledger.trades, equity_curve, config.starting_balance, len(ordered)
        )
        logger.info(
            f"Backtest finished: {stats.total_trades} trades, P&L ${stats.total_pnl:.2f}, "
            f"{rows_skipped} rows skipped"
        )
        return BacktestResult(
            config=config,
            stats=stats,
            trades=list(ledger.trades),
            equity_curve=equity_curve,
            markets_processed=len(ordered),
            rows_skipped=rows_skipped,
            final_balance=float(ledger.balance),
        )
