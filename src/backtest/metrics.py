"""
Performance metrics for the rules backtester.

Calculates summary statistics from the trade log and equity curve:
- P&L and win/loss counts over closed (SELL) trades
- Max drawdown from the equity curve
- Sharpe ratio of per-market returns, annualized for 288 markets/day
- Profit factor and average win/loss
"""

import math
from typing import List

from ..config import MARKETS_PER_DAY
from ..trading.models import Trade, TradeSide
from .models import BacktestResult, BacktestStats, EquityPoint

ANNUALIZATION = math.sqrt(MARKETS_PER_DAY * 365)


class BacktestMetrics:
    """
    Calculate performance metrics for rule backtests.
    """

    @staticmethod
    def calculate(
        trades: List[Trade],
        equity_curve: List[EquityPoint],
        starting_balance: float,
        markets_processed: int,
    ) -> BacktestStats:
        """
        Calculate all statistics of a run.

        Args:
            trades: Ledger trades in insertion order.
            equity_curve: Equity samples in time order.
            starting_balance: Balance the run started with.
            markets_processed: Number of markets replayed.

        Returns:
            BacktestStats
        """
        closed = [t for t in trades if t.side is TradeSide.SELL and t.realized_pnl is not None]
        pnl_values = [float(t.realized_pnl) for t in closed]

        wins = [p for p in pnl_values if p > 0]
        losses = [p for p in pnl_values if p <= 0]
        gross_profit = sum(wins)
        gross_loss = abs(sum(losses))

        if gross_loss > 0:
            profit_factor = gross_profit / gross_loss
        else:
            profit_factor = math.inf if gross_profit > 0 else 0.0

        total_pnl = sum(pnl_values)
        max_dd, max_dd_pct = BacktestMetrics._max_drawdown(equity_curve, starting_balance)

        return BacktestStats(
            total_trades=len(trades),
            closed_trades=len(closed),
            wins=len(wins),
            losses=len(losses),
            win_rate=len(wins) / len(closed) if closed else 0.0,
            total_pnl=total_pnl,
            total_pnl_pct=total_pnl / starting_balance if starting_balance > 0 else 0.0,
            total_fees=float(sum(t.fee for t in trades)),
            max_drawdown=max_dd,
            max_drawdown_pct=max_dd_pct,
            sharpe_ratio=BacktestMetrics._sharpe(equity_curve, starting_balance),
            profit_factor=profit_factor,
            avg_win=gross_profit / len(wins) if wins else 0.0,
            avg_loss=gross_loss / len(losses) if losses else 0.0,
            markets_processed=markets_processed,
        )

    @staticmethod
    def _max_drawdown(equity_curve: List[EquityPoint], starting_balance: float) -> tuple[float, float]:
        """Largest peak-to-trough equity drop, absolute and as a fraction of the peak."""
        peak = starting_balance
        max_dd = 0.0
        max_dd_pct = 0.0
        for point in equity_curve:
            if point.equity > peak:
                peak = point.equity
            drawdown = peak - point.equity
            if drawdown > max_dd:
                max_dd = drawdown
                max_dd_pct = drawdown / peak if peak > 0 else 0.0
        return max_dd, max_dd_pct

    @staticmethod
    def _sharpe(equity_curve: List[EquityPoint], starting_balance: float) -> float:
        """Annualized Sharpe of market-to-market equity returns (sample std)."""
        returns = []
        prev = starting_balance
        for point in equity_curve:
            if not point.settlement:
                continue
            if prev > 0:
                returns.append((point.equity - prev) / prev)
            prev = point.equity

        if len(returns) < 2:
            return 0.0
        mean = sum(returns) / len(returns)
        variance = sum((r - mean) ** 2 for r in returns) / (len(returns) - 1)
        std = math.sqrt(variance)
        return mean / std * ANNUALIZATION if std > 0 else 0.0

    @staticmethod
    def format_report(result: BacktestResult) -> str:
        """
        Format a result as a human-readable report.

        Args:
            result: Completed backtest result

        Returns:
            Formatted string report
        """
        stats = result.stats
        pf = "inf" if math.isinf(stats.profit_factor) else f"{stats.profit_factor:.2f}"
        lines = [
            "=" * 60,
            "RULES BACKTEST REPORT",
            "=" * 60,
            "",
            "SUMMARY",
            "-" * 40,
            f"Rules:                {len(result.config.rules)} ({result.config.rule_mode})",
            f"Markets Processed:    {result.markets_processed}",
            f"Rows Skipped:         {result.rows_skipped}",
            f"Starting Balance:     ${result.config.starting_balance:.2f}",
            f"Final Balance:        ${result.final_balance:.2f}",
            f"Total P&L:            ${stats.total_pnl:.2f} ({stats.total_pnl_pct:.1%})",
            f"Total Fees:           ${stats.total_fees:.2f}",
            "",
            "TRADES",
            "-" * 40,
            f"Total Trades:         {stats.total_trades}",
            f"Closed Trades:        {stats.closed_trades}",
            f"Wins / Losses:        {stats.wins} / {stats.losses}",
            f"Win Rate:             {stats.win_rate:.1%}",
            f"Avg Win:              ${stats.avg_win:.4f}",
            f"Avg Loss:             ${stats.avg_loss:.4f}",
            "",
            "RISK METRICS",
            "-" * 40,
            f"Profit Factor:        {pf}",
            f"Sharpe Ratio:         {stats.sharpe_ratio:.3f}",
            f"Max Drawdown:         ${stats.max_drawdown:.2f} ({stats.max_drawdown_pct:.1%})",
            "",
            "=" * 60,
        ]
        return "\n".join(lines)
