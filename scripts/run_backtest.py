#!/usr/bin/env python3
"""
Run a Rules Backtest

Replays saved rules against historical Up/Down market snapshots in an
isolated worker process and prints the performance report.

Usage:
    # Backtest the saved rules
    python scripts/run_backtest.py --markets data/markets.csv --snapshots data/snapshots.csv

    # Explicit outcomes table and rules file
    python scripts/run_backtest.py --markets m.csv --snapshots s.csv \\
        --outcomes o.csv --rules my_rules.json

    # Exclusive cooldowns, different seed, trades to CSV
    python scripts/run_backtest.py --markets m.csv --snapshots s.csv \\
        --mode exclusive --seed 7 --csv out/trades.csv

Input tables may be CSV, JSON or JSONL.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.backtest import (
    BacktestConfig,
    BacktestMetrics,
    BacktestRequest,
    BacktestWorker,
    BacktestWorkerError,
    load_history,
)
from src.config import (
    AOI_WINDOW,
    BACKTEST_SEED,
    FALLBACK_TRIGGER_TTC,
    FEE_RATE,
    LOGS_DIR,
    RULES_PATH,
    STARTING_BALANCE,
)
from src.rules import RuleMode, RuleStore, split_fallback
from src.trading.export import trades_to_csv


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the backtest."""
    level = logging.DEBUG if verbose else logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S"))

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOGS_DIR / f"backtest_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


def print_progress(percent: int) -> None:
    bar = "#" * (percent // 5)
    print(f"\r  [{bar:<20}] {percent:3d}%", end="", flush=True)
    if percent >= 100:
        print()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Backtest trading rules on historical Up/Down markets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--markets", required=True, help="Markets table (CSV/JSON/JSONL)")
    parser.add_argument("--snapshots", required=True, help="Snapshots table (CSV/JSON/JSONL)")
    parser.add_argument("--outcomes", default=None, help="Outcomes table (default: derived from markets)")
    parser.add_argument("--rules", default=str(RULES_PATH), help=f"Rules file (default: {RULES_PATH})")
    parser.add_argument(
        "--balance",
        type=float,
        default=STARTING_BALANCE,
        metavar="USD",
        help=f"Starting balance (default: {STARTING_BALANCE})",
    )
    parser.add_argument("--aoi-window", type=int, default=AOI_WINDOW, help=f"AOI window (default: {AOI_WINDOW})")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in RuleMode],
        default=RuleMode.INDEPENDENT.value,
        help="Cooldown mode (default: independent)",
    )
    parser.add_argument("--seed", type=int, default=BACKTEST_SEED, help=f"Random seed (default: {BACKTEST_SEED})")
    parser.add_argument("--fee-rate", type=float, default=FEE_RATE, help=f"Fee multiplier (default: {FEE_RATE})")
    parser.add_argument(
        "--reset-cooldowns",
        action="store_true",
        help="Forget rule fire times at every market boundary",
    )
    parser.add_argument(
        "--fallback-rule",
        default=None,
        metavar="RULE_ID",
        help="Rule fired near close in markets where no other rule fired",
    )
    parser.add_argument(
        "--fallback-ttc",
        type=float,
        default=FALLBACK_TRIGGER_TTC,
        metavar="SECONDS",
        help=f"Fallback time-to-close threshold (default: {FALLBACK_TRIGGER_TTC:g})",
    )
    parser.add_argument("--csv", default=None, metavar="PATH", help="Write trades to this CSV file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    rules = RuleStore(args.rules).load()
    if not rules:
        print(f"No rules found in {args.rules}")
        return 1

    try:
        rules, fallback = split_fallback(rules, args.fallback_rule)
    except ValueError as e:
        print(e)
        return 1

    history = load_history(args.markets, args.snapshots, args.outcomes)
    config = BacktestConfig(
        rules=rules,
        starting_balance=args.balance,
        aoi_window=args.aoi_window,
        rule_mode=RuleMode(args.mode),
        seed=args.seed,
        fee_rate=args.fee_rate,
        reset_cooldowns_per_market=args.reset_cooldowns,
        fallback_rule=fallback,
        fallback_trigger_ttc=args.fallback_ttc,
    )
    config.validate()

    print("\n" + "=" * 60)
    print("Running backtest")
    print("=" * 60)
    print(f"  Rules: {len(rules)} ({sum(r.enabled for r in rules)} enabled)")
    print(f"  Markets: {len(history.markets)}  Snapshots: {len(history.snapshots)}")
    if fallback:
        print(f"  Fallback: {fallback.name} @ ttc<={config.fallback_trigger_ttc:g}s")
    print(f"  Mode: {config.rule_mode}  Seed: {config.seed}\n")

    request = BacktestRequest(
        config=config,
        markets=history.markets,
        snapshots=history.snapshots,
        outcomes=history.outcomes,
    )
    worker = BacktestWorker()
    try:
        result = worker.run(request, on_progress=print_progress)
    except KeyboardInterrupt:
        worker.cancel()
        print("\nBacktest cancelled")
        return 130
    except BacktestWorkerError as e:
        logger.error(f"Backtest failed: {e}")
        return 1

    print(BacktestMetrics.format_report(result))

    if args.csv:
        trades_to_csv(result.trades, args.csv)
        print(f"Trades written to: {args.csv}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
