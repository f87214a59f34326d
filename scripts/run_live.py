#!/usr/bin/env python3
"""
Run the Live Paper Trader

Streams the current 5-minute BTC Up/Down market, runs the saved rules
against it on the paper ledger and computes the BTC indicator panel
alongside.

Usage:
    # Paper trading with the saved rules
    python scripts/run_live.py

    # Run for 30 minutes, exclusive cooldowns
    python scripts/run_live.py --duration 30 --mode exclusive

    # Skip the Binance indicator feed
    python scripts/run_live.py --no-indicators

    # Seed the AOI from a resolved outcomes CSV instead of Gamma
    python scripts/run_live.py --outcomes data/outcomes.csv

Trades are appended to the JSONL trade log (TRADE_LOG_PATH).
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.api.binance_ws import BinanceFeed
from src.backtest import load_outcomes
from src.config import (
    AOI_WINDOW,
    FALLBACK_TRIGGER_TTC,
    LOGS_DIR,
    RULES_PATH,
    STARTING_BALANCE,
    TRADE_LOG_PATH,
)
from src.indicators import FeedState, IndicatorEngine
from src.live import LiveTrader
from src.rules import RuleMode, RuleStore, split_fallback
from src.trading import PaperLedger


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the live trader."""
    level = logging.DEBUG if verbose else logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S"))

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOGS_DIR / f"live_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
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
    logging.getLogger("websocket").setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


async def run_trader(
    trader: LiveTrader,
    duration_minutes: int,
    binance: BinanceFeed | None,
    aoi_history: int = 0,
) -> None:
    if aoi_history > 0:
        count = await trader.bootstrap_aoi(aoi_history)
        print(f"AOI seeded with {count} outcomes")
    if binance is not None:
        binance.connect()
    try:
        await trader.run(duration=duration_minutes * 60 if duration_minutes > 0 else None)
    finally:
        if binance is not None:
            binance.disconnect()

        status = trader.get_status()
        state = status["state"]
        stats = status["ledger"]
        print("\n" + "=" * 60)
        print("Final Status")
        print("=" * 60)
        print(f"  Cycles completed: {state['cycle_count']}")
        print(f"  Rule executions: {state['executions']}")
        print(f"  Markets settled: {state['settlements']}")
        print(f"  Balance: ${stats['balance']}")
        print(f"  Realized P&L: ${stats['realized_pnl']}")
        if state.get("last_error"):
            print(f"\nLast Error: {state['last_error']}")
        print("=" * 60)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the live paper rule trader")
    parser.add_argument("--rules", default=str(RULES_PATH), help=f"Rules file (default: {RULES_PATH})")
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        metavar="MINUTES",
        help="How long to run in minutes (0 = unlimited, default: 0)",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in RuleMode],
        default=RuleMode.INDEPENDENT.value,
        help="Cooldown mode (default: independent)",
    )
    parser.add_argument("--balance", type=float, default=STARTING_BALANCE, metavar="USD")
    parser.add_argument("--aoi-window", type=int, default=AOI_WINDOW)
    parser.add_argument(
        "--aoi-history",
        type=int,
        default=None,
        metavar="N",
        help="Markets to look up on Gamma to seed the AOI (default: the AOI window)",
    )
    parser.add_argument(
        "--outcomes",
        default=None,
        metavar="CSV",
        help="Resolved outcomes CSV seeding the AOI (skips the Gamma lookup)",
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
    parser.add_argument("--no-indicators", action="store_true", help="Do not stream Binance data")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    setup_logging(args.verbose)

    rules = RuleStore(args.rules).load()
    if not rules:
        print(f"No rules found in {args.rules}")
        return 1

    try:
        rules, fallback = split_fallback(rules, args.fallback_rule)
    except ValueError as e:
        print(e)
        return 1

    outcomes = load_outcomes(args.outcomes) if args.outcomes else None
    aoi_history = args.aoi_window if args.aoi_history is None else args.aoi_history
    if outcomes is not None:
        aoi_history = 0

    ledger = PaperLedger(
        initial_balance=Decimal(str(args.balance)),
        log_trades=True,
        log_path=TRADE_LOG_PATH,
    )

    binance = None
    engine = None
    if not args.no_indicators:
        state = FeedState()
        binance = BinanceFeed(state)
        engine = IndicatorEngine(state)

    trader = LiveTrader(
        rules,
        ledger,
        indicator_engine=engine,
        rule_mode=RuleMode(args.mode),
        aoi_window=args.aoi_window,
        fallback_rule=fallback,
        fallback_trigger_ttc=args.fallback_ttc,
        outcomes=outcomes,
    )

    print(f"\nRunning {len(rules)} rules on paper. Press Ctrl+C to stop\n")
    try:
        asyncio.run(run_trader(trader, args.duration, binance, aoi_history))
    except KeyboardInterrupt:
        print("\nShutdown requested by user...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
