"""
Rules backtester for 5-minute Up/Down markets.

Replays historical markets through the shared rule executor and paper
ledger, in an isolated worker process when run from the CLI.
"""

from .engine import BacktestEngine, derive_outcomes
from .loader import HistoryData, load_history, load_outcomes
from .metrics import BacktestMetrics
from .models import (
    BacktestConfig,
    BacktestRequest,
    BacktestResult,
    BacktestStats,
    DoneMessage,
    EquityPoint,
    ErrorMessage,
    HistoricalMarket,
    HistoricalOutcome,
    HistoricalSnapshot,
    MalformedRowError,
    ProgressMessage,
)
from .worker import BacktestWorker, BacktestWorkerError, run_request

__all__ = [
    "BacktestConfig",
    "BacktestEngine",
    "BacktestMetrics",
    "BacktestRequest",
    "BacktestResult",
    "BacktestStats",
    "BacktestWorker",
    "BacktestWorkerError",
    "DoneMessage",
    "EquityPoint",
    "ErrorMessage",
    "HistoricalMarket",
    "HistoricalOutcome",
    "HistoricalSnapshot",
    "HistoryData",
    "MalformedRowError",
    "ProgressMessage",
    "derive_outcomes",
    "load_history",
    "load_outcomes",
    "run_request",
]
