"""
Historical data loading.

Reads markets, snapshots and outcomes exported from the market store as
CSV or JSON (records orient) with pandas, and turns them into the typed
rows the backtester replays. Rows that cannot be parsed are logged and
dropped.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import pandas as pd

from .engine import derive_outcomes
from .models import HistoricalMarket, HistoricalOutcome, HistoricalSnapshot, MalformedRowError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class HistoryData:
    """Parsed historical rows plus the count of rows dropped while parsing."""

    markets: list[HistoricalMarket] = field(default_factory=list)
    snapshots: list[HistoricalSnapshot] = field(default_factory=list)
    outcomes: list[HistoricalOutcome] = field(default_factory=list)
    rows_dropped: int = 0


def read_table(path: str | Path) -> pd.DataFrame:
    """Read a CSV or JSON table; missing values become None."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path)
    elif suffix in (".json", ".jsonl"):
        df = pd.read_json(path, orient="records", lines=suffix == ".jsonl", convert_dates=False)
    else:
        raise ValueError(f"Unsupported file type: {path}")
    return df.astype(object).where(pd.notna(df), None)


def frame_to_rows(df: pd.DataFrame, parse: Callable[[dict[str, Any]], T], label: str) -> tuple[list[T], int]:
    """Parse each record of ``df``; returns (rows, dropped)."""
    rows: list[T] = []
    dropped = 0
    for record in df.to_dict(orient="records"):
        try:
            rows.append(parse(record))
        except MalformedRowError as e:
            dropped += 1
            logger.warning(f"Dropping {label} row: {e}")
    return rows, dropped


def load_history(
    markets_path: str | Path,
    snapshots_path: str | Path,
    outcomes_path: Optional[str | Path] = None,
) -> HistoryData:
    """
    Load one backtest's worth of historical data.

    Args:
        markets_path: Markets table (id, slug, start_time, end_time, outcome, volume).
        snapshots_path: Snapshots table (market_id, recorded_at, mid_price_yes,
            best_bid_yes, best_ask_yes, last_trade_price).
        outcomes_path: Optional outcomes table (id, slug, start_time, outcome,
            outcome_binary); derived from the markets when omitted.

    Returns:
        HistoryData
    """
    markets, dropped_m = frame_to_rows(read_table(markets_path), HistoricalMarket.from_dict, "market")
    snapshots, dropped_s = frame_to_rows(
        read_table(snapshots_path), HistoricalSnapshot.from_dict, "snapshot"
    )
    if outcomes_path is not None:
        outcomes, dropped_o = frame_to_rows(
            read_table(outcomes_path), HistoricalOutcome.from_dict, "outcome"
        )
    else:
        outcomes, dropped_o = derive_outcomes(markets), 0

    data = HistoryData(
        markets=markets,
        snapshots=snapshots,
        outcomes=outcomes,
        rows_dropped=dropped_m + dropped_s + dropped_o,
    )
    logger.info(
        f"Loaded {len(markets)} markets, {len(snapshots)} snapshots, {len(outcomes)} outcomes "
        f"({data.rows_dropped} rows dropped)"
    )
    return data


def load_outcomes(path: str | Path) -> list[HistoricalOutcome]:
    """Outcome table alone, in start_time order (seeds the live AOI)."""
    outcomes, dropped = frame_to_rows(read_table(path), HistoricalOutcome.from_dict, "outcome")
    logger.info(f"Loaded {len(outcomes)} outcomes ({dropped} rows dropped)")
    return sorted(outcomes, key=lambda o: (o.start_time, o.id))
