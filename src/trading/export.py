"""CSV export of ledger and backtest trades."""

import logging
from pathlib import Path
from typing import Any, Iterable, Optional

import pandas as pd

logger = logging.getLogger(__name__)

TRADE_COLUMNS = [
    "id",
    "timestamp",
    "market_id",
    "slug",
    "side",
    "outcome",
    "price",
    "quantity",
    "fee",
    "total",
    "realized_pnl",
    "rule_id",
    "settlement",
]


def trades_to_frame(trades: Iterable[Any]) -> pd.DataFrame:
    """Build a DataFrame from trade objects (anything with ``to_dict``) or dicts."""
    rows = [t.to_dict() if hasattr(t, "to_dict") else dict(t) for t in trades]
    df = pd.DataFrame(rows)
    if df.empty:
        return pd.DataFrame(columns=TRADE_COLUMNS)

    ordered = [c for c in TRADE_COLUMNS if c in df.columns]
    extra = [c for c in df.columns if c not in TRADE_COLUMNS]
    df = df[ordered + extra]
    if "timestamp" in df.columns:
        df.insert(
            1,
            "time_utc",
            pd.to_datetime(df["timestamp"], unit="ms", utc=True).dt.strftime("%Y-%m-%d %H:%M:%S"),
        )
    return df


def trades_to_csv(trades: Iterable[Any], path: Optional[str | Path] = None) -> str:
    """
    Format trades as CSV.

    Args:
        trades: Ledger ``Trade`` or backtest trade objects, or plain dicts.
        path: If given, the CSV is also written to this file.

    Returns:
        The CSV text.
    """
    df = trades_to_frame(trades)
    text = df.to_csv(index=False)
    if path is not None:
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text)
        logger.info(f"Exported {len(df)} trades to {out}")
    return text
