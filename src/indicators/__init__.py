"""
BTC indicator engine: feed snapshots, twelve indicators and the composite bias.
"""

from .bias import DEFAULT_WEIGHTS, BiasAggregator, compute_bias
from .engine import IndicatorEngine, compute_indicators
from .feed_state import FeedState
from .models import (
    INDICATOR_NAMES,
    BiasResult,
    BookLevel,
    Candle,
    FeedSnapshot,
    FeedStatus,
    IndicatorReading,
    IndicatorResult,
    Signal,
    TradeTick,
)

__all__ = [
    "BiasAggregator",
    "BiasResult",
    "BookLevel",
    "Candle",
    "DEFAULT_WEIGHTS",
    "FeedSnapshot",
    "FeedState",
    "FeedStatus",
    "INDICATOR_NAMES",
    "IndicatorEngine",
    "IndicatorReading",
    "IndicatorResult",
    "Signal",
    "TradeTick",
    "compute_bias",
    "compute_indicators",
]
