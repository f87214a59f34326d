"""
Composite directional bias from the twelve indicator readings.

score = sum(vote * weight) with vote = +1 bullish, -1 bearish, 0 neutral or
missing. The score is classified against a threshold expressed as a
fraction of the total weight.
"""

import logging
from typing import Mapping, Optional

from ..config import BIAS_THRESHOLD_PCT
from .models import INDICATOR_NAMES, BiasResult, IndicatorResult, Signal

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: dict[str, float] = {
    "ema_cross": 10,
    "obi": 8,
    "macd": 8,
    "cvd": 7,
    "heikin_ashi": 6,
    "vwap": 5,
    "rsi": 5,
    "flow_toxicity": 5,
    "walls": 4,
    "bbands": 4,
    "poc": 3,
    "roc": 3,
}


class BiasAggregator:
    """
    Weighted vote over indicator signals.

    Args:
        weights: Per-indicator weight; indicators left out weigh 0.
        threshold_pct: |score| must exceed this fraction of the total
            weight to classify as bullish/bearish.
    """

    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        threshold_pct: float = BIAS_THRESHOLD_PCT,
    ) -> None:
        chosen = dict(DEFAULT_WEIGHTS if weights is None else weights)
        unknown = set(chosen) - set(INDICATOR_NAMES)
        if unknown:
            raise ValueError(f"Unknown indicator weights: {sorted(unknown)}")
        if any(w < 0 for w in chosen.values()):
            raise ValueError("Indicator weights must be non-negative")
        if not 0 <= threshold_pct <= 1:
            raise ValueError(f"threshold_pct must be in [0, 1], got {threshold_pct}")

        self.weights = chosen
        self.threshold_pct = threshold_pct

    @property
    def max_score(self) -> float:
        return float(sum(self.weights.values()))

    @property
    def threshold(self) -> float:
        return self.max_score * self.threshold_pct

    def compute(self, results: Mapping[str, Optional[IndicatorResult]]) -> BiasResult:
        score = 0.0
        for name, weight in self.weights.items():
            result = results.get(name)
            if result is None:
                continue
            score += result.signal.vote * weight

        if score > self.threshold:
            signal = Signal.BULLISH
        elif score < -self.threshold:
            signal = Signal.BEARISH
        else:
            signal = Signal.NEUTRAL
        return BiasResult(score=score, signal=signal, max_score=self.max_score)


def compute_bias(results: Mapping[str, Optional[IndicatorResult]]) -> BiasResult:
    """Bias with the default weights and threshold."""
    return BiasAggregator().compute(results)
