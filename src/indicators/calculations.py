"""
Pure indicator calculations for BTC price analysis.

Every function takes feed data and returns an IndicatorResult, or None when
there is not enough history for the indicator's lookback. None means "no
opinion" and is never a neutral reading.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from .models import BookLevel, Candle, IndicatorResult, Signal, TradeTick

logger = logging.getLogger(__name__)


def _direction(value: float) -> Signal:
    if value > 0:
        return Signal.BULLISH
    if value < 0:
        return Signal.BEARISH
    return Signal.NEUTRAL


def _band_signal(value: float, bullish_above: float, bearish_below: float) -> Signal:
    if value > bullish_above:
        return Signal.BULLISH
    if value < bearish_below:
        return Signal.BEARISH
    return Signal.NEUTRAL


def ema(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """
    Exponential moving average seeded with the SMA of the first ``period`` values.

    Returns an array of ``len(values) - period + 1`` points (empty if too short).
    """
    data = np.asarray(values, dtype=float)
    if period <= 0 or len(data) < period:
        return np.array([], dtype=float)
    k = 2.0 / (period + 1)
    out = np.empty(len(data) - period + 1, dtype=float)
    out[0] = data[:period].mean()
    for i, value in enumerate(data[period:], start=1):
        out[i] = value * k + out[i - 1] * (1 - k)
    return out


def closes_of(candles: Sequence[Candle]) -> np.ndarray:
    return np.array([c.close for c in candles], dtype=float)


# --- 1. Order Book Imbalance ---

def compute_obi(
    bids: Sequence[BookLevel],
    asks: Sequence[BookLevel],
    mid: Optional[float],
    band: float = 0.01,
    threshold: float = 0.1,
) -> Optional[IndicatorResult]:
    """
    Proximity-weighted bid/ask volume imbalance within ``band`` of mid.

    Each level inside the band counts with weight ``1 - distance / (band * mid)``,
    so size sitting at the touch counts fully and size at the band edge
    hardly at all. Result is in [-1, 1].
    """
    if mid is None or mid <= 0 or not bids or not asks:
        return None

    reach = mid * band
    bid_p = np.array([lvl.price for lvl in bids], dtype=float)
    bid_q = np.array([lvl.size for lvl in bids], dtype=float)
    ask_p = np.array([lvl.price for lvl in asks], dtype=float)
    ask_q = np.array([lvl.size for lvl in asks], dtype=float)

    bid_w = np.clip(1.0 - np.abs(mid - bid_p) / reach, 0.0, None)
    ask_w = np.clip(1.0 - np.abs(ask_p - mid) / reach, 0.0, None)
    bid_vol = float((bid_q * bid_w).sum())
    ask_vol = float((ask_q * ask_w).sum())

    total = bid_vol + ask_vol
    obi = (bid_vol - ask_vol) / total if total > 0 else 0.0
    return IndicatorResult(
        value=obi,
        signal=_band_signal(obi, threshold, -threshold),
        detail={"bid_volume": bid_vol, "ask_volume": ask_vol},
    )


# --- 2. Cumulative Volume Delta ---

def compute_cvd(
    trades: Sequence[TradeTick],
    now_ms: int,
    window_seconds: int = 300,
) -> Optional[IndicatorResult]:
    """Signed taker volume over the last ``window_seconds``."""
    cutoff = now_ms - window_seconds * 1000
    recent = [t for t in trades if t.time >= cutoff]
    if not recent:
        return None
    delta = float(np.sum([t.signed_size for t in recent]))
    return IndicatorResult(value=delta, signal=_direction(delta), detail={"trades": len(recent)})


# --- 3. RSI ---

def compute_rsi(
    closes: Sequence[float] | np.ndarray,
    period: int = 14,
    oversold: float = 30.0,
    overbought: float = 70.0,
) -> Optional[IndicatorResult]:
    """
    Wilder-smoothed RSI.

    Oversold (below 30) reads bullish, overbought (above 70) bearish.
    """
    data = np.asarray(closes, dtype=float)
    if len(data) < period + 1:
        return None

    diffs = np.diff(data)
    gains = np.clip(diffs, 0.0, None)
    losses = np.clip(-diffs, 0.0, None)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        rsi = 50.0 if avg_gain == 0 else 100.0
    else:
        rs = avg_gain / avg_loss
        rsi = 100.0 - 100.0 / (1.0 + rs)

    if rsi < oversold:
        signal = Signal.BULLISH
    elif rsi > overbought:
        signal = Signal.BEARISH
    else:
        signal = Signal.NEUTRAL
    return IndicatorResult(value=float(rsi), signal=signal)


# --- 4. MACD ---

def compute_macd(
    closes: Sequence[float] | np.ndarray,
    fast: int = 12,
    slow: int = 26,
    signal_period: int = 9,
) -> Optional[IndicatorResult]:
    """MACD histogram (MACD line minus its signal line)."""
    data = np.asarray(closes, dtype=float)
    if len(data) < slow + signal_period:
        return None

    ema_fast = ema(data, fast)
    ema_slow = ema(data, slow)
    n = min(len(ema_fast), len(ema_slow))
    macd_line = ema_fast[-n:] - ema_slow[-n:]
    signal_line = ema(macd_line, signal_period)
    histogram = float(macd_line[-1] - signal_line[-1])

    return IndicatorResult(
        value=histogram,
        signal=_direction(histogram),
        detail={"macd": float(macd_line[-1]), "signal": float(signal_line[-1])},
    )


# --- 5. EMA Cross ---

def compute_ema_cross(
    closes: Sequence[float] | np.ndarray,
    short_period: int = 5,
    long_period: int = 20,
) -> Optional[IndicatorResult]:
    """
    Fast EMA minus slow EMA.

    ``detail["crossed"]`` is True when the sign of the difference changed on
    the latest candle.
    """
    data = np.asarray(closes, dtype=float)
    if len(data) < long_period:
        return None

    ema_short = ema(data, short_period)
    ema_long = ema(data, long_period)
    n = min(len(ema_short), len(ema_long))
    diffs = ema_short[-n:] - ema_long[-n:]
    diff = float(diffs[-1])
    crossed = n >= 2 and np.sign(diffs[-2]) != np.sign(diffs[-1])

    return IndicatorResult(value=diff, signal=_direction(diff), detail={"crossed": bool(crossed)})


# --- 6. VWAP ---

def compute_vwap(candles: Sequence[Candle], mid: Optional[float]) -> Optional[IndicatorResult]:
    """Volume-weighted typical price over the buffered candles, compared to mid."""
    if not candles or mid is None:
        return None
    typical = np.array([c.typical_price for c in candles], dtype=float)
    volume = np.array([c.volume for c in candles], dtype=float)
    total_volume = volume.sum()
    if total_volume <= 0:
        return None
    vwap = float((typical * volume).sum() / total_volume)
    return IndicatorResult(value=vwap, signal=_direction(mid - vwap), detail={"mid": mid})


# --- 7. Heikin-Ashi streak ---

def compute_heikin_ashi(
    candles: Sequence[Candle],
    streak_threshold: int = 3,
) -> Optional[IndicatorResult]:
    """
    Signed count of consecutive same-colour Heikin-Ashi candles at the end.

    Positive for a green streak, negative for red. Only a streak of at least
    ``streak_threshold`` gives a directional signal.
    """
    if len(candles) < 2:
        return None

    ha_open = np.empty(len(candles))
    ha_close = np.empty(len(candles))
    for i, c in enumerate(candles):
        ha_close[i] = (c.open + c.high + c.low + c.close) / 4
        if i == 0:
            ha_open[i] = (c.open + c.close) / 2
        else:
            ha_open[i] = (ha_open[i - 1] + ha_close[i - 1]) / 2

    green = ha_close > ha_open
    last = green[-1]
    streak = 0
    for is_green in green[::-1]:
        if is_green != last:
            break
        streak += 1

    directed = streak if last else -streak
    if streak >= streak_threshold:
        signal = Signal.BULLISH if last else Signal.BEARISH
    else:
        signal = Signal.NEUTRAL
    return IndicatorResult(value=float(directed), signal=signal)


# --- 8. Point of Control ---

def compute_poc(
    candles: Sequence[Candle],
    mid: Optional[float],
    bins: int = 30,
) -> Optional[IndicatorResult]:
    """Centre of the price bin with the most traded volume."""
    if not candles or mid is None:
        return None

    lo = min(c.low for c in candles)
    hi = max(c.high for c in candles)
    if hi == lo:
        return IndicatorResult(value=float(mid), signal=Signal.NEUTRAL)

    typical = np.array([c.typical_price for c in candles], dtype=float)
    volume = np.array([c.volume for c in candles], dtype=float)
    hist, edges = np.histogram(typical, bins=bins, range=(lo, hi), weights=volume)
    idx = int(np.argmax(hist))
    poc = float((edges[idx] + edges[idx + 1]) / 2)

    return IndicatorResult(value=poc, signal=_direction(mid - poc), detail={"volume": float(hist[idx])})


# --- 9. Walls ---

def compute_walls(
    bids: Sequence[BookLevel],
    asks: Sequence[BookLevel],
    mult: float = 5.0,
) -> Optional[IndicatorResult]:
    """
    Net count of bid walls minus ask walls.

    A wall is a level whose size is at least ``mult`` times the median level
    size across both sides of the book.
    """
    if not bids and not asks:
        return None

    sizes = np.array([lvl.size for lvl in (*bids, *asks)], dtype=float)
    threshold = float(np.median(sizes)) * mult
    bid_walls = sum(1 for lvl in bids if lvl.size >= threshold)
    ask_walls = sum(1 for lvl in asks if lvl.size >= threshold)
    net = bid_walls - ask_walls

    return IndicatorResult(
        value=float(net),
        signal=_direction(net),
        detail={"bid_walls": bid_walls, "ask_walls": ask_walls, "threshold": threshold},
    )


# --- 10. Bollinger %B ---

def compute_bbands(
    closes: Sequence[float] | np.ndarray,
    price: Optional[float] = None,
    period: int = 20,
    num_std: float = 2.0,
    lower: float = 0.2,
    upper: float = 0.8,
) -> Optional[IndicatorResult]:
    """
    Position of ``price`` (mid, else last close) inside the Bollinger band.

    Clipped to [0, 1]. Near the lower band reads bullish, near the upper
    band bearish.
    """
    data = np.asarray(closes, dtype=float)
    if len(data) < period:
        return None

    window = data[-period:]
    sma = window.mean()
    std = window.std()
    top = sma + num_std * std
    bottom = sma - num_std * std
    current = float(price) if price is not None else float(data[-1])

    if top == bottom:
        pct_b = 0.5
    else:
        pct_b = float(np.clip((current - bottom) / (top - bottom), 0.0, 1.0))

    if pct_b < lower:
        signal = Signal.BULLISH
    elif pct_b > upper:
        signal = Signal.BEARISH
    else:
        signal = Signal.NEUTRAL
    return IndicatorResult(
        value=pct_b,
        signal=signal,
        detail={"upper": float(top), "middle": float(sma), "lower": float(bottom)},
    )


# --- 11. Flow toxicity ---

def compute_flow_toxicity(
    trades: Sequence[TradeTick],
    now_ms: int,
    window_seconds: int = 60,
    threshold: float = 0.3,
) -> Optional[IndicatorResult]:
    """
    Aggressiveness-weighted order flow in [-1, 1].

    ``sum(sign * size**2) / sum(size**2)`` over recent trades: large
    aggressive prints dominate, retail-sized noise barely moves it.
    """
    cutoff = now_ms - window_seconds * 1000
    recent = [t for t in trades if t.time >= cutoff]
    if not recent:
        return None

    sizes = np.array([t.size for t in recent], dtype=float)
    signs = np.array([1.0 if t.is_buy else -1.0 for t in recent])
    weights = sizes ** 2
    total = weights.sum()
    if total <= 0:
        return None
    toxicity = float((signs * weights).sum() / total)

    return IndicatorResult(
        value=toxicity,
        signal=_band_signal(toxicity, threshold, -threshold),
        detail={"trades": len(recent)},
    )


# --- 12. Rate of Change ---

def compute_roc(
    closes: Sequence[float] | np.ndarray,
    period: int = 10,
) -> Optional[IndicatorResult]:
    """Percentage change of the close over ``period`` candles."""
    data = np.asarray(closes, dtype=float)
    if len(data) < period + 1:
        return None
    base = data[-1 - period]
    if base == 0:
        return None
    roc = float((data[-1] - base) / base * 100)
    return IndicatorResult(value=roc, signal=_direction(roc))
