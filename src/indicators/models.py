"""
Data models for the BTC indicator engine.

Feed data (order book levels, trades, candles) and the immutable
FeedSnapshot that the indicator engine reads once per tick.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Signal(Enum):
    """Qualitative direction of an indicator or of the composite bias."""

    BULLISH = "BULLISH"
    NEUTRAL = "NEUTRAL"
    BEARISH = "BEARISH"

    def __str__(self) -> str:
        return self.value

    @property
    def vote(self) -> int:
        """+1 for bullish, -1 for bearish, 0 for neutral."""
        if self is Signal.BULLISH:
            return 1
        if self is Signal.BEARISH:
            return -1
        return 0


class FeedStatus(Enum):
    """Connection status of a streaming feed."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class BookLevel:
    """One order book level."""

    price: float
    size: float


@dataclass(frozen=True)
class TradeTick:
    """
    One public trade.

    Attributes:
        time: Trade time in epoch milliseconds.
        price: Trade price.
        size: Trade size in base units.
        is_buy: True when the taker bought (aggressive buyer).
    """

    time: int
    price: float
    size: float
    is_buy: bool

    @property
    def signed_size(self) -> float:
        return self.size if self.is_buy else -self.size


@dataclass(frozen=True)
class Candle:
    """One OHLCV candle; ``open_time`` is epoch milliseconds."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3


@dataclass(frozen=True)
class FeedSnapshot:
    """
    Point-in-time copy of the feed buffers.

    Instances are never mutated. The feed writer builds a new snapshot and
    swaps it in, bumping ``version``, so a reader always sees one consistent
    state.

    Attributes:
        version: Monotonic counter, incremented on every swap.
        status: Connection status of the feed at swap time.
        bids: Bid levels, best first.
        asks: Ask levels, best first.
        mid: Mid price of the book, None before the first book update.
        trades: Recent trades, oldest first.
        candles: Recent candles, oldest first.
        updated_at: Epoch ms of the swap.
    """

    version: int = 0
    status: FeedStatus = FeedStatus.DISCONNECTED
    bids: tuple[BookLevel, ...] = ()
    asks: tuple[BookLevel, ...] = ()
    mid: Optional[float] = None
    trades: tuple[TradeTick, ...] = ()
    candles: tuple[Candle, ...] = ()
    updated_at: int = 0

    @property
    def is_usable(self) -> bool:
        """Connected and carrying enough data to compute anything."""
        return (
            self.status is FeedStatus.CONNECTED
            and self.mid is not None
            and len(self.candles) > 0
        )


@dataclass(frozen=True)
class IndicatorResult:
    """
    Single indicator reading.

    Attributes:
        value: Numeric reading (units depend on the indicator).
        signal: Derived direction.
        detail: Optional extra values (e.g. MACD line and signal line).
    """

    value: float
    signal: Signal
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BiasResult:
    """Composite directional bias."""

    score: float
    signal: Signal
    max_score: float = 0.0

    @property
    def normalized(self) -> float:
        """Score scaled to [-100, 100] by the total indicator weight."""
        if self.max_score <= 0:
            return 0.0
        return max(-100.0, min(100.0, self.score / self.max_score * 100))


INDICATOR_NAMES = (
    "obi",
    "cvd",
    "rsi",
    "macd",
    "ema_cross",
    "vwap",
    "heikin_ashi",
    "poc",
    "walls",
    "bbands",
    "flow_toxicity",
    "roc",
)


@dataclass(frozen=True)
class IndicatorReading:
    """
    All twelve indicator results from one recompute tick plus the bias.

    A None result means the indicator has no opinion (lookback unmet).
    ``stale`` is set when the feed stopped delivering and this reading is
    the last one computed before the outage.
    """

    computed_at: int
    feed_version: int
    results: dict[str, Optional[IndicatorResult]]
    bias: BiasResult
    stale: bool = False

    def get(self, name: str) -> Optional[IndicatorResult]:
        if name not in INDICATOR_NAMES:
            raise KeyError(f"Unknown indicator: {name}")
        return self.results.get(name)

    def as_stale(self) -> "IndicatorReading":
        return IndicatorReading(
            computed_at=self.computed_at,
            feed_version=self.feed_version,
            results=self.results,
            bias=self.bias,
            stale=True,
        )
