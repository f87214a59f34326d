"""
Data models for the rules backtester.

Defines the historical rows, configuration, results and the worker message
protocol (progress / done / error).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ..config import AOI_WINDOW, BACKTEST_SEED, FALLBACK_TRIGGER_TTC, FEE_RATE, STARTING_BALANCE
from ..rules.executor import RuleMode
from ..rules.models import TradingRule
from ..trading.models import Trade


class MalformedRowError(ValueError):
    """A single historical row is unusable; it is skipped, not fatal."""


def to_epoch_ms(value: Any) -> int:
    """
    Normalise a timestamp to epoch milliseconds.

    Accepts epoch ms (int/float), ISO-8601 strings (``Z`` suffix allowed)
    and datetimes (naive ones are taken as UTC).
    """
    if value is None:
        raise MalformedRowError("Missing timestamp")
    if isinstance(value, bool):
        raise MalformedRowError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if value != value:
            raise MalformedRowError("Missing timestamp")
        return int(value)
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise MalformedRowError(f"Invalid timestamp: {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise MalformedRowError(f"Not a number: {value!r}") from None
    return None if result != result else result


@dataclass(frozen=True)
class HistoricalMarket:
    """
    A resolved (or unresolved) 5-minute market.

    Attributes:
        id: Market id.
        slug: Market slug.
        start_time: Window start (epoch ms).
        end_time: Window end (epoch ms).
        outcome: "Up", "Down" or None if unresolved.
        volume: Traded volume, None if unknown.
    """

    id: int
    slug: str
    start_time: int
    end_time: int
    outcome: Optional[str] = None
    volume: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoricalMarket":
        try:
            market_id = int(data["id"])
            slug = str(data["slug"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedRowError(f"Bad market row: {e}") from None
        outcome = data.get("outcome")
        if outcome is not None and outcome == outcome:
            outcome = str(outcome).capitalize()
            if outcome not in ("Up", "Down"):
                raise MalformedRowError(f"Unknown market outcome: {data.get('outcome')!r}")
        else:
            outcome = None
        return cls(
            id=market_id,
            slug=slug,
            start_time=to_epoch_ms(data.get("start_time")),
            end_time=to_epoch_ms(data.get("end_time")),
            outcome=outcome,
            volume=_optional_float(data.get("volume")),
        )


@dataclass(frozen=True)
class HistoricalSnapshot:
    """One recorded price snapshot of a market; price fields may be missing."""

    market_id: int
    recorded_at: int
    mid_price_yes: Optional[float] = None
    best_bid_yes: Optional[float] = None
    best_ask_yes: Optional[float] = None
    last_trade_price: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoricalSnapshot":
        try:
            market_id = int(data["market_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedRowError(f"Bad snapshot row: {e}") from None
        return cls(
            market_id=market_id,
            recorded_at=to_epoch_ms(data.get("recorded_at")),
            mid_price_yes=_optional_float(data.get("mid_price_yes")),
            best_bid_yes=_optional_float(data.get("best_bid_yes")),
            best_ask_yes=_optional_float(data.get("best_ask_yes")),
            last_trade_price=_optional_float(data.get("last_trade_price")),
        )


@dataclass(frozen=True)
class HistoricalOutcome:
    """Binary outcome of a resolved market (Up = 1, Down = 0)."""

    id: int
    slug: str
    start_time: int
    outcome: str
    outcome_binary: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoricalOutcome":
        try:
            outcome = str(data["outcome"]).capitalize()
            binary = data.get("outcome_binary")
            binary = int(binary) if binary is not None and binary == binary else int(outcome == "Up")
            return cls(
                id=int(data["id"]),
                slug=str(data["slug"]),
                start_time=to_epoch_ms(data.get("start_time")),
                outcome=outcome,
                outcome_binary=binary,
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, MalformedRowError):
                raise
            raise MalformedRowError(f"Bad outcome row: {e}") from None


@dataclass
class BacktestConfig:
    """
    Configuration of a backtest run.

    Attributes:
        rules: Rules to replay, in priority order.
        starting_balance: Starting USDC balance.
        aoi_window: AOI window fed to the "aoi" condition field.
        rule_mode: INDEPENDENT or EXCLUSIVE cooldown handling.
        seed: Seed of the random source used by random-decision rules.
        fee_rate: Parabolic fee multiplier.
        reset_cooldowns_per_market: Forget fire history at each market
            boundary instead of carrying cooldowns across markets.
        fallback_rule: Rule fired on the first snapshot at or below
            ``fallback_trigger_ttc`` of a market where no primary rule fired.
        fallback_trigger_ttc: Fallback time-to-close threshold (seconds).
    """

    rules: list[TradingRule] = field(default_factory=list)
    starting_balance: float = STARTING_BALANCE
    aoi_window: int = AOI_WINDOW
    rule_mode: RuleMode = RuleMode.INDEPENDENT
    seed: int = BACKTEST_SEED
    fee_rate: float = FEE_RATE
    reset_cooldowns_per_market: bool = False
    fallback_rule: Optional[TradingRule] = None
    fallback_trigger_ttc: float = FALLBACK_TRIGGER_TTC

    def validate(self) -> bool:
        """Validate configuration parameters."""
        if self.starting_balance < 0:
            raise ValueError("starting_balance must be non-negative")
        if self.aoi_window <= 0:
            raise ValueError("aoi_window must be positive")
        if self.fee_rate < 0:
            raise ValueError("fee_rate must be non-negative")
        if self.fallback_trigger_ttc < 0:
            raise ValueError("fallback_trigger_ttc must be non-negative")
        ids = [r.id for r in self.rules]
        if len(ids) != len(set(ids)):
            raise ValueError("rule ids must be unique")
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules": [r.to_dict() for r in self.rules],
            "starting_balance": self.starting_balance,
            "aoi_window": self.aoi_window,
            "rule_mode": self.rule_mode.value,
            "seed": self.seed,
            "fee_rate": self.fee_rate,
            "reset_cooldowns_per_market": self.reset_cooldowns_per_market,
            "fallback_rule": self.fallback_rule.to_dict() if self.fallback_rule else None,
            "fallback_trigger_ttc": self.fallback_trigger_ttc,
        }


@dataclass(frozen=True)
class EquityPoint:
    """
    One sample of the equity curve.

    Attributes:
        time: Sample time (epoch ms).
        balance: Cash balance.
        equity: Balance plus marked value of open positions.
        settlement: True for the sample taken right after a market settled.
    """

    time: int
    balance: float
    equity: float
    settlement: bool = False


@dataclass
class BacktestStats:
    """Summary statistics of a completed run."""

    total_trades: int = 0
    closed_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    total_pnl_pct: float = 0.0
    total_fees: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_pct: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    markets_processed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class BacktestResult:
    """
    Complete result of a backtest run.

    Attributes:
        config: Configuration used.
        stats: Summary statistics.
        trades: Full ledger trade log (BUY, SELL and settlement trades).
        equity_curve: Equity sampled per processed snapshot and settlement.
        markets_processed: Markets replayed.
        rows_skipped: Malformed snapshot rows skipped.
        final_balance: Balance after the last settlement.
    """

    config: BacktestConfig
    stats: BacktestStats
    trades: list[Trade]
    equity_curve: list[EquityPoint]
    markets_processed: int
    rows_skipped: int = 0
    final_balance: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "stats": self.stats.to_dict(),
            "trades": [t.to_dict() for t in self.trades],
            "equity_curve": [p.__dict__ for p in self.equity_curve],
            "markets_processed": self.markets_processed,
            "rows_skipped": self.rows_skipped,
            "final_balance": self.final_balance,
        }


# --- Worker message protocol ---

@dataclass(frozen=True)
class BacktestRequest:
    """Everything a worker needs; copied whole into the worker process."""

    config: BacktestConfig
    markets: list[HistoricalMarket]
    snapshots: list[HistoricalSnapshot]
    outcomes: list[HistoricalOutcome] = field(default_factory=list)


@dataclass(frozen=True)
class ProgressMessage:
    percent: int


@dataclass(frozen=True)
class DoneMessage:
    result: BacktestResult


@dataclass(frozen=True)
class ErrorMessage:
    message: str
