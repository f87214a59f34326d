"""
Data models for the paper-trading ledger.

Defines outcomes, trade sides, the append-only trade record, positions and
the discriminated result returned by every ledger operation.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class Outcome(Enum):
    """Binary outcome token of an Up/Down market (YES = Up, NO = Down)."""

    YES = "YES"
    NO = "NO"

    def __str__(self) -> str:
        return self.value

    @property
    def opposite(self) -> "Outcome":
        return Outcome.NO if self is Outcome.YES else Outcome.YES

    @classmethod
    def parse(cls, value: Any) -> "Outcome":
        """Accept YES/NO as well as the market-facing Up/Down labels."""
        if isinstance(value, Outcome):
            return value
        text = str(value).strip().upper()
        if text in ("YES", "UP"):
            return cls.YES
        if text in ("NO", "DOWN"):
            return cls.NO
        raise ValueError(f"Unknown outcome: {value!r}")


class TradeSide(Enum):
    """Side of a ledger trade."""

    BUY = "BUY"
    SELL = "SELL"

    def __str__(self) -> str:
        return self.value


class LedgerErrorKind(Enum):
    """Why a ledger operation was rejected."""

    INVALID_ORDER = "InvalidOrder"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INSUFFICIENT_POSITION = "InsufficientPosition"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Trade:
    """
    Immutable ledger entry.

    Attributes:
        id: Unique trade identifier.
        market_id: Market the trade belongs to.
        slug: Market slug.
        side: BUY or SELL (settlements are recorded as SELL).
        outcome: Outcome token traded.
        price: Execution price per share (1.0 / 0.0 for settlements).
        quantity: Number of shares.
        fee: Fee charged on this trade.
        total: Cash moved: cost for a BUY, proceeds for a SELL.
        timestamp: Epoch milliseconds of the trade.
        rule_id: Rule that triggered the trade, None for manual trades.
        realized_pnl: Realized P&L for SELL trades, None for BUY trades.
        settlement: True for synthetic settlement trades.
    """

    id: str
    market_id: int
    slug: str
    side: TradeSide
    outcome: Outcome
    price: Decimal
    quantity: Decimal
    fee: Decimal
    total: Decimal
    timestamp: int
    rule_id: Optional[str] = None
    realized_pnl: Optional[Decimal] = None
    settlement: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "market_id": self.market_id,
            "slug": self.slug,
            "side": self.side.value,
            "outcome": self.outcome.value,
            "price": str(self.price),
            "quantity": str(self.quantity),
            "fee": str(self.fee),
            "total": str(self.total),
            "timestamp": self.timestamp,
            "rule_id": self.rule_id,
            "realized_pnl": None if self.realized_pnl is None else str(self.realized_pnl),
            "settlement": self.settlement,
        }


@dataclass
class Position:
    """
    Open position, unique per ``(market_id, outcome)``.

    ``cost_basis`` is the cash spent on the shares still held, buy fees
    included; it is what realized P&L is measured against.
    """

    market_id: int
    slug: str
    outcome: Outcome
    quantity: Decimal
    avg_entry_price: Decimal
    current_price: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    cost_basis: Decimal = Decimal("0")

    @property
    def key(self) -> tuple[int, Outcome]:
        return (self.market_id, self.outcome)

    @property
    def market_value(self) -> Decimal:
        return self.quantity * self.current_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "slug": self.slug,
            "outcome": self.outcome.value,
            "quantity": str(self.quantity),
            "avg_entry_price": str(self.avg_entry_price),
            "current_price": str(self.current_price),
            "unrealized_pnl": str(self.unrealized_pnl),
        }


@dataclass
class LedgerResult:
    """Outcome of a ledger operation. Rejections never raise."""

    success: bool
    error: Optional[LedgerErrorKind] = None
    message: str = ""
    trade: Optional[Trade] = None
    trades: list[Trade] = field(default_factory=list)

    @classmethod
    def ok(cls, trade: Optional[Trade] = None, trades: Optional[list[Trade]] = None) -> "LedgerResult":
        return cls(success=True, trade=trade, trades=trades or ([trade] if trade else []))

    @classmethod
    def rejected(cls, error: LedgerErrorKind, message: str) -> "LedgerResult":
        return cls(success=False, error=error, message=message)

    def __bool__(self) -> bool:
        return self.success
