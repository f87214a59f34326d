"""
Paper-Trading Ledger.

Keeps a virtual USDC balance, an append-only trade log and at most one open
position per (market_id, outcome). Used by the live paper trader and, as a
private instance per run, by the backtest engine.

Features:
- Buy / sell with a pluggable fee model (parabolic Polymarket fee by default)
- Quantity-weighted average entry price on position merges
- Market settlement at 1.0 / 0.0 per share, no fee
- Mark-to-market of open positions from the YES price
- Realized P&L per SELL trade from the position's cost basis
- Optional trade logging to a JSONL file
- reset() for repeated runs

Business-rule rejections are returned as a LedgerResult, never raised.
"""

import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Optional

from .fees import FeeModel, ParabolicFee
from .models import (
    LedgerErrorKind,
    LedgerResult,
    Outcome,
    Position,
    Trade,
    TradeSide,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _uuid_id() -> str:
    return str(uuid.uuid4())


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Convert to Decimal, returning None for unusable or non-finite input."""
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


class PaperLedger:
    """
    Paper trading ledger.

    Every mutating operation holds a re-entrant lock, so one ledger can be
    shared between the rule loop and manual actions from another thread.

    Attributes:
        initial_balance: Balance the ledger started (or was last reset) with.
        balance: Current cash balance.
        realized_pnl: Sum of realized P&L over all SELL trades.
        trades: Append-only list of executed trades, in insertion order.
        positions: Open positions keyed by (market_id, outcome).
        fee_model: Callable (price, quantity) -> fee.
        log_trades: Whether to append trades to a JSONL file.
        log_path: Path to the trade log file.
    """

    def __init__(
        self,
        initial_balance: Decimal | float | str = Decimal("1000"),
        fee_model: Optional[FeeModel] = None,
        log_trades: bool = False,
        log_path: str | Path = "data/paper_trades.jsonl",
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            initial_balance: Starting USDC balance.
            fee_model: Fee function; defaults to ParabolicFee().
            log_trades: Whether to log trades to a JSONL file.
            log_path: Path to the trade log file.
            id_factory: Trade id generator; defaults to uuid4 strings.
            clock: Epoch-millisecond clock used when no timestamp is passed.
        """
        start = _to_decimal(initial_balance)
        if start is None or start < 0:
            raise ValueError(f"Invalid initial balance: {initial_balance}")

        self.initial_balance = start
        self.balance = start
        self.realized_pnl = ZERO

        self.trades: list[Trade] = []
        self.positions: dict[tuple[int, Outcome], Position] = {}

        self.fee_model: FeeModel = fee_model if fee_model is not None else ParabolicFee()
        self.log_trades = log_trades
        self.log_path = Path(log_path)

        self._id_factory = id_factory or _uuid_id
        self._clock = clock or _now_ms
        self._lock = threading.RLock()

    # =========================================================================
    # Trading
    # =========================================================================

    def buy(
        self,
        market_id: int,
        slug: str,
        outcome: Outcome | str,
        price: Decimal | float | str,
        quantity: Decimal | float | int | str,
        rule_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> LedgerResult:
        """
        Buy outcome shares.

        Args:
            market_id: Market identifier.
            slug: Market slug.
            outcome: YES or NO (Up/Down accepted).
            price: Price per share, strictly between 0 and 1.
            quantity: Number of shares, strictly positive.
            rule_id: Triggering rule, if any.
            timestamp: Trade time in epoch ms; defaults to the ledger clock.

        Returns:
            LedgerResult with the BUY trade, or a rejection with no state change.
        """
        p = _to_decimal(price)
        q = _to_decimal(quantity)
        if p is None or q is None or p <= ZERO or p >= ONE or q <= ZERO:
            return LedgerResult.rejected(
                LedgerErrorKind.INVALID_ORDER,
                f"Invalid order: price={price}, quantity={quantity}",
            )
        try:
            side = Outcome.parse(outcome)
        except ValueError as e:
            return LedgerResult.rejected(LedgerErrorKind.INVALID_ORDER, str(e))

        with self._lock:
            fee = self.fee_model(p, q)
            cost = p * q + fee
            if cost > self.balance:
                return LedgerResult.rejected(
                    LedgerErrorKind.INSUFFICIENT_BALANCE,
                    f"Insufficient balance: need {cost:.4f}, have {self.balance:.4f}",
                )

            self.balance -= cost
            trade = Trade(
                id=self._id_factory(),
                market_id=market_id,
                slug=slug,
                side=TradeSide.BUY,
                outcome=side,
                price=p,
                quantity=q,
                fee=fee,
                total=cost,
                timestamp=timestamp if timestamp is not None else self._clock(),
                rule_id=rule_id,
            )
            self.trades.append(trade)

            key = (market_id, side)
            existing = self.positions.get(key)
            if existing is None:
                self.positions[key] = Position(
                    market_id=market_id,
                    slug=slug,
                    outcome=side,
                    quantity=q,
                    avg_entry_price=p,
                    current_price=p,
                    cost_basis=cost,
                )
            else:
                total_qty = existing.quantity + q
                existing.avg_entry_price = (
                    existing.avg_entry_price * existing.quantity + p * q
                ) / total_qty
                existing.quantity = total_qty
                existing.cost_basis += cost
                existing.current_price = p
                existing.unrealized_pnl = (p - existing.avg_entry_price) * total_qty

        self._log_trade(trade)
        logger.info(
            f"BUY {q} {side} @ {p} on {slug} (fee {fee:.4f}, balance {self.balance:.2f})"
        )
        return LedgerResult.ok(trade)

    def sell(
        self,
        market_id: int,
        outcome: Outcome | str,
        price: Decimal | float | str,
        quantity: Decimal | float | int | str,
        rule_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> LedgerResult:
        """
        Sell held outcome shares.

        Returns:
            LedgerResult with the SELL trade. Rejected with
            INSUFFICIENT_POSITION if nothing (or not enough) is held.
        """
        p = _to_decimal(price)
        q = _to_decimal(quantity)
        if p is None or q is None or p < ZERO or p > ONE or q <= ZERO:
            return LedgerResult.rejected(
                LedgerErrorKind.INVALID_ORDER,
                f"Invalid order: price={price}, quantity={quantity}",
            )
        try:
            side = Outcome.parse(outcome)
        except ValueError as e:
            return LedgerResult.rejected(LedgerErrorKind.INVALID_ORDER, str(e))

        with self._lock:
            key = (market_id, side)
            position = self.positions.get(key)
            if position is None or q > position.quantity:
                held = position.quantity if position else ZERO
                return LedgerResult.rejected(
                    LedgerErrorKind.INSUFFICIENT_POSITION,
                    f"Insufficient position: want {q}, hold {held}",
                )

            fee = self.fee_model(p, q)
            proceeds = p * q - fee

            if q == position.quantity:
                released_basis = position.cost_basis
            else:
                released_basis = position.cost_basis * q / position.quantity
            pnl = proceeds - released_basis

            self.balance += proceeds
            self.realized_pnl += pnl

            trade = Trade(
                id=self._id_factory(),
                market_id=market_id,
                slug=position.slug,
                side=TradeSide.SELL,
                outcome=side,
                price=p,
                quantity=q,
                fee=fee,
                total=proceeds,
                timestamp=timestamp if timestamp is not None else self._clock(),
                rule_id=rule_id,
                realized_pnl=pnl,
            )
            self.trades.append(trade)

            position.quantity -= q
            position.cost_basis -= released_basis
            if position.quantity <= ZERO:
                del self.positions[key]
            else:
                position.current_price = p
                position.unrealized_pnl = (p - position.avg_entry_price) * position.quantity

        self._log_trade(trade)
        logger.info(
            f"SELL {q} {side} @ {p} on {trade.slug} (pnl {pnl:.4f}, balance {self.balance:.2f})"
        )
        return LedgerResult.ok(trade)

    def settle_market(
        self,
        market_id: int,
        slug: str,
        outcome_won: Outcome | str,
        timestamp: Optional[int] = None,
    ) -> LedgerResult:
        """
        Settle every open position on a resolved market.

        Winning shares pay 1.0, losing shares 0.0, with no fee. One synthetic
        SELL trade is appended per position and all of the market's
        positions are removed. No-op when nothing is held.
        """
        try:
            winner = Outcome.parse(outcome_won)
        except ValueError as e:
            return LedgerResult.rejected(LedgerErrorKind.INVALID_ORDER, str(e))

        settled: list[Trade] = []
        with self._lock:
            keys = [key for key in self.positions if key[0] == market_id]
            ts = timestamp if timestamp is not None else self._clock()
            for key in keys:
                position = self.positions.pop(key)
                payout_price = ONE if position.outcome == winner else ZERO
                payout = position.quantity * payout_price
                pnl = payout - position.cost_basis

                self.balance += payout
                self.realized_pnl += pnl

                trade = Trade(
                    id=self._id_factory(),
                    market_id=market_id,
                    slug=slug,
                    side=TradeSide.SELL,
                    outcome=position.outcome,
                    price=payout_price,
                    quantity=position.quantity,
                    fee=ZERO,
                    total=payout,
                    timestamp=ts,
                    realized_pnl=pnl,
                    settlement=True,
                )
                self.trades.append(trade)
                settled.append(trade)

        for trade in settled:
            self._log_trade(trade)
        if settled:
            logger.info(
                f"Settled {slug} ({winner}): {len(settled)} position(s), "
                f"payout {sum(t.total for t in settled):.2f}"
            )
        return LedgerResult.ok(trades=settled)

    def mark_to_market(
        self, market_id: int, current_price_yes: Decimal | float | str
    ) -> list[Position]:
        """
        Re-price open positions on a market from the current YES price.

        Returns:
            The positions that were updated.
        """
        yes = _to_decimal(current_price_yes)
        if yes is None:
            logger.debug(f"Ignoring mark for market {market_id}: bad price {current_price_yes}")
            return []

        updated = []
        with self._lock:
            for (mid, _), position in self.positions.items():
                if mid != market_id:
                    continue
                price = yes if position.outcome is Outcome.YES else ONE - yes
                position.current_price = price
                position.unrealized_pnl = (price - position.avg_entry_price) * position.quantity
                updated.append(position)
        return updated

    # =========================================================================
    # Queries
    # =========================================================================

    def get_position(self, market_id: int, outcome: Outcome | str) -> Optional[Position]:
        return self.positions.get((market_id, Outcome.parse(outcome)))

    def open_positions(self, market_id: Optional[int] = None) -> list[Position]:
        with self._lock:
            return [
                p for p in self.positions.values()
                if market_id is None or p.market_id == market_id
            ]

    def unrealized_pnl(self) -> Decimal:
        with self._lock:
            return sum((p.unrealized_pnl for p in self.positions.values()), ZERO)

    def equity(self) -> Decimal:
        """Cash balance plus the marked value of open positions."""
        with self._lock:
            return self.balance + sum(
                (p.market_value for p in self.positions.values()), ZERO
            )

    def get_stats(self) -> dict[str, Any]:
        """Summary of the ledger state."""
        with self._lock:
            sells = [t for t in self.trades if t.side is TradeSide.SELL]
            wins = sum(1 for t in sells if t.realized_pnl is not None and t.realized_pnl > 0)
            equity = self.equity()
            return {
                "initial_balance": str(self.initial_balance),
                "balance": str(self.balance),
                "equity": str(equity),
                "realized_pnl": str(self.realized_pnl),
                "unrealized_pnl": str(self.unrealized_pnl()),
                "total_pnl": str(equity - self.initial_balance),
                "total_fees": str(sum((t.fee for t in self.trades), ZERO)),
                "trade_count": len(self.trades),
                "closed_trades": len(sells),
                "wins": wins,
                "win_rate": wins / len(sells) if sells else 0.0,
                "open_positions": len(self.positions),
            }

    def reset(self, initial_balance: Optional[Decimal | float | str] = None) -> None:
        """Clear trades and positions and restore the starting balance."""
        with self._lock:
            if initial_balance is not None:
                start = _to_decimal(initial_balance)
                if start is None or start < 0:
                    raise ValueError(f"Invalid initial balance: {initial_balance}")
                self.initial_balance = start
            self.balance = self.initial_balance
            self.realized_pnl = ZERO
            self.trades = []
            self.positions = {}
        logger.info(f"Ledger reset to balance {self.initial_balance}")

    # =========================================================================
    # Trade log
    # =========================================================================

    def _log_trade(self, trade: Trade) -> None:
        if self.log_trades:
            entry = {
                "logged_at": datetime.now(timezone.utc).isoformat(),
                "event": "SETTLEMENT" if trade.settlement else "TRADE",
                **trade.to_dict(),
            }
            self._write_to_log(entry)

    def _write_to_log(self, data: dict[str, Any]) -> None:
        """Append one JSON line to the trade log."""
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(data) + "\n")
        except Exception as e:
            logger.warning(f"Failed to write to trade log: {e}")
