"""
Polymarket parabolic fee model.

fee_per_share = price * (1 - price) * fee_rate

For the 5-minute BTC markets the multiplier is about 0.0625, which gives a
maximum fee of ~1.56% at p=0.50, dropping towards zero at the extremes.

The ledger accepts any callable ``(price, quantity) -> Decimal`` as its fee
model, so tests and backtests can swap in ``ZeroFee`` or a custom curve.
"""

from decimal import Decimal
from typing import Callable, Union

Number = Union[Decimal, float, int, str]

DEFAULT_FEE_RATE = Decimal("0.0625")

FeeModel = Callable[[Decimal, Decimal], Decimal]


def _dec(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class ParabolicFee:
    """Fee proportional to ``price * (1 - price)``, charged per share."""

    def __init__(self, rate: Number = DEFAULT_FEE_RATE) -> None:
        self.rate = _dec(rate)
        if self.rate < 0:
            raise ValueError(f"Fee rate must be non-negative, got {rate}")

    def per_share(self, price: Number) -> Decimal:
        p = _dec(price)
        return p * (Decimal("1") - p) * self.rate

    def __call__(self, price: Number, quantity: Number) -> Decimal:
        return self.per_share(price) * _dec(quantity)

    def __repr__(self) -> str:
        return f"ParabolicFee(rate={self.rate})"


class ZeroFee:
    """Fee model that never charges anything."""

    def __call__(self, price: Number, quantity: Number) -> Decimal:
        return Decimal("0")

    def __repr__(self) -> str:
        return "ZeroFee()"


def buy_cost(price: Number, quantity: Number, fee_model: FeeModel = ParabolicFee()) -> Decimal:
    """Total cash needed to buy ``quantity`` shares (notional + fee)."""
    p, q = _dec(price), _dec(quantity)
    return p * q + fee_model(p, q)


def sell_proceeds(price: Number, quantity: Number, fee_model: FeeModel = ParabolicFee()) -> Decimal:
    """Cash received from selling ``quantity`` shares (notional - fee)."""
    p, q = _dec(price), _dec(quantity)
    return p * q - fee_model(p, q)


def fee_percentage(price: Number, fee_model: ParabolicFee = ParabolicFee()) -> str:
    """Fee as a readable percentage of the share price."""
    p = _dec(price)
    if p <= 0:
        return "0.00%"
    pct = fee_model.per_share(p) / p * 100
    return f"{pct:.2f}%"
