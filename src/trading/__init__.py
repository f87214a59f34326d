"""Paper trading: fee model, ledger and trade export."""
from .fees import ParabolicFee, ZeroFee, buy_cost, fee_percentage, sell_proceeds
from .ledger import PaperLedger
from .models import LedgerErrorKind, LedgerResult, Outcome, Position, Trade, TradeSide

__all__ = [
    "LedgerErrorKind",
    "LedgerResult",
    "Outcome",
    "PaperLedger",
    "ParabolicFee",
    "Position",
    "Trade",
    "TradeSide",
    "ZeroFee",
    "buy_cost",
    "fee_percentage",
    "sell_proceeds",
]
