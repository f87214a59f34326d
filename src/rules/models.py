"""
Data models for trading rules.

Rules are serialized with camelCase keys (``marketFilter``,
``conditionMode``, ``randomConfig``...) so rule books stay interchangeable
with the dashboard that edits them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ..trading.models import Outcome


class RuleValidationError(ValueError):
    """Raised when a rule, condition or action cannot be parsed."""


class ConditionField(Enum):
    """Closed set of MarketContext fields a condition can test."""

    PRICE_YES = "priceYes"
    PRICE_NO = "priceNo"
    SPREAD = "spread"
    VOLUME = "volume"
    TIME_TO_CLOSE = "timeToClose"
    AOI = "aoi"

    def __str__(self) -> str:
        return self.value

    def read(self, context: "MarketContext") -> Optional[float]:
        """Value of this field in ``context`` (None if unavailable)."""
        return _FIELD_ACCESSORS[self](context)

    @classmethod
    def parse(cls, value: Any) -> "ConditionField":
        if isinstance(value, ConditionField):
            return value
        try:
            return cls(value)
        except ValueError:
            raise RuleValidationError(f"Unknown condition field: {value!r}") from None


class Operator(Enum):
    """Comparison operator of a condition."""

    LT = "<"
    GT = ">"
    EQ = "=="
    BETWEEN = "between"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Any) -> "Operator":
        if isinstance(value, Operator):
            return value
        try:
            return cls(value)
        except ValueError:
            raise RuleValidationError(f"Unknown operator: {value!r}") from None


class ConditionMode(Enum):
    AND = "AND"
    OR = "OR"

    def __str__(self) -> str:
        return self.value


class ActionType(Enum):
    BUY = "BUY"
    SELL = "SELL"

    def __str__(self) -> str:
        return self.value


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool):
        raise RuleValidationError(f"{what} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RuleValidationError(f"{what} must be a number, got {value!r}") from None


def _flag(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise RuleValidationError(f"{what} must be true or false, got {value!r}")
    return value


@dataclass(frozen=True)
class MarketContext:
    """
    Everything the rule engine sees about a market at one instant.

    Attributes:
        slug: Market slug.
        price_yes: YES price (Up probability), in [0, 1].
        spread: Best ask minus best bid, non-negative.
        volume: Market volume.
        time_to_close: Seconds until the market closes, non-negative.
        aoi: Current AOI value for the configured window, None if unknown.
    """

    slug: str
    price_yes: float
    spread: float = 0.0
    volume: float = 0.0
    time_to_close: float = 0.0
    aoi: Optional[float] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.price_yes <= 1.0:
            raise ValueError(f"price_yes must be in [0, 1], got {self.price_yes}")

    @property
    def price_no(self) -> float:
        return 1.0 - self.price_yes

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "priceYes": self.price_yes,
            "priceNo": self.price_no,
            "spread": self.spread,
            "volume": self.volume,
            "timeToClose": self.time_to_close,
            "aoi": self.aoi,
        }


_FIELD_ACCESSORS: dict[ConditionField, Callable[[MarketContext], Optional[float]]] = {
    ConditionField.PRICE_YES: lambda ctx: ctx.price_yes,
    ConditionField.PRICE_NO: lambda ctx: ctx.price_no,
    ConditionField.SPREAD: lambda ctx: ctx.spread,
    ConditionField.VOLUME: lambda ctx: ctx.volume,
    ConditionField.TIME_TO_CLOSE: lambda ctx: ctx.time_to_close,
    ConditionField.AOI: lambda ctx: ctx.aoi,
}


@dataclass(frozen=True)
class Condition:
    """
    One comparison against a context field.

    ``value`` is a number for <, > and ==, and an inclusive (low, high)
    pair for ``between``.
    """

    field: ConditionField
    operator: Operator
    value: float | tuple[float, float]

    def __post_init__(self) -> None:
        if self.operator is Operator.BETWEEN:
            if not isinstance(self.value, tuple) or len(self.value) != 2:
                raise RuleValidationError(f"'between' needs a [low, high] pair, got {self.value!r}")
            if self.value[0] > self.value[1]:
                raise RuleValidationError(f"'between' bounds reversed: {self.value!r}")
        elif isinstance(self.value, tuple):
            raise RuleValidationError(f"'{self.operator}' needs a single number, got {self.value!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Condition":
        operator = Operator.parse(data.get("operator"))
        raw = data.get("value")
        if operator is Operator.BETWEEN:
            if not isinstance(raw, (list, tuple)) or len(raw) != 2:
                raise RuleValidationError(f"'between' needs a [low, high] pair, got {raw!r}")
            value: float | tuple[float, float] = (
                _number(raw[0], "between low"),
                _number(raw[1], "between high"),
            )
        else:
            value = _number(raw, "condition value")
        return cls(field=ConditionField.parse(data.get("field")), operator=operator, value=value)

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field.value, "operator": self.operator.value, "value": value}


@dataclass(frozen=True)
class RandomConfig:
    """
    Random-decision trigger.

    Attributes:
        up_ratio: Probability of resolving to YES (0-1).
        trigger_at_time_to_close: Fire once timeToClose <= this many seconds.
    """

    up_ratio: float
    trigger_at_time_to_close: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.up_ratio <= 1.0:
            raise RuleValidationError(f"upRatio must be in [0, 1], got {self.up_ratio}")
        if self.trigger_at_time_to_close < 0:
            raise RuleValidationError(
                f"triggerAtTimeToClose must be >= 0, got {self.trigger_at_time_to_close}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RandomConfig":
        return cls(
            up_ratio=_number(data.get("upRatio"), "upRatio"),
            trigger_at_time_to_close=_number(data.get("triggerAtTimeToClose"), "triggerAtTimeToClose"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"upRatio": self.up_ratio, "triggerAtTimeToClose": self.trigger_at_time_to_close}


@dataclass(frozen=True)
class RuleAction:
    """What to do when a rule fires: ``amount`` is in USDC."""

    type: ActionType
    outcome: Outcome
    amount: float

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise RuleValidationError(f"Action amount must be positive, got {self.amount}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuleAction":
        try:
            action_type = ActionType(str(data.get("type", "BUY")).upper())
            outcome = Outcome.parse(data.get("outcome", "YES"))
        except ValueError as e:
            raise RuleValidationError(f"Invalid action: {e}") from None
        return cls(type=action_type, outcome=outcome, amount=_number(data.get("amount"), "amount"))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "outcome": self.outcome.value, "amount": self.amount}


@dataclass(frozen=True)
class TradingRule:
    """
    User-defined trading rule.

    A rule with ``random_config`` triggers on time-to-close and a biased
    coin flip; its conditions are ignored. Otherwise the conditions,
    combined by ``condition_mode``, decide.

    Attributes:
        id: Unique rule id (cooldowns are tracked per id).
        name: Display name.
        action: BUY/SELL, outcome and USDC amount.
        enabled: Disabled rules never match.
        market_filter: "*", a trailing-wildcard prefix ("btc-updown-5m-*"),
            or an exact slug.
        condition_mode: AND (all conditions) or OR (any condition).
        conditions: Conditions of a non-random rule.
        random_config: Random trigger, for random-decision rules.
        cooldown: Seconds between fires.
    """

    id: str
    name: str
    action: RuleAction
    enabled: bool = True
    market_filter: str = "*"
    condition_mode: ConditionMode = ConditionMode.AND
    conditions: tuple[Condition, ...] = ()
    random_config: Optional[RandomConfig] = None
    cooldown: float = 0.0

    def __post_init__(self) -> None:
        if not self.id:
            raise RuleValidationError("Rule id is required")
        if self.cooldown < 0:
            raise RuleValidationError(f"Cooldown must be >= 0, got {self.cooldown}")

    @property
    def is_random(self) -> bool:
        return self.random_config is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TradingRule":
        if not isinstance(data, dict):
            raise RuleValidationError(f"Rule must be an object, got {type(data).__name__}")
        try:
            mode = ConditionMode(str(data.get("conditionMode", "AND")).upper())
        except ValueError:
            raise RuleValidationError(f"Unknown conditionMode: {data.get('conditionMode')!r}") from None

        random_raw = data.get("randomConfig")
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            action=RuleAction.from_dict(data.get("action") or {}),
            enabled=_flag(data.get("enabled", True), "enabled"),
            market_filter=str(data.get("marketFilter", "*")),
            condition_mode=mode,
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions") or []),
            random_config=RandomConfig.from_dict(random_raw) if random_raw else None,
            cooldown=_number(data.get("cooldown", 0), "cooldown"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "marketFilter": self.market_filter,
            "conditionMode": self.condition_mode.value,
            "conditions": [c.to_dict() for c in self.conditions],
            "action": self.action.to_dict(),
            "cooldown": self.cooldown,
        }
        if self.random_config is not None:
            data["randomConfig"] = self.random_config.to_dict()
        return data


@dataclass(frozen=True)
class RuleMatch:
    """One rule that fired in an evaluation pass."""

    rule: TradingRule
    resolved_outcome: Outcome
    context: MarketContext
    timestamp: int


def build_market_context(
    slug: str,
    now_ms: int,
    end_time_ms: int,
    mid_price: Optional[float] = None,
    last_trade_price: Optional[float] = None,
    best_bid: Optional[float] = None,
    best_ask: Optional[float] = None,
    volume: float = 0.0,
    aoi: Optional[float] = None,
) -> Optional[MarketContext]:
    """
    Build the MarketContext shared by the live loop and the backtest.

    priceYes is the mid price, else the last trade price. Returns None when
    neither is available or the price is outside (0, 1).
    """
    price_yes = mid_price if mid_price is not None else last_trade_price
    if price_yes is None or not 0.0 < price_yes < 1.0:
        return None

    ask = best_ask if best_ask is not None else price_yes
    bid = best_bid if best_bid is not None else price_yes
    return MarketContext(
        slug=slug,
        price_yes=price_yes,
        spread=max(0.0, ask - bid),
        volume=volume or 0.0,
        time_to_close=max(0.0, (end_time_ms - now_ms) / 1000),
        aoi=aoi,
    )


@dataclass
class RuleExecution:
    """
    Log entry for a fired rule, successful or not.

    Attributes:
        rule_id: Rule that fired.
        rule_name: Its display name.
        market_id: Market the action targeted.
        slug: Market slug.
        side: BUY or SELL.
        outcome: Resolved outcome.
        price: Entry/exit price used.
        quantity: Shares requested.
        success: Whether the ledger accepted the action.
        error: Rejection message for failed executions.
        trade_id: Ledger trade id for successful executions.
        timestamp: Fire time (epoch ms).
        fallback: Whether the fallback rule produced this execution.
    """

    rule_id: str
    rule_name: str
    market_id: int
    slug: str
    side: ActionType
    outcome: Outcome
    price: float
    quantity: float
    success: bool
    timestamp: int
    error: Optional[str] = None
    trade_id: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "market_id": self.market_id,
            "slug": self.slug,
            "side": self.side.value,
            "outcome": self.outcome.value,
            "price": self.price,
            "quantity": self.quantity,
            "success": self.success,
            "error": self.error,
            "trade_id": self.trade_id,
            "timestamp": self.timestamp,
            "fallback": self.fallback,
        }
