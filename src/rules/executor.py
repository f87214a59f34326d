"""
Rule execution layer shared by the live trader and the backtest.

Owns the fire history, runs the pure rules engine and turns matches into
ledger actions, so rules behave the same way live and in replay.
"""

import logging
import random
from collections import deque
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Optional, Sequence

from ..config import FALLBACK_TRIGGER_TTC
from ..trading.ledger import PaperLedger
from ..trading.models import LedgerErrorKind, LedgerResult, Outcome
from .engine import RandomSource, evaluate_rules
from .models import ActionType, MarketContext, RuleExecution, RuleMatch, TradingRule

logger = logging.getLogger(__name__)

MAX_EXECUTIONS = 200


class RuleMode(Enum):
    """
    INDEPENDENT: each rule has its own cooldown.
    EXCLUSIVE: a fire blocks every rule until ``now + cooldown``.
    """

    INDEPENDENT = "independent"
    EXCLUSIVE = "exclusive"

    def __str__(self) -> str:
        return self.value


def entry_price(context: MarketContext, outcome: Outcome) -> Decimal:
    """Price of the outcome token: priceYes for YES, priceNo for NO."""
    yes = Decimal(str(context.price_yes))
    return yes if outcome is Outcome.YES else Decimal("1") - yes


def shares_for_amount(amount: float, price: Decimal) -> Decimal:
    """Whole shares purchasable for ``amount`` USDC at ``price``."""
    if price <= 0:
        return Decimal("0")
    return (Decimal(str(amount)) / price).to_integral_value(rounding=ROUND_FLOOR)


def split_fallback(
    rules: Sequence[TradingRule], fallback_id: Optional[str]
) -> tuple[list[TradingRule], Optional[TradingRule]]:
    """
    Separate the fallback rule from the primary rules.

    Raises:
        ValueError: if ``fallback_id`` names no rule.
    """
    if not fallback_id:
        return list(rules), None
    fallback = next((r for r in rules if r.id == fallback_id), None)
    if fallback is None:
        raise ValueError(f"Unknown fallback rule: {fallback_id}")
    return [r for r in rules if r.id != fallback_id], fallback


class RuleExecutor:
    """
    Evaluates rules and applies their actions to a ledger.

    Markets are expected one at a time, in order: the executor tracks
    whether a primary rule fired in the current market, which decides
    whether the fallback rule may fire once its time-to-close threshold
    is reached.

    Attributes:
        rules: Rules in priority order.
        ledger: Ledger receiving the trades.
        mode: INDEPENDENT or EXCLUSIVE.
        fallback_rule: Rule fired when no primary rule fired in a market.
        fallback_trigger_ttc: Time-to-close (seconds) at or below which
            the fallback is considered, once per market.
        last_fired: rule id -> last fire time (epoch ms).
        blocked_until: Global block end (epoch ms), set by EXCLUSIVE fires
            and by the fallback in both modes.
        executions: Execution log, newest first.
    """

    def __init__(
        self,
        rules: Sequence[TradingRule],
        ledger: PaperLedger,
        mode: RuleMode = RuleMode.INDEPENDENT,
        rng: Optional[RandomSource] = None,
        max_executions: int = MAX_EXECUTIONS,
        fallback_rule: Optional[TradingRule] = None,
        fallback_trigger_ttc: float = FALLBACK_TRIGGER_TTC,
    ) -> None:
        if fallback_trigger_ttc < 0:
            raise ValueError(f"fallback_trigger_ttc must be >= 0, got {fallback_trigger_ttc}")
        self.rules = list(rules)
        self.ledger = ledger
        self.mode = mode
        self.fallback_rule = fallback_rule
        self.fallback_trigger_ttc = fallback_trigger_ttc
        self.last_fired: dict[str, int] = {}
        self.blocked_until = 0
        self.executions: deque[RuleExecution] = deque(maxlen=max_executions)
        self._rng = rng or random.random
        self._market_id: Optional[int] = None
        self._market_fired = False
        self._fallback_considered = False

    def set_rules(self, rules: Sequence[TradingRule]) -> None:
        self.rules = list(rules)

    def reset(self) -> None:
        """Forget fire history, the global block and the execution log."""
        self.last_fired.clear()
        self.blocked_until = 0
        self.executions.clear()
        self._market_id = None
        self._market_fired = False
        self._fallback_considered = False

    def process(self, context: MarketContext, market_id: int, now_ms: int) -> list[RuleExecution]:
        """
        Evaluate rules for one context and act on the matches.

        Fire times are recorded for every match that is acted on, whether
        or not the ledger accepted the action. The fallback rule is
        considered on the first context of a market at or below
        ``fallback_trigger_ttc``; it fires there only if no primary rule
        has fired in the market and the global block has expired.

        Returns:
            Executions produced by this call, in rule order.
        """
        if market_id != self._market_id:
            self._market_id = market_id
            self._market_fired = False
            self._fallback_considered = False

        at_fallback_point = (
            self.fallback_rule is not None
            and not self._fallback_considered
            and context.time_to_close <= self.fallback_trigger_ttc
        )
        if at_fallback_point:
            self._fallback_considered = True

        results = []
        if now_ms >= self.blocked_until:
            matches = evaluate_rules(self.rules, context, self.last_fired, now_ms, self._rng)
            if self.mode is RuleMode.EXCLUSIVE:
                matches = matches[:1]

            for match in matches:
                execution = self._execute(match, market_id, now_ms)
                self.last_fired[match.rule.id] = now_ms
                if self.mode is RuleMode.EXCLUSIVE:
                    self.blocked_until = now_ms + int(match.rule.cooldown * 1000)
                self._market_fired = True
                self.executions.appendleft(execution)
                results.append(execution)

        if at_fallback_point and not self._market_fired and now_ms >= self.blocked_until:
            results.append(self._fire_fallback(context, market_id, now_ms))
        return results

    def _fire_fallback(self, context: MarketContext, market_id: int, now_ms: int) -> RuleExecution:
        rule = self.fallback_rule
        if rule.random_config is not None:
            outcome = Outcome.YES if self._rng() < rule.random_config.up_ratio else Outcome.NO
        else:
            outcome = rule.action.outcome
        match = RuleMatch(rule=rule, resolved_outcome=outcome, context=context, timestamp=now_ms)

        execution = self._execute(match, market_id, now_ms)
        execution.fallback = True
        # The fallback's cooldown blocks every rule, in both modes
        self.blocked_until = max(self.blocked_until, now_ms + int(rule.cooldown * 1000))
        self.last_fired[rule.id] = now_ms
        if self.mode is RuleMode.INDEPENDENT:
            for primary in self.rules:
                self.last_fired[primary.id] = now_ms
        self._market_fired = True
        self.executions.appendleft(execution)
        logger.info(f"Fallback rule '{rule.name}' used on {context.slug}")
        return execution

    def _execute(self, match: RuleMatch, market_id: int, now_ms: int) -> RuleExecution:
        rule = match.rule
        outcome = match.resolved_outcome
        price = entry_price(match.context, outcome)

        if rule.action.type is ActionType.BUY:
            quantity = shares_for_amount(rule.action.amount, price)
            if quantity <= 0:
                result = LedgerResult.rejected(
                    LedgerErrorKind.INVALID_ORDER,
                    f"Amount {rule.action.amount} buys no shares at {price}",
                )
            else:
                result = self.ledger.buy(
                    market_id, match.context.slug, outcome, price, quantity,
                    rule_id=rule.id, timestamp=now_ms,
                )
        else:
            position = self.ledger.get_position(market_id, outcome)
            quantity = position.quantity if position else Decimal("0")
            if position is None:
                result = LedgerResult.rejected(
                    LedgerErrorKind.INSUFFICIENT_POSITION,
                    f"No {outcome} position on {match.context.slug} to sell",
                )
            else:
                result = self.ledger.sell(
                    market_id, outcome, price, quantity, rule_id=rule.id, timestamp=now_ms
                )

        execution = RuleExecution(
            rule_id=rule.id,
            rule_name=rule.name,
            market_id=market_id,
            slug=match.context.slug,
            side=rule.action.type,
            outcome=outcome,
            price=float(price),
            quantity=float(quantity),
            success=result.success,
            timestamp=now_ms,
            error=None if result.success else f"{result.error}: {result.message}",
            trade_id=result.trade.id if result.trade else None,
            context=match.context.to_dict(),
        )
        if result.success:
            logger.info(
                f"Rule '{rule.name}' fired: {rule.action.type} {quantity} {outcome} @ {price} "
                f"on {match.context.slug}"
            )
        else:
            logger.warning(f"Rule '{rule.name}' failed on {match.context.slug}: {execution.error}")
        return execution
