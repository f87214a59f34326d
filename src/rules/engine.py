"""
Rules engine: decides which trading rules fire for a market context.

Pure: given rules, a context, the fire history, the current time and a
random source, it returns the matches. It never mutates its inputs and
never executes trades; callers record fire times after acting.
"""

import logging
import random
import time
from typing import Callable, Mapping, Optional, Sequence

from ..trading.models import Outcome
from .models import (
    Condition,
    ConditionMode,
    MarketContext,
    Operator,
    RuleMatch,
    TradingRule,
)

logger = logging.getLogger(__name__)

EQ_EPSILON = 1e-4

RandomSource = Callable[[], float]


def matches_filter(slug: str, market_filter: str) -> bool:
    """Match ``"*"``, a trailing-wildcard prefix, or an exact slug."""
    if market_filter == "*":
        return True
    if market_filter.endswith("*"):
        return slug.startswith(market_filter[:-1])
    return slug == market_filter


def evaluate_condition(condition: Condition, context: MarketContext) -> bool:
    """Whether ``condition`` holds; a field with no value never holds."""
    actual = condition.field.read(context)
    if actual is None:
        return False

    op = condition.operator
    if op is Operator.BETWEEN:
        low, high = condition.value
        return low <= actual <= high
    if op is Operator.LT:
        return actual < condition.value
    if op is Operator.GT:
        return actual > condition.value
    if op is Operator.EQ:
        return abs(actual - condition.value) < EQ_EPSILON
    return False


def conditions_hold(rule: TradingRule, context: MarketContext) -> bool:
    results = (evaluate_condition(c, context) for c in rule.conditions)
    if rule.condition_mode is ConditionMode.OR:
        return any(results)
    return all(results)


def in_cooldown(rule: TradingRule, last_fired: Mapping[str, int], now_ms: int) -> bool:
    last = last_fired.get(rule.id)
    if last is None:
        return False
    return now_ms - last < rule.cooldown * 1000


def evaluate_rules(
    rules: Sequence[TradingRule],
    context: MarketContext,
    last_fired: Mapping[str, int],
    now_ms: Optional[int] = None,
    rng: Optional[RandomSource] = None,
) -> list[RuleMatch]:
    """
    Evaluate all enabled rules against one market context.

    Args:
        rules: Rules in priority order.
        context: Current market context.
        last_fired: rule id -> last fire time (epoch ms). Not mutated.
        now_ms: Evaluation time; defaults to the wall clock.
        rng: Source of uniform [0, 1) draws for random rules; defaults
            to ``random.random``.

    Returns:
        Matches in rule order, at most one per rule.
    """
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    draw = rng or random.random
    matches: list[RuleMatch] = []

    for rule in rules:
        if not rule.enabled:
            continue
        if not matches_filter(context.slug, rule.market_filter):
            continue
        if in_cooldown(rule, last_fired, now):
            continue

        if rule.random_config is not None:
            if context.time_to_close > rule.random_config.trigger_at_time_to_close:
                continue
            outcome = Outcome.YES if draw() < rule.random_config.up_ratio else Outcome.NO
        elif conditions_hold(rule, context):
            outcome = rule.action.outcome
        else:
            continue

        matches.append(RuleMatch(rule=rule, resolved_outcome=outcome, context=context, timestamp=now))

    if matches:
        logger.debug(f"{len(matches)} rule(s) matched on {context.slug}: {[m.rule.id for m in matches]}")
    return matches
