"""
Trading rules: models, the pure rules engine, the shared executor and
JSON persistence.
"""

from .engine import evaluate_condition, evaluate_rules, matches_filter
from .executor import RuleExecutor, RuleMode, split_fallback
from .models import (
    ActionType,
    Condition,
    ConditionField,
    ConditionMode,
    MarketContext,
    Operator,
    RandomConfig,
    RuleAction,
    RuleExecution,
    RuleMatch,
    RuleValidationError,
    TradingRule,
    build_market_context,
)
from .store import CURRENT_VERSION, RuleStore, migrate

__all__ = [
    "ActionType",
    "CURRENT_VERSION",
    "Condition",
    "ConditionField",
    "ConditionMode",
    "MarketContext",
    "Operator",
    "RandomConfig",
    "RuleAction",
    "RuleExecution",
    "RuleExecutor",
    "RuleMatch",
    "RuleMode",
    "RuleStore",
    "RuleValidationError",
    "TradingRule",
    "build_market_context",
    "evaluate_condition",
    "evaluate_rules",
    "matches_filter",
    "migrate",
    "split_fallback",
]
