"""
Tests for rule models and the pure rules engine.

Tests cover:
- Rule parsing / serialization (camelCase)
- Market filter matching
- Condition operators and AND/OR modes
- Cooldowns
- Random-decision rules
- Context construction
- Purity of evaluation
"""

import copy
import random

import pytest

from src.rules import (
    ActionType,
    Condition,
    ConditionField,
    ConditionMode,
    MarketContext,
    Operator,
    RandomConfig,
    RuleAction,
    RuleValidationError,
    TradingRule,
    build_market_context,
    evaluate_condition,
    evaluate_rules,
    matches_filter,
)
from src.trading import Outcome

NOW = 1_700_000_000_000


def make_rule(rule_id="r1", conditions=(), **kwargs):
    kwargs.setdefault("action", RuleAction(ActionType.BUY, Outcome.YES, 10.0))
    return TradingRule(id=rule_id, name=kwargs.pop("name", rule_id), conditions=tuple(conditions), **kwargs)


def ctx(price_yes=0.5, **kwargs):
    kwargs.setdefault("slug", "btc-updown-5m-1700000000")
    return MarketContext(price_yes=price_yes, **kwargs)


class TestRuleModels:
    """Tests for parsing and validation."""

    def test_from_dict_camel_case(self):
        rule = TradingRule.from_dict({
            "id": "cheap-up",
            "name": "Cheap Up",
            "enabled": True,
            "marketFilter": "btc-updown-5m-*",
            "conditionMode": "OR",
            "conditions": [
                {"field": "priceYes", "operator": "<", "value": 0.3},
                {"field": "timeToClose", "operator": "between", "value": [10, 60]},
            ],
            "action": {"type": "BUY", "outcome": "YES", "amount": 25},
            "cooldown": 30,
        })

        assert rule.condition_mode is ConditionMode.OR
        assert rule.conditions[0].field is ConditionField.PRICE_YES
        assert rule.conditions[1].value == (10.0, 60.0)
        assert rule.action.amount == 25.0
        assert rule.cooldown == 30.0
        assert not rule.is_random

    def test_to_dict_round_trips(self):
        rule = make_rule(
            conditions=[Condition(ConditionField.AOI, Operator.GT, 0.6)],
            random_config=None,
            market_filter="btc-*",
        )
        assert TradingRule.from_dict(rule.to_dict()) == rule

    def test_random_config_serialized(self):
        rule = make_rule(random_config=RandomConfig(0.7, 30))
        data = rule.to_dict()
        assert data["randomConfig"] == {"upRatio": 0.7, "triggerAtTimeToClose": 30}
        assert TradingRule.from_dict(data).is_random

    @pytest.mark.parametrize(
        "condition",
        [
            {"field": "bogus", "operator": "<", "value": 1},
            {"field": "priceYes", "operator": "!=", "value": 1},
            {"field": "priceYes", "operator": "between", "value": 1},
            {"field": "priceYes", "operator": "between", "value": [0.8, 0.2]},
            {"field": "priceYes", "operator": "<", "value": "abc"},
        ],
    )
    def test_invalid_condition_rejected(self, condition):
        with pytest.raises(RuleValidationError):
            Condition.from_dict(condition)

    def test_invalid_action_rejected(self):
        with pytest.raises(RuleValidationError):
            RuleAction.from_dict({"type": "HOLD", "outcome": "YES", "amount": 1})
        with pytest.raises(RuleValidationError):
            RuleAction(ActionType.BUY, Outcome.YES, 0)

    def test_random_config_bounds(self):
        with pytest.raises(RuleValidationError):
            RandomConfig(1.5, 10)
        with pytest.raises(RuleValidationError):
            RandomConfig(0.5, -1)

    def test_negative_cooldown_rejected(self):
        with pytest.raises(RuleValidationError):
            make_rule(cooldown=-1)

    @pytest.mark.parametrize("enabled", ["false", "no", 0, 1, None])
    def test_enabled_must_be_boolean(self, enabled):
        data = make_rule().to_dict()
        data["enabled"] = enabled
        with pytest.raises(RuleValidationError):
            TradingRule.from_dict(data)

    def test_enabled_defaults_true(self):
        data = make_rule().to_dict()
        del data["enabled"]
        assert TradingRule.from_dict(data).enabled
        data["enabled"] = False
        assert not TradingRule.from_dict(data).enabled

    def test_context_price_no(self):
        assert ctx(0.3).price_no == pytest.approx(0.7)

    def test_context_rejects_bad_price(self):
        with pytest.raises(ValueError):
            ctx(1.2)


class TestMarketFilter:
    """Tests for slug filters."""

    def test_wildcard(self):
        assert matches_filter("anything", "*")

    def test_prefix(self):
        assert matches_filter("btc-updown-5m-1700000000", "btc-updown-5m-*")
        assert not matches_filter("eth-updown-5m-1700000000", "btc-updown-5m-*")

    def test_exact(self):
        assert matches_filter("btc-updown-5m-1", "btc-updown-5m-1")
        assert not matches_filter("btc-updown-5m-10", "btc-updown-5m-1")


class TestConditions:
    """Tests for condition evaluation."""

    def test_less_than(self):
        condition = Condition(ConditionField.PRICE_YES, Operator.LT, 0.3)
        assert evaluate_condition(condition, ctx(0.25))
        assert not evaluate_condition(condition, ctx(0.3))

    def test_greater_than(self):
        condition = Condition(ConditionField.SPREAD, Operator.GT, 0.02)
        assert evaluate_condition(condition, ctx(spread=0.05))
        assert not evaluate_condition(condition, ctx(spread=0.01))

    def test_equality_uses_tolerance(self):
        condition = Condition(ConditionField.PRICE_NO, Operator.EQ, 0.4)
        assert evaluate_condition(condition, ctx(0.60004))
        assert not evaluate_condition(condition, ctx(0.61))

    def test_between_inclusive(self):
        condition = Condition(ConditionField.TIME_TO_CLOSE, Operator.BETWEEN, (10.0, 60.0))
        assert evaluate_condition(condition, ctx(time_to_close=10))
        assert evaluate_condition(condition, ctx(time_to_close=60))
        assert not evaluate_condition(condition, ctx(time_to_close=61))

    def test_missing_aoi_never_holds(self):
        for op, value in [(Operator.LT, 1.0), (Operator.GT, 0.0), (Operator.BETWEEN, (0.0, 1.0))]:
            condition = Condition(ConditionField.AOI, op, value)
            assert not evaluate_condition(condition, ctx(aoi=None))

    def test_aoi_present(self):
        condition = Condition(ConditionField.AOI, Operator.GT, 0.5)
        assert evaluate_condition(condition, ctx(aoi=0.67))


class TestEvaluateRules:
    """Tests for evaluate_rules."""

    def test_cheap_yes_rule_fires(self):
        """priceYes < 0.3 fires at 0.25 and not at 0.35."""
        rule = make_rule(conditions=[Condition(ConditionField.PRICE_YES, Operator.LT, 0.3)])

        matches = evaluate_rules([rule], ctx(0.25), {}, NOW)
        assert len(matches) == 1
        assert matches[0].rule is rule
        assert matches[0].resolved_outcome is Outcome.YES
        assert matches[0].timestamp == NOW

        assert evaluate_rules([rule], ctx(0.35), {}, NOW) == []

    def test_disabled_rule_skipped(self):
        rule = make_rule(enabled=False)
        assert evaluate_rules([rule], ctx(), {}, NOW) == []

    def test_filter_applied(self):
        rule = make_rule(market_filter="eth-*")
        assert evaluate_rules([rule], ctx(), {}, NOW) == []

    def test_no_conditions_and_mode_always_fires(self):
        assert len(evaluate_rules([make_rule()], ctx(), {}, NOW)) == 1

    def test_no_conditions_or_mode_never_fires(self):
        rule = make_rule(condition_mode=ConditionMode.OR)
        assert evaluate_rules([rule], ctx(), {}, NOW) == []

    def test_and_requires_all(self):
        rule = make_rule(conditions=[
            Condition(ConditionField.PRICE_YES, Operator.LT, 0.3),
            Condition(ConditionField.TIME_TO_CLOSE, Operator.LT, 60),
        ])
        assert evaluate_rules([rule], ctx(0.2, time_to_close=30), {}, NOW)
        assert not evaluate_rules([rule], ctx(0.2, time_to_close=120), {}, NOW)

    def test_or_requires_any(self):
        rule = make_rule(
            condition_mode=ConditionMode.OR,
            conditions=[
                Condition(ConditionField.PRICE_YES, Operator.LT, 0.3),
                Condition(ConditionField.TIME_TO_CLOSE, Operator.LT, 60),
            ],
        )
        assert evaluate_rules([rule], ctx(0.5, time_to_close=30), {}, NOW)
        assert not evaluate_rules([rule], ctx(0.5, time_to_close=120), {}, NOW)

    def test_cooldown_blocks_until_elapsed(self):
        rule = make_rule(cooldown=30)
        last_fired = {"r1": NOW}

        assert evaluate_rules([rule], ctx(), last_fired, NOW + 29_999) == []
        assert len(evaluate_rules([rule], ctx(), last_fired, NOW + 30_000)) == 1

    def test_cooldown_is_per_rule(self):
        rules = [make_rule("a", cooldown=60), make_rule("b", cooldown=60)]
        matches = evaluate_rules(rules, ctx(), {"a": NOW}, NOW + 1000)
        assert [m.rule.id for m in matches] == ["b"]

    def test_matches_keep_rule_order(self):
        rules = [make_rule("z"), make_rule("a"), make_rule("m")]
        assert [m.rule.id for m in evaluate_rules(rules, ctx(), {}, NOW)] == ["z", "a", "m"]

    def test_evaluation_is_pure(self):
        rules = [make_rule("a", cooldown=10), make_rule("b")]
        last_fired = {"a": NOW - 100_000}
        snapshot = copy.deepcopy((rules, last_fired))

        evaluate_rules(rules, ctx(), last_fired, NOW)

        assert (rules, last_fired) == snapshot


class TestRandomRules:
    """Tests for random-decision rules."""

    def test_waits_for_trigger_time(self):
        rule = make_rule(random_config=RandomConfig(0.5, 30))
        assert evaluate_rules([rule], ctx(time_to_close=45), {}, NOW, rng=lambda: 0.1) == []
        assert len(evaluate_rules([rule], ctx(time_to_close=30), {}, NOW, rng=lambda: 0.1)) == 1

    def test_conditions_ignored(self):
        rule = make_rule(
            conditions=[Condition(ConditionField.PRICE_YES, Operator.GT, 0.99)],
            random_config=RandomConfig(1.0, 60),
        )
        assert len(evaluate_rules([rule], ctx(0.5, time_to_close=10), {}, NOW)) == 1

    def test_draw_decides_outcome(self):
        rule = make_rule(
            action=RuleAction(ActionType.BUY, Outcome.NO, 10.0),
            random_config=RandomConfig(0.6, 60),
        )
        up = evaluate_rules([rule], ctx(time_to_close=5), {}, NOW, rng=lambda: 0.59)
        down = evaluate_rules([rule], ctx(time_to_close=5), {}, NOW, rng=lambda: 0.6)
        assert up[0].resolved_outcome is Outcome.YES
        assert down[0].resolved_outcome is Outcome.NO

    def test_up_ratio_converges(self):
        rule = make_rule(random_config=RandomConfig(0.7, 60))
        rng = random.Random(1234)
        ups = sum(
            evaluate_rules([rule], ctx(time_to_close=5), {}, NOW, rng=rng.random)[0].resolved_outcome
            is Outcome.YES
            for _ in range(5000)
        )
        assert ups / 5000 == pytest.approx(0.7, abs=0.03)


class TestBuildMarketContext:
    """Tests for the shared context builder."""

    def test_mid_price_preferred(self):
        context = build_market_context(
            "m", NOW, NOW + 60_000, mid_price=0.42, last_trade_price=0.5, best_bid=0.41, best_ask=0.43
        )
        assert context.price_yes == 0.42
        assert context.spread == pytest.approx(0.02)
        assert context.time_to_close == 60.0

    def test_falls_back_to_last_trade(self):
        context = build_market_context("m", NOW, NOW, last_trade_price=0.55)
        assert context.price_yes == 0.55
        assert context.spread == 0.0

    def test_no_price_gives_none(self):
        assert build_market_context("m", NOW, NOW + 1000) is None

    @pytest.mark.parametrize("price", [0.0, 1.0, 1.3])
    def test_out_of_range_price_gives_none(self, price):
        assert build_market_context("m", NOW, NOW + 1000, mid_price=price) is None

    def test_time_to_close_clamped(self):
        context = build_market_context("m", NOW + 5000, NOW, mid_price=0.5)
        assert context.time_to_close == 0.0

    def test_aoi_passed_through(self):
        context = build_market_context("m", NOW, NOW, mid_price=0.5, aoi=0.5)
        assert context.aoi == 0.5
