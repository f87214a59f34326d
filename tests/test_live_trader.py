"""
Tests for the live paper trader cycle.

Gamma and the CLOB feed are mocked; the clock is driven by hand so market
rollover and settlement happen deterministically.
"""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from src.api.clob_ws import TokenQuote
from src.api.gamma import MarketInfo
from src.backtest import HistoricalOutcome
from src.indicators import FeedStatus
from src.live import LiveTrader, current_window_start
from src.rules import ActionType, Condition, ConditionField, Operator, RuleAction, TradingRule
from src.trading import Outcome, PaperLedger, ZeroFee

START = 1_700_000_100  # aligned to a 5-minute boundary


def market(start_s, market_id, outcome=None):
    return MarketInfo(
        market_id=market_id,
        slug=f"btc-updown-5m-{start_s}",
        question="Bitcoin Up or Down?",
        yes_token_id=f"yes-{market_id}",
        no_token_id=f"no-{market_id}",
        start_time=start_s * 1000,
        end_time=(start_s + 300) * 1000,
        closed=outcome is not None,
        outcome=outcome,
    )


class FakeGamma:
    """Serves markets by slug; resolved outcomes can be published later."""

    def __init__(self):
        self.outcomes = {}
        self.calls = []

    def get_market_info(self, slug):
        self.calls.append(slug)
        start_s = int(slug.rsplit("-", 1)[1])
        return market(start_s, (start_s - START) // 300 + 1, self.outcomes.get(slug))


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def cheap_yes_rule():
    return TradingRule(
        id="cheap-yes",
        name="Cheap YES",
        action=RuleAction(ActionType.BUY, Outcome.YES, 10.0),
        conditions=(Condition(ConditionField.PRICE_YES, Operator.LT, 0.3),),
        cooldown=600,
    )


@pytest.fixture
def clock():
    return Clock(START * 1000 + 30_000)


@pytest.fixture
def clob(clock):
    feed = Mock()
    feed.status = FeedStatus.CONNECTED
    # Quotes arrive continuously: each lookup returns one stamped "now"
    feed.quote.side_effect = lambda token_id: TokenQuote(
        token_id, best_bid=0.24, best_ask=0.26, updated_at=clock.now
    )
    return feed


@pytest.fixture
def trader(cheap_yes_rule, clob, clock):
    ledger = PaperLedger(initial_balance=1000, fee_model=ZeroFee())
    trader = LiveTrader([cheap_yes_rule], ledger, gamma=FakeGamma(), clob=clob, clock=clock)
    trader.test_clock = clock
    return trader


class TestWindow:
    """5-minute window alignment."""

    def test_current_window_start(self):
        assert current_window_start(START * 1000) == START
        assert current_window_start(START * 1000 + 299_999) == START
        assert current_window_start(START * 1000 + 300_000) == START + 300


class TestLiveTrader:
    """Tests for rule cycles, rollover and settlement."""

    @pytest.mark.asyncio
    async def test_first_cycle_subscribes_and_buys(self, trader, clob):
        result = await trader.run_cycle()

        clob.subscribe.assert_called_once_with(["yes-1", "no-1"])
        assert trader.state.current_slug == f"btc-updown-5m-{START}"
        assert len(result["executions"]) == 1
        assert result["executions"][0]["success"]

        position = trader.ledger.get_position(1, Outcome.YES)
        assert position.quantity == Decimal("40")
        assert trader.ledger.balance == Decimal("990")
        assert position.current_price == Decimal("0.25")

    @pytest.mark.asyncio
    async def test_cooldown_holds_within_market(self, trader):
        await trader.run_cycle()
        trader.test_clock.now += 1000
        result = await trader.run_cycle()

        assert result["executions"] == []
        assert trader.state.cycle_count == 2
        assert trader.gamma.calls == [f"btc-updown-5m-{START}"]

    @pytest.mark.asyncio
    async def test_no_quote_skips_rules(self, trader, clob):
        clob.quote.side_effect = lambda token_id: None
        result = await trader.run_cycle()
        assert result["executions"] == []
        assert trader.ledger.trades == []

    @pytest.mark.asyncio
    async def test_rollover_then_settlement(self, trader):
        first_slug = f"btc-updown-5m-{START}"
        await trader.run_cycle()

        # Next window: old market is pending until Gamma reports its outcome
        trader.test_clock.now = (START + 301) * 1000
        result = await trader.run_cycle()
        assert trader.state.current_slug == f"btc-updown-5m-{START + 300}"
        assert result["settled"] == []
        assert trader.state.pending == [first_slug]

        # Polls are throttled; after the interval the resolved outcome settles
        trader.gamma.outcomes[first_slug] = "Up"
        trader.test_clock.now += 5_000
        assert (await trader.run_cycle())["settled"] == []

        trader.test_clock.now += 10_000
        result = await trader.run_cycle()

        assert result["settled"] == [first_slug]
        assert trader.state.pending == []
        assert trader.state.settlements == 1
        assert trader.ledger.balance == Decimal("1030")
        assert len(trader.aoi) == 1
        assert trader.aoi.latest(1) == 1.0

    @pytest.mark.asyncio
    async def test_missing_market_waits_for_next_window(self, trader, clob):
        trader.gamma.get_market_info = Mock(return_value=None)

        result = await trader.run_cycle()

        assert result["executions"] == []
        assert trader.market is None
        clob.subscribe.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_stops_after_duration(self, trader, clob):
        trader.cycle_interval = 0.01
        await trader.run(duration=0.05)

        clob.connect.assert_called_once()
        clob.disconnect.assert_called_once()
        assert not trader.state.is_running
        assert trader.state.cycle_count >= 1

    @pytest.mark.asyncio
    async def test_status(self, trader):
        await trader.run_cycle()
        status = trader.get_status()

        assert status["state"]["executions"] == 1
        assert status["ledger"]["trade_count"] == 1
        assert status["recent_executions"][0]["rule_id"] == "cheap-yes"
        assert status["indicators"] is None


class TestQuoteFreshness:
    """Rules only see quotes from a connected, recently updated feed."""

    @pytest.mark.asyncio
    async def test_disconnected_feed_skips_rules(self, trader, clob):
        clob.status = FeedStatus.DISCONNECTED

        result = await trader.run_cycle()

        assert result["executions"] == []
        assert result["stale"]
        assert trader.ledger.trades == []

    @pytest.mark.asyncio
    async def test_old_quote_skips_rules(self, trader, clob, clock):
        last_update = clock.now - 11_000
        clob.quote.side_effect = lambda token_id: TokenQuote(
            token_id, best_bid=0.24, best_ask=0.26, updated_at=last_update
        )

        result = await trader.run_cycle()
        assert result["executions"] == []
        assert result["stale"]

        # Feed catches up
        last_update = clock.now
        result = await trader.run_cycle()
        assert len(result["executions"]) == 1

    @pytest.mark.asyncio
    async def test_reconnected_feed_resumes(self, trader, clob):
        clob.status = FeedStatus.CONNECTING
        assert (await trader.run_cycle())["executions"] == []

        clob.status = FeedStatus.CONNECTED
        assert len((await trader.run_cycle())["executions"]) == 1


class TestMarketLookupRetry:
    """A market missing at the window start is looked up again."""

    @pytest.mark.asyncio
    async def test_found_on_later_cycle(self, trader, clob, clock):
        gamma = trader.gamma
        trader.gamma = Mock()
        trader.gamma.get_market_info.side_effect = [None, gamma.get_market_info(f"btc-updown-5m-{START}")]

        await trader.run_cycle()
        assert trader.market is None

        # Throttled until the retry interval has passed
        clock.now += 1_000
        await trader.run_cycle()
        assert trader.gamma.get_market_info.call_count == 1

        clock.now += 5_000
        result = await trader.run_cycle()

        assert trader.market.market_id == 1
        clob.subscribe.assert_called_once_with(["yes-1", "no-1"])
        assert len(result["executions"]) == 1


class TestAOIOrdering:
    """Finished markets reach the AOI in start_time order."""

    @pytest.mark.asyncio
    async def test_later_market_waits_for_earlier_one(self, trader, clock):
        slug_a = f"btc-updown-5m-{START}"
        slug_b = f"btc-updown-5m-{START + 300}"

        await trader.run_cycle()
        clock.now = (START + 301) * 1000
        await trader.run_cycle()
        clock.now = (START + 601) * 1000
        await trader.run_cycle()
        assert trader.state.pending == [slug_a, slug_b]

        # B resolves first: its positions settle, the AOI holds it back
        trader.gamma.outcomes[slug_b] = "Down"
        clock.now += 10_000
        result = await trader.run_cycle()
        assert result["settled"] == [slug_b]
        assert len(trader.aoi) == 0

        trader.gamma.outcomes[slug_a] = "Up"
        clock.now += 10_000
        result = await trader.run_cycle()

        assert result["settled"] == [slug_a]
        assert trader.state.pending == []
        assert len(trader.aoi) == 2
        assert trader.aoi.latest(1) == 0.0
        assert trader.aoi.latest(2) == 0.5


class TestAOISeeding:
    """AOI history available from the first cycle."""

    @pytest.fixture
    def aoi_rule(self):
        return TradingRule(
            id="up-trend",
            name="Up trend",
            action=RuleAction(ActionType.BUY, Outcome.YES, 10.0),
            conditions=(Condition(ConditionField.AOI, Operator.GT, 0.4),),
        )

    def make_trader(self, rule, clob, clock, **kwargs):
        ledger = PaperLedger(initial_balance=1000, fee_model=ZeroFee())
        return LiveTrader([rule], ledger, gamma=FakeGamma(), clob=clob, clock=clock, aoi_window=2, **kwargs)

    @pytest.mark.asyncio
    async def test_without_history_aoi_rule_waits(self, aoi_rule, clob, clock):
        trader = self.make_trader(aoi_rule, clob, clock)
        assert (await trader.run_cycle())["executions"] == []

    @pytest.mark.asyncio
    async def test_initial_outcomes(self, aoi_rule, clob, clock):
        outcomes = [
            HistoricalOutcome(id=0, slug="b", start_time=(START - 300) * 1000, outcome="Up", outcome_binary=1),
            HistoricalOutcome(id=-1, slug="a", start_time=(START - 600) * 1000, outcome="Down", outcome_binary=0),
        ]
        trader = self.make_trader(aoi_rule, clob, clock, outcomes=outcomes)

        result = await trader.run_cycle()

        assert trader.aoi.latest(2) == 0.5
        assert len(result["executions"]) == 1

    @pytest.mark.asyncio
    async def test_bootstrap_from_gamma(self, aoi_rule, clob, clock):
        trader = self.make_trader(aoi_rule, clob, clock)
        trader.gamma.outcomes[f"btc-updown-5m-{START - 600}"] = "Up"
        trader.gamma.outcomes[f"btc-updown-5m-{START - 300}"] = "Up"

        assert await trader.bootstrap_aoi() == 2
        assert trader.gamma.calls == [f"btc-updown-5m-{START - 600}", f"btc-updown-5m-{START - 300}"]

        result = await trader.run_cycle()
        assert len(result["executions"]) == 1

    @pytest.mark.asyncio
    async def test_bootstrap_unresolved_market_is_polled(self, aoi_rule, clob, clock):
        trader = self.make_trader(aoi_rule, clob, clock)
        older = f"btc-updown-5m-{START - 600}"
        newer = f"btc-updown-5m-{START - 300}"
        trader.gamma.outcomes[newer] = "Up"

        assert await trader.bootstrap_aoi() == 0
        assert trader.state.pending == [older]

        trader.gamma.outcomes[older] = "Down"
        result = await trader.run_cycle()

        assert result["settled"] == [older]
        assert len(trader.aoi) == 2
        assert trader.aoi.latest(1) == 1.0


class TestLiveFallback:
    """Fallback rule wiring in the live loop."""

    @pytest.mark.asyncio
    async def test_fallback_fires_near_close(self, clob, clock):
        fallback = TradingRule(
            id="fallback",
            name="Fallback",
            action=RuleAction(ActionType.BUY, Outcome.NO, 5.0),
            conditions=(),
        )
        never = TradingRule(
            id="never",
            name="Never",
            action=RuleAction(ActionType.BUY, Outcome.YES, 10.0),
            conditions=(Condition(ConditionField.PRICE_YES, Operator.GT, 0.9),),
        )
        ledger = PaperLedger(initial_balance=1000, fee_model=ZeroFee())
        trader = LiveTrader(
            [never], ledger, gamma=FakeGamma(), clob=clob, clock=clock,
            fallback_rule=fallback, fallback_trigger_ttc=60,
        )

        assert (await trader.run_cycle())["executions"] == []

        clock.now = (START + 250) * 1000
        result = await trader.run_cycle()

        assert len(result["executions"]) == 1
        assert result["executions"][0]["rule_id"] == "fallback"
        assert result["executions"][0]["fallback"]
