"""
Tests for the market data clients.

Network access is mocked throughout: the Gamma client gets a fake
requests session, the websocket feeds are driven through handle_message.
"""

import json
from unittest.mock import Mock

import pytest
import requests

from src.api.binance_ws import BinanceFeed, parse_depth, parse_kline, parse_rest_kline, parse_trade
from src.api.clob_ws import ClobMarketFeed
from src.api.gamma import GammaClient, parse_timestamp_ms, parse_token_ids, resolved_outcome
from src.api.ws_base import RECONNECT_MAX_SECONDS, ReconnectingWebSocket, reconnect_delay
from src.config import day_slugs, market_slug
from src.indicators import FeedState, FeedStatus

T0 = 1_700_000_000_000


def gamma_event(closed=False, prices='["0.5", "0.5"]'):
    return {
        "id": "900",
        "slug": "btc-updown-5m-1700000000",
        "startTime": "2023-11-14T22:13:20Z",
        "markets": [
            {
                "id": "12345",
                "question": "Bitcoin Up or Down?",
                "clobTokenIds": '["111", "222"]',
                "outcomes": '["Up", "Down"]',
                "outcomePrices": prices,
                "eventStartTime": "2023-11-14T22:13:20Z",
                "endDate": "2023-11-14T22:18:20Z",
                "closed": closed,
                "volume": "1534.2",
            }
        ],
    }


def mock_session(payload=None, error=None):
    session = Mock()
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    session.get.side_effect = error if error else None
    if error is None:
        session.get.return_value = response
    return session


class TestSlugs:
    """Market slug helpers."""

    def test_market_slug(self):
        assert market_slug(1700000000) == "btc-updown-5m-1700000000"

    def test_day_slugs(self):
        slugs = day_slugs(1700000000)
        assert len(slugs) == 288
        assert slugs[1] == "btc-updown-5m-1700000300"


class TestGammaParsing:
    """Gamma field parsing."""

    def test_token_ids_from_json_string(self):
        assert parse_token_ids({"clobTokenIds": '["1", "2"]'}) == ("1", "2")
        assert parse_token_ids({"clobTokenIds": ["1", "2"]}) == ("1", "2")
        assert parse_token_ids({"clobTokenIds": "garbage"}) is None

    def test_timestamp(self):
        assert parse_timestamp_ms("2023-11-14T22:13:20Z") == T0
        assert parse_timestamp_ms("") is None
        assert parse_timestamp_ms("nope") is None

    def test_resolved_outcome(self):
        assert resolved_outcome({"closed": True, "outcomes": '["Up","Down"]', "outcomePrices": '["0","1"]'}) == "Down"
        assert resolved_outcome({"closed": True, "outcomes": '["Up","Down"]', "outcomePrices": '["1","0"]'}) == "Up"
        assert resolved_outcome({"closed": False, "outcomes": '["Up","Down"]', "outcomePrices": '["1","0"]'}) is None
        assert resolved_outcome({"closed": True, "outcomes": '["Up","Down"]', "outcomePrices": '["0.6","0.4"]'}) is None


class TestGammaClient:
    """Gamma client with a mocked session."""

    def test_get_market_info(self):
        session = mock_session([gamma_event()])
        client = GammaClient(session=session)

        info = client.get_market_info("btc-updown-5m-1700000000")

        assert info.market_id == 12345
        assert info.token_ids == ["111", "222"]
        assert info.start_time == T0
        assert info.end_time == T0 + 300_000
        assert info.outcome is None
        assert info.volume == pytest.approx(1534.2)
        _, kwargs = session.get.call_args
        assert kwargs["params"] == {"slug": "btc-updown-5m-1700000000"}

    def test_resolved_market(self):
        client = GammaClient(session=mock_session([gamma_event(closed=True, prices='["1", "0"]')]))
        assert client.get_market_info("s").outcome == "Up"

    def test_missing_event(self):
        client = GammaClient(session=mock_session([]))
        assert client.get_market_info("s") is None

    def test_retries_then_gives_up(self):
        session = mock_session(error=requests.ConnectionError("down"))
        client = GammaClient(session=session, max_attempts=3, retry_wait=0)

        assert client.get_event_by_slug("s") is None
        assert session.get.call_count == 3

    def test_recovers_after_transient_error(self):
        response = Mock()
        response.json.return_value = [gamma_event()]
        session = Mock()
        session.get.side_effect = [requests.Timeout("slow"), response]
        client = GammaClient(session=session, retry_wait=0)

        assert client.get_market_info("s") is not None
        assert session.get.call_count == 2

    def test_malformed_tokens(self):
        event = gamma_event()
        event["markets"][0]["clobTokenIds"] = "[]"
        client = GammaClient(session=mock_session([event]))
        assert client.get_market_info("s") is None


class TestReconnect:
    """Backoff schedule."""

    def test_exponential_and_capped(self):
        assert reconnect_delay(0) == 1.0
        assert reconnect_delay(3) == 8.0
        assert reconnect_delay(10) == RECONNECT_MAX_SECONDS

    def test_base_requires_message_handler(self):
        with pytest.raises(TypeError):
            ReconnectingWebSocket("wss://example.invalid")

        class EchoFeed(ReconnectingWebSocket):
            def handle_message(self, data):
                self.last = data

        feed = EchoFeed("wss://example.invalid")
        feed._on_message(None, '{"a": 1}')
        assert feed.last == {"a": 1}


class TestClobMarketFeed:
    """CLOB market channel messages."""

    @pytest.fixture
    def feed(self):
        feed = ClobMarketFeed()
        feed.subscribe(["111", "222"])
        return feed

    def test_book_snapshot(self, feed):
        feed.handle_message([
            {
                "asset_id": "111",
                "bids": [{"price": "0.40", "size": "10"}, {"price": "0.42", "size": "5"}],
                "asks": [{"price": "0.46", "size": "3"}, {"price": "0.44", "size": "8"}],
            }
        ])
        quote = feed.quote("111")
        assert quote.best_bid == 0.42
        assert quote.best_ask == 0.44
        assert quote.mid == pytest.approx(0.43)
        assert quote.spread == pytest.approx(0.02)

    def test_price_changes_update_best(self, feed):
        feed.handle_message({"price_changes": [{"asset_id": "222", "best_bid": "0.55", "best_ask": "0.57"}]})
        assert feed.quote("222").mid == pytest.approx(0.56)

    def test_last_trade_keeps_book(self, feed):
        feed.handle_message({"event_type": "book", "asset_id": "111", "bids": [{"price": "0.3"}], "asks": [{"price": "0.32"}]})
        feed.handle_message({"event_type": "last_trade_price", "asset_id": "111", "price": "0.31"})
        quote = feed.quote("111")
        assert quote.last_trade_price == 0.31
        assert quote.best_bid == 0.3

    def test_unsubscribed_assets_ignored(self, feed):
        feed.handle_message({"event_type": "last_trade_price", "asset_id": "999", "price": "0.5"})
        assert feed.quote("999") is None

    def test_resubscribe_drops_old_quotes(self, feed):
        feed.handle_message({"event_type": "last_trade_price", "asset_id": "111", "price": "0.5"})
        feed.subscribe(["333", "444"])
        assert feed.quote("111") is None

    def test_subscribe_sends_when_connected(self, feed):
        feed.ws = Mock()
        feed.status = FeedStatus.CONNECTED
        feed.subscribe(["333", "444"])

        sent = [json.loads(call.args[0]) for call in feed.ws.send.call_args_list]
        assert sent[0] == {"assets_ids": ["111", "222"], "type": "unsubscribe"}
        assert sent[1]["assets_ids"] == ["333", "444"]
        assert sent[1]["type"] == "market"


class TestBinance:
    """Binance payload parsing and state updates."""

    def test_parse_trade_taker_side(self):
        buy = parse_trade({"T": T0, "p": "37000.5", "q": "0.01", "m": False})
        sell = parse_trade({"T": T0, "p": "37000.5", "q": "0.01", "m": True})
        assert buy.is_buy and not sell.is_buy
        assert buy.price == 37000.5

    def test_parse_klines(self):
        k = parse_kline({"k": {"t": T0, "o": "1", "h": "3", "l": "0.5", "c": "2", "v": "10"}})
        rest = parse_rest_kline([T0, "1", "3", "0.5", "2", "10", T0 + 59_999])
        assert k == rest
        assert k.close == 2.0

    def test_parse_depth(self):
        bids, asks = parse_depth({"bids": [["100.0", "1.5"]], "asks": [["100.5", "2"]]})
        assert bids[0].price == 100.0
        assert asks[0].size == 2.0

    def test_stream_messages_write_state(self):
        state = FeedState(clock=lambda: T0)
        feed = BinanceFeed(state, session=Mock())

        feed.handle_message({"stream": "btcusdt@trade", "data": {"T": T0, "p": "100", "q": "1", "m": False}})
        feed.handle_message({
            "stream": "btcusdt@kline_1m",
            "data": {"k": {"t": T0, "o": "1", "h": "3", "l": "0.5", "c": "2", "v": "10"}},
        })

        snap = state.snapshot()
        assert len(snap.trades) == 1
        assert snap.candles[0].open_time == T0

    def test_poll_orderbook(self):
        state = FeedState()
        response = Mock()
        response.json.return_value = {"bids": [["99.5", "1"]], "asks": [["100.5", "1"]]}
        session = Mock()
        session.get.return_value = response

        assert BinanceFeed(state, session=session).poll_orderbook()
        assert state.snapshot().mid == 100.0

    def test_poll_orderbook_failure(self):
        session = Mock()
        session.get.side_effect = requests.ConnectionError("down")
        assert not BinanceFeed(FeedState(), session=session).poll_orderbook()

    def test_bootstrap_klines(self):
        state = FeedState()
        response = Mock()
        response.json.return_value = [[T0 + i * 60_000, "1", "2", "0.5", "1.5", "3"] for i in range(5)]
        session = Mock()
        session.get.return_value = response

        assert BinanceFeed(state, session=session).bootstrap_klines()
        assert len(state.snapshot().candles) == 5

    def test_status_forwarded_to_state(self):
        state = FeedState()
        feed = BinanceFeed(state, session=Mock())
        feed._set_status(FeedStatus.CONNECTED)
        assert state.status is FeedStatus.CONNECTED
