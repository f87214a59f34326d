"""
Binance BTCUSDT feed: trades and 1m klines over the combined websocket
stream, order book by REST poll. Writes everything into a FeedState.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

import requests

from ..config import (
    BINANCE_DEPTH_URL,
    BINANCE_KLINES_URL,
    BINANCE_STREAM_URL,
    ORDERBOOK_POLL_INTERVAL,
)
from ..indicators.feed_state import FeedState
from ..indicators.models import BookLevel, Candle, TradeTick
from .ws_base import ReconnectingWebSocket

logger = logging.getLogger(__name__)

REST_TIMEOUT = 5


def parse_trade(data: Dict) -> TradeTick:
    """
    Parse a ``btcusdt@trade`` payload.

    ``m`` is "buyer is maker": a True value means the seller was the
    aggressor, so the taker side is a buy only when ``m`` is False.
    """
    return TradeTick(
        time=int(data["T"]),
        price=float(data["p"]),
        size=float(data["q"]),
        is_buy=not bool(data["m"]),
    )


def parse_kline(data: Dict) -> Candle:
    """Parse a ``btcusdt@kline_1m`` payload."""
    k = data["k"]
    return Candle(
        open_time=int(k["t"]),
        open=float(k["o"]),
        high=float(k["h"]),
        low=float(k["l"]),
        close=float(k["c"]),
        volume=float(k["v"]),
    )


def parse_rest_kline(row: List[Any]) -> Candle:
    """Parse one row of the REST /klines response."""
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


def parse_depth(data: Dict) -> tuple[List[BookLevel], List[BookLevel]]:
    bids = [BookLevel(float(p), float(q)) for p, q in data.get("bids", [])]
    asks = [BookLevel(float(p), float(q)) for p, q in data.get("asks", [])]
    return bids, asks


class BinanceFeed(ReconnectingWebSocket):
    """
    Feed listener owning the write side of a FeedState.

    Example:
        state = FeedState()
        feed = BinanceFeed(state)
        feed.connect()
    """

    name = "binance"

    def __init__(
        self,
        state: FeedState,
        stream_url: str = BINANCE_STREAM_URL,
        depth_url: str = BINANCE_DEPTH_URL,
        klines_url: str = BINANCE_KLINES_URL,
        poll_interval: float = ORDERBOOK_POLL_INTERVAL,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(stream_url)
        self.state = state
        self.depth_url = depth_url
        self.klines_url = klines_url
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self._poll_stop = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None
        self.on_status(self.state.set_status)

    def connect(self) -> None:
        super().connect()
        self._poll_stop.clear()
        self._poll_thread = threading.Thread(target=self._poll_loop, name="binance-depth", daemon=True)
        self._poll_thread.start()

    def disconnect(self) -> None:
        self._poll_stop.set()
        super().disconnect()
        if self._poll_thread:
            self._poll_thread.join(timeout=5)

    def before_connect(self) -> None:
        self.bootstrap_klines()

    def bootstrap_klines(self) -> bool:
        """Seed the candle buffer from REST; the stream fills it otherwise."""
        try:
            response = self.session.get(self.klines_url, timeout=REST_TIMEOUT)
            response.raise_for_status()
            candles = [parse_rest_kline(row) for row in response.json()]
        except (requests.RequestException, ValueError, IndexError, TypeError) as e:
            logger.warning(f"Kline bootstrap failed: {e}")
            return False
        self.state.set_candles(candles)
        logger.info(f"Bootstrapped {len(candles)} klines")
        return True

    def poll_orderbook(self) -> bool:
        try:
            response = self.session.get(self.depth_url, timeout=REST_TIMEOUT)
            response.raise_for_status()
            bids, asks = parse_depth(response.json())
        except (requests.RequestException, ValueError, TypeError) as e:
            logger.debug(f"Order book poll failed: {e}")
            return False
        self.state.set_book(bids, asks)
        return True

    def _poll_loop(self) -> None:
        while not self._poll_stop.is_set():
            self.poll_orderbook()
            self._poll_stop.wait(self.poll_interval)

    def handle_message(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        stream = data.get("stream")
        payload = data.get("data")
        if not stream or not payload:
            return
        if stream.endswith("@trade"):
            self.state.add_trade(parse_trade(payload))
        elif "@kline" in stream:
            self.state.upsert_candle(parse_kline(payload))
