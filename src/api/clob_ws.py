"""Polymarket CLOB market websocket: live quotes of the Up/Down tokens."""
import json
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from ..config import WS_URL
from ..indicators.models import FeedStatus
from .ws_base import ReconnectingWebSocket

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenQuote:
    """
    Latest quote of one outcome token.

    Attributes:
        token_id: CLOB asset id.
        best_bid: Best bid price.
        best_ask: Best ask price.
        last_trade_price: Price of the latest trade.
        updated_at: Epoch ms of the last update.
    """

    token_id: str
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    last_trade_price: Optional[float] = None
    updated_at: int = 0

    @property
    def mid(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return self.best_ask - self.best_bid


def _price(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result > 0 else None


class ClobMarketFeed(ReconnectingWebSocket):
    """
    Subscribes to the market channel for a set of token ids and keeps the
    latest quote of each.

    Handles the three message shapes of the market channel:
    - book snapshot: [{asset_id, bids: [{price, size}], asks: [...]}]
    - price changes: {price_changes: [{asset_id, best_bid, best_ask, ...}]}
    - last trade:    {event_type: "last_trade_price", asset_id, price}

    Example:
        feed = ClobMarketFeed()
        feed.connect()
        feed.subscribe([info.yes_token_id, info.no_token_id])
        quote = feed.quote(info.yes_token_id)
    """

    name = "clob"

    def __init__(self, url: str = WS_URL):
        super().__init__(url)
        self.subscriptions: List[str] = []
        self._quotes: Dict[str, TokenQuote] = {}
        self._lock = threading.Lock()

    def subscribe(self, token_ids: List[str]) -> None:
        """Replace the subscription set (previous tokens are dropped)."""
        if self.ws and self.status is FeedStatus.CONNECTED and self.subscriptions:
            self._send({"assets_ids": self.subscriptions, "type": "unsubscribe"})
        self.subscriptions = list(token_ids)
        with self._lock:
            self._quotes = {tid: q for tid, q in self._quotes.items() if tid in self.subscriptions}
        if self.ws and self.status is FeedStatus.CONNECTED:
            self._send_subscribe()

    def quote(self, token_id: str) -> Optional[TokenQuote]:
        with self._lock:
            return self._quotes.get(token_id)

    def on_connected(self, ws) -> None:
        if self.subscriptions:
            self._send_subscribe()

    def _send_subscribe(self) -> None:
        logger.info(f"Subscribing to {len(self.subscriptions)} CLOB asset(s)")
        self._send({"auth": {}, "assets_ids": self.subscriptions, "type": "market"})

    def _send(self, payload: Dict) -> None:
        try:
            self.ws.send(json.dumps(payload))
        except Exception as e:
            logger.warning(f"CLOB send failed: {e}")

    def handle_message(self, data: Any) -> None:
        now = int(time.time() * 1000)

        if isinstance(data, list):
            for entry in data:
                if isinstance(entry, dict) and "bids" in entry:
                    self._apply_book(entry, now)
            return
        if not isinstance(data, dict):
            return

        if data.get("event_type") == "book":
            self._apply_book(data, now)
        elif isinstance(data.get("price_changes"), list):
            for change in data["price_changes"]:
                self._update(
                    change.get("asset_id"),
                    now,
                    best_bid=_price(change.get("best_bid")),
                    best_ask=_price(change.get("best_ask")),
                )
        elif data.get("event_type") == "last_trade_price":
            self._update(data.get("asset_id"), now, last_trade_price=_price(data.get("price")))

    def _apply_book(self, entry: Dict, now: int) -> None:
        bids = [p for p in (_price(level.get("price")) for level in entry.get("bids", [])) if p]
        asks = [p for p in (_price(level.get("price")) for level in entry.get("asks", [])) if p]
        self._update(
            entry.get("asset_id"),
            now,
            best_bid=max(bids) if bids else None,
            best_ask=min(asks) if asks else None,
        )

    def _update(self, token_id: Optional[str], now: int, **fields) -> None:
        if not token_id or token_id not in self.subscriptions:
            return
        changes = {k: v for k, v in fields.items() if v is not None}
        if not changes:
            return
        with self._lock:
            current = self._quotes.get(token_id) or TokenQuote(token_id=token_id)
            self._quotes[token_id] = replace(current, updated_at=now, **changes)
