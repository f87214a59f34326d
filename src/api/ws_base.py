"""Reconnecting websocket-client wrapper shared by the market feeds."""
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

import websocket

from ..indicators.models import FeedStatus

logger = logging.getLogger(__name__)

RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 30.0


def reconnect_delay(attempt: int, base: float = RECONNECT_BASE_SECONDS, cap: float = RECONNECT_MAX_SECONDS) -> float:
    """Exponential backoff: base * 2**attempt, capped."""
    return min(base * (2 ** attempt), cap)


class ReconnectingWebSocket(ABC):
    """
    WebSocketApp running in a daemon thread, reopened with exponential
    backoff whenever the connection drops.

    Subclasses implement ``handle_message(data)`` and may override
    ``on_connected(ws)`` to send subscriptions.
    """

    name = "websocket"

    def __init__(self, url: str, ping_interval: float = 20.0):
        self.url = url
        self.ping_interval = ping_interval
        self.ws: Optional[websocket.WebSocketApp] = None
        self.status = FeedStatus.DISCONNECTED
        self.running = False
        self.reconnect_attempts = 0
        self._status_listeners: List[Callable[[FeedStatus], None]] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def on_status(self, listener: Callable[[FeedStatus], None]) -> None:
        self._status_listeners.append(listener)

    def connect(self) -> None:
        """Start the background connection loop."""
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"{self.name}-ws", daemon=True)
        self._thread.start()

    def disconnect(self) -> None:
        """Close the socket and stop reconnecting."""
        self.running = False
        self._stop_event.set()
        if self.ws:
            self.ws.close()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._set_status(FeedStatus.DISCONNECTED)

    def _run(self) -> None:
        while self.running:
            self._set_status(FeedStatus.CONNECTING)
            self.before_connect()
            self.ws = websocket.WebSocketApp(
                self.url,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
                on_open=self._on_open,
            )
            self.ws.run_forever(ping_interval=self.ping_interval)
            if not self.running:
                break

            delay = reconnect_delay(self.reconnect_attempts)
            self.reconnect_attempts += 1
            logger.info(f"{self.name} reconnecting in {delay:.0f}s (attempt {self.reconnect_attempts})")
            if self._stop_event.wait(delay):
                break

    def _set_status(self, status: FeedStatus) -> None:
        if status is self.status:
            return
        self.status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                logger.warning(f"{self.name} status listener failed: {e}")

    # -------------------------------------------------------------------------
    # websocket-client callbacks
    # -------------------------------------------------------------------------

    def _on_open(self, ws) -> None:
        logger.info(f"{self.name} connected")
        self.reconnect_attempts = 0
        self._set_status(FeedStatus.CONNECTED)
        self.on_connected(ws)

    def _on_message(self, ws, message) -> None:
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError):
            logger.debug(f"{self.name}: ignoring non-JSON message")
            return
        try:
            self.handle_message(data)
        except Exception as e:
            logger.warning(f"{self.name} message handling failed: {e}")

    def _on_error(self, ws, error) -> None:
        logger.warning(f"{self.name} error: {error}")

    def _on_close(self, ws, close_status_code, close_msg) -> None:
        logger.info(f"{self.name} closed: {close_status_code} - {close_msg}")
        self._set_status(FeedStatus.DISCONNECTED)

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def before_connect(self) -> None:
        pass

    def on_connected(self, ws) -> None:
        pass

    @abstractmethod
    def handle_message(self, data: Any) -> None:
        """Handle one decoded JSON message."""
