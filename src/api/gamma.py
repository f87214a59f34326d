"""Gamma API client for Up/Down market metadata."""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import GAMMA_API_URL

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
API_TIMEOUT = 10


@dataclass
class MarketInfo:
    """
    Metadata of one Up/Down market.

    Attributes:
        market_id: Gamma market id.
        slug: Event slug (btc-updown-5m-{start_ts}).
        question: Market question text.
        yes_token_id: CLOB token id of the Up outcome.
        no_token_id: CLOB token id of the Down outcome.
        start_time: Window start (epoch ms).
        end_time: Window end (epoch ms).
        closed: Whether the market is closed.
        outcome: "Up"/"Down" once resolved, else None.
        volume: Traded volume.
    """

    market_id: int
    slug: str
    question: str
    yes_token_id: str
    no_token_id: str
    start_time: int
    end_time: int
    closed: bool = False
    outcome: Optional[str] = None
    volume: float = 0.0

    @property
    def token_ids(self) -> List[str]:
        return [self.yes_token_id, self.no_token_id]


def _parse_json_list(value: Any) -> List[Any]:
    """Gamma returns some list fields as JSON-encoded strings."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def parse_token_ids(market: Dict) -> Optional[tuple[str, str]]:
    """(yes_token_id, no_token_id) from a Gamma market, None if malformed."""
    ids = _parse_json_list(market.get("clobTokenIds"))
    if len(ids) >= 2:
        return str(ids[0]), str(ids[1])
    return None


def parse_timestamp_ms(date_str: Optional[str]) -> Optional[int]:
    """Parse an ISO date string to epoch milliseconds."""
    if not date_str:
        return None
    text = date_str.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def resolved_outcome(market: Dict) -> Optional[str]:
    """'Up'/'Down' for a closed market whose prices settled to 1/0."""
    if not market.get("closed"):
        return None
    outcomes = _parse_json_list(market.get("outcomes"))
    prices = _parse_json_list(market.get("outcomePrices"))
    if len(outcomes) < 2 or len(prices) < 2:
        return None
    try:
        values = [float(p) for p in prices]
    except (TypeError, ValueError):
        return None
    for name, price in zip(outcomes, values):
        if price >= 0.99:
            label = str(name).capitalize()
            return label if label in ("Up", "Down") else None
    return None


class GammaClient:
    """
    Client for the Polymarket Gamma API.

    Used for:
    - Token ids of the live market (for the CLOB websocket subscription)
    - Market window times and question text
    - Resolution outcome of finished markets

    Transient HTTP failures are retried; after the last attempt the lookup
    returns None.
    """

    def __init__(
        self,
        base_url: str = GAMMA_API_URL,
        timeout: float = API_TIMEOUT,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        retry_wait: float = 0.5,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": "UpDownRulesLab/1.0",
        })

    def _get(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """GET with retry on connection errors, timeouts and HTTP errors."""

        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=4 * max(self.retry_wait, 0.0)),
            retry=retry_if_exception_type(requests.RequestException),
            reraise=True,
        )
        def _request():
            response = self.session.get(
                f"{self.base_url}{endpoint}", params=params, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()

        return _request()

    def get_event_by_slug(self, slug: str) -> Optional[Dict]:
        """Raw Gamma event for ``slug``, None if not found or on error."""
        try:
            data = self._get("/events", {"slug": slug})
        except requests.RequestException as e:
            logger.warning(f"Gamma lookup failed for {slug}: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Gamma returned invalid JSON for {slug}: {e}")
            return None

        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    def get_market_info(self, slug: str) -> Optional[MarketInfo]:
        """Normalized metadata of the market behind ``slug``."""
        event = self.get_event_by_slug(slug)
        if not event:
            logger.debug(f"No Gamma event for {slug}")
            return None
        markets = event.get("markets") or []
        if not markets:
            return None
        return self.extract_market_info(slug, markets[0], event)

    def extract_market_info(self, slug: str, market: Dict, event: Optional[Dict] = None) -> Optional[MarketInfo]:
        """Build MarketInfo from a Gamma market object."""
        tokens = parse_token_ids(market)
        if tokens is None:
            logger.warning(f"Market {slug} has malformed clobTokenIds")
            return None

        event = event or {}
        start = parse_timestamp_ms(
            market.get("eventStartTime") or event.get("startTime") or market.get("startDate")
        )
        end = parse_timestamp_ms(market.get("endDate") or event.get("endDate"))
        if start is None or end is None:
            logger.warning(f"Market {slug} has no start/end time")
            return None

        try:
            market_id = int(market.get("id") or event.get("id") or 0)
        except (TypeError, ValueError):
            market_id = 0

        return MarketInfo(
            market_id=market_id,
            slug=slug,
            question=market.get("question", ""),
            yes_token_id=tokens[0],
            no_token_id=tokens[1],
            start_time=start,
            end_time=end,
            closed=bool(market.get("closed", False)),
            outcome=resolved_outcome(market),
            volume=float(market.get("volume") or 0.0),
        )
