"""Configuration management for the Up/Down rules lab."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data directory
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Rule book and paper trade log locations
RULES_PATH = PROJECT_ROOT / os.getenv("RULES_PATH", "data/rules.json")
TRADE_LOG_PATH = PROJECT_ROOT / os.getenv("TRADE_LOG_PATH", "data/paper_trades.jsonl")

# =============================================================================
# PAPER TRADING
# =============================================================================

# Starting USDC balance for the paper ledger and for backtests
STARTING_BALANCE = float(os.getenv("STARTING_BALANCE", "1000"))

# Parabolic fee multiplier: fee per share = price * (1 - price) * FEE_RATE
FEE_RATE = float(os.getenv("FEE_RATE", "0.0625"))

# AOI window used for the "aoi" rule condition field
AOI_WINDOW = int(os.getenv("AOI_WINDOW", "6"))

# Window sizes of the rolling outcome aggregator
AOI_WINDOWS = (1, 6, 12, 144, 288)

# Seed for random-decision rules during backtests
BACKTEST_SEED = int(os.getenv("BACKTEST_SEED", "0"))

# Fallback rule: considered once per market at or below this time-to-close (seconds)
FALLBACK_TRIGGER_TTC = float(os.getenv("FALLBACK_TRIGGER_TTC", "60"))

# =============================================================================
# TIMING
# =============================================================================

# Indicator recompute cadence (seconds)
INDICATOR_INTERVAL = float(os.getenv("INDICATOR_INTERVAL", "2.0"))

# Live rule evaluation cadence (seconds)
RULE_CYCLE_INTERVAL = float(os.getenv("RULE_CYCLE_INTERVAL", "1.0"))

# Live quotes older than this (seconds) are stale: rules are not evaluated on them
QUOTE_MAX_AGE_SECONDS = float(os.getenv("QUOTE_MAX_AGE_SECONDS", "10"))

# Up/Down market length in seconds and the slug prefix used to build slugs
MARKET_DURATION = 300
MARKETS_PER_DAY = 288
MARKET_SLUG_PREFIX = os.getenv("MARKET_SLUG_PREFIX", "btc-updown-5m-")

# =============================================================================
# INDICATORS
# =============================================================================

# Bias classification threshold as a fraction of the total indicator weight
BIAS_THRESHOLD_PCT = float(os.getenv("BIAS_THRESHOLD_PCT", "0.10"))

# Feed buffer bounds
TRADE_BUFFER_SECONDS = 600
TRADE_BUFFER_MAX = 5000
CANDLE_BUFFER_MAX = 150

# =============================================================================
# API ENDPOINTS
# =============================================================================

GAMMA_API_URL = "https://gamma-api.polymarket.com"
WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"

BINANCE_STREAM_URL = (
    "wss://stream.binance.com/stream?streams=btcusdt@trade/btcusdt@kline_1m"
)
BINANCE_DEPTH_URL = "https://api.binance.com/api/v3/depth?symbol=BTCUSDT&limit=20"
BINANCE_KLINES_URL = (
    "https://api.binance.com/api/v3/klines?symbol=BTCUSDT&interval=1m&limit=100"
)

# Order book REST poll cadence (seconds)
ORDERBOOK_POLL_INTERVAL = float(os.getenv("ORDERBOOK_POLL_INTERVAL", "2.0"))


def market_slug(start_ts: int) -> str:
    """Build the slug of the Up/Down market starting at ``start_ts``."""
    return f"{MARKET_SLUG_PREFIX}{start_ts}"


def day_slugs(base_ts: int) -> list[str]:
    """All market slugs of the day starting at ``base_ts``."""
    return [market_slug(base_ts + i * MARKET_DURATION) for i in range(MARKETS_PER_DAY)]
