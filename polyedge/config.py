"""Engine configuration loaded from environment variables."""

import logging
import os
import sys

from dotenv import load_dotenv
from pythonjsonlogger import jsonlogger

load_dotenv()

# ---------------------------------------------------------------------------
# Polymarket credentials
# ---------------------------------------------------------------------------
POLY_API_KEY = os.environ.get("POLYMARKET_API_KEY", "")
POLY_API_SECRET = os.environ.get("POLYMARKET_API_SECRET", "")
POLY_API_PASSPHRASE = os.environ.get("POLYMARKET_API_PASSPHRASE", "")
POLY_WALLET_KEY = os.environ.get("POLYMARKET_WALLET_PRIVATE_KEY", "")
POLY_FUNDER_ADDRESS = os.environ.get("POLYMARKET_FUNDER_ADDRESS", "")
EXECUTION_CHAIN_ID = 137                 # Polygon mainnet
EXECUTION_SIGNATURE_TYPE = 0             # EOA wallet, no proxy
EXECUTION_DRY_RUN = (
    os.environ.get("EXECUTION_DRY_RUN", "").lower() in ("1", "true", "yes")
    or not (POLY_WALLET_KEY and POLY_API_KEY)
)

# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID", "")

# ---------------------------------------------------------------------------
# API base URLs
# ---------------------------------------------------------------------------
GAMMA_API_URL = "https://gamma-api.polymarket.com"
CLOB_API_URL = os.environ.get("CLOB_HOST", "https://clob.polymarket.com")
OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"
GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
TELEGRAM_API_URL = "https://api.telegram.org"
GOLDSKY_SUBGRAPH_URL = (
    "https://api.goldsky.com/api/public/"
    "project_cl6mb8i9h0003e201j6li0diw/subgraphs"
)

# ---------------------------------------------------------------------------
# Intervals and timeouts (seconds)
# ---------------------------------------------------------------------------
SCAN_INTERVAL = int(os.environ.get("SCAN_INTERVAL_MINUTES", "10")) * 60
COMMAND_POLL_INTERVAL = 5
LOOP_ERROR_BACKOFF = 60.0        # Sleep after a failed cycle
MARKET_PROCESS_DELAY = 0.3       # Pause between markets to stay under rate limits
HTTP_TIMEOUT = 15.0              # httpx timeout in seconds
ORDER_TIMEOUT = 30.0             # Hard cap on any execution gateway call
TELEGRAM_LONG_POLL = 5           # getUpdates long-poll seconds

# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------
BANKROLL_USDC = float(os.environ.get("BANKROLL_USDC", "1000"))
MAX_POSITION_PCT = float(os.environ.get("MAX_POSITION_PCT", "0.02"))
MAX_TOTAL_EXPOSURE_PCT = float(os.environ.get("MAX_TOTAL_EXPOSURE_PCT", "0.15"))
MAX_SINGLE_BUCKET_PCT = float(os.environ.get("MAX_SINGLE_BUCKET_PCT", "0.05"))
DAILY_LOSS_LIMIT_PCT = float(os.environ.get("DAILY_LOSS_LIMIT_PCT", "0.04"))
MAX_CONCURRENT_POSITIONS = int(os.environ.get("MAX_CONCURRENT_POSITIONS", "8"))
MIN_ORDER_USDC = 1.0
CIRCUIT_BREAKER_COOLDOWN = 24 * 60 * 60
LEDGER_PATH = os.environ.get("LEDGER_PATH", "data/positions.json")

# ---------------------------------------------------------------------------
# Edge thresholds (percentage points / 0-100 confidence)
# ---------------------------------------------------------------------------
MIN_EDGE_PCT = float(os.environ.get("MIN_EDGE_PCT", "7"))
MIN_EDGE_SPONSORED_PCT = float(os.environ.get("MIN_EDGE_SPONSORED_PCT", "4"))
MIN_CONFIDENCE = float(os.environ.get("MIN_CONFIDENCE", "70"))
MIN_CONFIDENCE_SPONSORED = float(os.environ.get("MIN_CONFIDENCE_SPONSORED", "55"))
AUTO_EXECUTE_EDGE_PCT = float(os.environ.get("AUTO_EXECUTE_EDGE_PCT", "12"))
AUTO_EXECUTE_CONFIDENCE = float(os.environ.get("AUTO_EXECUTE_CONFIDENCE", "85"))
AUTO_EXECUTE_MAX_SIZE_PCT = float(os.environ.get("AUTO_EXECUTE_MAX_SIZE_PCT", "1"))
APPROVAL_TTL = 2 * 60 * 60

# ---------------------------------------------------------------------------
# Market scan filters
# ---------------------------------------------------------------------------
MIN_MARKET_VOLUME = float(os.environ.get("MIN_MARKET_VOLUME", "10000"))
MIN_MARKET_LIQUIDITY = float(os.environ.get("MIN_MARKET_LIQUIDITY", "1000"))
MIN_EXPIRY_MINUTES = int(os.environ.get("MIN_EXPIRY_MINUTES", "60"))
ARB_MARKETS_PER_CYCLE = 100      # Top N crypto/grouped markets by volume
SPONSORED_MARKETS_PER_CYCLE = 50  # Top N sponsored markets by reward rate

# ---------------------------------------------------------------------------
# Pricing models
# ---------------------------------------------------------------------------
ARB_NO_ARB_BAND = 0.025          # |sum - 1.0| inside this band is fee noise
ARB_CONFIDENCE = 95
GROUPED_DEVIATION_THRESHOLD = 0.03
GROUPED_UNDERPRICED_RATIO = 0.8  # Member must trade below 0.8 / group size
GROUPED_CONFIDENCE = 75
SPONSORED_CONFIDENCE = 60
WEATHER_SIGMA_F = 3.0
WEATHER_SIGMA_C = 1.7
WEATHER_NARROW_BAND_F = 2.0      # Bands narrower than this carry boundary risk
WEATHER_NARROW_BAND_C = 1.0
WEATHER_NARROW_BAND_PENALTY = 10
WEATHER_MIN_SIDE_LIQUIDITY = 100.0
WEATHER_FORECAST_DAYS = 7

# ---------------------------------------------------------------------------
# Smart money
# ---------------------------------------------------------------------------
SMART_MIN_WIN_RATE = 0.65
SMART_MIN_PNL_USD = 50_000.0
SMART_MIN_FILL_USD = 5_000.0
SMART_LOOKBACK_HOURS = 4
SMART_WALLET_CACHE_TTL = 4 * 60 * 60
SMART_MAX_BOOST = 15
SMART_HFT_TRADE_COUNT = 500

# ---------------------------------------------------------------------------
# Position lifecycle
# ---------------------------------------------------------------------------
STOP_LOSS_FRACTION = float(os.environ.get("STOP_LOSS_FRACTION", "0.5"))
TAKE_PROFIT_MARGIN = float(os.environ.get("TAKE_PROFIT_MARGIN", "0.05"))
EXIT_PRICE_FACTOR = 0.85         # Exit limit = current price * factor
MENU_INCREASE_USDC = 10.0
MENU_DECREASE_USDC = 5.0

# ---------------------------------------------------------------------------
# Control server
# ---------------------------------------------------------------------------
CONTROL_HOST = os.environ.get("CONTROL_HOST", "127.0.0.1")
CONTROL_PORT = int(os.environ.get("CONTROL_PORT", "3001"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logging() -> None:
    """Configure structured JSON logging."""
    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
