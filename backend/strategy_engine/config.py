# Configuration defaults for the strategy engine
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


# Components read defaults from here; constructor arguments always win.
config = {
    # Indicator / signal buffers
    "indicator_history_size": _env_int("INDICATOR_HISTORY_SIZE", 1000),  # points kept per indicator
    "recent_signal_limit": _env_int("RECENT_SIGNAL_LIMIT", 100),  # signals kept per strategy for the API

    # Paper fills: turn accepted signals into ledger trades of risk.position_size
    "paper_trading": _env_bool("PAPER_TRADING", True),

    # Candle feed (market-data-service style REST endpoint). Empty = push-only via /api/candles.
    "feed_base_url": (os.getenv("FEED_BASE_URL", "") or "").strip(),  # e.g. http://market-data-service:8002/v1
    "feed_poll_seconds": _env_float("FEED_POLL_SECONDS", 1.0),

    # HTTP / WebSocket
    "host": (os.getenv("HOST", "0.0.0.0") or "0.0.0.0").strip(),
    "port": _env_int("PORT", 8001),
    # WebSocket auth token (optional). If set, clients must connect with ?token=<token>
    "ws_auth_token": (os.getenv("WS_AUTH_TOKEN", "") or "").strip(),

    # Logging
    "log_level": (os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper(),
    "log_dir": (os.getenv("LOG_DIR", "") or "").strip() or str(ROOT_DIR / 'logs'),
}
