import os
from pathlib import Path


_ROOT = Path(__file__).resolve().parents[2]
_TOKEN_PATH = _ROOT / "TOKEN"
DB_PATH = Path(os.getenv("TRADEPOST_DB_PATH", str(_ROOT / "data" / "tradepost.db")))

# APP CONFIGS
DEFAULT_PRICE_LIST = "KAWA"                 # Price list used by /price when none is given
DISPLAY_TIMEZONE = "UTC"                    # Timezone for sync timestamps in embeds
ORDERS_PER_PAGE = 10                        # Sell orders per /orders page
SHOW_EMPTY_ORDERS = 0                       # 1 = list orders with nothing remaining in /orders
LOG_LEVEL = os.getenv("TRADEPOST_LOG_LEVEL", "INFO")

CURRENCIES = ("ICA", "CIS", "AIC", "NCC")


def read_token() -> str:
    token = os.getenv("TRADEPOST_TOKEN", "").strip()
    if token:
        return token
    return _TOKEN_PATH.read_text(encoding="utf-8").strip()
