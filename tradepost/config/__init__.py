from tradepost.config.settings import (
    CURRENCIES,
    DB_PATH,
    DEFAULT_PRICE_LIST,
    DISPLAY_TIMEZONE,
    LOG_LEVEL,
    ORDERS_PER_PAGE,
    SHOW_EMPTY_ORDERS,
    read_token,
)

__all__ = [
    "CURRENCIES",
    "DB_PATH",
    "DEFAULT_PRICE_LIST",
    "DISPLAY_TIMEZONE",
    "LOG_LEVEL",
    "ORDERS_PER_PAGE",
    "SHOW_EMPTY_ORDERS",
    "read_token",
]
