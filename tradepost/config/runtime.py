from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from tradepost.config.settings import (
    DEFAULT_PRICE_LIST,
    DISPLAY_TIMEZONE,
    ORDERS_PER_PAGE,
    SHOW_EMPTY_ORDERS,
)
from tradepost.db.database import get_connection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppConfigSpec:
    default: Any
    cast: Callable[[str], Any]
    description: str


APP_CONFIG_SPECS: dict[str, AppConfigSpec] = {
    "DEFAULT_PRICE_LIST": AppConfigSpec(
        default=str(DEFAULT_PRICE_LIST),
        cast=str,
        description="Price list code used by /price when none is given.",
    ),
    "DISPLAY_TIMEZONE": AppConfigSpec(
        default=str(DISPLAY_TIMEZONE),
        cast=str,
        description="Timezone used to display inventory sync times.",
    ),
    "ORDERS_PER_PAGE": AppConfigSpec(
        default=int(ORDERS_PER_PAGE),
        cast=int,
        description="Sell orders shown per /orders page (1-25).",
    ),
    "SHOW_EMPTY_ORDERS": AppConfigSpec(
        default=int(SHOW_EMPTY_ORDERS),
        cast=int,
        description="1 lists orders with nothing remaining in /orders; 0 hides them.",
    ),
}


def _state_key(name: str) -> str:
    return f"config:{name}"


def _normalize(name: str, value: Any) -> Any:
    if name == "DEFAULT_PRICE_LIST":
        text = str(value).strip().upper()
        return text or str(DEFAULT_PRICE_LIST)
    if name == "DISPLAY_TIMEZONE":
        text = str(value).strip()
        return text or str(DISPLAY_TIMEZONE)
    if name == "ORDERS_PER_PAGE":
        return max(1, min(25, int(value)))
    if name == "SHOW_EMPTY_ORDERS":
        return 1 if int(value) else 0
    return value


def _to_string(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.12g}"
    return str(value)


def _spec(name: str) -> AppConfigSpec:
    spec = APP_CONFIG_SPECS.get(name)
    if spec is None:
        raise KeyError(f"Unknown app config: {name}")
    return spec


def ensure_app_config_defaults(connection_factory: Callable = get_connection) -> None:
    with connection_factory() as conn:
        for name, spec in APP_CONFIG_SPECS.items():
            conn.execute(
                """
                INSERT INTO app_state (key, value)
                VALUES (?, ?)
                ON CONFLICT(key) DO NOTHING
                """,
                (_state_key(name), _to_string(_normalize(name, spec.default))),
            )


def get_app_config(name: str, connection_factory: Callable = get_connection) -> Any:
    spec = _spec(name)
    with connection_factory() as conn:
        row = conn.execute(
            "SELECT value FROM app_state WHERE key = ?",
            (_state_key(name),),
        ).fetchone()
    if row is None:
        return _normalize(name, spec.default)
    raw = str(row["value"])
    try:
        parsed = spec.cast(raw)
    except (TypeError, ValueError):
        logger.warning("[config] unparsable value for %s: %r", name, raw)
        parsed = spec.default
    return _normalize(name, parsed)


def set_app_config(name: str, value: Any, connection_factory: Callable = get_connection) -> Any:
    _spec(name)
    normalized = _normalize(name, value)
    with connection_factory() as conn:
        conn.execute(
            """
            INSERT INTO app_state (key, value)
            VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (_state_key(name), _to_string(normalized)),
        )
    return normalized


def get_all_app_configs(connection_factory: Callable = get_connection) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for name, spec in APP_CONFIG_SPECS.items():
        rows.append(
            {
                "name": name,
                "value": get_app_config(name, connection_factory),
                "default": _normalize(name, spec.default),
                "type": spec.cast.__name__,
                "description": spec.description,
            }
        )
    return rows


class RuntimeConfig:
    """Cached reader over the stored app configs.

    Values are read once and kept until ``invalidate`` is called, either for one
    name or for everything. Writes through ``set`` drop the cached entry.
    """

    def __init__(self, connection_factory: Callable = get_connection) -> None:
        self._connection_factory = connection_factory
        self._cache: dict[str, Any] = {}

    def get(self, name: str) -> Any:
        if name not in self._cache:
            self._cache[name] = get_app_config(name, self._connection_factory)
        return self._cache[name]

    async def fetch(self, name: str) -> Any:
        """``get`` for the event loop: a cache miss reads in a worker thread."""
        if name in self._cache:
            return self._cache[name]
        return await asyncio.to_thread(self.get, name)

    def set(self, name: str, value: Any) -> Any:
        normalized = set_app_config(name, value, self._connection_factory)
        self.invalidate(name)
        return normalized

    def invalidate(self, name: str | None = None) -> None:
        if name is None:
            self._cache.clear()
            return
        self._cache.pop(name, None)
