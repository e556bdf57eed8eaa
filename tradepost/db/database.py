import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from tradepost.config import DB_PATH


def get_connection() -> sqlite3.Connection:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def to_db_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_db_timestamp(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


SCHEMA = """
CREATE TABLE IF NOT EXISTS fio_commodities (
    ticker TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category_name TEXT
);

CREATE TABLE IF NOT EXISTS fio_locations (
    natural_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'Station',
    system_natural_id TEXT NOT NULL DEFAULT '',
    system_name TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS fio_user_storage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    storage_id TEXT NOT NULL,
    location_id TEXT,
    type TEXT NOT NULL,
    fio_uploaded_at TEXT,
    last_synced_at TEXT NOT NULL,
    UNIQUE (user_id, storage_id)
);

CREATE TABLE IF NOT EXISTS fio_inventory (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_storage_id INTEGER NOT NULL
        REFERENCES fio_user_storage (id) ON DELETE CASCADE,
    commodity_ticker TEXT NOT NULL,
    quantity INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sell_orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    commodity_ticker TEXT NOT NULL,
    location_id TEXT NOT NULL,
    price REAL NOT NULL,
    currency TEXT NOT NULL,
    price_list_code TEXT,
    order_type TEXT NOT NULL DEFAULT 'internal',
    limit_mode TEXT NOT NULL DEFAULT 'none',
    limit_quantity INTEGER,
    created_at TEXT NOT NULL DEFAULT '',
    UNIQUE (user_id, commodity_ticker, location_id, order_type, currency)
);

CREATE TABLE IF NOT EXISTS buy_orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    commodity_ticker TEXT NOT NULL,
    location_id TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    price REAL NOT NULL,
    currency TEXT NOT NULL,
    price_list_code TEXT,
    order_type TEXT NOT NULL DEFAULT 'internal',
    created_at TEXT NOT NULL DEFAULT '',
    UNIQUE (user_id, commodity_ticker, location_id, order_type, currency)
);

CREATE TABLE IF NOT EXISTS order_reservations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sell_order_id INTEGER REFERENCES sell_orders (id) ON DELETE CASCADE,
    buy_order_id INTEGER REFERENCES buy_orders (id) ON DELETE CASCADE,
    counterparty_user_id INTEGER NOT NULL,
    quantity INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    notes TEXT,
    expires_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS order_reservations_sell_order_idx
    ON order_reservations (sell_order_id);
CREATE INDEX IF NOT EXISTS order_reservations_buy_order_idx
    ON order_reservations (buy_order_id);

CREATE TABLE IF NOT EXISTS price_lists (
    code TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'custom',
    currency TEXT NOT NULL,
    default_location_id TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS prices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    price_list_code TEXT NOT NULL REFERENCES price_lists (code),
    commodity_ticker TEXT NOT NULL,
    location_id TEXT NOT NULL,
    price REAL NOT NULL,
    source TEXT NOT NULL DEFAULT 'manual',
    source_reference TEXT,
    UNIQUE (price_list_code, commodity_ticker, location_id)
);

CREATE TABLE IF NOT EXISTS price_adjustments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    price_list_code TEXT REFERENCES price_lists (code),
    commodity_ticker TEXT,
    location_id TEXT,
    adjustment_type TEXT NOT NULL,
    adjustment_value REAL NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    description TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    effective_from TEXT,
    effective_until TEXT
);

CREATE INDEX IF NOT EXISTS price_adjustments_lookup_idx
    ON price_adjustments (price_list_code, location_id, commodity_ticker);

CREATE TABLE IF NOT EXISTS app_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def init_db(connection_factory=get_connection) -> None:
    with connection_factory() as conn:
        conn.executescript(SCHEMA)
