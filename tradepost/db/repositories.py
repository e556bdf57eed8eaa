from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable

from tradepost.core.order_modes import (
    ACTIVE_RESERVATION_STATUSES,
    FULFILLED_RESERVATION_STATUS,
)
from tradepost.db.database import get_connection, to_db_timestamp


def _unique_ints(values: Iterable[int]) -> list[int]:
    seen: set[int] = set()
    out: list[int] = []
    for item in values:
        value = int(item)
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def _placeholders(values: list) -> str:
    return ",".join(["?"] * len(values))


def _now_text(now: datetime | None) -> str:
    return to_db_timestamp(now or datetime.now(timezone.utc))


def fetch_inventory_rows(
    user_ids: Iterable[int],
    *,
    connection_factory: Callable = get_connection,
) -> list[dict]:
    ids = _unique_ints(user_ids)
    if not ids:
        return []
    with connection_factory() as conn:
        rows = conn.execute(
            f"""
            SELECT
                s.user_id AS user_id,
                i.commodity_ticker AS commodity_ticker,
                i.quantity AS quantity,
                s.location_id AS location_id,
                s.fio_uploaded_at AS fio_uploaded_at
            FROM fio_inventory i
            JOIN fio_user_storage s ON s.id = i.user_storage_id
            WHERE s.user_id IN ({_placeholders(ids)})
            """,
            ids,
        ).fetchall()
        return [dict(row) for row in rows]


def fetch_active_reservation_stats(
    sell_order_ids: Iterable[int],
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> list[dict]:
    ids = _unique_ints(sell_order_ids)
    if not ids:
        return []
    statuses = list(ACTIVE_RESERVATION_STATUSES)
    with connection_factory() as conn:
        rows = conn.execute(
            f"""
            SELECT
                sell_order_id,
                COUNT(*) AS count,
                CAST(COALESCE(SUM(quantity), 0) AS INTEGER) AS quantity
            FROM order_reservations
            WHERE sell_order_id IN ({_placeholders(ids)})
              AND status IN ({_placeholders(statuses)})
              AND (expires_at IS NULL OR julianday(expires_at) > julianday(?))
            GROUP BY sell_order_id
            """,
            (*ids, *statuses, _now_text(now)),
        ).fetchall()
        return [dict(row) for row in rows]


def fetch_fulfilled_reservations(
    sell_order_ids: Iterable[int],
    *,
    connection_factory: Callable = get_connection,
) -> list[dict]:
    ids = _unique_ints(sell_order_ids)
    if not ids:
        return []
    with connection_factory() as conn:
        rows = conn.execute(
            f"""
            SELECT id, sell_order_id, quantity, updated_at, expires_at
            FROM order_reservations
            WHERE sell_order_id IN ({_placeholders(ids)})
              AND status = ?
            ORDER BY sell_order_id, id
            """,
            (*ids, FULFILLED_RESERVATION_STATUS),
        ).fetchall()
        return [dict(row) for row in rows]


def _reservation_stats(
    column: str,
    order_ids: Iterable[int],
    *,
    fulfilled_requires_unexpired: bool,
    now: datetime | None,
    connection_factory: Callable,
) -> list[dict]:
    ids = _unique_ints(order_ids)
    if not ids:
        return []
    now_text = _now_text(now)
    # julianday() normalizes Z, offset and space-separated timestamps to one instant.
    unexpired = "(expires_at IS NULL OR julianday(expires_at) > julianday(?))"
    active = f"status IN ('pending', 'confirmed') AND {unexpired}"
    fulfilled = "status = 'fulfilled'"
    fulfilled_params: tuple = ()
    if fulfilled_requires_unexpired:
        fulfilled += f" AND {unexpired}"
        fulfilled_params = (now_text,)
    with connection_factory() as conn:
        rows = conn.execute(
            f"""
            SELECT
                {column} AS order_id,
                CAST(COALESCE(SUM(CASE WHEN {active} THEN 1 ELSE 0 END), 0) AS INTEGER) AS count,
                CAST(COALESCE(SUM(CASE WHEN {active} THEN quantity ELSE 0 END), 0) AS INTEGER) AS quantity,
                CAST(COALESCE(SUM(CASE WHEN {fulfilled} THEN quantity ELSE 0 END), 0) AS INTEGER)
                    AS fulfilled_quantity
            FROM order_reservations
            WHERE {column} IN ({_placeholders(ids)})
            GROUP BY {column}
            """,
            (now_text, now_text, *fulfilled_params, *ids),
        ).fetchall()
        return [dict(row) for row in rows]


def fetch_reservation_stats(
    sell_order_ids: Iterable[int],
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> list[dict]:
    return _reservation_stats(
        "sell_order_id",
        sell_order_ids,
        fulfilled_requires_unexpired=False,
        now=now,
        connection_factory=connection_factory,
    )


def fetch_buy_order_reservation_stats(
    buy_order_ids: Iterable[int],
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> list[dict]:
    return _reservation_stats(
        "buy_order_id",
        buy_order_ids,
        fulfilled_requires_unexpired=True,
        now=now,
        connection_factory=connection_factory,
    )


def get_price_list(
    code: str,
    *,
    connection_factory: Callable = get_connection,
) -> dict | None:
    with connection_factory() as conn:
        row = conn.execute(
            """
            SELECT code, name, type, currency, default_location_id, is_active
            FROM price_lists
            WHERE code = ?
            """,
            (code,),
        ).fetchone()
        return None if row is None else dict(row)


_PRICE_ROW_SELECT = """
    SELECT
        p.price_list_code AS price_list_code,
        p.commodity_ticker AS commodity_ticker,
        c.name AS commodity_name,
        p.location_id AS location_id,
        l.name AS location_name,
        p.price AS price,
        pl.currency AS currency,
        p.source AS source,
        p.source_reference AS source_reference
    FROM prices p
    JOIN price_lists pl ON pl.code = p.price_list_code
    LEFT JOIN fio_commodities c ON c.ticker = p.commodity_ticker
    LEFT JOIN fio_locations l ON l.natural_id = p.location_id
"""


def get_price_row(
    price_list_code: str,
    commodity_ticker: str,
    location_id: str,
    currency: str,
    *,
    connection_factory: Callable = get_connection,
) -> dict | None:
    with connection_factory() as conn:
        row = conn.execute(
            _PRICE_ROW_SELECT
            + """
            WHERE p.price_list_code = ?
              AND p.commodity_ticker = ?
              AND p.location_id = ?
              AND pl.currency = ?
            LIMIT 1
            """,
            (price_list_code, commodity_ticker, location_id, currency),
        ).fetchone()
        return None if row is None else dict(row)


def get_price_rows_for_location(
    price_list_code: str,
    location_id: str,
    currency: str,
    *,
    connection_factory: Callable = get_connection,
) -> list[dict]:
    with connection_factory() as conn:
        rows = conn.execute(
            _PRICE_ROW_SELECT
            + """
            WHERE p.price_list_code = ?
              AND p.location_id = ?
              AND pl.currency = ?
            ORDER BY p.commodity_ticker
            """,
            (price_list_code, location_id, currency),
        ).fetchall()
        return [dict(row) for row in rows]


def get_candidate_adjustments(
    price_list_code: str,
    location_id: str,
    commodity_ticker: str | None = None,
    *,
    connection_factory: Callable = get_connection,
) -> list[dict]:
    """Active rules whose scope matches, before the effective-window check.

    With ``commodity_ticker`` omitted, rules for every commodity are returned so a
    whole price sheet can be adjusted from a single read.
    """
    params: list = [price_list_code, location_id]
    commodity_clause = ""
    if commodity_ticker is not None:
        commodity_clause = "AND (commodity_ticker IS NULL OR commodity_ticker = ?)"
        params.append(commodity_ticker)
    with connection_factory() as conn:
        rows = conn.execute(
            f"""
            SELECT
                id, price_list_code, commodity_ticker, location_id,
                adjustment_type, adjustment_value, priority, description,
                is_active, effective_from, effective_until
            FROM price_adjustments
            WHERE (price_list_code IS NULL OR price_list_code = ?)
              AND (location_id IS NULL OR location_id = ?)
              {commodity_clause}
              AND is_active = 1
            ORDER BY priority, id
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]


_SELL_ORDER_COLUMNS = """
    o.id, o.user_id, o.commodity_ticker, o.location_id, o.price, o.currency,
    o.price_list_code, o.order_type, o.limit_mode, o.limit_quantity,
    c.name AS commodity_name, l.name AS location_name
"""


def get_sell_orders(
    *,
    commodity_tickers: Iterable[str] | None = None,
    location_ids: Iterable[str] | None = None,
    user_ids: Iterable[int] | None = None,
    order_type: str | None = None,
    connection_factory: Callable = get_connection,
) -> list[dict]:
    conditions: list[str] = []
    params: list = []
    tickers = [str(t).upper() for t in (commodity_tickers or []) if str(t).strip()]
    if tickers:
        conditions.append(f"o.commodity_ticker IN ({_placeholders(tickers)})")
        params.extend(tickers)
    locations = [str(loc) for loc in (location_ids or []) if str(loc).strip()]
    if locations:
        conditions.append(f"o.location_id IN ({_placeholders(locations)})")
        params.extend(locations)
    users = _unique_ints(user_ids or [])
    if users:
        conditions.append(f"o.user_id IN ({_placeholders(users)})")
        params.extend(users)
    if order_type:
        conditions.append("o.order_type = ?")
        params.append(order_type)
    where_clause = " AND ".join(conditions) if conditions else "1 = 1"
    with connection_factory() as conn:
        rows = conn.execute(
            f"""
            SELECT {_SELL_ORDER_COLUMNS}
            FROM sell_orders o
            LEFT JOIN fio_commodities c ON c.ticker = o.commodity_ticker
            LEFT JOIN fio_locations l ON l.natural_id = o.location_id
            WHERE {where_clause}
            ORDER BY o.commodity_ticker, o.location_id, o.id
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]


def get_sell_order(
    order_id: int,
    *,
    connection_factory: Callable = get_connection,
) -> dict | None:
    with connection_factory() as conn:
        row = conn.execute(
            f"""
            SELECT {_SELL_ORDER_COLUMNS}
            FROM sell_orders o
            LEFT JOIN fio_commodities c ON c.ticker = o.commodity_ticker
            LEFT JOIN fio_locations l ON l.natural_id = o.location_id
            WHERE o.id = ?
            """,
            (int(order_id),),
        ).fetchone()
        return None if row is None else dict(row)


def get_state_value(
    key: str,
    *,
    connection_factory: Callable = get_connection,
) -> str | None:
    with connection_factory() as conn:
        row = conn.execute(
            "SELECT value FROM app_state WHERE key = ?",
            (key,),
        ).fetchone()
        return None if row is None else row["value"]


def set_state_value(
    key: str,
    value: str,
    *,
    connection_factory: Callable = get_connection,
) -> None:
    with connection_factory() as conn:
        conn.execute(
            """
            INSERT INTO app_state (key, value)
            VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
