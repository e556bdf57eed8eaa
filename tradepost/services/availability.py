from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping

from tradepost.db.database import get_connection, parse_db_timestamp
from tradepost.db.repositories import (
    fetch_active_reservation_stats,
    fetch_buy_order_reservation_stats,
    fetch_fulfilled_reservations,
    fetch_inventory_rows,
    fetch_reservation_stats,
)
from tradepost.services.tasks import gather_or_cancel

logger = logging.getLogger(__name__)

InventoryKey = tuple[int, str, str]


@dataclass(frozen=True)
class InventoryInfo:
    quantity: int
    fio_uploaded_at: datetime | None


@dataclass(frozen=True)
class ReservationStats:
    count: int
    quantity: int
    fulfilled_quantity: int


@dataclass(frozen=True)
class FulfilledReservation:
    order_id: int
    quantity: int
    updated_at: datetime
    expires_at: datetime | None = None


@dataclass(frozen=True)
class SellOrderQuantityInfo:
    fio_quantity: int
    available_quantity: int
    reserved_quantity: int
    fulfilled_quantity: int
    remaining_quantity: int
    active_reservation_count: int
    fio_uploaded_at: datetime | None


_NO_INVENTORY = InventoryInfo(quantity=0, fio_uploaded_at=None)


def inventory_key(user_id: int, commodity_ticker: str, location_id: str) -> InventoryKey:
    return (int(user_id), str(commodity_ticker), str(location_id))


def calculate_available_quantity(
    fio_quantity: int,
    limit_mode: str,
    limit_quantity: int | None,
) -> int:
    """Sellable quantity for a sell order's limiting policy.

    ``max_sell`` caps sales at the limit (no limit means nothing is sellable),
    ``reserve`` holds the limit back (no limit means nothing is held back).
    Unrecognized modes sell everything, same as ``none``.
    """
    if limit_mode == "none":
        return fio_quantity
    if limit_mode == "max_sell":
        return min(fio_quantity, limit_quantity if limit_quantity is not None else 0)
    if limit_mode == "reserve":
        return max(0, fio_quantity - (limit_quantity if limit_quantity is not None else 0))
    return fio_quantity


def aggregate_inventory(rows: Iterable[Mapping]) -> dict[InventoryKey, InventoryInfo]:
    inventory: dict[InventoryKey, InventoryInfo] = {}
    for row in rows:
        location_id = row.get("location_id")
        if not location_id:
            continue
        key = inventory_key(row["user_id"], row["commodity_ticker"], location_id)
        existing = inventory.get(key, _NO_INVENTORY)
        uploaded_at = existing.fio_uploaded_at
        row_uploaded_at = row.get("fio_uploaded_at")
        if isinstance(row_uploaded_at, str):
            row_uploaded_at = parse_db_timestamp(row_uploaded_at)
        if row_uploaded_at is not None and (uploaded_at is None or row_uploaded_at > uploaded_at):
            uploaded_at = row_uploaded_at
        inventory[key] = InventoryInfo(
            quantity=existing.quantity + int(row["quantity"]),
            fio_uploaded_at=uploaded_at,
        )
    return inventory


async def get_inventory_for_users(
    user_ids: Iterable[int],
    *,
    connection_factory: Callable = get_connection,
) -> dict[InventoryKey, InventoryInfo]:
    ids = list(user_ids)
    if not ids:
        return {}
    rows = await asyncio.to_thread(
        fetch_inventory_rows,
        ids,
        connection_factory=connection_factory,
    )
    return aggregate_inventory(rows)


def _stats_map(rows: list[dict]) -> dict[int, ReservationStats]:
    stats: dict[int, ReservationStats] = {}
    for row in rows:
        if row.get("order_id") is None:
            continue
        stats[int(row["order_id"])] = ReservationStats(
            count=int(row["count"] or 0),
            quantity=int(row["quantity"] or 0),
            fulfilled_quantity=int(row["fulfilled_quantity"] or 0),
        )
    return stats


async def get_reservation_stats_for_orders(
    order_ids: Iterable[int],
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> dict[int, ReservationStats]:
    """Active (pending/confirmed, unexpired) and raw fulfilled totals per sell order.

    Orders without reservations are absent; treat absence as all-zero.
    """
    ids = list(order_ids)
    if not ids:
        return {}
    rows = await asyncio.to_thread(
        fetch_reservation_stats,
        ids,
        now=now,
        connection_factory=connection_factory,
    )
    return _stats_map(rows)


async def get_reservation_stats_for_buy_orders(
    buy_order_ids: Iterable[int],
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> dict[int, ReservationStats]:
    ids = list(buy_order_ids)
    if not ids:
        return {}
    rows = await asyncio.to_thread(
        fetch_buy_order_reservation_stats,
        ids,
        now=now,
        connection_factory=connection_factory,
    )
    return _stats_map(rows)


async def _get_active_reservation_stats(
    order_ids: list[int],
    now: datetime | None,
    connection_factory: Callable,
) -> dict[int, tuple[int, int]]:
    if not order_ids:
        return {}
    rows = await asyncio.to_thread(
        fetch_active_reservation_stats,
        order_ids,
        now=now,
        connection_factory=connection_factory,
    )
    return {
        int(row["sell_order_id"]): (int(row["count"] or 0), int(row["quantity"] or 0))
        for row in rows
        if row.get("sell_order_id") is not None
    }


async def _get_fulfilled_reservations(
    order_ids: list[int],
    connection_factory: Callable,
) -> dict[int, list[FulfilledReservation]]:
    if not order_ids:
        return {}
    rows = await asyncio.to_thread(
        fetch_fulfilled_reservations,
        order_ids,
        connection_factory=connection_factory,
    )
    by_order: dict[int, list[FulfilledReservation]] = {}
    for row in rows:
        if row.get("sell_order_id") is None:
            continue
        order_id = int(row["sell_order_id"])
        by_order.setdefault(order_id, []).append(
            FulfilledReservation(
                order_id=order_id,
                quantity=int(row["quantity"]),
                updated_at=parse_db_timestamp(row["updated_at"]),
                expires_at=parse_db_timestamp(row.get("expires_at")),
            )
        )
    return by_order


def calculate_effective_fulfilled_quantity(
    reservations: Iterable[FulfilledReservation],
    fio_uploaded_at: datetime | None,
    now: datetime | None = None,
) -> int:
    """Fulfilled quantity the synced inventory has not caught up with yet.

    With a known sync time, a reservation stops counting once the sync is
    strictly later than its fulfillment; equal times still count. Without one,
    a reservation counts until its expiration has strictly passed.
    """
    current = now or datetime.now(timezone.utc)
    quantity = 0
    for reservation in reservations:
        if fio_uploaded_at is not None:
            if fio_uploaded_at > reservation.updated_at:
                continue
        elif reservation.expires_at is not None and reservation.expires_at < current:
            continue
        quantity += reservation.quantity
    return quantity


async def enrich_sell_orders_with_quantities(
    orders: Iterable[Mapping],
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> dict[int, SellOrderQuantityInfo]:
    orders = list(orders)
    if not orders:
        return {}

    user_ids = sorted({int(order["user_id"]) for order in orders})
    order_ids = [int(order["id"]) for order in orders]
    current = now or datetime.now(timezone.utc)

    inventory, active_stats, fulfilled = await gather_or_cancel(
        get_inventory_for_users(user_ids, connection_factory=connection_factory),
        _get_active_reservation_stats(order_ids, current, connection_factory),
        _get_fulfilled_reservations(order_ids, connection_factory),
    )
    logger.debug(
        "[market] enriching %d orders for %d users (%d inventory keys)",
        len(order_ids),
        len(user_ids),
        len(inventory),
    )

    quantities: dict[int, SellOrderQuantityInfo] = {}
    for order in orders:
        order_id = int(order["id"])
        info = inventory.get(
            inventory_key(order["user_id"], order["commodity_ticker"], order["location_id"]),
            _NO_INVENTORY,
        )
        active_count, reserved_quantity = active_stats.get(order_id, (0, 0))
        fulfilled_quantity = calculate_effective_fulfilled_quantity(
            fulfilled.get(order_id, []),
            info.fio_uploaded_at,
            now=current,
        )
        limit_quantity = order.get("limit_quantity")
        available_quantity = calculate_available_quantity(
            info.quantity,
            str(order.get("limit_mode") or "none"),
            None if limit_quantity is None else int(limit_quantity),
        )
        quantities[order_id] = SellOrderQuantityInfo(
            fio_quantity=info.quantity,
            available_quantity=available_quantity,
            reserved_quantity=reserved_quantity,
            fulfilled_quantity=fulfilled_quantity,
            remaining_quantity=max(0, available_quantity - reserved_quantity - fulfilled_quantity),
            active_reservation_count=active_count,
            fio_uploaded_at=info.fio_uploaded_at,
        )
    return quantities
