from tradepost.db.database import get_connection, init_db, parse_db_timestamp, to_db_timestamp
from tradepost.db.repositories import (
    fetch_active_reservation_stats,
    fetch_buy_order_reservation_stats,
    fetch_fulfilled_reservations,
    fetch_inventory_rows,
    fetch_reservation_stats,
    get_candidate_adjustments,
    get_price_list,
    get_price_row,
    get_price_rows_for_location,
    get_sell_order,
    get_sell_orders,
    get_state_value,
    set_state_value,
)

__all__ = [
    "fetch_active_reservation_stats",
    "fetch_buy_order_reservation_stats",
    "fetch_fulfilled_reservations",
    "fetch_inventory_rows",
    "fetch_reservation_stats",
    "get_candidate_adjustments",
    "get_connection",
    "get_price_list",
    "get_price_row",
    "get_price_rows_for_location",
    "get_sell_order",
    "get_sell_orders",
    "get_state_value",
    "init_db",
    "parse_db_timestamp",
    "set_state_value",
    "to_db_timestamp",
]
