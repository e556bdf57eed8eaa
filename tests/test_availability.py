import sqlite3
import unittest

from market_fixtures import NOW, MarketDatabase, hours

from tradepost.services.availability import (
    FulfilledReservation,
    InventoryInfo,
    calculate_available_quantity,
    calculate_effective_fulfilled_quantity,
    enrich_sell_orders_with_quantities,
    get_inventory_for_users,
    get_reservation_stats_for_buy_orders,
    get_reservation_stats_for_orders,
)


def _unreachable_factory():
    raise AssertionError("no query expected")


def _broken_factory():
    raise sqlite3.OperationalError("database is locked")


class AvailableQuantityTests(unittest.TestCase):
    def test_none_returns_raw_quantity(self) -> None:
        for raw in (0, 1, 50, 10_000):
            for limit in (None, 0, 5, 20_000):
                self.assertEqual(calculate_available_quantity(raw, "none", limit), raw)

    def test_max_sell_caps_at_limit(self) -> None:
        for raw in (0, 10, 100):
            for limit in (0, 5, 100, 500):
                self.assertEqual(calculate_available_quantity(raw, "max_sell", limit), min(raw, limit))
        self.assertEqual(calculate_available_quantity(100, "max_sell", None), 0)

    def test_reserve_holds_back_limit(self) -> None:
        for raw in (0, 10, 100):
            for limit in (0, 5, 100, 500):
                self.assertEqual(
                    calculate_available_quantity(raw, "reserve", limit),
                    max(0, raw - limit),
                )
        self.assertEqual(calculate_available_quantity(100, "reserve", None), 100)

    def test_unknown_mode_sells_everything(self) -> None:
        self.assertEqual(calculate_available_quantity(42, "bogus", 10), 42)


class EffectiveFulfilledQuantityTests(unittest.TestCase):
    def _reservation(self, quantity=50, updated_at=None, expires_at=None) -> FulfilledReservation:
        return FulfilledReservation(
            order_id=1,
            quantity=quantity,
            updated_at=updated_at or NOW - hours(2),
            expires_at=expires_at,
        )

    def test_empty_is_zero(self) -> None:
        self.assertEqual(calculate_effective_fulfilled_quantity([], None, now=NOW), 0)
        self.assertEqual(calculate_effective_fulfilled_quantity([], NOW - hours(1), now=NOW), 0)

    def test_sync_after_fulfillment_drops_reservation(self) -> None:
        result = calculate_effective_fulfilled_quantity(
            [self._reservation()],
            NOW - hours(1),
            now=NOW,
        )
        self.assertEqual(result, 0)

    def test_sync_before_fulfillment_counts_reservation(self) -> None:
        result = calculate_effective_fulfilled_quantity(
            [self._reservation()],
            NOW - hours(3),
            now=NOW,
        )
        self.assertEqual(result, 50)

    def test_sync_equal_to_fulfillment_counts_reservation(self) -> None:
        fulfilled_at = NOW - hours(2)
        result = calculate_effective_fulfilled_quantity(
            [self._reservation(updated_at=fulfilled_at)],
            fulfilled_at,
            now=NOW,
        )
        self.assertEqual(result, 50)

    def test_sync_decides_even_when_reservation_expired(self) -> None:
        stale_sync = calculate_effective_fulfilled_quantity(
            [self._reservation(expires_at=NOW - hours(1))],
            NOW - hours(3),
            now=NOW,
        )
        fresh_sync = calculate_effective_fulfilled_quantity(
            [self._reservation(expires_at=NOW + hours(1))],
            NOW - hours(1),
            now=NOW,
        )
        self.assertEqual(stale_sync, 50)
        self.assertEqual(fresh_sync, 0)

    def test_without_sync_falls_back_to_expiration(self) -> None:
        self.assertEqual(
            calculate_effective_fulfilled_quantity(
                [self._reservation(expires_at=NOW - hours(1))], None, now=NOW
            ),
            0,
        )
        self.assertEqual(
            calculate_effective_fulfilled_quantity(
                [self._reservation(expires_at=NOW + hours(1))], None, now=NOW
            ),
            50,
        )
        self.assertEqual(
            calculate_effective_fulfilled_quantity([self._reservation()], None, now=NOW),
            50,
        )

    def test_expiration_equal_to_now_counts(self) -> None:
        result = calculate_effective_fulfilled_quantity(
            [self._reservation(expires_at=NOW)],
            None,
            now=NOW,
        )
        self.assertEqual(result, 50)

    def test_mixed_reservations_sum_included_only(self) -> None:
        reservations = [
            self._reservation(quantity=30, updated_at=NOW - hours(3)),
            self._reservation(quantity=50, updated_at=NOW - hours(1)),
            self._reservation(quantity=20, updated_at=NOW - hours(0.5)),
        ]
        result = calculate_effective_fulfilled_quantity(reservations, NOW - hours(2), now=NOW)
        self.assertEqual(result, 70)


class InventoryTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = MarketDatabase()

    def tearDown(self) -> None:
        self.db.close()

    async def test_empty_input_issues_no_query(self) -> None:
        result = await get_inventory_for_users([], connection_factory=_unreachable_factory)
        self.assertEqual(result, {})

    async def test_sums_storages_and_keeps_latest_sync(self) -> None:
        self.db.add_storage(1, "BEN", {"RAT": 100, "DW": 5}, fio_uploaded_at=NOW - hours(5))
        self.db.add_storage(1, "BEN", {"RAT": 40}, fio_uploaded_at=NOW - hours(1), storage_type="WAREHOUSE_STORE")
        self.db.add_storage(1, "BEN", {"RAT": 10}, fio_uploaded_at=None, storage_type="SHIP_STORE")
        self.db.add_storage(1, "KW-020c", {"RAT": 7}, fio_uploaded_at=NOW - hours(2))
        self.db.add_storage(1, None, {"RAT": 999})
        self.db.add_storage(2, "BEN", {"RAT": 3}, fio_uploaded_at=NOW)

        inventory = await get_inventory_for_users([1], connection_factory=self.db.factory)

        self.assertEqual(
            inventory[(1, "RAT", "BEN")],
            InventoryInfo(quantity=150, fio_uploaded_at=NOW - hours(1)),
        )
        self.assertEqual(inventory[(1, "DW", "BEN")].quantity, 5)
        self.assertEqual(inventory[(1, "RAT", "KW-020c")].quantity, 7)
        self.assertNotIn((2, "RAT", "BEN"), inventory)
        self.assertEqual(len(inventory), 3)

    async def test_read_failure_propagates(self) -> None:
        with self.assertRaises(sqlite3.OperationalError):
            await get_inventory_for_users([1], connection_factory=_broken_factory)


class ReservationStatsTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = MarketDatabase()
        self.order_id = self.db.add_sell_order(1, "RAT", "BEN")
        self.other_id = self.db.add_sell_order(1, "DW", "BEN")
        self.quiet_id = self.db.add_sell_order(1, "OVE", "BEN")

    def tearDown(self) -> None:
        self.db.close()

    async def test_empty_input_issues_no_query(self) -> None:
        result = await get_reservation_stats_for_orders([], connection_factory=_unreachable_factory)
        self.assertEqual(result, {})

    async def test_counts_active_and_fulfilled(self) -> None:
        self.db.add_reservation(10, "pending", sell_order_id=self.order_id)
        self.db.add_reservation(15, "confirmed", sell_order_id=self.order_id, expires_at=NOW + hours(1))
        self.db.add_reservation(99, "pending", sell_order_id=self.order_id, expires_at=NOW - hours(1))
        self.db.add_reservation(20, "fulfilled", sell_order_id=self.order_id)
        self.db.add_reservation(5, "fulfilled", sell_order_id=self.order_id, expires_at=NOW - hours(1))
        self.db.add_reservation(50, "cancelled", sell_order_id=self.order_id)
        self.db.add_reservation(60, "expired", sell_order_id=self.order_id)
        self.db.add_reservation(4, "pending", sell_order_id=self.other_id)

        stats = await get_reservation_stats_for_orders(
            [self.order_id, self.other_id, self.quiet_id],
            now=NOW,
            connection_factory=self.db.factory,
        )

        self.assertEqual(stats[self.order_id].count, 2)
        self.assertEqual(stats[self.order_id].quantity, 25)
        self.assertEqual(stats[self.order_id].fulfilled_quantity, 25)
        self.assertEqual(stats[self.other_id].quantity, 4)
        self.assertEqual(stats[self.other_id].fulfilled_quantity, 0)
        self.assertNotIn(self.quiet_id, stats)

    def _add_raw_expiry(self, quantity: int, expires_at: str, sell_order_id: int | None = None,
                        buy_order_id: int | None = None, status: str = "pending") -> None:
        self.db.execute(
            """
            INSERT INTO order_reservations (
                sell_order_id, buy_order_id, counterparty_user_id, quantity, status,
                expires_at, created_at, updated_at
            )
            VALUES (?, ?, 99, ?, ?, ?, '2026-01-15T10:00:00+00:00', '2026-01-15T11:00:00+00:00')
            """,
            (sell_order_id, buy_order_id, quantity, status, expires_at),
        )

    async def test_expiration_compares_instants_not_text(self) -> None:
        # 11:30Z, already expired at NOW
        self._add_raw_expiry(40, "2026-01-15T13:30:00+02:00", sell_order_id=self.order_id)
        # naive, read as UTC, still active
        self._add_raw_expiry(7, "2026-01-15 13:00:00", sell_order_id=self.order_id)
        self._add_raw_expiry(3, "2026-01-15T12:30:00Z", sell_order_id=self.order_id)
        self._add_raw_expiry(100, "2026-01-15 11:59:59", sell_order_id=self.order_id)

        stats = await get_reservation_stats_for_orders(
            [self.order_id],
            now=NOW,
            connection_factory=self.db.factory,
        )
        self.assertEqual(stats[self.order_id].count, 2)
        self.assertEqual(stats[self.order_id].quantity, 10)

        self.db.add_storage(1, "BEN", {"RAT": 100}, fio_uploaded_at=NOW - hours(1))
        enriched = await enrich_sell_orders_with_quantities(
            [
                {
                    "id": self.order_id,
                    "user_id": 1,
                    "commodity_ticker": "RAT",
                    "location_id": "BEN",
                    "limit_mode": "none",
                    "limit_quantity": None,
                }
            ],
            now=NOW,
            connection_factory=self.db.factory,
        )
        self.assertEqual(enriched[self.order_id].reserved_quantity, 10)
        self.assertEqual(enriched[self.order_id].active_reservation_count, 2)
        self.assertEqual(enriched[self.order_id].remaining_quantity, 90)

    async def test_buy_order_expiration_with_offset_forms(self) -> None:
        buy_id = self.db.add_buy_order(2, "RAT", "BEN", 100)
        self._add_raw_expiry(20, "2026-01-15 13:00:00", buy_order_id=buy_id, status="fulfilled")
        self._add_raw_expiry(30, "2026-01-15T13:30:00+02:00", buy_order_id=buy_id, status="fulfilled")

        stats = await get_reservation_stats_for_buy_orders(
            [buy_id],
            now=NOW,
            connection_factory=self.db.factory,
        )
        self.assertEqual(stats[buy_id].fulfilled_quantity, 20)

    async def test_buy_order_fulfilled_respects_expiration(self) -> None:
        buy_id = self.db.add_buy_order(2, "RAT", "BEN", 100)
        self.db.add_reservation(10, "pending", buy_order_id=buy_id)
        self.db.add_reservation(20, "fulfilled", buy_order_id=buy_id, expires_at=NOW + hours(1))
        self.db.add_reservation(30, "fulfilled", buy_order_id=buy_id, expires_at=NOW - hours(1))

        stats = await get_reservation_stats_for_buy_orders(
            [buy_id],
            now=NOW,
            connection_factory=self.db.factory,
        )

        self.assertEqual(stats[buy_id].count, 1)
        self.assertEqual(stats[buy_id].quantity, 10)
        self.assertEqual(stats[buy_id].fulfilled_quantity, 20)


class EnrichSellOrdersTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = MarketDatabase()

    def tearDown(self) -> None:
        self.db.close()

    def _order(self, order_id: int, user_id: int = 1, ticker: str = "RAT", location: str = "BEN",
               limit_mode: str = "none", limit_quantity: int | None = None) -> dict:
        return {
            "id": order_id,
            "user_id": user_id,
            "commodity_ticker": ticker,
            "location_id": location,
            "limit_mode": limit_mode,
            "limit_quantity": limit_quantity,
        }

    async def test_empty_orders(self) -> None:
        result = await enrich_sell_orders_with_quantities([], connection_factory=_unreachable_factory)
        self.assertEqual(result, {})

    async def test_full_breakdown(self) -> None:
        self.db.add_storage(1, "BEN", {"RAT": 200}, fio_uploaded_at=NOW - hours(2))
        order_id = self.db.add_sell_order(1, "RAT", "BEN", limit_mode="reserve", limit_quantity=50)
        self.db.add_reservation(30, "pending", sell_order_id=order_id)
        self.db.add_reservation(20, "fulfilled", sell_order_id=order_id, updated_at=NOW - hours(1))
        self.db.add_reservation(40, "fulfilled", sell_order_id=order_id, updated_at=NOW - hours(3))

        result = await enrich_sell_orders_with_quantities(
            [self._order(order_id, limit_mode="reserve", limit_quantity=50)],
            now=NOW,
            connection_factory=self.db.factory,
        )
        info = result[order_id]

        self.assertEqual(info.fio_quantity, 200)
        self.assertEqual(info.available_quantity, 150)
        self.assertEqual(info.reserved_quantity, 30)
        self.assertEqual(info.fulfilled_quantity, 20)
        self.assertEqual(info.remaining_quantity, 100)
        self.assertEqual(info.active_reservation_count, 1)
        self.assertEqual(info.fio_uploaded_at, NOW - hours(2))

    async def test_missing_inventory_defaults_to_zero(self) -> None:
        order_id = self.db.add_sell_order(7, "RAT", "BEN")
        result = await enrich_sell_orders_with_quantities(
            [self._order(order_id, user_id=7)],
            now=NOW,
            connection_factory=self.db.factory,
        )
        info = result[order_id]
        self.assertEqual(info.fio_quantity, 0)
        self.assertEqual(info.remaining_quantity, 0)
        self.assertIsNone(info.fio_uploaded_at)

    async def test_remaining_never_negative(self) -> None:
        self.db.add_storage(1, "BEN", {"RAT": 10, "DW": 10}, fio_uploaded_at=NOW - hours(5))
        first = self.db.add_sell_order(1, "RAT", "BEN")
        second = self.db.add_sell_order(1, "DW", "BEN", limit_mode="max_sell", limit_quantity=3)
        self.db.add_reservation(25, "confirmed", sell_order_id=first)
        self.db.add_reservation(40, "fulfilled", sell_order_id=first, updated_at=NOW - hours(1))
        self.db.add_reservation(2, "pending", sell_order_id=second)
        self.db.add_reservation(2, "fulfilled", sell_order_id=second, updated_at=NOW - hours(1))

        result = await enrich_sell_orders_with_quantities(
            [
                self._order(first),
                self._order(second, ticker="DW", limit_mode="max_sell", limit_quantity=3),
            ],
            now=NOW,
            connection_factory=self.db.factory,
        )

        self.assertEqual(result[first].reserved_quantity, 25)
        self.assertEqual(result[first].fulfilled_quantity, 40)
        self.assertEqual(result[first].remaining_quantity, 0)
        self.assertEqual(result[second].available_quantity, 3)
        self.assertEqual(result[second].remaining_quantity, 0)

    async def test_orders_for_several_users(self) -> None:
        self.db.add_storage(1, "BEN", {"RAT": 10}, fio_uploaded_at=NOW - hours(1))
        self.db.add_storage(2, "BEN", {"RAT": 20}, fio_uploaded_at=NOW - hours(1))
        first = self.db.add_sell_order(1, "RAT", "BEN")
        second = self.db.add_sell_order(2, "RAT", "BEN")

        result = await enrich_sell_orders_with_quantities(
            [self._order(first, user_id=1), self._order(second, user_id=2)],
            now=NOW,
            connection_factory=self.db.factory,
        )

        self.assertEqual(result[first].remaining_quantity, 10)
        self.assertEqual(result[second].remaining_quantity, 20)

    async def test_read_failure_fails_the_batch(self) -> None:
        with self.assertRaises(sqlite3.OperationalError):
            await enrich_sell_orders_with_quantities(
                [self._order(1)],
                now=NOW,
                connection_factory=_broken_factory,
            )


if __name__ == "__main__":
    unittest.main()
