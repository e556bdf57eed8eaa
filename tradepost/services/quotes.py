from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping

from tradepost.db.database import get_connection
from tradepost.services.availability import (
    SellOrderQuantityInfo,
    enrich_sell_orders_with_quantities,
)
from tradepost.services.money import parse_price
from tradepost.services.pricing import (
    EffectivePrice,
    calculate_effective_price_with_fallback,
    is_dynamic_pricing,
)
from tradepost.services.tasks import gather_or_cancel

logger = logging.getLogger(__name__)

PriceKey = tuple[str, str, str]


@dataclass(frozen=True)
class SellOrderQuote:
    order_id: int
    quantities: SellOrderQuantityInfo
    price: float | None
    currency: str
    dynamic: bool
    effective_price: EffectivePrice | None = None

    @property
    def price_found(self) -> bool:
        return self.price is not None

    @property
    def remaining_quantity(self) -> int:
        return self.quantities.remaining_quantity


def _price_key(order: Mapping) -> PriceKey:
    return (
        str(order["price_list_code"]).upper(),
        str(order["commodity_ticker"]).upper(),
        str(order["location_id"]),
    )


async def quote_sell_orders(
    orders: Iterable[Mapping],
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> dict[int, SellOrderQuote]:
    orders = list(orders)
    if not orders:
        return {}
    current = now or datetime.now(timezone.utc)

    dynamic_keys: list[PriceKey] = []
    for order in orders:
        if is_dynamic_pricing(order):
            key = _price_key(order)
            if key not in dynamic_keys:
                dynamic_keys.append(key)

    quantities, *resolved = await gather_or_cancel(
        enrich_sell_orders_with_quantities(
            orders,
            now=current,
            connection_factory=connection_factory,
        ),
        *(
            calculate_effective_price_with_fallback(
                code,
                ticker,
                location_id,
                now=current,
                connection_factory=connection_factory,
            )
            for code, ticker, location_id in dynamic_keys
        ),
    )
    prices: dict[PriceKey, EffectivePrice | None] = dict(zip(dynamic_keys, resolved))
    unresolved = sum(1 for value in prices.values() if value is None)
    if unresolved:
        logger.debug("[market] %d of %d dynamic prices unresolved", unresolved, len(prices))

    quotes: dict[int, SellOrderQuote] = {}
    for order in orders:
        order_id = int(order["id"])
        if is_dynamic_pricing(order):
            effective = prices.get(_price_key(order))
            quotes[order_id] = SellOrderQuote(
                order_id=order_id,
                quantities=quantities[order_id],
                price=None if effective is None else effective.final_price,
                currency=str(order["currency"]) if effective is None else effective.currency,
                dynamic=True,
                effective_price=effective,
            )
            continue
        quotes[order_id] = SellOrderQuote(
            order_id=order_id,
            quantities=quantities[order_id],
            price=parse_price(order["price"]),
            currency=str(order["currency"]),
            dynamic=False,
        )
    return quotes


async def quote_sell_order(
    order: Mapping,
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> SellOrderQuote:
    quotes = await quote_sell_orders([order], now=now, connection_factory=connection_factory)
    return quotes[int(order["id"])]
