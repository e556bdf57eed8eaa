from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping

from tradepost.db.database import get_connection, parse_db_timestamp
from tradepost.db.repositories import (
    get_candidate_adjustments,
    get_price_list,
    get_price_row,
    get_price_rows_for_location,
)
from tradepost.services.money import money, parse_price
from tradepost.services.tasks import gather_or_cancel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedAdjustment:
    id: int
    description: str | None
    type: str
    value: float
    applied_amount: float


@dataclass(frozen=True)
class EffectivePrice:
    price_list_code: str
    commodity_ticker: str
    commodity_name: str | None
    location_id: str
    location_name: str | None
    currency: str
    base_price: float
    source: str
    source_reference: str | None
    adjustments: list[AppliedAdjustment] = field(default_factory=list)
    final_price: float = 0.0
    is_fallback: bool = False
    requested_location_id: str | None = None


@dataclass(frozen=True)
class DisplayPrice:
    price: float
    currency: str


def rule_matches(
    rule: Mapping,
    price_list_code: str,
    commodity_ticker: str,
    location_id: str,
) -> bool:
    for column, wanted in (
        ("price_list_code", price_list_code),
        ("commodity_ticker", commodity_ticker),
        ("location_id", location_id),
    ):
        scoped = rule.get(column)
        if scoped is not None and scoped != wanted:
            return False
    return bool(rule.get("is_active", True))


def rule_is_effective(rule: Mapping, now: datetime) -> bool:
    effective_from = parse_db_timestamp(rule.get("effective_from"))
    if effective_from is not None and effective_from > now:
        return False
    effective_until = parse_db_timestamp(rule.get("effective_until"))
    if effective_until is not None and effective_until <= now:
        return False
    return True


def apply_adjustments(
    base_price: float,
    rules: Iterable[Mapping],
) -> tuple[float, list[AppliedAdjustment]]:
    """Apply rules in ascending (priority, id) order to a running price.

    Percentage rules compound on the running price. Only the recorded per-rule
    amounts and the final price are rounded to cents.
    """
    ordered = sorted(rules, key=lambda r: (int(r.get("priority") or 0), int(r["id"])))
    current = float(base_price)
    applied: list[AppliedAdjustment] = []
    for rule in ordered:
        value = parse_price(rule["adjustment_value"])
        if rule["adjustment_type"] == "percentage":
            amount = current * (value / 100)
        else:
            amount = value
        current += amount
        applied.append(
            AppliedAdjustment(
                id=int(rule["id"]),
                description=rule.get("description"),
                type=str(rule["adjustment_type"]),
                value=value,
                applied_amount=money(amount),
            )
        )
    return money(current), applied


def _build_effective_price(row: Mapping, rules: Iterable[Mapping]) -> EffectivePrice:
    base_price = parse_price(row["price"])
    final_price, applied = apply_adjustments(base_price, rules)
    return EffectivePrice(
        price_list_code=str(row["price_list_code"]),
        commodity_ticker=str(row["commodity_ticker"]),
        commodity_name=row.get("commodity_name"),
        location_id=str(row["location_id"]),
        location_name=row.get("location_name"),
        currency=str(row["currency"]),
        base_price=base_price,
        source=str(row["source"]),
        source_reference=row.get("source_reference"),
        adjustments=applied,
        final_price=final_price,
    )


async def calculate_effective_price(
    price_list_code: str,
    ticker: str,
    location_id: str,
    currency: str,
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> EffectivePrice | None:
    code = price_list_code.upper()
    commodity_ticker = ticker.upper()
    # Location ids are case-sensitive (e.g. KW-020c).
    location = location_id
    current = now or datetime.now(timezone.utc)

    row = await asyncio.to_thread(
        get_price_row,
        code,
        commodity_ticker,
        location,
        currency,
        connection_factory=connection_factory,
    )
    if row is None:
        return None

    candidates = await asyncio.to_thread(
        get_candidate_adjustments,
        code,
        location,
        commodity_ticker,
        connection_factory=connection_factory,
    )
    rules = [
        rule
        for rule in candidates
        if rule_matches(rule, code, commodity_ticker, location) and rule_is_effective(rule, current)
    ]
    return _build_effective_price(row, rules)


async def calculate_effective_price_with_fallback(
    price_list_code: str,
    ticker: str,
    location_id: str,
    currency: str | None = None,
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> EffectivePrice | None:
    """Resolve at the requested location, then at the price list's default location.

    ``currency`` is ignored: the price list's own currency is always used, so a
    currency stored on an order cannot hide the live price.
    """
    price_list = await asyncio.to_thread(
        get_price_list,
        price_list_code.upper(),
        connection_factory=connection_factory,
    )
    if price_list is None:
        return None

    list_currency = str(price_list["currency"])
    default_location_id = price_list.get("default_location_id")

    result = await calculate_effective_price(
        price_list_code,
        ticker,
        location_id,
        list_currency,
        now=now,
        connection_factory=connection_factory,
    )
    if result is not None:
        return result

    if not default_location_id or default_location_id == location_id:
        return None

    logger.debug(
        "[price] %s %s not priced at %s, trying default location %s",
        price_list_code.upper(),
        ticker.upper(),
        location_id,
        default_location_id,
    )
    result = await calculate_effective_price(
        price_list_code,
        ticker,
        default_location_id,
        list_currency,
        now=now,
        connection_factory=connection_factory,
    )
    if result is None:
        return None
    return replace(result, is_fallback=True, requested_location_id=location_id)


def is_dynamic_pricing(order: Mapping) -> bool:
    if not order.get("price_list_code"):
        return False
    return parse_price(order["price"]) == 0


async def get_order_display_price(
    order: Mapping,
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> DisplayPrice | None:
    if is_dynamic_pricing(order):
        effective = await calculate_effective_price_with_fallback(
            str(order["price_list_code"]),
            str(order["commodity_ticker"]),
            str(order["location_id"]),
            order.get("currency"),
            now=now,
            connection_factory=connection_factory,
        )
        if effective is None:
            return None
        return DisplayPrice(price=effective.final_price, currency=effective.currency)

    return DisplayPrice(price=parse_price(order["price"]), currency=str(order["currency"]))


async def calculate_effective_prices(
    price_list_code: str,
    location_id: str,
    currency: str,
    *,
    now: datetime | None = None,
    connection_factory: Callable = get_connection,
) -> list[EffectivePrice]:
    code = price_list_code.upper()
    current = now or datetime.now(timezone.utc)
    rows, candidates = await gather_or_cancel(
        asyncio.to_thread(
            get_price_rows_for_location,
            code,
            location_id,
            currency,
            connection_factory=connection_factory,
        ),
        asyncio.to_thread(
            get_candidate_adjustments,
            code,
            location_id,
            connection_factory=connection_factory,
        ),
    )
    effective_rules = [rule for rule in candidates if rule_is_effective(rule, current)]
    prices: list[EffectivePrice] = []
    for row in rows:
        ticker = str(row["commodity_ticker"])
        rules = [rule for rule in effective_rules if rule_matches(rule, code, ticker, location_id)]
        prices.append(_build_effective_price(row, rules))
    return prices
