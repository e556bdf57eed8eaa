from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

_CENT = Decimal("0.01")


def money(value: float | int | str | Decimal) -> float:
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def parse_price(raw: float | int | str | Decimal | None) -> float:
    if raw is None:
        raise ValueError("price missing")
    if isinstance(raw, (int, float)):
        return float(raw)
    try:
        return float(Decimal(str(raw).strip()))
    except InvalidOperation as exc:
        raise ValueError(f"invalid price: {raw!r}") from exc


def format_price(value: float, currency: str) -> str:
    return f"{value:,.2f} {currency}"


def format_amount(value: float) -> str:
    return f"{value:+,.2f}"
