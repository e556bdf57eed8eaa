
LIMIT_MODES = ("none", "max_sell", "reserve")

ACTIVE_RESERVATION_STATUSES = ("pending", "confirmed")
FULFILLED_RESERVATION_STATUS = "fulfilled"
RESERVATION_STATUSES = (
    "pending",
    "confirmed",
    "rejected",
    "fulfilled",
    "expired",
    "cancelled",
)

ADJUSTMENT_TYPES = ("percentage", "fixed")
PRICE_SOURCES = ("manual", "csv_import", "google_sheets", "fio_exchange")

LIMIT_MODE_LABELS = {
    "none": "All stock",
    "max_sell": "Max sell",
    "reserve": "Keep reserve",
}


def normalize_limit_mode(value: str | None) -> str:
    text = (value or "none").strip().lower()
    if text not in LIMIT_MODES:
        return "none"
    return text


def limit_mode_label(value: str | None, limit_quantity: int | None = None) -> str:
    mode = normalize_limit_mode(value)
    label = LIMIT_MODE_LABELS[mode]
    if mode == "none":
        return label
    return f"{label} {int(limit_quantity or 0)}"
