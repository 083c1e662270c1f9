"""
Order, payment and settlement vocabulary plus the money helpers built on Decimal.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

# ---------------------------------------------------------------------------
# Order statuses
# ---------------------------------------------------------------------------
# Stage rank drives the forward-only rule; aliases share a rank.
ORDER_STATUS_RANK = {
    "new": 0,
    "placed": 0,
    "contacted": 1,
    "confirmed": 1,
    "processing": 2,
    "shipped": 3,
    "delivered": 4,
    "completed": 5,
}

VALID_ORDER_STATUSES = list(ORDER_STATUS_RANK) + ["cancelled"]

INITIAL_ORDER_STATUS = "new"
CANCELLED_ORDER_STATUS = "cancelled"
COMPLETED_ORDER_STATUSES = ("delivered", "completed")

# ---------------------------------------------------------------------------
# Payment statuses / methods
# ---------------------------------------------------------------------------
PAYMENT_METHODS = ("mpesa", "bank_transfer", "cash_on_delivery")
MPESA_PROVIDERS = ("vodacom", "movitel")

VALID_PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
TERMINAL_PAYMENT_STATUSES = ("completed", "failed", "cancelled")
ACTIVE_PAYMENT_STATUSES = ("pending", "processing")

PAYMENT_TRANSITIONS = {
    "pending": ("processing", "completed", "failed", "cancelled"),
    "processing": ("completed", "failed", "cancelled"),
}

# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------
SETTLEMENT_TRANSITIONS = {
    "pending": ("processing", "paid"),
    "processing": ("paid",),
}

# ---------------------------------------------------------------------------
# Decimal helpers
# ---------------------------------------------------------------------------
ZERO = Decimal("0")
ONE_CENT = Decimal("0.01")
PERCENT_BASE = Decimal("100")


def to_money(value: Any) -> Decimal:
    """Coerce to Decimal rounded half-up to cents. None counts as zero."""
    if value is None:
        return ZERO.quantize(ONE_CENT)
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(ONE_CENT, rounding=ROUND_HALF_UP)
