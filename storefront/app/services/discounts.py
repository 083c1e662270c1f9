"""
Flash-sale discount resolution.

Only the best single sale applies to an order: every eligible sale is priced
against the order total and the largest discount wins (first seen on ties).
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.constants import ZERO, PERCENT_BASE, to_money
from storefront.app.core.logging import get_logger
from storefront.app.core.time_utils import utcnow, to_naive_utc
from storefront.app.models.flash_sale import FlashSale

logger = get_logger(__name__)


@dataclass(frozen=True)
class DiscountResolution:
    flash_sale_id: int
    name: str
    discount_type: str
    discount_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "applicable": True,
            "flash_sale_id": self.flash_sale_id,
            "name": self.name,
            "discount_type": self.discount_type,
            "discount_amount": str(self.discount_amount),
        }


def has_uses_left(sale: FlashSale) -> bool:
    return sale.max_uses == -1 or (sale.used_count or 0) < sale.max_uses


def is_within_window(sale: FlashSale, now: datetime) -> bool:
    return sale.start_time <= now <= sale.end_time


def compute_discount(sale: FlashSale, order_total: Decimal, product_ids: Iterable[int] = ()) -> Decimal:
    """
    Discount this sale would grant, clamped to [0, order_total].
    Returns 0 when the order does not qualify (minimum amount or product scope).
    """
    order_total = Decimal(order_total)
    if order_total < Decimal(sale.min_order_amount or 0):
        return to_money(ZERO)

    restricted = set(sale.product_ids or [])
    if restricted and not restricted.intersection(product_ids):
        return to_money(ZERO)

    value = Decimal(sale.discount_value or 0)
    if sale.discount_type == "percentage":
        raw = order_total * value / PERCENT_BASE
        cap = Decimal(sale.max_discount or 0)
        if cap > 0:
            raw = min(raw, cap)
    else:
        raw = value

    return to_money(min(max(raw, ZERO), order_total))


def pick_best(
    sales: Sequence[FlashSale],
    order_total: Decimal,
    product_ids: Iterable[int] = (),
) -> Optional[DiscountResolution]:
    product_ids = list(product_ids)
    best: Optional[DiscountResolution] = None
    for sale in sales:
        amount = compute_discount(sale, order_total, product_ids)
        # strict comparison keeps the first-seen sale on ties
        if amount > ZERO and (best is None or amount > best.discount_amount):
            best = DiscountResolution(
                flash_sale_id=sale.id,
                name=sale.name,
                discount_type=sale.discount_type,
                discount_amount=amount,
            )
    return best


class DiscountResolver:
    """Reads a seller's running flash sales and prices them against an order."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_running_sales(self, seller_id: int, now: Optional[datetime] = None) -> List[FlashSale]:
        now = to_naive_utc(now) or utcnow()
        result = await self.session.execute(
            select(FlashSale)
            .where(
                FlashSale.seller_id == seller_id,
                FlashSale.active == True,  # noqa: E712
                FlashSale.start_time <= now,
                FlashSale.end_time >= now,
                or_(FlashSale.max_uses == -1, FlashSale.used_count < FlashSale.max_uses),
            )
            .order_by(FlashSale.id)
        )
        return list(result.scalars().all())

    async def resolve_best_discount(
        self,
        seller_id: int,
        order_total: Decimal,
        product_ids: Iterable[int] = (),
        now: Optional[datetime] = None,
    ) -> Optional[DiscountResolution]:
        """Best eligible discount for the order, or None when nothing applies."""
        sales = await self.get_running_sales(seller_id, now)
        resolution = pick_best(sales, order_total, product_ids)
        logger.debug(
            "Discount resolved",
            seller_id=seller_id,
            candidates=len(sales),
            flash_sale_id=resolution.flash_sale_id if resolution else None,
        )
        return resolution

    async def record_usage(self, flash_sale_id: int) -> bool:
        """
        Increment used_count unless the cap is already reached.
        Returns False when a concurrent order consumed the last use.
        """
        result = await self.session.execute(
            update(FlashSale)
            .where(
                FlashSale.id == flash_sale_id,
                or_(FlashSale.max_uses == -1, FlashSale.used_count < FlashSale.max_uses),
            )
            .values(used_count=FlashSale.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
