"""
Seller-side flash sale management.

Sales created here are what ``DiscountResolver`` prices orders against.
A sale already applied to orders is deactivated instead of deleted so the
orders keep pointing at it.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Dict, Any, Iterable

from sqlalchemy import select, exists
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.constants import ZERO, PERCENT_BASE, to_money
from storefront.app.core.exceptions import NotFoundError, InvalidRequestError
from storefront.app.core.logging import get_logger
from storefront.app.core.time_utils import utcnow, to_naive_utc
from storefront.app.models.flash_sale import FlashSale
from storefront.app.models.order import Order

logger = get_logger(__name__)

DISCOUNT_TYPES = ("percentage", "fixed")
EDITABLE_FIELDS = (
    "name",
    "description",
    "discount_type",
    "discount_value",
    "max_discount",
    "min_order_amount",
    "max_uses",
    "start_time",
    "end_time",
    "product_ids",
    "active",
)


def _amount(field_name: str, value: Any) -> Decimal:
    try:
        amount = to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRequestError(f"{field_name} must be a number")
    if amount < ZERO:
        raise InvalidRequestError(f"{field_name} must not be negative")
    return amount


def _check_sale(sale: FlashSale) -> None:
    """Validate the sale as a whole, after create or merge."""
    if not (sale.name or "").strip():
        raise InvalidRequestError("name is required")
    if sale.discount_type not in DISCOUNT_TYPES:
        raise InvalidRequestError(f"discount_type must be one of: {DISCOUNT_TYPES}")
    if sale.discount_value is None or sale.discount_value <= ZERO:
        raise InvalidRequestError("discount_value must be positive")
    if sale.discount_type == "percentage" and sale.discount_value > PERCENT_BASE:
        raise InvalidRequestError("A percentage discount cannot exceed 100")
    if sale.max_uses is None or sale.max_uses < -1:
        raise InvalidRequestError("max_uses must be -1 (unlimited) or a non-negative count")
    if sale.active is None:
        raise InvalidRequestError("active must be true or false")
    if sale.start_time is None or sale.end_time is None:
        raise InvalidRequestError("start_time and end_time are required")
    if sale.start_time >= sale.end_time:
        raise InvalidRequestError("End time must be after start time")


class FlashSaleService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_sales(self, seller_id: int) -> List[FlashSale]:
        result = await self.session.execute(
            select(FlashSale)
            .where(FlashSale.seller_id == seller_id)
            .order_by(FlashSale.start_time, FlashSale.id)
        )
        return list(result.scalars().all())

    async def get_sale(self, sale_id: int, seller_id: int) -> FlashSale:
        sale = await self.session.get(FlashSale, sale_id)
        if not sale or sale.seller_id != seller_id:
            raise NotFoundError("FlashSale", sale_id)
        return sale

    async def create_sale(
        self,
        seller_id: int,
        name: str,
        discount_value: Any,
        start_time: datetime,
        end_time: datetime,
        discount_type: str = "percentage",
        description: str = "",
        max_discount: Any = ZERO,
        min_order_amount: Any = ZERO,
        max_uses: int = -1,
        product_ids: Iterable[int] = (),
    ) -> FlashSale:
        """Caller commits.  Raises InvalidRequestError on missing or inconsistent fields."""
        if discount_value in (None, ""):
            raise InvalidRequestError("discount_value is required")
        sale = FlashSale(
            seller_id=seller_id,
            name=(name or "").strip(),
            description=description or "",
            discount_type=discount_type or "percentage",
            discount_value=_amount("discount_value", discount_value),
            max_discount=_amount("max_discount", max_discount or 0),
            min_order_amount=_amount("min_order_amount", min_order_amount or 0),
            max_uses=max_uses if max_uses is not None else -1,
            used_count=0,
            start_time=to_naive_utc(start_time),
            end_time=to_naive_utc(end_time),
            product_ids=list(product_ids or []),
            active=True,
            created_at=utcnow(),
        )
        _check_sale(sale)
        self.session.add(sale)
        await self.session.flush()

        logger.info(
            "Flash sale created",
            flash_sale_id=sale.id,
            seller_id=seller_id,
            discount_type=sale.discount_type,
            discount_value=str(sale.discount_value),
        )
        return sale

    async def update_sale(self, sale_id: int, seller_id: int, changes: Dict[str, Any]) -> FlashSale:
        """Apply a partial update; the merged sale must still be valid."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidRequestError(f"Unknown fields: {', '.join(sorted(unknown))}")

        sale = await self.get_sale(sale_id, seller_id)
        for key, value in changes.items():
            if key in ("discount_value", "max_discount", "min_order_amount"):
                value = _amount(key, value)
            elif key in ("start_time", "end_time"):
                value = to_naive_utc(value)
            elif key == "name":
                value = (value or "").strip()
            elif key == "product_ids":
                value = list(value or [])
            setattr(sale, key, value)

        _check_sale(sale)
        await self.session.flush()

        logger.info("Flash sale updated", flash_sale_id=sale.id, fields=sorted(changes))
        return sale

    async def delete_sale(self, sale_id: int, seller_id: int) -> bool:
        """
        Remove the sale.  Returns False when it was only deactivated because
        orders already reference it.
        """
        sale = await self.get_sale(sale_id, seller_id)
        in_use = await self.session.scalar(select(exists().where(Order.flash_sale_id == sale.id)))
        if in_use:
            sale.active = False
            await self.session.flush()
            logger.info("Flash sale deactivated", flash_sale_id=sale.id, reason="applied to orders")
            return False

        await self.session.delete(sale)
        await self.session.flush()
        logger.info("Flash sale deleted", flash_sale_id=sale_id)
        return True
