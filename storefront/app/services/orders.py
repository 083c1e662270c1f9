"""
Order Store: order records and their status history.

Status changes after creation go through ``OrderLifecycleCoordinator``
(services/lifecycle.py); this module only creates and reads orders.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.constants import INITIAL_ORDER_STATUS, ZERO, to_money
from storefront.app.core.exceptions import NotFoundError, ForbiddenError, ConflictError, InvalidRequestError
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import orders_created_total
from storefront.app.core.time_utils import utcnow, isoformat_z
from storefront.app.models.order import Order
from storefront.app.models.seller import Seller
from storefront.app.services.discounts import DiscountResolver

logger = get_logger(__name__)


def history_entry(status: str, at: datetime, note: Optional[str] = None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"status": status, "at": isoformat_z(at)}
    if note:
        entry["note"] = note
    return entry


class OrderService:
    """Service class for order creation and lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_seller(self, seller_id: int) -> Seller:
        seller = await self.session.get(Seller, seller_id)
        if not seller:
            raise NotFoundError("Seller", seller_id)
        if seller.is_blocked:
            raise ForbiddenError(f"Seller {seller_id} is blocked")
        return seller

    async def create_order(
        self,
        seller_id: int,
        customer_name: str,
        customer_contact: str,
        subtotal: Optional[Decimal] = None,
        message: str = "",
        shipping_cost: Decimal = ZERO,
        product_ids: Iterable[int] = (),
        item_id: Optional[int] = None,
        customer_id: Optional[int] = None,
        shipping_address: Optional[Dict[str, Any]] = None,
        apply_discount: bool = True,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Place a new order with status ``new`` and its first history entry.

        When ``apply_discount`` is set the best running flash sale is priced
        against ``subtotal`` and its usage is recorded.

        Raises:
            NotFoundError: seller doesn't exist
            ForbiddenError: seller is blocked
            InvalidRequestError: negative amounts
            ConflictError: the chosen flash sale ran out of uses concurrently
        """
        # Caller must commit the session after this returns.
        if subtotal is not None and Decimal(subtotal) < 0:
            raise InvalidRequestError("subtotal must not be negative")
        if Decimal(shipping_cost or 0) < 0:
            raise InvalidRequestError("shipping_cost must not be negative")

        await self._get_seller(seller_id)
        now = now or utcnow()

        discount_amount = to_money(ZERO)
        flash_sale_id = None
        if apply_discount and subtotal is not None:
            resolver = DiscountResolver(self.session)
            resolution = await resolver.resolve_best_discount(seller_id, Decimal(subtotal), product_ids, now=now)
            if resolution:
                if not await resolver.record_usage(resolution.flash_sale_id):
                    raise ConflictError("FlashSale", resolution.flash_sale_id)
                discount_amount = resolution.discount_amount
                flash_sale_id = resolution.flash_sale_id

        order = Order(
            seller_id=seller_id,
            customer_id=customer_id,
            item_id=item_id,
            customer_name=customer_name,
            customer_contact=customer_contact,
            message=message or "",
            subtotal=to_money(subtotal) if subtotal is not None else None,
            status=INITIAL_ORDER_STATUS,
            status_history=[history_entry(INITIAL_ORDER_STATUS, now, "Order placed")],
            notes="",
            shipping_cost=to_money(shipping_cost),
            discount_amount=discount_amount,
            flash_sale_id=flash_sale_id,
            tracking_number="",
            shipping_address=shipping_address,
            created_at=now,
            updated_at=now,
        )
        self.session.add(order)
        await self.session.flush()

        orders_created_total.labels(discounted=str(flash_sale_id is not None).lower()).inc()
        logger.info(
            "Order created",
            order_id=order.id,
            seller_id=seller_id,
            discount=str(discount_amount),
            flash_sale_id=flash_sale_id,
        )
        return order

    async def get_order(self, order_id: int, seller_id: Optional[int] = None) -> Order:
        """Order by id; a seller-scoped lookup treats other sellers' orders as missing."""
        order = await self.session.get(Order, order_id)
        if not order or (seller_id is not None and order.seller_id != seller_id):
            raise NotFoundError("Order", order_id)
        return order

    async def list_orders(
        self,
        seller_id: int,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        query = select(Order).where(Order.seller_id == seller_id)
        if status:
            query = query.where(Order.status == status)
        query = query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)
        result = await self.session.execute(query)
        return list(result.scalars().all())
