"""Plan limits and monthly usage per seller."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.exceptions import NotFoundError
from storefront.app.core.logging import get_logger
from storefront.app.core.time_utils import utcnow
from storefront.app.models.order import Order
from storefront.app.models.seller import Seller
from storefront.app.services.effects import Effect, notification_effect

logger = get_logger(__name__)

# Orders per calendar month, -1 = unlimited
PLAN_LIMITS: Dict[str, int] = {
    "free": 50,
    "pro": -1,
    "business": -1,
}

WARNING_THRESHOLD = 0.8


@dataclass
class SellerUsage:
    seller_id: int
    plan: str
    orders: int
    orders_limit: int

    @property
    def approaching_limit(self) -> bool:
        return self.orders_limit > 0 and self.orders / self.orders_limit >= WARNING_THRESHOLD

    @property
    def limit_exceeded(self) -> bool:
        return self.orders_limit > 0 and self.orders > self.orders_limit


@dataclass
class UsageReport:
    usages: List[SellerUsage] = field(default_factory=list)
    effects: List[Effect] = field(default_factory=list)


class UsageMeteringService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_seller_usage(self, seller_id: int, now: Optional[datetime] = None) -> SellerUsage:
        seller = await self.session.get(Seller, seller_id)
        if not seller:
            raise NotFoundError("Seller", seller_id)

        now = now or utcnow()
        month_start = now + relativedelta(day=1, hour=0, minute=0, second=0, microsecond=0)
        month_end = month_start + relativedelta(months=1)
        result = await self.session.execute(
            select(func.count(Order.id)).where(
                Order.seller_id == seller_id,
                Order.created_at >= month_start,
                Order.created_at < month_end,
            )
        )
        plan = seller.plan or "free"
        return SellerUsage(
            seller_id=seller_id,
            plan=plan,
            orders=int(result.scalar() or 0),
            orders_limit=PLAN_LIMITS.get(plan, PLAN_LIMITS["free"]),
        )

    async def get_all_sellers_usage(self, now: Optional[datetime] = None) -> List[SellerUsage]:
        result = await self.session.execute(select(Seller.id).order_by(Seller.id))
        return [await self.get_seller_usage(seller_id, now) for seller_id in result.scalars().all()]

    async def run_periodic_usage_check(self, now: Optional[datetime] = None) -> UsageReport:
        """Usage of every seller, plus in-app warnings for sellers near or over their limit."""
        report = UsageReport(usages=await self.get_all_sellers_usage(now))
        for usage in report.usages:
            if usage.limit_exceeded:
                message = (
                    f"You've exceeded your plan limits: orders {usage.orders}/{usage.orders_limit}. "
                    "Please upgrade your plan to continue using all features."
                )
            elif usage.approaching_limit:
                message = (
                    f"You're approaching your plan limits: orders {usage.orders}/{usage.orders_limit}. "
                    "Consider upgrading your plan to avoid service interruption."
                )
            else:
                continue
            logger.info(
                "Seller usage warning",
                seller_id=usage.seller_id,
                orders=usage.orders,
                limit=usage.orders_limit,
            )
            report.effects.append(notification_effect(
                usage.seller_id,
                message,
                {"kind": "usage", "orders": usage.orders, "limit": usage.orders_limit},
            ))
        return report
