"""
Seller subscription billing state.

A failed renewal puts the subscription ``past_due`` with a grace window;
sellers keep their plan until the window runs out, after which the daily
sweep downgrades them to the free plan.
"""
from datetime import datetime, timedelta
from typing import Optional, List

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.exceptions import NotFoundError, InvalidRequestError
from storefront.app.core.logging import get_logger
from storefront.app.core.settings import get_settings
from storefront.app.core.time_utils import utcnow
from storefront.app.models.seller import Seller
from storefront.app.models.subscription import Subscription
from storefront.app.services.usage import PLAN_LIMITS

logger = get_logger(__name__)

FREE_PLAN = "free"


class SubscriptionService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_subscription(self, seller_id: int) -> Optional[Subscription]:
        """Latest subscription row of the seller."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.seller_id == seller_id)
            .order_by(Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def start_grace_period(
        self,
        seller_id: int,
        grace_period_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Mark the subscription past due after a failed renewal."""
        sub = await self.get_subscription(seller_id)
        if not sub:
            raise NotFoundError("Subscription for seller", seller_id)

        now = now or utcnow()
        days = grace_period_days if grace_period_days is not None else get_settings().GRACE_PERIOD_DAYS
        sub.status = "past_due"
        sub.grace_period_start = now
        sub.grace_period_end = now + timedelta(days=days)
        sub.updated_at = now
        await self.session.flush()

        logger.info(
            "Grace period started",
            seller_id=seller_id,
            grace_period_days=days,
            grace_period_end=sub.grace_period_end.isoformat(),
        )
        return sub

    async def renew_subscription(
        self,
        seller_id: int,
        plan: str,
        period_months: int = 1,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Record a successful renewal: the subscription is active again for
        ``period_months`` more, counted from the current period end when it
        is still in the future, otherwise from now.
        """
        if plan not in PLAN_LIMITS:
            raise InvalidRequestError(f"Unknown plan '{plan}'")
        if period_months < 1:
            raise InvalidRequestError("period_months must be at least 1")
        seller = await self.session.get(Seller, seller_id)
        if not seller:
            raise NotFoundError("Seller", seller_id)

        now = now or utcnow()
        sub = await self.get_subscription(seller_id)
        if not sub:
            sub = Subscription(seller_id=seller_id, created_at=now)
            self.session.add(sub)

        base = sub.current_period_end if sub.current_period_end and sub.current_period_end > now else now
        sub.plan = plan
        sub.status = "active"
        sub.current_period_end = base + relativedelta(months=period_months)
        sub.grace_period_start = None
        sub.grace_period_end = None
        sub.ended_at = None
        sub.updated_at = now
        seller.plan = plan
        await self.session.flush()

        logger.info(
            "Subscription renewed",
            seller_id=seller_id,
            plan=plan,
            current_period_end=sub.current_period_end.isoformat(),
        )
        return sub

    async def end_grace_period(self, seller_id: int, now: Optional[datetime] = None) -> bool:
        """
        Cancel the subscription and move the seller to the free plan.

        Returns False when the seller has no subscription, or when it is no
        longer past due with an elapsed grace window (e.g. renewed since it
        was picked up by the sweep).
        """
        sub = await self.get_subscription(seller_id)
        if not sub:
            return False

        now = now or utcnow()
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == sub.id,
                Subscription.status == "past_due",
                Subscription.grace_period_end.is_not(None),
                Subscription.grace_period_end <= now,
            )
            .values(
                plan=FREE_PLAN,
                status="canceled",
                grace_period_start=None,
                grace_period_end=None,
                ended_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("Grace period no longer expired, skipping downgrade", seller_id=seller_id)
            return False

        seller = await self.session.get(Seller, seller_id)
        if seller:
            seller.plan = FREE_PLAN
        await self.session.flush()
        await self.session.refresh(sub)

        logger.info("Grace period ended, seller downgraded", seller_id=seller_id)
        return True

    async def find_expired_grace_periods(self, now: Optional[datetime] = None) -> List[int]:
        """Seller ids whose past-due grace window has elapsed."""
        now = now or utcnow()
        result = await self.session.execute(
            select(Subscription.seller_id)
            .where(
                Subscription.status == "past_due",
                Subscription.grace_period_end.is_not(None),
                Subscription.grace_period_end <= now,
            )
            .distinct()
            .order_by(Subscription.seller_id)
        )
        return list(result.scalars().all())
