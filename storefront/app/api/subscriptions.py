from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_session, get_actor
from storefront.app.core.exceptions import ServiceError, ForbiddenError
from storefront.app.schemas import SubscriptionRenew, SubscriptionResponse, UsageResponse
from storefront.app.services.lifecycle import Actor
from storefront.app.services.subscription import SubscriptionService
from storefront.app.services.usage import UsageMeteringService

router = APIRouter()


@router.get("/{seller_id}/usage", response_model=UsageResponse)
async def get_usage(
    seller_id: int,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    """Orders placed this calendar month against the seller's plan limit."""
    if actor.seller_id is not None and actor.seller_id != seller_id:
        raise ForbiddenError("Sellers can only see their own usage")
    usage = await UsageMeteringService(session).get_seller_usage(seller_id)
    return UsageResponse(
        seller_id=usage.seller_id,
        plan=usage.plan,
        orders=usage.orders,
        orders_limit=usage.orders_limit,
        approaching_limit=usage.approaching_limit,
        limit_exceeded=usage.limit_exceeded,
    )


@router.post("/{seller_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    seller_id: int,
    data: SubscriptionRenew,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    """Record a paid period (admin only). Clears any running grace period."""
    if actor.seller_id is not None:
        raise ForbiddenError("Only platform admins can renew subscriptions")
    try:
        subscription = await SubscriptionService(session).renew_subscription(
            seller_id, data.plan, period_months=data.period_months,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{seller_id}/past-due", response_model=SubscriptionResponse)
async def mark_past_due(
    seller_id: int,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    """Record a failed renewal; the seller keeps the plan until the grace period ends."""
    if actor.seller_id is not None:
        raise ForbiddenError("Only platform admins can change subscription state")
    try:
        subscription = await SubscriptionService(session).start_grace_period(seller_id)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return SubscriptionResponse.model_validate(subscription)
