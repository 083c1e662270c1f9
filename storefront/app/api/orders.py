from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_session, get_actor, get_dispatcher, require_seller
from storefront.app.core.exceptions import ServiceError
from storefront.app.core.logging import get_logger
from storefront.app.schemas import (
    OrderCreate,
    OrderResponse,
    OrderStatusUpdate,
    OrderTransitionResponse,
    RefundRequest,
    ShippingUpdate,
)
from storefront.app.services.effects import EffectDispatcher
from storefront.app.services.lifecycle import Actor, OrderLifecycleCoordinator, TransitionResult
from storefront.app.services.orders import OrderService

router = APIRouter()
logger = get_logger(__name__)


def _transition_response(result: TransitionResult) -> OrderTransitionResponse:
    return OrderTransitionResponse(
        order=OrderResponse.model_validate(result.order),
        previous_status=result.previous_status,
        changed=result.changed,
    )


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    data: OrderCreate,
    session: AsyncSession = Depends(get_session),
):
    """Place an order; the best running flash sale is applied automatically."""
    logger.info("Creating order", seller_id=data.seller_id, subtotal=str(data.subtotal))
    service = OrderService(session)
    try:
        order = await service.create_order(
            seller_id=data.seller_id,
            customer_name=data.customer_name,
            customer_contact=data.customer_contact,
            subtotal=data.subtotal,
            message=data.message,
            shipping_cost=data.shipping_cost,
            product_ids=data.product_ids,
            item_id=data.item_id,
            customer_id=data.customer_id,
            shipping_address=data.shipping_address.model_dump(exclude_none=True) if data.shipping_address else None,
            apply_discount=data.apply_discount,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return OrderResponse.model_validate(order)


@router.get("", response_model=List[OrderResponse])
async def list_orders(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    if actor.seller_id is None:
        return []
    orders = await OrderService(session).list_orders(actor.seller_id, status=status, limit=limit, offset=offset)
    return [OrderResponse.model_validate(o) for o in orders]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    order = await OrderService(session).get_order(order_id, seller_id=actor.seller_id)
    return OrderResponse.model_validate(order)


@router.put("/{order_id}/status", response_model=OrderTransitionResponse)
async def update_order_status(
    order_id: int,
    data: OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
    dispatcher: EffectDispatcher = Depends(get_dispatcher),
):
    """Move an order forward (or cancel it). Notifications are sent after commit."""
    coordinator = OrderLifecycleCoordinator(session)
    try:
        result = await coordinator.transition_order_status(
            order_id,
            data.status,
            actor=actor,
            note=data.note,
            reason_fields=data.reason_fields(),
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise

    if result.effects:
        background_tasks.add_task(dispatcher.dispatch, result.effects)
    return _transition_response(result)


@router.post("/{order_id}/refund", response_model=OrderTransitionResponse)
async def refund_order(
    order_id: int,
    data: RefundRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
    dispatcher: EffectDispatcher = Depends(get_dispatcher),
):
    """Refund or cancel an order. Both end in 'cancelled'."""
    coordinator = OrderLifecycleCoordinator(session)
    try:
        result = await coordinator.refund_or_cancel(
            order_id,
            reason=data.reason,
            note=data.note,
            type=data.type,
            amount=data.amount,
            actor=actor,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise

    background_tasks.add_task(dispatcher.dispatch, result.effects)
    return _transition_response(result)


@router.put("/{order_id}/shipping", response_model=OrderTransitionResponse)
async def update_shipping(
    order_id: int,
    data: ShippingUpdate,
    background_tasks: BackgroundTasks,
    seller_id: int = Depends(require_seller),
    session: AsyncSession = Depends(get_session),
    dispatcher: EffectDispatcher = Depends(get_dispatcher),
):
    """Tracking number / estimated delivery for the seller's own order, optionally with a status move."""
    coordinator = OrderLifecycleCoordinator(session)
    try:
        result = await coordinator.update_shipping_info(
            order_id,
            Actor(kind="seller", seller_id=seller_id),
            tracking_number=data.tracking_number,
            estimated_delivery=data.estimated_delivery,
            status=data.status,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise

    if result.effects:
        background_tasks.add_task(dispatcher.dispatch, result.effects)
    return _transition_response(result)
