from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_session, get_actor, get_dispatcher, require_seller
from storefront.app.core.exceptions import ServiceError, ProviderError
from storefront.app.core.logging import get_logger
from storefront.app.schemas import (
    PaymentInitiate,
    PaymentResponse,
    PaymentStatusUpdate,
    PaymentConfirm,
    WebhookResponse,
)
from storefront.app.services.effects import EffectDispatcher
from storefront.app.services.lifecycle import Actor
from storefront.app.services.payment import PaymentService, PaymentRequest

router = APIRouter()
logger = get_logger(__name__)


@router.post("/initiate", response_model=PaymentResponse, status_code=201)
async def initiate_payment(
    data: PaymentInitiate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    dispatcher: EffectDispatcher = Depends(get_dispatcher),
):
    """Start a payment. The amount is computed from the order, never from the request."""
    service = PaymentService(session)
    try:
        result = await service.create_payment(PaymentRequest(
            order_id=data.order_id,
            method=data.method,
            provider=data.provider,
            customer_phone=data.customer_phone,
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            customer_id=data.customer_id,
            metadata=data.metadata,
        ))
        await session.commit()
    except ProviderError:
        # Keep the failed payment and its history
        await session.commit()
        raise
    except ServiceError:
        await session.rollback()
        raise

    if result.effects:
        background_tasks.add_task(dispatcher.dispatch, result.effects)
    return PaymentResponse.model_validate(result.payment)


@router.put("/status", response_model=PaymentResponse)
async def update_payment_status(
    data: PaymentStatusUpdate,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
    dispatcher: EffectDispatcher = Depends(get_dispatcher),
):
    service = PaymentService(session)
    try:
        result = await service.update_payment_status(
            data.payment_id,
            data.status,
            note=data.note,
            metadata=data.metadata,
            confirmation_code=data.confirmation_code,
            actor=actor.label,
            seller_id=actor.seller_id,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise

    background_tasks.add_task(dispatcher.dispatch, result.effects)
    return PaymentResponse.model_validate(result.payment)


@router.post("/confirm", response_model=PaymentResponse)
async def confirm_payment(
    data: PaymentConfirm,
    background_tasks: BackgroundTasks,
    seller_id: int = Depends(require_seller),
    session: AsyncSession = Depends(get_session),
    dispatcher: EffectDispatcher = Depends(get_dispatcher),
):
    """Seller confirms a cash or bank transfer payment was received."""
    service = PaymentService(session)
    try:
        result = await service.confirm_payment(
            data.payment_id,
            seller_id,
            notes=data.notes,
            external_transaction_id=data.external_transaction_id,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise

    background_tasks.add_task(dispatcher.dispatch, result.effects)
    return PaymentResponse.model_validate(result.payment)


@router.post("/webhook/{provider}", response_model=WebhookResponse)
async def payment_webhook(
    provider: str,
    background_tasks: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_session),
    dispatcher: EffectDispatcher = Depends(get_dispatcher),
):
    """M-Pesa callback."""
    service = PaymentService(session)
    try:
        result = await service.process_webhook(payload, provider)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise

    if result.effects:
        background_tasks.add_task(dispatcher.dispatch, result.effects)
    return WebhookResponse(
        success=True,
        payment_id=result.payment.id,
        status=result.status,
        ignored=result.ignored,
        refund_required=result.refund_required,
    )


@router.get("/revenue")
async def revenue_summary(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    seller_id: int = Depends(require_seller),
    session: AsyncSession = Depends(get_session),
):
    return await PaymentService(session).get_revenue_summary(seller_id, start_date, end_date)


@router.get("", response_model=List[PaymentResponse])
async def list_payments(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    seller_id: int = Depends(require_seller),
    session: AsyncSession = Depends(get_session),
):
    payments = await PaymentService(session).get_seller_payments(seller_id, limit=limit, offset=offset)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get("/order/{order_id}", response_model=PaymentResponse)
async def get_payment_by_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    service = PaymentService(session)
    payment = await service.get_payment_by_order(order_id)
    # Re-check ownership through the seller-scoped lookup
    payment = await service.get_payment(payment.id, seller_id=actor.seller_id)
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: int,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    payment = await PaymentService(session).get_payment(payment_id, seller_id=actor.seller_id)
    return PaymentResponse.model_validate(payment)
