from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_session, get_actor
from storefront.app.core.exceptions import ServiceError, ForbiddenError
from storefront.app.schemas import SettlementCreate, SettlementStatusUpdate, SettlementResponse
from storefront.app.services.lifecycle import Actor
from storefront.app.services.settlement import RevenueService

router = APIRouter()


def _require_admin(actor: Actor) -> None:
    if actor.seller_id is not None:
        raise ForbiddenError("Only platform admins can manage settlements")


@router.get("", response_model=List[SettlementResponse])
async def list_settlements(
    status: Optional[str] = None,
    seller_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    """Sellers see their own settlements; admins may filter by seller."""
    scope = actor.seller_id if actor.seller_id is not None else seller_id
    settlements = await RevenueService(session).list_settlements(scope, status=status, limit=limit, offset=offset)
    return [SettlementResponse.model_validate(s) for s in settlements]


@router.post("", response_model=SettlementResponse, status_code=201)
async def create_settlement(
    data: SettlementCreate,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    _require_admin(actor)
    try:
        settlement = await RevenueService(session).create_settlement(
            data.seller_id,
            data.period_start,
            data.period_end,
            payment_method=data.payment_method,
            notes=data.notes,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return SettlementResponse.model_validate(settlement)


@router.put("/{settlement_id}/status", response_model=SettlementResponse)
async def update_settlement_status(
    settlement_id: int,
    data: SettlementStatusUpdate,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    _require_admin(actor)
    try:
        settlement = await RevenueService(session).update_settlement_status(
            settlement_id,
            data.status,
            payment_reference=data.payment_reference,
            payment_method=data.payment_method,
            notes=data.notes,
        )
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return SettlementResponse.model_validate(settlement)
