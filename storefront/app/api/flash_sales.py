from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_session, require_seller
from storefront.app.core.exceptions import ServiceError
from storefront.app.schemas import FlashSaleValidate, FlashSaleCreate, FlashSaleUpdate, FlashSaleResponse
from storefront.app.services.discounts import DiscountResolver
from storefront.app.services.flash_sales import FlashSaleService

router = APIRouter()


@router.post("/validate")
async def validate_flash_sale(
    data: FlashSaleValidate,
    session: AsyncSession = Depends(get_session),
):
    """Preview the discount an order of this size would get right now."""
    resolution = await DiscountResolver(session).resolve_best_discount(
        data.seller_id, data.order_total, data.product_ids,
    )
    if resolution is None:
        return {"applicable": False, "discount_amount": "0.00"}
    return resolution.to_dict()


@router.get("", response_model=List[FlashSaleResponse])
async def list_flash_sales(
    seller_id: int = Depends(require_seller),
    session: AsyncSession = Depends(get_session),
):
    sales = await FlashSaleService(session).list_sales(seller_id)
    return [FlashSaleResponse.model_validate(s) for s in sales]


@router.post("", response_model=FlashSaleResponse, status_code=201)
async def create_flash_sale(
    data: FlashSaleCreate,
    seller_id: int = Depends(require_seller),
    session: AsyncSession = Depends(get_session),
):
    try:
        sale = await FlashSaleService(session).create_sale(seller_id, **data.model_dump())
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return FlashSaleResponse.model_validate(sale)


@router.put("/{sale_id}", response_model=FlashSaleResponse)
async def update_flash_sale(
    sale_id: int,
    data: FlashSaleUpdate,
    seller_id: int = Depends(require_seller),
    session: AsyncSession = Depends(get_session),
):
    """Partial update: only the fields sent are changed."""
    try:
        sale = await FlashSaleService(session).update_sale(sale_id, seller_id, data.model_dump(exclude_unset=True))
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return FlashSaleResponse.model_validate(sale)


@router.delete("/{sale_id}")
async def delete_flash_sale(
    sale_id: int,
    seller_id: int = Depends(require_seller),
    session: AsyncSession = Depends(get_session),
):
    """Orders that used the sale keep it: such a sale is deactivated rather than deleted."""
    try:
        deleted = await FlashSaleService(session).delete_sale(sale_id, seller_id)
        await session.commit()
    except ServiceError:
        await session.rollback()
        raise
    return {"success": True, "deleted": deleted}
