from sqlalchemy import Integer, String, ForeignKey, DateTime, DECIMAL, Text, Index, JSON, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from storefront.app.core.base import Base
from storefront.app.core.constants import ZERO
from storefront.app.core.time_utils import utcnow


class FlashSale(Base):
    __tablename__ = 'flash_sales'
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey('sellers.id'))
    name: Mapped[str] = mapped_column(String(256))
    description: Mapped[str] = mapped_column(Text, default='')
    discount_type: Mapped[str] = mapped_column(String(16), default='percentage')  # 'percentage' | 'fixed'
    discount_value: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))
    max_discount: Mapped[Decimal] = mapped_column(DECIMAL(10, 2), default=ZERO)  # 0 = no cap
    min_order_amount: Mapped[Decimal] = mapped_column(DECIMAL(10, 2), default=ZERO)
    max_uses: Mapped[int] = mapped_column(Integer, default=-1)  # -1 = unlimited
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    start_time: Mapped[datetime] = mapped_column(DateTime)
    end_time: Mapped[datetime] = mapped_column(DateTime)
    # Restricted product ids; empty = every product of the seller
    product_ids: Mapped[List[int]] = mapped_column(JSON(), default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_flash_sales_seller_active', 'seller_id', 'active'),
        Index('ix_flash_sales_window', 'start_time', 'end_time'),
    )
