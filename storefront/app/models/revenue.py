from sqlalchemy import Integer, String, ForeignKey, DateTime, DECIMAL, Text, Index, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from storefront.app.core.base import Base
from storefront.app.core.constants import ZERO
from storefront.app.core.time_utils import utcnow


class Revenue(Base):
    """Seller's share of one completed payment."""
    __tablename__ = 'revenues'
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey('payments.id'))
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id'))
    seller_id: Mapped[int] = mapped_column(ForeignKey('sellers.id'))
    gross_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2))
    platform_fee_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=ZERO)
    payment_fee_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=ZERO)
    net_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    settlement_status: Mapped[str] = mapped_column(String(20), default='pending')  # pending | settled
    settlement_id: Mapped[Optional[int]] = mapped_column(ForeignKey('settlements.id'), nullable=True)
    settlement_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    revenue_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('payment_id', name='uq_revenues_payment_id'),
        Index('ix_revenues_seller_status', 'seller_id', 'settlement_status'),
        Index('ix_revenues_settlement_id', 'settlement_id'),
        Index('ix_revenues_revenue_date', 'revenue_date'),
    )


class Settlement(Base):
    """Batched payout of revenue rows to a seller for [period_start, period_end)."""
    __tablename__ = 'settlements'
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey('sellers.id'))
    period_start: Mapped[datetime] = mapped_column(DateTime)
    period_end: Mapped[datetime] = mapped_column(DateTime)
    gross_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2))
    platform_fees: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=ZERO)
    payment_fees: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=ZERO)
    net_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default='pending')  # pending | processing | paid
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_ids: Mapped[List[int]] = mapped_column(JSON(), default=list)
    notes: Mapped[str] = mapped_column(Text, default='')
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_settlements_seller_id', 'seller_id'),
        Index('ix_settlements_status', 'status'),
        Index('ix_settlements_created_at', 'created_at'),
    )
