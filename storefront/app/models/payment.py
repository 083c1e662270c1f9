from sqlalchemy import Integer, String, ForeignKey, DateTime, DECIMAL, Text, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
from storefront.app.core.base import Base
from storefront.app.core.constants import ZERO
from storefront.app.core.time_utils import utcnow


class Payment(Base):
    __tablename__ = 'payments'
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id'))
    seller_id: Mapped[int] = mapped_column(ForeignKey('sellers.id'))
    customer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    method: Mapped[str] = mapped_column(String(32))  # mpesa | bank_transfer | cash_on_delivery
    provider: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # vodacom | movitel
    status: Mapped[str] = mapped_column(String(20), default='pending')
    amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2))
    fees: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=ZERO)  # processor fee
    currency: Mapped[str] = mapped_column(String(3))
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    confirmation_code: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payer_phone: Mapped[str] = mapped_column(String(50), default='')
    payer_name: Mapped[str] = mapped_column(String(255), default='')
    payer_email: Mapped[str] = mapped_column(String(255), default='')
    instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # "metadata" is reserved on declarative classes
    payment_metadata: Mapped[Dict[str, Any]] = mapped_column('metadata', JSON(), default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_payments_order_id', 'order_id'),
        Index('ix_payments_seller_id', 'seller_id'),
        Index('ix_payments_status', 'status'),
        Index('ix_payments_external_reference', 'external_reference'),
        Index('ix_payments_external_id', 'external_id'),
        Index('ix_payments_seller_status', 'seller_id', 'status'),
    )


class PaymentStatusHistory(Base):
    __tablename__ = 'payment_status_history'
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey('payments.id'))
    status: Mapped[str] = mapped_column(String(20))
    previous_status: Mapped[str] = mapped_column(String(20), default='')
    reason: Mapped[str] = mapped_column(Text, default='')
    created_by: Mapped[str] = mapped_column(String(64), default='system')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_payment_status_history_payment_id', 'payment_id'),
    )
