from sqlalchemy import Integer, String, ForeignKey, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional
from storefront.app.core.base import Base
from storefront.app.core.time_utils import utcnow


class Subscription(Base):
    __tablename__ = 'subscriptions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey('sellers.id'), nullable=False)
    plan: Mapped[str] = mapped_column(String(20), default='free')
    status: Mapped[str] = mapped_column(String(20), default='active')  # active/past_due/canceled
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    grace_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    grace_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_subscriptions_seller_id', 'seller_id'),
        Index('ix_subscriptions_status', 'status'),
        Index('ix_subscriptions_grace_period_end', 'grace_period_end'),
    )
