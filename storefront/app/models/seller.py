from sqlalchemy import String, Text, Boolean, Integer, DateTime, Index, DECIMAL
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from storefront.app.core.base import Base
from storefront.app.core.time_utils import utcnow


class Seller(Base):
    __tablename__ = 'sellers'
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    # Billing plan: free / pro / business (downgraded to free when a grace period runs out)
    plan: Mapped[str] = mapped_column(String(20), default='free')
    # Per-seller platform fee override in percent (null = use GlobalSettings / configured default)
    platform_fee_percent: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(5, 2), nullable=True, default=None)
    # Bank transfer instructions shown to customers
    bank_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bank_account_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    bank_account_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bank_swift_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    bank_iban: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    bank_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_sellers_plan', 'plan'),
        Index('ix_sellers_is_blocked', 'is_blocked'),
    )
