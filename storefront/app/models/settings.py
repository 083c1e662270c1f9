from decimal import Decimal
from typing import Optional
from sqlalchemy import DECIMAL, Integer
from sqlalchemy.orm import Mapped, mapped_column
from storefront.app.core.base import Base


class GlobalSettings(Base):
    """Platform-wide settings row editable by admins (single row, lowest id wins)."""
    __tablename__ = 'settings'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    platform_fee_percent: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(5, 2), nullable=True)
    platform_fee_fixed: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(10, 2), nullable=True)
