from sqlalchemy import Integer, String, ForeignKey, DateTime, DECIMAL, Text, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from storefront.app.core.base import Base
from storefront.app.core.constants import ZERO, to_money
from storefront.app.core.item_parsing import parse_message_total
from storefront.app.core.time_utils import utcnow


class Order(Base):
    __tablename__ = 'orders'
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey('sellers.id'))
    customer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    customer_name: Mapped[str] = mapped_column(String(256))
    customer_contact: Mapped[str] = mapped_column(String(512))
    message: Mapped[str] = mapped_column(Text, default='')
    # Items total in store currency; null for legacy orders whose total lives in `message`
    subtotal: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(12, 2), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default='new')
    # Append-only [{"status": "...", "at": "ISO-8601", "note": "..."}]
    status_history: Mapped[List[Dict[str, Any]]] = mapped_column(JSON(), default=list)
    notes: Mapped[str] = mapped_column(Text, default='')
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(12, 2), nullable=True)
    shipping_cost: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=ZERO)
    discount_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=ZERO)
    flash_sale_id: Mapped[Optional[int]] = mapped_column(ForeignKey('flash_sales.id'), nullable=True)
    tracking_number: Mapped[str] = mapped_column(String(128), default='')
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Snapshot {name, email, phone, address, city, state?, postal_code?, country}
    shipping_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_orders_seller_id', 'seller_id'),
        Index('ix_orders_customer_id', 'customer_id'),
        Index('ix_orders_status', 'status'),
        Index('ix_orders_created_at', 'created_at'),
        Index('ix_orders_seller_status', 'seller_id', 'status'),
    )

    @property
    def reference(self) -> str:
        return f"ORD-{self.id}"

    @property
    def base_total(self) -> Optional[Decimal]:
        """Items total: ``subtotal``, or the amount parsed from a legacy message. None when neither exists."""
        if self.subtotal is not None:
            return self.subtotal
        return parse_message_total(self.message)

    @property
    def resolved_total(self) -> Decimal:
        """base + shipping - discount in store currency, never negative."""
        total = to_money(self.base_total) + to_money(self.shipping_cost) - to_money(self.discount_amount)
        return max(total, to_money(ZERO))
