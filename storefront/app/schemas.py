from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from decimal import Decimal
from datetime import datetime


# --- Orders ---
class ShippingAddress(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: str
    city: str
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str


class OrderCreate(BaseModel):
    seller_id: int
    customer_name: str = Field(min_length=1, max_length=256)
    customer_contact: str = Field(min_length=1, max_length=512)
    subtotal: Optional[Decimal] = Field(default=None, ge=0)
    message: str = ""
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    product_ids: List[int] = []
    item_id: Optional[int] = None
    customer_id: Optional[int] = None
    shipping_address: Optional[ShippingAddress] = None
    apply_discount: bool = True


class OrderResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    reference: str
    seller_id: int
    customer_id: Optional[int] = None
    item_id: Optional[int] = None
    customer_name: str
    customer_contact: str
    message: str
    subtotal: Optional[Decimal] = None
    status: str
    status_history: List[Dict[str, Any]]
    notes: str
    cancel_reason: Optional[str] = None
    refund_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    shipping_cost: Decimal
    discount_amount: Decimal
    flash_sale_id: Optional[int] = None
    resolved_total: Decimal
    tracking_number: str
    estimated_delivery: Optional[datetime] = None
    shipping_address: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class OrderStatusUpdate(BaseModel):
    status: str
    note: Optional[str] = None
    cancel_reason: Optional[str] = None
    refund_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None

    def reason_fields(self) -> Dict[str, Any]:
        return {
            k: v
            for k, v in (
                ("cancel_reason", self.cancel_reason),
                ("refund_reason", self.refund_reason),
                ("refund_amount", self.refund_amount),
            )
            if v is not None
        }


class OrderTransitionResponse(BaseModel):
    order: OrderResponse
    previous_status: str
    changed: bool


class ShippingUpdate(BaseModel):
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    status: Optional[str] = None


# Kind checks ("refund" vs "cancel", required note/reason) live in the service
class RefundRequest(BaseModel):
    type: str
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    note: Optional[str] = None


# --- Payments ---
class PaymentInitiate(BaseModel):
    order_id: int
    method: str
    provider: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_id: Optional[int] = None
    metadata: Dict[str, Any] = {}


class PaymentResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    order_id: int
    seller_id: int
    method: str
    provider: Optional[str] = None
    status: str
    amount: Decimal
    fees: Decimal
    currency: str
    external_id: Optional[str] = None
    external_reference: Optional[str] = None
    confirmation_code: Optional[str] = None
    instructions: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="payment_metadata")
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime


class PaymentStatusUpdate(BaseModel):
    payment_id: int
    status: str
    note: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    confirmation_code: Optional[str] = None


class PaymentConfirm(BaseModel):
    payment_id: int
    notes: Optional[str] = None
    external_transaction_id: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    payment_id: int
    status: str
    ignored: bool
    refund_required: bool


# --- Flash sales ---
class FlashSaleValidate(BaseModel):
    seller_id: int
    order_total: Decimal = Field(ge=0)
    product_ids: List[int] = []


# Business rules (start < end, positive value, percentage <= 100) live in the service
class FlashSaleCreate(BaseModel):
    name: str
    discount_value: Decimal
    start_time: datetime
    end_time: datetime
    discount_type: str = "percentage"
    description: str = ""
    max_discount: Decimal = Decimal("0")
    min_order_amount: Decimal = Decimal("0")
    max_uses: int = -1
    product_ids: List[int] = []


class FlashSaleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    min_order_amount: Optional[Decimal] = None
    max_uses: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    product_ids: Optional[List[int]] = None
    active: Optional[bool] = None


class FlashSaleResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    seller_id: int
    name: str
    description: str
    discount_type: str
    discount_value: Decimal
    max_discount: Decimal
    min_order_amount: Decimal
    max_uses: int
    used_count: int
    start_time: datetime
    end_time: datetime
    product_ids: List[int]
    active: bool
    created_at: datetime


# --- Settlements ---
class SettlementCreate(BaseModel):
    seller_id: int
    period_start: datetime
    period_end: datetime
    payment_method: Optional[str] = None
    notes: str = ""


class SettlementStatusUpdate(BaseModel):
    status: str
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class SettlementResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    seller_id: int
    period_start: datetime
    period_end: datetime
    gross_amount: Decimal
    platform_fees: Decimal
    payment_fees: Decimal
    net_amount: Decimal
    currency: str
    status: str
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_ids: List[int]
    notes: str
    processed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime


# --- Subscriptions ---
class SubscriptionRenew(BaseModel):
    plan: str
    period_months: int = Field(default=1, ge=1, le=24)


class SubscriptionResponse(BaseModel):
    model_config = {"from_attributes": True}

    seller_id: int
    plan: str
    status: str
    current_period_end: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class UsageResponse(BaseModel):
    seller_id: int
    plan: str
    orders: int
    orders_limit: int
    approaching_limit: bool
    limit_exceeded: bool
