"""
Payment Processor: payment records for orders and their status transitions.

Supports three methods:
1. mpesa: mobile money (Vodacom / Movitel), moves to ``processing`` as soon
   as the provider accepts the request; completion arrives by webhook.
2. bank_transfer: stays ``pending`` with the seller's bank details; the
   seller confirms manually once the money arrives.
3. cash_on_delivery: stays ``pending`` until the seller confirms collection.

The amount is always recomputed from the order, never taken from the client.
Every status change is a conditional UPDATE on the prior status and writes a
``PaymentStatusHistory`` row; reaching ``completed`` records the seller's
revenue exactly once.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update, func, case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.constants import (
    PAYMENT_METHODS,
    MPESA_PROVIDERS,
    VALID_PAYMENT_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    ACTIVE_PAYMENT_STATUSES,
    PAYMENT_TRANSITIONS,
    CANCELLED_ORDER_STATUS,
    to_money,
)
from storefront.app.core.exceptions import (
    NotFoundError,
    InvalidRequestError,
    InvalidMethodError,
    InvalidTransitionError,
    DuplicatePaymentError,
    AlreadyConfirmedError,
    InvalidStateError,
    ForbiddenError,
    ConflictError,
    ProviderError,
)
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import payment_transitions_total, payment_webhooks_total
from storefront.app.core.time_utils import utcnow, to_naive_utc
from storefront.app.models.order import Order
from storefront.app.models.payment import Payment, PaymentStatusHistory
from storefront.app.models.revenue import Revenue
from storefront.app.models.seller import Seller
from storefront.app.services.commissions import FeeSchedule
from storefront.app.services.effects import Effect, event_effect
from storefront.app.services.mpesa import MpesaClient, MpesaError, SUCCESS_CODE
from storefront.app.services.settlement import RevenueService

logger = get_logger(__name__)


@dataclass
class PaymentRequest:
    order_id: int
    method: str
    provider: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentResult:
    payment: Payment
    effects: List[Effect] = field(default_factory=list)
    instructions: Optional[str] = None


@dataclass
class WebhookResult:
    payment: Payment
    status: str
    ignored: bool = False
    refund_required: bool = False
    effects: List[Effect] = field(default_factory=list)


def bank_transfer_instructions(seller: Optional[Seller], order_id: int, amount: Decimal, currency: str) -> str:
    if not seller or not seller.bank_account_number:
        return "Please contact the seller for bank transfer details."
    lines = [
        "Bank Transfer Instructions:",
        f"Bank: {seller.bank_name or ''}",
        f"Account Number: {seller.bank_account_number}",
        f"Account Name: {seller.bank_account_name or ''}",
    ]
    if seller.bank_swift_code:
        lines.append(f"SWIFT Code: {seller.bank_swift_code}")
    if seller.bank_iban:
        lines.append(f"IBAN: {seller.bank_iban}")
    lines += ["", f"Reference: Order #{order_id}", f"Amount: {amount} {currency}"]
    if seller.bank_instructions:
        lines += ["", seller.bank_instructions]
    return "\n".join(lines)


class PaymentService:
    """Creates payments and drives their status machine."""

    def __init__(
        self,
        session: AsyncSession,
        fees: Optional[FeeSchedule] = None,
        mpesa: Optional[MpesaClient] = None,
    ):
        self.session = session
        self.fees = fees or FeeSchedule.from_settings()
        self._mpesa = mpesa

    @property
    def mpesa(self) -> MpesaClient:
        if self._mpesa is None:
            self._mpesa = MpesaClient()
        return self._mpesa

    # -- Amounts -----------------------------------------------------------

    def compute_payable_amount(self, order: Order) -> Decimal:
        """
        Amount to charge in the settlement currency.

        Base is ``subtotal``; legacy orders without it fall back to the total
        parsed from their message.  Shipping is added, the discount removed,
        the result converted and floored at the minimum charge.
        """
        if order.base_total is None:
            raise InvalidRequestError(f"Order {order.id} has no payable total")
        return self.fees.convert(order.resolved_total)

    # -- Lookups -----------------------------------------------------------

    async def _load_payment(self, payment_id: int) -> Payment:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def get_payment(self, payment_id: int, seller_id: Optional[int] = None) -> Payment:
        payment = await self.session.get(Payment, payment_id)
        if not payment or (seller_id is not None and payment.seller_id != seller_id):
            raise NotFoundError("Payment", payment_id)
        return payment

    async def get_payment_by_order(self, order_id: int) -> Payment:
        """Most recent payment attempt for the order."""
        result = await self.session.execute(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.id.desc()).limit(1)
        )
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment for order", order_id)
        return payment

    async def get_seller_payments(self, seller_id: int, limit: int = 50, offset: int = 0) -> List[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.seller_id == seller_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_status_history(self, payment_id: int) -> List[PaymentStatusHistory]:
        result = await self.session.execute(
            select(PaymentStatusHistory)
            .where(PaymentStatusHistory.payment_id == payment_id)
            .order_by(PaymentStatusHistory.id)
        )
        return list(result.scalars().all())

    # -- Transitions -------------------------------------------------------

    def _add_history(self, payment_id: int, status: str, previous: str, reason: Optional[str], created_by: str, now: datetime) -> None:
        self.session.add(PaymentStatusHistory(
            payment_id=payment_id,
            status=status,
            previous_status=previous,
            reason=reason or "",
            created_by=created_by,
            created_at=now,
        ))

    async def _transition(
        self,
        payment: Payment,
        new_status: str,
        reason: Optional[str] = None,
        actor: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
        confirmation_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Effect]:
        previous = payment.status
        if previous in TERMINAL_PAYMENT_STATUSES or new_status not in PAYMENT_TRANSITIONS.get(previous, ()):
            raise InvalidTransitionError("Payment", payment.id, previous, new_status)

        now = now or utcnow()
        values: Dict[str, Any] = {"status": new_status, "updated_at": now}
        if new_status == "processing":
            values["processed_at"] = now
        elif new_status == "completed":
            values["completed_at"] = now
            if payment.processed_at is None:
                values["processed_at"] = now
        elif new_status == "failed":
            values["failed_at"] = now
        if metadata:
            values["payment_metadata"] = {**(payment.payment_metadata or {}), **metadata}
        if confirmation_code:
            values["confirmation_code"] = confirmation_code

        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == previous)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Payment", payment.id)
        await self.session.refresh(payment)

        self._add_history(payment.id, new_status, previous, reason, actor, now)
        await self.session.flush()
        payment_transitions_total.labels(method=payment.method, to_status=new_status).inc()

        if new_status == "completed":
            await RevenueService(self.session, self.fees).record_revenue(payment, now=now)

        logger.info(
            "Payment status changed",
            payment_id=payment.id,
            order_id=payment.order_id,
            from_status=previous,
            to_status=new_status,
            actor=actor,
        )
        return [event_effect(
            "payment:status",
            payment.seller_id,
            f"Payment {new_status} for order #{payment.order_id}",
            {
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "previous_status": previous,
                "status": new_status,
                "method": payment.method,
                "provider": payment.provider,
            },
        )]

    async def update_payment_status(
        self,
        payment_id: int,
        new_status: str,
        note: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        confirmation_code: Optional[str] = None,
        actor: str = "system",
        seller_id: Optional[int] = None,
    ) -> PaymentResult:
        """
        Move a payment to ``new_status``.
        Caller must commit the session and then dispatch ``result.effects``.

        Raises:
            InvalidRequestError: unknown status
            NotFoundError: payment missing (or owned by another seller)
            InvalidTransitionError: payment is terminal or the move is illegal
            ConflictError: a concurrent update won the race
        """
        if new_status not in VALID_PAYMENT_STATUSES:
            raise InvalidRequestError(
                f"Invalid status '{new_status}'. Must be one of: {list(VALID_PAYMENT_STATUSES)}"
            )
        payment = await self._load_payment(payment_id)
        if seller_id is not None and payment.seller_id != seller_id:
            raise NotFoundError("Payment", payment_id)

        effects = await self._transition(
            payment, new_status, note, actor, metadata=metadata, confirmation_code=confirmation_code,
        )
        return PaymentResult(payment=payment, effects=effects, instructions=payment.instructions)

    async def confirm_payment(
        self,
        payment_id: int,
        seller_id: int,
        notes: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
    ) -> PaymentResult:
        """Seller attests that cash or a bank transfer was received."""
        payment = await self._load_payment(payment_id)
        if payment.seller_id != seller_id:
            raise ForbiddenError(f"Payment {payment_id} does not belong to seller {seller_id}")
        if payment.status == "completed":
            raise AlreadyConfirmedError(payment_id)
        if payment.status != "pending":
            raise InvalidStateError(
                f"Payment {payment_id} is '{payment.status}', only pending payments can be confirmed"
            )

        metadata: Dict[str, Any] = {"manual_confirmation": True, "confirmed_by_seller": seller_id}
        if notes:
            metadata["confirmation_notes"] = notes
        effects = await self._transition(
            payment,
            "completed",
            notes or "Payment confirmed by seller",
            f"seller:{seller_id}",
            metadata=metadata,
            confirmation_code=external_transaction_id,
        )
        return PaymentResult(payment=payment, effects=effects, instructions=payment.instructions)

    async def cancel_active_payments(self, order_id: int, reason: str, actor: str = "system") -> List[Effect]:
        """Cancel every pending/processing payment of an order."""
        result = await self.session.execute(
            select(Payment)
            .where(Payment.order_id == order_id, Payment.status.in_(ACTIVE_PAYMENT_STATUSES))
            .order_by(Payment.id)
            .with_for_update()
        )
        effects: List[Effect] = []
        for payment in result.scalars().all():
            effects.extend(await self._transition(payment, "cancelled", reason, actor))
        return effects

    # -- Creation ----------------------------------------------------------

    def _validate_request(self, request: PaymentRequest) -> None:
        if request.method not in PAYMENT_METHODS:
            raise InvalidMethodError(request.method)
        if request.method == "mpesa":
            if request.provider not in MPESA_PROVIDERS:
                raise InvalidRequestError(
                    f"provider must be one of {list(MPESA_PROVIDERS)} for M-Pesa payments"
                )
            if not request.customer_phone or not request.customer_phone.strip():
                raise InvalidRequestError("customer_phone is required for M-Pesa payments")

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        """
        Start a payment for an order.

        Raises:
            InvalidMethodError: unknown method
            InvalidRequestError: missing provider/phone, or order has no total
            NotFoundError: order doesn't exist
            DuplicatePaymentError: order already has a processing/completed payment
            ProviderError: M-Pesa rejected the request; the payment is left
                ``failed`` and the caller should commit before re-raising
        """
        self._validate_request(request)

        result = await self.session.execute(
            select(Order).where(Order.id == request.order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundError("Order", request.order_id)

        existing = await self.session.execute(
            select(Payment)
            .where(Payment.order_id == order.id, Payment.status.in_(("processing", "completed", "pending")))
            .order_by(Payment.id)
            .with_for_update()
        )
        effects: List[Effect] = []
        stale_pending = []
        for p in existing.scalars().all():
            if p.status in ("processing", "completed"):
                raise DuplicatePaymentError(order.id, p.status)
            stale_pending.append(p)
        if order.status == CANCELLED_ORDER_STATUS:
            raise InvalidStateError(f"Order {order.id} is cancelled")
        # At most one active payment per order: a new attempt supersedes pending ones
        for p in stale_pending:
            effects.extend(await self._transition(p, "cancelled", "Superseded by a new payment attempt"))

        amount = self.compute_payable_amount(order)
        now = utcnow()
        payment = Payment(
            order_id=order.id,
            seller_id=order.seller_id,
            customer_id=request.customer_id if request.customer_id is not None else order.customer_id,
            method=request.method,
            provider=request.provider if request.method == "mpesa" else None,
            status="pending",
            amount=amount,
            fees=self.fees.payment_fee(request.method, amount),
            currency=self.fees.settlement_currency,
            payer_phone=request.customer_phone or "",
            payer_name=request.customer_name or order.customer_name or "",
            payer_email=request.customer_email or "",
            payment_metadata=dict(request.metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self.session.add(payment)
        await self.session.flush()
        self._add_history(payment.id, "pending", "", "Payment created", "system", now)

        logger.info(
            "Payment created",
            payment_id=payment.id,
            order_id=order.id,
            method=payment.method,
            amount=str(amount),
            currency=payment.currency,
        )

        if request.method == "mpesa":
            effects.extend(await self._start_mpesa(payment, request))
        elif request.method == "bank_transfer":
            seller = await self.session.get(Seller, order.seller_id)
            payment.instructions = bank_transfer_instructions(seller, order.id, amount, payment.currency)
            payment.payment_metadata = {**payment.payment_metadata, "bank_transfer": True}
        else:
            payment.instructions = (
                f"Payment will be collected on delivery. Amount: {amount} {payment.currency}"
            )
            payment.payment_metadata = {**payment.payment_metadata, "delivery_required": True}

        await self.session.flush()
        return PaymentResult(payment=payment, effects=effects, instructions=payment.instructions)

    async def _start_mpesa(self, payment: Payment, request: PaymentRequest) -> List[Effect]:
        effects = await self._transition(payment, "processing", "Initiating M-Pesa payment")

        stamp = int(time.time() * 1000)
        transaction_ref = f"STORE_{payment.id}_{stamp}"
        conversation_id = f"TXN_{payment.id}_{stamp}"
        try:
            response = await self.mpesa.initiate_c2b(
                request.provider,
                request.customer_phone,
                payment.amount,
                transaction_ref,
                conversation_id,
                f"Order {payment.order_id} payment",
            )
        except MpesaError as e:
            await self._transition(payment, "failed", f"M-Pesa error: {e}")
            raise ProviderError(str(e))

        transaction_id = response.get("output_TransactionID") or conversation_id
        payment.external_id = transaction_id
        payment.external_reference = transaction_ref
        payment.payment_metadata = {
            **(payment.payment_metadata or {}),
            "transaction_ref": transaction_ref,
            "conversation_id": conversation_id,
            "mpesa_response": response,
        }
        payment.instructions = (
            "Please complete the payment by dialing *150*00# and following the prompts. "
            f"Transaction ID: {transaction_id}"
        )
        return effects

    # -- Webhook -----------------------------------------------------------

    async def process_webhook(self, payload: Dict[str, Any], provider: str) -> WebhookResult:
        """
        Apply an M-Pesa callback.

        ``INS-0`` completes the payment, any other code fails it.  Callbacks
        for payments already in a terminal state are ignored.
        """
        if provider not in MPESA_PROVIDERS:
            raise InvalidRequestError(f"Unknown provider '{provider}'")

        payment = None
        reference = payload.get("input_TransactionReference")
        if reference:
            result = await self.session.execute(
                select(Payment.id).where(Payment.external_reference == reference).limit(1)
            )
            payment_id = result.scalar_one_or_none()
            if payment_id is not None:
                payment = await self._load_payment(payment_id)

        if payment is None:
            ids = [v for v in (payload.get("output_TransactionID"), payload.get("input_ThirdPartyConversationID")) if v]
            if ids:
                result = await self.session.execute(
                    select(Payment.id).where(Payment.external_id.in_(ids)).limit(1)
                )
                payment_id = result.scalar_one_or_none()
                if payment_id is not None:
                    payment = await self._load_payment(payment_id)

        if payment is None:
            logger.warning("Payment not found for webhook", provider=provider, reference=reference)
            raise NotFoundError("Payment", reference or payload.get("input_ThirdPartyConversationID"))

        succeeded = payload.get("output_ResponseCode") == SUCCESS_CODE
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            logger.info("Webhook ignored for terminal payment", payment_id=payment.id, status=payment.status)
            # Money was taken after the order (and its payment) got cancelled
            refund_required = payment.status == "cancelled" and succeeded
            if refund_required:
                payment.payment_metadata = {
                    **(payment.payment_metadata or {}),
                    "refund_required": True,
                    "webhook_data": payload,
                }
                await self.session.flush()
                logger.warning("Late payment for cancelled order", payment_id=payment.id, order_id=payment.order_id)
            payment_webhooks_total.labels(provider=provider, outcome="ignored").inc()
            return WebhookResult(payment=payment, status=payment.status, ignored=True, refund_required=refund_required)

        new_status = "completed" if succeeded else "failed"
        metadata: Dict[str, Any] = {"webhook_data": payload}

        order = await self.session.get(Order, payment.order_id)
        refund_required = bool(order and order.status == CANCELLED_ORDER_STATUS and new_status == "completed")
        if refund_required:
            metadata["refund_required"] = True
            logger.warning("Payment completed for cancelled order", payment_id=payment.id, order_id=payment.order_id)

        payment_webhooks_total.labels(provider=provider, outcome=new_status).inc()
        effects = await self._transition(
            payment,
            new_status,
            f"Webhook received: {payload.get('output_ResponseDesc') or 'Payment processed'}",
            "webhook",
            metadata=metadata,
            confirmation_code=payload.get("output_TransactionID"),
        )
        return WebhookResult(
            payment=payment,
            status=new_status,
            refund_required=refund_required,
            effects=effects,
        )

    # -- Reporting ---------------------------------------------------------

    async def get_revenue_summary(
        self,
        seller_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Payment and revenue totals for a seller, optionally limited to a created_at range."""
        conditions = [Payment.seller_id == seller_id]
        if start_date:
            conditions.append(Payment.created_at >= to_naive_utc(start_date))
        if end_date:
            conditions.append(Payment.created_at <= to_naive_utc(end_date))

        completed = Payment.status == "completed"
        result = await self.session.execute(
            select(
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.amount), 0),
                func.sum(case((completed, 1), else_=0)),
                func.coalesce(func.sum(case((completed, Payment.amount), else_=0)), 0),
                func.coalesce(func.sum(case((completed, Payment.fees), else_=0)), 0),
                func.sum(case((Payment.status.in_(ACTIVE_PAYMENT_STATUSES), 1), else_=0)),
            ).where(*conditions)
        )
        total_count, total_amount, completed_count, confirmed_amount, processor_fees, pending_count = result.one()

        rev_conditions = [Revenue.seller_id == seller_id]
        if start_date:
            rev_conditions.append(Revenue.revenue_date >= to_naive_utc(start_date))
        if end_date:
            rev_conditions.append(Revenue.revenue_date <= to_naive_utc(end_date))
        rev = await self.session.execute(
            select(
                func.coalesce(func.sum(Revenue.platform_fee_amount), 0),
                func.coalesce(func.sum(Revenue.net_amount), 0),
                func.coalesce(func.sum(case((Revenue.settlement_status == "settled", Revenue.net_amount), else_=0)), 0),
            ).where(*rev_conditions)
        )
        platform_fees, net_revenue, settled_revenue = rev.one()

        return {
            "seller_id": seller_id,
            "currency": self.fees.settlement_currency,
            "total_amount": to_money(total_amount),
            "confirmed_amount": to_money(confirmed_amount),
            "processor_fees": to_money(processor_fees),
            "platform_fees": to_money(platform_fees),
            "net_revenue": to_money(net_revenue),
            "settled_revenue": to_money(settled_revenue),
            "pending_settlement": to_money(net_revenue) - to_money(settled_revenue),
            "total_payments": int(total_count or 0),
            "completed_payments": int(completed_count or 0),
            "pending_payments": int(pending_count or 0),
        }
