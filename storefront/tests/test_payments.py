"""
Unit tests for PaymentService.

Tests cover:
- Payable amount (subtotal, legacy message totals, minimum charge)
- Payment creation per method, request validation, duplicate detection
- Seller confirmation of cash / bank transfer payments
- Status transitions, terminal states and history rows
- M-Pesa sandbox flow and webhook processing
- Provider failures
- Revenue recorded exactly once per completed payment
- Conditional writes: a stale read loses with ConflictError

M-Pesa runs in sandbox mode or is mocked; no external network calls.
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.exceptions import (
    AlreadyConfirmedError,
    ConflictError,
    DuplicatePaymentError,
    ForbiddenError,
    InvalidMethodError,
    InvalidRequestError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
)
from storefront.app.models.payment import Payment
from storefront.app.models.revenue import Revenue
from storefront.app.services.commissions import FeeSchedule
from storefront.app.services.mpesa import MpesaError, format_phone_number
from storefront.app.services.payment import PaymentService, PaymentRequest


async def _revenue_count(session: AsyncSession, payment_id: int) -> int:
    result = await session.execute(select(func.count(Revenue.id)).where(Revenue.payment_id == payment_id))
    return result.scalar()


# ============================================
# Amounts
# ============================================

class TestPayableAmount:
    @pytest.mark.asyncio
    async def test_subtotal_shipping_discount_converted(self, test_session, make_order, fees):
        order = await make_order(subtotal="10.00", shipping_cost="2.50")
        order.discount_amount = Decimal("1.00")

        assert PaymentService(test_session, fees).compute_payable_amount(order) == Decimal("736.00")

    @pytest.mark.asyncio
    async def test_legacy_message_total(self, test_session, make_order, fees):
        order = await make_order(subtotal=None, message="2x Capulana @ $12.50\nTotal: $25.00")

        assert PaymentService(test_session, fees).compute_payable_amount(order) == Decimal("1600.00")

    @pytest.mark.asyncio
    async def test_legacy_message_total_includes_shipping(self, test_session, make_order, fees):
        order = await make_order(subtotal=None, shipping_cost="5.00", message="2x Capulana $50\nTotal: $100.00")

        assert order.resolved_total == Decimal("105.00")
        assert PaymentService(test_session, fees).compute_payable_amount(order) == Decimal("6720.00")

    @pytest.mark.asyncio
    async def test_minimum_charge(self, test_session, make_order, fees):
        order = await make_order(subtotal="0.01")

        assert PaymentService(test_session, fees).compute_payable_amount(order) == Decimal("1.00")

    @pytest.mark.asyncio
    async def test_no_total_rejected(self, test_session, make_order, fees):
        order = await make_order(subtotal=None, message="call me")

        with pytest.raises(InvalidRequestError):
            PaymentService(test_session, fees).compute_payable_amount(order)


def test_format_phone_number():
    assert format_phone_number("84 123 4567") == "258841234567"
    assert format_phone_number("+258 84 123 4567") == "258841234567"


# ============================================
# Creation
# ============================================

@pytest.mark.asyncio
async def test_create_cash_on_delivery(test_session: AsyncSession, make_order, fees):
    order = await make_order(subtotal="100.00")

    result = await PaymentService(test_session, fees).create_payment(
        PaymentRequest(order_id=order.id, method="cash_on_delivery")
    )
    await test_session.commit()

    payment = result.payment
    assert payment.status == "pending"
    assert payment.amount == Decimal("6400.00")
    assert payment.currency == "MZN"
    assert payment.payment_metadata["delivery_required"] is True
    assert "collected on delivery" in result.instructions


@pytest.mark.asyncio
async def test_create_bank_transfer_uses_seller_details(test_session: AsyncSession, make_order, fees):
    order = await make_order(subtotal="10.00")

    result = await PaymentService(test_session, fees).create_payment(
        PaymentRequest(order_id=order.id, method="bank_transfer")
    )

    assert "Account Number: 0001234567" in result.instructions
    assert f"Reference: Order #{order.id}" in result.instructions
    assert "Amount: 640.00 MZN" in result.instructions


@pytest.mark.asyncio
async def test_invalid_method(test_session: AsyncSession, make_order, fees):
    order = await make_order()

    with pytest.raises(InvalidMethodError):
        await PaymentService(test_session, fees).create_payment(PaymentRequest(order_id=order.id, method="card"))


@pytest.mark.asyncio
@pytest.mark.parametrize("provider,phone", [(None, "841234567"), ("vodacom", None), ("mcel", "841234567")])
async def test_mpesa_requires_provider_and_phone(test_session: AsyncSession, make_order, fees, provider, phone):
    order = await make_order()

    with pytest.raises(InvalidRequestError):
        await PaymentService(test_session, fees).create_payment(
            PaymentRequest(order_id=order.id, method="mpesa", provider=provider, customer_phone=phone)
        )


@pytest.mark.asyncio
async def test_order_not_found(test_session: AsyncSession, test_seller, fees):
    with pytest.raises(NotFoundError):
        await PaymentService(test_session, fees).create_payment(PaymentRequest(order_id=999, method="cash_on_delivery"))


@pytest.mark.asyncio
async def test_cancelled_order_rejected(test_session: AsyncSession, make_order, fees):
    order = await make_order()
    order.status = "cancelled"
    await test_session.commit()

    with pytest.raises(InvalidStateError):
        await PaymentService(test_session, fees).create_payment(
            PaymentRequest(order_id=order.id, method="cash_on_delivery")
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["processing", "completed"])
async def test_duplicate_payment(test_session: AsyncSession, make_order, make_payment, fees, status):
    order = await make_order()
    await make_payment(order, status=status)

    with pytest.raises(DuplicatePaymentError):
        await PaymentService(test_session, fees).create_payment(
            PaymentRequest(order_id=order.id, method="cash_on_delivery")
        )


@pytest.mark.asyncio
async def test_paid_then_cancelled_order_reports_duplicate(test_session: AsyncSession, make_order, make_payment, fees):
    order = await make_order()
    await make_payment(order, status="completed")
    order.status = "cancelled"
    await test_session.commit()

    with pytest.raises(DuplicatePaymentError):
        await PaymentService(test_session, fees).create_payment(
            PaymentRequest(order_id=order.id, method="cash_on_delivery")
        )


@pytest.mark.asyncio
async def test_new_attempt_supersedes_pending(test_session: AsyncSession, make_order, make_payment, fees):
    order = await make_order()
    old = await make_payment(order, status="pending")

    result = await PaymentService(test_session, fees).create_payment(
        PaymentRequest(order_id=order.id, method="bank_transfer")
    )
    await test_session.commit()

    await test_session.refresh(old)
    assert old.status == "cancelled"
    assert result.payment.id != old.id
    assert result.payment.status == "pending"


# ============================================
# Confirmation
# ============================================

class TestConfirm:
    @pytest.mark.asyncio
    async def test_confirm_twice(self, test_session: AsyncSession, make_order, make_payment, test_seller, fees):
        order = await make_order()
        payment = await make_payment(order, status="pending", method="bank_transfer")
        service = PaymentService(test_session, fees)

        result = await service.confirm_payment(payment.id, test_seller.id, notes="Seen on statement")
        await test_session.commit()

        assert result.payment.status == "completed"
        assert result.payment.payment_metadata["manual_confirmation"] is True
        assert result.payment.payment_metadata["confirmed_by_seller"] == test_seller.id

        with pytest.raises(AlreadyConfirmedError):
            await service.confirm_payment(payment.id, test_seller.id)

    @pytest.mark.asyncio
    async def test_other_seller_forbidden(self, test_session: AsyncSession, make_order, make_payment, other_seller, fees):
        order = await make_order()
        payment = await make_payment(order, status="pending")

        with pytest.raises(ForbiddenError):
            await PaymentService(test_session, fees).confirm_payment(payment.id, other_seller.id)

    @pytest.mark.asyncio
    async def test_processing_payment_cannot_be_confirmed(
        self, test_session: AsyncSession, make_order, make_payment, test_seller, fees,
    ):
        order = await make_order()
        payment = await make_payment(order, status="processing", method="mpesa", provider="vodacom")

        with pytest.raises(InvalidStateError):
            await PaymentService(test_session, fees).confirm_payment(payment.id, test_seller.id)


# ============================================
# Transitions and revenue
# ============================================

@pytest.mark.asyncio
async def test_completion_records_revenue_once(test_session: AsyncSession, make_order, make_payment, fees):
    order = await make_order()
    payment = await make_payment(order, status="pending", amount="1000.00", fees="10.00")
    service = PaymentService(test_session, fees)

    await service.update_payment_status(payment.id, "completed", note="Collected")
    await test_session.commit()

    revenue = await test_session.scalar(select(Revenue).where(Revenue.payment_id == payment.id))
    assert revenue.gross_amount == Decimal("1000.00")
    assert revenue.platform_fee_amount == Decimal("25.00")
    assert revenue.payment_fee_amount == Decimal("10.00")
    assert revenue.net_amount == Decimal("965.00")

    with pytest.raises(InvalidTransitionError):
        await service.update_payment_status(payment.id, "completed")
    assert await _revenue_count(test_session, payment.id) == 1


@pytest.mark.asyncio
async def test_seller_fee_override(test_session: AsyncSession, make_order, make_payment, test_seller, fees):
    test_seller.platform_fee_percent = Decimal("5")
    await test_session.commit()
    order = await make_order()
    payment = await make_payment(order, status="pending", amount="200.00")

    await PaymentService(test_session, fees).update_payment_status(payment.id, "completed")

    revenue = await test_session.scalar(select(Revenue).where(Revenue.payment_id == payment.id))
    assert revenue.platform_fee_amount == Decimal("10.00")
    assert revenue.net_amount == Decimal("190.00")


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", ["completed", "failed", "cancelled"])
async def test_terminal_payment_is_final(test_session: AsyncSession, make_order, make_payment, fees, terminal):
    order = await make_order()
    payment = await make_payment(order, status=terminal)

    with pytest.raises(InvalidTransitionError):
        await PaymentService(test_session, fees).update_payment_status(payment.id, "processing")


@pytest.mark.asyncio
async def test_status_history_written(test_session: AsyncSession, make_order, make_payment, fees):
    order = await make_order()
    payment = await make_payment(order, status="pending")
    service = PaymentService(test_session, fees)

    await service.update_payment_status(payment.id, "processing", actor="admin")
    await service.update_payment_status(payment.id, "failed", note="Timed out")

    history = await service.get_status_history(payment.id)
    assert [(h.previous_status, h.status) for h in history] == [("pending", "processing"), ("processing", "failed")]
    assert history[0].created_by == "admin"
    assert history[1].reason == "Timed out"


@pytest.mark.asyncio
async def test_stale_payment_raises_conflict(test_session: AsyncSession, make_order, make_payment, fees):
    order = await make_order()
    payment = await make_payment(order, status="pending")
    service = PaymentService(test_session, fees)
    # Another writer cancels the payment after it was read
    await test_session.execute(
        update(Payment)
        .where(Payment.id == payment.id)
        .values(status="cancelled")
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(ConflictError):
        await service._transition(payment, "completed")

    await test_session.refresh(payment)
    assert payment.status == "cancelled"
    assert await service.get_status_history(payment.id) == []
    assert await _revenue_count(test_session, payment.id) == 0


@pytest.mark.asyncio
async def test_unknown_status_rejected(test_session: AsyncSession, make_order, make_payment, fees):
    order = await make_order()
    payment = await make_payment(order)

    with pytest.raises(InvalidRequestError):
        await PaymentService(test_session, fees).update_payment_status(payment.id, "refunded")


# ============================================
# M-Pesa
# ============================================

@pytest.mark.asyncio
async def test_mpesa_sandbox_then_webhook(test_session: AsyncSession, make_order, fees):
    order = await make_order(subtotal="10.00")
    service = PaymentService(test_session, fees)

    result = await service.create_payment(PaymentRequest(
        order_id=order.id, method="mpesa", provider="vodacom", customer_phone="841234567",
    ))
    await test_session.commit()

    payment = result.payment
    assert payment.status == "processing"
    assert payment.external_id.startswith("MOCK_TXN_")
    assert payment.external_reference.startswith(f"STORE_{payment.id}_")
    assert "*150*00#" in result.instructions

    payload = {
        "input_TransactionReference": payment.external_reference,
        "output_ResponseCode": "INS-0",
        "output_ResponseDesc": "Request processed successfully",
        "output_TransactionID": payment.external_id,
    }
    webhook = await service.process_webhook(payload, "vodacom")
    await test_session.commit()

    assert webhook.status == "completed"
    assert webhook.ignored is False
    assert webhook.payment.confirmation_code == payment.external_id
    assert await _revenue_count(test_session, payment.id) == 1

    again = await service.process_webhook(payload, "vodacom")
    assert again.ignored is True
    assert again.status == "completed"
    assert await _revenue_count(test_session, payment.id) == 1


@pytest.mark.asyncio
async def test_webhook_failure_code(test_session: AsyncSession, make_order, make_payment, fees):
    order = await make_order()
    payment = await make_payment(order, status="processing", method="mpesa", provider="movitel", external_id="TXN_1_1")

    result = await PaymentService(test_session, fees).process_webhook(
        {"input_ThirdPartyConversationID": "TXN_1_1", "output_ResponseCode": "INS-2006"}, "movitel",
    )

    assert result.status == "failed"
    assert result.payment.failed_at is not None


@pytest.mark.asyncio
async def test_webhook_unknown_payment(test_session: AsyncSession, test_seller, fees):
    with pytest.raises(NotFoundError):
        await PaymentService(test_session, fees).process_webhook(
            {"input_TransactionReference": "STORE_404_1", "output_ResponseCode": "INS-0"}, "vodacom",
        )


@pytest.mark.asyncio
async def test_late_success_for_cancelled_payment_flags_refund(
    test_session: AsyncSession, make_order, make_payment, fees,
):
    order = await make_order()
    payment = await make_payment(
        order, status="cancelled", method="mpesa", provider="vodacom", external_reference="STORE_9_1",
    )

    result = await PaymentService(test_session, fees).process_webhook(
        {"input_TransactionReference": "STORE_9_1", "output_ResponseCode": "INS-0"}, "vodacom",
    )

    assert result.ignored is True
    assert result.refund_required is True
    assert result.payment.payment_metadata["refund_required"] is True
    assert await _revenue_count(test_session, payment.id) == 0


@pytest.mark.asyncio
async def test_provider_failure_marks_payment_failed(test_session: AsyncSession, make_order, fees):
    order = await make_order()
    mpesa = MagicMock()
    mpesa.initiate_c2b = AsyncMock(side_effect=MpesaError("M-Pesa payment failed: Insufficient balance"))
    service = PaymentService(test_session, fees, mpesa=mpesa)

    with pytest.raises(ProviderError):
        await service.create_payment(PaymentRequest(
            order_id=order.id, method="mpesa", provider="vodacom", customer_phone="841234567",
        ))
    await test_session.commit()

    payment = await service.get_payment_by_order(order.id)
    assert payment.status == "failed"
    history = await service.get_status_history(payment.id)
    assert [h.status for h in history] == ["pending", "processing", "failed"]


# ============================================
# Reporting
# ============================================

@pytest.mark.asyncio
async def test_revenue_summary(test_session: AsyncSession, make_order, make_payment, test_seller):
    fees = FeeSchedule(platform_fee_percent=Decimal("10"), payment_fee_percent={})
    service = PaymentService(test_session, fees)
    first = await make_payment(await make_order(), status="pending", amount="100.00")
    await make_payment(await make_order(), status="pending", amount="50.00")
    await service.update_payment_status(first.id, "completed")
    await test_session.commit()

    summary = await service.get_revenue_summary(test_seller.id)

    assert summary["total_payments"] == 2
    assert summary["completed_payments"] == 1
    assert summary["pending_payments"] == 1
    assert summary["total_amount"] == Decimal("150.00")
    assert summary["confirmed_amount"] == Decimal("100.00")
    assert summary["platform_fees"] == Decimal("10.00")
    assert summary["net_revenue"] == Decimal("90.00")
    assert summary["pending_settlement"] == Decimal("90.00")
