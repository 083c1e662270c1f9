"""
Tests for the HTTP API.

Tests cover:
- Order creation, lookup, status updates and refunds
- Payment initiation, confirmation and webhooks
- Flash-sale preview
- Settlements (admin only) and the cron sweep endpoint
- Error body shape {"error", "code"}
- Health check
"""
import pytest
from decimal import Decimal
from httpx import AsyncClient

from storefront.app.core.settings import get_settings
from storefront.app.models.seller import Seller


def _seller_header(seller: Seller) -> dict:
    return {"X-Seller-Id": str(seller.id)}


async def _create_order(client: AsyncClient, seller: Seller, **overrides) -> dict:
    body = {
        "seller_id": seller.id,
        "customer_name": "Ana Machava",
        "customer_contact": "ana@example.com",
        "subtotal": "100.00",
        "shipping_cost": "5.00",
    }
    body.update(overrides)
    response = await client.post("/orders", json=body)
    assert response.status_code == 201, response.text
    return response.json()


# --- Orders ---

@pytest.mark.asyncio
async def test_create_order(client: AsyncClient, test_seller: Seller):
    data = await _create_order(client, test_seller)

    assert data["id"] > 0
    assert data["reference"] == f"ORD-{data['id']}"
    assert data["status"] == "new"
    assert Decimal(data["resolved_total"]) == Decimal("105.00")
    assert data["status_history"][0]["status"] == "new"
    assert data["status_history"][0]["at"].endswith("Z")


@pytest.mark.asyncio
async def test_create_order_applies_flash_sale(client: AsyncClient, test_seller: Seller, make_flash_sale):
    await make_flash_sale(discount_value=Decimal("10"), max_discount=Decimal("80"))

    data = await _create_order(client, test_seller, subtotal="1000.00", shipping_cost="0")

    assert Decimal(data["discount_amount"]) == Decimal("80.00")
    assert Decimal(data["resolved_total"]) == Decimal("920.00")


@pytest.mark.asyncio
async def test_create_order_unknown_seller(client: AsyncClient, test_seller: Seller):
    response = await client.post("/orders", json={
        "seller_id": 999,
        "customer_name": "Ana",
        "customer_contact": "ana@example.com",
        "subtotal": "10",
    })

    assert response.status_code == 404
    assert response.json() == {"error": "Seller 999 not found", "code": "not_found"}


@pytest.mark.asyncio
async def test_create_order_validation_error_shape(client: AsyncClient, test_seller: Seller):
    response = await client.post("/orders", json={"seller_id": test_seller.id, "subtotal": "-1"})

    assert response.status_code == 422
    assert response.json()["code"] == "invalid_request"
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_get_order_scoped_to_seller(client: AsyncClient, test_seller: Seller, other_seller: Seller):
    order = await _create_order(client, test_seller)

    own = await client.get(f"/orders/{order['id']}", headers=_seller_header(test_seller))
    foreign = await client.get(f"/orders/{order['id']}", headers=_seller_header(other_seller))

    assert own.status_code == 200
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_list_orders(client: AsyncClient, test_seller: Seller):
    await _create_order(client, test_seller)
    await _create_order(client, test_seller)

    response = await client.get("/orders", headers=_seller_header(test_seller))

    assert response.status_code == 200
    assert len(response.json()) == 2


@pytest.mark.asyncio
async def test_update_status_dispatches_effects(client: AsyncClient, test_seller: Seller, sink, email_sender):
    order = await _create_order(client, test_seller)

    response = await client.put(f"/orders/{order['id']}/status", json={"status": "shipped", "note": "DHL"})

    assert response.status_code == 200
    data = response.json()
    assert data["changed"] is True
    assert data["previous_status"] == "new"
    assert data["order"]["status"] == "shipped"
    # Admin actor: event + seller notification, plus the customer email
    assert [e["type"] for e in sink.events] == ["order:status", "notification"]
    assert email_sender.sent[0][:3] == ("ana@example.com", f"ORD-{order['id']}", "shipped")


@pytest.mark.asyncio
async def test_backward_transition_conflict(client: AsyncClient, test_seller: Seller):
    order = await _create_order(client, test_seller)
    await client.put(f"/orders/{order['id']}/status", json={"status": "shipped"})

    response = await client.put(f"/orders/{order['id']}/status", json={"status": "processing"})

    assert response.status_code == 409
    assert response.json()["code"] == "invalid_transition"


@pytest.mark.asyncio
async def test_cancel_with_refund_reason(client: AsyncClient, test_seller: Seller):
    order = await _create_order(client, test_seller)
    await client.put(f"/orders/{order['id']}/status", json={"status": "shipped"})

    response = await client.put(f"/orders/{order['id']}/status", json={
        "status": "cancelled",
        "refund_reason": "damaged",
        "refund_amount": "20",
    })

    assert response.status_code == 200
    data = response.json()["order"]
    assert data["status"] == "cancelled"
    assert Decimal(data["refund_amount"]) == Decimal("20.00")
    assert len(data["status_history"]) == 3


@pytest.mark.asyncio
async def test_refund_endpoint(client: AsyncClient, test_seller: Seller):
    order = await _create_order(client, test_seller)

    response = await client.post(f"/orders/{order['id']}/refund", json={
        "type": "refund", "amount": "30", "reason": "late", "note": "Goodwill",
    })

    assert response.status_code == 200
    assert response.json()["order"]["refund_reason"] == "late"


@pytest.mark.asyncio
async def test_refund_endpoint_requires_note(client: AsyncClient, test_seller: Seller):
    order = await _create_order(client, test_seller)

    response = await client.post(f"/orders/{order['id']}/refund", json={"type": "cancel", "reason": "late"})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


# --- Payments ---

@pytest.mark.asyncio
async def test_initiate_and_confirm_bank_transfer(client: AsyncClient, test_seller: Seller, other_seller: Seller):
    order = await _create_order(client, test_seller)

    created = await client.post("/payments/initiate", json={"order_id": order["id"], "method": "bank_transfer"})
    assert created.status_code == 201
    payment = created.json()
    assert payment["status"] == "pending"
    assert payment["currency"] == "MZN"
    assert "Account Number" in payment["instructions"]

    forbidden = await client.post(
        "/payments/confirm", json={"payment_id": payment["id"]}, headers=_seller_header(other_seller),
    )
    assert forbidden.status_code == 403

    confirmed = await client.post(
        "/payments/confirm", json={"payment_id": payment["id"], "notes": "Received"}, headers=_seller_header(test_seller),
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "completed"
    assert confirmed.json()["metadata"]["manual_confirmation"] is True

    again = await client.post(
        "/payments/confirm", json={"payment_id": payment["id"]}, headers=_seller_header(test_seller),
    )
    assert again.status_code == 409
    assert again.json()["code"] == "already_confirmed"

    summary = await client.get("/payments/revenue", headers=_seller_header(test_seller))
    assert summary.status_code == 200
    assert summary.json()["completed_payments"] == 1


@pytest.mark.asyncio
async def test_confirm_requires_seller_header(client: AsyncClient, test_seller: Seller):
    response = await client.post("/payments/confirm", json={"payment_id": 1})

    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"


@pytest.mark.asyncio
async def test_initiate_invalid_method(client: AsyncClient, test_seller: Seller):
    order = await _create_order(client, test_seller)

    response = await client.post("/payments/initiate", json={"order_id": order["id"], "method": "card"})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_method"


@pytest.mark.asyncio
async def test_mpesa_webhook_flow(client: AsyncClient, test_seller: Seller):
    order = await _create_order(client, test_seller)
    created = await client.post("/payments/initiate", json={
        "order_id": order["id"], "method": "mpesa", "provider": "vodacom", "customer_phone": "841234567",
    })
    payment = created.json()
    assert payment["status"] == "processing"

    payload = {
        "input_TransactionReference": payment["external_reference"],
        "output_ResponseCode": "INS-0",
        "output_TransactionID": payment["external_id"],
    }
    first = await client.post("/payments/webhook/vodacom", json=payload)
    second = await client.post("/payments/webhook/vodacom", json=payload)

    assert first.json() == {
        "success": True, "payment_id": payment["id"], "status": "completed", "ignored": False, "refund_required": False,
    }
    assert second.json()["ignored"] is True

    by_order = await client.get(f"/payments/order/{order['id']}", headers=_seller_header(test_seller))
    assert by_order.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_cancelling_order_cancels_pending_payment(client: AsyncClient, test_seller: Seller):
    order = await _create_order(client, test_seller)
    created = await client.post("/payments/initiate", json={"order_id": order["id"], "method": "cash_on_delivery"})

    await client.post(f"/orders/{order['id']}/refund", json={"type": "cancel", "reason": "stock", "note": "Sold out"})

    payment = await client.get(f"/payments/{created.json()['id']}")
    assert payment.json()["status"] == "cancelled"


# --- Flash sales ---

@pytest.mark.asyncio
async def test_flash_sale_validate(client: AsyncClient, test_seller: Seller, make_flash_sale):
    sale = await make_flash_sale(discount_value=Decimal("10"), max_discount=Decimal("80"))

    hit = await client.post("/flash-sales/validate", json={"seller_id": test_seller.id, "order_total": "1000"})
    miss = await client.post("/flash-sales/validate", json={"seller_id": test_seller.id, "order_total": "0"})

    assert hit.json() == {
        "applicable": True,
        "flash_sale_id": sale.id,
        "name": "Weekend sale",
        "discount_type": "percentage",
        "discount_amount": "80.00",
    }
    assert miss.json() == {"applicable": False, "discount_amount": "0.00"}


# --- Settlements / cron ---

@pytest.mark.asyncio
async def test_settlement_creation_admin_only(client: AsyncClient, test_seller: Seller):
    response = await client.post("/settlements", headers=_seller_header(test_seller), json={
        "seller_id": test_seller.id,
        "period_start": "2026-01-01T00:00:00Z",
        "period_end": "2026-01-02T00:00:00Z",
    })

    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


@pytest.mark.asyncio
async def test_settlement_without_revenue(client: AsyncClient, test_seller: Seller):
    response = await client.post("/settlements", json={
        "seller_id": test_seller.id,
        "period_start": "2026-01-01T00:00:00Z",
        "period_end": "2026-01-02T00:00:00Z",
    })

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


@pytest.mark.asyncio
async def test_cron_billing_check(client: AsyncClient, test_seller: Seller):
    response = await client.get("/cron/billing-check")

    assert response.status_code == 200
    data = response.json()
    assert data["sellers_checked"] == 1
    assert data["errors"] == []


@pytest.mark.asyncio
async def test_cron_secret_enforced(client: AsyncClient, test_seller: Seller, monkeypatch):
    monkeypatch.setattr(get_settings(), "CRON_SECRET", "s3cret")

    denied = await client.get("/cron/billing-check")
    allowed = await client.get("/cron/billing-check", headers={"Authorization": "Bearer s3cret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200


# --- Health ---

@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_request_id_echoed(client: AsyncClient):
    generated = await client.get("/health")
    supplied = await client.get("/health", headers={"X-Request-Id": "req-42"})

    assert generated.headers["X-Request-Id"]
    assert supplied.headers["X-Request-Id"] == "req-42"


@pytest.mark.asyncio
async def test_metrics_exposes_domain_counters(client: AsyncClient, test_seller: Seller):
    await _create_order(client, test_seller)

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "orders_created_total" in response.text
    assert "payment_webhooks_total" in response.text


def test_seconds_until_sweep():
    from datetime import datetime, timezone
    from storefront.app.main import seconds_until_sweep

    before = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)
    after = datetime(2026, 3, 1, 0, 5, tzinfo=timezone.utc)

    assert seconds_until_sweep(before, 0) == 300
    assert seconds_until_sweep(after, 0) == 24 * 3600


# --- Subscriptions ---

@pytest.mark.asyncio
async def test_usage_scoped_to_seller(client: AsyncClient, test_seller: Seller, other_seller: Seller):
    await _create_order(client, test_seller)

    own = await client.get(f"/subscriptions/{test_seller.id}/usage", headers=_seller_header(test_seller))
    foreign = await client.get(f"/subscriptions/{test_seller.id}/usage", headers=_seller_header(other_seller))

    assert own.status_code == 200
    assert own.json()["orders"] == 1
    assert own.json()["orders_limit"] == 50
    assert foreign.status_code == 403


@pytest.mark.asyncio
async def test_renew_subscription_admin_only(client: AsyncClient, test_seller: Seller):
    denied = await client.post(
        f"/subscriptions/{test_seller.id}/renew", json={"plan": "pro"}, headers=_seller_header(test_seller),
    )
    renewed = await client.post(f"/subscriptions/{test_seller.id}/renew", json={"plan": "pro", "period_months": 2})
    usage = await client.get(f"/subscriptions/{test_seller.id}/usage")

    assert denied.status_code == 403
    assert renewed.status_code == 200
    assert renewed.json()["status"] == "active"
    assert renewed.json()["plan"] == "pro"
    assert usage.json()["orders_limit"] == -1


@pytest.mark.asyncio
async def test_mark_past_due_starts_grace_period(client: AsyncClient, test_seller: Seller):
    missing = await client.post(f"/subscriptions/{test_seller.id}/past-due")
    await client.post(f"/subscriptions/{test_seller.id}/renew", json={"plan": "pro"})
    past_due = await client.post(f"/subscriptions/{test_seller.id}/past-due")

    assert missing.status_code == 404
    assert past_due.status_code == 200
    assert past_due.json()["status"] == "past_due"
    assert past_due.json()["grace_period_end"] is not None
    assert past_due.json()["plan"] == "pro"


# --- Shipping ---

@pytest.mark.asyncio
async def test_shipping_update_with_status(client: AsyncClient, test_seller: Seller, sink, email_sender):
    order = await _create_order(client, test_seller)

    response = await client.put(
        f"/orders/{order['id']}/shipping",
        json={"tracking_number": "MZ123456", "estimated_delivery": "2026-06-01T12:00:00Z", "status": "shipped"},
        headers=_seller_header(test_seller),
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["changed"] is True
    assert data["order"]["tracking_number"] == "MZ123456"
    assert data["order"]["estimated_delivery"].startswith("2026-06-01T12:00:00")
    assert data["order"]["status_history"][-1]["note"] == "Tracking number added: MZ123456"
    assert email_sender.sent[0][2] == "shipped"


@pytest.mark.asyncio
async def test_shipping_update_tracking_only(client: AsyncClient, test_seller: Seller, sink):
    order = await _create_order(client, test_seller)

    response = await client.put(
        f"/orders/{order['id']}/shipping", json={"tracking_number": "MZ1"}, headers=_seller_header(test_seller),
    )

    assert response.status_code == 200
    assert response.json()["changed"] is False
    assert response.json()["order"]["status"] == "new"
    assert sink.events == []


@pytest.mark.asyncio
async def test_shipping_update_errors(client: AsyncClient, test_seller: Seller, other_seller: Seller):
    order = await _create_order(client, test_seller)
    url = f"/orders/{order['id']}/shipping"
    await client.put(f"/orders/{order['id']}/status", json={"status": "delivered"})

    anonymous = await client.put(url, json={"tracking_number": "MZ1"})
    foreign = await client.put(url, json={"tracking_number": "MZ1"}, headers=_seller_header(other_seller))
    empty = await client.put(url, json={}, headers=_seller_header(test_seller))
    backward = await client.put(url, json={"status": "shipped"}, headers=_seller_header(test_seller))

    assert anonymous.status_code == 401
    assert foreign.status_code == 404
    assert empty.status_code == 400
    assert backward.status_code == 409
    assert backward.json()["code"] == "invalid_transition"
