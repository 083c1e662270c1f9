"""
Tests for flash-sale discount resolution.

Tests cover:
- Percentage discounts with and without a cap
- Minimum order amount and product scoping
- Running-window and usage-cap filtering
- Best-of selection (first seen wins ties)
- Conditional usage recording
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.time_utils import utcnow
from storefront.app.models.flash_sale import FlashSale
from storefront.app.services.discounts import DiscountResolver, compute_discount, pick_best, has_uses_left


def _sale(**kwargs) -> FlashSale:
    values = dict(
        id=1,
        name="Sale",
        discount_type="percentage",
        discount_value=Decimal("10"),
        max_discount=Decimal("0"),
        min_order_amount=Decimal("0"),
        max_uses=-1,
        used_count=0,
        product_ids=[],
    )
    values.update(kwargs)
    return FlashSale(**values)


class TestComputeDiscount:
    def test_percentage_capped(self):
        sale = _sale(discount_value=Decimal("10"), max_discount=Decimal("80"))
        assert compute_discount(sale, Decimal("1000")) == Decimal("80.00")

    def test_percentage_uncapped_when_cap_is_zero(self):
        sale = _sale(discount_value=Decimal("10"), max_discount=Decimal("0"))
        assert compute_discount(sale, Decimal("1000")) == Decimal("100.00")

    def test_below_minimum_order(self):
        sale = _sale(min_order_amount=Decimal("100"))
        assert compute_discount(sale, Decimal("50")) == Decimal("0")

    def test_fixed_discount_clamped_to_total(self):
        sale = _sale(discount_type="fixed", discount_value=Decimal("30"))
        assert compute_discount(sale, Decimal("20")) == Decimal("20.00")

    def test_rounds_half_up_to_cents(self):
        sale = _sale(discount_value=Decimal("12.5"))
        assert compute_discount(sale, Decimal("10.02")) == Decimal("1.25")

    def test_product_scope_requires_overlap(self):
        sale = _sale(product_ids=[7, 8])
        assert compute_discount(sale, Decimal("100"), [1, 2]) == Decimal("0")
        assert compute_discount(sale, Decimal("100"), [2, 8]) == Decimal("10.00")


class TestPickBest:
    def test_largest_discount_wins(self):
        small = _sale(id=1, name="small", discount_value=Decimal("5"))
        big = _sale(id=2, name="big", discount_type="fixed", discount_value=Decimal("30"))
        best = pick_best([small, big], Decimal("200"))
        assert best.flash_sale_id == 2
        assert best.discount_amount == Decimal("30.00")

    def test_tie_keeps_first_seen(self):
        first = _sale(id=1, name="first", discount_value=Decimal("10"))
        second = _sale(id=2, name="second", discount_type="fixed", discount_value=Decimal("10"))
        assert pick_best([first, second], Decimal("100")).flash_sale_id == 1

    def test_nothing_applicable(self):
        sale = _sale(min_order_amount=Decimal("100"))
        assert pick_best([sale], Decimal("50")) is None

    def test_uses_left(self):
        assert has_uses_left(_sale(max_uses=-1, used_count=1000))
        assert has_uses_left(_sale(max_uses=3, used_count=2))
        assert not has_uses_left(_sale(max_uses=3, used_count=3))


@pytest.mark.asyncio
async def test_resolve_best_discount_capped(test_session: AsyncSession, test_seller, make_flash_sale):
    """10% of 1000 with an 80 cap gives 80."""
    sale = await make_flash_sale(discount_value=Decimal("10"), max_discount=Decimal("80"))

    resolution = await DiscountResolver(test_session).resolve_best_discount(test_seller.id, Decimal("1000"))

    assert resolution is not None
    assert resolution.flash_sale_id == sale.id
    assert resolution.discount_amount == Decimal("80.00")
    assert resolution.to_dict()["discount_amount"] == "80.00"


@pytest.mark.asyncio
async def test_resolve_best_discount_minimum_not_met(test_session: AsyncSession, test_seller, make_flash_sale):
    await make_flash_sale(min_order_amount=Decimal("100"))

    resolution = await DiscountResolver(test_session).resolve_best_discount(test_seller.id, Decimal("50"))

    assert resolution is None


@pytest.mark.asyncio
async def test_running_sales_excludes_expired_inactive_and_exhausted(
    test_session: AsyncSession, test_seller, make_flash_sale,
):
    now = utcnow()
    running = await make_flash_sale(name="running")
    await make_flash_sale(name="expired", start_time=now - timedelta(days=2), end_time=now - timedelta(days=1))
    await make_flash_sale(name="future", start_time=now + timedelta(days=1), end_time=now + timedelta(days=2))
    await make_flash_sale(name="inactive", active=False)
    await make_flash_sale(name="exhausted", max_uses=2, used_count=2)

    sales = await DiscountResolver(test_session).get_running_sales(test_seller.id, now)

    assert [s.id for s in sales] == [running.id]


@pytest.mark.asyncio
async def test_window_bounds_are_inclusive(test_session: AsyncSession, test_seller, make_flash_sale):
    now = utcnow().replace(microsecond=0)
    sale = await make_flash_sale(start_time=now, end_time=now + timedelta(hours=1))
    resolver = DiscountResolver(test_session)

    assert [s.id for s in await resolver.get_running_sales(test_seller.id, now)] == [sale.id]
    assert [s.id for s in await resolver.get_running_sales(test_seller.id, now + timedelta(hours=1))] == [sale.id]


@pytest.mark.asyncio
async def test_other_sellers_sales_ignored(test_session: AsyncSession, test_seller, other_seller, make_flash_sale):
    await make_flash_sale(seller_id=other_seller.id)

    assert await DiscountResolver(test_session).resolve_best_discount(test_seller.id, Decimal("100")) is None


@pytest.mark.asyncio
async def test_record_usage_respects_cap(test_session: AsyncSession, make_flash_sale):
    sale = await make_flash_sale(max_uses=1)
    resolver = DiscountResolver(test_session)

    assert await resolver.record_usage(sale.id) is True
    assert await resolver.record_usage(sale.id) is False

    await test_session.refresh(sale)
    assert sale.used_count == 1


@pytest.mark.asyncio
async def test_order_creation_applies_discount(test_session: AsyncSession, make_order, make_flash_sale):
    sale = await make_flash_sale(discount_value=Decimal("10"), max_discount=Decimal("80"))

    order = await make_order(subtotal="1000.00", shipping_cost="15", apply_discount=True)

    assert order.flash_sale_id == sale.id
    assert order.discount_amount == Decimal("80.00")
    assert order.resolved_total == Decimal("935.00")
    await test_session.refresh(sale)
    assert sale.used_count == 1
