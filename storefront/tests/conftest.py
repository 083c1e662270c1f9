"""
Test fixtures for the storefront service.

Provides:
- In-memory SQLite database for isolated testing
- Async test client with proper session management
- Test data factories for sellers, orders, flash sales and payments
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

# DB settings required by Settings validation (tests use SQLite in-memory)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
# Development mode for tests (disables ALLOWED_ORIGINS / CRON_SECRET requirement)
os.environ.setdefault("ENVIRONMENT", "development")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["MPESA_ENVIRONMENT"] = "sandbox"
os.environ.pop("CRON_SECRET", None)
os.environ.pop("EMAIL_API_URL", None)

from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, List

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.app.main import app
from storefront.app.api.deps import get_session, get_session_factory, get_dispatcher
from storefront.app.core.base import Base
from storefront.app.core.time_utils import utcnow
# Import every model so the tables are registered on Base.metadata
from storefront.app.models.seller import Seller
from storefront.app.models.settings import GlobalSettings  # noqa: F401
from storefront.app.models.order import Order
from storefront.app.models.flash_sale import FlashSale
from storefront.app.models.payment import Payment, PaymentStatusHistory  # noqa: F401
from storefront.app.models.revenue import Revenue, Settlement  # noqa: F401
from storefront.app.models.subscription import Subscription  # noqa: F401
from storefront.app.services.commissions import FeeSchedule
from storefront.app.services.effects import EffectDispatcher
from storefront.app.services.orders import OrderService


# Test database engine (SQLite in-memory, one shared connection)
test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class RecordingSink:
    """Notification sink that keeps every event it receives."""

    def __init__(self):
        self.events: List[dict] = []

    async def emit(self, event: dict) -> None:
        self.events.append(event)


class RecordingEmailSender:
    def __init__(self):
        self.sent: List[tuple] = []

    async def send_order_status_update(self, contact, order_reference, status, locale, tracking_url):
        self.sent.append((contact, order_reference, status, locale, tracking_url))


@pytest.fixture(scope="function")
async def test_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.
    Creates all tables before and drops after each test.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory():
    return TestSessionLocal


@pytest.fixture
def fees() -> FeeSchedule:
    """Deterministic money constants: 1 USD = 64 MZN, 2.5% platform fee, no processor fee."""
    return FeeSchedule(
        exchange_rate=Decimal("64"),
        minimum_charge=Decimal("1"),
        store_currency="USD",
        settlement_currency="MZN",
        platform_fee_percent=Decimal("2.5"),
        platform_fee_fixed=Decimal("0"),
        payment_fee_percent={},
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
async def client(
    test_session: AsyncSession,
    sink: RecordingSink,
    email_sender: RecordingEmailSender,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.

    Each request gets its own session so it never shares a transaction with
    the ``test_session`` used by fixtures.
    """
    async def override_get_session():
        async with TestSessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal
    app.dependency_overrides[get_dispatcher] = lambda: EffectDispatcher(sink, email_sender, max_attempts=1)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# --- Test Data Factories ---

@pytest.fixture
async def test_seller(test_session: AsyncSession) -> Seller:
    """Create a test seller with bank details."""
    seller = Seller(
        shop_name="Capulana House",
        slug="capulana-house",
        contact_email="owner@capulana.example",
        is_blocked=False,
        plan="free",
        bank_name="BCI",
        bank_account_number="0001234567",
        bank_account_name="Capulana House Lda",
    )
    test_session.add(seller)
    await test_session.commit()
    await test_session.refresh(seller)
    return seller


@pytest.fixture
async def other_seller(test_session: AsyncSession) -> Seller:
    seller = Seller(shop_name="Other Shop", slug="other-shop", plan="pro")
    test_session.add(seller)
    await test_session.commit()
    await test_session.refresh(seller)
    return seller


@pytest.fixture
def make_order(test_session: AsyncSession, test_seller: Seller):
    """Factory: place an order through OrderService and commit it."""
    async def _make(
        subtotal="100.00",
        seller_id=None,
        customer_contact="+258841234567",
        shipping_cost="0",
        apply_discount=False,
        **kwargs,
    ) -> Order:
        order = await OrderService(test_session).create_order(
            seller_id=seller_id or test_seller.id,
            customer_name="Ana Machava",
            customer_contact=customer_contact,
            subtotal=Decimal(subtotal) if subtotal is not None else None,
            shipping_cost=Decimal(shipping_cost),
            apply_discount=apply_discount,
            **kwargs,
        )
        await test_session.commit()
        return order

    return _make


@pytest.fixture
def make_flash_sale(test_session: AsyncSession, test_seller: Seller):
    """Factory: a flash sale running from an hour ago to an hour from now."""
    async def _make(**overrides) -> FlashSale:
        now = utcnow()
        values = dict(
            seller_id=test_seller.id,
            name="Weekend sale",
            discount_type="percentage",
            discount_value=Decimal("10"),
            max_discount=Decimal("0"),
            min_order_amount=Decimal("0"),
            max_uses=-1,
            used_count=0,
            start_time=now - timedelta(hours=1),
            end_time=now + timedelta(hours=1),
            product_ids=[],
            active=True,
        )
        values.update(overrides)
        sale = FlashSale(**values)
        test_session.add(sale)
        await test_session.commit()
        await test_session.refresh(sale)
        return sale

    return _make


@pytest.fixture
def make_payment(test_session: AsyncSession):
    """Factory: insert a payment row directly in the given status."""
    async def _make(order: Order, status="pending", method="cash_on_delivery", amount="6400.00", **kwargs) -> Payment:
        now = kwargs.pop("now", None) or utcnow()
        payment = Payment(
            order_id=order.id,
            seller_id=order.seller_id,
            method=method,
            provider=kwargs.pop("provider", None),
            status=status,
            amount=Decimal(amount),
            fees=Decimal(kwargs.pop("fees", "0")),
            currency="MZN",
            completed_at=now if status == "completed" else None,
            payment_metadata={},
            created_at=now,
            updated_at=now,
            **kwargs,
        )
        test_session.add(payment)
        await test_session.commit()
        await test_session.refresh(payment)
        return payment

    return _make

