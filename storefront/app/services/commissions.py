from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from storefront.app.core.constants import ZERO, ONE_CENT, PERCENT_BASE, to_money
from storefront.app.core.settings import Settings, get_settings
from storefront.app.models.settings import GlobalSettings
from storefront.app.models.seller import Seller


@dataclass(frozen=True)
class FeeSchedule:
    """
    Money constants used by the payment processor and the settlement engine.

    Built once from settings and passed into service constructors so tests
    can substitute deterministic rates.
    """
    exchange_rate: Decimal = Decimal("64")
    minimum_charge: Decimal = Decimal("1")
    store_currency: str = "USD"
    settlement_currency: str = "MZN"
    platform_fee_percent: Decimal = Decimal("2.5")
    platform_fee_fixed: Decimal = ZERO
    payment_fee_percent: Dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "FeeSchedule":
        settings = settings or get_settings()
        return cls(
            exchange_rate=settings.EXCHANGE_RATE,
            minimum_charge=settings.MINIMUM_CHARGE,
            store_currency=settings.STORE_CURRENCY,
            settlement_currency=settings.SETTLEMENT_CURRENCY,
            platform_fee_percent=settings.PLATFORM_FEE_PERCENT,
            platform_fee_fixed=settings.PLATFORM_FEE_FIXED,
            payment_fee_percent={
                "mpesa": settings.MPESA_FEE_PERCENT,
                "bank_transfer": settings.BANK_TRANSFER_FEE_PERCENT,
                "cash_on_delivery": settings.CASH_ON_DELIVERY_FEE_PERCENT,
            },
        )

    def with_platform_fee(self, percent: Decimal, fixed: Optional[Decimal] = None) -> "FeeSchedule":
        return replace(
            self,
            platform_fee_percent=percent,
            platform_fee_fixed=self.platform_fee_fixed if fixed is None else fixed,
        )

    def convert(self, store_amount: Decimal) -> Decimal:
        """Store currency -> settlement currency, rounded to cents and floored at the minimum charge."""
        converted = (Decimal(store_amount) * self.exchange_rate).quantize(ONE_CENT, rounding=ROUND_HALF_UP)
        return max(converted, to_money(self.minimum_charge))

    def platform_fee(self, gross: Decimal) -> Decimal:
        fee = Decimal(gross) * self.platform_fee_percent / PERCENT_BASE + self.platform_fee_fixed
        return min(to_money(fee), to_money(gross))

    def payment_fee(self, method: str, gross: Decimal) -> Decimal:
        percent = self.payment_fee_percent.get(method, ZERO)
        return min(to_money(Decimal(gross) * percent / PERCENT_BASE), to_money(gross))


async def get_effective_platform_fee_percent(
    session: AsyncSession,
    fees: FeeSchedule,
    seller_id: Optional[int] = None,
) -> Decimal:
    """
    Effective platform fee percent.
    Priority: seller override > global settings row > configured default.
    """
    percent = fees.platform_fee_percent

    gs_result = await session.execute(select(GlobalSettings).order_by(GlobalSettings.id).limit(1))
    settings = gs_result.scalar_one_or_none()
    if settings and settings.platform_fee_percent is not None:
        percent = Decimal(settings.platform_fee_percent)

    if seller_id is not None:
        seller = await session.get(Seller, seller_id)
        if seller and seller.platform_fee_percent is not None:
            percent = Decimal(seller.platform_fee_percent)

    return percent


async def get_seller_fee_schedule(
    session: AsyncSession,
    fees: FeeSchedule,
    seller_id: int,
) -> FeeSchedule:
    """The schedule with the seller's effective platform fee applied."""
    percent = await get_effective_platform_fee_percent(session, fees, seller_id)
    return fees.with_platform_fee(percent)
