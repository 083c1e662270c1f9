"""
Settlement Engine: seller revenue and periodic payouts.

* Each completed payment yields exactly one ``Revenue`` row
  (``net = gross - platform fee - payment fee``).
* Pending revenue rows of a seller are batched into a ``Settlement`` for a
  ``[period_start, period_end)`` window; they become ``settled`` only when
  the settlement is marked ``paid``.
* ``SettlementSweep`` is the daily job.  Every unit of work (one seller, one
  payment) runs in its own session so a failure only loses that unit.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable, Awaitable

from sqlalchemy import select, update, exists, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.constants import SETTLEMENT_TRANSITIONS, ZERO, to_money
from storefront.app.core.exceptions import (
    NotFoundError,
    InvalidRequestError,
    InvalidStateError,
    InvalidTransitionError,
    ConflictError,
)
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import (
    revenues_created_total,
    settlement_sweep_errors_total,
    settlement_sweep_duration_seconds,
)
from storefront.app.core.time_utils import utcnow, to_naive_utc, isoformat_z, previous_day_window
from storefront.app.models.payment import Payment
from storefront.app.models.revenue import Revenue, Settlement
from storefront.app.services.commissions import FeeSchedule, get_seller_fee_schedule
from storefront.app.services.effects import Effect
from storefront.app.services.subscription import SubscriptionService
from storefront.app.services.usage import UsageMeteringService

logger = get_logger(__name__)

VALID_SETTLEMENT_STATUSES = ("pending", "processing", "paid")


class RevenueService:
    """Revenue records and settlements."""

    def __init__(self, session: AsyncSession, fees: Optional[FeeSchedule] = None):
        self.session = session
        self.fees = fees or FeeSchedule.from_settings()

    async def get_revenue_for_payment(self, payment_id: int) -> Optional[Revenue]:
        result = await self.session.execute(select(Revenue).where(Revenue.payment_id == payment_id))
        return result.scalar_one_or_none()

    async def record_revenue(self, payment: Payment, now: Optional[datetime] = None) -> Revenue:
        """
        Revenue row for a completed payment; returns the existing row when
        one was already recorded.  The unique ``payment_id`` constraint backs
        the existence check against overlapping runs.
        """
        existing = await self.get_revenue_for_payment(payment.id)
        if existing:
            return existing
        if payment.status != "completed":
            raise InvalidStateError(f"Payment {payment.id} is '{payment.status}', not completed")

        fees = await get_seller_fee_schedule(self.session, self.fees, payment.seller_id)
        gross = to_money(payment.amount)
        platform_fee = fees.platform_fee(gross)
        payment_fee = min(to_money(payment.fees), gross - platform_fee)
        now = now or utcnow()

        revenue = Revenue(
            payment_id=payment.id,
            order_id=payment.order_id,
            seller_id=payment.seller_id,
            gross_amount=gross,
            platform_fee_amount=platform_fee,
            payment_fee_amount=payment_fee,
            net_amount=gross - platform_fee - payment_fee,
            currency=payment.currency,
            settlement_status="pending",
            revenue_date=payment.completed_at or now,
            created_at=now,
        )
        self.session.add(revenue)
        await self.session.flush()

        revenues_created_total.inc()
        logger.info(
            "Revenue recorded",
            payment_id=payment.id,
            seller_id=payment.seller_id,
            gross=str(gross),
            platform_fee=str(platform_fee),
            net=str(revenue.net_amount),
        )
        return revenue

    async def get_settlement(self, settlement_id: int, seller_id: Optional[int] = None) -> Settlement:
        settlement = await self.session.get(Settlement, settlement_id)
        if not settlement or (seller_id is not None and settlement.seller_id != seller_id):
            raise NotFoundError("Settlement", settlement_id)
        return settlement

    async def list_settlements(
        self,
        seller_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Settlement]:
        query = select(Settlement)
        if seller_id is not None:
            query = query.where(Settlement.seller_id == seller_id)
        if status:
            query = query.where(Settlement.status == status)
        query = query.order_by(Settlement.created_at.desc(), Settlement.id.desc()).limit(limit).offset(offset)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_settlement_revenues(self, settlement_id: int) -> List[Revenue]:
        result = await self.session.execute(
            select(Revenue).where(Revenue.settlement_id == settlement_id).order_by(Revenue.id)
        )
        return list(result.scalars().all())

    async def create_settlement(
        self,
        seller_id: int,
        period_start: datetime,
        period_end: datetime,
        payment_method: Optional[str] = None,
        notes: str = "",
    ) -> Settlement:
        """
        Batch the seller's pending, unbatched revenues with
        ``period_start <= revenue_date < period_end``.

        Raises:
            InvalidRequestError: empty/inverted window or nothing to settle
        """
        period_start = to_naive_utc(period_start)
        period_end = to_naive_utc(period_end)
        if period_start >= period_end:
            raise InvalidRequestError("period_start must be before period_end")

        result = await self.session.execute(
            select(Revenue)
            .where(
                Revenue.seller_id == seller_id,
                Revenue.settlement_status == "pending",
                Revenue.settlement_id.is_(None),
                Revenue.revenue_date >= period_start,
                Revenue.revenue_date < period_end,
            )
            .order_by(Revenue.id)
            .with_for_update()
        )
        revenues = list(result.scalars().all())
        if not revenues:
            raise InvalidRequestError(
                f"No pending revenue for seller {seller_id} between "
                f"{isoformat_z(period_start)} and {isoformat_z(period_end)}"
            )

        gross = sum((to_money(r.gross_amount) for r in revenues), to_money(ZERO))
        platform_fees = sum((to_money(r.platform_fee_amount) for r in revenues), to_money(ZERO))
        payment_fees = sum((to_money(r.payment_fee_amount) for r in revenues), to_money(ZERO))
        net = sum((to_money(r.net_amount) for r in revenues), to_money(ZERO))

        settlement = Settlement(
            seller_id=seller_id,
            period_start=period_start,
            period_end=period_end,
            gross_amount=gross,
            platform_fees=platform_fees,
            payment_fees=payment_fees,
            net_amount=net,
            currency=revenues[0].currency or self.fees.settlement_currency,
            status="pending",
            payment_method=payment_method,
            payment_ids=[r.payment_id for r in revenues],
            notes=notes or "",
            created_at=utcnow(),
        )
        self.session.add(settlement)
        await self.session.flush()

        # Claim the rows; a concurrent batch that got there first leaves rowcount short
        claimed = await self.session.execute(
            update(Revenue)
            .where(Revenue.id.in_([r.id for r in revenues]), Revenue.settlement_id.is_(None))
            .values(settlement_id=settlement.id)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != len(revenues):
            raise ConflictError("Settlement for seller", seller_id)
        for r in revenues:
            r.settlement_id = settlement.id

        logger.info(
            "Settlement created",
            settlement_id=settlement.id,
            seller_id=seller_id,
            revenues=len(revenues),
            net=str(net),
        )
        return settlement

    async def update_settlement_status(
        self,
        settlement_id: int,
        status: str,
        payment_reference: Optional[str] = None,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Settlement:
        """``pending -> processing -> paid`` (or straight to paid). Paying settles the revenues."""
        if status not in VALID_SETTLEMENT_STATUSES:
            raise InvalidRequestError(
                f"Invalid status '{status}'. Must be one of: {list(VALID_SETTLEMENT_STATUSES)}"
            )
        settlement = await self.get_settlement(settlement_id)
        previous = settlement.status
        if status not in SETTLEMENT_TRANSITIONS.get(previous, ()):
            raise InvalidTransitionError("Settlement", settlement_id, previous, status)

        now = now or utcnow()
        values: Dict[str, Any] = {"status": status}
        if status == "processing":
            values["processed_at"] = now
        if status == "paid":
            values["paid_at"] = now
            if settlement.processed_at is None:
                values["processed_at"] = now
        if payment_reference:
            values["payment_reference"] = payment_reference
        if payment_method:
            values["payment_method"] = payment_method
        if notes:
            values["notes"] = f"{settlement.notes}\n{notes}" if settlement.notes else notes

        result = await self.session.execute(
            update(Settlement)
            .where(Settlement.id == settlement_id, Settlement.status == previous)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Settlement", settlement_id)

        if status == "paid":
            await self.session.execute(
                update(Revenue)
                .where(Revenue.settlement_id == settlement_id)
                .values(settlement_status="settled", settlement_date=now)
                .execution_options(synchronize_session=False)
            )
        await self.session.refresh(settlement)

        logger.info("Settlement status changed", settlement_id=settlement_id, from_status=previous, to_status=status)
        return settlement


# ---------------------------------------------------------------------------
# Daily sweep
# ---------------------------------------------------------------------------

@dataclass
class SweepError:
    stage: str
    key: Any
    error: str


@dataclass
class SweepReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    sellers_checked: int = 0
    grace_periods_ended: List[int] = field(default_factory=list)
    revenues_created: int = 0
    settlements_created: List[int] = field(default_factory=list)
    errors: List[SweepError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": isoformat_z(self.started_at),
            "finished_at": isoformat_z(self.finished_at),
            "sellers_checked": self.sellers_checked,
            "grace_periods_ended": self.grace_periods_ended,
            "revenues_created": self.revenues_created,
            "settlements_created": self.settlements_created,
            "errors": [{"stage": e.stage, "key": e.key, "error": e.error} for e in self.errors],
        }


class SettlementSweep:
    """
    Daily billing job: usage check, grace-period expiry, revenue generation,
    settlement batching for the previous day.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        fees: Optional[FeeSchedule] = None,
        dispatch: Optional[Callable[[List[Effect]], Awaitable[Any]]] = None,
    ):
        self.session_factory = session_factory
        self.fees = fees or FeeSchedule.from_settings()
        self.dispatch = dispatch

    async def _unit(self, report: SweepReport, stage: str, key: Any, work) -> Any:
        """Run ``work(session)`` in its own transaction; record failures in the report."""
        async with self.session_factory() as session:
            try:
                outcome = await work(session)
                await session.commit()
                return outcome
            except Exception as e:
                await session.rollback()
                report.errors.append(SweepError(stage=stage, key=key, error=str(e)))
                settlement_sweep_errors_total.labels(stage=stage).inc()
                logger.error("Sweep unit failed", stage=stage, key=key, error=str(e))
                return None

    async def _check_usage(self, report: SweepReport, now: datetime) -> None:
        async def work(session):
            return await UsageMeteringService(session).run_periodic_usage_check(now)

        usage = await self._unit(report, "usage", None, work)
        if usage is None:
            return
        report.sellers_checked = len(usage.usages)
        if self.dispatch and usage.effects:
            await self.dispatch(usage.effects)

    async def _expire_grace_periods(self, report: SweepReport, now: datetime) -> None:
        async def find(session):
            return await SubscriptionService(session).find_expired_grace_periods(now)

        seller_ids = await self._unit(report, "grace_period", None, find) or []
        for seller_id in seller_ids:
            async def end(session, seller_id=seller_id):
                return await SubscriptionService(session).end_grace_period(seller_id, now)

            if await self._unit(report, "grace_period", seller_id, end):
                report.grace_periods_ended.append(seller_id)

    async def _generate_revenues(self, report: SweepReport, now: datetime) -> None:
        async def find(session):
            result = await session.execute(
                select(Payment.id)
                .where(
                    Payment.status == "completed",
                    ~exists().where(Revenue.payment_id == Payment.id),
                )
                .order_by(Payment.id)
            )
            return list(result.scalars().all())

        payment_ids = await self._unit(report, "revenue", None, find) or []
        for payment_id in payment_ids:
            async def create(session, payment_id=payment_id):
                service = RevenueService(session, self.fees)
                if await service.get_revenue_for_payment(payment_id):
                    return False
                await service.record_revenue(await session.get(Payment, payment_id), now)
                return True

            if await self._unit(report, "revenue", payment_id, create):
                report.revenues_created += 1

    async def _batch_settlements(self, report: SweepReport, now: datetime) -> None:
        # Everything still unbatched before the end of yesterday is due, including
        # backfilled revenue and days missed by earlier runs.
        period_start, period_end = previous_day_window(now)

        async def find(session):
            result = await session.execute(
                select(Revenue.seller_id, func.min(Revenue.revenue_date))
                .where(
                    and_(
                        Revenue.settlement_status == "pending",
                        Revenue.settlement_id.is_(None),
                        Revenue.revenue_date < period_end,
                    )
                )
                .group_by(Revenue.seller_id)
                .order_by(Revenue.seller_id)
            )
            return [(seller_id, oldest) for seller_id, oldest in result.all()]

        due = await self._unit(report, "settlement", None, find) or []
        for seller_id, oldest in due:
            start = min(period_start, oldest.replace(hour=0, minute=0, second=0, microsecond=0))

            async def batch(session, seller_id=seller_id, start=start):
                settlement = await RevenueService(session, self.fees).create_settlement(
                    seller_id, start, period_end, notes="Daily settlement",
                )
                return settlement.id

            settlement_id = await self._unit(report, "settlement", seller_id, batch)
            if settlement_id is not None:
                report.settlements_created.append(settlement_id)

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        """Never raises for a single failing unit; failures land in ``report.errors``."""
        now = to_naive_utc(now) or utcnow()
        started = time.monotonic()
        report = SweepReport(started_at=now)
        logger.info("Settlement sweep started", now=isoformat_z(now))

        await self._check_usage(report, now)
        await self._expire_grace_periods(report, now)
        await self._generate_revenues(report, now)
        await self._batch_settlements(report, now)

        report.finished_at = utcnow()
        settlement_sweep_duration_seconds.observe(time.monotonic() - started)
        logger.info(
            "Settlement sweep finished",
            sellers_checked=report.sellers_checked,
            grace_periods_ended=len(report.grace_periods_ended),
            revenues_created=report.revenues_created,
            settlements_created=len(report.settlements_created),
            errors=len(report.errors),
        )
        return report
