"""
Order Lifecycle Coordinator.

Every order status change after creation goes through this module.  Rules:

* a target status must be a known value, it is never clamped;
* moves go forward only and may skip stages (``new -> shipped``);
  aliases of one stage (``new``/``placed``, ``contacted``/``confirmed``)
  do not move between each other;
* ``cancelled`` is absorbing;
* ``delivered`` may still become ``completed``; leaving either success
  state any other way is a cancellation that carries a refund reason;
* re-submitting the current status changes nothing.

The write is a conditional UPDATE on the prior status so two racing
transitions cannot both win.  Side effects are returned as ``Effect`` values
for the caller to dispatch after commit.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.constants import (
    ORDER_STATUS_RANK,
    VALID_ORDER_STATUSES,
    CANCELLED_ORDER_STATUS,
    COMPLETED_ORDER_STATUSES,
    ZERO,
    to_money,
)
from storefront.app.core.exceptions import (
    NotFoundError,
    ForbiddenError,
    InvalidRequestError,
    InvalidTransitionError,
    ConflictError,
)
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import order_transitions_total
from storefront.app.core.settings import get_settings
from storefront.app.core.time_utils import utcnow, to_naive_utc
from storefront.app.models.order import Order
from storefront.app.services.effects import Effect, event_effect, notification_effect, email_effect
from storefront.app.services.email import looks_like_email
from storefront.app.services.orders import history_entry
from storefront.app.services.payment import PaymentService

logger = get_logger(__name__)

REASON_FIELDS = ("cancel_reason", "refund_reason", "refund_amount")
REFUND_TYPES = ("refund", "cancel")
MAX_TRACKING_NUMBER = 128


@dataclass(frozen=True)
class Actor:
    """Who asked for a change. ``seller_id`` scopes lookups to that seller's orders."""
    kind: str = "system"  # seller | admin | system | webhook
    seller_id: Optional[int] = None

    @property
    def label(self) -> str:
        return f"{self.kind}:{self.seller_id}" if self.seller_id is not None else self.kind


SYSTEM_ACTOR = Actor()


@dataclass
class TransitionResult:
    order: Order
    previous_status: str
    changed: bool
    effects: List[Effect] = field(default_factory=list)


def check_transition(
    order_id: int,
    current: str,
    target: str,
    refund_reason: Optional[str] = None,
) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is legal."""
    if current == CANCELLED_ORDER_STATUS:
        raise InvalidTransitionError("Order", order_id, current, target)

    if current in COMPLETED_ORDER_STATUSES:
        if current == "delivered" and target == "completed":
            return
        if target == CANCELLED_ORDER_STATUS and refund_reason:
            return
        raise InvalidTransitionError("Order", order_id, current, target)

    if target == CANCELLED_ORDER_STATUS:
        return

    if ORDER_STATUS_RANK[target] <= ORDER_STATUS_RANK.get(current, -1):
        raise InvalidTransitionError("Order", order_id, current, target)


def _parse_amount(value: Any) -> Decimal:
    try:
        return to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRequestError(f"Invalid amount '{value}'")


class OrderLifecycleCoordinator:
    """Applies order status transitions and plans their side effects."""

    def __init__(
        self,
        session: AsyncSession,
        public_base_url: Optional[str] = None,
        locale: Optional[str] = None,
    ):
        settings = get_settings()
        self.session = session
        self.public_base_url = (public_base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        self.locale = locale or settings.DEFAULT_LOCALE

    async def _load_order(self, order_id: int, actor: Optional[Actor]) -> Order:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        # Another seller's order is reported as missing
        if not order or (actor and actor.seller_id is not None and order.seller_id != actor.seller_id):
            raise NotFoundError("Order", order_id)
        return order

    def _validate_reason_fields(self, order: Order, target: str, reason_fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(reason_fields) - set(REASON_FIELDS)
        if unknown:
            raise InvalidRequestError(f"Unknown reason fields: {', '.join(sorted(unknown))}")

        cleaned = {k: v for k, v in reason_fields.items() if v not in (None, "")}
        if cleaned and target != CANCELLED_ORDER_STATUS:
            raise InvalidRequestError("Reason fields are only accepted when cancelling an order")

        if "refund_amount" in cleaned:
            if not cleaned.get("refund_reason"):
                raise InvalidRequestError("refund_amount requires refund_reason")
            amount = _parse_amount(cleaned["refund_amount"])
            if amount <= ZERO:
                raise InvalidRequestError("refund_amount must be positive")
            if amount > order.resolved_total:
                raise InvalidRequestError(
                    f"refund_amount {amount} exceeds order total {order.resolved_total}"
                )
            cleaned["refund_amount"] = amount
        return cleaned

    def tracking_url(self, order: Order) -> str:
        return f"{self.public_base_url}/track/{order.reference}"

    def _plan_effects(
        self,
        order: Order,
        previous_status: str,
        actor: Optional[Actor],
        note: Optional[str],
        event_type: str = "order:status",
        extra: Optional[Dict[str, Any]] = None,
    ) -> List[Effect]:
        payload: Dict[str, Any] = {
            "order_id": order.id,
            "reference": order.reference,
            "previous_status": previous_status,
            "status": order.status,
            "note": note,
            "actor": actor.label if actor else SYSTEM_ACTOR.label,
        }
        if extra:
            payload.update(extra)

        message = f"Order {order.reference}: {previous_status} -> {order.status}"
        effects = [event_effect(event_type, order.seller_id, message, payload)]
        if not actor or actor.seller_id != order.seller_id:
            effects.append(notification_effect(order.seller_id, message, payload))
        if looks_like_email(order.customer_contact):
            effects.append(email_effect(
                order.customer_contact,
                order.reference,
                order.status,
                self.locale,
                self.tracking_url(order),
            ))
        return effects

    async def _apply(
        self,
        order: Order,
        target: str,
        history_note: Optional[str],
        notes_line: Optional[str],
        values: Dict[str, Any],
        now: datetime,
    ) -> None:
        previous = order.status
        new_history = list(order.status_history or []) + [history_entry(target, now, history_note)]
        notes = order.notes or ""
        if notes_line:
            notes = f"{notes}\n{notes_line}" if notes else notes_line

        result = await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == previous)
            .values(status=target, status_history=new_history, notes=notes, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Order", order.id)
        await self.session.refresh(order)

        order_transitions_total.labels(from_status=previous, to_status=target).inc()

    async def _cancel_active_payments(self, order: Order, reason: str, actor: Optional[Actor]) -> List[Effect]:
        payments = PaymentService(self.session)
        return await payments.cancel_active_payments(order.id, reason, actor.label if actor else "system")

    async def transition_order_status(
        self,
        order_id: int,
        new_status: str,
        actor: Optional[Actor] = None,
        note: Optional[str] = None,
        reason_fields: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Move an order to ``new_status``.
        Caller must commit the session and then dispatch ``result.effects``.

        Raises:
            InvalidRequestError: unknown status or malformed reason fields
            NotFoundError: order missing or owned by another seller
            InvalidTransitionError: move not legal from the current status
            ConflictError: a concurrent transition won the race
        """
        if new_status not in VALID_ORDER_STATUSES:
            raise InvalidRequestError(
                f"Invalid status '{new_status}'. Must be one of: {VALID_ORDER_STATUSES}"
            )

        order = await self._load_order(order_id, actor)
        previous = order.status
        reasons = self._validate_reason_fields(order, new_status, reason_fields or {})

        if previous == new_status and previous != CANCELLED_ORDER_STATUS:
            logger.info("Order status unchanged", order_id=order.id, status=previous)
            return TransitionResult(order=order, previous_status=previous, changed=False)

        check_transition(order.id, previous, new_status, reasons.get("refund_reason"))

        now = now or utcnow()
        await self._apply(order, new_status, note, note, reasons, now)

        effects = self._plan_effects(order, previous, actor, note)
        if new_status == CANCELLED_ORDER_STATUS:
            reason = reasons.get("cancel_reason") or reasons.get("refund_reason") or "Order cancelled"
            effects.extend(await self._cancel_active_payments(order, reason, actor))

        logger.info(
            "Order status changed",
            order_id=order.id,
            from_status=previous,
            to_status=new_status,
            actor=actor.label if actor else SYSTEM_ACTOR.label,
        )
        return TransitionResult(order=order, previous_status=previous, changed=True, effects=effects)

    async def refund_or_cancel(
        self,
        order_id: int,
        reason: Optional[str],
        note: Optional[str],
        type: str,
        amount: Any = None,
        actor: Optional[Actor] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Cancel an order, optionally recording a refund.

        Both kinds end in ``cancelled``; a refund additionally stores
        ``refund_reason``/``refund_amount`` and emits ``order:refunded``.
        """
        if type not in REFUND_TYPES:
            raise InvalidRequestError(f"type must be one of: {REFUND_TYPES}")
        if not reason or not reason.strip():
            raise InvalidRequestError("reason is required")
        if not note or not note.strip():
            raise InvalidRequestError("note is required")
        if type == "refund" and amount in (None, ""):
            raise InvalidRequestError("amount is required for a refund")

        order = await self._load_order(order_id, actor)
        previous = order.status

        values: Dict[str, Any]
        if type == "refund":
            refund_amount = _parse_amount(amount)
            if refund_amount <= ZERO:
                raise InvalidRequestError("amount must be positive")
            if refund_amount > order.resolved_total:
                raise InvalidRequestError(
                    f"Refund amount {refund_amount} exceeds order total {order.resolved_total}"
                )
            values = {"refund_reason": reason, "refund_amount": refund_amount}
            history_note = f"Refunded {refund_amount}. Reason: {reason}. {note}"
            event_type = "order:refunded"
            extra = {"refund_amount": str(refund_amount), "reason": reason}
        else:
            values = {"cancel_reason": reason}
            history_note = f"Cancelled. Reason: {reason}. {note}"
            event_type = "order:cancelled"
            extra = {"reason": reason}

        # Cancelling a fulfilled order is only legal with refund metadata
        check_transition(order.id, previous, CANCELLED_ORDER_STATUS, values.get("refund_reason"))

        now = now or utcnow()
        await self._apply(order, CANCELLED_ORDER_STATUS, history_note, history_note, values, now)

        effects = self._plan_effects(order, previous, actor, history_note, event_type=event_type, extra=extra)
        effects.extend(await self._cancel_active_payments(order, reason, actor))

        logger.info(
            "Order refunded" if type == "refund" else "Order cancelled",
            order_id=order.id,
            from_status=previous,
            amount=str(values.get("refund_amount")) if type == "refund" else None,
        )
        return TransitionResult(order=order, previous_status=previous, changed=True, effects=effects)

    async def update_shipping_info(
        self,
        order_id: int,
        actor: Actor,
        tracking_number: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
        status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Record tracking details for the seller's own order, optionally moving
        it to ``status`` through the usual transition rules.

        ``None`` leaves a field as it is; an empty tracking number clears it.

        Raises:
            ForbiddenError: actor is not a seller
            InvalidRequestError: nothing to update, or tracking number too long
            NotFoundError: order missing or owned by another seller
            InvalidTransitionError / ConflictError: from the status change
        """
        if actor.seller_id is None:
            raise ForbiddenError("Shipping details are updated by the owning seller")
        if tracking_number is None and estimated_delivery is None and status is None:
            raise InvalidRequestError("Nothing to update")
        if tracking_number is not None and len(tracking_number.strip()) > MAX_TRACKING_NUMBER:
            raise InvalidRequestError(f"tracking_number is longer than {MAX_TRACKING_NUMBER} characters")

        order = await self._load_order(order_id, actor)
        previous = order.status
        now = now or utcnow()

        values: Dict[str, Any] = {}
        if tracking_number is not None:
            values["tracking_number"] = tracking_number.strip()
        if estimated_delivery is not None:
            values["estimated_delivery"] = to_naive_utc(estimated_delivery)
        if values:
            await self.session.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            await self.session.refresh(order)
            logger.info("Order shipping info updated", order_id=order.id, **{k: str(v) for k, v in values.items()})

        if status is None:
            return TransitionResult(order=order, previous_status=previous, changed=False)

        note = f"Tracking number added: {values['tracking_number']}" if values.get("tracking_number") else None
        return await self.transition_order_status(order.id, status, actor=actor, note=note, now=now)
