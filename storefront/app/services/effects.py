"""
Side-effect planning and dispatch.

State transitions never call collaborators directly.  They return ``Effect``
values next to the new state; routers commit the write first and then hand
the effects to ``EffectDispatcher``, which runs each one with its own retry
budget and only logs failures.  A slow or broken collaborator therefore can
neither block nor roll back a status change.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import effects_failed_total

logger = get_logger(__name__)

EVENT = "event"
NOTIFICATION = "notification"
EMAIL = "email"


class NotificationSink(Protocol):
    async def emit(self, event: Dict[str, Any]) -> None: ...


class EmailSender(Protocol):
    async def send_order_status_update(
        self,
        contact: str,
        order_reference: str,
        status: str,
        locale: str,
        tracking_url: Optional[str],
    ) -> None: ...


@dataclass(frozen=True)
class Effect:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


def event_effect(event_type: str, seller_id: int, message: str, payload: Dict[str, Any]) -> Effect:
    return Effect(EVENT, {"type": event_type, "seller_id": seller_id, "message": message, "payload": payload})


def notification_effect(seller_id: int, message: str, payload: Dict[str, Any]) -> Effect:
    return Effect(NOTIFICATION, {
        "type": "notification",
        "seller_id": seller_id,
        "message": message,
        "payload": payload,
    })


def email_effect(contact: str, order_reference: str, status: str, locale: str, tracking_url: Optional[str]) -> Effect:
    return Effect(EMAIL, {
        "contact": contact,
        "order_reference": order_reference,
        "status": status,
        "locale": locale,
        "tracking_url": tracking_url,
    })


class EffectDispatcher:
    """Executes planned effects; never raises."""

    def __init__(self, sink: NotificationSink, email_sender: EmailSender, max_attempts: int = 2):
        self.sink = sink
        self.email_sender = email_sender
        self.max_attempts = max(1, max_attempts)

    async def _run(self, effect: Effect) -> None:
        if effect.kind in (EVENT, NOTIFICATION):
            await self.sink.emit(dict(effect.payload))
        elif effect.kind == EMAIL:
            p = effect.payload
            await self.email_sender.send_order_status_update(
                p["contact"], p["order_reference"], p["status"], p["locale"], p.get("tracking_url"),
            )
        else:
            raise ValueError(f"Unknown effect kind '{effect.kind}'")

    async def dispatch(self, effects: List[Effect]) -> List[Effect]:
        """Run every effect independently. Returns the effects that ultimately failed."""
        failed: List[Effect] = []
        for effect in effects:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    await self._run(effect)
                    break
                except Exception as exc:
                    logger.warning(
                        "Side effect failed",
                        kind=effect.kind,
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        error=str(exc),
                    )
            else:
                failed.append(effect)
                effects_failed_total.labels(kind=effect.kind).inc()
                logger.error("Side effect dropped", kind=effect.kind, payload=effect.payload)
        return failed
