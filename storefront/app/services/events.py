"""In-process pub/sub used as the default notification sink."""
import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

from storefront.app.core.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]

ALL_EVENTS = "*"


class EventBus:
    """
    Fan-out of domain events (``order:status``, ``payment:status``, ...)
    to subscribed async handlers.

    A failing handler does not stop delivery to the others; ``emit`` raises
    only after every handler ran, so the dispatcher can retry.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    async def emit(self, event: Dict[str, Any]) -> None:
        handlers = self._handlers.get(event.get("type", ""), []) + self._handlers.get(ALL_EVENTS, [])
        if not handlers:
            logger.debug("Event without subscribers", event_type=event.get("type"))
            return

        results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
        errors = [r for r in results if isinstance(r, Exception)]
        for err in errors:
            logger.warning("Event handler failed", event_type=event.get("type"), error=str(err))
        if errors:
            raise errors[0]


_bus: EventBus = EventBus()


def get_event_bus() -> EventBus:
    return _bus
