"""Customer order-status emails."""
import re
from typing import Optional

import httpx

from storefront.app.core.logging import get_logger
from storefront.app.core.settings import Settings, get_settings

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@.]+$")

STATUS_LABELS = {
    "en": {
        "new": "Your order was received",
        "placed": "Your order was received",
        "contacted": "The seller contacted you about your order",
        "confirmed": "Your order was confirmed",
        "processing": "Your order is being prepared",
        "shipped": "Your order is on its way",
        "delivered": "Your order was delivered",
        "completed": "Your order is complete",
        "cancelled": "Your order was cancelled",
    },
    "pt": {
        "new": "O seu pedido foi recebido",
        "placed": "O seu pedido foi recebido",
        "contacted": "O vendedor entrou em contacto sobre o seu pedido",
        "confirmed": "O seu pedido foi confirmado",
        "processing": "O seu pedido está a ser preparado",
        "shipped": "O seu pedido está a caminho",
        "delivered": "O seu pedido foi entregue",
        "completed": "O seu pedido está concluído",
        "cancelled": "O seu pedido foi cancelado",
    },
}


def looks_like_email(contact: Optional[str]) -> bool:
    return bool(contact) and EMAIL_RE.match(contact.strip()) is not None


def status_subject(order_reference: str, status: str, locale: str) -> str:
    labels = STATUS_LABELS.get(locale) or STATUS_LABELS["en"]
    return f"{order_reference}: {labels.get(status, status)}"


class HttpEmailSender:
    """Posts status updates to a transactional email HTTP API."""

    def __init__(self, api_url: str, api_key: Optional[str], sender: str, timeout: float = 10.0):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    async def send_order_status_update(
        self,
        contact: str,
        order_reference: str,
        status: str,
        locale: str,
        tracking_url: Optional[str],
    ) -> None:
        subject = status_subject(order_reference, status, locale)
        body = subject if not tracking_url else f"{subject}\n\n{tracking_url}"
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.post(
                self.api_url,
                json={"from": self.sender, "to": contact, "subject": subject, "text": body},
                headers=headers,
            )
            r.raise_for_status()
        logger.info("Status email sent", order_reference=order_reference, status=status)


class LogEmailSender:
    """Used when no email API is configured: records what would have been sent."""

    async def send_order_status_update(
        self,
        contact: str,
        order_reference: str,
        status: str,
        locale: str,
        tracking_url: Optional[str],
    ) -> None:
        logger.info(
            "Email delivery not configured, skipping",
            order_reference=order_reference,
            status=status,
            subject=status_subject(order_reference, status, locale),
        )


def build_email_sender(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    if settings.EMAIL_API_URL:
        return HttpEmailSender(
            settings.EMAIL_API_URL,
            settings.EMAIL_API_KEY,
            settings.EMAIL_FROM,
            timeout=settings.EMAIL_TIMEOUT_SECONDS,
        )
    return LogEmailSender()
