from typing import AsyncGenerator, Optional, Callable

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.database import async_session
from storefront.app.core.logging import get_logger
from storefront.app.core.settings import get_settings
from storefront.app.services.effects import EffectDispatcher
from storefront.app.services.email import build_email_sender
from storefront.app.services.events import get_event_bus
from storefront.app.services.lifecycle import Actor

logger = get_logger(__name__)


# One database session per request
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


# Session factory for jobs that open one transaction per unit of work
def get_session_factory() -> Callable[[], AsyncSession]:
    return async_session


def get_dispatcher() -> EffectDispatcher:
    settings = get_settings()
    return EffectDispatcher(get_event_bus(), build_email_sender(settings), settings.EFFECT_MAX_ATTEMPTS)


async def get_actor(
    x_seller_id: Optional[int] = Header(None, alias="X-Seller-Id"),
) -> Actor:
    """
    Seller-scoped actor when ``X-Seller-Id`` is sent, platform admin otherwise.
    Authentication happens upstream (gateway); this only carries the identity.
    """
    if x_seller_id is not None:
        return Actor(kind="seller", seller_id=x_seller_id)
    return Actor(kind="admin")


async def require_seller(
    x_seller_id: Optional[int] = Header(None, alias="X-Seller-Id"),
) -> int:
    if x_seller_id is None:
        raise HTTPException(status_code=401, detail="X-Seller-Id header is required")
    return x_seller_id


async def require_cron_secret(
    authorization: Optional[str] = Header(None),
) -> None:
    """Bearer CRON_SECRET guard for scheduler-triggered endpoints."""
    settings = get_settings()
    if not settings.CRON_SECRET:
        # Not configured: allowed outside production (settings refuse to load in production)
        logger.warning("CRON_SECRET not set, cron endpoints are unprotected")
        return
    if authorization != f"Bearer {settings.CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Invalid or missing cron secret")
