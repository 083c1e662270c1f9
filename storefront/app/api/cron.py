from typing import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_session_factory, get_dispatcher, require_cron_secret
from storefront.app.services.effects import EffectDispatcher
from storefront.app.services.settlement import SettlementSweep

router = APIRouter()


@router.get("/billing-check", dependencies=[Depends(require_cron_secret)])
async def billing_check(
    session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    dispatcher: EffectDispatcher = Depends(get_dispatcher),
):
    """Run the daily billing sweep on demand (external cron)."""
    report = await SettlementSweep(session_factory, dispatch=dispatcher.dispatch).run()
    return report.to_dict()
