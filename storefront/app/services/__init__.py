"""
Storefront services.  Each takes an ``AsyncSession`` and leaves the commit to
the caller; routers and the billing sweep own the transaction boundaries.
"""
from storefront.app.services.orders import OrderService
from storefront.app.services.discounts import DiscountResolver, DiscountResolution
from storefront.app.services.lifecycle import OrderLifecycleCoordinator, Actor, TransitionResult
from storefront.app.services.payment import PaymentService, PaymentRequest, PaymentResult, WebhookResult
from storefront.app.services.settlement import RevenueService, SettlementSweep, SweepReport
from storefront.app.services.subscription import SubscriptionService
from storefront.app.services.usage import UsageMeteringService
from storefront.app.services.commissions import FeeSchedule
from storefront.app.services.effects import Effect, EffectDispatcher
from storefront.app.services.events import EventBus

__all__ = [
    # Orders
    "OrderService",
    "OrderLifecycleCoordinator",
    "Actor",
    "TransitionResult",
    # Discounts
    "DiscountResolver",
    "DiscountResolution",
    # Payments
    "PaymentService",
    "PaymentRequest",
    "PaymentResult",
    "WebhookResult",
    # Settlement
    "RevenueService",
    "SettlementSweep",
    "SweepReport",
    "SubscriptionService",
    "UsageMeteringService",
    "FeeSchedule",
    # Side effects
    "Effect",
    "EffectDispatcher",
    "EventBus",
]
