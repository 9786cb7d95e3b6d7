from app.modules.billing.api.v1.billing import router
from app.modules.billing.api.v1.referrals import router as referrals_router
from app.modules.billing.domain.billing.webhook_dispatcher import (
    DispatchResult,
    WebhookDispatcher,
)

__all__ = [
    "router",
    "referrals_router",
    "DispatchResult",
    "WebhookDispatcher",
]
