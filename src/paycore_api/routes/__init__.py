"""API routes package.

Routers are organized by domain:

- payments: purchase, authorize, capture, void, refund and transaction reads
- subscriptions: recurring billing agreements
- webhooks: signed gateway notifications

All routers are registered in main.py with /api prefix.
"""

from paycore_api.routes.payments import router as payments_router
from paycore_api.routes.subscriptions import router as subscriptions_router
from paycore_api.routes.webhooks import router as webhooks_router

__all__ = [
    "payments_router",
    "subscriptions_router",
    "webhooks_router",
]
