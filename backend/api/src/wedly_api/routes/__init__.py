"""API routes package.

- health: Health check endpoints
- checkout: Checkout session initiation
- webhooks: Payment provider webhook receiver

Routers are registered in main.py; health and checkout under /api.
"""

from wedly_api.routes.checkout import router as checkout_router
from wedly_api.routes.health import router as health_router
from wedly_api.routes.webhooks import router as webhooks_router

__all__ = [
    "checkout_router",
    "health_router",
    "webhooks_router",
]
