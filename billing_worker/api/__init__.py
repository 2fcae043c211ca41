"""
HTTP routers
"""

from .billing_routes import router as billing_router
from .cron_routes import router as cron_router
from .webhook_routes import router as webhook_router

__all__ = ["billing_router", "cron_router", "webhook_router"]
