"""
Main application for the Shopify billing worker
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_worker.api import billing_router, cron_router, webhook_router
from billing_worker.api.dependencies import ServiceContainer, build_container
from billing_worker.api.errors import billing_worker_exception_handler
from billing_worker.core.config.settings import settings
from billing_worker.core.database import close_engine, create_all_tables
from billing_worker.core.exceptions import BillingWorkerException
from billing_worker.core.logging import LoggingConfig, get_logger, setup_logging
from billing_worker.core.redis import close_redis_client, get_cache
from billing_worker.domains.billing.services import get_shopify_billing_client
from billing_worker.domains.usage.services import get_notification_dispatcher
from billing_worker.shared.helpers import now_utc

logger = get_logger(__name__)


async def initialize_services() -> ServiceContainer:
    """Create tables and wire services against the configured backends"""
    settings.validate_configuration()

    await create_all_tables()

    container = build_container(
        provider=get_shopify_billing_client(),
        notifier=get_notification_dispatcher(),
        cache=await get_cache(),
    )
    logger.info("Services initialized", environment=settings.ENVIRONMENT)
    return container


async def cleanup_services() -> None:
    await close_redis_client()
    await close_engine()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    if getattr(app.state, "container", None) is None:
        app.state.container = await initialize_services()
    yield
    await cleanup_services()


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Subscription billing and webhook consistency for a Shopify app",
        version=settings.VERSION,
        lifespan=lifespan,
    )
    app.state.container = container

    app.include_router(webhook_router)
    app.include_router(cron_router)
    app.include_router(billing_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BillingWorkerException, billing_worker_exception_handler)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": now_utc().isoformat(),
            "version": settings.VERSION,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.error("Unhandled exception", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc),
                "timestamp": now_utc().isoformat(),
            },
        )

    return app


app = create_app()


def run() -> None:
    """Console entry point"""
    setup_logging(
        LoggingConfig(
            level=settings.logging.LOG_LEVEL,
            format=settings.logging.LOG_FORMAT,
        )
    )
    uvicorn.run(
        "billing_worker.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info" if not settings.DEBUG else "debug",
        log_config=None,
    )


if __name__ == "__main__":
    run()
