"""
FastAPI application entry point for the entitlement hub.

Application routes are protected with hub.api.dependencies.app_access;
the access log query surface and the entitlement admin API are mounted
for internal admins.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from hub.api.errors import register_error_handlers
from hub.api.routes import access_logs, admin_entitlements
from hub.config.settings import get_settings

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info("Starting entitlement hub API")
    if not settings.jwt_secret:
        logger.warning("HUB_JWT_SECRET is not set - every gated request will be rejected as unauthenticated")
    if not settings.database_url:
        logger.warning("DATABASE_URL is not set - database-backed routes will return 503")
    yield
    logger.info("Shutting down entitlement hub API")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Entitlement Hub",
        description="Pricing, licensing and application access control",
        version="0.1.0",
        lifespan=lifespan,
    )
    register_error_handlers(app)
    app.include_router(access_logs.router)
    app.include_router(admin_entitlements.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
