"""Exception handlers that turn EntitlementError into structured JSON responses."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from hub.entitlements.errors import EntitlementError

logger = logging.getLogger(__name__)


async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    logger.info(
        "Entitlement error",
        extra={
            "code": exc.code,
            "status_code": exc.http_status,
            "path": request.url.path,
        },
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with proper logging."""
    app_access = getattr(request.state, "app_access", None)
    logger.error(
        "Unhandled exception",
        extra={
            "tenant_id": app_access.tenant_id if app_access else "unknown",
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path,
        },
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred",
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EntitlementError, entitlement_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
