"""
Internal admin dependency.

The access log query surface is restricted to platform staff: callers whose
identity carries a platform_role listed in the internal_admin_roles setting.
"""

import logging

from fastapi import HTTPException, Request, status

from hub.config.settings import get_settings
from hub.platform.identity import CallerIdentity, get_caller_identity

logger = logging.getLogger(__name__)


def require_internal_admin(request: Request) -> CallerIdentity:
    """
    Dependency that admits internal admins only.

    Raises:
        HTTPException: 401 without identity, 403 for other platform roles
    """
    settings = get_settings()
    identity = get_caller_identity(request, settings)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )

    if identity.platform_role not in settings.internal_admin_roles:
        logger.warning(
            "Internal admin access denied",
            extra={
                "user_id": identity.user_id,
                "platform_role": identity.platform_role,
                "path": request.url.path,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Internal admin role required",
        )

    return identity
