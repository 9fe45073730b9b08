"""
Application access dependencies.

Provides the decision gate factory used to protect routes of licensed
applications.

Usage:
    @router.get("/api/tq/patients")
    def list_patients(access: AppAccessContext = Depends(require_app_access("tq"))):
        ...

    @router.delete("/api/tq/settings")
    def reset(access: AppAccessContext = Depends(require_app_access("tq", role_in_app="manager"))):
        ...
"""

import logging
from functools import partial
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request

from hub.config.settings import get_settings
from hub.database.session import get_db_session
from hub.entitlements.gate import AccessRequest, AppAccessContext, AuthorizationGate
from hub.models.grant import VALID_ROLES
from hub.platform.identity import extract_client_info, get_caller_identity
from hub.platform.tenant_context import resolve_tenant
from hub.services.access_log_service import RequestInfo

logger = logging.getLogger(__name__)


def create_access_request(
    request: Request,
    db_session,
    application_slug: str,
    role_in_app: Optional[str] = None,
) -> AccessRequest:
    """Resolve identity and client details; the gate looks the tenant up itself."""
    settings = get_settings()
    identity = get_caller_identity(request, settings)
    ip_address, user_agent = extract_client_info(request)

    return AccessRequest(
        application_slug=application_slug,
        identity=identity,
        tenant_resolver=partial(resolve_tenant, request, db_session, identity, settings),
        required_role=role_in_app,
        request_info=RequestInfo(
            ip_address=ip_address,
            user_agent=user_agent,
            method=request.method,
            path=request.url.path,
        ),
    )


def require_app_access(application_slug: str, role_in_app: Optional[str] = None) -> Callable:
    """
    Factory function to create an application access dependency.

    Args:
        application_slug: Slug of the protected application
        role_in_app: Role the route demands, if any

    Returns:
        A FastAPI dependency that returns the AppAccessContext (also stored
        on request.state.app_access) or raises HTTPException with a
        structured detail {"error", "reason", "message"}
    """
    if role_in_app is not None and role_in_app not in VALID_ROLES:
        raise ValueError(f"Unknown role_in_app '{role_in_app}'; expected one of {sorted(VALID_ROLES)}")

    def check_app_access(
        request: Request,
        db_session=Depends(get_db_session),
    ) -> AppAccessContext:
        access_request = create_access_request(request, db_session, application_slug, role_in_app)
        decision = AuthorizationGate(db_session).evaluate(access_request)

        if not decision.allowed:
            raise HTTPException(status_code=decision.status_code, detail=decision.to_detail())

        request.state.app_access = decision.context
        return decision.context

    return check_app_access


def require_app_admin(application_slug: str) -> Callable:
    """Shorthand for routes that need the application admin role."""
    return require_app_access(application_slug, role_in_app="admin")
