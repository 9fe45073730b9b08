"""
Authorization Gate.

A sequential, short-circuiting pipeline evaluated once per protected
request:

1. Identity - caller identity and tenant context must be resolved
   (401 / 400). Only the tenant lookup touches storage.
2. License  - the application must exist (404) and the tenant must hold an
   active, unexpired license for it (403 no_tenant_license).
3. Access   - the identity claim lists the slug (source=claim), else an
   active grant exists (source=store); otherwise 403 no_user_access.
4. Role     - only when the route demands one: admin is exact, manager and
   operations satisfy each other, anything else is exact
   (403 role_insufficient_<role>).

Every evaluation writes exactly one access log row, granted or denied.
Denials are returned as values; nothing here raises for a denied caller.
Unexpected errors degrade to a 500 decision that is still logged.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from fastapi import status
from sqlalchemy.orm import Session

from hub.models.access_log import AccessDecision, AccessSource
from hub.models.application import Application
from hub.models.base import normalize_instant, utc_now
from hub.models.grant import VALID_ROLES, RoleInApp
from hub.models.license import License
from hub.platform.identity import CallerIdentity
from hub.platform.tenant_context import ResolvedTenant
from hub.services.access_grants import AccessGrantStore
from hub.services.access_log_service import AccessEvent, AccessLogService, RequestInfo
from hub.services.license_registry import LicenseRegistry, SeatInfo

logger = logging.getLogger(__name__)

# Roles that satisfy each other when required by a route.
_EQUIVALENT_ROLES = frozenset({RoleInApp.MANAGER.value, RoleInApp.OPERATIONS.value})


class DenialReason(str, Enum):
    """Machine-readable denial reasons with a fixed spelling."""
    AUTHENTICATION_REQUIRED = "authentication_required"
    TENANT_CONTEXT_REQUIRED = "tenant_context_required"
    APPLICATION_NOT_FOUND = "application_not_found"
    NO_TENANT_LICENSE = "no_tenant_license"
    NO_USER_ACCESS = "no_user_access"


def role_insufficient_reason(required_role: str) -> str:
    return f"role_insufficient_{required_role}"


def role_satisfies(required_role: str, actual_role: Optional[str]) -> bool:
    """Whether `actual_role` meets `required_role`."""
    if actual_role is None:
        return False
    if required_role == RoleInApp.ADMIN.value:
        return actual_role == RoleInApp.ADMIN.value
    if required_role in _EQUIVALENT_ROLES:
        return actual_role in _EQUIVALENT_ROLES
    return actual_role == required_role


@dataclass(frozen=True)
class AccessRequest:
    """Everything the gate needs to decide one request."""
    application_slug: str
    identity: Optional[CallerIdentity] = None
    tenant: Optional[ResolvedTenant] = None
    # Looked up lazily, after the identity layer passes, when tenant is unset
    tenant_resolver: Optional[Callable[[], Optional[ResolvedTenant]]] = None
    required_role: Optional[str] = None
    request_info: RequestInfo = field(default_factory=RequestInfo)


@dataclass(frozen=True)
class LicenseSnapshot:
    id: int
    status: str
    expires_at: Optional[datetime]
    trial_used: bool

    @classmethod
    def from_license(cls, license: License) -> "LicenseSnapshot":
        return cls(
            id=license.id,
            status=license.status,
            expires_at=normalize_instant(license.expires_at),
            trial_used=bool(license.trial_used),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "trial_used": self.trial_used,
        }


@dataclass(frozen=True)
class AppAccessContext:
    """Decision context attached to a request that passed the gate."""
    user_id: str
    tenant_id: int
    application_id: int
    application_slug: str
    application_name: str
    role_in_app: str
    license: LicenseSnapshot
    seats: SeatInfo
    access_source: AccessSource

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "application_id": self.application_id,
            "application_slug": self.application_slug,
            "application_name": self.application_name,
            "role_in_app": self.role_in_app,
            "license": self.license.to_dict(),
            "seats": self.seats.to_dict(),
            "access_source": self.access_source.value,
        }


@dataclass(frozen=True)
class GateDecision:
    """Outcome of one gate evaluation."""
    allowed: bool
    status_code: int
    reason: str
    message: str
    context: Optional[AppAccessContext] = None
    application_id: Optional[int] = None

    def to_detail(self) -> dict:
        """Structured denial body."""
        return {
            "error": "access_denied" if self.status_code != status.HTTP_500_INTERNAL_SERVER_ERROR else "gate_error",
            "reason": self.reason,
            "message": self.message,
        }


def _deny(status_code: int, reason: str, message: str, application_id: Optional[int] = None) -> GateDecision:
    return GateDecision(
        allowed=False,
        status_code=status_code,
        reason=reason,
        message=message,
        application_id=application_id,
    )


class AuthorizationGate:
    """
    Evaluates access requests against licenses, grants and identity claims.

    Each layer performs at most one storage round trip.
    """

    def __init__(
        self,
        db_session: Session,
        registry: Optional[LicenseRegistry] = None,
        grants: Optional[AccessGrantStore] = None,
        audit: Optional[AccessLogService] = None,
    ):
        self.db = db_session
        self.registry = registry or LicenseRegistry(db_session)
        self.audit = audit or AccessLogService(db_session)
        self.grants = grants or AccessGrantStore(db_session, registry=self.registry, audit=self.audit)

    def evaluate(self, access_request: AccessRequest) -> GateDecision:
        """Run the pipeline and record the decision. Never raises for denials."""
        # Tenant and application resolved so far; kept for the audit row even
        # when a later layer fails.
        resolved = {}
        try:
            decision = self._evaluate(access_request, resolved)
        except Exception as e:
            logger.exception(
                "Gate evaluation failed",
                extra={"application_slug": access_request.application_slug},
            )
            try:
                self.db.rollback()
            except Exception as rollback_error:
                logger.error("Rollback after gate failure failed", extra={"error": str(rollback_error)})
            decision = _deny(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                f"gate_error: {e}",
                "Access check failed",
                application_id=resolved.get("application_id"),
            )

        self._record(access_request, decision, resolved.get("tenant"))
        return decision

    def _evaluate(self, access_request: AccessRequest, resolved: dict) -> GateDecision:
        identity = access_request.identity
        slug = access_request.application_slug

        # Layer 1: identity
        if identity is None:
            return _deny(
                status.HTTP_401_UNAUTHORIZED,
                DenialReason.AUTHENTICATION_REQUIRED.value,
                "Authentication required",
            )
        tenant = access_request.tenant
        if tenant is None and access_request.tenant_resolver is not None:
            tenant = access_request.tenant_resolver()
        resolved["tenant"] = tenant
        if tenant is None:
            return _deny(
                status.HTTP_400_BAD_REQUEST,
                DenialReason.TENANT_CONTEXT_REQUIRED.value,
                "Tenant context required",
            )

        # Layer 2: license
        application, license = self.registry.find_license(tenant.id, slug)
        if application is None:
            return _deny(
                status.HTTP_404_NOT_FOUND,
                DenialReason.APPLICATION_NOT_FOUND.value,
                f"Application '{slug}' not found",
            )
        resolved["application_id"] = application.id
        if license is None or not license.is_usable():
            return _deny(
                status.HTTP_403_FORBIDDEN,
                DenialReason.NO_TENANT_LICENSE.value,
                f"Tenant has no active license for '{slug}'",
                application_id=application.id,
            )

        # Layer 3: access
        grant = None
        if identity.lists_application(slug) and identity.claim_applies_to(tenant.id):
            source = AccessSource.CLAIM
        else:
            grant = self.grants.get_active_grant(identity.user_id, tenant.id, application.id)
            if grant is None:
                return _deny(
                    status.HTTP_403_FORBIDDEN,
                    DenialReason.NO_USER_ACCESS.value,
                    f"User has no access to '{slug}'",
                    application_id=application.id,
                )
            source = AccessSource.STORE

        role = grant.role_in_app if grant is not None else self._claimed_role(identity, slug)

        # Layer 4: role
        required = access_request.required_role
        if required and not role_satisfies(required, role):
            return _deny(
                status.HTTP_403_FORBIDDEN,
                role_insufficient_reason(required),
                f"Role '{required}' required for '{slug}'",
                application_id=application.id,
            )

        return GateDecision(
            allowed=True,
            status_code=status.HTTP_200_OK,
            reason="access granted",
            message="Access granted",
            application_id=application.id,
            context=self._build_context(identity, tenant, application, license, role, source),
        )

    @staticmethod
    def _claimed_role(identity: CallerIdentity, slug: str) -> str:
        role = identity.app_roles.get(slug) or identity.role
        return role if role in VALID_ROLES else RoleInApp.USER.value

    @staticmethod
    def _build_context(
        identity: CallerIdentity,
        tenant: ResolvedTenant,
        application: Application,
        license: License,
        role: str,
        source: AccessSource,
    ) -> AppAccessContext:
        return AppAccessContext(
            user_id=identity.user_id,
            tenant_id=tenant.id,
            application_id=application.id,
            application_slug=application.slug,
            application_name=application.name,
            role_in_app=role,
            license=LicenseSnapshot.from_license(license),
            seats=SeatInfo.from_license(license),
            access_source=source,
        )

    def _record(
        self,
        access_request: AccessRequest,
        decision: GateDecision,
        tenant: Optional[ResolvedTenant],
    ) -> None:
        """Write the decision row; tenant is only what layer 1 resolved."""
        identity = access_request.identity
        context = decision.context

        self.audit.create(
            AccessEvent(
                decision=AccessDecision.GRANTED if decision.allowed else AccessDecision.DENIED,
                reason=decision.reason,
                user_id=identity.user_id if identity else None,
                tenant_id=tenant.id if tenant else None,
                application_id=decision.application_id,
                application_slug=access_request.application_slug,
                access_source=context.access_source if context else None,
                request_info=access_request.request_info,
                timestamp=utc_now(),
            )
        )

        if not decision.allowed:
            logger.warning(
                "Application access denied",
                extra={
                    "user_id": identity.user_id if identity else None,
                    "tenant_id": tenant.id if tenant else None,
                    "application_slug": access_request.application_slug,
                    "reason": decision.reason,
                    "status_code": decision.status_code,
                },
            )
