"""
Tenant resolution for gated requests.

The tenant is taken from the tenant header (X-Tenant-Id by default) and,
when absent, from the identity's tenant claim. Only active tenants resolve.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import Session

from hub.config.settings import HubSettings, get_settings
from hub.models.tenant import Tenant, TenantStatus
from hub.platform.identity import CallerIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedTenant:
    """Tenant context of a request: numeric id and display name."""
    id: int
    name: str
    slug: Optional[str] = None


def resolve_tenant(
    request: Request,
    db_session: Session,
    identity: Optional[CallerIdentity] = None,
    settings: Optional[HubSettings] = None,
) -> Optional[ResolvedTenant]:
    """
    Resolve the tenant for a request.

    Returns:
        The resolved tenant, or None when none was supplied, the value is
        not numeric, or the tenant is unknown or not active
    """
    settings = settings or get_settings()
    raw_value = request.headers.get(settings.tenant_header)
    if raw_value is None and identity is not None and identity.tenant_id is not None:
        raw_value = str(identity.tenant_id)
    if not raw_value:
        return None

    try:
        tenant_id = int(raw_value)
    except ValueError:
        logger.warning(
            "Non-numeric tenant id",
            extra={"header": settings.tenant_header, "value": raw_value[:64]},
        )
        return None

    tenant = (
        db_session.query(Tenant)
        .filter(Tenant.id == tenant_id, Tenant.status == TenantStatus.ACTIVE.value)
        .first()
    )
    if tenant is None:
        logger.info("Tenant not resolved", extra={"tenant_id": tenant_id})
        return None

    return ResolvedTenant(id=tenant.id, name=tenant.name, slug=tenant.slug)
