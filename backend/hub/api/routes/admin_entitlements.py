"""
Admin entitlement API routes.

SECURITY: All routes require an internal admin identity.
These endpoints manage application pricing, tenant licenses and user access
grants. Service errors are raised as EntitlementError and rendered by the
handler in hub.api.errors.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from hub.api.dependencies.internal_admin import require_internal_admin
from hub.database.session import get_db_session
from hub.platform.identity import CallerIdentity, extract_client_info
from hub.services.access_grants import AccessGrantStore
from hub.services.access_log_service import RequestInfo
from hub.services.license_registry import LicenseRegistry
from hub.services.pricing_ledger import PricingLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin-entitlements"])


# Request models

class CreatePricingRequest(BaseModel):
    """Request to create a pricing entry."""
    application_id: int = Field(..., ge=1)
    user_type_id: int = Field(..., ge=1)
    price: Decimal = Field(..., description="Price per seat", ge=0)
    currency: Optional[str] = Field(None, description="ISO 4217 code, defaults to the configured currency")
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    valid_from: Optional[datetime] = Field(None, description="Defaults to now")
    valid_to: Optional[datetime] = Field(None, description="Omit for an open-ended price")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and (len(v) != 3 or not v.isalpha()):
            raise ValueError("Currency must be a 3-letter code")
        return v.upper() if v else None


class UpdatePricingRequest(BaseModel):
    """Partial pricing update. Only fields that are sent are changed."""
    price: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = None
    billing_cycle: Optional[Literal["monthly", "yearly"]] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    active: Optional[bool] = None


class SchedulePriceRequest(BaseModel):
    """Request to schedule a future price change."""
    application_id: int = Field(..., ge=1)
    user_type_id: int = Field(..., ge=1)
    price: Decimal = Field(..., ge=0)
    valid_from: datetime = Field(..., description="Must be in the future")
    currency: Optional[str] = None
    billing_cycle: Literal["monthly", "yearly"] = "monthly"


class GrantLicenseRequest(BaseModel):
    application_id: int = Field(..., ge=1)
    seats_purchased: Optional[int] = Field(None, ge=0, description="Omit for unlimited seats")
    expires_at: Optional[datetime] = None
    status: Literal["active", "trial", "suspended"] = "active"


class UpdateLicenseRequest(BaseModel):
    """Partial license update. Send null to clear expires_at or seats_purchased."""
    status: Optional[Literal["active", "trial", "suspended", "expired", "revoked"]] = None
    expires_at: Optional[datetime] = None
    seats_purchased: Optional[int] = Field(None, ge=0)


class GrantAccessRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    application_id: int = Field(..., ge=1)
    user_type_id: int = Field(..., ge=1)
    role_in_app: str = Field("user", description="user, operations, manager or admin")
    expires_at: Optional[datetime] = None


# Helpers

def _request_info(request: Request) -> RequestInfo:
    ip_address, user_agent = extract_client_info(request)
    return RequestInfo(
        ip_address=ip_address,
        user_agent=user_agent,
        method=request.method,
        path=request.url.path,
    )


# Pricing routes

@router.get("/applications/{application_id}/pricing")
def get_application_pricing(
    application_id: int,
    active_only: bool = True,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    rows = PricingLedger(db_session).get_by_application(application_id, active_only=active_only)
    return {"application_id": application_id, "pricing": [row.to_dict() for row in rows]}


@router.get("/applications/{application_id}/pricing/{user_type_id}/history")
def get_pricing_history(
    application_id: int,
    user_type_id: int,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    history = PricingLedger(db_session).get_history(application_id, user_type_id)
    return {"history": [entry.to_dict() for entry in history]}


@router.post("/pricing", status_code=status.HTTP_201_CREATED)
def create_pricing(
    body: CreatePricingRequest,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    entry = PricingLedger(db_session).create(**body.model_dump())
    logger.info("Admin created pricing entry", extra={"pricing_id": entry.id, "user_id": admin.user_id})
    return entry.to_dict()


@router.patch("/pricing/{pricing_id}")
def update_pricing(
    pricing_id: int,
    body: UpdatePricingRequest,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    entry = PricingLedger(db_session).update(pricing_id, **body.model_dump(exclude_unset=True))
    return entry.to_dict()


@router.post("/pricing/{pricing_id}/end")
def end_pricing(
    pricing_id: int,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    return PricingLedger(db_session).end_price(pricing_id).to_dict()


@router.post("/pricing/schedule", status_code=status.HTTP_201_CREATED)
def schedule_price(
    body: SchedulePriceRequest,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    closed, created = PricingLedger(db_session).schedule_price(
        body.application_id,
        body.user_type_id,
        body.price,
        body.valid_from,
        currency=body.currency,
        billing_cycle=body.billing_cycle,
    )
    return {
        "closed": closed.to_dict() if closed else None,
        "scheduled": created.to_dict(),
    }


# License routes

@router.get("/tenants/{tenant_id}/entitlements")
def get_tenant_entitlements(
    tenant_id: int,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    summary = LicenseRegistry(db_session).get_entitlements_summary(tenant_id)
    summary["billing"] = [
        {**item, "total": str(item["total"]) if item["total"] is not None else None}
        for item in AccessGrantStore(db_session).get_billing_summary(tenant_id)
    ]
    return summary


@router.post("/tenants/{tenant_id}/licenses", status_code=status.HTTP_201_CREATED)
def grant_license(
    tenant_id: int,
    body: GrantLicenseRequest,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    license = LicenseRegistry(db_session).grant_license(
        tenant_id,
        body.application_id,
        seats_purchased=body.seats_purchased,
        expires_at=body.expires_at,
        status=body.status,
    )
    return {
        "id": license.id,
        "tenant_id": license.tenant_id,
        "application_id": license.application_id,
        "status": license.status,
        "seats_purchased": license.seats_purchased,
        "seats_used": license.seats_used,
        "expires_at": license.expires_at.isoformat() if license.expires_at else None,
    }


@router.patch("/licenses/{license_id}")
def update_license(
    license_id: int,
    body: UpdateLicenseRequest,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    license = LicenseRegistry(db_session).update(license_id, **body.model_dump(exclude_unset=True))
    return {
        "id": license.id,
        "status": license.status,
        "active": license.active,
        "seats_purchased": license.seats_purchased,
        "seats_used": license.seats_used,
        "expires_at": license.expires_at.isoformat() if license.expires_at else None,
    }


# Grant routes

@router.get("/tenants/{tenant_id}/users/{user_id}/grants")
def list_user_grants(
    tenant_id: int,
    user_id: str,
    active_only: bool = True,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    grants = AccessGrantStore(db_session).find_by_user(user_id, tenant_id, active_only=active_only)
    return {"grants": [grant.to_dict() for grant in grants]}


@router.post("/tenants/{tenant_id}/grants", status_code=status.HTTP_201_CREATED)
def grant_access(
    tenant_id: int,
    body: GrantAccessRequest,
    request: Request,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    grant = AccessGrantStore(db_session).grant_access(
        user_id=body.user_id,
        tenant_id=tenant_id,
        application_id=body.application_id,
        user_type_id=body.user_type_id,
        role_in_app=body.role_in_app,
        granted_by=admin.user_id,
        expires_at=body.expires_at,
        request_info=_request_info(request),
    )
    return grant.to_dict()


@router.delete("/grants/{grant_id}")
def revoke_access(
    grant_id: int,
    request: Request,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    grant = AccessGrantStore(db_session).revoke(
        grant_id,
        revoked_by=admin.user_id,
        request_info=_request_info(request),
    )
    return grant.to_dict()


@router.get("/tenants/{tenant_id}/users/{user_id}/allowed-apps", response_model=List[dict])
def get_user_allowed_apps(
    tenant_id: int,
    user_id: str,
    db_session: Session = Depends(get_db_session),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    return AccessGrantStore(db_session).get_user_allowed_apps(user_id, tenant_id)
