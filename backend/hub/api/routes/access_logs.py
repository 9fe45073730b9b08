"""
Access log API routes.

SECURITY: All routes require an internal admin identity.
Read-only query surface over the application access log: filtered listing,
aggregate summaries for dashboards and the repeated-failure alert list.
"""

import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from hub.api.dependencies.internal_admin import require_internal_admin
from hub.database.session import get_db_session
from hub.platform.identity import CallerIdentity
from hub.services.access_log_service import AccessLogFilters, AccessLogService, Pagination

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/access-logs", tags=["access-logs"])


# Response models

class AccessLogResponse(BaseModel):
    """One access decision."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    tenant_id: Optional[int] = None
    application_id: Optional[int] = None
    application_slug: Optional[str] = None
    decision: str
    access_type: str
    reason: Optional[str] = None
    access_source: Optional[str] = None
    api_path: Optional[str] = None
    endpoint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class AccessLogListResponse(BaseModel):
    logs: List[AccessLogResponse]
    total: int
    limit: int
    offset: int


class SummaryResponse(BaseModel):
    total: int
    granted: int
    denied: int
    unique_users: int
    unique_tenants: int


class OverviewResponse(SummaryResponse):
    unique_ips: int
    denial_rate: float = Field(..., description="Percentage of denied decisions, 2 decimals")


class ApplicationBreakdown(BaseModel):
    application_id: Optional[int] = None
    application_slug: Optional[str] = None
    application_name: Optional[str] = None
    total: int
    granted: int
    denied: int
    unique_users: int


class TenantBreakdown(BaseModel):
    tenant_id: Optional[int] = None
    tenant_name: Optional[str] = None
    total: int
    granted: int
    denied: int
    unique_users: int


class TimelinePointResponse(BaseModel):
    bucket: datetime
    total: int
    granted: int
    denied: int


class DenialReasonResponse(BaseModel):
    reason: Optional[str] = None
    count: int


class SecurityAlertResponse(BaseModel):
    id: str
    type: str
    severity: str
    title: str
    description: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    failure_count: int
    first_seen: datetime
    last_seen: datetime


# Dependencies

def get_access_log_service(db_session: Session = Depends(get_db_session)) -> AccessLogService:
    return AccessLogService(db_session)


def get_access_log_filters(
    tenant_id: Optional[int] = Query(None, description="Tenant id"),
    application_id: Optional[int] = Query(None, description="Application id"),
    application_slug: Optional[str] = Query(None, description="Application slug", max_length=100),
    decision: Optional[Literal["granted", "denied"]] = Query(None),
    access_type: Optional[Literal["request", "granted", "revoked"]] = Query(None),
    user_id: Optional[str] = Query(None, max_length=255),
    ip_address: Optional[str] = Query(None, max_length=45),
    start_date: Optional[datetime] = Query(None, description="Inclusive lower bound"),
    end_date: Optional[datetime] = Query(None, description="Inclusive upper bound"),
) -> AccessLogFilters:
    return AccessLogFilters(
        tenant_id=tenant_id,
        application_id=application_id,
        application_slug=application_slug,
        decision=decision,
        access_type=access_type,
        user_id=user_id,
        ip_address=ip_address,
        start_date=start_date,
        end_date=end_date,
    )


# Routes

@router.get("", response_model=AccessLogListResponse)
def list_access_logs(
    filters: AccessLogFilters = Depends(get_access_log_filters),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    sort_by: Literal["timestamp", "tenant", "user", "application"] = Query("timestamp"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    service: AccessLogService = Depends(get_access_log_service),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    """List access decisions, newest first by default."""
    pagination = Pagination(limit=limit, offset=offset, sort_by=sort_by, sort_order=sort_order)
    logs = service.find_filtered(filters, pagination)
    return AccessLogListResponse(
        logs=[AccessLogResponse.model_validate(entry) for entry in logs],
        total=service.count(filters),
        limit=limit,
        offset=offset,
    )


@router.get("/summary", response_model=SummaryResponse)
def get_summary(
    filters: AccessLogFilters = Depends(get_access_log_filters),
    service: AccessLogService = Depends(get_access_log_service),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    return SummaryResponse(**service.get_summary(filters).to_dict())


@router.get("/overview", response_model=OverviewResponse)
def get_overview(
    filters: AccessLogFilters = Depends(get_access_log_filters),
    service: AccessLogService = Depends(get_access_log_service),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    return OverviewResponse(**service.get_overview(filters).to_dict())


@router.get("/by-application", response_model=List[ApplicationBreakdown])
def get_by_application(
    filters: AccessLogFilters = Depends(get_access_log_filters),
    service: AccessLogService = Depends(get_access_log_service),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    return service.get_by_application(filters)


@router.get("/by-tenant", response_model=List[TenantBreakdown])
def get_by_tenant(
    filters: AccessLogFilters = Depends(get_access_log_filters),
    service: AccessLogService = Depends(get_access_log_service),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    return service.get_by_tenant(filters)


@router.get("/timeline", response_model=List[TimelinePointResponse])
def get_timeline(
    period: Literal["hour", "day", "week", "month"] = Query("day"),
    filters: AccessLogFilters = Depends(get_access_log_filters),
    service: AccessLogService = Depends(get_access_log_service),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    return [point.to_dict() for point in service.get_timeline(filters, period)]


@router.get("/top-denial-reasons", response_model=List[DenialReasonResponse])
def get_top_denial_reasons(
    limit: int = Query(10, ge=1, le=100),
    filters: AccessLogFilters = Depends(get_access_log_filters),
    service: AccessLogService = Depends(get_access_log_service),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    return service.get_top_denial_reasons(filters, limit=limit)


@router.get("/alerts", response_model=List[SecurityAlertResponse])
def get_security_alerts(
    severity: Optional[Literal["low", "medium", "high"]] = Query(None),
    hours: Optional[int] = Query(None, ge=1, le=24 * 30),
    limit: Optional[int] = Query(None, ge=1, le=100),
    service: AccessLogService = Depends(get_access_log_service),
    admin: CallerIdentity = Depends(require_internal_admin),
):
    """Repeated-failure alerts for the trailing window."""
    alerts = service.get_security_alerts(severity=severity, hours=hours, limit=limit)
    logger.info(
        "Security alerts listed",
        extra={"user_id": admin.user_id, "alert_count": len(alerts)},
    )
    return [alert.to_dict() for alert in alerts]
