"""
Audit Log service for application access decisions.

CRITICAL REQUIREMENTS:
- The log is append-only; the only delete path is retention cleanup
- Every authorization decision writes exactly one row
- Failed writes MUST fall back to the secondary logger and never crash the
  request flow

Also provides the read side for dashboards: filtered listing, aggregate
summaries, a timeline and a threshold-based security alert heuristic.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, distinct, func
from sqlalchemy.orm import Query, Session

from hub.config.settings import HubSettings, get_settings
from hub.entitlements.errors import validation_error
from hub.models.access_log import AccessDecision, AccessLogEntry, AccessSource, AccessType
from hub.models.application import Application
from hub.models.base import generate_uuid, normalize_instant, utc_now
from hub.models.tenant import Tenant

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("hub.audit.fallback")

MAX_PAGE_SIZE = 500
TIMELINE_PERIODS = ("hour", "day", "week", "month")

_SORT_COLUMNS = {
    "timestamp": AccessLogEntry.created_at,
    "tenant": AccessLogEntry.tenant_id,
    "user": AccessLogEntry.user_id,
    "application": AccessLogEntry.application_slug,
}


def _value(item: Any) -> Any:
    return item.value if hasattr(item, "value") else item


@dataclass(frozen=True)
class RequestInfo:
    """Client details of the request that produced a decision."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None

    @property
    def endpoint(self) -> Optional[str]:
        if not self.path:
            return None
        return f"{self.method} {self.path}" if self.method else self.path


@dataclass
class AccessEvent:
    """
    One decision to be written to the access log.

    Use this to construct entries before writing them.
    """
    decision: AccessDecision
    access_type: AccessType = AccessType.REQUEST
    reason: Optional[str] = None
    user_id: Optional[str] = None
    tenant_id: Optional[int] = None
    application_id: Optional[int] = None
    application_slug: Optional[str] = None
    access_source: Optional[AccessSource] = None
    request_info: RequestInfo = field(default_factory=RequestInfo)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to column values for insertion."""
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "application_id": self.application_id,
            "application_slug": self.application_slug,
            "decision": _value(self.decision),
            "access_type": _value(self.access_type),
            "reason": self.reason[:255] if self.reason else None,
            "access_source": _value(self.access_source) if self.access_source else None,
            "api_path": self.request_info.path,
            "endpoint": self.request_info.endpoint,
            "ip_address": self.request_info.ip_address,
            "user_agent": self.request_info.user_agent,
            "created_at": self.timestamp,
        }


@dataclass
class AccessLogFilters:
    tenant_id: Optional[int] = None
    application_id: Optional[int] = None
    application_slug: Optional[str] = None
    decision: Optional[str] = None
    access_type: Optional[str] = None
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class Pagination:
    limit: int = 50
    offset: int = 0
    sort_by: str = "timestamp"
    sort_order: str = "desc"

    def __post_init__(self):
        if self.limit < 1 or self.limit > MAX_PAGE_SIZE:
            raise validation_error(f"limit must be between 1 and {MAX_PAGE_SIZE}", limit=self.limit)
        if self.offset < 0:
            raise validation_error("offset must not be negative", offset=self.offset)
        if self.sort_by not in _SORT_COLUMNS:
            raise validation_error("Invalid sort field", sort_by=self.sort_by, allowed=sorted(_SORT_COLUMNS))
        if self.sort_order not in ("asc", "desc"):
            raise validation_error("sort_order must be asc or desc", sort_order=self.sort_order)


@dataclass
class AccessSummary:
    total: int
    granted: int
    denied: int
    unique_users: int
    unique_tenants: int

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class AccessOverview(AccessSummary):
    unique_ips: int = 0
    denial_rate: float = 0.0


@dataclass
class TimelinePoint:
    bucket: datetime
    total: int = 0
    granted: int = 0
    denied: int = 0

    def to_dict(self) -> dict:
        return {
            "bucket": self.bucket.isoformat(),
            "total": self.total,
            "granted": self.granted,
            "denied": self.denied,
        }


@dataclass
class SecurityAlert:
    id: str
    type: str
    severity: str
    title: str
    description: str
    user_id: Optional[str]
    ip_address: Optional[str]
    failure_count: int
    first_seen: datetime
    last_seen: datetime

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        data["first_seen"] = self.first_seen.isoformat()
        data["last_seen"] = self.last_seen.isoformat()
        return data


def truncate_to_period(value: datetime, period: str) -> datetime:
    """Start of the hour/day/week (Monday)/month bucket containing `value`."""
    value = normalize_instant(value)
    if period == "hour":
        return value.replace(minute=0, second=0)
    day = value.replace(hour=0, minute=0, second=0)
    if period == "day":
        return day
    if period == "week":
        return day - timedelta(days=day.weekday())
    if period == "month":
        return day.replace(day=1)
    raise validation_error("Invalid timeline period", period=period, allowed=list(TIMELINE_PERIODS))


class AccessLogService:
    """Append and query application access decisions."""

    def __init__(self, db_session: Session, settings: Optional[HubSettings] = None):
        self.db = db_session
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, event: AccessEvent, commit: bool = True) -> Optional[AccessLogEntry]:
        """
        Append one access log row.

        With commit=False the row joins the caller's transaction and write
        errors surface from the caller's commit. With commit=True a failed
        write is rolled back, sent to the fallback logger and None is
        returned.
        """
        entry_id = generate_uuid()
        entry = AccessLogEntry(id=entry_id, **event.to_dict())

        if not commit:
            self.db.add(entry)
            return entry

        try:
            self.db.add(entry)
            self.db.commit()
        except Exception as e:
            try:
                self.db.rollback()
            except Exception as rollback_error:
                logger.error("Rollback after failed access log write failed", extra={"error": str(rollback_error)})
            self._write_fallback_log(event, entry_id, str(e))
            return None

        logger.info(
            "Access decision recorded",
            extra={
                "access_log_id": entry_id,
                "tenant_id": event.tenant_id,
                "user_id": event.user_id,
                "application_slug": event.application_slug,
                "decision": _value(event.decision),
                "reason": event.reason,
            },
        )
        return entry

    def log_granted(
        self,
        user_id: str,
        tenant_id: int,
        application_id: int,
        application_slug: str,
        access_source: Optional[AccessSource] = None,
        request_info: Optional[RequestInfo] = None,
        reason: str = "access granted",
        commit: bool = True,
    ) -> Optional[AccessLogEntry]:
        return self.create(
            AccessEvent(
                decision=AccessDecision.GRANTED,
                reason=reason,
                user_id=user_id,
                tenant_id=tenant_id,
                application_id=application_id,
                application_slug=application_slug,
                access_source=access_source,
                request_info=request_info or RequestInfo(),
            ),
            commit=commit,
        )

    def log_denied(
        self,
        reason: str,
        user_id: Optional[str] = None,
        tenant_id: Optional[int] = None,
        application_id: Optional[int] = None,
        application_slug: Optional[str] = None,
        request_info: Optional[RequestInfo] = None,
        commit: bool = True,
    ) -> Optional[AccessLogEntry]:
        return self.create(
            AccessEvent(
                decision=AccessDecision.DENIED,
                reason=reason,
                user_id=user_id,
                tenant_id=tenant_id,
                application_id=application_id,
                application_slug=application_slug,
                request_info=request_info or RequestInfo(),
            ),
            commit=commit,
        )

    def clean_old_logs(self, days_old: Optional[int] = None) -> int:
        """
        Delete rows older than `days_old` days (default: configured retention).

        Returns:
            Number of rows deleted
        """
        days_old = self.settings.access_log_retention_days if days_old is None else days_old
        if days_old < 1:
            raise validation_error("days_old must be at least 1", days_old=days_old)
        cutoff = utc_now() - timedelta(days=days_old)

        result = self.db.execute(
            delete(AccessLogEntry).where(AccessLogEntry.created_at < cutoff)
        )
        self.db.commit()

        deleted = result.rowcount or 0
        logger.info(
            "Access log retention applied",
            extra={"cutoff": cutoff.isoformat(), "deleted": deleted},
        )
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_filtered(
        self,
        filters: Optional[AccessLogFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> List[AccessLogEntry]:
        pagination = pagination or Pagination()
        column = _SORT_COLUMNS[pagination.sort_by]
        order = column.asc() if pagination.sort_order == "asc" else column.desc()

        query = self._apply_filters(self.db.query(AccessLogEntry), filters)
        return (
            query.order_by(order, AccessLogEntry.created_at.desc(), AccessLogEntry.id)
            .offset(pagination.offset)
            .limit(pagination.limit)
            .all()
        )

    def count(self, filters: Optional[AccessLogFilters] = None) -> int:
        query = self._apply_filters(self.db.query(func.count(AccessLogEntry.id)), filters)
        return query.scalar() or 0

    def get_summary(self, filters: Optional[AccessLogFilters] = None) -> AccessSummary:
        row = self._apply_filters(
            self.db.query(
                func.count(AccessLogEntry.id),
                func.count(case((AccessLogEntry.decision == AccessDecision.GRANTED.value, 1))),
                func.count(case((AccessLogEntry.decision == AccessDecision.DENIED.value, 1))),
                func.count(distinct(AccessLogEntry.user_id)),
                func.count(distinct(AccessLogEntry.tenant_id)),
            ),
            filters,
        ).one()
        return AccessSummary(
            total=row[0] or 0,
            granted=row[1] or 0,
            denied=row[2] or 0,
            unique_users=row[3] or 0,
            unique_tenants=row[4] or 0,
        )

    def get_overview(self, filters: Optional[AccessLogFilters] = None) -> AccessOverview:
        summary = self.get_summary(filters)
        unique_ips = self._apply_filters(
            self.db.query(func.count(distinct(AccessLogEntry.ip_address))), filters
        ).scalar() or 0
        denial_rate = round(summary.denied / summary.total * 100, 2) if summary.total else 0.0
        return AccessOverview(
            total=summary.total,
            granted=summary.granted,
            denied=summary.denied,
            unique_users=summary.unique_users,
            unique_tenants=summary.unique_tenants,
            unique_ips=unique_ips,
            denial_rate=denial_rate,
        )

    def get_by_application(self, filters: Optional[AccessLogFilters] = None) -> List[dict]:
        total = func.count(AccessLogEntry.id)
        query = (
            self.db.query(
                AccessLogEntry.application_id,
                AccessLogEntry.application_slug,
                Application.name,
                total,
                func.count(case((AccessLogEntry.decision == AccessDecision.GRANTED.value, 1))),
                func.count(case((AccessLogEntry.decision == AccessDecision.DENIED.value, 1))),
                func.count(distinct(AccessLogEntry.user_id)),
            )
            .outerjoin(Application, Application.id == AccessLogEntry.application_id)
        )
        rows = (
            self._apply_filters(query, filters)
            .group_by(AccessLogEntry.application_id, AccessLogEntry.application_slug, Application.name)
            .order_by(total.desc())
            .all()
        )
        return [
            {
                "application_id": application_id,
                "application_slug": slug,
                "application_name": name,
                "total": count,
                "granted": granted,
                "denied": denied,
                "unique_users": users,
            }
            for application_id, slug, name, count, granted, denied, users in rows
        ]

    def get_by_tenant(self, filters: Optional[AccessLogFilters] = None) -> List[dict]:
        total = func.count(AccessLogEntry.id)
        query = (
            self.db.query(
                AccessLogEntry.tenant_id,
                Tenant.name,
                total,
                func.count(case((AccessLogEntry.decision == AccessDecision.GRANTED.value, 1))),
                func.count(case((AccessLogEntry.decision == AccessDecision.DENIED.value, 1))),
                func.count(distinct(AccessLogEntry.user_id)),
            )
            .outerjoin(Tenant, Tenant.id == AccessLogEntry.tenant_id)
        )
        rows = (
            self._apply_filters(query, filters)
            .group_by(AccessLogEntry.tenant_id, Tenant.name)
            .order_by(total.desc())
            .all()
        )
        return [
            {
                "tenant_id": tenant_id,
                "tenant_name": name,
                "total": count,
                "granted": granted,
                "denied": denied,
                "unique_users": users,
            }
            for tenant_id, name, count, granted, denied, users in rows
        ]

    def get_timeline(self, filters: Optional[AccessLogFilters] = None, period: str = "day") -> List[TimelinePoint]:
        """Decision counts bucketed by hour, day, week or month, oldest first."""
        if period not in TIMELINE_PERIODS:
            raise validation_error("Invalid timeline period", period=period, allowed=list(TIMELINE_PERIODS))

        rows = self._apply_filters(
            self.db.query(AccessLogEntry.created_at, AccessLogEntry.decision), filters
        ).all()

        buckets: Dict[datetime, TimelinePoint] = {}
        for created_at, decision in rows:
            key = truncate_to_period(created_at, period)
            point = buckets.setdefault(key, TimelinePoint(bucket=key))
            point.total += 1
            if decision == AccessDecision.GRANTED.value:
                point.granted += 1
            elif decision == AccessDecision.DENIED.value:
                point.denied += 1
        return [buckets[key] for key in sorted(buckets)]

    def get_top_denial_reasons(self, filters: Optional[AccessLogFilters] = None, limit: int = 10) -> List[dict]:
        count = func.count(AccessLogEntry.id)
        rows = (
            self._apply_filters(self.db.query(AccessLogEntry.reason, count), filters)
            .filter(AccessLogEntry.decision == AccessDecision.DENIED.value)
            .group_by(AccessLogEntry.reason)
            .order_by(count.desc(), AccessLogEntry.reason)
            .limit(limit)
            .all()
        )
        return [{"reason": reason, "count": total} for reason, total in rows]

    def get_security_alerts(
        self,
        severity: Optional[str] = None,
        hours: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityAlert]:
        """
        Repeated-failure alerts.

        Groups denied requests in the trailing window by (user, ip); every
        group with at least `alert_min_failures` rows becomes a
        medium-severity "repeated_failures" alert. This is a threshold
        heuristic, not an anomaly detector.
        """
        if severity is not None and severity != "medium":
            return []

        hours = self.settings.alert_window_hours if hours is None else hours
        limit = self.settings.alert_limit if limit is None else limit
        since = utc_now() - timedelta(hours=hours)

        failures = func.count(AccessLogEntry.id)
        rows = (
            self.db.query(
                AccessLogEntry.user_id,
                AccessLogEntry.ip_address,
                failures,
                func.min(AccessLogEntry.created_at),
                func.max(AccessLogEntry.created_at),
            )
            .filter(
                AccessLogEntry.decision == AccessDecision.DENIED.value,
                AccessLogEntry.access_type == AccessType.REQUEST.value,
                AccessLogEntry.created_at >= since,
            )
            .group_by(AccessLogEntry.user_id, AccessLogEntry.ip_address)
            .having(failures >= self.settings.alert_min_failures)
            .order_by(failures.desc())
            .limit(limit)
            .all()
        )

        alerts = []
        for index, (user_id, ip_address, count, first_seen, last_seen) in enumerate(rows, start=1):
            alerts.append(
                SecurityAlert(
                    id=f"alert_{index}",
                    type="repeated_failures",
                    severity="medium",
                    title="Repeated Access Failures",
                    description=(
                        f"User {user_id or 'anonymous'} had {count} denied requests "
                        f"from {ip_address or 'unknown IP'} in the last {hours}h"
                    ),
                    user_id=user_id,
                    ip_address=ip_address,
                    failure_count=count,
                    first_seen=normalize_instant(first_seen),
                    last_seen=normalize_instant(last_seen),
                )
            )
        return alerts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_filters(query: Query, filters: Optional[AccessLogFilters]) -> Query:
        if filters is None:
            return query
        if filters.tenant_id is not None:
            query = query.filter(AccessLogEntry.tenant_id == filters.tenant_id)
        if filters.application_id is not None:
            query = query.filter(AccessLogEntry.application_id == filters.application_id)
        if filters.application_slug:
            query = query.filter(AccessLogEntry.application_slug == filters.application_slug)
        if filters.decision:
            query = query.filter(AccessLogEntry.decision == _value(filters.decision))
        if filters.access_type:
            query = query.filter(AccessLogEntry.access_type == _value(filters.access_type))
        if filters.user_id:
            query = query.filter(AccessLogEntry.user_id == filters.user_id)
        if filters.ip_address:
            query = query.filter(AccessLogEntry.ip_address == filters.ip_address)
        if filters.start_date:
            query = query.filter(AccessLogEntry.created_at >= normalize_instant(filters.start_date))
        if filters.end_date:
            query = query.filter(AccessLogEntry.created_at <= normalize_instant(filters.end_date))
        return query

    @staticmethod
    def _write_fallback_log(event: AccessEvent, entry_id: str, error_reason: str) -> None:
        """Write the decision to the fallback logger when the database write fails."""
        fallback_logger.error(
            "ACCESS_LOG_FALLBACK",
            extra={
                "access_log_id": entry_id,
                "error_reason": error_reason,
                **{key: (value.isoformat() if isinstance(value, datetime) else value)
                   for key, value in event.to_dict().items()},
            },
        )
