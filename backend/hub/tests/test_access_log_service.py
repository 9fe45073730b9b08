"""
Tests for the Access Log service.

Tests cover:
- Writing rows and the fallback logger on failed writes
- Filtering, pagination and sorting
- Aggregates: summary, overview, breakdowns, timeline, denial reasons
- Repeated-failure security alerts
- Retention cleanup
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from hub.entitlements.errors import EntitlementError, ErrorKind
from hub.models import AccessDecision, AccessLogEntry, AccessSource, AccessType
from hub.models.base import utc_now
from hub.services.access_log_service import (
    AccessEvent,
    AccessLogFilters,
    AccessLogService,
    Pagination,
    RequestInfo,
    truncate_to_period,
)


@pytest.fixture
def service(db_session):
    return AccessLogService(db_session)


@pytest.fixture
def log_event(service):
    """Factory writing one access log row."""
    def _log(
        decision="denied",
        user_id="user-1",
        tenant_id=1,
        application_slug="tq",
        application_id=None,
        reason="no_user_access",
        access_type=AccessType.REQUEST,
        ip_address="198.51.100.7",
        timestamp=None,
    ):
        return service.create(
            AccessEvent(
                decision=AccessDecision(decision),
                access_type=access_type,
                reason=reason,
                user_id=user_id,
                tenant_id=tenant_id,
                application_id=application_id,
                application_slug=application_slug,
                request_info=RequestInfo(ip_address=ip_address, user_agent="pytest", method="GET", path="/api/tq"),
                timestamp=timestamp or utc_now(),
            )
        )
    return _log


# =============================================================================
# Writes
# =============================================================================

class TestCreate:
    """Tests for create / log_granted / log_denied."""

    def test_create_persists_all_fields(self, service, db_session):
        entry = service.log_granted(
            user_id="user-1",
            tenant_id=7,
            application_id=3,
            application_slug="tq",
            access_source=AccessSource.STORE,
            request_info=RequestInfo(ip_address="10.1.1.1", user_agent="curl", method="GET", path="/api/tq/x"),
        )

        row = db_session.query(AccessLogEntry).filter(AccessLogEntry.id == entry.id).one()
        assert row.decision == "granted"
        assert row.access_type == "request"
        assert row.access_source == "store"
        assert row.api_path == "/api/tq/x"
        assert row.endpoint == "GET /api/tq/x"
        assert row.user_agent == "curl"
        assert row.created_at.tzinfo is not None

    def test_log_denied_allows_anonymous(self, service, db_session):
        service.log_denied("authentication_required", application_slug="tq")

        row = db_session.query(AccessLogEntry).one()
        assert row.user_id is None
        assert row.tenant_id is None
        assert row.reason == "authentication_required"

    def test_reason_is_truncated(self, log_event, db_session):
        log_event(reason="x" * 400)
        assert len(db_session.query(AccessLogEntry).one().reason) == 255

    def test_failed_write_goes_to_fallback_logger(self, service, db_session, monkeypatch, caplog):
        def failing_commit():
            raise RuntimeError("disk full")

        monkeypatch.setattr(db_session, "commit", failing_commit)

        with caplog.at_level(logging.ERROR, logger="hub.audit.fallback"):
            result = service.log_denied("no_user_access", user_id="user-1", tenant_id=1)

        assert result is None
        records = [r for r in caplog.records if r.name == "hub.audit.fallback"]
        assert len(records) == 1
        assert records[0].getMessage() == "ACCESS_LOG_FALLBACK"
        assert records[0].error_reason == "disk full"
        assert records[0].user_id == "user-1"

    def test_uncommitted_create_joins_caller_transaction(self, service, db_session):
        service.create(AccessEvent(decision=AccessDecision.GRANTED), commit=False)
        db_session.rollback()

        assert db_session.query(AccessLogEntry).count() == 0


# =============================================================================
# Queries
# =============================================================================

class TestFindFiltered:
    """Filtering, pagination and sorting."""

    def test_filters_combine(self, service, log_event):
        log_event(decision="denied", tenant_id=1)
        log_event(decision="granted", tenant_id=1, reason="access granted")
        log_event(decision="denied", tenant_id=2)

        rows = service.find_filtered(AccessLogFilters(tenant_id=1, decision="denied"))

        assert len(rows) == 1
        assert rows[0].tenant_id == 1
        assert service.count(AccessLogFilters(tenant_id=1)) == 2

    def test_date_range_is_inclusive(self, service, log_event):
        base = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        for offset in range(3):
            log_event(timestamp=base + timedelta(days=offset))

        rows = service.find_filtered(AccessLogFilters(start_date=base, end_date=base + timedelta(days=1)))

        assert len(rows) == 2

    def test_newest_first_by_default(self, service, log_event):
        base = utc_now() - timedelta(hours=3)
        for offset in range(3):
            log_event(user_id=f"user-{offset}", timestamp=base + timedelta(hours=offset))

        rows = service.find_filtered()

        assert [r.user_id for r in rows] == ["user-2", "user-1", "user-0"]

    def test_sort_by_user_ascending(self, service, log_event):
        for user_id in ("carol", "alice", "bob"):
            log_event(user_id=user_id)

        rows = service.find_filtered(pagination=Pagination(sort_by="user", sort_order="asc"))

        assert [r.user_id for r in rows] == ["alice", "bob", "carol"]

    def test_limit_and_offset(self, service, log_event):
        base = utc_now() - timedelta(hours=5)
        for offset in range(5):
            log_event(user_id=f"user-{offset}", timestamp=base + timedelta(hours=offset))

        rows = service.find_filtered(pagination=Pagination(limit=2, offset=1))

        assert [r.user_id for r in rows] == ["user-3", "user-2"]

    @pytest.mark.parametrize("kwargs", [
        {"limit": 0},
        {"limit": 501},
        {"offset": -1},
        {"sort_by": "ip"},
        {"sort_order": "sideways"},
    ])
    def test_invalid_pagination(self, kwargs):
        with pytest.raises(EntitlementError) as exc_info:
            Pagination(**kwargs)
        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR


class TestAggregates:
    """Summary, overview, breakdowns, timeline and denial reasons."""

    def test_summary_and_overview(self, service, log_event):
        log_event(decision="granted", user_id="a", tenant_id=1, ip_address="1.1.1.1")
        log_event(decision="denied", user_id="a", tenant_id=1, ip_address="1.1.1.1")
        log_event(decision="denied", user_id="b", tenant_id=2, ip_address="2.2.2.2")

        summary = service.get_summary()
        assert summary.to_dict() == {
            "total": 3,
            "granted": 1,
            "denied": 2,
            "unique_users": 2,
            "unique_tenants": 2,
        }

        overview = service.get_overview()
        assert overview.unique_ips == 2
        assert overview.denial_rate == 66.67

    def test_overview_of_empty_log(self, service):
        overview = service.get_overview()
        assert overview.total == 0
        assert overview.denial_rate == 0.0

    def test_by_application_joins_name(self, service, log_event, application):
        log_event(application_id=application.id, decision="granted")
        log_event(application_id=application.id, decision="denied")

        breakdown = service.get_by_application()

        assert breakdown == [{
            "application_id": application.id,
            "application_slug": "tq",
            "application_name": "Transcription Quote",
            "total": 2,
            "granted": 1,
            "denied": 1,
            "unique_users": 1,
        }]

    def test_by_tenant_joins_name(self, service, log_event, tenant):
        log_event(tenant_id=tenant.id)
        log_event(tenant_id=None, user_id=None)

        breakdown = {row["tenant_id"]: row for row in service.get_by_tenant()}

        assert breakdown[tenant.id]["tenant_name"] == "Clinica Alfa"
        assert breakdown[None]["tenant_name"] is None

    def test_timeline_buckets_by_day(self, service, log_event):
        day = datetime(2026, 5, 4, tzinfo=timezone.utc)
        log_event(decision="granted", timestamp=day + timedelta(hours=1))
        log_event(decision="denied", timestamp=day + timedelta(hours=20))
        log_event(decision="denied", timestamp=day + timedelta(days=1, hours=2))

        points = service.get_timeline(period="day")

        assert [p.bucket for p in points] == [day, day + timedelta(days=1)]
        assert (points[0].total, points[0].granted, points[0].denied) == (2, 1, 1)
        assert points[1].denied == 1

    def test_timeline_rejects_unknown_period(self, service):
        with pytest.raises(EntitlementError):
            service.get_timeline(period="fortnight")

    def test_top_denial_reasons(self, service, log_event):
        for _ in range(3):
            log_event(reason="no_user_access")
        log_event(reason="no_tenant_license")
        log_event(decision="granted", reason="access granted")

        reasons = service.get_top_denial_reasons(limit=5)

        assert reasons == [
            {"reason": "no_user_access", "count": 3},
            {"reason": "no_tenant_license", "count": 1},
        ]


class TestTruncateToPeriod:
    value = datetime(2026, 10, 15, 13, 47, 12, tzinfo=timezone.utc)  # a Thursday

    def test_hour(self):
        assert truncate_to_period(self.value, "hour") == datetime(2026, 10, 15, 13, tzinfo=timezone.utc)

    def test_week_starts_monday(self):
        assert truncate_to_period(self.value, "week") == datetime(2026, 10, 12, tzinfo=timezone.utc)

    def test_month(self):
        assert truncate_to_period(self.value, "month") == datetime(2026, 10, 1, tzinfo=timezone.utc)


# =============================================================================
# Security alerts
# =============================================================================

class TestSecurityAlerts:
    """Repeated-failure heuristic."""

    def test_threshold_reached_raises_alert(self, service, log_event):
        for _ in range(3):
            log_event(user_id="mallory", ip_address="203.0.113.5")

        alerts = service.get_security_alerts()

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.id == "alert_1"
        assert alert.type == "repeated_failures"
        assert alert.severity == "medium"
        assert alert.user_id == "mallory"
        assert alert.ip_address == "203.0.113.5"
        assert alert.failure_count == 3

    def test_below_threshold_is_quiet(self, service, log_event):
        for _ in range(2):
            log_event(user_id="mallory")
        assert service.get_security_alerts() == []

    def test_grouped_by_user_and_ip(self, service, log_event):
        log_event(user_id="mallory", ip_address="203.0.113.5")
        log_event(user_id="mallory", ip_address="203.0.113.6")
        log_event(user_id="mallory", ip_address="203.0.113.7")
        assert service.get_security_alerts() == []

    def test_revocations_do_not_count(self, service, log_event):
        for _ in range(3):
            log_event(user_id="bob", access_type=AccessType.REVOKED, reason="access revoked by admin")
        assert service.get_security_alerts() == []

    def test_outside_window_is_ignored(self, service, log_event):
        old = utc_now() - timedelta(hours=30)
        for offset in range(3):
            log_event(user_id="mallory", timestamp=old + timedelta(minutes=offset))

        assert service.get_security_alerts() == []
        assert len(service.get_security_alerts(hours=48)) == 1

    def test_only_medium_severity_exists(self, service, log_event):
        for _ in range(3):
            log_event(user_id="mallory")

        assert service.get_security_alerts(severity="high") == []
        assert len(service.get_security_alerts(severity="medium")) == 1

    def test_threshold_comes_from_settings(self, db_session, log_event):
        from hub.config.settings import override_settings

        for _ in range(2):
            log_event(user_id="mallory")

        service = AccessLogService(db_session, override_settings(alert_min_failures=2))
        assert len(service.get_security_alerts()) == 1


# =============================================================================
# Retention
# =============================================================================

class TestCleanOldLogs:
    """Tests for clean_old_logs."""

    def test_deletes_only_older_rows(self, service, log_event, db_session):
        log_event(timestamp=utc_now() - timedelta(days=400))
        log_event(timestamp=utc_now() - timedelta(days=10))

        deleted = service.clean_old_logs(days_old=365)

        assert deleted == 1
        assert db_session.query(AccessLogEntry).count() == 1

    def test_default_retention_from_settings(self, service, log_event):
        log_event(timestamp=utc_now() - timedelta(days=366))
        assert service.clean_old_logs() == 1

    def test_rejects_non_positive_days(self, service):
        with pytest.raises(EntitlementError):
            service.clean_old_logs(days_old=0)
