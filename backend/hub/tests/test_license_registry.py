"""
Tests for the License Registry.

Tests cover:
- Granting licenses (duplicates, trial flag, provisioning)
- Status transitions and the active/status mirror
- License checks used by the gate
- Atomic seat accounting
- The expiry sweep
"""

from datetime import timedelta

import pytest

from hub.entitlements.errors import EntitlementError, ErrorKind
from hub.models import Application, License
from hub.models.base import utc_now
from hub.services.license_registry import LicenseRegistry
from hub.services.schema_provisioner import HookSchemaProvisioner, ProvisioningHook


@pytest.fixture
def registry(db_session):
    return LicenseRegistry(db_session)


@pytest.fixture
def provisioned_app(db_session):
    application = Application(slug="pm", name="Patient Management", requires_provisioning=True)
    db_session.add(application)
    db_session.commit()
    return application


# =============================================================================
# Granting
# =============================================================================

class TestGrantLicense:
    """Tests for grant_license."""

    def test_grant_creates_active_license(self, registry, tenant, application):
        license = registry.grant_license(tenant.id, application.id, seats_purchased=5)

        assert license.status == "active"
        assert license.active is True
        assert license.seats_purchased == 5
        assert license.seats_used == 0
        assert license.trial_used is False

    def test_trial_license_sets_trial_used_and_is_not_usable(self, registry, tenant, application):
        license = registry.grant_license(tenant.id, application.id, status="trial")

        assert license.trial_used is True
        assert license.active is False
        assert registry.has_active_license(tenant.id, "tq") is False

    def test_second_grant_is_duplicate(self, registry, tenant, application, license):
        with pytest.raises(EntitlementError) as exc_info:
            registry.grant_license(tenant.id, application.id)

        assert exc_info.value.kind == ErrorKind.DUPLICATE_LICENSE
        assert exc_info.value.http_status == 409

    def test_cannot_start_revoked(self, registry, tenant, application):
        with pytest.raises(EntitlementError) as exc_info:
            registry.grant_license(tenant.id, application.id, status="revoked")
        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    def test_unknown_status(self, registry, tenant, application):
        with pytest.raises(EntitlementError) as exc_info:
            registry.grant_license(tenant.id, application.id, status="paused")
        assert "allowed" in exc_info.value.details

    def test_unknown_tenant(self, registry, application):
        with pytest.raises(EntitlementError) as exc_info:
            registry.grant_license(404, application.id)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_provisioning_runs_on_first_grant(self, db_session, tenant, provisioned_app):
        calls = []
        provisioner = HookSchemaProvisioner({
            "pm": ProvisioningHook(
                probe=lambda t, a: False,
                provision=lambda t, a: calls.append((t.id, a.slug)),
            )
        })

        LicenseRegistry(db_session, provisioner).grant_license(tenant.id, provisioned_app.id)

        assert calls == [(tenant.id, "pm")]

    def test_provisioning_skipped_when_probe_finds_schema(self, db_session, tenant, provisioned_app):
        calls = []
        provisioner = HookSchemaProvisioner({
            "pm": ProvisioningHook(probe=lambda t, a: True, provision=lambda t, a: calls.append(a.slug))
        })

        LicenseRegistry(db_session, provisioner).grant_license(tenant.id, provisioned_app.id)

        assert calls == []

    def test_provisioning_failure_keeps_license(self, db_session, tenant, provisioned_app):
        def boom(t, a):
            raise RuntimeError("schema locked")

        provisioner = HookSchemaProvisioner({"pm": ProvisioningHook(probe=lambda t, a: False, provision=boom)})
        registry = LicenseRegistry(db_session, provisioner)

        with pytest.raises(EntitlementError) as exc_info:
            registry.grant_license(tenant.id, provisioned_app.id)

        assert exc_info.value.kind == ErrorKind.PROVISIONING_FAILED
        assert exc_info.value.details["error"] == "schema locked"
        assert registry.get_for(tenant.id, provisioned_app.id) is not None


# =============================================================================
# Status transitions
# =============================================================================

class TestLicenseStatus:
    """Status changes keep `active` equal to status == active."""

    def test_suspend_and_reactivate(self, registry, license):
        suspended = registry.suspend(license.id)
        assert suspended.status == "suspended"
        assert suspended.active is False

        reactivated = registry.reactivate(license.id)
        assert reactivated.status == "active"
        assert reactivated.active is True

    def test_revoked_is_terminal(self, registry, license):
        registry.revoke(license.id)

        with pytest.raises(EntitlementError) as exc_info:
            registry.reactivate(license.id)
        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    def test_update_seats_and_clear_expiry(self, registry, license):
        registry.update(license.id, expires_at=utc_now() + timedelta(days=30))
        updated = registry.update(license.id, expires_at=None, seats_purchased=None)

        assert updated.expires_at is None
        assert updated.seats_purchased is None

    def test_update_requires_a_field(self, registry, license):
        with pytest.raises(EntitlementError):
            registry.update(license.id)


# =============================================================================
# License checks
# =============================================================================

class TestLicenseChecks:
    """Tests for check_license / find_license."""

    def test_active_license_is_found(self, registry, tenant, license):
        assert registry.check_license(tenant.id, "tq").id == license.id
        assert registry.get_allowed_app_slugs(tenant.id) == ["tq"]

    def test_expired_license_is_not_usable(self, registry, db_session, tenant, license):
        license.expires_at = utc_now() - timedelta(seconds=1)
        db_session.commit()

        assert registry.check_license(tenant.id, "tq") is None
        assert registry.count_active_licenses(tenant.id) == 0

    def test_status_and_flag_must_agree(self, registry, db_session, tenant, license):
        license.active = False
        db_session.commit()

        assert registry.has_active_license(tenant.id, "tq") is False

    def test_other_tenant_has_no_license(self, registry, other_tenant, license):
        assert registry.check_license(other_tenant.id, "tq") is None

    def test_find_license_distinguishes_unknown_app(self, registry, tenant, other_tenant, application, license):
        assert registry.find_license(tenant.id, "nope") == (None, None)

        app, found = registry.find_license(other_tenant.id, "tq")
        assert app.id == application.id
        assert found is None

    def test_entitlements_summary(self, registry, tenant, license):
        summary = registry.get_entitlements_summary(tenant.id)

        assert summary["totals"]["licenses"] == 1
        assert summary["totals"]["active_licenses"] == 1
        assert summary["totals"]["seats_purchased"] == 2
        assert summary["licenses"][0]["seats"]["available"] == 2
        assert summary["licenses"][0]["active_users"] == 0


# =============================================================================
# Seats
# =============================================================================

class TestSeats:
    """Atomic seat accounting."""

    def test_increment_and_decrement(self, registry, tenant, application, license):
        assert registry.increment_seat(tenant.id, application.id)
        assert registry.check_seat_availability(tenant.id, application.id).used == 1

        assert registry.decrement_seat(tenant.id, application.id)
        assert registry.check_seat_availability(tenant.id, application.id).used == 0

    def test_decrement_clamps_at_zero(self, registry, tenant, application, license):
        registry.decrement_seat(tenant.id, application.id)

        assert registry.get(license.id).seats_used == 0

    def test_enforced_increment_stops_at_capacity(self, registry, tenant, application, license):
        assert registry.increment_seat(tenant.id, application.id, enforce_capacity=True)
        assert registry.increment_seat(tenant.id, application.id, enforce_capacity=True)
        assert not registry.increment_seat(tenant.id, application.id, enforce_capacity=True)

        seats = registry.check_seat_availability(tenant.id, application.id)
        assert seats.used == 2
        assert seats.available == 0

    def test_unlimited_license_never_fills(self, registry, db_session, tenant, application, license):
        license.seats_purchased = None
        db_session.commit()

        for _ in range(5):
            assert registry.increment_seat(tenant.id, application.id, enforce_capacity=True)

        seats = registry.check_seat_availability(tenant.id, application.id)
        assert seats.unlimited
        assert seats.available is None

    def test_missing_license_has_no_seats(self, registry, other_tenant, application):
        with pytest.raises(EntitlementError) as exc_info:
            registry.check_seat_availability(other_tenant.id, application.id)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND


# =============================================================================
# Expiry sweep
# =============================================================================

class TestExpireLicenses:
    """Tests for expire_licenses."""

    def test_past_expiry_flips_to_expired(self, registry, db_session, tenant, application, license):
        license.expires_at = utc_now() - timedelta(hours=1)
        db_session.commit()

        pairs = registry.expire_licenses()

        assert pairs == [(tenant.id, application.id)]
        refreshed = registry.get(license.id)
        assert refreshed.status == "expired"
        assert refreshed.active is False

    def test_revoked_stays_revoked(self, registry, db_session, license):
        license.expires_at = utc_now() - timedelta(hours=1)
        db_session.commit()
        registry.revoke(license.id)

        assert registry.expire_licenses() == []
        assert registry.get(license.id).status == "revoked"

    def test_future_expiry_untouched(self, registry, db_session, license):
        license.expires_at = utc_now() + timedelta(days=1)
        db_session.commit()

        assert registry.expire_licenses() == []
        assert db_session.query(License).filter(License.status == "active").count() == 1
