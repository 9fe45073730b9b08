"""
License Registry.

Per (tenant, application) license records with status, expiry and seat
capacity.

Handles:
- Granting a license (one per tenant/application, first-grant provisioning)
- Status transitions: active <-> suspended, active -> expired, -> revoked
- License checks used by the authorization gate
- Seat accounting with atomic single-statement updates
- The periodic expiry sweep

`active` always mirrors `status == "active"`; both are written together.
The unique constraint on (tenant_id, application_id) is the authority for
"already licensed"; the lookup before insert only produces a friendlier
error.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, case, func, inspect, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hub.entitlements.errors import EntitlementError, ErrorKind, not_found, validation_error
from hub.models.application import Application
from hub.models.base import normalize_instant, utc_now
from hub.models.grant import AccessGrant
from hub.models.license import LICENSE_STATUSES, License, LicenseStatus
from hub.models.tenant import Tenant
from hub.services.schema_provisioner import NullSchemaProvisioner, SchemaProvisioner

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(frozen=True)
class SeatInfo:
    """Seat snapshot. purchased/available are None for unlimited licenses."""
    purchased: Optional[int]
    used: int
    available: Optional[int]

    @property
    def unlimited(self) -> bool:
        return self.purchased is None

    @classmethod
    def from_license(cls, license: License) -> "SeatInfo":
        return cls(
            purchased=license.seats_purchased,
            used=license.seats_used or 0,
            available=license.seats_available,
        )

    def to_dict(self) -> dict:
        return {
            "purchased": self.purchased,
            "used": self.used,
            "available": self.available,
            "unlimited": self.unlimited,
        }


def usable_license_filter(now: datetime):
    """SQL criteria for a license that is status active, flagged active and unexpired."""
    return and_(
        License.status == LicenseStatus.ACTIVE.value,
        License.active.is_(True),
        or_(License.expires_at.is_(None), License.expires_at > now),
    )


class LicenseRegistry:
    """Service for tenant application licenses."""

    def __init__(self, db_session: Session, provisioner: Optional[SchemaProvisioner] = None):
        """
        Initialize license registry.

        Args:
            db_session: Database session
            provisioner: Schema provisioning collaborator for first grants
        """
        self.db = db_session
        self.provisioner = provisioner or NullSchemaProvisioner()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, license_id: int) -> License:
        license = self.db.query(License).filter(License.id == license_id).first()
        if not license:
            raise not_found("License", license_id)
        return license

    def get_for(self, tenant_id: int, application_id: int) -> Optional[License]:
        return (
            self.db.query(License)
            .filter(License.tenant_id == tenant_id, License.application_id == application_id)
            .first()
        )

    def find_license(
        self, tenant_id: int, application_slug: str
    ) -> Tuple[Optional[Application], Optional[License]]:
        """
        Resolve an application by slug together with the tenant's license.

        A single outer-joined query, so callers can tell an unknown
        application from a missing license in one round trip.
        """
        row = (
            self.db.query(Application, License)
            .outerjoin(
                License,
                and_(License.application_id == Application.id, License.tenant_id == tenant_id),
            )
            .filter(Application.slug == application_slug)
            .first()
        )
        if row is None:
            return None, None
        return row[0], row[1]

    def check_license(self, tenant_id: int, application_slug: str) -> Optional[License]:
        """The tenant's license for the slug if it is active and unexpired, else None."""
        return (
            self.db.query(License)
            .join(Application, Application.id == License.application_id)
            .filter(
                License.tenant_id == tenant_id,
                Application.slug == application_slug,
                usable_license_filter(utc_now()),
            )
            .first()
        )

    def has_active_license(self, tenant_id: int, application_slug: str) -> bool:
        return self.check_license(tenant_id, application_slug) is not None

    def find_by_tenant(
        self,
        tenant_id: int,
        status: Optional[str] = None,
        include_expired: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> List[License]:
        query = self.db.query(License).filter(License.tenant_id == tenant_id)
        if status:
            query = query.filter(License.status == status)
        if not include_expired:
            now = utc_now()
            query = query.filter(or_(License.expires_at.is_(None), License.expires_at > now))
        return query.order_by(License.activated_at.desc(), License.id.desc()).offset(offset).limit(limit).all()

    def count_active_licenses(self, tenant_id: int) -> int:
        return (
            self.db.query(func.count(License.id))
            .filter(License.tenant_id == tenant_id, usable_license_filter(utc_now()))
            .scalar()
        ) or 0

    def get_allowed_app_slugs(self, tenant_id: int) -> List[str]:
        """Slugs of every application the tenant currently holds a usable license for."""
        rows = (
            self.db.query(Application.slug)
            .join(License, License.application_id == Application.id)
            .filter(License.tenant_id == tenant_id, usable_license_filter(utc_now()))
            .order_by(Application.slug)
            .all()
        )
        return [slug for (slug,) in rows]

    def check_seat_availability(self, tenant_id: int, application_id: int) -> SeatInfo:
        """
        Purchased/used/available seats for a license.

        Informational only; the gate reports it but never blocks on it.
        """
        license = self.get_for(tenant_id, application_id)
        if license is None:
            raise not_found("License", {"tenant_id": tenant_id, "application_id": application_id})
        return SeatInfo.from_license(license)

    def can_add_user(self, license: License) -> bool:
        return license.can_add_user()

    def get_entitlements_summary(self, tenant_id: int) -> dict:
        """
        Licenses of a tenant with their active users and seat totals.

        Returns:
            dict with "licenses" (one entry per license) and "totals"
        """
        now = utc_now()
        active_users = (
            self.db.query(AccessGrant.application_id, func.count(AccessGrant.id))
            .filter(
                AccessGrant.tenant_id == tenant_id,
                AccessGrant.active.is_(True),
                or_(AccessGrant.expires_at.is_(None), AccessGrant.expires_at > now),
            )
            .group_by(AccessGrant.application_id)
            .all()
        )
        users_by_app = {application_id: count for application_id, count in active_users}

        rows = (
            self.db.query(License, Application)
            .join(Application, Application.id == License.application_id)
            .filter(License.tenant_id == tenant_id)
            .order_by(Application.name)
            .all()
        )

        licenses = []
        seats_purchased = 0
        seats_used = 0
        unlimited = False
        for license, application in rows:
            seats = SeatInfo.from_license(license)
            licenses.append({
                "license_id": license.id,
                "application_id": application.id,
                "application_slug": application.slug,
                "application_name": application.name,
                "status": license.status,
                "usable": license.is_usable(now),
                "expires_at": license.expires_at.isoformat() if license.expires_at else None,
                "trial_used": license.trial_used,
                "seats": seats.to_dict(),
                "active_users": users_by_app.get(application.id, 0),
            })
            seats_used += seats.used
            if seats.unlimited:
                unlimited = True
            else:
                seats_purchased += seats.purchased

        return {
            "tenant_id": tenant_id,
            "licenses": licenses,
            "totals": {
                "licenses": len(licenses),
                "active_licenses": sum(1 for item in licenses if item["usable"]),
                "seats_purchased": None if unlimited else seats_purchased,
                "seats_used": seats_used,
            },
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def grant_license(
        self,
        tenant_id: int,
        application_id: int,
        seats_purchased: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        status: str = LicenseStatus.ACTIVE.value,
    ) -> License:
        """
        Create the license for a tenant/application pair.

        Applications that require provisioning have their tenant schema
        provisioned after the license is committed; a failure there leaves
        the license in place so the provisioning can be retried.

        Raises:
            EntitlementError: NOT_FOUND, VALIDATION_ERROR, DUPLICATE_LICENSE
                or PROVISIONING_FAILED
        """
        status = self._validate_status(status)
        if status in (LicenseStatus.EXPIRED.value, LicenseStatus.REVOKED.value):
            raise validation_error("A new license cannot start as expired or revoked", status=status)
        self._validate_seats(seats_purchased)

        tenant = self.db.query(Tenant).filter(Tenant.id == tenant_id).first()
        if not tenant:
            raise not_found("Tenant", tenant_id)
        application = self.db.query(Application).filter(Application.id == application_id).first()
        if not application:
            raise not_found("Application", application_id)

        if self.get_for(tenant_id, application_id) is not None:
            raise self._duplicate_error(tenant_id, application_id)

        license = License(
            tenant_id=tenant_id,
            application_id=application_id,
            status=status,
            active=status == LicenseStatus.ACTIVE.value,
            seats_purchased=seats_purchased,
            seats_used=0,
            activated_at=utc_now(),
            expires_at=normalize_instant(expires_at),
            trial_used=status == LicenseStatus.TRIAL.value,
        )
        self.db.add(license)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise self._duplicate_error(tenant_id, application_id) from e

        logger.info(
            "License granted",
            extra={
                "license_id": license.id,
                "tenant_id": tenant_id,
                "application_id": application_id,
                "status": status,
                "seats_purchased": seats_purchased,
            },
        )

        if application.requires_provisioning:
            self._provision(tenant, application)

        return license

    def update(
        self,
        license_id: int,
        status: Optional[str] = None,
        expires_at=_UNSET,
        seats_purchased=_UNSET,
    ) -> License:
        """
        Partially update status, expiry and seat capacity.

        Pass expires_at=None / seats_purchased=None to clear them (no expiry /
        unlimited seats). Revoked licenses are terminal.
        """
        license = self.get(license_id)
        if license.status == LicenseStatus.REVOKED.value:
            raise validation_error("Revoked licenses cannot be changed", license_id=license_id)
        if status is None and expires_at is _UNSET and seats_purchased is _UNSET:
            raise validation_error("No fields to update")

        if status is not None:
            status = self._validate_status(status)
            license.status = status
            license.active = status == LicenseStatus.ACTIVE.value
            if status == LicenseStatus.TRIAL.value:
                license.trial_used = True
        if expires_at is not _UNSET:
            license.expires_at = normalize_instant(expires_at)
        if seats_purchased is not _UNSET:
            self._validate_seats(seats_purchased)
            license.seats_purchased = seats_purchased

        self.db.commit()

        logger.info(
            "License updated",
            extra={
                "license_id": license.id,
                "tenant_id": license.tenant_id,
                "application_id": license.application_id,
                "status": license.status,
            },
        )
        return license

    def suspend(self, license_id: int) -> License:
        return self.update(license_id, status=LicenseStatus.SUSPENDED.value)

    def reactivate(self, license_id: int, expires_at=_UNSET) -> License:
        return self.update(license_id, status=LicenseStatus.ACTIVE.value, expires_at=expires_at)

    def revoke(self, license_id: int) -> License:
        return self.update(license_id, status=LicenseStatus.REVOKED.value)

    def increment_seat(
        self,
        tenant_id: int,
        application_id: int,
        enforce_capacity: bool = False,
        commit: bool = True,
    ) -> bool:
        """
        Atomically add one used seat.

        With enforce_capacity the increment only happens while seats remain,
        as a single conditional UPDATE.

        Returns:
            True if a row was updated
        """
        conditions = [License.tenant_id == tenant_id, License.application_id == application_id]
        if enforce_capacity:
            conditions.append(
                or_(License.seats_purchased.is_(None), License.seats_used < License.seats_purchased)
            )

        result = self.db.execute(
            update(License)
            .where(*conditions)
            .values(seats_used=License.seats_used + 1)
            .execution_options(synchronize_session=False)
        )
        self._expire_seat_counts(tenant_id, application_id)
        if commit:
            self.db.commit()
        return result.rowcount > 0

    def decrement_seat(self, tenant_id: int, application_id: int, commit: bool = True) -> bool:
        """Atomically release one used seat, clamped at zero."""
        result = self.db.execute(
            update(License)
            .where(License.tenant_id == tenant_id, License.application_id == application_id)
            .values(seats_used=case((License.seats_used > 0, License.seats_used - 1), else_=0))
            .execution_options(synchronize_session=False)
        )
        self._expire_seat_counts(tenant_id, application_id)
        if commit:
            self.db.commit()
        return result.rowcount > 0

    def expire_licenses(self, now: Optional[datetime] = None) -> List[Tuple[int, int]]:
        """
        Flip every license past its expiry to expired.

        Revoked licenses stay revoked.

        Returns:
            The affected (tenant_id, application_id) pairs
        """
        now = normalize_instant(now) if now else utc_now()
        due = (
            self.db.query(License)
            .filter(
                License.expires_at.isnot(None),
                License.expires_at <= now,
                License.status.notin_([LicenseStatus.EXPIRED.value, LicenseStatus.REVOKED.value]),
            )
            .all()
        )

        pairs = []
        for license in due:
            license.status = LicenseStatus.EXPIRED.value
            license.active = False
            pairs.append((license.tenant_id, license.application_id))

        if pairs:
            self.db.commit()
            logger.info("Expired licenses", extra={"count": len(pairs)})
        return pairs

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _expire_seat_counts(self, tenant_id: int, application_id: int) -> None:
        """Expire seats_used on loaded copies of the license so the next read sees the UPDATE."""
        for obj in list(self.db.identity_map.values()):
            if not isinstance(obj, License):
                continue
            loaded = inspect(obj).dict
            if loaded.get("tenant_id") == tenant_id and loaded.get("application_id") == application_id:
                self.db.expire(obj, ["seats_used"])

    def _provision(self, tenant: Tenant, application: Application) -> None:
        try:
            self.provisioner.ensure_provisioned(tenant, application)
        except Exception as e:
            logger.error(
                "Schema provisioning failed",
                extra={"tenant_id": tenant.id, "application_slug": application.slug, "error": str(e)},
            )
            raise EntitlementError(
                ErrorKind.PROVISIONING_FAILED,
                f"Provisioning failed for application '{application.slug}'",
                {"tenant_id": tenant.id, "application_slug": application.slug, "error": str(e)},
            ) from e

    @staticmethod
    def _duplicate_error(tenant_id: int, application_id: int) -> EntitlementError:
        return EntitlementError(
            ErrorKind.DUPLICATE_LICENSE,
            "Tenant already has a license for this application",
            {"tenant_id": tenant_id, "application_id": application_id},
        )

    @staticmethod
    def _validate_status(status) -> str:
        value = status.value if isinstance(status, LicenseStatus) else status
        if value not in LICENSE_STATUSES:
            raise validation_error("Invalid license status", status=value, allowed=sorted(LICENSE_STATUSES))
        return value

    @staticmethod
    def _validate_seats(seats_purchased: Optional[int]) -> None:
        if seats_purchased is not None and (not isinstance(seats_purchased, int) or seats_purchased < 0):
            raise validation_error("seats_purchased must be a non-negative integer", seats_purchased=seats_purchased)
