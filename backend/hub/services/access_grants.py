"""
Access Grant Store.

Per (user, tenant, application) access grants. Each grant freezes the price
in effect when it was created; later pricing changes never touch it.

Granting checks, in order: role, application, license, existing grant,
seat capacity, current price. A lapsed grant passes its seat on to the
grant that replaces it. The seat increment, grant insert and audit
row then commit as one transaction.

Seat capacity is a hard guarantee: the increment is a conditional UPDATE
that only succeeds while seats remain, so concurrent grants cannot
over-allocate. The partial unique index on active grants is the authority
for "already granted".
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hub.entitlements.errors import EntitlementError, ErrorKind, not_found, validation_error
from hub.models.access_log import AccessDecision, AccessType
from hub.models.application import Application
from hub.models.base import normalize_instant, utc_now
from hub.models.grant import VALID_ROLES, AccessGrant, RoleInApp
from hub.models.license import License
from hub.models.user_type import UserType
from hub.services.access_log_service import AccessEvent, AccessLogService, RequestInfo
from hub.services.license_registry import LicenseRegistry, usable_license_filter
from hub.services.pricing_ledger import PricingLedger

logger = logging.getLogger(__name__)


def validate_role(role_in_app: Optional[str]) -> str:
    """
    Validate a role against the fixed set.

    Raises:
        EntitlementError: INVALID_ROLE_IN_APP
    """
    value = role_in_app.value if isinstance(role_in_app, RoleInApp) else role_in_app
    if value not in VALID_ROLES:
        raise EntitlementError(
            ErrorKind.INVALID_ROLE_IN_APP,
            f"Invalid role_in_app: {value}",
            {"provided": value, "allowed": sorted(VALID_ROLES)},
        )
    return value


def _current_grant_filter(now: datetime):
    return and_(
        AccessGrant.active.is_(True),
        or_(AccessGrant.expires_at.is_(None), AccessGrant.expires_at > now),
    )


class AccessGrantStore:
    """Service for per-user application access grants."""

    def __init__(
        self,
        db_session: Session,
        ledger: Optional[PricingLedger] = None,
        registry: Optional[LicenseRegistry] = None,
        audit: Optional[AccessLogService] = None,
    ):
        """
        Initialize grant store.

        Args:
            db_session: Database session
            ledger: Pricing ledger used for the price snapshot
            registry: License registry used for license and seat checks
            audit: Access log written on grant and revoke
        """
        self.db = db_session
        self.ledger = ledger or PricingLedger(db_session)
        self.registry = registry or LicenseRegistry(db_session)
        self.audit = audit or AccessLogService(db_session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, grant_id: int) -> AccessGrant:
        grant = self.db.query(AccessGrant).filter(AccessGrant.id == grant_id).first()
        if not grant:
            raise not_found("AccessGrant", grant_id)
        return grant

    def get_active_grant(self, user_id: str, tenant_id: int, application_id: int) -> Optional[AccessGrant]:
        """The active, unexpired grant for the triple, if any."""
        return (
            self.db.query(AccessGrant)
            .filter(
                AccessGrant.user_id == user_id,
                AccessGrant.tenant_id == tenant_id,
                AccessGrant.application_id == application_id,
                _current_grant_filter(utc_now()),
            )
            .first()
        )

    def has_access(self, user_id: str, tenant_id: int, application_slug: str) -> bool:
        """True iff an active, unexpired grant exists for the triple."""
        grant_id = (
            self.db.query(AccessGrant.id)
            .join(Application, Application.id == AccessGrant.application_id)
            .filter(
                AccessGrant.user_id == user_id,
                AccessGrant.tenant_id == tenant_id,
                Application.slug == application_slug,
                _current_grant_filter(utc_now()),
            )
            .first()
        )
        return grant_id is not None

    def find_by_user(
        self,
        user_id: str,
        tenant_id: int,
        application_id: Optional[int] = None,
        active_only: bool = True,
    ) -> List[AccessGrant]:
        query = self.db.query(AccessGrant).filter(
            AccessGrant.user_id == user_id,
            AccessGrant.tenant_id == tenant_id,
        )
        if application_id is not None:
            query = query.filter(AccessGrant.application_id == application_id)
        if active_only:
            query = query.filter(_current_grant_filter(utc_now()))
        return query.order_by(AccessGrant.granted_at.desc(), AccessGrant.id.desc()).all()

    def find_by_application(
        self,
        application_id: int,
        tenant_id: int,
        role_in_app: Optional[str] = None,
        active_only: bool = True,
    ) -> List[AccessGrant]:
        query = self.db.query(AccessGrant).filter(
            AccessGrant.application_id == application_id,
            AccessGrant.tenant_id == tenant_id,
        )
        if role_in_app:
            query = query.filter(AccessGrant.role_in_app == validate_role(role_in_app))
        if active_only:
            query = query.filter(_current_grant_filter(utc_now()))
        return query.order_by(AccessGrant.granted_at.desc(), AccessGrant.id.desc()).all()

    def get_user_allowed_apps(self, user_id: str, tenant_id: int) -> List[dict]:
        """
        Applications the user can currently use in the tenant.

        Both the grant and the tenant's license must be valid. This is the
        input for the identity token's allowed_apps claim.
        """
        now = utc_now()
        rows = (
            self.db.query(Application.slug, Application.name, AccessGrant.role_in_app)
            .join(AccessGrant, AccessGrant.application_id == Application.id)
            .join(
                License,
                and_(License.application_id == Application.id, License.tenant_id == AccessGrant.tenant_id),
            )
            .filter(
                AccessGrant.user_id == user_id,
                AccessGrant.tenant_id == tenant_id,
                _current_grant_filter(now),
                usable_license_filter(now),
            )
            .order_by(Application.slug)
            .all()
        )
        return [{"slug": slug, "name": name, "role_in_app": role} for slug, name, role in rows]

    def get_billing_summary(self, tenant_id: int) -> List[dict]:
        """Active seats and snapshot totals per application, currency and cycle."""
        now = utc_now()
        rows = (
            self.db.query(
                Application.id,
                Application.slug,
                AccessGrant.currency_snapshot,
                AccessGrant.billing_cycle_snapshot,
                func.count(AccessGrant.id),
                func.sum(AccessGrant.price_snapshot),
            )
            .select_from(AccessGrant)
            .join(Application, Application.id == AccessGrant.application_id)
            .filter(AccessGrant.tenant_id == tenant_id, _current_grant_filter(now))
            .group_by(
                Application.id,
                Application.slug,
                AccessGrant.currency_snapshot,
                AccessGrant.billing_cycle_snapshot,
            )
            .order_by(Application.slug)
            .all()
        )
        return [
            {
                "application_id": application_id,
                "application_slug": slug,
                "currency": currency,
                "billing_cycle": billing_cycle,
                "active_seats": seats,
                "total": total,
            }
            for application_id, slug, currency, billing_cycle, seats, total in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def grant_access(
        self,
        user_id: str,
        tenant_id: int,
        application_id: int,
        user_type_id: int,
        role_in_app: str = RoleInApp.USER.value,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        billing_cycle: Optional[str] = None,
        currency: Optional[str] = None,
        request_info: Optional[RequestInfo] = None,
    ) -> AccessGrant:
        """
        Grant a user access to an application.

        Raises:
            EntitlementError: INVALID_ROLE_IN_APP, VALIDATION_ERROR, NOT_FOUND,
                LICENSE_INACTIVE, NO_SEATS_AVAILABLE, DUPLICATE_GRANT or
                PRICING_NOT_CONFIGURED. Nothing is written on failure.
        """
        role_in_app = validate_role(role_in_app)
        if not user_id:
            raise validation_error("user_id is required")
        expires_at = normalize_instant(expires_at)
        now = utc_now()
        if expires_at is not None and expires_at <= now:
            raise validation_error("expires_at must be in the future", expires_at=expires_at.isoformat())

        application = self.db.query(Application).filter(Application.id == application_id).first()
        if not application:
            raise not_found("Application", application_id)
        if not self.db.query(UserType.id).filter(UserType.id == user_type_id).first():
            raise not_found("UserType", user_type_id)

        license = self.registry.get_for(tenant_id, application_id)
        if license is None or not license.is_usable(now):
            raise EntitlementError(
                ErrorKind.LICENSE_INACTIVE,
                "Tenant has no active license for this application",
                {
                    "tenant_id": tenant_id,
                    "application_id": application_id,
                    "license_status": license.status if license else None,
                },
            )

        existing = (
            self.db.query(AccessGrant)
            .filter(
                AccessGrant.user_id == user_id,
                AccessGrant.tenant_id == tenant_id,
                AccessGrant.application_id == application_id,
                AccessGrant.active.is_(True),
            )
            .first()
        )
        if existing is not None and not existing.is_expired(now):
            raise self._duplicate_error(user_id, tenant_id, application_id, existing.id)
        # A lapsed grant hands its seat to the replacement; the conditional
        # increment below still enforces capacity.
        if existing is None and not self.registry.can_add_user(license):
            raise self._no_seats_error(license)

        pricing = self.ledger.get_current_price(
            application_id, user_type_id, at=now, billing_cycle=billing_cycle, currency=currency
        )
        if pricing is None:
            raise EntitlementError(
                ErrorKind.PRICING_NOT_CONFIGURED,
                "No price is configured for this application and user type",
                {
                    "application_id": application_id,
                    "user_type_id": user_type_id,
                    "billing_cycle": billing_cycle,
                    "currency": currency,
                },
            )

        try:
            if existing is not None:
                # Lapsed grant still flagged active; retire it so the active
                # uniqueness index admits the new one.
                existing.active = False
                if not self.registry.decrement_seat(tenant_id, application_id, commit=False):
                    logger.warning("No license row to release lapsed seat", extra={"grant_id": existing.id})
                self.db.flush()

            if not self.registry.increment_seat(tenant_id, application_id, enforce_capacity=True, commit=False):
                raise self._no_seats_error(license)

            grant = AccessGrant(
                user_id=user_id,
                tenant_id=tenant_id,
                application_id=application_id,
                role_in_app=role_in_app,
                price_snapshot=pricing.price,
                currency_snapshot=pricing.currency,
                billing_cycle_snapshot=pricing.billing_cycle,
                user_type_snapshot_id=user_type_id,
                pricing_entry_id=pricing.id,
                granted_at=now,
                granted_by=granted_by,
                expires_at=expires_at,
                active=True,
            )
            self.db.add(grant)
            self.db.flush()

            self.audit.create(
                AccessEvent(
                    decision=AccessDecision.GRANTED,
                    access_type=AccessType.GRANTED,
                    reason=f"access granted by {granted_by or 'system'}",
                    user_id=user_id,
                    tenant_id=tenant_id,
                    application_id=application_id,
                    application_slug=application.slug,
                    request_info=request_info or RequestInfo(),
                ),
                commit=False,
            )
            self.db.commit()
        except EntitlementError:
            self.db.rollback()
            raise
        except IntegrityError as e:
            self.db.rollback()
            raise self._duplicate_error(user_id, tenant_id, application_id) from e

        logger.info(
            "Access granted",
            extra={
                "grant_id": grant.id,
                "user_id": user_id,
                "tenant_id": tenant_id,
                "application_id": application_id,
                "role_in_app": role_in_app,
                "price_snapshot": str(grant.price_snapshot),
                "currency_snapshot": grant.currency_snapshot,
            },
        )
        return grant

    def revoke(
        self,
        grant_id: int,
        revoked_by: str,
        request_info: Optional[RequestInfo] = None,
    ) -> AccessGrant:
        """
        Soft-revoke a grant, release its seat and log the revocation.

        Raises:
            EntitlementError: NOT_FOUND, or VALIDATION_ERROR if already inactive
        """
        grant = self.get(grant_id)
        if not grant.active:
            raise validation_error("Grant is already inactive", grant_id=grant_id)

        application_slug = (
            self.db.query(Application.slug).filter(Application.id == grant.application_id).scalar()
        )
        try:
            grant.active = False
            grant.revoked_at = utc_now()
            grant.revoked_by = revoked_by
            self.registry.decrement_seat(grant.tenant_id, grant.application_id, commit=False)
            self.audit.create(
                AccessEvent(
                    decision=AccessDecision.DENIED,
                    access_type=AccessType.REVOKED,
                    reason=f"access revoked by {revoked_by}",
                    user_id=grant.user_id,
                    tenant_id=grant.tenant_id,
                    application_id=grant.application_id,
                    application_slug=application_slug,
                    request_info=request_info or RequestInfo(),
                ),
                commit=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Access revoked",
            extra={
                "grant_id": grant.id,
                "user_id": grant.user_id,
                "tenant_id": grant.tenant_id,
                "application_id": grant.application_id,
                "revoked_by": revoked_by,
            },
        )
        return grant

    def update_role(self, grant_id: int, role_in_app: str) -> AccessGrant:
        """Change the role of an active grant. Snapshot fields are untouched."""
        role_in_app = validate_role(role_in_app)
        grant = self.get(grant_id)
        if not grant.active:
            raise validation_error("Cannot change the role of an inactive grant", grant_id=grant_id)

        previous = grant.role_in_app
        grant.role_in_app = role_in_app
        self.db.commit()

        logger.info(
            "Grant role changed",
            extra={"grant_id": grant.id, "previous_role": previous, "role_in_app": role_in_app},
        )
        return grant

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _no_seats_error(license: License) -> EntitlementError:
        return EntitlementError(
            ErrorKind.NO_SEATS_AVAILABLE,
            "No seats available on this license",
            {
                "license_id": license.id,
                "seats_purchased": license.seats_purchased,
                "seats_used": license.seats_used,
            },
        )

    @staticmethod
    def _duplicate_error(
        user_id: str, tenant_id: int, application_id: int, grant_id: Optional[int] = None
    ) -> EntitlementError:
        return EntitlementError(
            ErrorKind.DUPLICATE_GRANT,
            "User already has active access to this application",
            {
                "user_id": user_id,
                "tenant_id": tenant_id,
                "application_id": application_id,
                "grant_id": grant_id,
            },
        )
