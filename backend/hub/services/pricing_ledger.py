"""
Pricing Ledger.

Versioned price records per (application, user type, billing cycle,
currency). Validity intervals are half-open [valid_from, valid_to) with a
null end meaning open ended; active intervals sharing a business key never
overlap.

Handles:
- Current price lookup and price history
- Overlap detection with a structured conflict descriptor
- Creating, updating and ending price entries
- Scheduling a future price change with a seamless hand-off

Overlap is checked in Python before every write. On PostgreSQL an exclusion
constraint closes the check-then-insert race; its violation surfaces as the
same PRICING_OVERLAP error.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hub.config.settings import HubSettings, get_settings
from hub.database.constraints import is_pricing_overlap_violation
from hub.entitlements.errors import EntitlementError, ErrorKind, not_found, validation_error
from hub.models.application import Application
from hub.models.base import normalize_instant, utc_now
from hub.models.pricing import BILLING_CYCLES, BillingCycle, PricingEntry, interval_end
from hub.models.user_type import UserType

logger = logging.getLogger(__name__)

# Gap left between a closed price era and the one scheduled after it.
SCHEDULE_HANDOFF = timedelta(seconds=1)

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_UPDATABLE_FIELDS = frozenset({"price", "currency", "billing_cycle", "valid_from", "valid_to", "active"})
_OVERLAP_FIELDS = frozenset({"currency", "billing_cycle", "valid_from", "valid_to", "active"})


def ranges_overlap(
    a_from: datetime,
    a_to: Optional[datetime],
    b_from: datetime,
    b_to: Optional[datetime],
) -> bool:
    """
    Half-open interval overlap test.

    A null end is treated as unbounded. Touching intervals (a_to == b_from)
    do not overlap.
    """
    return normalize_instant(a_from) < interval_end(b_to) and normalize_instant(b_from) < interval_end(a_to)


@dataclass(frozen=True)
class PricingConflict:
    """An existing active entry that clashes with a requested range."""
    conflicting_id: int
    existing_from: datetime
    existing_to: Optional[datetime]
    requested_from: datetime
    requested_to: Optional[datetime]
    application_id: int
    user_type_id: int
    billing_cycle: str
    currency: str

    def to_dict(self) -> dict:
        return {
            "conflicting_id": self.conflicting_id,
            "existing_range": {
                "valid_from": self.existing_from.isoformat(),
                "valid_to": self.existing_to.isoformat() if self.existing_to else None,
            },
            "requested_range": {
                "valid_from": self.requested_from.isoformat(),
                "valid_to": self.requested_to.isoformat() if self.requested_to else None,
            },
            "business_key": {
                "application_id": self.application_id,
                "user_type_id": self.user_type_id,
                "billing_cycle": self.billing_cycle,
                "currency": self.currency,
            },
        }


@dataclass
class PricingMatrixRow:
    """One row of an application's pricing matrix."""
    entry: PricingEntry
    user_type_slug: str
    user_type_name: str

    def to_dict(self) -> dict:
        data = self.entry.to_dict()
        data["user_type_slug"] = self.user_type_slug
        data["user_type_name"] = self.user_type_name
        return data


def _overlap_error(conflict: PricingConflict) -> EntitlementError:
    return EntitlementError(
        ErrorKind.PRICING_OVERLAP,
        f"Pricing period overlaps existing entry {conflict.conflicting_id}",
        conflict.to_dict(),
    )


class PricingLedger:
    """
    Service for versioned application pricing.

    Entries are never deleted; ending a price sets valid_to and deactivates it.
    """

    def __init__(self, db_session: Session, settings: Optional[HubSettings] = None):
        """
        Initialize pricing ledger.

        Args:
            db_session: Database session
            settings: Engine settings (defaults to process settings)
        """
        self.db = db_session
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, pricing_id: int) -> PricingEntry:
        entry = self.db.query(PricingEntry).filter(PricingEntry.id == pricing_id).first()
        if not entry:
            raise not_found("PricingEntry", pricing_id)
        return entry

    def get_current_price(
        self,
        application_id: int,
        user_type_id: int,
        at: Optional[datetime] = None,
        billing_cycle: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Optional[PricingEntry]:
        """
        Get the active entry whose interval contains `at`.

        Args:
            application_id: Application id
            user_type_id: User type id
            at: Instant to price at (defaults to now)
            billing_cycle: Restrict to one billing cycle
            currency: Restrict to one currency

        Returns:
            The newest matching entry, or None if no price is in effect
        """
        at = normalize_instant(at) if at else utc_now()
        query = self.db.query(PricingEntry).filter(
            PricingEntry.application_id == application_id,
            PricingEntry.user_type_id == user_type_id,
            PricingEntry.active.is_(True),
            PricingEntry.valid_from <= at,
            or_(PricingEntry.valid_to.is_(None), PricingEntry.valid_to > at),
        )
        if billing_cycle:
            query = query.filter(PricingEntry.billing_cycle == billing_cycle)
        if currency:
            query = query.filter(PricingEntry.currency == currency.upper())
        return query.order_by(PricingEntry.valid_from.desc(), PricingEntry.id.desc()).first()

    def get_history(self, application_id: int, user_type_id: int) -> List[PricingEntry]:
        """All entries for the pair, active or not, newest first."""
        return (
            self.db.query(PricingEntry)
            .filter(
                PricingEntry.application_id == application_id,
                PricingEntry.user_type_id == user_type_id,
            )
            .order_by(PricingEntry.valid_from.desc(), PricingEntry.id.desc())
            .all()
        )

    def get_by_application(self, application_id: int, active_only: bool = True) -> List[PricingMatrixRow]:
        """Pricing matrix for one application joined with user type names."""
        query = (
            self.db.query(PricingEntry, UserType)
            .join(UserType, UserType.id == PricingEntry.user_type_id)
            .filter(PricingEntry.application_id == application_id)
        )
        if active_only:
            query = query.filter(PricingEntry.active.is_(True))
        rows = query.order_by(
            UserType.hierarchy_level, PricingEntry.billing_cycle, PricingEntry.valid_from.desc()
        ).all()
        return [
            PricingMatrixRow(entry=entry, user_type_slug=user_type.slug, user_type_name=user_type.name)
            for entry, user_type in rows
        ]

    def check_overlap(
        self,
        application_id: int,
        user_type_id: int,
        valid_from: datetime,
        valid_to: Optional[datetime],
        billing_cycle: str,
        currency: str,
        exclude_id: Optional[int] = None,
    ) -> Optional[PricingConflict]:
        """
        Check a requested range against the active entries of its business key.

        Returns:
            None if the range is free, else the first clashing entry
        """
        valid_from = normalize_instant(valid_from)
        valid_to = normalize_instant(valid_to)
        currency = currency.upper()

        query = self.db.query(PricingEntry).filter(
            PricingEntry.application_id == application_id,
            PricingEntry.user_type_id == user_type_id,
            PricingEntry.billing_cycle == billing_cycle,
            PricingEntry.currency == currency,
            PricingEntry.active.is_(True),
        )
        if exclude_id is not None:
            query = query.filter(PricingEntry.id != exclude_id)

        for existing in query.order_by(PricingEntry.valid_from).all():
            if ranges_overlap(existing.valid_from, existing.valid_to, valid_from, valid_to):
                return PricingConflict(
                    conflicting_id=existing.id,
                    existing_from=normalize_instant(existing.valid_from),
                    existing_to=normalize_instant(existing.valid_to),
                    requested_from=valid_from,
                    requested_to=valid_to,
                    application_id=application_id,
                    user_type_id=user_type_id,
                    billing_cycle=billing_cycle,
                    currency=currency,
                )
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        application_id: int,
        user_type_id: int,
        price: Any,
        currency: Optional[str] = None,
        billing_cycle: str = BillingCycle.MONTHLY.value,
        valid_from: Optional[datetime] = None,
        valid_to: Optional[datetime] = None,
        active: bool = True,
    ) -> PricingEntry:
        """
        Create a pricing entry.

        Raises:
            EntitlementError: VALIDATION_ERROR, NOT_FOUND or PRICING_OVERLAP
        """
        entry = self._build_entry(
            application_id, user_type_id, price, currency, billing_cycle, valid_from, valid_to, active
        )
        self.db.add(entry)
        self._commit(entry)

        logger.info(
            "Pricing entry created",
            extra={
                "pricing_id": entry.id,
                "application_id": application_id,
                "user_type_id": user_type_id,
                "price": str(entry.price),
                "currency": entry.currency,
                "billing_cycle": entry.billing_cycle,
            },
        )
        return entry

    def update(self, pricing_id: int, **fields: Any) -> PricingEntry:
        """
        Partially update a pricing entry.

        The overlap check is re-run, excluding the entry itself, whenever its
        interval, business key or activation changes.

        Raises:
            EntitlementError: NOT_FOUND, VALIDATION_ERROR or PRICING_OVERLAP
        """
        if not fields:
            raise validation_error("No fields to update")
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise validation_error("Unknown pricing fields", fields=sorted(unknown))

        entry = self.get(pricing_id)

        price = self._validate_price(fields["price"]) if "price" in fields else entry.price
        currency = self._validate_currency(fields.get("currency", entry.currency))
        billing_cycle = self._validate_billing_cycle(fields.get("billing_cycle", entry.billing_cycle))
        valid_from = normalize_instant(fields.get("valid_from", entry.valid_from))
        if valid_from is None:
            raise validation_error("valid_from cannot be null")
        valid_to = normalize_instant(fields["valid_to"]) if "valid_to" in fields else normalize_instant(entry.valid_to)
        self._validate_range(valid_from, valid_to)
        active = bool(fields.get("active", entry.active))

        if active and _OVERLAP_FIELDS.intersection(fields):
            conflict = self.check_overlap(
                entry.application_id,
                entry.user_type_id,
                valid_from,
                valid_to,
                billing_cycle,
                currency,
                exclude_id=entry.id,
            )
            if conflict:
                raise _overlap_error(conflict)

        entry.price = price
        entry.currency = currency
        entry.billing_cycle = billing_cycle
        entry.valid_from = valid_from
        entry.valid_to = valid_to
        entry.active = active
        self._commit(entry)

        logger.info(
            "Pricing entry updated",
            extra={"pricing_id": entry.id, "fields": sorted(fields)},
        )
        return entry

    def end_price(self, pricing_id: int, at: Optional[datetime] = None) -> PricingEntry:
        """End a price era: set valid_to (default now) and deactivate it."""
        entry = self.get(pricing_id)
        end = normalize_instant(at) if at else utc_now()
        if end <= normalize_instant(entry.valid_from):
            raise validation_error(
                "End must be after the entry's valid_from",
                valid_from=entry.valid_from.isoformat(),
                valid_to=end.isoformat(),
            )

        entry.valid_to = end
        entry.active = False
        self._commit(entry)

        logger.info("Pricing entry ended", extra={"pricing_id": entry.id, "valid_to": end.isoformat()})
        return entry

    def schedule_price(
        self,
        application_id: int,
        user_type_id: int,
        new_price: Any,
        valid_from: datetime,
        currency: Optional[str] = None,
        billing_cycle: str = BillingCycle.MONTHLY.value,
    ) -> Tuple[Optional[PricingEntry], PricingEntry]:
        """
        Schedule a future price change.

        Closes the currently open-ended entry of the business key one second
        before `valid_from` and creates the new entry starting at `valid_from`.
        Both writes commit together.

        Returns:
            (closed entry or None, new entry)

        Raises:
            EntitlementError: VALIDATION_ERROR if valid_from is not in the
                future, PRICING_OVERLAP if the new era clashes
        """
        start = normalize_instant(valid_from)
        if start is None or start <= utc_now():
            raise validation_error(
                "Scheduled valid_from must be in the future",
                valid_from=start.isoformat() if start else None,
            )
        currency = self._validate_currency(currency or self.settings.default_currency)
        billing_cycle = self._validate_billing_cycle(billing_cycle)

        open_entry = (
            self.db.query(PricingEntry)
            .filter(
                PricingEntry.application_id == application_id,
                PricingEntry.user_type_id == user_type_id,
                PricingEntry.billing_cycle == billing_cycle,
                PricingEntry.currency == currency,
                PricingEntry.active.is_(True),
                PricingEntry.valid_to.is_(None),
            )
            .order_by(PricingEntry.valid_from.desc())
            .first()
        )

        try:
            if open_entry is not None:
                closing_at = start - SCHEDULE_HANDOFF
                if closing_at <= normalize_instant(open_entry.valid_from):
                    raise _overlap_error(
                        PricingConflict(
                            conflicting_id=open_entry.id,
                            existing_from=normalize_instant(open_entry.valid_from),
                            existing_to=None,
                            requested_from=start,
                            requested_to=None,
                            application_id=application_id,
                            user_type_id=user_type_id,
                            billing_cycle=billing_cycle,
                            currency=currency,
                        )
                    )
                open_entry.valid_to = closing_at
                self.db.flush()

            new_entry = self._build_entry(
                application_id, user_type_id, new_price, currency, billing_cycle, start, None, True
            )
            self.db.add(new_entry)
        except EntitlementError:
            self.db.rollback()
            raise

        self._commit(new_entry)

        logger.info(
            "Price change scheduled",
            extra={
                "application_id": application_id,
                "user_type_id": user_type_id,
                "closed_pricing_id": open_entry.id if open_entry else None,
                "new_pricing_id": new_entry.id,
                "valid_from": start.isoformat(),
            },
        )
        return open_entry, new_entry

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_entry(
        self,
        application_id: int,
        user_type_id: int,
        price: Any,
        currency: Optional[str],
        billing_cycle: str,
        valid_from: Optional[datetime],
        valid_to: Optional[datetime],
        active: bool,
    ) -> PricingEntry:
        price = self._validate_price(price)
        currency = self._validate_currency(currency or self.settings.default_currency)
        billing_cycle = self._validate_billing_cycle(billing_cycle)
        valid_from = normalize_instant(valid_from) if valid_from else utc_now()
        valid_to = normalize_instant(valid_to)
        self._validate_range(valid_from, valid_to)

        if not self.db.query(Application.id).filter(Application.id == application_id).first():
            raise not_found("Application", application_id)
        if not self.db.query(UserType.id).filter(UserType.id == user_type_id).first():
            raise not_found("UserType", user_type_id)

        if active:
            conflict = self.check_overlap(
                application_id, user_type_id, valid_from, valid_to, billing_cycle, currency
            )
            if conflict:
                logger.warning(
                    "Pricing overlap rejected",
                    extra={"conflicting_id": conflict.conflicting_id, "application_id": application_id},
                )
                raise _overlap_error(conflict)

        return PricingEntry(
            application_id=application_id,
            user_type_id=user_type_id,
            price=price,
            currency=currency,
            billing_cycle=billing_cycle,
            valid_from=valid_from,
            valid_to=valid_to,
            active=active,
        )

    def _commit(self, entry: PricingEntry) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if is_pricing_overlap_violation(e):
                raise EntitlementError(
                    ErrorKind.PRICING_OVERLAP,
                    "Pricing period overlaps an existing active entry",
                    {
                        "business_key": {
                            "application_id": entry.application_id,
                            "user_type_id": entry.user_type_id,
                            "billing_cycle": entry.billing_cycle,
                            "currency": entry.currency,
                        },
                    },
                ) from e
            raise validation_error("Pricing entry violates a storage constraint", error=str(e.orig)) from e

    @staticmethod
    def _validate_price(price: Any) -> Decimal:
        try:
            value = Decimal(str(price))
        except (InvalidOperation, ValueError):
            raise validation_error("Price must be a number", price=str(price))
        if not value.is_finite() or value < 0:
            raise validation_error("Price must be greater than or equal to zero", price=str(price))
        return value.quantize(Decimal("0.01"))

    @staticmethod
    def _validate_currency(currency: Any) -> str:
        value = str(currency or "").upper()
        if not _CURRENCY_RE.match(value):
            raise validation_error("Currency must be a 3-letter code", currency=currency)
        return value

    @staticmethod
    def _validate_billing_cycle(billing_cycle: Any) -> str:
        value = billing_cycle.value if isinstance(billing_cycle, BillingCycle) else billing_cycle
        if value not in BILLING_CYCLES:
            raise validation_error(
                "Billing cycle must be monthly or yearly",
                billing_cycle=value,
                allowed=sorted(BILLING_CYCLES),
            )
        return value

    @staticmethod
    def _validate_range(valid_from: datetime, valid_to: Optional[datetime]) -> None:
        if valid_to is not None and valid_to <= valid_from:
            raise validation_error(
                "valid_to must be after valid_from",
                valid_from=valid_from.isoformat(),
                valid_to=valid_to.isoformat(),
            )
