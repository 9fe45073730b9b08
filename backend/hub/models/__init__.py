"""
Database models for the entitlement and pricing engine.

Importing this package registers every table with Base.metadata.
"""

from hub.models.base import TimestampMixin, UTCDateTime, generate_uuid, normalize_instant, utc_now
from hub.models.tenant import Tenant, TenantStatus
from hub.models.application import Application, ApplicationStatus
from hub.models.user_type import UserType
from hub.models.pricing import BILLING_CYCLES, BillingCycle, PricingEntry
from hub.models.license import LICENSE_STATUSES, License, LicenseStatus
from hub.models.grant import VALID_ROLES, AccessGrant, RoleInApp
from hub.models.access_log import AccessDecision, AccessLogEntry, AccessSource, AccessType

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "generate_uuid",
    "normalize_instant",
    "utc_now",
    "Tenant",
    "TenantStatus",
    "Application",
    "ApplicationStatus",
    "UserType",
    "BILLING_CYCLES",
    "BillingCycle",
    "PricingEntry",
    "LICENSE_STATUSES",
    "License",
    "LicenseStatus",
    "VALID_ROLES",
    "AccessGrant",
    "RoleInApp",
    "AccessDecision",
    "AccessLogEntry",
    "AccessSource",
    "AccessType",
]
