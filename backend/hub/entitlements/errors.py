"""
Structured errors for the pricing ledger, license registry and grant store.

Every failure carries the same shape (kind, message, details), so a single
exception type parameterized by a closed set of kinds is enough. Gate
denials are not exceptions; see hub.entitlements.gate.
"""

from enum import Enum
from typing import Any, Optional

from fastapi import status


class ErrorKind(str, Enum):
    """Machine-readable error codes."""
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_ROLE_IN_APP = "INVALID_ROLE_IN_APP"
    PRICING_OVERLAP = "PRICING_OVERLAP"
    PRICING_NOT_CONFIGURED = "PRICING_NOT_CONFIGURED"
    LICENSE_INACTIVE = "LICENSE_INACTIVE"
    NO_SEATS_AVAILABLE = "NO_SEATS_AVAILABLE"
    DUPLICATE_LICENSE = "DUPLICATE_LICENSE"
    DUPLICATE_GRANT = "DUPLICATE_GRANT"
    PROVISIONING_FAILED = "PROVISIONING_FAILED"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INVALID_ROLE_IN_APP: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.PRICING_OVERLAP: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.PRICING_NOT_CONFIGURED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.LICENSE_INACTIVE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NO_SEATS_AVAILABLE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.DUPLICATE_LICENSE: status.HTTP_409_CONFLICT,
    ErrorKind.DUPLICATE_GRANT: status.HTTP_409_CONFLICT,
    ErrorKind.PROVISIONING_FAILED: status.HTTP_502_BAD_GATEWAY,
}


class EntitlementError(Exception):
    """
    Raised by engine services when an operation cannot be carried out.

    No partial writes survive an EntitlementError: services roll back
    before raising.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        """
        Initialize entitlement error.

        Args:
            kind: Error kind (determines code and HTTP status)
            message: Human-readable description
            details: Structured context, e.g. the conflicting pricing range
        """
        self.kind = kind
        self.message = message
        self.details = details or {}
        super().__init__(f"{kind.value}: {message}")

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


def not_found(entity: str, identifier: Any) -> EntitlementError:
    return EntitlementError(
        ErrorKind.NOT_FOUND,
        f"{entity} not found: {identifier}",
        {"entity": entity, "id": identifier},
    )


def validation_error(message: str, **details: Any) -> EntitlementError:
    return EntitlementError(ErrorKind.VALIDATION_ERROR, message, details)
