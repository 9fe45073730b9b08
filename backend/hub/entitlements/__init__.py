"""
Entitlement enforcement.

- errors: EntitlementError and its closed set of kinds
- gate: the layered authorization pipeline (import from hub.entitlements.gate;
  it depends on the services, which depend on errors)
"""

from hub.entitlements.errors import EntitlementError, ErrorKind

__all__ = [
    "EntitlementError",
    "ErrorKind",
]
