"""
Entitlement & pricing engine for the multi-tenant hub.

Versioned application pricing, per-tenant licenses, per-user access grants
and the authorization gate that audits every decision.
"""
