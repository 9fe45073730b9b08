"""
Caller identity for the authorization gate.

The identity provider issues an HS256 JWT carrying:
- sub: user id
- tenant_id: tenant the token was issued for
- role / platform_role: tenant role and internal platform role
- allowed_apps: application slugs the user was entitled to at issue time,
  either plain slugs or {"slug", "role_in_app"} objects

allowed_apps is a cached claim. It lags behind grant changes until the token
is reissued; the gate records whether a decision came from the claim or the
grant store.

An upstream middleware may instead put a CallerIdentity on
request.state.identity, which takes precedence over the Authorization header.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Union

import jwt
from fastapi import Request
from jwt.exceptions import InvalidTokenError

from hub.config.settings import HubSettings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Immutable identity of the caller, resolved once per request."""
    user_id: str
    tenant_id: Optional[int] = None
    role: Optional[str] = None
    platform_role: Optional[str] = None
    allowed_apps: FrozenSet[str] = frozenset()
    app_roles: Dict[str, str] = field(default_factory=dict)

    def lists_application(self, application_slug: str) -> bool:
        return application_slug in self.allowed_apps

    def claim_applies_to(self, tenant_id: int) -> bool:
        """Claims issued for another tenant cannot vouch for this one."""
        return self.tenant_id is None or self.tenant_id == tenant_id

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "CallerIdentity":
        user_id = claims.get("sub") or claims.get("user_id")
        if not user_id:
            raise InvalidTokenError("Token has no subject")

        allowed: List[str] = []
        app_roles: Dict[str, str] = {}
        for item in claims.get("allowed_apps") or []:
            if isinstance(item, str):
                allowed.append(item)
            elif isinstance(item, dict) and item.get("slug"):
                allowed.append(item["slug"])
                if item.get("role_in_app"):
                    app_roles[item["slug"]] = item["role_in_app"]

        tenant_id = claims.get("tenant_id")
        try:
            tenant_id = int(tenant_id) if tenant_id is not None else None
        except (TypeError, ValueError):
            raise InvalidTokenError("tenant_id claim must be numeric")

        return cls(
            user_id=str(user_id),
            tenant_id=tenant_id,
            role=claims.get("role"),
            platform_role=claims.get("platform_role"),
            allowed_apps=frozenset(allowed),
            app_roles=app_roles,
        )

    def to_claims(self) -> Dict[str, Any]:
        return {
            "sub": self.user_id,
            "tenant_id": self.tenant_id,
            "role": self.role,
            "platform_role": self.platform_role,
            "allowed_apps": [
                {"slug": slug, "role_in_app": self.app_roles[slug]} if slug in self.app_roles else slug
                for slug in sorted(self.allowed_apps)
            ],
        }


def build_identity(
    user_id: str,
    tenant_id: Optional[int],
    allowed_apps: List[Union[str, Dict[str, Any]]],
    role: Optional[str] = None,
    platform_role: Optional[str] = None,
) -> CallerIdentity:
    """
    Build an identity from an allowed-apps listing.

    Accepts the output of AccessGrantStore.get_user_allowed_apps directly.
    """
    return CallerIdentity.from_claims({
        "sub": user_id,
        "tenant_id": tenant_id,
        "role": role,
        "platform_role": platform_role,
        "allowed_apps": allowed_apps,
    })


def encode_identity_token(
    identity: CallerIdentity,
    settings: Optional[HubSettings] = None,
    expires_in: Optional[timedelta] = None,
) -> str:
    """Issue a signed identity token."""
    settings = settings or get_settings()
    if not settings.jwt_secret:
        raise ValueError("HUB_JWT_SECRET is not configured")

    now = datetime.now(timezone.utc)
    payload = identity.to_claims()
    payload["iat"] = now
    payload["exp"] = now + (expires_in or timedelta(minutes=settings.token_ttl_minutes))
    if settings.jwt_issuer:
        payload["iss"] = settings.jwt_issuer
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_identity_token(token: str, settings: Optional[HubSettings] = None) -> CallerIdentity:
    """
    Verify and decode an identity token.

    Raises:
        InvalidTokenError: Bad signature, expired, wrong issuer or bad claims
    """
    settings = settings or get_settings()
    if not settings.jwt_secret:
        raise InvalidTokenError("HUB_JWT_SECRET is not configured")

    options = {"require": ["exp", "sub"]}
    claims = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        issuer=settings.jwt_issuer,
        options=options,
    )
    return CallerIdentity.from_claims(claims)


def get_caller_identity(request: Request, settings: Optional[HubSettings] = None) -> Optional[CallerIdentity]:
    """
    Resolve the caller identity for a request.

    Returns:
        The identity, or None when the request is unauthenticated or the
        token is invalid
    """
    identity = getattr(request.state, "identity", None)
    if isinstance(identity, CallerIdentity):
        return identity

    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None

    try:
        return decode_identity_token(token.strip(), settings)
    except InvalidTokenError as e:
        logger.warning(
            "Rejected identity token",
            extra={"path": request.url.path, "error": str(e)},
        )
        return None


def extract_client_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    """
    Extract client IP and user agent from request.

    Handles X-Forwarded-For for proxied requests.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (client IP)
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None

    user_agent = request.headers.get("User-Agent")
    return ip_address, user_agent
