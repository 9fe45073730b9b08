"""
Tests for caller identity resolution.

Tests cover:
- Token issue / verification (signature, expiry, issuer)
- Claim parsing (plain slugs and role objects, tenant id coercion)
- Request resolution order and client info extraction
"""

from datetime import timedelta

import jwt
import pytest
from fastapi import Request
from jwt.exceptions import InvalidTokenError

from hub.config.settings import override_settings
from hub.platform.identity import (
    CallerIdentity,
    decode_identity_token,
    encode_identity_token,
    extract_client_info,
    get_caller_identity,
)


def make_request(headers=None, client=("192.0.2.10", 51000)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/tq/patients",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestClaims:

    def test_mixed_allowed_apps(self):
        identity = CallerIdentity.from_claims({
            "sub": "user-1",
            "tenant_id": "42",
            "allowed_apps": ["pm", {"slug": "tq", "role_in_app": "manager"}, {"name": "no slug"}],
        })

        assert identity.tenant_id == 42
        assert identity.allowed_apps == frozenset({"pm", "tq"})
        assert identity.app_roles == {"tq": "manager"}
        assert identity.lists_application("tq")

    def test_missing_subject(self):
        with pytest.raises(InvalidTokenError):
            CallerIdentity.from_claims({"tenant_id": 1})

    def test_non_numeric_tenant(self):
        with pytest.raises(InvalidTokenError):
            CallerIdentity.from_claims({"sub": "user-1", "tenant_id": "clinic"})

    def test_claim_scope(self):
        assert CallerIdentity("u", tenant_id=1).claim_applies_to(1)
        assert not CallerIdentity("u", tenant_id=1).claim_applies_to(2)
        assert CallerIdentity("u").claim_applies_to(2)

    def test_claims_round_trip(self, make_identity):
        identity = make_identity("user-1", 7, allowed_apps=["pm", {"slug": "tq", "role_in_app": "admin"}])
        assert CallerIdentity.from_claims(identity.to_claims()) == identity


@pytest.mark.security
class TestTokens:

    def test_issue_and_verify(self, make_identity):
        identity = make_identity("user-1", 3, allowed_apps=["tq"], platform_role="support")

        decoded = decode_identity_token(encode_identity_token(identity))

        assert decoded == identity

    def test_expired(self, make_identity):
        token = encode_identity_token(make_identity(), expires_in=timedelta(seconds=-1))
        with pytest.raises(InvalidTokenError):
            decode_identity_token(token)

    def test_wrong_secret(self, make_identity):
        token = encode_identity_token(make_identity(), settings=override_settings(jwt_secret="other"))
        with pytest.raises(InvalidTokenError):
            decode_identity_token(token)

    def test_wrong_issuer(self, make_identity):
        token = encode_identity_token(make_identity(), settings=override_settings(jwt_issuer="someone-else"))
        with pytest.raises(InvalidTokenError):
            decode_identity_token(token)

    def test_token_without_expiry(self):
        token = jwt.encode({"sub": "user-1", "iss": "hub"}, "test-secret-key-for-identity-tokens", algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            decode_identity_token(token)

    def test_no_secret_configured(self, make_identity):
        with pytest.raises(ValueError):
            encode_identity_token(make_identity(), settings=override_settings(jwt_secret=None))


class TestRequestResolution:

    def test_bearer_token(self, make_identity):
        token = encode_identity_token(make_identity("user-5"))
        identity = get_caller_identity(make_request({"Authorization": f"Bearer {token}"}))
        assert identity.user_id == "user-5"

    def test_state_identity_takes_precedence(self, make_identity):
        token = encode_identity_token(make_identity("from-token"))
        request = make_request({"Authorization": f"Bearer {token}"})
        request.state.identity = make_identity("from-middleware")

        assert get_caller_identity(request).user_id == "from-middleware"

    @pytest.mark.parametrize("header", ["", "Basic dXNlcjpwdw==", "Bearer ", "Bearer garbage"])
    def test_unusable_header_is_anonymous(self, header):
        assert get_caller_identity(make_request({"Authorization": header})) is None

    def test_client_info_from_socket(self):
        ip, agent = extract_client_info(make_request({"User-Agent": "pytest"}))
        assert ip == "192.0.2.10"
        assert agent == "pytest"

    def test_client_info_prefers_forwarded_for(self):
        ip, _ = extract_client_info(make_request({"X-Forwarded-For": "203.0.113.1, 10.0.0.2"}))
        assert ip == "203.0.113.1"

    def test_client_info_without_client(self):
        ip, agent = extract_client_info(make_request(client=None))
        assert ip is None
        assert agent is None
