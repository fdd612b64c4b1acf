"""Test suite for JWT inspection of Kavita access tokens.

Tokens are real HS256 JWTs built with PyJWT; the manager only reads claims.
"""

import time
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from kavita_client.api_clients.jwt_token_manager import (
    JWTTokenManager,
    TokenValidationError,
)


def encode(payload):
    return jwt.encode(payload, "test_secret_key", algorithm="HS256")


class TestJWTTokenManagerDecoding:
    @pytest.fixture
    def jwt_manager(self):
        return JWTTokenManager(refresh_threshold_minutes=2)

    def test_decode_valid_token(self, jwt_manager):
        token = encode({"unique_name": "alice", "exp": int(time.time()) + 600})

        payload = jwt_manager.decode_token(token)

        assert payload["unique_name"] == "alice"
        assert "exp" in payload

    @pytest.mark.parametrize(
        "token",
        ["not.a.jwt", "definitely_not_jwt", "way.too.many.parts.here", "", None],
    )
    def test_malformed_tokens(self, jwt_manager, token):
        with pytest.raises(TokenValidationError):
            jwt_manager.decode_token(token)

    def test_token_without_exp_never_expires(self, jwt_manager):
        token = encode({"unique_name": "alice"})

        assert jwt_manager.get_token_expiry_time(token) is None
        assert jwt_manager.is_token_expired(token) is False
        assert jwt_manager.is_token_near_expiry(token) is False


class TestJWTTokenManagerExpiry:
    @pytest.fixture
    def jwt_manager(self):
        return JWTTokenManager(refresh_threshold_minutes=2)

    def test_expiry_time_is_utc(self, jwt_manager):
        exp = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(minutes=10)
        token = encode({"exp": int(exp.timestamp())})

        assert jwt_manager.get_token_expiry_time(token) == exp

    def test_expired_token(self, jwt_manager):
        token = encode({"exp": int(time.time()) - 60})

        assert jwt_manager.is_token_expired(token) is True

    def test_near_expiry_within_threshold(self, jwt_manager):
        token = encode({"exp": int(time.time()) + 60})

        assert jwt_manager.is_token_expired(token) is False
        assert jwt_manager.is_token_near_expiry(token) is True

    def test_not_near_expiry_outside_threshold(self, jwt_manager):
        token = encode({"exp": int(time.time()) + 600})

        assert jwt_manager.is_token_near_expiry(token) is False

    def test_invalid_exp_claim(self, jwt_manager):
        token = encode({"exp": "tomorrow"})

        with pytest.raises(TokenValidationError):
            jwt_manager.get_token_expiry_time(token)


class TestJWTTokenManagerUsername:
    @pytest.mark.parametrize("claim", ["unique_name", "nameid", "username", "name"])
    def test_username_claims(self, claim):
        token = encode({claim: "alice"})

        assert JWTTokenManager().get_token_username(token) == "alice"

    def test_no_username_claim(self):
        assert JWTTokenManager().get_token_username(encode({"role": "Admin"})) is None
