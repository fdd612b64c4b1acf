"""JWT inspection for Kavita access tokens.

Kavita issues JWT access tokens. The client never verifies signatures (the
server does that); it only reads claims to report session status.
"""

import base64
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, cast

# Claim names Kavita has used for the account name across releases.
_USERNAME_CLAIMS = ("unique_name", "nameid", "username", "name")


class TokenValidationError(Exception):
    """Exception raised when a token cannot be decoded as a JWT."""

    pass


class JWTTokenManager:
    """Reads expiry and identity claims out of JWT access tokens."""

    def __init__(self, refresh_threshold_minutes: int = 2):
        """Initialize JWT token manager.

        Args:
            refresh_threshold_minutes: Minutes before expiration a token counts as near expiry
        """
        self.refresh_threshold_minutes = refresh_threshold_minutes

    def decode_token(self, token: str) -> Dict[str, Any]:
        """Decode JWT token payload without signature verification.

        Raises:
            TokenValidationError: If token format is invalid
        """
        if not token or not isinstance(token, str):
            raise TokenValidationError("Token must be a non-empty string")

        parts = token.split(".")
        if len(parts) != 3:
            raise TokenValidationError(
                f"Invalid JWT format: expected 3 parts, got {len(parts)}"
            )

        payload_part = parts[1]
        padding = 4 - (len(payload_part) % 4)
        if padding != 4:
            payload_part += "=" * padding

        try:
            payload_bytes = base64.urlsafe_b64decode(payload_part)
            payload = json.loads(payload_bytes.decode("utf-8"))
        except (ValueError, json.JSONDecodeError) as e:
            raise TokenValidationError(f"Failed to decode JWT payload: {e}")

        if not isinstance(payload, dict):
            raise TokenValidationError("JWT payload is not an object")
        return cast(Dict[str, Any], payload)

    def get_token_expiry_time(self, token: str) -> Optional[datetime]:
        """Get the expiration time of a JWT token, or None without an exp claim."""
        exp_claim = self.decode_token(token).get("exp")
        if exp_claim is None:
            return None
        try:
            return datetime.fromtimestamp(float(exp_claim), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            raise TokenValidationError(
                f"Invalid expiration timestamp format: {exp_claim}"
            )

    def is_token_expired(self, token: str) -> bool:
        expiry = self.get_token_expiry_time(token)
        if expiry is None:
            return False
        return datetime.now(timezone.utc) >= expiry

    def is_token_near_expiry(self, token: str) -> bool:
        """Check whether the token expires within the refresh threshold."""
        expiry = self.get_token_expiry_time(token)
        if expiry is None:
            return False
        remaining = (expiry - datetime.now(timezone.utc)).total_seconds()
        return remaining <= self.refresh_threshold_minutes * 60

    def get_token_username(self, token: str) -> Optional[str]:
        payload = self.decode_token(token)
        for claim in _USERNAME_CLAIMS:
            value = payload.get(claim)
            if isinstance(value, str) and value:
                return value
        return None
