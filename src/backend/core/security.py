"""Security utilities for authentication and vote integrity.

Defines the shared access-token format: accounts issue tokens with
create_access_token and the vote endpoints read them with decode_token.
It also owns fingerprint hashing and the vote-token signing key.
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import structlog
from jose import JWTError, jwt

from core.config import settings
from services.vote_token import SigningKey

logger = structlog.get_logger(__name__)

# Token issuer and audience for validation
TOKEN_ISSUER = "pollguard-api"
TOKEN_AUDIENCE = "pollguard-client"


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update(
        {
            "exp": expire,
            "iat": now,
            "type": "access",
            "iss": TOKEN_ISSUER,
            "aud": TOKEN_AUDIENCE,
            "jti": secrets.token_urlsafe(16),
        }
    )
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, expected_type: str | None = None) -> dict[str, Any] | None:
    """
    Decode and validate a JWT token.

    Args:
        token: The JWT token to decode
        expected_type: If provided, validates the token type matches

    Returns:
        The decoded payload or None if invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=TOKEN_ISSUER,
            audience=TOKEN_AUDIENCE,
        )
        if expected_type and payload.get("type") != expected_type:
            return None
        return payload
    except JWTError:
        return None


def hash_fingerprint(fingerprint: str) -> str:
    """
    One-way hash of a raw device fingerprint.

    The same input always yields the same 64-char lowercase hex digest, so the
    hash can be used as a storage key without keeping the raw value around.
    """
    return hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()


# =============================================================================
# Vote Token Signing Key
# =============================================================================


@lru_cache
def get_vote_signing_key() -> SigningKey:
    """
    Resolve the vote-token signing key from configuration.

    Falls back to a random per-process key outside production. Tokens signed
    with an ephemeral key stop validating after a restart or on another
    worker.

    Raises:
        RuntimeError: If running in production without VOTE_TOKEN_SECRET.
    """
    if settings.VOTE_TOKEN_SECRET:
        return SigningKey(secret=settings.VOTE_TOKEN_SECRET.encode("utf-8"))

    if settings.is_production:
        raise RuntimeError("VOTE_TOKEN_SECRET must be set in production")

    logger.warning(
        "vote_token_secret_missing",
        detail="Using a random per-process signing key",
        app_env=settings.APP_ENV,
    )
    return SigningKey(secret=secrets.token_bytes(32), ephemeral=True)
