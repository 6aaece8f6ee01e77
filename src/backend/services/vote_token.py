"""
Vote token minting and validation.

A vote token binds a poll, a device fingerprint and a moment in time:

    signature = HMAC-SHA256(secret, "pollId:fingerprint:timestamp:nonce")

Server-minted tokens are keyed with the deployment's signing key. Tokens
minted by a client that never talked to the server can only carry an
unkeyed SHA-256 of the same string. Those prove nothing about origin and
are accepted only when explicitly enabled.

The wire form is base64 of the camelCase JSON object. Anything that fails
to decode is treated as "no token", never as an error.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Optional

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

DEFAULT_MAX_AGE_SECONDS = 5 * 60
# Tolerated clock drift for tokens stamped slightly in the future
MAX_CLOCK_SKEW_MS = 30_000

TOKEN_EXPIRED = "Token expired"
TOKEN_FROM_FUTURE = "Token timestamp is in the future"
INVALID_SIGNATURE = "Invalid signature"


class SigningKey:
    """HMAC key used to sign server-minted vote tokens."""

    def __init__(self, secret: bytes, ephemeral: bool = False):
        self.secret = secret
        self.ephemeral = ephemeral

    def sign(self, message: str) -> str:
        """Return the hex HMAC-SHA256 of ``message``."""
        return hmac.new(self.secret, message.encode("utf-8"), hashlib.sha256).hexdigest()


class VoteToken(BaseModel):
    """Signed proof that a vote was prepared for a poll on a device."""

    poll_id: str = Field(..., alias="pollId")
    fingerprint: str
    timestamp: int = Field(..., description="Unix epoch milliseconds")
    nonce: str = Field(..., min_length=1, max_length=32)
    signature: str

    model_config = {"populate_by_name": True}

    def signing_payload(self) -> str:
        return canonical_payload(self.poll_id, self.fingerprint, self.timestamp, self.nonce)


class TokenValidation(BaseModel):
    """Result of checking a token's freshness and signature."""

    valid: bool
    reason: Optional[str] = None


def canonical_payload(poll_id: str, fingerprint: str, timestamp: int, nonce: str) -> str:
    return f"{poll_id}:{fingerprint}:{timestamp}:{nonce}"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_nonce() -> str:
    """128-bit random nonce as 32 hex chars."""
    return secrets.token_hex(16)


def _unkeyed_signature(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _signatures_match(expected: str, provided: str) -> bool:
    # compare_digest rejects non-ASCII str, so compare bytes
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _check_freshness(token: VoteToken, max_age_seconds: int, now_ms: int) -> Optional[str]:
    age_ms = now_ms - token.timestamp
    if age_ms > max_age_seconds * 1000:
        return TOKEN_EXPIRED
    if age_ms < -MAX_CLOCK_SKEW_MS:
        return TOKEN_FROM_FUTURE
    return None


# =============================================================================
# Wire format
# =============================================================================


def serialize_vote_token(token: VoteToken) -> str:
    """Encode a token as base64 of its camelCase JSON."""
    raw = json.dumps(token.model_dump(by_alias=True), separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def deserialize_vote_token(serialized: str) -> Optional[VoteToken]:
    """
    Decode a token from its wire form.

    Returns None for anything that is not a well-formed token: bad base64,
    bad JSON, missing or mistyped fields.
    """
    try:
        raw = base64.b64decode(serialized, validate=True)
        return VoteToken.model_validate(json.loads(raw.decode("utf-8")))
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError):
        return None


# =============================================================================
# Client-side (unkeyed) tokens
# =============================================================================


def mint_client_token(poll_id: str, fingerprint: str, now_ms: Optional[int] = None) -> VoteToken:
    """Mint a token without a server key. Only as strong as SHA-256 of public data."""
    timestamp = now_ms if now_ms is not None else _now_ms()
    nonce = _new_nonce()
    return VoteToken(
        poll_id=poll_id,
        fingerprint=fingerprint,
        timestamp=timestamp,
        nonce=nonce,
        signature=_unkeyed_signature(canonical_payload(poll_id, fingerprint, timestamp, nonce)),
    )


def validate_client_token(
    token: VoteToken,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now_ms: Optional[int] = None,
) -> bool:
    """Check an unkeyed token's freshness and self-hash."""
    now_ms = now_ms if now_ms is not None else _now_ms()
    if _check_freshness(token, max_age_seconds, now_ms):
        return False
    expected = _unkeyed_signature(token.signing_payload())
    return _signatures_match(expected, token.signature)


# =============================================================================
# Server-side (keyed) tokens
# =============================================================================


class VoteTokenService:
    """Mints and validates HMAC-signed vote tokens."""

    def __init__(
        self,
        signing_key: SigningKey,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        accept_client_tokens: bool = False,
    ):
        self.signing_key = signing_key
        self.max_age_seconds = max_age_seconds
        self.accept_client_tokens = accept_client_tokens

    def mint(self, poll_id: str, fingerprint: str, now_ms: Optional[int] = None) -> VoteToken:
        """Mint a fresh token for a poll and device."""
        timestamp = now_ms if now_ms is not None else _now_ms()
        nonce = _new_nonce()
        signature = self.signing_key.sign(canonical_payload(poll_id, fingerprint, timestamp, nonce))
        return VoteToken(
            poll_id=poll_id,
            fingerprint=fingerprint,
            timestamp=timestamp,
            nonce=nonce,
            signature=signature,
        )

    def expires_at_ms(self, token: VoteToken) -> int:
        return token.timestamp + self.max_age_seconds * 1000

    def validate(self, token: VoteToken, now_ms: Optional[int] = None) -> TokenValidation:
        """
        Check freshness, then signature.

        Signatures are compared in constant time. An unkeyed client signature
        passes only when the service accepts client-minted tokens.
        """
        now_ms = now_ms if now_ms is not None else _now_ms()

        stale = _check_freshness(token, self.max_age_seconds, now_ms)
        if stale:
            return TokenValidation(valid=False, reason=stale)

        payload = token.signing_payload()
        if _signatures_match(self.signing_key.sign(payload), token.signature):
            return TokenValidation(valid=True)

        if self.accept_client_tokens and _signatures_match(_unkeyed_signature(payload), token.signature):
            logger.info("client_minted_vote_token_accepted", poll_id=token.poll_id)
            return TokenValidation(valid=True)

        return TokenValidation(valid=False, reason=INVALID_SIGNATURE)
