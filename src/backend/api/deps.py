"""
Shared dependencies for API endpoints.

Includes:
- Optional JWT authentication (voter id from the token subject)
- Client IP and device fingerprint extraction
- Vote integrity service wiring
"""

from datetime import timedelta
from typing import Annotated, Optional

import structlog
from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.config import settings
from core.security import decode_token, get_vote_signing_key
from repositories.provider import VoteStorageProtocol, get_vote_repository
from services.behavior import TimingConfig
from services.rate_limiter import RateLimitConfig
from services.vote_integrity import VoteIntegrityService
from services.vote_token import VoteTokenService

logger = structlog.get_logger(__name__)

# Security schemes
security_optional = HTTPBearer(auto_error=False)

FINGERPRINT_HEADER = "X-Fingerprint"


# =============================================================================
# Request identity
# =============================================================================


async def get_current_user_id_optional(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security_optional)],
) -> Optional[str]:
    """
    Optionally extract the voter id from a bearer token.

    Returns None if no token is provided or the token is invalid. Anonymous
    polls work without one; non-anonymous polls reject the vote later.
    """
    if credentials is None:
        return None

    payload = decode_token(credentials.credentials, expected_type="access")
    if payload is None:
        logger.info("invalid_access_token_ignored")
        return None

    return payload.get("sub")


def get_client_ip(request: Request) -> str:
    """Extract real client IP from request, handling proxies."""
    if settings.TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # Take first IP (original client)
            return forwarded_for.split(",")[0].strip()[:45]

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()[:45]

    if request.client:
        return request.client.host

    return "unknown"


async def get_fingerprint(
    x_fingerprint: Annotated[Optional[str], Header(alias=FINGERPRINT_HEADER)] = None,
) -> Optional[str]:
    """Raw device fingerprint sent by the client, if any."""
    if x_fingerprint is None:
        return None
    return x_fingerprint.strip() or None


# =============================================================================
# Services
# =============================================================================


def get_vote_token_service() -> VoteTokenService:
    """Vote token service bound to the configured signing key."""
    return VoteTokenService(
        signing_key=get_vote_signing_key(),
        max_age_seconds=settings.VOTE_TOKEN_MAX_AGE_SECONDS,
        accept_client_tokens=settings.ACCEPT_CLIENT_MINTED_TOKENS,
    )


def get_rate_limit_config() -> RateLimitConfig:
    return RateLimitConfig(
        max_attempts=settings.VOTE_RATE_LIMIT_MAX_ATTEMPTS,
        window=timedelta(minutes=settings.VOTE_RATE_LIMIT_WINDOW_MINUTES),
        suspicious_threshold=settings.VOTE_RATE_LIMIT_SUSPICIOUS_THRESHOLD,
    )


def get_timing_config() -> TimingConfig:
    return TimingConfig(
        min_time_on_page_ms=settings.VOTE_MIN_TIME_ON_PAGE_MS,
        min_time_between_votes_ms=settings.VOTE_MIN_TIME_BETWEEN_VOTES_MS,
    )


async def get_vote_integrity_service(
    storage: VoteStorageProtocol = Depends(get_vote_repository),
    token_service: VoteTokenService = Depends(get_vote_token_service),
    rate_limit_config: RateLimitConfig = Depends(get_rate_limit_config),
    timing_config: TimingConfig = Depends(get_timing_config),
) -> VoteIntegrityService:
    """Vote integrity service for the current request."""
    return VoteIntegrityService(
        storage=storage,
        token_service=token_service,
        rate_limit_config=rate_limit_config,
        timing_config=timing_config,
        require_token=settings.REQUIRE_VOTE_TOKEN,
    )
