"""
Per-poll vote attempt rate limiting.

Attempts are counted per (poll, IP, hashed fingerprint) in storage, so the
limit holds across workers. A successful vote clears the counter.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

RATE_LIMITED_MESSAGE = "Too many voting attempts. Please try again later."


class RateLimitConfig(BaseModel):
    """Rate limiting thresholds."""

    max_attempts: int = 5
    window: timedelta = timedelta(minutes=15)
    suspicious_threshold: int = 3

    model_config = {"frozen": True}


class RateLimitResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    attempts_remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    is_suspicious: bool = False


def check_rate_limit(
    attempt,
    config: RateLimitConfig = RateLimitConfig(),
    now: Optional[datetime] = None,
) -> RateLimitResult:
    """
    Decide whether one more attempt is allowed.

    ``attempt`` is the stored counter (anything with ``attempt_count`` and
    ``last_attempt_at``) or None. The window slides from the last attempt:
    once it has been quiet for longer than the window, counting starts over.
    """
    if attempt is None or attempt.last_attempt_at is None:
        return RateLimitResult(allowed=True, attempts_remaining=config.max_attempts)

    now = now or datetime.now(timezone.utc)
    last_attempt_at = attempt.last_attempt_at
    if last_attempt_at.tzinfo is None:
        last_attempt_at = last_attempt_at.replace(tzinfo=timezone.utc)

    if now - last_attempt_at > config.window:
        return RateLimitResult(allowed=True, attempts_remaining=config.max_attempts)

    if attempt.attempt_count >= config.max_attempts:
        return RateLimitResult(
            allowed=False,
            reason=RATE_LIMITED_MESSAGE,
            attempts_remaining=0,
            reset_at=last_attempt_at + config.window,
        )

    return RateLimitResult(
        allowed=True,
        attempts_remaining=config.max_attempts - attempt.attempt_count,
        is_suspicious=attempt.attempt_count >= config.suspicious_threshold,
    )


class VoteRateLimiter:
    """Storage-backed limiter used by the vote submission flow."""

    def __init__(self, storage, config: Optional[RateLimitConfig] = None):
        self.storage = storage
        self.config = config or RateLimitConfig()

    async def register_attempt(
        self,
        poll_id: str,
        ip_address: str,
        hashed_fingerprint: Optional[str] = None,
    ) -> RateLimitResult:
        """
        Check the limit and, if allowed, count this attempt.

        Blocked attempts are not counted, so the reset time does not keep
        moving while a client hammers the endpoint. The suspicious flag
        reflects this attempt's position in the window (the
        ``suspicious_threshold``-th attempt and later are flagged).
        """
        now = datetime.now(timezone.utc)
        attempt = await self.storage.get_vote_attempt(poll_id, ip_address, hashed_fingerprint)
        result = check_rate_limit(attempt, self.config, now)

        if not result.allowed:
            logger.warning(
                "vote_rate_limit_exceeded",
                poll_id=poll_id,
                ip=ip_address[:8],
                reset_at=result.reset_at.isoformat() if result.reset_at else None,
            )
            return result

        # A full allowance on an existing counter means its window has lapsed
        window_expired = attempt is not None and result.attempts_remaining == self.config.max_attempts
        await self.storage.increment_vote_attempt(
            poll_id,
            ip_address,
            hashed_fingerprint,
            restart_window=window_expired,
        )

        current = 1 if attempt is None or window_expired else attempt.attempt_count + 1
        is_suspicious = current >= self.config.suspicious_threshold
        if is_suspicious:
            logger.info("vote_attempts_suspicious", poll_id=poll_id, ip=ip_address[:8], attempt=current)

        return result.model_copy(
            update={
                "attempts_remaining": self.config.max_attempts - current,
                "is_suspicious": is_suspicious,
            }
        )

    async def reset(
        self,
        poll_id: str,
        ip_address: str,
        hashed_fingerprint: Optional[str] = None,
    ) -> None:
        """Clear the counter after a successful vote."""
        await self.storage.reset_vote_attempt(poll_id, ip_address, hashed_fingerprint)
