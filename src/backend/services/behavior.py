"""
Behavioral and timing heuristics for vote submissions.

Both checks are advisory thresholds rather than security boundaries. They
are pure functions of what the client reports and what storage remembers.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

# =============================================================================
# Behavioral scoring
# =============================================================================

NEUTRAL_SCORE = 0.5
REJECT_SCORE = 1.0

BEHAVIOR_REJECT_MESSAGE = "Suspicious voting behavior detected"


class BehaviorResult(BaseModel):
    valid: bool
    suspicious_score: float
    reason: Optional[str] = None


def validate_behavior(time_on_page: Optional[float]) -> BehaviorResult:
    """
    Score how bot-like a submission looks from its time on page (seconds).

    Clients that cannot report timing get a neutral score rather than a
    rejection.
    """
    if time_on_page is None:
        return BehaviorResult(valid=True, suspicious_score=NEUTRAL_SCORE)

    score = 0.0
    if time_on_page < 2:
        score += 0.8
    elif time_on_page < 5:
        score += 0.3

    # Stale page left open for over an hour
    if time_on_page > 3600:
        score += 0.2

    if score >= REJECT_SCORE:
        return BehaviorResult(valid=False, suspicious_score=score, reason=BEHAVIOR_REJECT_MESSAGE)
    return BehaviorResult(valid=True, suspicious_score=score)


# =============================================================================
# Timing floors
# =============================================================================

TOO_FAST_MESSAGE = "Please take a moment to review the poll options before voting"
TOO_SOON_MESSAGE = "Please wait a moment before voting again"


class TimingConfig(BaseModel):
    min_time_on_page_ms: int = 2000
    min_time_between_votes_ms: int = 1000

    model_config = {"frozen": True}


class TimingResult(BaseModel):
    valid: bool
    reason: Optional[str] = None


def validate_timing(
    time_on_page: Optional[float],
    last_vote_time: Optional[datetime],
    config: TimingConfig = TimingConfig(),
    now: Optional[datetime] = None,
) -> TimingResult:
    """
    Hard floors on reading time and on spacing between votes.

    ``time_on_page`` is in seconds; the floors are configured in milliseconds.
    """
    if time_on_page is not None and time_on_page * 1000 < config.min_time_on_page_ms:
        return TimingResult(valid=False, reason=TOO_FAST_MESSAGE)

    if last_vote_time is not None:
        now = now or datetime.now(timezone.utc)
        if last_vote_time.tzinfo is None:
            last_vote_time = last_vote_time.replace(tzinfo=timezone.utc)
        elapsed_ms = (now - last_vote_time).total_seconds() * 1000
        if elapsed_ms < config.min_time_between_votes_ms:
            return TimingResult(valid=False, reason=TOO_SOON_MESSAGE)

    return TimingResult(valid=True)
