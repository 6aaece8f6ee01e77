"""
Vote Integrity Service.

Runs a vote submission through every gate, cheapest first, and stops at the
first failure:

1. Poll open - inactive or ended polls take no votes
2. Structural - option ids present, known, unique, single unless multi-choice
3. Identity - non-anonymous polls need an authenticated voter
4. Rate limit - attempts per poll, IP and device inside a sliding window
5. Vote token - well-formed, fresh, signed, bound to this poll and device, unspent
6. Behavior and timing - time on page and spacing since the last vote
7. Duplicate resolution - create, replace, or reject as already voted

Rejections come back as a VoteDecision with a reason and a user-readable
message. Nothing is written unless every gate passes. Only unexpected
storage errors propagate.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from core.security import hash_fingerprint
from schemas.poll import PollSettings
from services.behavior import NEUTRAL_SCORE, TimingConfig, validate_behavior, validate_timing
from services.identity import VoterIdentity, resolve_identity
from services.rate_limiter import RateLimitConfig, VoteRateLimiter
from services.vote_resolver import (
    DuplicateVoteResolver,
    ResolutionOutcome,
    VoteMetadata,
)
from services.vote_token import VoteToken, VoteTokenService, deserialize_vote_token

logger = structlog.get_logger(__name__)


# =============================================================================
# Schemas
# =============================================================================


class RejectionReason(str, Enum):
    """Why a vote submission was turned away."""

    POLL_CLOSED = "poll_closed"
    INVALID_SELECTION = "invalid_selection"
    UNAUTHENTICATED = "unauthenticated"
    RATE_LIMITED = "rate_limited"
    TOKEN_INVALID = "token_invalid"
    BEHAVIORAL_REJECT = "behavioral_reject"
    TIMING_REJECT = "timing_reject"
    ALREADY_VOTED = "already_voted"


class VoteOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    REJECTED = "rejected"


class VoteSubmission(BaseModel):
    """Everything the request carried that bears on the decision."""

    option_ids: list[str] = Field(default_factory=list)
    voter_id: Optional[str] = None
    ip_address: str = "unknown"
    fingerprint: Optional[str] = None  # Raw X-Fingerprint header value
    vote_token: Optional[str] = None
    time_on_page: Optional[float] = None  # Seconds


class VoteDecision(BaseModel):
    """Final outcome of a vote submission."""

    outcome: VoteOutcome
    message: str
    reason: Optional[RejectionReason] = None
    vote_ids: list[str] = Field(default_factory=list)
    reset_at: Optional[datetime] = None
    is_suspicious: bool = False
    suspicious_score: Optional[float] = None

    @property
    def accepted(self) -> bool:
        return self.outcome != VoteOutcome.REJECTED


# User-facing messages
POLL_INACTIVE_MESSAGE = "Poll is not active"
POLL_ENDED_MESSAGE = "Poll has ended"
AUTH_REQUIRED_MESSAGE = "Authentication required for non-anonymous polls"
NO_OPTIONS_MESSAGE = "At least one option ID is required"
SINGLE_CHOICE_MESSAGE = "Multiple selections are not allowed for this poll"
INVALID_OPTIONS_MESSAGE = "Invalid option(s) selected"
DUPLICATE_OPTIONS_MESSAGE = "The same option cannot be selected twice"
TOKEN_MALFORMED_MESSAGE = "Invalid vote token"
TOKEN_REQUIRED_MESSAGE = "A vote token is required to vote on this poll"
TOKEN_WRONG_POLL_MESSAGE = "Vote token was issued for a different poll"
TOKEN_WRONG_DEVICE_MESSAGE = "Vote token was issued for a different device"
TOKEN_USED_MESSAGE = "Vote token has already been used"
ALREADY_VOTED_MESSAGE = "You have already voted in this poll"


def _reject(reason: RejectionReason, message: str, **extra) -> VoteDecision:
    return VoteDecision(outcome=VoteOutcome.REJECTED, reason=reason, message=message, **extra)


def _success_message(outcome: ResolutionOutcome, count: int) -> str:
    noun = "Votes" if count > 1 else "Vote"
    verb = "updated" if outcome == ResolutionOutcome.UPDATED else "submitted"
    return f"{noun} {verb} successfully"


def check_selection(poll: PollSettings, option_ids: list[str]) -> Optional[str]:
    """Return a rejection message if the selection is malformed for the poll."""
    if not option_ids:
        return NO_OPTIONS_MESSAGE
    if len(option_ids) > 1 and not poll.is_multiple_choice:
        return SINGLE_CHOICE_MESSAGE
    if len(set(option_ids)) != len(option_ids):
        return DUPLICATE_OPTIONS_MESSAGE
    if not set(option_ids) <= poll.option_ids:
        return INVALID_OPTIONS_MESSAGE
    return None


# =============================================================================
# Orchestrator
# =============================================================================


class VoteIntegrityService:
    """Admit, update or reject vote submissions for a poll."""

    def __init__(
        self,
        storage,
        token_service: VoteTokenService,
        rate_limit_config: Optional[RateLimitConfig] = None,
        timing_config: Optional[TimingConfig] = None,
        require_token: bool = False,
    ):
        self.storage = storage
        self.token_service = token_service
        self.rate_limiter = VoteRateLimiter(storage, rate_limit_config)
        self.timing_config = timing_config or TimingConfig()
        self.resolver = DuplicateVoteResolver(storage)
        self.require_token = require_token

    def mint_token(self, poll_id: str, fingerprint: str) -> VoteToken:
        """Issue a server-signed vote token for a poll and device."""
        return self.token_service.mint(poll_id, fingerprint)

    async def has_voted(
        self,
        poll: PollSettings,
        voter_id: Optional[str],
        ip_address: str,
        fingerprint: Optional[str],
    ) -> bool:
        """Check for an existing vote using the same identity policy as submissions."""
        hashed = hash_fingerprint(fingerprint) if fingerprint else None
        identity = resolve_identity(poll, voter_id, ip_address, hashed)
        if identity is None:
            return False
        return await self.storage.has_user_voted(poll.id, identity)

    async def _check_token(
        self,
        poll: PollSettings,
        submission: VoteSubmission,
    ) -> tuple[Optional[VoteToken], Optional[str]]:
        """Return the usable token (if any) or a rejection message."""
        if not submission.vote_token:
            if self.require_token:
                return None, TOKEN_REQUIRED_MESSAGE
            return None, None

        token = deserialize_vote_token(submission.vote_token)
        if token is None:
            return None, TOKEN_MALFORMED_MESSAGE

        validation = self.token_service.validate(token)
        if not validation.valid:
            return None, validation.reason

        if token.poll_id != poll.id:
            return None, TOKEN_WRONG_POLL_MESSAGE
        if submission.fingerprint and token.fingerprint != submission.fingerprint:
            return None, TOKEN_WRONG_DEVICE_MESSAGE
        if await self.storage.is_token_used(token.nonce):
            return None, TOKEN_USED_MESSAGE

        return token, None

    async def submit_vote(self, poll: PollSettings, submission: VoteSubmission) -> VoteDecision:
        """Run a submission through every gate and store it if all pass."""
        log = logger.bind(poll_id=poll.id, poll_type=poll.poll_type, ip=submission.ip_address[:8])

        # 1. Poll open
        if not poll.is_active:
            return _reject(RejectionReason.POLL_CLOSED, POLL_INACTIVE_MESSAGE)
        if poll.has_ended():
            return _reject(RejectionReason.POLL_CLOSED, POLL_ENDED_MESSAGE)

        # 2. Structural
        problem = check_selection(poll, submission.option_ids)
        if problem:
            log.info("vote_rejected", reason=RejectionReason.INVALID_SELECTION.value, detail=problem)
            return _reject(RejectionReason.INVALID_SELECTION, problem)

        # 3. Identity
        hashed_fp = hash_fingerprint(submission.fingerprint) if submission.fingerprint else None
        identity: Optional[VoterIdentity] = resolve_identity(
            poll, submission.voter_id, submission.ip_address, hashed_fp
        )
        if identity is None:
            return _reject(RejectionReason.UNAUTHENTICATED, AUTH_REQUIRED_MESSAGE)

        # 4. Rate limit
        rate = await self.rate_limiter.register_attempt(poll.id, submission.ip_address, hashed_fp)
        if not rate.allowed:
            return _reject(
                RejectionReason.RATE_LIMITED,
                rate.reason or "",
                reset_at=rate.reset_at,
            )

        # 5. Vote token
        token, problem = await self._check_token(poll, submission)
        if problem:
            log.warning("vote_rejected", reason=RejectionReason.TOKEN_INVALID.value, detail=problem)
            return _reject(RejectionReason.TOKEN_INVALID, problem, is_suspicious=rate.is_suspicious)

        # 6. Behavior and timing
        behavior = validate_behavior(submission.time_on_page)
        if not behavior.valid:
            log.warning(
                "vote_rejected",
                reason=RejectionReason.BEHAVIORAL_REJECT.value,
                score=behavior.suspicious_score,
            )
            return _reject(
                RejectionReason.BEHAVIORAL_REJECT,
                behavior.reason or "",
                suspicious_score=behavior.suspicious_score,
                is_suspicious=rate.is_suspicious,
            )

        last_vote_time = await self.storage.get_last_vote_time(poll.id, identity)
        timing = validate_timing(submission.time_on_page, last_vote_time, self.timing_config)
        if not timing.valid:
            log.info("vote_rejected", reason=RejectionReason.TIMING_REJECT.value, detail=timing.reason)
            return _reject(
                RejectionReason.TIMING_REJECT,
                timing.reason or "",
                suspicious_score=behavior.suspicious_score,
                is_suspicious=rate.is_suspicious,
            )

        if rate.is_suspicious or behavior.suspicious_score > NEUTRAL_SCORE:
            log.info(
                "vote_flagged_suspicious",
                repeated_attempts=rate.is_suspicious,
                score=behavior.suspicious_score,
            )

        # Token is spent before any vote row is written
        if token is not None and not await self.storage.mark_token_used(token.nonce, poll.id):
            return _reject(RejectionReason.TOKEN_INVALID, TOKEN_USED_MESSAGE)

        # 7. Duplicate resolution
        resolution = await self.resolver.resolve(
            poll,
            identity,
            submission.option_ids,
            VoteMetadata(
                ip_address=submission.ip_address,
                browser_fingerprint=submission.fingerprint,
                vote_token=submission.vote_token,
                time_on_page=submission.time_on_page,
            ),
        )

        if resolution.outcome == ResolutionOutcome.ALREADY_VOTED:
            log.info("vote_rejected", reason=RejectionReason.ALREADY_VOTED.value, identity=identity.kind)
            return _reject(RejectionReason.ALREADY_VOTED, ALREADY_VOTED_MESSAGE)

        await self.rate_limiter.reset(poll.id, submission.ip_address, hashed_fp)

        outcome = (
            VoteOutcome.CREATED
            if resolution.outcome == ResolutionOutcome.CREATED
            else VoteOutcome.UPDATED
        )
        log.info(
            "vote_accepted",
            outcome=outcome.value,
            identity=identity.kind,
            options=len(submission.option_ids),
        )
        return VoteDecision(
            outcome=outcome,
            message=_success_message(resolution.outcome, len(submission.option_ids)),
            vote_ids=resolution.vote_ids,
            is_suspicious=rate.is_suspicious,
            suspicious_score=behavior.suspicious_score,
        )
