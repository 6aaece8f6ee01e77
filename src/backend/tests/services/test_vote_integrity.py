"""
Tests for the vote integrity pipeline.

Storage is mocked; every gate runs for real.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from core.security import hash_fingerprint
from schemas.poll import PollSettings
from services.behavior import TOO_FAST_MESSAGE, TimingConfig
from services.identity import AnonymousStrongIdentity, AnonymousWeakIdentity, AuthenticatedIdentity
from services.vote_integrity import (
    ALREADY_VOTED_MESSAGE,
    AUTH_REQUIRED_MESSAGE,
    DUPLICATE_OPTIONS_MESSAGE,
    INVALID_OPTIONS_MESSAGE,
    NO_OPTIONS_MESSAGE,
    POLL_ENDED_MESSAGE,
    POLL_INACTIVE_MESSAGE,
    SINGLE_CHOICE_MESSAGE,
    TOKEN_MALFORMED_MESSAGE,
    TOKEN_REQUIRED_MESSAGE,
    TOKEN_USED_MESSAGE,
    TOKEN_WRONG_DEVICE_MESSAGE,
    TOKEN_WRONG_POLL_MESSAGE,
    RejectionReason,
    VoteIntegrityService,
    VoteOutcome,
    VoteSubmission,
    check_selection,
)
from services.vote_token import (
    INVALID_SIGNATURE,
    SigningKey,
    VoteTokenService,
    mint_client_token,
    serialize_vote_token,
)

OPTIONS = frozenset({"opt-a", "opt-b", "opt-c"})
IP = "203.0.113.7"
FP = "device-fingerprint-a"


def _poll(**flags) -> PollSettings:
    return PollSettings(id="poll-1", option_ids=OPTIONS, **flags)


def _submission(**overrides) -> VoteSubmission:
    values = {"option_ids": ["opt-a"], "ip_address": IP, "fingerprint": FP, "time_on_page": 12}
    values.update(overrides)
    return VoteSubmission(**values)


@pytest.fixture
def token_service() -> VoteTokenService:
    return VoteTokenService(SigningKey(b"unit-test-secret"))


@pytest.fixture
def service(mock_storage: MagicMock, token_service: VoteTokenService) -> VoteIntegrityService:
    return VoteIntegrityService(mock_storage, token_service)


@pytest.mark.unit
class TestCheckSelection:
    """Test structural validation of the selected options."""

    def test_valid_single_selection(self) -> None:
        """One known option is fine."""
        assert check_selection(_poll(), ["opt-a"]) is None

    @pytest.mark.parametrize(
        "flags,option_ids,message",
        [
            ({}, [], NO_OPTIONS_MESSAGE),
            ({}, ["opt-a", "opt-b"], SINGLE_CHOICE_MESSAGE),
            ({"is_multiple_choice": True}, ["opt-a", "opt-a"], DUPLICATE_OPTIONS_MESSAGE),
            ({}, ["opt-z"], INVALID_OPTIONS_MESSAGE),
            ({"is_multiple_choice": True}, ["opt-a", "opt-z"], INVALID_OPTIONS_MESSAGE),
        ],
    )
    def test_malformed_selection(self, flags: dict, option_ids: list[str], message: str) -> None:
        """Malformed selections are described, not raised."""
        assert check_selection(_poll(**flags), option_ids) == message


@pytest.mark.unit
class TestSubmitVoteGates:
    """Test each gate's rejection."""

    async def test_inactive_poll_rejected(self, service, mock_storage) -> None:
        """Inactive polls take no votes and count no attempts."""
        decision = await service.submit_vote(_poll(is_active=False), _submission())

        assert decision.reason == RejectionReason.POLL_CLOSED
        assert decision.message == POLL_INACTIVE_MESSAGE
        mock_storage.increment_vote_attempt.assert_not_awaited()

    async def test_ended_poll_rejected(self, service) -> None:
        """Polls past their end date are closed."""
        poll = _poll(end_date=datetime.now(timezone.utc) - timedelta(minutes=1))

        decision = await service.submit_vote(poll, _submission())

        assert decision.reason == RejectionReason.POLL_CLOSED
        assert decision.message == POLL_ENDED_MESSAGE

    async def test_invalid_selection_rejected_before_rate_limit(self, service, mock_storage) -> None:
        """Structural errors never reach storage."""
        decision = await service.submit_vote(_poll(), _submission(option_ids=["opt-z"]))

        assert decision.reason == RejectionReason.INVALID_SELECTION
        mock_storage.get_vote_attempt.assert_not_awaited()

    async def test_non_anonymous_poll_requires_voter(self, service) -> None:
        """Polls tied to accounts reject anonymous submissions."""
        decision = await service.submit_vote(_poll(is_anonymous=False), _submission())

        assert decision.reason == RejectionReason.UNAUTHENTICATED
        assert decision.message == AUTH_REQUIRED_MESSAGE

    async def test_rate_limited(self, service, mock_storage) -> None:
        """A full attempt counter blocks the vote and reports when to retry."""
        mock_storage.get_vote_attempt.return_value = SimpleNamespace(
            attempt_count=5,
            last_attempt_at=datetime.now(timezone.utc),
        )

        decision = await service.submit_vote(_poll(), _submission())

        assert decision.reason == RejectionReason.RATE_LIMITED
        assert decision.reset_at is not None
        mock_storage.submit_vote.assert_not_awaited()

    async def test_too_fast_rejected(self, service, mock_storage) -> None:
        """Submissions after a second on the page hit the timing floor."""
        decision = await service.submit_vote(_poll(), _submission(time_on_page=1))

        assert decision.reason == RejectionReason.TIMING_REJECT
        assert decision.message == TOO_FAST_MESSAGE
        assert decision.suspicious_score == pytest.approx(0.8)
        mock_storage.submit_vote.assert_not_awaited()

    async def test_vote_too_soon_after_last(self, mock_storage, token_service) -> None:
        """The spacing floor applies to the identity's last vote."""
        mock_storage.get_last_vote_time.return_value = datetime.now(timezone.utc)
        service = VoteIntegrityService(
            mock_storage,
            token_service,
            timing_config=TimingConfig(min_time_between_votes_ms=60_000),
        )

        decision = await service.submit_vote(_poll(), _submission())

        assert decision.reason == RejectionReason.TIMING_REJECT

    async def test_already_voted(self, service, mock_storage) -> None:
        """A second vote on a poll without changes is rejected."""
        mock_storage.get_user_votes.return_value = [MagicMock(id="vote-1")]

        decision = await service.submit_vote(_poll(), _submission())

        assert decision.reason == RejectionReason.ALREADY_VOTED
        assert decision.message == ALREADY_VOTED_MESSAGE
        mock_storage.reset_vote_attempt.assert_not_awaited()

    async def test_unresolved_storage_race(self, service, mock_storage) -> None:
        """Races that keep losing are rejected as already voted."""
        from repositories.vote_repository import VoteConflictError

        mock_storage.submit_vote.side_effect = VoteConflictError("unique violation")

        decision = await service.submit_vote(_poll(), _submission())

        assert decision.reason == RejectionReason.ALREADY_VOTED
        assert decision.message == ALREADY_VOTED_MESSAGE
        mock_storage.reset_vote_attempt.assert_not_awaited()

    async def test_unexpected_storage_errors_propagate(self, service, mock_storage) -> None:
        """Only anticipated failures are turned into rejections."""
        mock_storage.submit_vote.side_effect = RuntimeError("database is down")

        with pytest.raises(RuntimeError):
            await service.submit_vote(_poll(), _submission())


@pytest.mark.unit
class TestSubmitVoteTokens:
    """Test the vote token gate."""

    async def test_valid_token_spent(self, service, mock_storage, token_service) -> None:
        """A good token is marked used before the vote is written."""
        token = token_service.mint("poll-1", FP)

        decision = await service.submit_vote(
            _poll(), _submission(vote_token=serialize_vote_token(token))
        )

        assert decision.outcome == VoteOutcome.CREATED
        mock_storage.mark_token_used.assert_awaited_once_with(token.nonce, "poll-1")

    async def test_missing_token_allowed_by_default(self, service, mock_storage) -> None:
        """Tokens are optional unless required."""
        decision = await service.submit_vote(_poll(), _submission())

        assert decision.accepted is True
        mock_storage.mark_token_used.assert_not_awaited()

    async def test_missing_token_rejected_when_required(self, mock_storage, token_service) -> None:
        """Deployments can insist on a token."""
        service = VoteIntegrityService(mock_storage, token_service, require_token=True)

        decision = await service.submit_vote(_poll(), _submission())

        assert decision.reason == RejectionReason.TOKEN_INVALID
        assert decision.message == TOKEN_REQUIRED_MESSAGE

    async def test_malformed_token(self, service) -> None:
        """Undecodable tokens are rejected."""
        decision = await service.submit_vote(_poll(), _submission(vote_token="%%%"))

        assert decision.reason == RejectionReason.TOKEN_INVALID
        assert decision.message == TOKEN_MALFORMED_MESSAGE

    async def test_token_for_other_poll(self, service, token_service) -> None:
        """Tokens are bound to one poll."""
        token = token_service.mint("poll-2", FP)

        decision = await service.submit_vote(_poll(), _submission(vote_token=serialize_vote_token(token)))

        assert decision.message == TOKEN_WRONG_POLL_MESSAGE

    async def test_token_for_other_device(self, service, token_service) -> None:
        """Tokens are bound to the fingerprint they were minted for."""
        token = token_service.mint("poll-1", "device-fingerprint-b")

        decision = await service.submit_vote(_poll(), _submission(vote_token=serialize_vote_token(token)))

        assert decision.message == TOKEN_WRONG_DEVICE_MESSAGE

    async def test_client_minted_token_rejected(self, service) -> None:
        """Unkeyed tokens fail the signature check by default."""
        token = mint_client_token("poll-1", FP)

        decision = await service.submit_vote(_poll(), _submission(vote_token=serialize_vote_token(token)))

        assert decision.reason == RejectionReason.TOKEN_INVALID
        assert decision.message == INVALID_SIGNATURE

    async def test_used_token_rejected(self, service, mock_storage, token_service) -> None:
        """Spent nonces cannot be replayed."""
        mock_storage.is_token_used.return_value = True
        token = token_service.mint("poll-1", FP)

        decision = await service.submit_vote(_poll(), _submission(vote_token=serialize_vote_token(token)))

        assert decision.message == TOKEN_USED_MESSAGE
        mock_storage.submit_vote.assert_not_awaited()

    async def test_concurrent_replay_rejected(self, service, mock_storage, token_service) -> None:
        """Losing the race to spend a nonce rejects the vote."""
        mock_storage.mark_token_used.return_value = False
        token = token_service.mint("poll-1", FP)

        decision = await service.submit_vote(_poll(), _submission(vote_token=serialize_vote_token(token)))

        assert decision.message == TOKEN_USED_MESSAGE
        mock_storage.submit_vote.assert_not_awaited()


@pytest.mark.unit
class TestSubmitVoteSuccess:
    """Test accepted submissions."""

    async def test_created(self, service, mock_storage) -> None:
        """A first vote is created and the attempt counter cleared."""
        decision = await service.submit_vote(_poll(), _submission())

        assert decision.outcome == VoteOutcome.CREATED
        assert decision.message == "Vote submitted successfully"
        assert decision.vote_ids == ["vote-1"]
        mock_storage.reset_vote_attempt.assert_awaited_once_with("poll-1", IP, hash_fingerprint(FP))

    async def test_multi_choice_created(self, service) -> None:
        """Several options produce several vote ids."""
        decision = await service.submit_vote(
            _poll(is_multiple_choice=True), _submission(option_ids=["opt-a", "opt-b"])
        )

        assert decision.message == "Votes submitted successfully"
        assert decision.vote_ids == ["vote-1", "vote-2"]

    async def test_updated(self, service, mock_storage) -> None:
        """Polls allowing changes update the earlier vote."""
        mock_storage.get_user_votes.return_value = [MagicMock(id="vote-1")]

        decision = await service.submit_vote(
            _poll(allow_vote_changes=True), _submission(option_ids=["opt-b"])
        )

        assert decision.outcome == VoteOutcome.UPDATED
        assert decision.message == "Vote updated successfully"

    async def test_suspicious_flag_does_not_block(self, service, mock_storage) -> None:
        """Repeated attempts are reported but the vote goes through."""
        mock_storage.get_vote_attempt.return_value = SimpleNamespace(
            attempt_count=3,
            last_attempt_at=datetime.now(timezone.utc),
        )

        decision = await service.submit_vote(_poll(), _submission())

        assert decision.accepted is True
        assert decision.is_suspicious is True

    async def test_missing_time_on_page_is_neutral(self, service) -> None:
        """Clients without timing data are scored neutrally."""
        decision = await service.submit_vote(_poll(), _submission(time_on_page=None))

        assert decision.accepted is True
        assert decision.suspicious_score == pytest.approx(0.5)

    async def test_fingerprint_is_hashed_for_identity(self, service, mock_storage) -> None:
        """Storage only ever sees the hashed fingerprint as identity."""
        await service.submit_vote(_poll(), _submission())

        identity = mock_storage.get_user_votes.await_args.args[1]
        assert identity == AnonymousStrongIdentity(ip_address=IP, hashed_fingerprint=hash_fingerprint(FP))

    async def test_no_fingerprint_uses_ip_only(self, service, mock_storage) -> None:
        """Without a fingerprint the identity falls back to the IP."""
        await service.submit_vote(_poll(), _submission(fingerprint=None))

        identity = mock_storage.get_user_votes.await_args.args[1]
        assert identity == AnonymousWeakIdentity(ip_address=IP)

    async def test_authenticated_vote_ignores_device(self, service, mock_storage) -> None:
        """Non-anonymous polls identify the voter by account only."""
        await service.submit_vote(_poll(is_anonymous=False), _submission(voter_id="voter-123"))

        identity = mock_storage.get_user_votes.await_args.args[1]
        assert identity == AuthenticatedIdentity(voter_id="voter-123")

    async def test_anonymous_poll_never_uses_voter_id(self, service, mock_storage) -> None:
        """A signed-in voter on an anonymous poll is still anonymous."""
        await service.submit_vote(_poll(), _submission(voter_id="voter-123"))

        record = mock_storage.submit_vote.await_args.args[0]
        assert record.voter_id is None


@pytest.mark.unit
class TestHasVoted:
    """Test the has-voted check."""

    async def test_uses_identity_policy(self, service, mock_storage) -> None:
        """The check asks storage with the resolved identity."""
        mock_storage.has_user_voted.return_value = True

        assert await service.has_voted(_poll(), None, IP, FP) is True
        mock_storage.has_user_voted.assert_awaited_once_with(
            "poll-1", AnonymousStrongIdentity(ip_address=IP, hashed_fingerprint=hash_fingerprint(FP))
        )

    async def test_unauthenticated_on_account_poll(self, service, mock_storage) -> None:
        """Without an account there is nothing to look up."""
        assert await service.has_voted(_poll(is_anonymous=False), None, IP, FP) is False
        mock_storage.has_user_voted.assert_not_awaited()
