"""
Tests for duplicate-vote resolution.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from repositories.vote_repository import VoteConflictError, VoteNotFoundError
from schemas.poll import PollSettings
from services.identity import AnonymousStrongIdentity, AnonymousWeakIdentity, AuthenticatedIdentity
from services.vote_resolver import DuplicateVoteResolver, ResolutionOutcome, VoteMetadata

OPTIONS = frozenset({"opt-a", "opt-b", "opt-c"})
STRONG = AnonymousStrongIdentity(ip_address="203.0.113.7", hashed_fingerprint="f" * 64)


def _poll(**flags) -> PollSettings:
    return PollSettings(id="poll-1", option_ids=OPTIONS, **flags)


@pytest.mark.unit
class TestDuplicateVoteResolver:
    """Test create / update / reject decisions."""

    async def test_first_vote_created(self, mock_storage: MagicMock) -> None:
        """An identity with no votes gets a new row."""
        resolver = DuplicateVoteResolver(mock_storage)

        resolution = await resolver.resolve(_poll(), STRONG, ["opt-a"])

        assert resolution.outcome == ResolutionOutcome.CREATED
        assert resolution.vote_ids == ["vote-1"]
        record = mock_storage.submit_vote.await_args.args[0]
        assert record.option_id == "opt-a"
        assert record.selection_key == ""
        assert record.hashed_fingerprint == STRONG.hashed_fingerprint
        assert record.voter_id is None

    async def test_multi_choice_creates_one_row_per_option(self, mock_storage: MagicMock) -> None:
        """Each selected option gets its own row keyed by the option id."""
        resolver = DuplicateVoteResolver(mock_storage)

        resolution = await resolver.resolve(_poll(is_multiple_choice=True), STRONG, ["opt-a", "opt-b"])

        assert resolution.outcome == ResolutionOutcome.CREATED
        records = mock_storage.submit_votes.await_args.args[0]
        assert [r.selection_key for r in records] == ["opt-a", "opt-b"]

    async def test_repeat_vote_rejected_without_changes(self, mock_storage: MagicMock) -> None:
        """Polls without vote changes reject a second submission."""
        mock_storage.get_user_votes.return_value = [MagicMock(id="vote-1")]
        resolver = DuplicateVoteResolver(mock_storage)

        resolution = await resolver.resolve(_poll(), STRONG, ["opt-b"])

        assert resolution.outcome == ResolutionOutcome.ALREADY_VOTED
        mock_storage.submit_vote.assert_not_awaited()
        mock_storage.update_vote.assert_not_awaited()

    async def test_single_choice_change_updates_in_place(self, mock_storage: MagicMock) -> None:
        """With vote changes allowed, the existing row moves to the new option."""
        mock_storage.get_user_votes.return_value = [MagicMock(id="vote-1")]
        resolver = DuplicateVoteResolver(mock_storage)

        resolution = await resolver.resolve(_poll(allow_vote_changes=True), STRONG, ["opt-b"])

        assert resolution.outcome == ResolutionOutcome.UPDATED
        assert resolution.vote_ids == ["vote-1"]
        mock_storage.update_vote.assert_awaited_once_with("poll-1", STRONG, "opt-b")

    async def test_multi_choice_change_replaces_set(self, mock_storage: MagicMock) -> None:
        """Multiple-choice changes swap the whole selection."""
        mock_storage.get_user_votes.return_value = [MagicMock(id="vote-1"), MagicMock(id="vote-2")]
        resolver = DuplicateVoteResolver(mock_storage)
        poll = _poll(allow_vote_changes=True, is_multiple_choice=True)

        resolution = await resolver.resolve(poll, STRONG, ["opt-c"])

        assert resolution.outcome == ResolutionOutcome.UPDATED
        assert resolution.vote_ids == ["vote-3"]
        _, identity, records = mock_storage.replace_user_votes.await_args.args
        assert identity == STRONG
        assert [r.option_id for r in records] == ["opt-c"]

    async def test_authenticated_identity_stores_voter_id(self, mock_storage: MagicMock) -> None:
        """Non-anonymous polls record who voted."""
        resolver = DuplicateVoteResolver(mock_storage)
        identity = AuthenticatedIdentity(voter_id="voter-123")

        await resolver.resolve(
            _poll(is_anonymous=False),
            identity,
            ["opt-a"],
            VoteMetadata(ip_address="203.0.113.7", browser_fingerprint="raw-fp"),
        )

        record = mock_storage.submit_vote.await_args.args[0]
        assert record.voter_id == "voter-123"
        assert record.hashed_fingerprint is None
        assert record.browser_fingerprint is None

    async def test_weak_identity_stores_no_fingerprint(self, mock_storage: MagicMock) -> None:
        """IP-only identities leave the fingerprint columns empty."""
        resolver = DuplicateVoteResolver(mock_storage)

        await resolver.resolve(
            _poll(),
            AnonymousWeakIdentity(ip_address="203.0.113.7"),
            ["opt-a"],
            VoteMetadata(ip_address="203.0.113.7"),
        )

        record = mock_storage.submit_vote.await_args.args[0]
        assert record.hashed_fingerprint is None
        assert record.browser_fingerprint is None
        assert record.ip_address == "203.0.113.7"

    async def test_lost_insert_race_becomes_already_voted(self, mock_storage: MagicMock) -> None:
        """A concurrent winner turns our insert into a duplicate on retry."""
        mock_storage.get_user_votes = AsyncMock(side_effect=[[], [MagicMock(id="winner")]])
        mock_storage.submit_vote.side_effect = VoteConflictError("unique violation")
        resolver = DuplicateVoteResolver(mock_storage)

        resolution = await resolver.resolve(_poll(), STRONG, ["opt-a"])

        assert resolution.outcome == ResolutionOutcome.ALREADY_VOTED
        assert mock_storage.get_user_votes.await_count == 2

    async def test_lost_insert_race_becomes_update(self, mock_storage: MagicMock) -> None:
        """With changes allowed, the retry updates the winner's row."""
        mock_storage.get_user_votes = AsyncMock(side_effect=[[], [MagicMock(id="winner")]])
        mock_storage.submit_vote.side_effect = VoteConflictError("unique violation")
        resolver = DuplicateVoteResolver(mock_storage)

        resolution = await resolver.resolve(_poll(allow_vote_changes=True), STRONG, ["opt-a"])

        assert resolution.outcome == ResolutionOutcome.UPDATED
        mock_storage.update_vote.assert_awaited_once()

    async def test_vanished_vote_becomes_create(self, mock_storage: MagicMock) -> None:
        """If the vote disappears before the update, the retry creates one."""
        mock_storage.get_user_votes = AsyncMock(side_effect=[[MagicMock(id="old")], []])
        mock_storage.update_vote.side_effect = VoteNotFoundError("gone")
        resolver = DuplicateVoteResolver(mock_storage)

        resolution = await resolver.resolve(_poll(allow_vote_changes=True), STRONG, ["opt-a"])

        assert resolution.outcome == ResolutionOutcome.CREATED

    async def test_persistent_conflict_is_already_voted(self, mock_storage: MagicMock) -> None:
        """Conflicts that survive the retry resolve to already voted, never raise."""
        mock_storage.submit_vote.side_effect = VoteConflictError("unique violation")
        resolver = DuplicateVoteResolver(mock_storage)

        resolution = await resolver.resolve(_poll(), STRONG, ["opt-a"])

        assert resolution.outcome == ResolutionOutcome.ALREADY_VOTED
        assert resolution.vote_ids == []
        assert mock_storage.submit_vote.await_count == DuplicateVoteResolver.MAX_CONFLICT_RETRIES + 1
