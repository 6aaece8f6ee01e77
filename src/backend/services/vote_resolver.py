"""
Duplicate-vote resolution.

Given a poll's settings and a voter identity, decide whether a submission
creates votes, replaces the identity's earlier votes, or is a duplicate.

The lookup-then-write sequence is racy by nature. Two requests from the
same identity can both see "no votes yet"; the unique indexes on the votes
table let only one insert through and the other gets a VoteConflictError.
The loser re-runs the decision, which now sees the winner's row and turns
into an update or an already-voted rejection. A loser that keeps losing is
treated as already voted.
"""

from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from repositories.vote_repository import VoteConflictError, VoteNotFoundError
from schemas.poll import PollSettings
from schemas.vote import VoteRecordCreate
from services.identity import (
    AnonymousStrongIdentity,
    AuthenticatedIdentity,
    VoterIdentity,
)

logger = structlog.get_logger(__name__)


class ResolutionOutcome(str, Enum):
    """What the resolver did with a submission."""

    CREATED = "created"
    UPDATED = "updated"
    ALREADY_VOTED = "already_voted"


class Resolution(BaseModel):
    outcome: ResolutionOutcome
    vote_ids: list[str] = Field(default_factory=list)


class VoteMetadata(BaseModel):
    """Per-submission data stored alongside each vote row."""

    ip_address: Optional[str] = None
    browser_fingerprint: Optional[str] = None
    vote_token: Optional[str] = None
    time_on_page: Optional[float] = None


class DuplicateVoteResolver:
    """Turns a validated selection into stored votes, honouring poll policy."""

    MAX_CONFLICT_RETRIES = 1

    def __init__(self, storage):
        self.storage = storage

    def _build_records(
        self,
        poll: PollSettings,
        identity: VoterIdentity,
        option_ids: list[str],
        metadata: VoteMetadata,
    ) -> list[VoteRecordCreate]:
        voter_id = identity.voter_id if isinstance(identity, AuthenticatedIdentity) else None
        hashed_fingerprint = (
            identity.hashed_fingerprint if isinstance(identity, AnonymousStrongIdentity) else None
        )
        return [
            VoteRecordCreate(
                poll_id=poll.id,
                option_id=option_id,
                selection_key=option_id if poll.is_multiple_choice else "",
                voter_id=voter_id,
                ip_address=metadata.ip_address,
                browser_fingerprint=metadata.browser_fingerprint if hashed_fingerprint else None,
                hashed_fingerprint=hashed_fingerprint,
                vote_token=metadata.vote_token,
                time_on_page=metadata.time_on_page,
            )
            for option_id in option_ids
        ]

    async def _resolve_once(
        self,
        poll: PollSettings,
        identity: VoterIdentity,
        option_ids: list[str],
        metadata: VoteMetadata,
    ) -> Resolution:
        existing = await self.storage.get_user_votes(poll.id, identity)

        if not existing:
            records = self._build_records(poll, identity, option_ids, metadata)
            if len(records) == 1:
                votes = [await self.storage.submit_vote(records[0])]
            else:
                votes = await self.storage.submit_votes(records)
            return Resolution(outcome=ResolutionOutcome.CREATED, vote_ids=[v.id for v in votes])

        if not poll.allow_vote_changes:
            return Resolution(outcome=ResolutionOutcome.ALREADY_VOTED)

        if poll.is_multiple_choice:
            records = self._build_records(poll, identity, option_ids, metadata)
            votes = await self.storage.replace_user_votes(poll.id, identity, records)
            return Resolution(outcome=ResolutionOutcome.UPDATED, vote_ids=[v.id for v in votes])

        vote = await self.storage.update_vote(poll.id, identity, option_ids[0])
        return Resolution(outcome=ResolutionOutcome.UPDATED, vote_ids=[vote.id])

    async def resolve(
        self,
        poll: PollSettings,
        identity: VoterIdentity,
        option_ids: list[str],
        metadata: Optional[VoteMetadata] = None,
    ) -> Resolution:
        """
        Create, replace or reject votes for ``identity`` on ``poll``.

        ``option_ids`` must already be structurally valid for the poll.
        """
        metadata = metadata or VoteMetadata()

        for attempt in range(self.MAX_CONFLICT_RETRIES + 1):
            try:
                return await self._resolve_once(poll, identity, option_ids, metadata)
            except (VoteConflictError, VoteNotFoundError) as e:
                # A concurrent request changed this identity's votes; decide again
                logger.info(
                    "vote_storage_conflict",
                    poll_id=poll.id,
                    identity=identity.kind,
                    attempt=attempt + 1,
                    error_type=type(e).__name__,
                )

        # Another request holds this identity's vote
        logger.warning("vote_storage_conflict_unresolved", poll_id=poll.id, identity=identity.kind)
        return Resolution(outcome=ResolutionOutcome.ALREADY_VOTED)
