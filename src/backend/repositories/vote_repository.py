"""
Vote repository for database operations.

Every write method commits its own transaction so that concurrent requests
see each other's effects through the unique indexes on the votes table.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.types import utcnow
from models.vote import MAX_RAW_FINGERPRINT_LENGTH, UsedVoteToken, Vote, VoteAttempt
from schemas.vote import VoteRecordCreate
from services.identity import (
    AnonymousStrongIdentity,
    AnonymousWeakIdentity,
    AuthenticatedIdentity,
    VoterIdentity,
)

logger = structlog.get_logger(__name__)


class VoteConflictError(Exception):
    """A write lost a race against the vote uniqueness constraints."""


class VoteNotFoundError(Exception):
    """An in-place update found no vote for the identity."""


def _identity_clauses(identity: VoterIdentity) -> list:
    """WHERE clauses matching the vote rows owned by ``identity``."""
    if isinstance(identity, AuthenticatedIdentity):
        return [Vote.voter_id == identity.voter_id]
    if isinstance(identity, AnonymousStrongIdentity):
        return [
            Vote.voter_id.is_(None),
            func.coalesce(Vote.ip_address, "") == identity.ip_address,
            func.coalesce(Vote.hashed_fingerprint, "") == identity.hashed_fingerprint,
        ]
    if isinstance(identity, AnonymousWeakIdentity):
        # IP alone: covers votes cast from this address with or without a device
        return [
            Vote.voter_id.is_(None),
            func.coalesce(Vote.ip_address, "") == identity.ip_address,
        ]
    raise TypeError(f"Unsupported identity: {identity!r}")


def _attempt_clauses(poll_id: str, ip_address: str, hashed_fingerprint: Optional[str]) -> list:
    return [
        VoteAttempt.poll_id == poll_id,
        VoteAttempt.ip_address == ip_address,
        VoteAttempt.hashed_fingerprint == (hashed_fingerprint or ""),
    ]


def _to_model(data: VoteRecordCreate) -> Vote:
    fields = data.model_dump()
    if fields["browser_fingerprint"]:
        fields["browser_fingerprint"] = fields["browser_fingerprint"][:MAX_RAW_FINGERPRINT_LENGTH]
    return Vote(**fields)


class VoteRepository:
    """Repository for vote, vote-attempt and used-token storage."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _commit(self) -> None:
        """Commit, translating uniqueness violations into VoteConflictError."""
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise VoteConflictError(str(e.orig)) from e

    # =========================================================================
    # Vote attempts
    # =========================================================================

    async def get_vote_attempt(
        self,
        poll_id: str,
        ip_address: str,
        hashed_fingerprint: Optional[str] = None,
    ) -> Optional[VoteAttempt]:
        """Get the attempt counter for a poll, IP and device."""
        result = await self.db.execute(
            select(VoteAttempt)
            .where(*_attempt_clauses(poll_id, ip_address, hashed_fingerprint))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def increment_vote_attempt(
        self,
        poll_id: str,
        ip_address: str,
        hashed_fingerprint: Optional[str] = None,
        restart_window: bool = False,
    ) -> None:
        """
        Count one more attempt.

        The increment happens in SQL so concurrent requests cannot lose
        updates. With ``restart_window`` the counter starts over at 1.
        """
        now = utcnow()
        new_count = 1 if restart_window else VoteAttempt.attempt_count + 1
        stmt = (
            update(VoteAttempt)
            .where(*_attempt_clauses(poll_id, ip_address, hashed_fingerprint))
            .values(attempt_count=new_count, last_attempt_at=now)
        )

        result = await self.db.execute(stmt)
        if result.rowcount:
            await self.db.commit()
            return

        self.db.add(
            VoteAttempt(
                poll_id=poll_id,
                ip_address=ip_address,
                hashed_fingerprint=hashed_fingerprint or "",
                attempt_count=1,
                last_attempt_at=now,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # Another request created the row first
            await self.db.rollback()
            await self.db.execute(stmt)
            await self.db.commit()

    async def reset_vote_attempt(
        self,
        poll_id: str,
        ip_address: str,
        hashed_fingerprint: Optional[str] = None,
    ) -> None:
        """Forget all attempts for a poll, IP and device."""
        await self.db.execute(
            delete(VoteAttempt).where(*_attempt_clauses(poll_id, ip_address, hashed_fingerprint))
        )
        await self.db.commit()

    # =========================================================================
    # Votes
    # =========================================================================

    async def has_user_voted(self, poll_id: str, identity: VoterIdentity) -> bool:
        """Check if the identity has any vote on the poll."""
        result = await self.db.execute(
            select(func.count(Vote.id)).where(Vote.poll_id == poll_id, *_identity_clauses(identity))
        )
        count = result.scalar() or 0
        return count > 0

    async def get_user_votes(self, poll_id: str, identity: VoterIdentity) -> list[Vote]:
        """Get all vote rows owned by the identity on the poll."""
        result = await self.db.execute(
            select(Vote)
            .where(Vote.poll_id == poll_id, *_identity_clauses(identity))
            .order_by(Vote.created_at)
        )
        return list(result.scalars().all())

    async def get_last_vote_time(self, poll_id: str, identity: VoterIdentity) -> Optional[datetime]:
        """When the identity last created or changed a vote on the poll."""
        votes = await self.get_user_votes(poll_id, identity)
        if not votes:
            return None
        return max(vote.updated_at or vote.created_at for vote in votes)

    async def submit_vote(self, data: VoteRecordCreate) -> Vote:
        """
        Insert a single vote.

        Raises:
            VoteConflictError: If the identity already holds this selection.
        """
        vote = _to_model(data)
        self.db.add(vote)
        await self._commit()
        await self.db.refresh(vote)
        return vote

    async def submit_votes(self, data: list[VoteRecordCreate]) -> list[Vote]:
        """Insert several votes in one transaction (all or nothing)."""
        votes = [_to_model(item) for item in data]
        self.db.add_all(votes)
        await self._commit()
        return votes

    async def update_vote(self, poll_id: str, identity: VoterIdentity, option_id: str) -> Vote:
        """
        Move the identity's single-choice vote to another option.

        Raises:
            VoteNotFoundError: If the identity has no vote to update.
        """
        result = await self.db.execute(
            select(Vote).where(Vote.poll_id == poll_id, *_identity_clauses(identity)).limit(1)
        )
        vote = result.scalar_one_or_none()
        if vote is None:
            raise VoteNotFoundError(f"No vote to update on poll {poll_id}")

        vote.option_id = option_id
        vote.updated_at = utcnow()
        await self._commit()
        return vote

    async def remove_user_votes(self, poll_id: str, identity: VoterIdentity) -> int:
        """Delete every vote the identity holds on the poll."""
        result = await self.db.execute(
            delete(Vote).where(Vote.poll_id == poll_id, *_identity_clauses(identity))
        )
        await self.db.commit()
        return result.rowcount or 0

    async def replace_user_votes(
        self,
        poll_id: str,
        identity: VoterIdentity,
        data: list[VoteRecordCreate],
    ) -> list[Vote]:
        """
        Swap the identity's selection set for a new one.

        Delete and insert share one transaction, so readers never observe
        the identity with no votes.
        """
        await self.db.execute(
            delete(Vote).where(Vote.poll_id == poll_id, *_identity_clauses(identity))
        )
        votes = [_to_model(item) for item in data]
        self.db.add_all(votes)
        await self._commit()
        return votes

    # =========================================================================
    # Used vote tokens
    # =========================================================================

    async def is_token_used(self, nonce: str) -> bool:
        """Check if a vote token nonce has been spent."""
        result = await self.db.execute(
            select(func.count(UsedVoteToken.id)).where(UsedVoteToken.token_nonce == nonce)
        )
        return (result.scalar() or 0) > 0

    async def mark_token_used(self, nonce: str, poll_id: str) -> bool:
        """
        Spend a vote token nonce.

        Returns False when the nonce was already spent, including by a
        concurrent request.
        """
        self.db.add(UsedVoteToken(token_nonce=nonce, poll_id=poll_id))
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning("vote_token_replayed", poll_id=poll_id, nonce=nonce[:8])
            return False
        return True
