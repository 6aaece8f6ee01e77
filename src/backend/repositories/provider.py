"""
Repository provider for dependency injection.

Usage:
    from repositories.provider import get_vote_repository, get_poll_repository

    # In FastAPI dependencies:
    async def some_endpoint(
        vote_repo: VoteStorageProtocol = Depends(get_vote_repository),
    ):
        voted = await vote_repo.has_user_voted(poll_id, identity)
"""

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_db
from repositories.poll_repository import PollRepository
from repositories.vote_repository import VoteRepository
from schemas.vote import VoteRecordCreate
from services.identity import VoterIdentity

# =============================================================================
# Repository Protocols (Interfaces)
# =============================================================================


@runtime_checkable
class PollRepositoryProtocol(Protocol):
    """Protocol defining poll repository operations."""

    async def get_by_id(self, poll_id: str): ...


@runtime_checkable
class VoteStorageProtocol(Protocol):
    """Storage operations the vote integrity services depend on."""

    async def get_vote_attempt(
        self, poll_id: str, ip_address: str, hashed_fingerprint: Optional[str] = None
    ): ...
    async def increment_vote_attempt(
        self,
        poll_id: str,
        ip_address: str,
        hashed_fingerprint: Optional[str] = None,
        restart_window: bool = False,
    ) -> None: ...
    async def reset_vote_attempt(
        self, poll_id: str, ip_address: str, hashed_fingerprint: Optional[str] = None
    ) -> None: ...
    async def has_user_voted(self, poll_id: str, identity: VoterIdentity) -> bool: ...
    async def get_user_votes(self, poll_id: str, identity: VoterIdentity): ...
    async def get_last_vote_time(self, poll_id: str, identity: VoterIdentity) -> Optional[datetime]: ...
    async def submit_vote(self, data: VoteRecordCreate): ...
    async def submit_votes(self, data: list[VoteRecordCreate]): ...
    async def update_vote(self, poll_id: str, identity: VoterIdentity, option_id: str): ...
    async def remove_user_votes(self, poll_id: str, identity: VoterIdentity) -> int: ...
    async def replace_user_votes(
        self, poll_id: str, identity: VoterIdentity, data: list[VoteRecordCreate]
    ): ...
    async def is_token_used(self, nonce: str) -> bool: ...
    async def mark_token_used(self, nonce: str, poll_id: str) -> bool: ...


# =============================================================================
# Repository Providers
# =============================================================================


async def get_poll_repository(db: AsyncSession = Depends(get_db)) -> PollRepositoryProtocol:
    """Get the poll repository for the request's session."""
    return PollRepository(db)


async def get_vote_repository(db: AsyncSession = Depends(get_db)) -> VoteStorageProtocol:
    """Get the vote repository for the request's session."""
    return VoteRepository(db)
