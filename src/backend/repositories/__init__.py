"""Repository modules for database access."""

from repositories.poll_repository import PollRepository
from repositories.vote_repository import VoteConflictError, VoteNotFoundError, VoteRepository

__all__ = [
    "PollRepository",
    "VoteConflictError",
    "VoteNotFoundError",
    "VoteRepository",
]
