"""Database models module."""

from models.poll import Poll, PollOption, PollType
from models.vote import UsedVoteToken, Vote, VoteAttempt

__all__ = [
    "Poll",
    "PollOption",
    "PollType",
    "UsedVoteToken",
    "Vote",
    "VoteAttempt",
]
