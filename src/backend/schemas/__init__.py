"""Pydantic schemas for request/response validation."""

from schemas.poll import PollSettings
from schemas.vote import (
    HasVotedResponse,
    VoteErrorResponse,
    VoteRecordCreate,
    VoteSubmitRequest,
    VoteSubmitResponse,
    VoteTokenResponse,
)

__all__ = [
    "HasVotedResponse",
    "PollSettings",
    "VoteErrorResponse",
    "VoteRecordCreate",
    "VoteSubmitRequest",
    "VoteSubmitResponse",
    "VoteTokenResponse",
]
