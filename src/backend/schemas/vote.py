"""
Vote-related Pydantic schemas.

Field names are camelCase on the wire to match the web client.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class VoteSubmitRequest(BaseModel):
    """Body of a vote submission. Exactly one of optionId/optionIds is expected."""

    option_id: Optional[str] = Field(None, alias="optionId")
    option_ids: Optional[list[str]] = Field(None, alias="optionIds")
    vote_token: Optional[str] = Field(None, alias="voteToken", description="base64 vote token")
    time_on_page: Optional[float] = Field(
        None, alias="timeOnPage", ge=0, description="Seconds spent on the poll page"
    )

    model_config = {"populate_by_name": True}

    def selected_option_ids(self) -> list[str]:
        """Normalise the single and multiple forms into one list."""
        if self.option_ids:
            return list(self.option_ids)
        if self.option_id:
            return [self.option_id]
        return []


class VoteSubmitResponse(BaseModel):
    """Response after a vote is created or updated."""

    message: str
    vote_id: Optional[str] = Field(None, alias="voteId")
    vote_ids: Optional[list[str]] = Field(None, alias="voteIds")

    model_config = {"populate_by_name": True}


class VoteErrorResponse(BaseModel):
    """Body returned for any rejected submission."""

    message: str
    reason: Optional[str] = None
    reset_at: Optional[datetime] = Field(None, alias="resetAt")

    model_config = {"populate_by_name": True}


class HasVotedResponse(BaseModel):
    """Whether the caller's identity already has a vote on the poll."""

    has_voted: bool = Field(..., alias="hasVoted")

    model_config = {"populate_by_name": True}


class VoteTokenResponse(BaseModel):
    """A freshly minted, server-signed vote token."""

    vote_token: str = Field(..., alias="voteToken")
    expires_at: datetime = Field(..., alias="expiresAt")

    model_config = {"populate_by_name": True}


class VoteRecordCreate(BaseModel):
    """A vote row about to be written. voter_id is None on anonymous polls."""

    poll_id: str
    option_id: str
    selection_key: str = ""
    voter_id: Optional[str] = None
    ip_address: Optional[str] = None
    browser_fingerprint: Optional[str] = None
    hashed_fingerprint: Optional[str] = None
    vote_token: Optional[str] = None
    time_on_page: Optional[float] = None
