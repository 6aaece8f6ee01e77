"""
Poll-related Pydantic schemas.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class PollSettings(BaseModel):
    """
    The subset of a poll that vote validation depends on.

    Built from the ORM model so the integrity services never touch a session.
    """

    id: str
    poll_type: str = "public"
    is_anonymous: bool = True
    is_multiple_choice: bool = False
    allow_vote_changes: bool = False
    is_active: bool = True
    end_date: Optional[datetime] = None
    option_ids: frozenset[str] = Field(default_factory=frozenset)

    model_config = {"from_attributes": True, "frozen": True}

    @classmethod
    def from_poll(cls, poll) -> "PollSettings":
        """Build settings from a Poll model with its options loaded."""
        return cls(
            id=poll.id,
            poll_type=poll.poll_type,
            is_anonymous=poll.is_anonymous,
            is_multiple_choice=poll.is_multiple_choice,
            allow_vote_changes=poll.allow_vote_changes,
            is_active=poll.is_active,
            end_date=poll.end_date,
            option_ids=frozenset(option.id for option in poll.options),
        )

    def has_ended(self, now: Optional[datetime] = None) -> bool:
        if self.end_date is None:
            return False
        end_date = self.end_date
        if end_date.tzinfo is None:
            end_date = end_date.replace(tzinfo=timezone.utc)
        return end_date <= (now or datetime.now(timezone.utc))
