"""
Poll model for PostgreSQL storage.

Only the read side lives here: the flags that decide how votes are
validated and deduplicated. Poll authoring belongs to the polls service.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base
from db.types import UTCDateTime, utcnow


class PollType(str, Enum):
    """Audience a poll is published to."""

    PUBLIC = "public"  # Anyone with the link
    MEMBERS = "members"  # Signed-in community members
    INVITED = "invited"  # Invitation only


class Poll(Base):
    """
    Poll with the settings that drive vote integrity checks.

    - is_anonymous: votes never carry a voter id, dedup uses IP + device
    - is_multiple_choice: one vote row per selected option
    - allow_vote_changes: a repeat submission updates instead of rejecting
    """

    __tablename__ = "polls"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    poll_type: Mapped[str] = mapped_column(String(20), default=PollType.PUBLIC.value)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=True)
    is_multiple_choice: Mapped[bool] = mapped_column(Boolean, default=False)
    allow_vote_changes: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    options: Mapped[list["PollOption"]] = relationship(
        back_populates="poll",
        cascade="all, delete-orphan",
        order_by="PollOption.order",
    )


class PollOption(Base):
    """A selectable answer on a poll."""

    __tablename__ = "poll_options"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    poll_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("polls.id", ondelete="CASCADE"),
        index=True,
    )
    text: Mapped[str] = mapped_column(String(500))
    order: Mapped[int] = mapped_column(Integer, default=0)

    poll: Mapped[Poll] = relationship(back_populates="options")

    __table_args__ = (Index("ix_poll_options_poll_order", "poll_id", "order"),)
