"""
Vote, vote-attempt and used-token models.

At-most-one-vote is enforced by partial unique indexes, not by application
checks alone: concurrent submissions from the same identity race on these
indexes and the loser gets an IntegrityError.

selection_key is "" for single-choice polls, so only one row per identity
can exist, and the option id for multiple-choice polls, so one row per
identity and option can exist.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base
from db.types import UTCDateTime, utcnow

# Raw fingerprints are kept for audit only, and bounded
MAX_RAW_FINGERPRINT_LENGTH = 255


class Vote(Base):
    """
    A single vote row.

    Anonymous polls never store voter_id. Identity on those polls is the
    (ip_address, hashed_fingerprint) pair, either of which may be missing.
    """

    __tablename__ = "votes"

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
    option_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("poll_options.id", ondelete="CASCADE"),
        index=True,
    )
    selection_key: Mapped[str] = mapped_column(String(36), default="")

    # Identity signals
    voter_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)  # IPv6 max
    browser_fingerprint: Mapped[Optional[str]] = mapped_column(
        String(MAX_RAW_FINGERPRINT_LENGTH), nullable=True
    )
    hashed_fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    vote_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    time_on_page: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # seconds

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_votes_poll_option", "poll_id", "option_id"),
        Index(
            "uq_votes_poll_voter_selection",
            "poll_id",
            "voter_id",
            "selection_key",
            unique=True,
            postgresql_where=text("voter_id IS NOT NULL"),
            sqlite_where=text("voter_id IS NOT NULL"),
        ),
    )


# Anonymous identity columns are nullable; coalesce so missing signals still collide
Index(
    "uq_votes_poll_anonymous_selection",
    Vote.poll_id,
    func.coalesce(Vote.ip_address, ""),
    func.coalesce(Vote.hashed_fingerprint, ""),
    Vote.selection_key,
    unique=True,
    postgresql_where=Vote.voter_id.is_(None),
    sqlite_where=Vote.voter_id.is_(None),
)


class VoteAttempt(Base):
    """
    Rolling counter of vote submissions per poll, IP and device.

    hashed_fingerprint is "" when the client sent no fingerprint so the
    unique constraint still applies.
    """

    __tablename__ = "vote_attempts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    poll_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("polls.id", ondelete="CASCADE"),
    )
    ip_address: Mapped[str] = mapped_column(String(45))
    hashed_fingerprint: Mapped[str] = mapped_column(String(64), default="")
    attempt_count: Mapped[int] = mapped_column(Integer, default=1)
    last_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "poll_id",
            "ip_address",
            "hashed_fingerprint",
            name="uq_vote_attempts_poll_ip_fingerprint",
        ),
    )


class UsedVoteToken(Base):
    """Nonce of a vote token that has already been spent."""

    __tablename__ = "used_vote_tokens"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    token_nonce: Mapped[str] = mapped_column(String(32), unique=True)
    poll_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("polls.id", ondelete="CASCADE"),
        index=True,
    )
    used_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
