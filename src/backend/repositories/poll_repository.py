"""
Poll repository for database operations.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models.poll import Poll


class PollRepository:
    """Read-side repository for polls."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, poll_id: str) -> Optional[Poll]:
        """Get a poll by ID with its options."""
        result = await self.db.execute(
            select(Poll).options(selectinload(Poll.options)).where(Poll.id == poll_id)
        )
        return result.scalar_one_or_none()
