"""
UserProfile Repository

Lookups against the auth backend's profiles mirror.
"""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.models.user_profile import UserProfile
from app.infrastructure.db.repositories.base_repository import BaseRepository


class UserProfileRepository(BaseRepository[UserProfile]):
    """Read-only profile access."""

    def __init__(self, session: AsyncSession):
        super().__init__(UserProfile, session)

    async def get_by_email(self, email: str) -> Optional[UserProfile]:
        """
        Find a profile by e-mail, ignoring case and surrounding spaces.

        Args:
            email: E-mail address

        Returns:
            UserProfile or None if not found
        """
        normalized = email.strip().lower()
        if not normalized:
            return None
        stmt = select(UserProfile).where(func.lower(UserProfile.email) == normalized)
        result = await self._session.execute(stmt)
        return result.scalars().first()
