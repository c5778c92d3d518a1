"""
Dependency Injection Providers for the database layer

Provides FastAPI dependencies for database sessions and repositories.
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.infrastructure.db.database import get_session, get_session_factory
from app.infrastructure.db.repositories import SubscriptionRepository


# Type aliases for session dependencies
SessionDep = Annotated[AsyncSession, Depends(get_session)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_subscription_repository(
    session: SessionDep,
) -> AsyncGenerator[SubscriptionRepository, None]:
    """
    Dependency provider for SubscriptionRepository.

    Usage:
        @router.get("/subscription")
        async def get_subscription(repo: SubscriptionRepoDep):
            ...
    """
    yield SubscriptionRepository(session)


# Type aliases for repository dependencies
SubscriptionRepoDep = Annotated[
    SubscriptionRepository,
    Depends(get_subscription_repository)
]
