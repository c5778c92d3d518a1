"""
Base Repository for the Billing Engine

Generic async repository over a single SQLModel table. Repositories never
commit: the caller owns the transaction, so several repositories can take
part in one unit of work.
"""

from abc import ABC, abstractmethod
from typing import TypeVar, Generic, List, Optional, Type

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


ModelType = TypeVar("ModelType", bound=SQLModel)


class IReadRepository(ABC, Generic[ModelType]):
    """Interface for read operations."""

    @abstractmethod
    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get a single record by ID."""
        pass

    @abstractmethod
    async def get_all(self, skip: int = 0, limit: int = 100) -> List[ModelType]:
        """Get all records with pagination."""
        pass


class IWriteRepository(ABC, Generic[ModelType]):
    """Interface for write operations."""

    @abstractmethod
    async def add(self, obj: ModelType) -> ModelType:
        """Stage a new record and flush it."""
        pass


class BaseRepository(
    IReadRepository[ModelType],
    IWriteRepository[ModelType],
    Generic[ModelType]
):
    """
    Generic async repository.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        return self._session

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """
        Get a single record by its primary key.

        Args:
            id: UUID string primary key

        Returns:
            Model instance or None if not found
        """
        return await self._session.get(self._model, id)

    async def get_all(self, skip: int = 0, limit: int = 100) -> List[ModelType]:
        stmt = select(self._model).offset(skip).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add(self, obj: ModelType) -> ModelType:
        """
        Add a record to the session and flush so defaults are populated.

        Args:
            obj: Model instance to insert

        Returns:
            The same instance, flushed
        """
        self._session.add(obj)
        await self._session.flush()
        return obj

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self._model)
        result = await self._session.execute(stmt)
        return result.scalar_one()
