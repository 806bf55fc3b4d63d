from typing import Generic, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.exceptions import DependencyUnavailableError
from allocation_hub.utils.logging import get_logger

ModelType = TypeVar("ModelType")

LOGGER = get_logger(__name__)


class BaseRepository(Generic[ModelType]):
    """Base repository implementing common read and create operations.

    Driver-level connection failures are raised as
    ``DependencyUnavailableError``; every other ``SQLAlchemyError`` is
    logged and re-raised unchanged.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType]):
        """Initialize the repository.

        Args:
            session: SQLAlchemy async session
            model: The SQLAlchemy model class this repository manages
        """
        self.session = session
        self.model = model
        self.logger = LOGGER

    def _handle_error(self, action: str, error: SQLAlchemyError) -> None:
        self.logger.error(
            f"Error {action} {self.model.__name__}: {str(error)}",
            exc_info=True,
        )
        if isinstance(error, (OperationalError, InterfaceError)):
            raise DependencyUnavailableError(
                "Transaction store is unavailable", original_error=error
            ) from error

    async def get_by_id(self, id: UUID) -> Optional[ModelType]:
        """Get a record by its ID.

        Args:
            id: The UUID of the record

        Returns:
            The record if found, None otherwise
        """
        try:
            query = select(self.model).where(self.model.id == id)
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self._handle_error(f"retrieving by ID {id}", e)
            raise

    async def create(self, **kwargs) -> ModelType:
        """Create a new record and commit.

        Args:
            **kwargs: Fields and values for the new record

        Returns:
            The created record
        """
        try:
            instance = self.model(**kwargs)
            self.session.add(instance)
            await self.session.flush()
            await self.session.commit()
            return instance
        except SQLAlchemyError as e:
            await self.session.rollback()
            self._handle_error("creating", e)
            raise

