import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from allocation_hub.database.models import AllocationRequest
from allocation_hub.repositories.base_repository import BaseRepository
from allocation_hub.schemas.enums import ACTIVE_STATUSES, AllocationStatus


class AllocationRequestRepository(BaseRepository[AllocationRequest]):
    """Repository for allocation requests.

    Status changes never go through ``session.add``/attribute assignment;
    they use ``compare_and_set_status`` so that a stale read cannot
    overwrite a concurrent writer.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, AllocationRequest)

    async def get_with_transaction(self, id: uuid.UUID) -> Optional[AllocationRequest]:
        """Get a request with its transaction eagerly loaded."""
        try:
            query = (
                select(AllocationRequest)
                .where(AllocationRequest.id == id)
                .options(selectinload(AllocationRequest.transaction))
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self._handle_error(f"retrieving {id} of", e)
            raise

    async def get_many_with_transactions(self, ids: list[uuid.UUID]) -> Dict[uuid.UUID, AllocationRequest]:
        if not ids:
            return {}
        try:
            query = (
                select(AllocationRequest)
                .where(AllocationRequest.id.in_(ids))
                .options(selectinload(AllocationRequest.transaction))
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(query)
            return {row.id: row for row in result.scalars().all()}
        except SQLAlchemyError as e:
            self._handle_error("retrieving many", e)
            raise

    async def get_active_for_transaction(self, transaction_id: uuid.UUID) -> Optional[AllocationRequest]:
        """The non-terminal request for a transaction, if any."""
        try:
            query = select(AllocationRequest).where(
                AllocationRequest.transaction_id == transaction_id,
                AllocationRequest.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            result = await self.session.execute(query)
            return result.scalars().first()
        except SQLAlchemyError as e:
            self._handle_error(f"retrieving active request for transaction {transaction_id} of", e)
            raise

    async def list_requests(
        self,
        offset: int,
        limit: int,
        status: Optional[AllocationStatus] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        requested_by: Optional[str] = None,
    ) -> tuple[list[AllocationRequest], int]:
        """One page of requests, newest first, with the total count.

        The date range is inclusive and applies to the creation date.
        """
        filters = []
        if status is not None:
            filters.append(AllocationRequest.status == AllocationStatus(status).value)
        if date_from is not None:
            filters.append(
                AllocationRequest.created_at >= datetime.combine(date_from, time.min, tzinfo=timezone.utc)
            )
        if date_to is not None:
            filters.append(
                AllocationRequest.created_at
                < datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
            )
        if requested_by:
            filters.append(AllocationRequest.requested_by == requested_by)

        try:
            count_query = select(func.count()).select_from(AllocationRequest).where(*filters)
            total = (await self.session.execute(count_query)).scalar_one()

            query = (
                select(AllocationRequest)
                .where(*filters)
                .order_by(AllocationRequest.created_at.desc(), AllocationRequest.id)
                .offset(offset)
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all()), total
        except SQLAlchemyError as e:
            self._handle_error("listing", e)
            raise

    async def compare_and_set_status(
        self,
        id: uuid.UUID,
        expected_status: AllocationStatus,
        expected_version: int,
        values: Dict[str, Any],
    ) -> bool:
        """Conditionally write ``values`` and bump the version.

        The write only lands if the row still has the status and version
        the caller read. Nothing is committed here.

        Returns:
            True if exactly one row changed
        """
        try:
            stmt = (
                update(AllocationRequest)
                .where(
                    AllocationRequest.id == id,
                    AllocationRequest.status == AllocationStatus(expected_status).value,
                    AllocationRequest.version == expected_version,
                )
                .values(
                    **values,
                    version=AllocationRequest.version + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            await self.session.flush()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            self._handle_error(f"conditionally updating {id} of", e)
            raise
