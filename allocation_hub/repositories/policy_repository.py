from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.database.models import Policy
from allocation_hub.repositories.base_repository import BaseRepository
from allocation_hub.services.reconciliation.policy_index import PolicyEntry


class PolicyRepository(BaseRepository[Policy]):
    """Live policy table, the database provenance of the policy index."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Policy)

    async def snapshot(self) -> list[PolicyEntry]:
        """All policies as index entries, in insertion order."""
        try:
            query = select(
                Policy.policy_number,
                Policy.external_reference,
                Policy.member_name,
                Policy.member_id,
                Policy.product,
            ).order_by(Policy.created_at, Policy.policy_number)
            result = await self.session.execute(query)
            return [PolicyEntry(**row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            self._handle_error("taking a snapshot of", e)
            raise
