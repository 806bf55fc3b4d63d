from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.database.models import AuditLog
from allocation_hub.repositories.base_repository import BaseRepository


class AuditLogRepository(BaseRepository[AuditLog]):
    """Append-only audit trail of state-changing operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, AuditLog)

    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        performed_by: str,
        details: Optional[Dict[str, Any]] = None,
        outcome: str = "success",
    ) -> AuditLog:
        """Add an audit row to the current unit of work without committing.

        The caller commits it together with the change it describes.
        """
        try:
            entry = AuditLog(
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id),
                performed_by=performed_by,
                outcome=outcome,
                details=details,
            )
            self.session.add(entry)
            await self.session.flush()
            return entry
        except SQLAlchemyError as e:
            self._handle_error(f"recording {action} in", e)
            raise
