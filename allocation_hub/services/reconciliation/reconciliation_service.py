"""Reconciliation reports over a fresh snapshot of both policy provenances."""

from typing import Any, Optional, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.config import settings
from allocation_hub.core.exceptions import ValidationError
from allocation_hub.repositories.policy_repository import PolicyRepository
from allocation_hub.repositories.transaction_repository import TransactionRepository
from allocation_hub.schemas.common import Pagination
from allocation_hub.schemas.reconciliation import (
    ComparisonCounts,
    ComparisonReport,
    ComparisonResult,
    DatabaseDataStats,
    FileDataStats,
    UnmatchedTransactionsPage,
)
from allocation_hub.services.base_service import BaseService
from allocation_hub.services.reconciliation.comparator import compare
from allocation_hub.services.reconciliation.policy_index import DATABASE_PROVENANCE, FILE_PROVENANCE, PolicyIndex
from allocation_hub.services.reconciliation.reference_file import ReferenceFileClient, ReferenceFileParseResult
from allocation_hub.services.reconciliation.unmatched_resolver import UnmatchedTransactionResolver
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

T = TypeVar("T")


def _page(items: Sequence[T], pagination: Pagination) -> list[T]:
    return list(items[pagination.offset:pagination.offset + pagination.page_size])


class ReconciliationService(BaseService):
    """Builds both policy indexes per call and runs comparisons against them.

    Nothing is cached between calls.
    """

    def __init__(
        self,
        session: AsyncSession,
        policy_repo: Optional[PolicyRepository] = None,
        transaction_repo: Optional[TransactionRepository] = None,
        reference_client: Optional[ReferenceFileClient] = None,
    ):
        super().__init__()
        self.session = session
        self.policy_repo = policy_repo or PolicyRepository(session)
        self.transaction_repo = transaction_repo or TransactionRepository(session)
        self.reference_client = reference_client or ReferenceFileClient()

    def validate(self, *args, **kwargs):
        page = kwargs.get("page", 1)
        page_size = kwargs.get("page_size", settings.reconciliation.default_page_size)
        if page < 1:
            raise ValidationError("page must be 1 or greater", code="INVALID_PAGE")
        if not 1 <= page_size <= settings.max_page_size:
            raise ValidationError(
                f"page_size must be between 1 and {settings.max_page_size}", code="INVALID_PAGE_SIZE"
            )

    async def run(self, *args, **kwargs) -> Any:
        action = kwargs.pop("action", None)

        if action == "comparison":
            return await self._comparison(**kwargs)
        elif action == "unmatched":
            return await self._unmatched(**kwargs)
        else:
            raise ValidationError(f"Unknown action: {action}")

    async def get_comparison(self, page: int = 1, page_size: Optional[int] = None) -> ComparisonReport:
        """Compare the reference file against the policy table.

        Counts cover the full result; each category list holds one page.

        Raises:
            DependencyUnavailableError: If either provenance cannot be read
        """
        return await self.execute(
            action="comparison",
            page=page,
            page_size=page_size or settings.reconciliation.default_page_size,
        )

    async def get_unmatched_transactions(
        self, page: int = 1, page_size: Optional[int] = None
    ) -> UnmatchedTransactionsPage:
        """Propose policies for one page of transactions without a policy number."""
        return await self.execute(
            action="unmatched",
            page=page,
            page_size=page_size or settings.reconciliation.default_page_size,
        )

    async def _load_indexes(self) -> tuple[ReferenceFileParseResult, PolicyIndex, PolicyIndex]:
        parsed = await self.reference_client.load()
        file_index = PolicyIndex.build(parsed.entries, FILE_PROVENANCE)
        db_index = PolicyIndex.build(await self.policy_repo.snapshot(), DATABASE_PROVENANCE)
        return parsed, file_index, db_index

    async def _comparison(self, page: int, page_size: int) -> ComparisonReport:
        parsed, file_index, db_index = await self._load_indexes()
        full = compare(file_index, db_index)

        counts = ComparisonCounts(
            matches=len(full.matches),
            mismatches=len(full.mismatches),
            file_only=len(full.file_only),
            database_only=len(full.database_only),
            without_external_reference=len(full.without_external_reference),
            ambiguous_references=len(full.ambiguous_references),
        )
        pagination = Pagination.of(page, page_size, max(counts.model_dump().values(), default=0))

        return ComparisonReport(
            file_data=FileDataStats(
                total=parsed.total,
                valid=parsed.valid,
                invalid=parsed.invalid,
                duplicate_policy_numbers=file_index.duplicate_policy_numbers,
            ),
            database_data=DatabaseDataStats(
                total=db_index.total,
                with_external_reference=db_index.with_reference,
                without_external_reference=db_index.without_reference,
                duplicate_policy_numbers=db_index.duplicate_policy_numbers,
            ),
            counts=counts,
            comparison=ComparisonResult(
                matches=_page(full.matches, pagination),
                mismatches=_page(full.mismatches, pagination),
                file_only=_page(full.file_only, pagination),
                database_only=_page(full.database_only, pagination),
                without_external_reference=_page(full.without_external_reference, pagination),
                ambiguous_references=_page(full.ambiguous_references, pagination),
            ),
            pagination=pagination,
        )

    async def _unmatched(self, page: int, page_size: int) -> UnmatchedTransactionsPage:
        _, file_index, db_index = await self._load_indexes()

        offset = (page - 1) * page_size
        transactions, total = await self.transaction_repo.list_unmatched(offset=offset, limit=page_size)

        resolver = UnmatchedTransactionResolver(file_index, db_index)
        result = resolver.resolve_page(transactions, Pagination.of(page, page_size, total))

        LOGGER.info(
            f"Resolved {len(transactions)} unmatched transactions: "
            f"{len(result.matches)} matched, {len(result.ambiguous)} ambiguous, {len(result.no_matches)} no match"
        )
        return result
