"""Transaction listing, search and the audited policy-number write-back."""

import uuid
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.config import settings
from allocation_hub.core.exceptions import (
    AppError,
    AuthorizationError,
    ConcurrentModificationError,
    DatabaseError,
    DependencyUnavailableError,
    NotFoundError,
    ValidationError,
)
from allocation_hub.core.permissions import Actor
from allocation_hub.database.models import Transaction
from allocation_hub.repositories.audit_log_repository import AuditLogRepository
from allocation_hub.repositories.transaction_repository import TransactionRepository
from allocation_hub.schemas.common import Pagination
from allocation_hub.schemas.enums import Capability, TransactionSearchType, TransactionSource
from allocation_hub.schemas.reconciliation import (
    ApplyPolicyNumberRequest,
    BulkApplyPolicyNumbersRequest,
    PolicyNumberBatchResult,
    PolicyNumberUpdateResult,
    TransactionList,
    TransactionResponse,
    TransactionSearchRequest,
    UniqueReferencePage,
)
from allocation_hub.services.base_service import BaseService
from allocation_hub.utils.key_normalizer import normalize_policy_number
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

RESOURCE_TYPE = "transaction"


class TransactionService(BaseService):
    def __init__(
        self,
        session: AsyncSession,
        transaction_repo: Optional[TransactionRepository] = None,
        audit_repo: Optional[AuditLogRepository] = None,
    ):
        super().__init__()
        self.session = session
        self.transaction_repo = transaction_repo or TransactionRepository(session)
        self.audit_repo = audit_repo or AuditLogRepository(session)

    def validate(self, *args, **kwargs):
        page = kwargs.get("page")
        if page is not None and page < 1:
            raise ValidationError("page must be 1 or greater", code="INVALID_PAGE")
        page_size = kwargs.get("page_size")
        if page_size is not None and not 1 <= page_size <= settings.max_page_size:
            raise ValidationError(
                f"page_size must be between 1 and {settings.max_page_size}", code="INVALID_PAGE_SIZE"
            )

        payload = kwargs.get("payload")
        if isinstance(payload, BulkApplyPolicyNumbersRequest) and len(payload.items) > settings.max_batch_size:
            raise ValidationError(
                f"Batch of {len(payload.items)} transactions exceeds the limit of {settings.max_batch_size}",
                code="BATCH_TOO_LARGE",
            )

    async def run(self, *args, **kwargs) -> Any:
        action = kwargs.pop("action", None)

        if action == "list":
            return await self._list(**kwargs)
        elif action == "search":
            return await self._search(**kwargs)
        elif action == "unique_without_policy":
            return await self._unique_without_policy(**kwargs)
        elif action == "apply_policy_number":
            return await self._apply_policy_number(**kwargs)
        elif action == "apply_policy_numbers":
            return await self._apply_policy_numbers(**kwargs)
        else:
            raise ValidationError(f"Unknown action: {action}")

    async def list_transactions(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        source: Optional[TransactionSource] = None,
        without_policy: bool = False,
    ) -> TransactionList:
        return await self.execute(
            action="list",
            page=page,
            page_size=page_size or settings.reconciliation.default_page_size,
            source=source,
            without_policy=without_policy,
        )

    async def search_transactions(self, criteria: TransactionSearchRequest) -> TransactionList:
        """Search by text, policy number, amount bound or date.

        Raises:
            ValidationError: If the field the search type needs is missing
        """
        return await self.execute(
            action="search",
            criteria=criteria,
            page=criteria.page,
            page_size=criteria.page_size or settings.reconciliation.default_page_size,
        )

    async def unique_references_without_policy(
        self, page: int = 1, page_size: Optional[int] = None
    ) -> UniqueReferencePage:
        return await self.execute(
            action="unique_without_policy",
            page=page,
            page_size=page_size or settings.reconciliation.default_page_size,
        )

    async def apply_policy_number(
        self, transaction_id: uuid.UUID, payload: ApplyPolicyNumberRequest, actor: Actor
    ) -> TransactionResponse:
        """Write a resolved policy number back to a transaction that has none.

        Raises:
            AuthorizationError: If the actor lacks the review capability
            NotFoundError: If the transaction does not exist
            ConcurrentModificationError: If a policy number is already attached
        """
        return await self.execute(
            action="apply_policy_number", transaction_id=transaction_id, payload=payload, actor=actor
        )

    async def apply_policy_numbers(
        self, payload: BulkApplyPolicyNumbersRequest, actor: Actor
    ) -> PolicyNumberBatchResult:
        """Write policy numbers back to several transactions, each on its own.

        Every write is committed and audited separately; a failure is
        reported against its transaction and the rest carry on.
        """
        return await self.execute(action="apply_policy_numbers", payload=payload, actor=actor)

    async def _list(
        self, page: int, page_size: int, source: Optional[TransactionSource], without_policy: bool
    ) -> TransactionList:
        items, total = await self.transaction_repo.list_transactions(
            offset=(page - 1) * page_size,
            limit=page_size,
            source=TransactionSource(source).value if source else None,
            without_policy=without_policy,
        )
        return TransactionList(
            items=[TransactionResponse.model_validate(item) for item in items],
            pagination=Pagination.of(page, page_size, total),
        )

    async def _search(self, criteria: TransactionSearchRequest, page: int, page_size: int) -> TransactionList:
        filters: dict[str, Any] = {}
        search_type = TransactionSearchType(criteria.search_type)
        text = (criteria.search_text or "").strip()

        if search_type == TransactionSearchType.TEXT:
            if not text:
                raise ValidationError("Search text is required", code="MISSING_FIELD", field="search_text")
            filters["text"] = text
        elif search_type == TransactionSearchType.POLICY_NUMBER:
            policy_number = normalize_policy_number(text)
            if not policy_number:
                raise ValidationError("Policy number is required", code="MISSING_FIELD", field="search_text")
            filters["policy_number"] = policy_number
        elif search_type == TransactionSearchType.AMOUNT:
            if criteria.amount is None:
                raise ValidationError("Amount is required", code="MISSING_FIELD", field="amount")
            filters["amount"] = criteria.amount
            filters["amount_filter"] = criteria.filter_type
        elif search_type == TransactionSearchType.DATE:
            if criteria.transaction_date is None:
                raise ValidationError(
                    "Transaction date is required", code="MISSING_FIELD", field="transaction_date"
                )
            filters["on_date"] = criteria.transaction_date

        items, total = await self.transaction_repo.search(
            offset=(page - 1) * page_size,
            limit=page_size,
            source=TransactionSource(criteria.source).value if criteria.source else None,
            **filters,
        )
        LOGGER.info(
            f"Transaction search by {search_type.value} matched {total} transactions",
            extra={"search_type": search_type.value},
        )
        return TransactionList(
            items=[TransactionResponse.model_validate(item) for item in items],
            pagination=Pagination.of(page, page_size, total),
        )

    async def _unique_without_policy(self, page: int, page_size: int) -> UniqueReferencePage:
        groups, total = await self.transaction_repo.unique_references_without_policy(
            offset=(page - 1) * page_size, limit=page_size
        )
        return UniqueReferencePage(items=groups, pagination=Pagination.of(page, page_size, total))

    def _require_review(self, actor: Actor) -> None:
        if not actor.can(Capability.REVIEW):
            raise AuthorizationError("Applying a policy number requires the 'review' capability")

    async def _write_policy_number(
        self, transaction_id: uuid.UUID, raw_policy_number: str, reason: Optional[str], actor: Actor
    ) -> Transaction:
        policy_number = normalize_policy_number(raw_policy_number)
        if not policy_number:
            raise ValidationError("Policy number must not be blank", code="MISSING_FIELD", field="policy_number")

        transaction = await self.transaction_repo.get_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        written = await self.transaction_repo.set_policy_number_if_empty(transaction_id, policy_number)
        if not written:
            await self.session.rollback()
            LOGGER.warning(
                "Transaction already carries a policy number",
                extra={"transaction_id": str(transaction_id), "actor": actor.id},
            )
            raise ConcurrentModificationError(
                f"Transaction {transaction_id} already has a policy number; refetch and retry"
            )

        await self.audit_repo.record(
            action=f"{RESOURCE_TYPE}.apply-policy-number",
            resource_type=RESOURCE_TYPE,
            resource_id=str(transaction_id),
            performed_by=actor.id,
            details={
                "policy_number": policy_number,
                "external_reference": transaction.external_reference,
                "reason": reason,
            },
        )
        await self.session.commit()

        LOGGER.info(
            "Policy number applied to transaction",
            extra={"transaction_id": str(transaction_id), "actor": actor.id},
        )
        return transaction

    async def _apply_policy_number(
        self, transaction_id: uuid.UUID, payload: ApplyPolicyNumberRequest, actor: Actor
    ) -> TransactionResponse:
        self._require_review(actor)
        transaction = await self._write_policy_number(transaction_id, payload.policy_number, payload.reason, actor)
        await self.session.refresh(transaction)
        return TransactionResponse.model_validate(transaction)

    async def _apply_policy_numbers(
        self, payload: BulkApplyPolicyNumbersRequest, actor: Actor
    ) -> PolicyNumberBatchResult:
        self._require_review(actor)
        result = PolicyNumberBatchResult()
        items = payload.items

        for position, item in enumerate(items):
            try:
                await self._write_policy_number(item.transaction_id, item.policy_number, item.reason, actor)
            except DependencyUnavailableError as e:
                # The store is gone; nothing further can succeed
                await self.session.rollback()
                LOGGER.error(
                    f"Policy number write-back stopped at {item.transaction_id}: {e.message}",
                    extra={"actor": actor.id, "remaining": len(items) - position},
                )
                for remaining in items[position:]:
                    result.results.append(
                        PolicyNumberUpdateResult(
                            transaction_id=remaining.transaction_id, success=False, error=e.to_dict()
                        )
                    )
                    result.failed += 1
                return result
            except SQLAlchemyError as e:
                await self.session.rollback()
                LOGGER.error(
                    f"Store error while applying a policy number to {item.transaction_id}: {e}",
                    exc_info=True,
                    extra={"actor": actor.id},
                )
                error = DatabaseError(
                    f"Transaction {item.transaction_id} could not be updated", original_error=e
                )
                result.results.append(
                    PolicyNumberUpdateResult(transaction_id=item.transaction_id, success=False, error=error.to_dict())
                )
                result.failed += 1
                continue
            except AppError as e:
                result.results.append(
                    PolicyNumberUpdateResult(transaction_id=item.transaction_id, success=False, error=e.to_dict())
                )
                result.failed += 1
                continue

            result.results.append(
                PolicyNumberUpdateResult(
                    transaction_id=item.transaction_id,
                    success=True,
                    policy_number=normalize_policy_number(item.policy_number),
                )
            )
            result.succeeded += 1

        await self.audit_repo.record(
            action=f"{RESOURCE_TYPE}.apply-policy-numbers",
            resource_type=RESOURCE_TYPE,
            resource_id="bulk",
            performed_by=actor.id,
            details={"attempted": len(items), "updated": result.succeeded, "failed": result.failed},
            outcome="success" if result.failed == 0 else "partial",
        )
        await self.session.commit()

        LOGGER.info(
            f"Applied policy numbers to {result.succeeded} of {len(items)} transactions",
            extra={"actor": actor.id},
        )
        return result
