import operator
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.database.models import Transaction
from allocation_hub.repositories.base_repository import BaseRepository
from allocation_hub.schemas.enums import AmountFilter
from allocation_hub.schemas.reconciliation import UniqueReferenceGroup

_AMOUNT_COMPARISONS = {
    AmountFilter.GREATER_THAN: operator.gt,
    AmountFilter.LESS_THAN: operator.lt,
    AmountFilter.EQUAL: operator.eq,
}


def _without_policy():
    return or_(Transaction.policy_number.is_(None), func.trim(Transaction.policy_number) == "")


def _contains(fragment: str) -> str:
    escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class TransactionRepository(BaseRepository[Transaction]):
    """Read access to imported transactions.

    The only write is attaching a resolved policy number, and only to a
    transaction that still has none.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, Transaction)

    def _filtered(self, query, source: Optional[str], without_policy: bool):
        if source:
            query = query.where(Transaction.source == source)
        if without_policy:
            query = query.where(_without_policy())
        return query

    async def list_transactions(
        self,
        offset: int,
        limit: int,
        source: Optional[str] = None,
        without_policy: bool = False,
    ) -> tuple[list[Transaction], int]:
        """One page of transactions, newest first, with the total count."""
        try:
            count_query = self._filtered(
                select(func.count()).select_from(Transaction), source, without_policy
            )
            total = (await self.session.execute(count_query)).scalar_one()

            query = self._filtered(select(Transaction), source, without_policy)
            query = query.order_by(Transaction.date.desc(), Transaction.id).offset(offset).limit(limit)
            result = await self.session.execute(query)
            return list(result.scalars().all()), total
        except SQLAlchemyError as e:
            self._handle_error("listing", e)
            raise

    async def list_unmatched(self, offset: int, limit: int) -> tuple[list[Transaction], int]:
        """One page of transactions without a policy number."""
        return await self.list_transactions(offset, limit, without_policy=True)

    async def search(
        self,
        offset: int,
        limit: int,
        text: Optional[str] = None,
        policy_number: Optional[str] = None,
        amount: Optional[Decimal] = None,
        amount_filter: AmountFilter = AmountFilter.EQUAL,
        on_date: Optional[date] = None,
        source: Optional[str] = None,
    ) -> tuple[list[Transaction], int]:
        """One page of transactions matching every given criterion, with the total.

        ``text`` is a case-insensitive fragment of the external reference or
        description and ``policy_number`` a fragment of the policy number.
        Amount searches are ordered by amount, closest to the bound first;
        everything else is newest first.
        """
        conditions = []
        if text:
            pattern = _contains(text)
            conditions.append(
                or_(
                    Transaction.external_reference.ilike(pattern, escape="\\"),
                    Transaction.description.ilike(pattern, escape="\\"),
                )
            )
        if policy_number:
            conditions.append(Transaction.policy_number.ilike(_contains(policy_number), escape="\\"))
        if amount is not None:
            conditions.append(_AMOUNT_COMPARISONS[AmountFilter(amount_filter)](Transaction.amount, amount))
        if on_date is not None:
            conditions.append(Transaction.date == on_date)
        if source:
            conditions.append(Transaction.source == source)

        if amount is not None:
            by_amount = (
                Transaction.amount.desc() if amount_filter == AmountFilter.LESS_THAN else Transaction.amount.asc()
            )
            ordering = (by_amount, Transaction.date.desc(), Transaction.id)
        else:
            ordering = (Transaction.date.desc(), Transaction.id)

        try:
            count_query = select(func.count()).select_from(Transaction).where(*conditions)
            total = (await self.session.execute(count_query)).scalar_one()

            query = select(Transaction).where(*conditions).order_by(*ordering).offset(offset).limit(limit)
            result = await self.session.execute(query)
            return list(result.scalars().all()), total
        except SQLAlchemyError as e:
            self._handle_error("searching", e)
            raise

    async def unique_references_without_policy(
        self, offset: int, limit: int
    ) -> tuple[list[UniqueReferenceGroup], int]:
        """Distinct external references among transactions lacking a policy number.

        Ordered by transaction count descending, then reference.
        """
        try:
            grouped = (
                select(
                    Transaction.external_reference.label("external_reference"),
                    func.count(Transaction.id).label("transaction_count"),
                    func.coalesce(func.sum(Transaction.amount), 0).label("total_amount"),
                    func.min(Transaction.date).label("first_transaction_date"),
                    func.max(Transaction.date).label("last_transaction_date"),
                    func.array_agg(Transaction.id).label("transaction_ids"),
                )
                .where(_without_policy())
                .group_by(Transaction.external_reference)
            )

            total_query = select(func.count()).select_from(grouped.subquery())
            total = (await self.session.execute(total_query)).scalar_one()

            query = grouped.order_by(
                func.count(Transaction.id).desc(),
                Transaction.external_reference.asc().nulls_last(),
            ).offset(offset).limit(limit)
            rows = (await self.session.execute(query)).mappings().all()
            return [UniqueReferenceGroup(**dict(row)) for row in rows], total
        except SQLAlchemyError as e:
            self._handle_error("grouping references of", e)
            raise

    async def set_policy_number_if_empty(self, transaction_id: uuid.UUID, policy_number: str) -> bool:
        """Attach a policy number only if none is set yet.

        Returns:
            True if exactly one row was written
        """
        try:
            stmt = (
                update(Transaction)
                .where(Transaction.id == transaction_id, _without_policy())
                .values(policy_number=policy_number)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            await self.session.flush()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            await self.session.rollback()
            self._handle_error(f"updating policy number of {transaction_id} on", e)
            raise
