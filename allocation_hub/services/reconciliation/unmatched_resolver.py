"""Resolution of transactions that carry no policy number.

Read-only: the resolver proposes a policy for each transaction and never
writes anything back. Applying a proposal is a separate audited operation
(see ``TransactionService.apply_policy_number``).
"""

from typing import Iterable, Optional

from allocation_hub.core.config import settings
from allocation_hub.core.exceptions import AmbiguousMatchError
from allocation_hub.database.models import Transaction
from allocation_hub.schemas.common import Pagination
from allocation_hub.schemas.enums import MatchSource, MatchStatus
from allocation_hub.schemas.reconciliation import (
    MatchedPolicy,
    ResolverSummary,
    TransactionSummary,
    UnmatchedResolution,
    UnmatchedTransactionsPage,
)
from allocation_hub.services.reconciliation.policy_index import PolicyEntry, PolicyIndex
from allocation_hub.utils.key_normalizer import is_valid_external_reference, normalize_policy_number
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)


def _matched_policy(file_hit: Optional[PolicyEntry], db_hit: Optional[PolicyEntry]) -> MatchedPolicy:
    # Member details only exist on the database side
    source = db_hit or file_hit
    return MatchedPolicy(
        policy_number=normalize_policy_number(source.policy_number),
        member_name=db_hit.member_name if db_hit else None,
        member_id=db_hit.member_id if db_hit else None,
        product=db_hit.product if db_hit else None,
    )


def _source_of(file_hits: list[PolicyEntry], db_hits: list[PolicyEntry]) -> Optional[MatchSource]:
    if file_hits and db_hits:
        return MatchSource.FILE_AND_DATABASE
    if file_hits:
        return MatchSource.FILE
    if db_hits:
        return MatchSource.DATABASE
    return None


class UnmatchedTransactionResolver:
    """Looks each transaction up in both provenances' reference maps."""

    def __init__(self, file_index: PolicyIndex, db_index: PolicyIndex):
        self.file_index = file_index
        self.db_index = db_index

    def resolve(self, transaction: Transaction) -> UnmatchedResolution:
        """Resolve a single transaction.

        Returns:
            UnmatchedResolution; ambiguous references come back flagged with
            their candidate policies and no matched policy.
        """
        summary = TransactionSummary.model_validate(transaction)
        valid = is_valid_external_reference(
            transaction.external_reference,
            prefix=settings.external_reference_prefix,
            length=settings.external_reference_length,
        )

        file_hits = self.file_index.lookup_reference(transaction.external_reference)
        db_hits = self.db_index.lookup_reference(transaction.external_reference)
        match_source = _source_of(file_hits, db_hits)

        candidates = sorted({normalize_policy_number(hit.policy_number) for hit in file_hits + db_hits})

        if len(candidates) > 1:
            ambiguity = AmbiguousMatchError(transaction.external_reference or "", candidates)
            LOGGER.warning(str(ambiguity), extra={"transaction_id": str(transaction.id)})
            return UnmatchedResolution(
                transaction=summary,
                match_status=MatchStatus.AMBIGUOUS,
                match_source=match_source,
                candidates=candidates,
                is_valid_reference=valid,
            )

        if match_source is None:
            return UnmatchedResolution(
                transaction=summary,
                match_status=MatchStatus.NO_MATCH,
                is_valid_reference=valid,
            )

        file_hit = file_hits[0] if file_hits else None
        db_hit = db_hits[0] if db_hits else None
        status = {
            MatchSource.FILE_AND_DATABASE: MatchStatus.BOTH_MATCH,
            MatchSource.FILE: MatchStatus.FILE_MATCH,
            MatchSource.DATABASE: MatchStatus.DATABASE_MATCH,
        }[match_source]

        return UnmatchedResolution(
            transaction=summary,
            match_status=status,
            match_source=match_source,
            matched_policy=_matched_policy(file_hit, db_hit),
            is_valid_reference=valid,
        )

    def resolve_page(
        self,
        transactions: Iterable[Transaction],
        pagination: Pagination,
    ) -> UnmatchedTransactionsPage:
        """Resolve one page of unmatched transactions and group the outcomes."""
        results = [self.resolve(tx) for tx in transactions if not (tx.policy_number or "").strip()]

        summary = ResolverSummary(total=pagination.total)
        page = UnmatchedTransactionsPage(summary=summary, pagination=pagination)

        for result in results:
            if result.match_status == MatchStatus.NO_MATCH:
                summary.no_match += 1
                page.no_matches.append(result)
                continue
            if result.match_status == MatchStatus.AMBIGUOUS:
                summary.ambiguous += 1
                page.ambiguous.append(result)
                continue

            page.matches.append(result)
            if result.match_status in (MatchStatus.FILE_MATCH, MatchStatus.BOTH_MATCH):
                summary.with_file_match += 1
            if result.match_status in (MatchStatus.DATABASE_MATCH, MatchStatus.BOTH_MATCH):
                summary.with_database_match += 1
            if result.match_status == MatchStatus.BOTH_MATCH:
                summary.with_both_matches += 1

        return page
