"""Classification of the reference-file key set against the database key set."""

from allocation_hub.schemas.reconciliation import (
    AmbiguousReference,
    ComparisonResult,
    PolicyWithoutReference,
    ReconciliationKeyPair,
)
from allocation_hub.services.reconciliation.policy_index import PolicyIndex
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)


def compare(file_index: PolicyIndex, db_index: PolicyIndex) -> ComparisonResult:
    """Classify every policy number across the two provenances.

    Exact comparison of normalized references only: any difference is a
    mismatch, there is no near-match. Policies are visited in file order
    followed by database-only policies in database order, so the output
    is a pure function of the two indexes.

    Args:
        file_index: Index built from the uploaded reference file
        db_index: Index built from the live policy table

    Returns:
        ComparisonResult with every category populated
    """
    result = ComparisonResult()

    ordered_numbers = list(file_index.by_policy_number)
    ordered_numbers.extend(n for n in db_index.by_policy_number if n not in file_index.by_policy_number)

    for policy_number in ordered_numbers:
        file_entry = file_index.by_policy_number.get(policy_number)
        db_entry = db_index.by_policy_number.get(policy_number)

        if file_entry and db_entry:
            file_ref = file_entry.normalized_reference
            db_ref = db_entry.normalized_reference

            if file_ref and file_ref == db_ref:
                result.matches.append(
                    ReconciliationKeyPair(
                        policy_number=policy_number,
                        file_external_reference=file_ref,
                        database_external_reference=db_ref,
                        status="match",
                    )
                )
            elif file_ref or db_ref:
                result.mismatches.append(
                    ReconciliationKeyPair(
                        policy_number=policy_number,
                        file_external_reference=file_ref or None,
                        database_external_reference=db_ref or None,
                        status="mismatch",
                    )
                )
        elif file_entry:
            result.file_only.append(
                ReconciliationKeyPair(
                    policy_number=policy_number,
                    file_external_reference=file_entry.normalized_reference or None,
                    status="file_only",
                )
            )
        elif db_entry:
            result.database_only.append(
                ReconciliationKeyPair(
                    policy_number=policy_number,
                    database_external_reference=db_entry.normalized_reference or None,
                    status="database_only",
                )
            )

    for db_entry in db_index.by_policy_number.values():
        if not db_entry.has_reference:
            result.without_external_reference.append(
                PolicyWithoutReference(
                    policy_number=db_entry.policy_number,
                    member_name=db_entry.member_name,
                    member_id=db_entry.member_id,
                    product=db_entry.product,
                )
            )

    for index in (file_index, db_index):
        for reference, policy_numbers in index.ambiguous_references().items():
            result.ambiguous_references.append(
                AmbiguousReference(
                    provenance=index.provenance,
                    external_reference=reference,
                    policy_numbers=policy_numbers,
                )
            )

    LOGGER.info(
        f"Comparison complete: {len(result.matches)} matches, {len(result.mismatches)} mismatches, "
        f"{len(result.file_only)} file only, {len(result.database_only)} database only, "
        f"{len(result.without_external_reference)} without reference"
    )
    return result
