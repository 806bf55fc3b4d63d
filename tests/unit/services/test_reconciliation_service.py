"""Unit tests for ReconciliationService."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.exceptions import DependencyUnavailableError, ValidationError
from allocation_hub.schemas.enums import MatchStatus
from allocation_hub.services.reconciliation.policy_index import PolicyEntry
from allocation_hub.services.reconciliation.reconciliation_service import ReconciliationService
from allocation_hub.services.reconciliation.reference_file import parse_reference_file

REF_A = "922500000000000001"
REF_B = "922500000000000002"
REF_C = "922500000000000003"
REF_D = "922500000000000004"
REF_X = "922500000000000099"

REFERENCE_FILE = f"""Policy_Number EasyPayNumber
P-1 {REF_A}
P-2 '{REF_B}'
P-3 {REF_C}
P-9 12345
"""


@pytest.fixture
def reference_client():
    client = AsyncMock()
    client.load = AsyncMock(return_value=parse_reference_file(REFERENCE_FILE))
    return client


@pytest.fixture
def policy_repo():
    repo = AsyncMock()
    repo.snapshot = AsyncMock(
        return_value=[
            PolicyEntry("P-1", REF_A, member_name="Thandi M"),
            PolicyEntry("P-2", REF_X),
            PolicyEntry("P-4", REF_D),
            PolicyEntry("P-5", None, member_name="Lerato K"),
        ]
    )
    return repo


@pytest.fixture
def transaction_repo():
    return AsyncMock()


@pytest.fixture
def service(policy_repo, transaction_repo, reference_client):
    return ReconciliationService(
        AsyncMock(spec=AsyncSession),
        policy_repo=policy_repo,
        transaction_repo=transaction_repo,
        reference_client=reference_client,
    )


class TestComparison:

    @pytest.mark.asyncio
    async def test_full_report(self, service):
        report = await service.get_comparison()

        assert [p.policy_number for p in report.comparison.matches] == ["P-1"]
        assert [p.policy_number for p in report.comparison.mismatches] == ["P-2"]
        assert report.comparison.mismatches[0].database_external_reference == REF_X
        assert [p.policy_number for p in report.comparison.file_only] == ["P-3"]
        assert [p.policy_number for p in report.comparison.database_only] == ["P-4", "P-5"]
        assert [p.policy_number for p in report.comparison.without_external_reference] == ["P-5"]

        assert (report.file_data.total, report.file_data.valid, report.file_data.invalid) == (4, 3, 1)
        assert report.database_data.total == 4
        assert report.database_data.with_external_reference == 3
        assert report.database_data.without_external_reference == 1

    @pytest.mark.asyncio
    async def test_counts_cover_everything_while_lists_are_paged(self, service):
        report = await service.get_comparison(page=2, page_size=1)

        assert report.counts.database_only == 2
        assert [p.policy_number for p in report.comparison.database_only] == ["P-5"]
        assert report.comparison.matches == []
        assert report.pagination.total == 2
        assert report.pagination.total_pages == 2

    @pytest.mark.asyncio
    async def test_repeated_policy_numbers_are_reported(self, service, reference_client, policy_repo):
        reference_client.load.return_value = parse_reference_file(
            f"P-1 {REF_A}\nP-1 {REF_B}\nP-3 {REF_C}\n"
        )
        policy_repo.snapshot.return_value = [PolicyEntry("P-4", REF_D), PolicyEntry("P-4", REF_X)]

        report = await service.get_comparison()

        assert report.file_data.duplicate_policy_numbers == ["P-1"]
        assert report.database_data.duplicate_policy_numbers == ["P-4"]

    @pytest.mark.asyncio
    async def test_snapshot_is_rebuilt_per_call(self, service, policy_repo, reference_client):
        await service.get_comparison()
        await service.get_comparison()

        assert policy_repo.snapshot.await_count == 2
        assert reference_client.load.await_count == 2

    @pytest.mark.asyncio
    async def test_unreachable_reference_file(self, service, reference_client):
        reference_client.load.side_effect = DependencyUnavailableError("Reference file unreachable")

        with pytest.raises(DependencyUnavailableError):
            await service.get_comparison()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page, page_size", [(0, 10), (1, -1), (1, 10_000)])
    async def test_page_bounds(self, service, page, page_size):
        with pytest.raises(ValidationError):
            await service.get_comparison(page=page, page_size=page_size)


class TestUnmatchedTransactions:

    @pytest.mark.asyncio
    async def test_page_is_resolved_against_both_indexes(self, service, transaction_repo, make_transaction):
        file_hit = make_transaction(external_reference=REF_C)
        both_hit = make_transaction(external_reference=REF_A)
        miss = make_transaction(external_reference="922599999999999999")
        transaction_repo.list_unmatched = AsyncMock(return_value=([file_hit, both_hit, miss], 7))

        page = await service.get_unmatched_transactions(page=2, page_size=3)

        transaction_repo.list_unmatched.assert_awaited_once_with(offset=3, limit=3)
        assert {r.transaction.id: r.match_status for r in page.matches} == {
            file_hit.id: MatchStatus.FILE_MATCH,
            both_hit.id: MatchStatus.BOTH_MATCH,
        }
        assert [r.transaction.id for r in page.no_matches] == [miss.id]
        assert page.summary.total == 7
        assert page.summary.with_file_match == 2
        assert page.summary.with_both_matches == 1
        assert page.pagination.total_pages == 3

    @pytest.mark.asyncio
    async def test_transactions_are_not_modified(self, service, transaction_repo, make_transaction):
        tx = make_transaction(external_reference=REF_A)
        transaction_repo.list_unmatched = AsyncMock(return_value=([tx], 1))

        await service.get_unmatched_transactions()

        assert tx.policy_number is None
