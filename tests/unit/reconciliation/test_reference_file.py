"""Unit tests for the policy reference file parser and client."""

import httpx
import pytest

from allocation_hub.core.exceptions import DependencyUnavailableError
from allocation_hub.services.reconciliation.reference_file import ReferenceFileClient, parse_reference_file

SAMPLE = """Policy_Number EasyPayNumber
P-1 922500000000000001
P-2 '922500000000000002'

P-3 12345
P-4
"""


class TestParseReferenceFile:

    def test_counts_and_entries(self):
        result = parse_reference_file(SAMPLE)

        assert result.total == 4
        assert result.valid == 2
        assert result.invalid == 2
        assert [(e.policy_number, e.external_reference) for e in result.entries] == [
            ("P-1", "922500000000000001"),
            ("P-2", "922500000000000002"),
        ]

    def test_errors_carry_line_numbers(self):
        result = parse_reference_file(SAMPLE)
        assert [e.row for e in result.errors] == [5, 6]
        assert result.errors[0].code == "INVALID_REFERENCE"
        assert result.errors[1].code == "MISSING_FIELD"

    def test_empty_file(self):
        result = parse_reference_file("")
        assert result.total == 0 and result.entries == []


class TestReferenceFileClient:

    @pytest.mark.asyncio
    async def test_load(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text=SAMPLE))
        client = ReferenceFileClient(url="http://reference.test/file.txt", transport=transport)

        result = await client.load()

        assert result.valid == 2

    @pytest.mark.asyncio
    async def test_non_200_is_dependency_unavailable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        client = ReferenceFileClient(url="http://reference.test/file.txt", transport=transport)

        with pytest.raises(DependencyUnavailableError):
            await client.fetch_text()

    @pytest.mark.asyncio
    async def test_connection_error_is_dependency_unavailable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ReferenceFileClient(url="http://reference.test/file.txt", transport=httpx.MockTransport(refuse))

        with pytest.raises(DependencyUnavailableError):
            await client.fetch_text()
