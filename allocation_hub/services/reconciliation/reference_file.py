"""Uploaded policy reference file: fetching and parsing.

The file lists one ``<policy number> <external reference>`` pair per line,
whitespace separated, the reference optionally quoted. Header lines and
blank lines are ignored.
"""

import re
from dataclasses import dataclass, field

import httpx

from allocation_hub.core.config import settings
from allocation_hub.core.exceptions import DependencyUnavailableError, ValidationError
from allocation_hub.services.reconciliation.policy_index import PolicyEntry
from allocation_hub.utils.key_normalizer import is_valid_external_reference, normalize_policy_number
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

_LINE_PATTERN = re.compile(r"^(\S+)\s+['\"]?([^'\"\s]+)['\"]?")
_HEADER_MARKERS = ("Policy_Number", "EasyPayNumber")


@dataclass
class ReferenceFileParseResult:
    """Parsed entries plus line-level accounting."""

    entries: list[PolicyEntry] = field(default_factory=list)
    total: int = 0
    valid: int = 0
    invalid: int = 0
    errors: list[ValidationError] = field(default_factory=list)


def parse_reference_file(content: str) -> ReferenceFileParseResult:
    """Parse reference file text into policy entries.

    Only lines whose reference passes the external reference format check
    become entries; every other data line is counted as invalid and
    reported with its 1-based line number.
    """
    result = ReferenceFileParseResult()
    prefix = settings.external_reference_prefix
    length = settings.external_reference_length

    for line_number, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        if any(marker in line for marker in _HEADER_MARKERS):
            continue

        result.total += 1
        match = _LINE_PATTERN.match(line.strip())
        if not match:
            result.invalid += 1
            result.errors.append(
                ValidationError(
                    "Expected '<policy number> <external reference>'",
                    code="MISSING_FIELD",
                    row=line_number,
                )
            )
            continue

        policy_number = normalize_policy_number(match.group(1))
        reference = match.group(2).strip()

        if not is_valid_external_reference(reference, prefix=prefix, length=length):
            result.invalid += 1
            result.errors.append(
                ValidationError(
                    f"Invalid external reference '{reference}'",
                    code="INVALID_REFERENCE",
                    row=line_number,
                    field="external_reference",
                )
            )
            continue

        result.valid += 1
        result.entries.append(PolicyEntry(policy_number=policy_number, external_reference=reference))

    LOGGER.info(
        f"Parsed reference file: {result.total} lines, {result.valid} valid, {result.invalid} invalid"
    )
    return result


class ReferenceFileClient:
    """Fetches the uploaded reference file from the blob store."""

    def __init__(self, url: str = None, timeout: float = None, transport: httpx.AsyncBaseTransport = None):
        self.url = url or settings.reconciliation.policy_reference_file_url
        self.timeout = timeout or settings.reconciliation.reference_file_timeout
        self.transport = transport

    async def fetch_text(self) -> str:
        """Download the reference file.

        Raises:
            DependencyUnavailableError: If the file cannot be fetched
        """
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.get(self.url, timeout=self.timeout)
        except httpx.HTTPError as e:
            LOGGER.error(f"Failed to fetch policy reference file: {e}", exc_info=True)
            raise DependencyUnavailableError(
                "Policy reference file is unreachable", original_error=e
            ) from e

        if response.status_code != 200:
            LOGGER.error(
                "Policy reference file request failed",
                extra={"url": self.url, "status_code": response.status_code},
            )
            raise DependencyUnavailableError(
                f"Failed to load policy reference file (HTTP {response.status_code})"
            )

        return response.text

    async def load(self) -> ReferenceFileParseResult:
        return parse_reference_file(await self.fetch_text())
