"""Policy lookup maps built per provenance.

A ``PolicyIndex`` is built once per call from a snapshot of one provenance
(the uploaded reference file or the live policy table). It is never shared
between requests and never mutated after construction.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from allocation_hub.utils.key_normalizer import normalize_policy_number, normalize_reference
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

FILE_PROVENANCE = "file"
DATABASE_PROVENANCE = "database"


@dataclass(frozen=True)
class PolicyEntry:
    """One policy as seen by a single provenance."""

    policy_number: str
    external_reference: Optional[str]
    member_name: Optional[str] = None
    member_id: Optional[str] = None
    product: Optional[str] = None

    @property
    def normalized_reference(self) -> str:
        return normalize_reference(self.external_reference)

    @property
    def has_reference(self) -> bool:
        return bool(self.normalized_reference)


@dataclass
class PolicyIndex:
    """Lookup by policy number and by normalized external reference."""

    provenance: str
    by_policy_number: dict[str, PolicyEntry] = field(default_factory=dict)
    by_external_reference: dict[str, list[PolicyEntry]] = field(default_factory=dict)
    duplicate_policy_numbers: list[str] = field(default_factory=list)

    @classmethod
    def build(cls, entries: Iterable[PolicyEntry], provenance: str) -> "PolicyIndex":
        """Build both maps from a snapshot of entries.

        A policy number seen twice keeps its last entry for the policy
        lookup and is listed once in ``duplicate_policy_numbers``. Every
        line stays reachable by its reference, and a reference shared by
        several policies keeps every policy so the ambiguity stays visible.
        """
        index = cls(provenance=provenance)

        for entry in entries:
            policy_number = normalize_policy_number(entry.policy_number)
            if not policy_number:
                continue

            if policy_number in index.by_policy_number and policy_number not in index.duplicate_policy_numbers:
                index.duplicate_policy_numbers.append(policy_number)

            index.by_policy_number[policy_number] = entry

            reference = entry.normalized_reference
            if reference:
                index.by_external_reference.setdefault(reference, []).append(entry)

        if index.duplicate_policy_numbers:
            LOGGER.warning(
                f"{provenance} provenance repeats {len(index.duplicate_policy_numbers)} policy numbers",
                extra={"provenance": provenance},
            )

        return index

    def lookup_reference(self, raw_reference: Optional[str]) -> list[PolicyEntry]:
        """All policies whose normalized reference equals the given one."""
        reference = normalize_reference(raw_reference)
        if not reference:
            return []
        return list(self.by_external_reference.get(reference, []))

    def get(self, policy_number: str) -> Optional[PolicyEntry]:
        return self.by_policy_number.get(normalize_policy_number(policy_number))

    def ambiguous_references(self) -> dict[str, list[str]]:
        """References that point at more than one policy number."""
        return {
            reference: sorted({normalize_policy_number(e.policy_number) for e in entries})
            for reference, entries in self.by_external_reference.items()
            if len({normalize_policy_number(e.policy_number) for e in entries}) > 1
        }

    @property
    def total(self) -> int:
        return len(self.by_policy_number)

    @property
    def with_reference(self) -> int:
        return sum(1 for e in self.by_policy_number.values() if e.has_reference)

    @property
    def without_reference(self) -> int:
        return self.total - self.with_reference
