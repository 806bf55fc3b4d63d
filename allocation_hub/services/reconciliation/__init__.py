"""Policy reference reconciliation.

- PolicyIndex: per-provenance policy and reference maps
- compare: classifies every policy number seen in either provenance
- UnmatchedTransactionResolver: proposes policies for transactions without one
"""

from allocation_hub.services.reconciliation.comparator import compare
from allocation_hub.services.reconciliation.policy_index import PolicyEntry, PolicyIndex
from allocation_hub.services.reconciliation.unmatched_resolver import UnmatchedTransactionResolver

__all__ = [
    "compare",
    "PolicyEntry",
    "PolicyIndex",
    "UnmatchedTransactionResolver",
]
