"""
Billing report aggregation.

A report maps each classification tag to the number of audit entries
carrying it within a time window. Reports are derived from the audit
log on demand and never stored.
"""

from typing import Dict, Iterable, List, Tuple

from invoice_billing.storage.models import AuditCount
from .outcomes import ResultTag

_TAG_ORDER = {tag.value: position for position, tag in enumerate(ResultTag)}


def aggregate_audit_counts(rows: Iterable[AuditCount]) -> Dict[str, int]:
    """Fold grouped audit counts into a tag -> count mapping.

    Rows repeating a tag are summed. An empty input yields an empty mapping.

    Args:
        rows: Grouped counts as returned by the ledger repository

    Returns:
        Mapping from result tag to occurrence count
    """
    billing_results: Dict[str, int] = {}
    for row in rows:
        billing_results[row.result] = billing_results.get(row.result, 0) + row.count
    return billing_results


def order_report(billing_results: Dict[str, int]) -> List[Tuple[str, int]]:
    """Order report rows by taxonomy position; tags outside it sort last by name."""
    return sorted(
        billing_results.items(),
        key=lambda item: (_TAG_ORDER.get(item[0], len(_TAG_ORDER)), item[0])
    )
