"""
Tests for billing report aggregation.
"""
from invoice_billing.core.report import aggregate_audit_counts, order_report
from invoice_billing.storage.models import AuditCount


class TestAggregateAuditCounts:
    def test_counts_by_tag(self):
        rows = [AuditCount("Overdue", 3), AuditCount("PaymentSuccessful", 5)]
        assert aggregate_audit_counts(rows) == {"Overdue": 3, "PaymentSuccessful": 5}

    def test_repeated_tags_are_summed(self):
        rows = [AuditCount("NetworkFailure", 1), AuditCount("NetworkFailure", 2)]
        assert aggregate_audit_counts(rows) == {"NetworkFailure": 3}

    def test_empty(self):
        assert aggregate_audit_counts([]) == {}


class TestOrderReport:
    def test_taxonomy_order_then_unknown(self):
        """Test rows follow the tag taxonomy with unknown tags last."""
        billing_results = {
            "Overdue": 1,
            "LegacyTag": 4,
            "NetworkFailure": 2,
            "PaymentSuccessful": 9,
        }
        assert order_report(billing_results) == [
            ("PaymentSuccessful", 9),
            ("NetworkFailure", 2),
            ("Overdue", 1),
            ("LegacyTag", 4),
        ]
