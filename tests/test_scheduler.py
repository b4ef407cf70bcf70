"""
Tests for the recurring billing trigger.
"""
import logging
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from invoice_billing.core.scheduler import (
    BillingScheduler,
    RecurringJob,
    matches_cron,
    parse_cron,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestParseCron:
    def test_lists_and_wildcards(self):
        spec = parse_cron("0 0 1,2,3 * *")
        assert spec.minutes == frozenset({0})
        assert spec.hours == frozenset({0})
        assert spec.days_of_month == frozenset({1, 2, 3})
        assert spec.months == frozenset(range(1, 13))
        assert spec.days_of_week == frozenset(range(7))

    def test_ranges_and_steps(self):
        spec = parse_cron("*/15 9-17 * 1-12/3 1-5")
        assert spec.minutes == frozenset({0, 15, 30, 45})
        assert spec.hours == frozenset(range(9, 18))
        assert spec.months == frozenset({1, 4, 7, 10})
        assert spec.days_of_week == frozenset({1, 2, 3, 4, 5})

    def test_offset_step(self):
        assert parse_cron("5/20 * * * *").minutes == frozenset({5, 25, 45})

    @pytest.mark.parametrize("expression", [
        "0 0 * *",
        "60 0 * * *",
        "0 24 * * *",
        "0 0 0 * *",
        "0 0 5-1 * *",
        "*/0 * * * *",
        "a b c d e",
    ])
    def test_invalid_expressions(self, expression):
        with pytest.raises(ValueError):
            parse_cron(expression)


class TestMatchesCron:
    def test_day_of_month_and_time(self):
        spec = parse_cron("0 8 3 * *")
        assert matches_cron(spec, utc(2024, 5, 3, 8, 0))
        assert not matches_cron(spec, utc(2024, 5, 3, 8, 1))
        assert not matches_cron(spec, utc(2024, 5, 4, 8, 0))

    def test_weekday_counts_from_sunday(self):
        spec = parse_cron("0 9 * * 0")
        assert matches_cron(spec, utc(2024, 6, 2, 9, 0))  # Sunday
        assert not matches_cron(spec, utc(2024, 6, 3, 9, 0))


class TestBillingScheduler:
    """Test job firing on ticks."""

    def setup_method(self):
        self.service = MagicMock()
        self.scheduler = BillingScheduler.for_billing(self.service)

    def test_billing_job_fires_on_first_three_days(self):
        """Test the settlement pass runs at midnight on days 1-3."""
        for day in (1, 2, 3):
            assert self.scheduler.tick(utc(2024, 7, day, 0, 0, 12)) == ["billing"]
        assert self.scheduler.tick(utc(2024, 7, 4, 0, 0)) == []
        assert self.service.process_pending_invoices.call_count == 3

    def test_overdue_job_fires_after_last_retry(self):
        """Test the overdue sweep runs at 08:00 on day 3."""
        assert self.scheduler.tick(utc(2024, 7, 3, 8, 0)) == ["overdue"]
        self.service.close_pending_invoices.assert_called_once_with()
        self.service.process_pending_invoices.assert_not_called()

    def test_job_fires_once_per_minute(self):
        """Test repeated ticks within the same minute do not refire."""
        self.scheduler.tick(utc(2024, 7, 1, 0, 0, 5))
        assert self.scheduler.tick(utc(2024, 7, 1, 0, 0, 40)) == []
        assert self.service.process_pending_invoices.call_count == 1

    def test_job_failure_is_logged_not_raised(self, caplog):
        self.service.process_pending_invoices.side_effect = RuntimeError("ledger unavailable")

        with caplog.at_level(logging.ERROR, logger="invoice_billing.core.scheduler"):
            assert self.scheduler.tick(utc(2024, 7, 1, 0, 0)) == ["billing"]

        assert "Job billing failed" in caplog.text

    def test_run_now(self):
        self.scheduler.run_now("overdue")
        self.service.close_pending_invoices.assert_called_once_with()

    def test_run_now_unknown_job(self):
        with pytest.raises(KeyError):
            self.scheduler.run_now("refunds")

    def test_custom_schedules(self):
        scheduler = BillingScheduler.for_billing(
            self.service, process_schedule="30 6 * * *", close_schedule="0 0 28 * *"
        )
        assert scheduler.tick(utc(2024, 2, 28, 0, 0)) == ["overdue"]
        assert scheduler.tick(utc(2024, 2, 28, 6, 30)) == ["billing"]

    def test_duplicate_job_names(self):
        job = RecurringJob("billing", "* * * * *", lambda: None)
        with pytest.raises(ValueError):
            BillingScheduler([job, RecurringJob("billing", "0 0 * * *", lambda: None)])

    def test_invalid_tick_interval(self):
        with pytest.raises(ValueError):
            BillingScheduler([], tick_interval_seconds=0)

    def test_background_thread(self):
        """Test start runs ticks on a thread and stop ends it."""
        fired = []
        scheduler = BillingScheduler(
            [RecurringJob("every-minute", "* * * * *", lambda: fired.append(1))],
            tick_interval_seconds=0.01,
        )

        scheduler.start()
        deadline = time.monotonic() + 2
        while not fired and time.monotonic() < deadline:
            time.sleep(0.01)
        scheduler.stop(timeout=2)

        assert len(fired) >= 1
        assert not scheduler.is_running
        assert scheduler.wait(0) is True
