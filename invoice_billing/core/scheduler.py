"""
Recurring trigger for billing passes.

Fires the billing engine's entry points on cron schedules from a single
background thread. Cron expressions use the five-field form
``minute hour day_of_month month day_of_week`` with ``*``, lists, ranges
and steps. Times are evaluated in UTC.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_SCHEDULE = "0 0 1,2,3 * *"
DEFAULT_CLOSE_SCHEDULE = "0 8 3 * *"


@dataclass(frozen=True)
class CronSpec:
    """Parsed cron expression; each field is the set of matching values."""
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]


def _parse_cron_field(field_str: str, min_val: int, max_val: int) -> FrozenSet[int]:
    values = set()
    for part in field_str.split(","):
        part = part.strip()
        step = 1
        stepped = "/" in part
        if stepped:
            part, step_str = part.split("/", 1)
            step = int(step_str)
            if step <= 0:
                raise ValueError(f"Step must be positive: {step}")

        if part == "*":
            start, end = min_val, max_val
        elif "-" in part:
            s, e = part.split("-", 1)
            start, end = int(s), int(e)
            if start > end:
                raise ValueError(f"Range start > end: {start}-{end}")
        else:
            start = int(part)
            end = max_val if stepped else start

        if start < min_val or end > max_val:
            raise ValueError(f"Value outside range [{min_val}, {max_val}]: {field_str}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    """Parse a 5-field cron expression.

    Raises:
        ValueError: If the expression is malformed or out of range
    """
    parts = expression.strip().split()
    if len(parts) != 5:
        raise ValueError(
            f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'"
        )
    return CronSpec(
        minutes=_parse_cron_field(parts[0], 0, 59),
        hours=_parse_cron_field(parts[1], 0, 23),
        days_of_month=_parse_cron_field(parts[2], 1, 31),
        months=_parse_cron_field(parts[3], 1, 12),
        days_of_week=_parse_cron_field(parts[4], 0, 6),
    )


def matches_cron(spec: CronSpec, dt: datetime) -> bool:
    """Check whether a datetime falls on a minute the cron schedule selects.

    Cron weekdays count from Sunday (0); Python's from Monday.
    """
    cron_dow = (dt.weekday() + 1) % 7
    return (
        dt.minute in spec.minutes
        and dt.hour in spec.hours
        and dt.day in spec.days_of_month
        and dt.month in spec.months
        and cron_dow in spec.days_of_week
    )


@dataclass
class RecurringJob:
    """A named unit of work fired whenever its cron schedule matches."""
    name: str
    schedule: str
    action: Callable[[], None]
    spec: CronSpec = field(init=False)
    last_fired: Optional[datetime] = field(default=None, init=False)

    def __post_init__(self):
        self.spec = parse_cron(self.schedule)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingScheduler:
    """In-process polling scheduler for recurring billing jobs.

    ``tick()`` fires every job whose schedule matches the current minute
    and which has not fired in that minute yet. Jobs run one after the
    other on the scheduler thread.
    """

    def __init__(
        self,
        jobs: List[RecurringJob],
        tick_interval_seconds: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        names = [job.name for job in jobs]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate job names: {names}")
        if tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")
        self.jobs: Dict[str, RecurringJob] = {job.name: job for job in jobs}
        self._tick_interval = tick_interval_seconds
        self._clock = clock or _utcnow
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def for_billing(
        cls,
        service,
        process_schedule: str = DEFAULT_PROCESS_SCHEDULE,
        close_schedule: str = DEFAULT_CLOSE_SCHEDULE,
        tick_interval_seconds: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None
    ) -> "BillingScheduler":
        """Scheduler with the two billing jobs: ``billing`` and ``overdue``."""
        return cls(
            [
                RecurringJob("billing", process_schedule, service.process_pending_invoices),
                RecurringJob("overdue", close_schedule, service.close_pending_invoices),
            ],
            tick_interval_seconds=tick_interval_seconds,
            clock=clock,
        )

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Fire due jobs (public for testing).

        Returns:
            Names of the jobs fired
        """
        now = (now or self._clock()).replace(second=0, microsecond=0)
        fired = []
        for job in self.jobs.values():
            if self._stop_event.is_set():
                break
            if job.last_fired == now or not matches_cron(job.spec, now):
                continue
            job.last_fired = now
            self._fire(job)
            fired.append(job.name)
        return fired

    def run_now(self, name: str) -> None:
        """Fire a job immediately, outside its schedule.

        Raises:
            KeyError: If no job has that name
        """
        self._fire(self.jobs[name])

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="billing-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Billing scheduler started",
            extra={"jobs": {job.name: job.schedule for job in self.jobs.values()}},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current job to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("Billing scheduler stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the scheduler is stopped; True if it was."""
        return self._stop_event.wait(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)

    def _fire(self, job: RecurringJob) -> None:
        logger.info("Running job %s", job.name)
        try:
            job.action()
        except Exception:
            logger.exception("Job %s failed", job.name)
