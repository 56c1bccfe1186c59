#!/usr/bin/env python3
"""
Cloud Audit Engine - Scan Scheduler
Computes next run times for daily/weekly/monthly schedules and runs the
tick loop that dispatches due audits.

Process-wide state lives in one AuditScheduler created by get_scheduler()
and torn down by shutdown_scheduler(). Each tick advances an account's
next_scheduled_scan with a compare-and-set before dispatching, so
overlapping ticks (or several schedulers on one database) fire each due
slot once. Missed slots are not replayed: the next run is computed from
the tick time.
"""

import calendar
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .config import config
from .exceptions import PersistenceError, ScheduleValidationError
from .logger import get_logger
from .models import VALID_FREQUENCIES, from_iso, utcnow
from .orchestrator import AuditOrchestrator, elapsed_ms, get_orchestrator
from .runner import describe_error
from .store import AuditStore

logger = get_logger('scheduler')


# ---------------------------------------------------------------------------
# Next-run calculation
# ---------------------------------------------------------------------------

def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_schedule(frequency: str, hour: int,
                      day_of_week: Optional[int] = None,
                      day_of_month: Optional[int] = None):
    """Raise ScheduleValidationError if any schedule field is out of range."""
    if frequency not in VALID_FREQUENCIES:
        raise ScheduleValidationError(
            f"Invalid frequency '{frequency}'. Must be one of {VALID_FREQUENCIES}"
        )
    if not _is_int(hour) or not 0 <= hour <= 23:
        raise ScheduleValidationError(f"hour must be an integer 0-23, got {hour!r}")
    if day_of_week is not None and (not _is_int(day_of_week) or not 0 <= day_of_week <= 6):
        raise ScheduleValidationError(
            f"day_of_week must be an integer 0-6 (0 = Sunday), got {day_of_week!r}"
        )
    if day_of_month is not None and (not _is_int(day_of_month) or not 1 <= day_of_month <= 31):
        raise ScheduleValidationError(
            f"day_of_month must be an integer 1-31, got {day_of_month!r}"
        )


def calculate_next_scan_time(frequency: str, hour: int,
                             day_of_week: Optional[int] = None,
                             day_of_month: Optional[int] = None,
                             now: Optional[datetime] = None) -> datetime:
    """
    Soonest time strictly after *now* matching the schedule fields.

    day_of_week: 0 = Sunday ... 6 = Saturday (weekly, default Sunday).
    day_of_month: 1-31, clamped to the last day of shorter months
    (monthly, default 1). Runs always start on the hour.
    """
    validate_schedule(frequency, hour, day_of_week, day_of_month)
    now = now or utcnow()
    base = now.replace(hour=hour, minute=0, second=0, microsecond=0)

    if frequency == "daily":
        candidate = base
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    if frequency == "weekly":
        target = 0 if day_of_week is None else day_of_week
        current = (now.weekday() + 1) % 7  # datetime counts from Monday
        candidate = base + timedelta(days=(target - current) % 7)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate

    target = day_of_month or 1
    year, month = now.year, now.month
    while True:
        last_day = calendar.monthrange(year, month)[1]
        candidate = base.replace(year=year, month=month, day=min(target, last_day))
        if candidate > now:
            return candidate
        month += 1
        if month > 12:
            month = 1
            year += 1


def configure_schedule(store: AuditStore, account_id: str, enabled: bool,
                       frequency: Optional[str] = None, hour: Optional[int] = None,
                       day_of_week: Optional[int] = None,
                       day_of_month: Optional[int] = None,
                       now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Enable or disable an account's schedule.

    Returns the next run time, or None when disabled. Invalid fields raise
    ScheduleValidationError and leave the account untouched.
    """
    store.require_account(account_id)
    if not enabled:
        store.update_schedule(account_id, False)
        logger.info("Schedule disabled for account %s", account_id)
        return None

    next_scan = calculate_next_scan_time(frequency, hour, day_of_week, day_of_month, now)
    store.update_schedule(account_id, True, frequency, hour, day_of_week,
                          day_of_month, next_scan)
    logger.info("Schedule for account %s set to %s at %02d:00, next run %s",
                account_id, frequency, hour, next_scan.isoformat())
    return next_scan


# ---------------------------------------------------------------------------
# Tick loop
# ---------------------------------------------------------------------------

class AuditScheduler:
    """Dispatches due scheduled audits on a fixed interval."""

    def __init__(self, orchestrator: Optional[AuditOrchestrator] = None,
                 store: Optional[AuditStore] = None,
                 interval: Optional[float] = None,
                 max_parallel: Optional[int] = None):
        self.orchestrator = orchestrator or get_orchestrator()
        self.store = store or self.orchestrator.store
        self.interval = float(interval or config.get_tick_interval())
        self.max_parallel = int(max_parallel or config.get('scheduling.max_parallel_audits', 4))
        self._pool: Optional[ThreadPoolExecutor] = None
        self._futures: Dict[Future, tuple] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def tick(self, now: Optional[datetime] = None) -> List[Future]:
        """
        Dispatch every account whose next scheduled scan is due.

        Returns the futures of the audits dispatched by this tick.
        """
        now = now or utcnow()
        try:
            due = self.store.get_due_accounts(now)
        except PersistenceError as exc:
            logger.error("Cannot read due accounts: %s", exc)
            return []

        dispatched = []
        for account in due:
            try:
                next_scan = calculate_next_scan_time(
                    account['schedule_frequency'], account['schedule_hour'],
                    account['schedule_day_of_week'], account['schedule_day_of_month'],
                    now=now,
                )
            except ScheduleValidationError as exc:
                logger.error("Account %s has an invalid schedule, disabling it: %s",
                             account['id'], exc)
                self.store.update_schedule(account['id'], False)
                continue

            expected = account['next_scheduled_scan']
            if not self.store.advance_next_scheduled_scan(account['id'], expected, next_scan):
                logger.debug("Account %s already dispatched by another tick", account['id'])
                continue

            logger.info("Dispatching scheduled %s audit for account %s (due %s, next %s)",
                        account['provider'], account['id'], expected, next_scan.isoformat())
            dispatched.append(self._submit(account, from_iso(expected)))
        return dispatched

    def _submit(self, account: Dict[str, Any], scheduled_for: Optional[datetime]) -> Future:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.max_parallel,
                                                thread_name_prefix="scheduled-audit")
            future = self._pool.submit(self._run_scheduled, account, scheduled_for)
            self._futures[future] = (account, scheduled_for)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future):
        with self._lock:
            self._futures.pop(future, None)

    def _run_scheduled(self, account: Dict[str, Any],
                       scheduled_for: Optional[datetime]) -> Dict[str, Any]:
        executed_at = utcnow()
        start = time.monotonic()
        try:
            outcome = self.orchestrator.trigger_scan(account['provider'], account['id'],
                                                     trigger="scheduled")
        except Exception as exc:
            logger.exception("Scheduled audit for account %s crashed", account['id'])
            outcome = {'success': False, 'audit_id': None, 'error': describe_error(exc),
                       'duration_ms': elapsed_ms(start), 'summary': None}

        status = "success" if outcome['success'] else "failed"
        try:
            self.store.record_scan_log(
                account['provider'], account['id'], account.get('user_id') or "",
                status, outcome.get('audit_id'), outcome.get('error'),
                scheduled_for, executed_at, outcome.get('duration_ms') or elapsed_ms(start),
            )
        except PersistenceError as exc:
            logger.error("Could not record scan log for account %s: %s", account['id'], exc)

        log = logger.info if outcome['success'] else logger.warning
        log("Scheduled audit for account %s finished: %s%s", account['id'], status,
            f" ({outcome['error']})" if outcome.get('error') else "")
        return outcome

    def _log_cancelled(self, account: Dict[str, Any], scheduled_for: Optional[datetime]):
        message = "Cancelled at scheduler shutdown before it started"
        logger.warning("Scheduled audit for account %s: %s", account['id'], message)
        try:
            self.store.record_scan_log(
                account['provider'], account['id'], account.get('user_id') or "",
                "failed", None, message, scheduled_for, utcnow(), 0,
            )
        except PersistenceError as exc:
            logger.error("Could not record scan log for account %s: %s", account['id'], exc)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight scheduled audits; True if all finished."""
        with self._lock:
            pending = set(self._futures)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # ---- lifecycle -------------------------------------------------------

    def prepare(self, now: Optional[datetime] = None):
        """
        Start-up housekeeping: fail audits orphaned by a dead process and
        compute next runs for enabled schedules that have none.
        """
        now = now or utcnow()
        stale_hours = float(config.get('scheduling.stale_audit_hours', 6))
        recovered = self.store.recover_stale_runs(stale_hours, now=now)
        if recovered:
            logger.warning("Marked %d interrupted audit(s) as failed", recovered)

        for account in self.store.get_unscheduled_enabled_accounts():
            try:
                next_scan = calculate_next_scan_time(
                    account['schedule_frequency'], account['schedule_hour'],
                    account['schedule_day_of_week'], account['schedule_day_of_month'],
                    now=now,
                )
            except ScheduleValidationError as exc:
                logger.error("Account %s has an invalid schedule: %s", account['id'], exc)
                continue
            self.store.advance_next_scheduled_scan(account['id'], None, next_scan)

    def start(self, daemon: bool = True) -> Optional[threading.Thread]:
        """
        Run the tick loop every *interval* seconds.

        daemon=True runs it on a background thread and returns the thread;
        daemon=False blocks until stop() is called.
        """
        if self._running:
            return self._thread
        self._stop_event.clear()
        self._running = True
        self.prepare()

        if daemon:
            self._thread = threading.Thread(target=self._loop, name="CloudAudit-Scheduler",
                                            daemon=True)
            self._thread.start()
            return self._thread
        self._loop()
        return None

    def _loop(self):
        logger.info("Scheduler loop started (interval=%ss, max_parallel=%d)",
                    self.interval, self.max_parallel)
        try:
            while not self._stop_event.is_set():
                try:
                    self.tick()
                except Exception as exc:
                    logger.error("Scheduler tick error: %s", exc)
                self._stop_event.wait(self.interval)
        finally:
            self._running = False
            logger.info("Scheduler loop stopped")

    def stop(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Stop ticking; with wait=True, let in-flight audits finish.

        With wait=False, audits still queued are cancelled and each gets a
        failed scan log entry, since its next run was already advanced.
        Audits already running are left to finish on their own.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        if wait:
            self.drain(timeout)
        with self._lock:
            pool, self._pool = self._pool, None
            queued = dict(self._futures)
        if pool is not None:
            if not wait:
                for future, (account, scheduled_for) in queued.items():
                    if future.cancel():
                        self._log_cancelled(account, scheduled_for)
            pool.shutdown(wait=wait)
        self._running = False
        logger.info("Scheduler stop requested (wait=%s)", wait)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_scheduler: Optional[AuditScheduler] = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> AuditScheduler:
    """Get the process-wide scheduler, creating it on first use."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = AuditScheduler()
        return _scheduler


def shutdown_scheduler(wait: bool = True, timeout: Optional[float] = None):
    """Stop and discard the process-wide scheduler."""
    global _scheduler
    with _scheduler_lock:
        scheduler, _scheduler = _scheduler, None
    if scheduler is not None:
        scheduler.stop(wait=wait, timeout=timeout)
