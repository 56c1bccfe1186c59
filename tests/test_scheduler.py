#!/usr/bin/env python3
"""
Scheduler: next-run calculation, schedule configuration and the tick loop.

Usage:
    python -m pytest tests/test_scheduler.py -v
"""

import threading
import time
import unittest
from datetime import datetime, timedelta

from cloudaudit.exceptions import (
    AccountNotFoundError, ConfigurationError, ScheduleValidationError,
)
from cloudaudit.scheduler import (
    AuditScheduler, calculate_next_scan_time, configure_schedule, get_scheduler,
    shutdown_scheduler, validate_schedule,
)

from support import FakeProvider, StoreTestCase, make_orchestrator


class TestNextScanTime(unittest.TestCase):

    def test_daily_later_today(self):
        now = datetime(2024, 1, 1, 1, 30)
        self.assertEqual(calculate_next_scan_time('daily', 2, now=now), datetime(2024, 1, 1, 2, 0))

    def test_daily_already_passed_rolls_to_tomorrow(self):
        now = datetime(2024, 1, 1, 10, 0)
        self.assertEqual(calculate_next_scan_time('daily', 2, now=now), datetime(2024, 1, 2, 2, 0))

    def test_exactly_on_the_hour_is_not_strictly_after(self):
        now = datetime(2024, 1, 1, 2, 0, 0)
        self.assertEqual(calculate_next_scan_time('daily', 2, now=now), datetime(2024, 1, 2, 2, 0))

    def test_daily_across_year_end(self):
        now = datetime(2024, 12, 31, 23, 30)
        self.assertEqual(calculate_next_scan_time('daily', 0, now=now), datetime(2025, 1, 1, 0, 0))

    def test_weekly_uses_sunday_zero(self):
        monday = datetime(2024, 1, 1, 10, 0)  # 2024-01-01 is a Monday
        self.assertEqual(calculate_next_scan_time('weekly', 2, day_of_week=3, now=monday),
                         datetime(2024, 1, 3, 2, 0))
        self.assertEqual(calculate_next_scan_time('weekly', 2, day_of_week=0, now=monday),
                         datetime(2024, 1, 7, 2, 0))
        self.assertEqual(calculate_next_scan_time('weekly', 2, day_of_week=6, now=monday),
                         datetime(2024, 1, 6, 2, 0))

    def test_weekly_same_day_passed_waits_a_week(self):
        monday = datetime(2024, 1, 1, 10, 0)
        self.assertEqual(calculate_next_scan_time('weekly', 2, day_of_week=1, now=monday),
                         datetime(2024, 1, 8, 2, 0))
        self.assertEqual(calculate_next_scan_time('weekly', 12, day_of_week=1, now=monday),
                         datetime(2024, 1, 1, 12, 0))

    def test_weekly_defaults_to_sunday(self):
        monday = datetime(2024, 1, 1, 10, 0)
        self.assertEqual(calculate_next_scan_time('weekly', 2, now=monday),
                         datetime(2024, 1, 7, 2, 0))

    def test_monthly_clamps_to_short_months(self):
        self.assertEqual(
            calculate_next_scan_time('monthly', 2, day_of_month=31, now=datetime(2024, 2, 10)),
            datetime(2024, 2, 29, 2, 0))
        self.assertEqual(
            calculate_next_scan_time('monthly', 2, day_of_month=31, now=datetime(2023, 2, 10)),
            datetime(2023, 2, 28, 2, 0))
        self.assertEqual(
            calculate_next_scan_time('monthly', 2, day_of_month=31, now=datetime(2024, 4, 30, 3)),
            datetime(2024, 5, 31, 2, 0))

    def test_monthly_rolls_over_year(self):
        self.assertEqual(
            calculate_next_scan_time('monthly', 6, day_of_month=15, now=datetime(2024, 12, 20)),
            datetime(2025, 1, 15, 6, 0))

    def test_monthly_defaults_to_first(self):
        self.assertEqual(calculate_next_scan_time('monthly', 0, now=datetime(2024, 3, 5, 12)),
                         datetime(2024, 4, 1, 0, 0))

    def test_result_always_strictly_after_now_and_on_the_hour(self):
        start = datetime(2024, 1, 28, 0, 0)
        for step in range(0, 24 * 40, 7):
            now = start + timedelta(hours=step, minutes=step % 60, seconds=13)
            for freq, dow, dom, period in (('daily', None, None, 1),
                                           ('weekly', 2, None, 7),
                                           ('monthly', None, 30, 31)):
                nxt = calculate_next_scan_time(freq, 5, dow, dom, now=now)
                self.assertGreater(nxt, now)
                self.assertLessEqual(nxt - now, timedelta(days=period))
                self.assertEqual((nxt.hour, nxt.minute, nxt.second, nxt.microsecond), (5, 0, 0, 0))
                if freq == 'weekly':
                    self.assertEqual((nxt.weekday() + 1) % 7, 2)

    def test_deterministic_for_fixed_now(self):
        now = datetime(2024, 6, 15, 8, 45)
        self.assertEqual(calculate_next_scan_time('weekly', 9, 4, now=now),
                         calculate_next_scan_time('weekly', 9, 4, now=now))

    def test_invalid_fields_rejected(self):
        for args in (('hourly', 2), ('daily', 24), ('daily', -1), ('daily', True),
                     ('daily', '2'), ('weekly', 2, 7), ('monthly', 2, None, 0),
                     ('monthly', 2, None, 32)):
            with self.assertRaises(ScheduleValidationError, msg=repr(args)):
                validate_schedule(*args)

    def test_validation_error_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            calculate_next_scan_time('daily', 99)


class TestConfigureSchedule(StoreTestCase):

    def test_enable_stores_fields_and_next_run(self):
        account_id = self.add_account()
        next_scan = configure_schedule(self.store, account_id, True, 'weekly', 2, 3,
                                       now=datetime(2024, 1, 1, 10, 0))
        self.assertEqual(next_scan, datetime(2024, 1, 3, 2, 0))
        account = self.store.get_account(account_id)
        self.assertTrue(account['schedule_enabled'])
        self.assertEqual(account['schedule_frequency'], 'weekly')
        self.assertEqual(account['schedule_hour'], 2)
        self.assertEqual(account['schedule_day_of_week'], 3)
        self.assertEqual(account['next_scheduled_scan'], '2024-01-03T02:00:00')

    def test_disable_clears_every_field(self):
        account_id = self.add_account()
        configure_schedule(self.store, account_id, True, 'monthly', 4, day_of_month=15)
        self.assertIsNone(configure_schedule(self.store, account_id, False))
        account = self.store.get_account(account_id)
        self.assertFalse(account['schedule_enabled'])
        for key in ('schedule_frequency', 'schedule_hour', 'schedule_day_of_week',
                    'schedule_day_of_month', 'next_scheduled_scan'):
            self.assertIsNone(account[key], key)

    def test_invalid_schedule_leaves_account_untouched(self):
        account_id = self.add_account()
        with self.assertRaises(ScheduleValidationError):
            configure_schedule(self.store, account_id, True, 'daily', 25)
        account = self.store.get_account(account_id)
        self.assertFalse(account['schedule_enabled'])
        self.assertIsNone(account['next_scheduled_scan'])

    def test_unknown_account(self):
        with self.assertRaises(AccountNotFoundError):
            configure_schedule(self.store, 'nope', True, 'daily', 2)


class TestTick(StoreTestCase):

    def setUp(self):
        super().setUp()
        self.provider = FakeProvider()
        self.orchestrator = make_orchestrator(self.store, self.vault, self.provider)
        self.scheduler = AuditScheduler(self.orchestrator, self.store, interval=60, max_parallel=2)

    def tearDown(self):
        self.scheduler.stop()
        super().tearDown()

    def _daily_at_two(self, **kwargs):
        account_id = self.add_account(**kwargs)
        configure_schedule(self.store, account_id, True, 'daily', 2, now=datetime(2024, 1, 1, 10, 0))
        return account_id

    def test_due_account_runs_once_and_advances(self):
        account_id = self._daily_at_two()
        now = datetime(2024, 1, 2, 2, 1)

        futures = self.scheduler.tick(now=now)
        self.assertEqual(len(futures), 1)
        outcome = futures[0].result(timeout=10)
        self.assertTrue(outcome['success'], outcome['error'])

        audits = self.store.list_audits(account_id)
        self.assertEqual(len(audits), 1)
        self.assertEqual(audits[0]['trigger_type'], 'scheduled')
        self.assertEqual(self.store.get_account(account_id)['next_scheduled_scan'],
                         '2024-01-03T02:00:00')

        logs = self.store.list_scan_logs(account_id)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]['status'], 'success')
        self.assertEqual(logs[0]['audit_id'], outcome['audit_id'])
        self.assertEqual(logs[0]['scheduled_for'], '2024-01-02T02:00:00')
        self.assertEqual(logs[0]['provider'], 'AWS')

        self.assertEqual(self.scheduler.tick(now=now), [])
        self.assertEqual(len(self.store.list_audits(account_id)), 1)

    def test_not_yet_due(self):
        self._daily_at_two()
        self.assertEqual(self.scheduler.tick(now=datetime(2024, 1, 2, 1, 59)), [])

    def test_missed_runs_are_not_replayed(self):
        account_id = self._daily_at_two()
        futures = self.scheduler.tick(now=datetime(2024, 1, 5, 9, 0))
        self.assertEqual(len(futures), 1)
        futures[0].result(timeout=10)
        self.assertEqual(self.store.get_account(account_id)['next_scheduled_scan'],
                         '2024-01-06T02:00:00')
        self.assertEqual(len(self.store.list_audits(account_id)), 1)

    def test_overlapping_schedulers_dispatch_once(self):
        self._daily_at_two()
        other = AuditScheduler(self.orchestrator, self.store, interval=60, max_parallel=2)
        try:
            now = datetime(2024, 1, 2, 2, 5)
            dispatched = self.scheduler.tick(now=now) + other.tick(now=now)
            self.assertEqual(len(dispatched), 1)
            dispatched[0].result(timeout=10)
        finally:
            other.stop()

    def test_disabled_and_inactive_accounts_are_ignored(self):
        disabled = self._daily_at_two(external_id='111111111111')
        configure_schedule(self.store, disabled, False)
        inactive = self._daily_at_two(external_id='222222222222')
        self.store.set_account_active(inactive, False)
        self.assertEqual(self.scheduler.tick(now=datetime(2024, 1, 2, 3, 0)), [])

    def test_every_provider_is_selected(self):
        self._daily_at_two(external_id='123456789012', provider='AWS')
        self._daily_at_two(external_id='my-project-1', provider='GCP')
        self._daily_at_two(external_id='00000000-0000-0000-0000-000000000001', provider='AZURE')
        due = self.store.get_due_accounts(datetime(2024, 1, 2, 2, 0))
        self.assertEqual({a['provider'] for a in due}, {'AWS', 'GCP', 'AZURE'})

    def test_failed_trigger_is_logged(self):
        account_id = self._daily_at_two(secret={'wrong': 'shape'})
        futures = self.scheduler.tick(now=datetime(2024, 1, 2, 2, 1))
        outcome = futures[0].result(timeout=10)
        self.assertFalse(outcome['success'])
        logs = self.store.list_scan_logs(account_id)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]['status'], 'failed')
        self.assertIn("missing required field", logs[0]['error_message'])
        self.assertIsNone(logs[0]['audit_id'])

    def test_drain_waits_for_dispatched_audits(self):
        self._daily_at_two()
        self.scheduler.tick(now=datetime(2024, 1, 2, 2, 1))
        self.assertTrue(self.scheduler.drain(timeout=10))
        self.assertEqual(len(self.store.list_scan_logs()), 1)

    def test_stop_without_wait_logs_cancelled_queued_audits(self):
        entered, release = threading.Event(), threading.Event()
        started = []

        class BlockingOrchestrator:
            store = self.store

            def trigger_scan(self, provider, account_id, trigger="manual"):
                started.append(account_id)
                entered.set()
                release.wait(5)
                return {'success': True, 'audit_id': None, 'error': None,
                        'duration_ms': 1, 'summary': None}

        first = self._daily_at_two(external_id='111111111111')
        second = self._daily_at_two(external_id='222222222222')
        scheduler = AuditScheduler(BlockingOrchestrator(), self.store, interval=60, max_parallel=1)
        futures = scheduler.tick(now=datetime(2024, 1, 2, 2, 1))
        self.assertEqual(len(futures), 2)
        self.assertTrue(entered.wait(5))
        try:
            scheduler.stop(wait=False)
        finally:
            release.set()
        futures[0].result(timeout=10)

        self.assertEqual(len(started), 1)
        cancelled = ({first, second} - set(started)).pop()
        logs = self.store.list_scan_logs(cancelled)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]['status'], 'failed')
        self.assertIsNone(logs[0]['audit_id'])
        self.assertIn("Cancelled at scheduler shutdown", logs[0]['error_message'])
        self.assertEqual(logs[0]['scheduled_for'], '2024-01-02T02:00:00')
        self.assertTrue(futures[1].cancelled())
        self.assertEqual(self.store.list_scan_logs(started[0])[0]['status'], 'success')


class TestLifecycle(StoreTestCase):

    def setUp(self):
        super().setUp()
        self.orchestrator = make_orchestrator(self.store, self.vault, FakeProvider())

    def test_prepare_recovers_stale_runs(self):
        account_id = self.add_account()
        account = self.store.get_account(account_id)
        audit_id, _ = self.store.begin_audit(account, [(1, 'IAM'), (2, 'S3')],
                                             started_at=datetime(2024, 1, 1, 0, 0))
        scheduler = AuditScheduler(self.orchestrator, self.store, interval=60)
        scheduler.prepare(now=datetime(2024, 1, 1, 12, 0))

        audit = self.store.get_audit(audit_id)
        self.assertEqual(audit['status'], 'failed')
        self.assertIn("Interrupted", audit['error_message'])
        self.assertEqual({p['status'] for p in self.store.get_phases(audit_id)}, {'skipped'})
        self.assertIsNone(self.store.get_account(account_id)['running_audit_id'])

    def test_prepare_keeps_recent_runs(self):
        account_id = self.add_account()
        account = self.store.get_account(account_id)
        audit_id, _ = self.store.begin_audit(account, [(1, 'IAM')],
                                             started_at=datetime(2024, 1, 1, 10, 0))
        AuditScheduler(self.orchestrator, self.store, interval=60).prepare(
            now=datetime(2024, 1, 1, 12, 0))
        self.assertEqual(self.store.get_audit(audit_id)['status'], 'running')

    def test_prepare_backfills_missing_next_run(self):
        account_id = self.add_account()
        self.store.update_schedule(account_id, True, 'daily', 2)
        AuditScheduler(self.orchestrator, self.store, interval=60).prepare(
            now=datetime(2024, 1, 1, 10, 0))
        self.assertEqual(self.store.get_account(account_id)['next_scheduled_scan'],
                         '2024-01-02T02:00:00')

    def test_start_and_stop_background_loop(self):
        scheduler = AuditScheduler(self.orchestrator, self.store, interval=0.05)
        thread = scheduler.start(daemon=True)
        self.assertTrue(thread.is_alive())
        self.assertTrue(scheduler.running)
        self.assertIs(scheduler.start(daemon=True), thread)
        time.sleep(0.2)
        scheduler.stop(timeout=5)
        self.assertFalse(thread.is_alive())
        self.assertFalse(scheduler.running)


class TestSchedulerSingleton(unittest.TestCase):

    def test_get_and_shutdown(self):
        first = get_scheduler()
        self.assertIs(get_scheduler(), first)
        shutdown_scheduler()
        second = get_scheduler()
        self.assertIsNot(second, first)
        shutdown_scheduler()
        shutdown_scheduler()


if __name__ == '__main__':
    unittest.main()
