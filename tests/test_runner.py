#!/usr/bin/env python3
"""
Phase runner: per-unit isolation, phase status rules and timeouts.

Usage:
    python -m pytest tests/test_runner.py -v
"""

import threading
import time
import unittest

from cloudaudit.exceptions import CheckError, TransientProviderError
from cloudaudit.runner import PhaseRunner, describe_error
from cloudchecks.base import AuditScope

from support import finding, make_phase, raises, returns

SCOPE = AuditScope(external_id='123456789012', region='us-east-1')


class TestPhaseStatus(unittest.TestCase):

    def setUp(self):
        self.runner = PhaseRunner(max_workers=4, check_timeout=5)

    def test_partial_failure_completes_with_errors_as_metadata(self):
        phase = make_phase(
            2,
            ('A', returns(finding('A', 'HIGH'))),
            ('B', raises(CheckError("Permission denied (403)"))),
            ('C', returns(finding('C', 'LOW'), finding('C', 'MEDIUM'))),
        )
        started = []
        result = self.runner.run_phase(phase, None, SCOPE, on_start=lambda: started.append(1))

        self.assertEqual(result.status, 'completed')
        self.assertEqual(started, [1])
        self.assertEqual([f.finding_id for f in result.findings], ['A', 'C', 'C'])
        self.assertEqual(result.errors, [{'check_id': 'B', 'error': 'Permission denied (403)'}])
        self.assertEqual(result.checks_total, 3)
        self.assertEqual(result.checks_failed, 1)
        self.assertEqual(result.severity_counts(),
                         {'critical': 0, 'high': 1, 'medium': 1, 'low': 1})
        self.assertIsNotNone(result.completed_at)

    def test_every_unit_failing_fails_phase_without_findings(self):
        phase = make_phase(
            3,
            ('A', raises(CheckError("denied"))),
            ('B', raises(TransientProviderError("throttling exhausted"))),
        )
        result = self.runner.run_phase(phase, None, SCOPE)
        self.assertEqual(result.status, 'failed')
        self.assertEqual(result.findings, [])
        self.assertEqual(len(result.errors), 2)
        self.assertEqual(result.checks_failed, 2)

    def test_phase_without_units_is_skipped(self):
        started = []
        result = self.runner.run_phase(make_phase(7), None, SCOPE,
                                       on_start=lambda: started.append(1))
        self.assertEqual(result.status, 'skipped')
        self.assertEqual(started, [])
        self.assertEqual(result.findings, [])

    def test_unexpected_exception_is_captured_with_type(self):
        phase = make_phase(1, ('A', raises(ValueError("boom"))), ('B', returns()))
        result = self.runner.run_phase(phase, None, SCOPE)
        self.assertEqual(result.status, 'completed')
        self.assertEqual(result.errors, [{'check_id': 'A', 'error': 'ValueError: boom'}])

    def test_units_receive_handle_and_scope(self):
        seen = []

        def check(handle, scope):
            seen.append((handle, scope))
            return None

        result = self.runner.run_phase(make_phase(1, ('A', check)), 'handle', SCOPE)
        self.assertEqual(result.status, 'completed')
        self.assertEqual(seen, [('handle', SCOPE)])

    def test_on_start_errors_propagate(self):
        def boom():
            raise RuntimeError("store down")
        with self.assertRaises(RuntimeError):
            self.runner.run_phase(make_phase(1, ('A', returns())), None, SCOPE, on_start=boom)

    def test_max_workers_must_be_positive(self):
        with self.assertRaises(ValueError):
            PhaseRunner(max_workers=0, check_timeout=1)


class TestConcurrencyAndTimeouts(unittest.TestCase):

    def test_concurrency_never_exceeds_cap(self):
        lock = threading.Lock()
        state = {'active': 0, 'peak': 0}

        def check(handle, scope):
            with lock:
                state['active'] += 1
                state['peak'] = max(state['peak'], state['active'])
            time.sleep(0.05)
            with lock:
                state['active'] -= 1
            return []

        phase = make_phase(1, *[(f"U{i}", check) for i in range(6)])
        result = PhaseRunner(max_workers=2, check_timeout=5).run_phase(phase, None, SCOPE)
        self.assertEqual(result.status, 'completed')
        self.assertLessEqual(state['peak'], 2)
        self.assertGreaterEqual(state['peak'], 1)

    def test_slow_unit_times_out_without_blocking_siblings(self):
        release = threading.Event()

        def slow(handle, scope):
            release.wait(5)
            return [finding('SLOW', 'CRITICAL')]

        phase = make_phase(1, ('SLOW', slow), ('FAST', returns(finding('FAST', 'LOW'))))
        runner = PhaseRunner(max_workers=2, check_timeout=0.2)
        start = time.monotonic()
        try:
            result = runner.run_phase(phase, None, SCOPE)
        finally:
            release.set()

        self.assertLess(time.monotonic() - start, 3)
        self.assertEqual(result.status, 'completed')
        self.assertEqual([f.finding_id for f in result.findings], ['FAST'])
        self.assertEqual(result.errors, [{'check_id': 'SLOW', 'error': 'Timed out after 0.2s'}])

    def test_hung_unit_does_not_stall_queued_sibling(self):
        release = threading.Event()

        def hang(handle, scope):
            release.wait(3)
            return []

        phase = make_phase(1, ('HANG', hang), ('FAST', returns(finding('FAST', 'LOW'))))
        runner = PhaseRunner(max_workers=1, check_timeout=0.2)
        start = time.monotonic()
        try:
            result = runner.run_phase(phase, None, SCOPE)
            elapsed = time.monotonic() - start
        finally:
            release.set()

        self.assertLess(elapsed, 1.5)
        errors = {e['check_id']: e['error'] for e in result.errors}
        self.assertEqual(errors['HANG'], 'Timed out after 0.2s')
        if 'FAST' in errors:
            self.assertTrue(errors['FAST'].startswith("Not started within 0.4s"))

    def test_timed_out_calls_keep_their_slot_across_phases(self):
        release = threading.Event()
        lock = threading.Lock()
        state = {'active': 0, 'peak': 0}

        def hang(handle, scope):
            with lock:
                state['active'] += 1
                state['peak'] = max(state['peak'], state['active'])
            try:
                release.wait(3)
            finally:
                with lock:
                    state['active'] -= 1
            return []

        runner = PhaseRunner(max_workers=1, check_timeout=0.2)
        try:
            results = [runner.run_phase(make_phase(n, (f"H{n}", hang)), None, SCOPE)
                       for n in (1, 2, 3)]
        finally:
            release.set()

        self.assertEqual(state['peak'], 1)
        self.assertEqual(results[0].errors, [{'check_id': 'H1', 'error': 'Timed out after 0.2s'}])
        for result in results[1:]:
            self.assertEqual(result.status, 'failed')
            self.assertTrue(result.errors[0]['error'].startswith("Not started within 0.2s"))

    def test_phase_timeout_fails_remaining_units(self):
        release = threading.Event()

        def slow(handle, scope):
            release.wait(5)
            return []

        phase = make_phase(1, ('S1', slow), ('S2', slow))
        runner = PhaseRunner(max_workers=2, check_timeout=10, phase_timeout=0.2)
        try:
            result = runner.run_phase(phase, None, SCOPE)
        finally:
            release.set()

        self.assertEqual(result.status, 'failed')
        self.assertEqual({e['error'] for e in result.errors}, {'Phase timed out after 0.2s'})


class TestDescribeError(unittest.TestCase):

    def test_provider_errors_keep_their_message(self):
        self.assertEqual(describe_error(CheckError("denied")), "denied")
        self.assertEqual(describe_error(TransientProviderError("slow down")), "slow down")

    def test_other_errors_are_prefixed_with_type(self):
        self.assertEqual(describe_error(KeyError('Buckets')), "KeyError: 'Buckets'")
        self.assertEqual(describe_error(RuntimeError()), "RuntimeError")


if __name__ == '__main__':
    unittest.main()
