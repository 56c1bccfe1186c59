#!/usr/bin/env python3
"""
Audit orchestrator: state machine, aggregation, risk score and run claims.

Usage:
    python -m pytest tests/test_orchestrator.py -v
"""

import threading
import unittest
from unittest.mock import patch

from cloudaudit.config import config
from cloudaudit.exceptions import (
    AuthenticationError, CheckError, ConfigurationError, PersistenceError,
    TransientProviderError,
)
from cloudaudit.orchestrator import AuditOrchestrator, risk_score
from cloudchecks import get_provider

from support import (
    FakeProvider, StoreTestCase, finding, make_orchestrator, make_phase, raises, returns,
)


def mixed_phases():
    return [
        make_phase(1, ('A-1', returns(finding('A-1', 'CRITICAL'))),
                   ('A-2', returns(finding('A-2', 'HIGH')))),
        make_phase(2, ('B-1', raises(CheckError("denied"))),
                   ('B-2', returns(finding('B-2', 'MEDIUM')))),
        make_phase(3, ('C-1', raises(CheckError("denied"))),
                   ('C-2', raises(TransientProviderError("throttling exhausted")))),
        make_phase(4),
    ]


class TestRiskScore(unittest.TestCase):

    WEIGHTS = {'critical': 10, 'high': 5, 'medium': 2, 'low': 0.5}

    def test_clean_account_scores_100(self):
        self.assertEqual(risk_score(0, 0, 0, 0, self.WEIGHTS), 100.0)

    def test_weighted_penalty(self):
        self.assertEqual(risk_score(1, 1, 1, 1, self.WEIGHTS), 82.5)

    def test_saturates_at_zero(self):
        self.assertEqual(risk_score(50, 0, 0, 0, self.WEIGHTS), 0.0)

    def test_monotonic_in_every_severity(self):
        for index in range(4):
            previous = 100.0
            for n in range(0, 40):
                counts = [0, 0, 0, 0]
                counts[index] = n
                score = risk_score(*counts, weights=self.WEIGHTS)
                self.assertLessEqual(score, previous)
                self.assertGreaterEqual(score, 0.0)
                self.assertLessEqual(score, 100.0)
                previous = score

    def test_defaults_come_from_config(self):
        self.assertEqual(risk_score(1, 0, 0, 0), 90.0)

    def test_negative_configured_weight_rejected(self):
        original = config.get('risk.weights.low')
        config.set('risk.weights.low', -1)
        try:
            with self.assertRaises(ConfigurationError):
                risk_score(0, 0, 0, 1)
        finally:
            config.set('risk.weights.low', original)


class TestCompletedAudit(StoreTestCase):

    def test_aggregates_findings_of_completed_phases(self):
        account_id = self.add_account()
        provider = FakeProvider(phases=mixed_phases())
        outcome = make_orchestrator(self.store, self.vault, provider).trigger_scan('aws', account_id)

        self.assertTrue(outcome['success'], outcome['error'])
        self.assertIsNone(outcome['error'])
        summary = outcome['summary']
        self.assertEqual((summary['critical'], summary['high'], summary['medium'], summary['low']),
                         (1, 1, 1, 0))
        self.assertEqual(summary['total_findings'], 3)
        self.assertEqual(summary['risk_score'], 83.0)
        self.assertEqual(summary['account_name'], 'prod')
        self.assertEqual(summary['provider'], 'AWS')

        audit = self.store.get_audit(outcome['audit_id'])
        self.assertEqual(audit['status'], 'completed')
        self.assertEqual(audit['risk_score'], 83.0)
        self.assertEqual(audit['total_findings'], 3)
        self.assertEqual(audit['trigger_type'], 'manual')
        self.assertIsNotNone(audit['completed_at'])
        self.assertIsNotNone(audit['duration_ms'])

        phases = self.store.get_phases(outcome['audit_id'])
        self.assertEqual([p['status'] for p in phases],
                         ['completed', 'completed', 'failed', 'skipped'])
        self.assertEqual(phases[1]['errors'], [{'check_id': 'B-1', 'error': 'denied'}])
        self.assertEqual(phases[2]['findings'], 0)
        self.assertEqual(len(self.store.get_findings(outcome['audit_id'])), 3)

        account = self.store.get_account(account_id)
        self.assertIsNone(account['running_audit_id'])
        self.assertEqual(account['health_score'], 83.0)
        self.assertIsNotNone(account['last_scan_at'])
        self.assertEqual(provider.auth_calls, 1)

    def test_transient_auth_failure_is_retried_once(self):
        account_id = self.add_account()
        provider = FakeProvider(auth_errors=[TransientProviderError("timeout")])
        outcome = make_orchestrator(self.store, self.vault, provider).trigger_scan('AWS', account_id)
        self.assertTrue(outcome['success'])
        self.assertEqual(provider.auth_calls, 2)

    def test_background_run_returns_audit_id(self):
        account_id = self.add_account()
        orchestrator = make_orchestrator(self.store, self.vault, FakeProvider())
        outcome = orchestrator.trigger_scan('AWS', account_id, wait=False)
        self.assertTrue(outcome['success'])
        self.assertIsNone(outcome['summary'])
        orchestrator.wait_for_background(10)
        self.assertEqual(self.store.get_audit(outcome['audit_id'])['status'], 'completed')


class TestFailedAudit(StoreTestCase):

    def test_auth_failure_skips_every_phase(self):
        account_id = self.add_account()
        called = []

        def check(handle, scope):
            called.append(1)
            return []

        provider = FakeProvider(phases=[make_phase(1, ('A', check)), make_phase(2, ('B', check))],
                                auth_errors=[AuthenticationError("InvalidClientTokenId")])
        outcome = make_orchestrator(self.store, self.vault, provider).trigger_scan('AWS', account_id)

        self.assertFalse(outcome['success'])
        self.assertEqual(outcome['error'], "Authentication failed: InvalidClientTokenId")
        self.assertEqual(called, [])
        audit = self.store.get_audit(outcome['audit_id'])
        self.assertEqual(audit['status'], 'failed')
        self.assertIsNone(audit['risk_score'])
        self.assertIsNotNone(audit['completed_at'])
        self.assertEqual({p['status'] for p in self.store.get_phases(outcome['audit_id'])},
                         {'skipped'})
        account = self.store.get_account(account_id)
        self.assertIsNone(account['running_audit_id'])
        self.assertIsNone(account['health_score'])

    def test_repeated_transient_auth_failure_fails_audit(self):
        account_id = self.add_account()
        provider = FakeProvider(auth_errors=[TransientProviderError("timeout")] * 2)
        outcome = make_orchestrator(self.store, self.vault, provider).trigger_scan('AWS', account_id)
        self.assertFalse(outcome['success'])
        self.assertEqual(provider.auth_calls, 2)
        self.assertEqual(self.store.get_audit(outcome['audit_id'])['status'], 'failed')

    def test_no_completed_phase_fails_audit(self):
        account_id = self.add_account()
        provider = FakeProvider(phases=[
            make_phase(1, ('A', raises(CheckError("denied")))),
            make_phase(2),
        ])
        outcome = make_orchestrator(self.store, self.vault, provider).trigger_scan('AWS', account_id)
        self.assertFalse(outcome['success'])
        self.assertEqual(outcome['error'], "No phase completed")
        audit = self.store.get_audit(outcome['audit_id'])
        self.assertEqual(audit['status'], 'failed')
        self.assertEqual(audit['error_message'], "No phase completed")

    def test_persistence_failure_fails_audit_and_releases_claim(self):
        account_id = self.add_account()
        orchestrator = make_orchestrator(self.store, self.vault, FakeProvider(phases=mixed_phases()))
        with patch.object(self.store, 'complete_phase', side_effect=PersistenceError("disk full")):
            outcome = orchestrator.trigger_scan('AWS', account_id)

        self.assertFalse(outcome['success'])
        self.assertIn("disk full", outcome['error'])
        audit = self.store.get_audit(outcome['audit_id'])
        self.assertEqual(audit['status'], 'failed')
        self.assertIn("disk full", audit['error_message'])
        self.assertEqual([p['status'] for p in self.store.get_phases(outcome['audit_id'])],
                         ['failed', 'skipped', 'skipped', 'skipped'])
        self.assertIsNone(self.store.get_account(account_id)['running_audit_id'])


class TestRejectedTriggers(StoreTestCase):

    def test_second_trigger_while_running_is_rejected(self):
        account_id = self.add_account()
        entered = threading.Event()
        release = threading.Event()

        def blocking(handle, scope):
            entered.set()
            release.wait(10)
            return []

        orchestrator = make_orchestrator(
            self.store, self.vault, FakeProvider(phases=[make_phase(1, ('A', blocking))]))
        first = orchestrator.trigger_scan('AWS', account_id, wait=False)
        try:
            self.assertTrue(entered.wait(10))
            second = orchestrator.trigger_scan('AWS', account_id)
        finally:
            release.set()
            orchestrator.wait_for_background(10)

        self.assertTrue(first['success'])
        self.assertFalse(second['success'])
        self.assertEqual(second['audit_id'], first['audit_id'])
        self.assertIn("already running", second['error'])
        self.assertEqual(len(self.store.list_audits(account_id)), 1)

        third = orchestrator.trigger_scan('AWS', account_id)
        self.assertTrue(third['success'])

    def test_unknown_account(self):
        orchestrator = make_orchestrator(self.store, self.vault, FakeProvider())
        outcome = orchestrator.trigger_scan('AWS', 'missing-account')
        self.assertFalse(outcome['success'])
        self.assertIsNone(outcome['audit_id'])
        self.assertIn("not found", outcome['error'])

    def test_malformed_secret_never_creates_audit(self):
        account_id = self.add_account(secret={'unexpected': 'value'})
        orchestrator = make_orchestrator(self.store, self.vault, FakeProvider())
        outcome = orchestrator.trigger_scan('AWS', account_id)
        self.assertFalse(outcome['success'])
        self.assertIn("missing required field", outcome['error'])
        self.assertEqual(self.store.list_audits(account_id), [])
        self.assertIsNone(self.store.get_account(account_id)['running_audit_id'])

    def test_disabled_account(self):
        account_id = self.add_account()
        self.store.set_account_active(account_id, False)
        outcome = make_orchestrator(self.store, self.vault, FakeProvider()).trigger_scan('AWS', account_id)
        self.assertFalse(outcome['success'])
        self.assertIn("disabled", outcome['error'])

    def test_unknown_provider(self):
        account_id = self.add_account()
        orchestrator = AuditOrchestrator(store=self.store, vault=self.vault,
                                         provider_factory=get_provider)
        outcome = orchestrator.trigger_scan('ORACLE', account_id)
        self.assertFalse(outcome['success'])
        self.assertIn("Unknown provider", outcome['error'])


class TestAlertsOnCompletion(StoreTestCase):

    def test_alert_failure_does_not_fail_audit(self):
        account_id = self.add_account()
        self.store.set_notification_channel('user-1', 'slack', True, 'https://hooks.example/T1',
                                            alert_on_critical=True, alert_on_high=False)

        def broken(target, summary):
            raise ConnectionError("webhook unreachable")

        orchestrator = make_orchestrator(self.store, self.vault, FakeProvider(),
                                         senders={'slack': broken})
        outcome = orchestrator.trigger_scan('AWS', account_id)

        self.assertTrue(outcome['success'])
        self.assertEqual(self.store.get_audit(outcome['audit_id'])['status'], 'completed')
        alerts = self.store.list_alerts(outcome['audit_id'])
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0]['status'], 'failed')
        self.assertIn("webhook unreachable", alerts[0]['error_message'])

    def test_owner_channel_receives_summary(self):
        account_id = self.add_account()
        self.store.set_notification_channel('user-1', 'slack', True, 'https://hooks.example/T1')
        sent = []
        orchestrator = make_orchestrator(
            self.store, self.vault, FakeProvider(),
            senders={'slack': lambda target, summary: sent.append((target, summary))})
        outcome = orchestrator.trigger_scan('AWS', account_id)

        self.assertEqual(len(sent), 1)
        target, summary = sent[0]
        self.assertEqual(target, 'https://hooks.example/T1')
        self.assertEqual(summary.critical, 1)
        self.assertEqual(summary.audit_id, outcome['audit_id'])
        self.assertEqual(self.store.list_alerts(outcome['audit_id'])[0]['status'], 'sent')


if __name__ == '__main__':
    unittest.main()
