#!/usr/bin/env python3
"""
Audit store: run claims, one-shot completion, schedules and cascades.

Usage:
    python -m pytest tests/test_store.py -v
"""

import unittest
from datetime import datetime

from cloudaudit.exceptions import AuditAlreadyRunningError, PersistenceError
from cloudaudit.models import PhaseResult

from support import StoreTestCase, finding


class TestAccounts(StoreTestCase):

    def test_create_and_fetch(self):
        account_id = self.add_account()
        account = self.store.get_account(account_id)
        self.assertEqual(account['provider'], 'AWS')
        self.assertEqual(account['external_id'], '123456789012')
        self.assertTrue(account['is_active'])
        self.assertFalse(account['schedule_enabled'])
        self.assertEqual(self.vault.decrypt(account['credentials']), {'key': 'k'})

    def test_provider_is_normalised_and_validated(self):
        account_id = self.add_account(provider='gcp', external_id='my-project-1')
        self.assertEqual(self.store.get_account(account_id)['provider'], 'GCP')
        with self.assertRaises(ValueError):
            self.add_account(provider='oracle')

    def test_duplicate_external_id_rejected(self):
        self.add_account()
        with self.assertRaises(PersistenceError):
            self.add_account()

    def test_compare_and_set_next_scan(self):
        account_id = self.add_account()
        self.store.update_schedule(account_id, True, 'daily', 2, next_scan=datetime(2024, 1, 2, 2))
        self.assertFalse(self.store.advance_next_scheduled_scan(
            account_id, '2024-01-01T02:00:00', datetime(2024, 1, 3, 2)))
        self.assertTrue(self.store.advance_next_scheduled_scan(
            account_id, '2024-01-02T02:00:00', datetime(2024, 1, 3, 2)))
        self.assertEqual(self.store.get_account(account_id)['next_scheduled_scan'],
                         '2024-01-03T02:00:00')


class TestAuditLifecycle(StoreTestCase):

    def setUp(self):
        super().setUp()
        self.account_id = self.add_account()
        self.account = self.store.get_account(self.account_id)

    def test_begin_creates_running_audit_and_pending_phases(self):
        audit_id, phase_ids = self.store.begin_audit(self.account, [(1, 'IAM'), (2, 'S3')])
        self.assertEqual(set(phase_ids), {1, 2})
        self.assertEqual(self.store.get_audit(audit_id)['status'], 'running')
        self.assertEqual([p['status'] for p in self.store.get_phases(audit_id)],
                         ['pending', 'pending'])
        self.assertEqual(self.store.get_account(self.account_id)['running_audit_id'], audit_id)

    def test_claim_blocks_second_audit_until_released(self):
        audit_id, _ = self.store.begin_audit(self.account, [(1, 'IAM')])
        with self.assertRaises(AuditAlreadyRunningError) as ctx:
            self.store.begin_audit(self.account, [(1, 'IAM')])
        self.assertEqual(ctx.exception.audit_id, audit_id)
        self.assertEqual(len(self.store.list_audits(self.account_id)), 1)

        self.assertTrue(self.store.release_claim(self.account_id, audit_id))
        self.assertFalse(self.store.release_claim(self.account_id, audit_id))
        self.store.begin_audit(self.account, [(1, 'IAM')])

    def test_finish_is_written_once(self):
        audit_id, _ = self.store.begin_audit(self.account, [(1, 'IAM')])
        counts = {'critical': 1, 'high': 0, 'medium': 0, 'low': 0}
        self.assertTrue(self.store.finish_audit(audit_id, 'completed', counts=counts, risk_score=90.0))
        completed_at = self.store.get_audit(audit_id)['completed_at']
        self.assertFalse(self.store.finish_audit(audit_id, 'failed', error_message="late"))

        audit = self.store.get_audit(audit_id)
        self.assertEqual(audit['status'], 'completed')
        self.assertEqual(audit['completed_at'], completed_at)
        self.assertEqual(audit['total_findings'], 1)
        with self.assertRaises(ValueError):
            self.store.finish_audit(audit_id, 'running')

    def test_failed_audit_has_no_risk_score(self):
        audit_id, _ = self.store.begin_audit(self.account, [(1, 'IAM')])
        self.store.finish_audit(audit_id, 'failed', risk_score=50.0, error_message="boom")
        self.assertIsNone(self.store.get_audit(audit_id)['risk_score'])

    def test_complete_phase_writes_findings_and_counts(self):
        audit_id, phase_ids = self.store.begin_audit(self.account, [(1, 'IAM'), (2, 'S3')])
        self.store.complete_phase(audit_id, phase_ids[2], PhaseResult(
            phase_number=2, name='S3', status='completed',
            findings=[finding('S3-L01', 'LOW'), finding('S3-C01', 'CRITICAL')],
            checks_total=3, checks_failed=1,
            errors=[{'check_id': 'S3-H01', 'error': 'denied'}],
            started_at=datetime(2024, 1, 1), completed_at=datetime(2024, 1, 1, 0, 1),
        ))
        self.store.complete_phase(audit_id, phase_ids[1], PhaseResult(
            phase_number=1, name='IAM', status='completed',
            findings=[finding('IAM-M01', 'MEDIUM')], checks_total=1,
        ))

        phase = self.store.get_phases(audit_id)[1]
        self.assertEqual((phase['status'], phase['findings'], phase['critical'], phase['low']),
                         ('completed', 2, 1, 1))
        self.assertEqual(phase['errors'], [{'check_id': 'S3-H01', 'error': 'denied'}])

        ordered = [f['finding_id'] for f in self.store.get_findings(audit_id)]
        self.assertEqual(ordered, ['IAM-M01', 'S3-C01', 'S3-L01'])
        critical = self.store.get_findings(audit_id, severity='critical')
        self.assertEqual([f['finding_id'] for f in critical], ['S3-C01'])

    def test_finding_status_update(self):
        audit_id, phase_ids = self.store.begin_audit(self.account, [(1, 'IAM')])
        self.store.complete_phase(audit_id, phase_ids[1], PhaseResult(
            phase_number=1, name='IAM', status='completed', findings=[finding('IAM-C01', 'CRITICAL')],
        ))
        row_id = self.store.get_findings(audit_id)[0]['id']
        self.assertTrue(self.store.update_finding_status(row_id, 'resolved'))
        self.assertEqual(self.store.get_findings(audit_id, status='resolved')[0]['id'], row_id)
        with self.assertRaises(ValueError):
            self.store.update_finding_status(row_id, 'fixed')
        self.assertFalse(self.store.update_finding_status('missing', 'ignored'))

    def test_delete_cascades_to_phases_and_findings(self):
        audit_id, phase_ids = self.store.begin_audit(self.account, [(1, 'IAM')])
        self.store.complete_phase(audit_id, phase_ids[1], PhaseResult(
            phase_number=1, name='IAM', status='completed', findings=[finding('IAM-C01', 'CRITICAL')],
        ))
        with self.assertRaises(ValueError):
            self.store.delete_audit(audit_id)

        self.store.finish_audit(audit_id, 'completed', risk_score=90.0)
        self.assertTrue(self.store.delete_audit(audit_id))
        self.assertIsNone(self.store.get_audit(audit_id))
        self.assertEqual(self.store.get_phases(audit_id), [])
        self.assertEqual(self.store.get_findings(audit_id), [])
        self.assertFalse(self.store.delete_audit(audit_id))

    def test_abandon_phases(self):
        audit_id, phase_ids = self.store.begin_audit(self.account, [(1, 'IAM'), (2, 'S3')])
        self.store.mark_phase_running(phase_ids[1])
        self.assertEqual(self.store.abandon_phases(audit_id), 2)
        self.assertEqual([p['status'] for p in self.store.get_phases(audit_id)],
                         ['failed', 'skipped'])


class TestNotificationSettings(StoreTestCase):

    def test_set_replaces_channel(self):
        self.store.set_notification_channel('user-1', 'slack', True, 'https://hooks.example/1')
        self.store.set_notification_channel('user-1', 'slack', True, 'https://hooks.example/2',
                                            alert_on_critical=False, alert_on_high=True)
        self.store.set_notification_channel('user-1', 'email', False, 'ops@example.com')
        settings = self.store.get_notification_settings('user-1')
        self.assertEqual(settings['slack'], {
            'enabled': True, 'target': 'https://hooks.example/2',
            'alert_on_critical': False, 'alert_on_high': True,
        })
        self.assertFalse(settings['email']['enabled'])
        self.assertEqual(self.store.get_notification_settings('someone-else'), {})


if __name__ == '__main__':
    unittest.main()
