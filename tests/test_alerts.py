#!/usr/bin/env python3
"""
Alert dispatcher: threshold decisions, channel independence and payloads.

Usage:
    python -m pytest tests/test_alerts.py -v
"""

import json
import unittest
from unittest.mock import patch

from cloudaudit.alerts import (
    AlertDispatcher, email_body, email_subject, send_email, send_slack,
    should_alert, slack_payload, spike_payload,
)
from cloudaudit.models import AuditSummary

from support import StoreTestCase


def summary(critical=0, high=0, medium=0, low=0):
    return AuditSummary(
        account_name='prod', provider='AWS',
        total_findings=critical + high + medium + low,
        critical=critical, high=high, medium=medium, low=low,
        risk_score=max(0.0, 100.0 - critical * 10 - high * 5 - medium * 2 - low * 0.5),
        audit_id='audit-1',
    )


def channel(enabled=True, target='https://hooks.example/T1', critical=True, high=False):
    return {'enabled': enabled, 'target': target,
            'alert_on_critical': critical, 'alert_on_high': high}


class TestShouldAlert(unittest.TestCase):

    def test_high_only_without_opt_in_stays_quiet(self):
        self.assertFalse(should_alert(summary(critical=0, high=5), channel(high=False)))

    def test_high_with_opt_in_fires(self):
        self.assertTrue(should_alert(summary(high=1), channel(critical=False, high=True)))

    def test_critical_fires_when_opted_in(self):
        self.assertTrue(should_alert(summary(critical=2), channel()))
        self.assertFalse(should_alert(summary(critical=2), channel(critical=False)))

    def test_clean_audit_never_fires(self):
        self.assertFalse(should_alert(summary(medium=9, low=9), channel(critical=True, high=True)))


class TestDispatcher(unittest.TestCase):

    def setUp(self):
        self.calls = []

    def recorder(self, name):
        def send(target, s):
            self.calls.append((name, target, s))
            return True
        return send

    def dispatcher(self, **overrides):
        senders = {name: self.recorder(name) for name in ('email', 'slack', 'spike')}
        senders.update(overrides)
        return AlertDispatcher(smtp_settings={}, timeout=1, senders=senders)

    def test_slack_critical_only_scenario(self):
        settings = {'slack': channel(critical=True, high=False)}
        results = self.dispatcher().dispatch(summary(critical=2, high=3), settings)
        self.assertEqual(results, {'slack': True})
        self.assertEqual([c[0] for c in self.calls], ['slack'])
        self.assertEqual(self.calls[0][1], 'https://hooks.example/T1')

        self.calls.clear()
        results = self.dispatcher().dispatch(summary(critical=0, high=3), settings)
        self.assertEqual(results, {})
        self.assertEqual(self.calls, [])

    def test_disabled_or_untargeted_channels_are_skipped(self):
        settings = {
            'email': channel(enabled=False, target='ops@example.com'),
            'slack': channel(target=''),
            'spike': channel(target='https://hooks.spike.example/abc'),
        }
        results = self.dispatcher().dispatch(summary(critical=1), settings)
        self.assertEqual(results, {'spike': True})

    def test_channels_are_independent(self):
        def broken(target, s):
            raise OSError("SMTP connection refused")

        settings = {'email': channel(target='ops@example.com'), 'slack': channel()}
        results = self.dispatcher(email=broken).dispatch(summary(critical=1), settings)
        self.assertEqual(results, {'email': False, 'slack': True})

    def test_false_return_counts_as_failure(self):
        settings = {'slack': channel()}
        results = self.dispatcher(slack=lambda t, s: False).dispatch(summary(critical=1), settings)
        self.assertEqual(results, {'slack': False})


class TestAlertLog(StoreTestCase):

    def test_every_attempt_is_recorded(self):
        def broken(target, s):
            raise OSError("refused")

        dispatcher = AlertDispatcher(store=self.store, smtp_settings={}, timeout=1,
                                     senders={'email': broken, 'slack': lambda t, s: True})
        settings = {'email': channel(target='ops@example.com'), 'slack': channel()}
        dispatcher.dispatch(summary(critical=1), settings, audit_id='audit-1', user_id='user-1')

        rows = {r['channel']: r for r in self.store.list_alerts('audit-1')}
        self.assertEqual(rows['email']['status'], 'failed')
        self.assertEqual(rows['email']['error_message'], 'refused')
        self.assertEqual(rows['slack']['status'], 'sent')
        self.assertIsNone(rows['slack']['error_message'])


class TestPayloads(unittest.TestCase):

    def test_email_subject(self):
        self.assertEqual(email_subject(summary(critical=2, high=1)),
                         "[AWS] Security Audit Complete - 2 Critical, 1 High findings")

    def test_email_body_links_dashboard(self):
        body = email_body(summary(critical=1), dashboard_url='https://audit.example.com/')
        self.assertIn("Critical: 1", body)
        self.assertIn("https://audit.example.com/audits/audit-1", body)

    def test_slack_blocks(self):
        payload = slack_payload(summary(critical=1, high=2))
        self.assertEqual(payload['blocks'][0]['text']['text'], "[AWS] Security Audit Complete")
        fields = [f['text'] for f in payload['blocks'][2]['fields']]
        self.assertEqual(fields, ["*Critical:*\n1", "*High:*\n2", "*Medium:*\n0", "*Low:*\n0"])
        self.assertEqual(payload['attachments'][0]['color'], '#dc2626')
        self.assertEqual(slack_payload(summary(high=1))['attachments'][0]['color'], '#ea580c')

    def test_spike_priority(self):
        self.assertEqual(spike_payload(summary(critical=1))['priority'], 'p1')
        self.assertEqual(spike_payload(summary(high=1))['priority'], 'p2')
        self.assertEqual(spike_payload(summary(high=1))['metadata']['audit_id'], 'audit-1')


class TestSenders(unittest.TestCase):

    @patch('cloudaudit.alerts.urllib.request.urlopen')
    def test_send_slack_posts_json(self, mock_urlopen):
        mock_urlopen.return_value.__enter__.return_value.status = 200
        self.assertTrue(send_slack('https://hooks.example/T1', summary(critical=1), timeout=3))

        request = mock_urlopen.call_args[0][0]
        self.assertEqual(request.full_url, 'https://hooks.example/T1')
        self.assertEqual(request.get_method(), 'POST')
        self.assertEqual(request.get_header('Content-type'), 'application/json')
        body = json.loads(request.data.decode('utf-8'))
        self.assertEqual(body['blocks'][0]['text']['text'], "[AWS] Security Audit Complete")
        self.assertEqual(mock_urlopen.call_args[1]['timeout'], 3)

    @patch('cloudaudit.alerts.urllib.request.urlopen')
    def test_send_slack_rejects_bad_status(self, mock_urlopen):
        mock_urlopen.return_value.__enter__.return_value.status = 500
        with self.assertRaises(RuntimeError):
            send_slack('https://hooks.example/T1', summary(critical=1))

    def test_send_slack_requires_url(self):
        with self.assertRaises(ValueError):
            send_slack('', summary(critical=1))

    @patch('cloudaudit.alerts.smtplib.SMTP')
    def test_send_email(self, mock_smtp):
        smtp = {'smtp_host': 'mail.example.com', 'smtp_port': 587, 'smtp_user': 'bot',
                'smtp_pass': 'secret', 'from_addr': 'audit@example.com', 'use_tls': True}
        self.assertTrue(send_email(smtp, 'a@example.com, b@example.com', summary(critical=1)))

        mock_smtp.assert_called_once_with('mail.example.com', 587, timeout=15)
        server = mock_smtp.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('bot', 'secret')
        from_addr, recipients, message = server.sendmail.call_args[0]
        self.assertEqual(from_addr, 'audit@example.com')
        self.assertEqual(recipients, ['a@example.com', 'b@example.com'])
        self.assertIn("Security Audit Complete", message)
        server.quit.assert_called_once()

    def test_send_email_requires_recipient(self):
        with self.assertRaises(ValueError):
            send_email({}, ' , ', summary(critical=1))


if __name__ == '__main__':
    unittest.main()
