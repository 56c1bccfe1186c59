"""
Shared fixtures: an isolated store per test and a scriptable fake provider.
"""

import shutil
import tempfile
import unittest
from pathlib import Path

from cloudaudit.alerts import AlertDispatcher
from cloudaudit.credentials import CredentialVault
from cloudaudit.database import DatabaseManager
from cloudaudit.models import Finding
from cloudaudit.orchestrator import AuditOrchestrator
from cloudaudit.runner import PhaseRunner
from cloudaudit.store import AuditStore
from cloudchecks.base import CheckUnit, CloudProvider, Phase, require_fields


def finding(check_id, severity):
    return Finding(finding_id=check_id, severity=severity, title=f"{severity} issue from {check_id}")


def returns(*findings):
    return lambda handle, scope: list(findings)


def raises(exc):
    def check(handle, scope):
        raise exc
    return check


def make_phase(number, *units):
    """make_phase(1, ('A-1', func), ...) -> Phase with CheckUnits."""
    return Phase(number=number, name=f"Phase {number}",
                 checks=[CheckUnit(check_id=cid, title=cid, func=func) for cid, func in units])


class FakeProvider(CloudProvider):
    """Provider whose phases and authentication outcome are set by the test."""

    TAG = "AWS"
    DEFAULT_REGION = "us-east-1"

    def __init__(self, phases=None, auth_errors=()):
        super().__init__()
        self.phases = phases if phases is not None else [
            make_phase(1, ('T-1', returns(finding('T-1', 'CRITICAL')))),
        ]
        self.auth_errors = list(auth_errors)
        self.auth_calls = 0

    def parse_secret(self, secret):
        require_fields(secret, ('key',), "Fake credentials")
        return dict(secret)

    def authenticate(self, secret, scope):
        self.auth_calls += 1
        if self.auth_errors:
            raise self.auth_errors.pop(0)
        return {'scope': scope}

    def catalogue(self):
        return [Phase(p.number, p.name, list(p.checks)) for p in self.phases]


def make_orchestrator(store, vault, provider, senders=None):
    dispatcher = AlertDispatcher(store=store, smtp_settings={}, timeout=1,
                                 senders=senders or {})
    return AuditOrchestrator(
        store=store, vault=vault, dispatcher=dispatcher,
        provider_factory=lambda tag: provider,
        runner_factory=lambda p, audit_logger: PhaseRunner(
            max_workers=4, check_timeout=5, logger=audit_logger),
        sleep=lambda seconds: None,
    )


class StoreTestCase(unittest.TestCase):
    """Fresh SQLite database and key file per test."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db = DatabaseManager('test', path=Path(self.tmpdir) / 'audit.db')
        self.store = AuditStore(self.db)
        self.vault = CredentialVault(key_file=Path(self.tmpdir) / '.cred_key')

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def add_account(self, external_id='123456789012', provider='AWS', secret=None,
                    user_id='user-1', name='prod'):
        if secret is None:
            secret = {'key': 'k'}
        return self.store.create_account(provider, external_id, name,
                                         self.vault.encrypt(secret), user_id=user_id)
