#!/usr/bin/env python3
"""
Cloud Audit Engine - Audit Store
Persistence for accounts, audits, phases, findings, scheduled-scan logs,
notification settings and the alert delivery log.

Audits are written incrementally: the audit row and all of its phase rows
are created in one transaction, each phase's findings and final status are
written together as soon as the phase finishes, and the audit row is closed
exactly once.
"""

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .database import DatabaseManager, get_database
from .exceptions import AccountNotFoundError, AuditAlreadyRunningError
from .logger import get_logger
from .models import (
    VALID_FINDING_STATUSES, VALID_PROVIDERS, VALID_SCAN_LOG_STATUSES,
    VALID_TRIGGERS, PhaseResult, normalize_provider, to_iso, utcnow,
)

logger = get_logger('store')

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id                    TEXT PRIMARY KEY,
    provider              TEXT NOT NULL,
    external_id           TEXT NOT NULL,
    name                  TEXT NOT NULL,
    region                TEXT DEFAULT '',
    credentials           TEXT NOT NULL,
    user_id               TEXT DEFAULT '',
    is_active             INTEGER DEFAULT 1,
    schedule_enabled      INTEGER DEFAULT 0,
    schedule_frequency    TEXT,
    schedule_hour         INTEGER,
    schedule_day_of_week  INTEGER,
    schedule_day_of_month INTEGER,
    next_scheduled_scan   TEXT,
    last_scan_at          TEXT,
    health_score          REAL,
    running_audit_id      TEXT,
    created_at            TEXT NOT NULL,
    UNIQUE (provider, external_id)
);

CREATE TABLE IF NOT EXISTS audits (
    id             TEXT PRIMARY KEY,
    account_id     TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    provider       TEXT NOT NULL,
    status         TEXT NOT NULL,
    trigger_type   TEXT NOT NULL DEFAULT 'manual',
    critical       INTEGER DEFAULT 0,
    high           INTEGER DEFAULT 0,
    medium         INTEGER DEFAULT 0,
    low            INTEGER DEFAULT 0,
    total_findings INTEGER DEFAULT 0,
    risk_score     REAL,
    error_message  TEXT,
    started_at     TEXT NOT NULL,
    completed_at   TEXT,
    duration_ms    INTEGER
);

CREATE TABLE IF NOT EXISTS phases (
    id            TEXT PRIMARY KEY,
    audit_id      TEXT NOT NULL REFERENCES audits(id) ON DELETE CASCADE,
    phase_number  INTEGER NOT NULL,
    name          TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'pending',
    findings      INTEGER DEFAULT 0,
    critical      INTEGER DEFAULT 0,
    high          INTEGER DEFAULT 0,
    medium        INTEGER DEFAULT 0,
    low           INTEGER DEFAULT 0,
    checks_total  INTEGER DEFAULT 0,
    checks_failed INTEGER DEFAULT 0,
    errors        TEXT DEFAULT '[]',
    started_at    TEXT,
    completed_at  TEXT,
    UNIQUE (audit_id, phase_number)
);

CREATE TABLE IF NOT EXISTS findings (
    id             TEXT PRIMARY KEY,
    audit_id       TEXT NOT NULL REFERENCES audits(id) ON DELETE CASCADE,
    phase_id       TEXT NOT NULL REFERENCES phases(id) ON DELETE CASCADE,
    finding_id     TEXT NOT NULL,
    severity       TEXT NOT NULL,
    title          TEXT NOT NULL,
    description    TEXT DEFAULT '',
    recommendation TEXT DEFAULT '',
    resource       TEXT DEFAULT '',
    resource_type  TEXT DEFAULT '',
    region         TEXT DEFAULT '',
    status         TEXT NOT NULL DEFAULT 'open',
    created_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled_scan_logs (
    id            TEXT PRIMARY KEY,
    provider      TEXT NOT NULL,
    account_id    TEXT NOT NULL,
    user_id       TEXT DEFAULT '',
    status        TEXT NOT NULL,
    audit_id      TEXT,
    error_message TEXT,
    scheduled_for TEXT,
    executed_at   TEXT NOT NULL,
    duration_ms   INTEGER
);

CREATE TABLE IF NOT EXISTS notification_settings (
    user_id           TEXT NOT NULL,
    channel           TEXT NOT NULL,
    enabled           INTEGER DEFAULT 0,
    target            TEXT DEFAULT '',
    alert_on_critical INTEGER DEFAULT 1,
    alert_on_high     INTEGER DEFAULT 0,
    updated_at        TEXT,
    PRIMARY KEY (user_id, channel)
);

CREATE TABLE IF NOT EXISTS alert_log (
    id            TEXT PRIMARY KEY,
    audit_id      TEXT,
    user_id       TEXT DEFAULT '',
    channel       TEXT NOT NULL,
    target        TEXT DEFAULT '',
    status        TEXT NOT NULL,
    error_message TEXT,
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_accounts_due
    ON accounts(schedule_enabled, next_scheduled_scan);
CREATE INDEX IF NOT EXISTS idx_audits_account
    ON audits(account_id, started_at);
CREATE INDEX IF NOT EXISTS idx_phases_audit
    ON phases(audit_id, phase_number);
CREATE INDEX IF NOT EXISTS idx_findings_audit
    ON findings(audit_id);
CREATE INDEX IF NOT EXISTS idx_findings_phase
    ON findings(phase_id);
CREATE INDEX IF NOT EXISTS idx_scan_logs_account
    ON scheduled_scan_logs(account_id, executed_at);
"""

SEVERITY_ORDER_SQL = (
    "CASE f.severity WHEN 'CRITICAL' THEN 0 WHEN 'HIGH' THEN 1 "
    "WHEN 'MEDIUM' THEN 2 ELSE 3 END"
)

_ACCOUNT_BOOL_FIELDS = ("is_active", "schedule_enabled")


class AuditStore:
    """Entity persistence on top of DatabaseManager."""

    def __init__(self, db: Optional[DatabaseManager] = None):
        if db is None:
            db = get_database('cloudaudit', SCHEMA)
        else:
            db.initialize_schema(SCHEMA)
        self.db = db

    @staticmethod
    def _generate_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return to_iso(utcnow())

    # ---- accounts --------------------------------------------------------

    @staticmethod
    def _account_row(row: Optional[Dict]) -> Optional[Dict]:
        if row is None:
            return None
        for key in _ACCOUNT_BOOL_FIELDS:
            row[key] = bool(row.get(key))
        return row

    def create_account(self, provider: str, external_id: str, name: str,
                       credentials: str, region: str = "",
                       user_id: str = "") -> str:
        """
        Register a cloud account. *credentials* is the already-encrypted
        secret blob. Returns the internal account id.
        """
        provider = normalize_provider(provider)
        if provider not in VALID_PROVIDERS:
            raise ValueError(f"Invalid provider '{provider}'. Must be one of {VALID_PROVIDERS}")
        if not external_id:
            raise ValueError("external_id is required")

        account_id = self._generate_id()
        self.db.execute_write("""
            INSERT INTO accounts
                (id, provider, external_id, name, region, credentials,
                 user_id, is_active, schedule_enabled, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, 0, ?)
        """, (account_id, provider, str(external_id), name or str(external_id),
              region or "", credentials, user_id or "", self._now_iso()))
        logger.info("Created %s account %s (%s)", provider, account_id, external_id)
        return account_id

    def get_account(self, account_id: str) -> Optional[Dict]:
        return self._account_row(self.db.execute_one(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ))

    def require_account(self, account_id: str, provider: Optional[str] = None) -> Dict:
        """Fetch an account or raise AccountNotFoundError."""
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if provider and account['provider'] != normalize_provider(provider):
            raise AccountNotFoundError(
                f"Account {account_id} is a {account['provider']} account, not {provider}"
            )
        return account

    def list_accounts(self, provider: Optional[str] = None) -> List[Dict]:
        if provider:
            rows = self.db.execute(
                "SELECT * FROM accounts WHERE provider = ? ORDER BY created_at",
                (normalize_provider(provider),)
            )
        else:
            rows = self.db.execute("SELECT * FROM accounts ORDER BY provider, created_at")
        return [self._account_row(r) for r in rows]

    def set_account_active(self, account_id: str, active: bool) -> bool:
        return self.db.execute_write(
            "UPDATE accounts SET is_active = ? WHERE id = ?",
            (1 if active else 0, account_id)
        ) > 0

    def update_schedule(self, account_id: str, enabled: bool,
                        frequency: Optional[str] = None,
                        hour: Optional[int] = None,
                        day_of_week: Optional[int] = None,
                        day_of_month: Optional[int] = None,
                        next_scan: Optional[datetime] = None) -> bool:
        """Write all schedule fields at once; disabling clears every field."""
        if not enabled:
            frequency = hour = day_of_week = day_of_month = next_scan = None
        return self.db.execute_write("""
            UPDATE accounts
            SET schedule_enabled = ?, schedule_frequency = ?, schedule_hour = ?,
                schedule_day_of_week = ?, schedule_day_of_month = ?,
                next_scheduled_scan = ?
            WHERE id = ?
        """, (1 if enabled else 0, frequency, hour, day_of_week, day_of_month,
              to_iso(next_scan), account_id)) > 0

    def advance_next_scheduled_scan(self, account_id: str, expected: Optional[str],
                                    next_scan: datetime) -> bool:
        """
        Compare-and-set next_scheduled_scan.

        Returns False if another tick already moved it, so each due slot is
        dispatched exactly once.
        """
        if expected is None:
            return self.db.execute_write("""
                UPDATE accounts SET next_scheduled_scan = ?
                WHERE id = ? AND schedule_enabled = 1 AND next_scheduled_scan IS NULL
            """, (to_iso(next_scan), account_id)) > 0
        return self.db.execute_write("""
            UPDATE accounts SET next_scheduled_scan = ?
            WHERE id = ? AND schedule_enabled = 1 AND next_scheduled_scan = ?
        """, (to_iso(next_scan), account_id, expected)) > 0

    def get_due_accounts(self, now: datetime) -> List[Dict]:
        """Active accounts of every provider whose next scheduled scan is due."""
        rows = self.db.execute("""
            SELECT * FROM accounts
            WHERE schedule_enabled = 1 AND is_active = 1
              AND next_scheduled_scan IS NOT NULL
              AND next_scheduled_scan <= ?
            ORDER BY next_scheduled_scan ASC
        """, (to_iso(now),))
        return [self._account_row(r) for r in rows]

    def get_unscheduled_enabled_accounts(self) -> List[Dict]:
        """Enabled schedules with no next run computed yet."""
        rows = self.db.execute("""
            SELECT * FROM accounts
            WHERE schedule_enabled = 1 AND next_scheduled_scan IS NULL
        """)
        return [self._account_row(r) for r in rows]

    def update_account_after_scan(self, account_id: str, last_scan_at: datetime,
                                  health_score: Optional[float]):
        if health_score is None:
            self.db.execute_write(
                "UPDATE accounts SET last_scan_at = ? WHERE id = ?",
                (to_iso(last_scan_at), account_id)
            )
        else:
            self.db.execute_write(
                "UPDATE accounts SET last_scan_at = ?, health_score = ? WHERE id = ?",
                (to_iso(last_scan_at), health_score, account_id)
            )

    # ---- audit lifecycle -------------------------------------------------

    def begin_audit(self, account: Dict, phases: Iterable[Tuple[int, str]],
                    trigger: str = "manual",
                    started_at: Optional[datetime] = None) -> Tuple[str, Dict[int, str]]:
        """
        Claim the account and create the audit with its phase rows.

        The claim, the audit row and every phase row are written in one
        transaction. Raises AuditAlreadyRunningError if another audit holds
        the account's claim. Returns (audit_id, {phase_number: phase_id}).
        """
        if trigger not in VALID_TRIGGERS:
            raise ValueError(f"Invalid trigger '{trigger}'. Must be one of {VALID_TRIGGERS}")

        audit_id = self._generate_id()
        started = to_iso(started_at or utcnow())
        phase_ids: Dict[int, str] = {}

        with self.db.transaction() as tx:
            claimed = tx.execute("""
                UPDATE accounts SET running_audit_id = ?
                WHERE id = ? AND running_audit_id IS NULL
            """, (audit_id, account['id']))
            if not claimed:
                row = tx.query_one(
                    "SELECT running_audit_id FROM accounts WHERE id = ?", (account['id'],)
                )
                if row is None:
                    raise AccountNotFoundError(f"Account {account['id']} not found")
                raise AuditAlreadyRunningError(account['id'], row['running_audit_id'])

            tx.execute("""
                INSERT INTO audits
                    (id, account_id, provider, status, trigger_type, started_at)
                VALUES (?, ?, ?, 'running', ?, ?)
            """, (audit_id, account['id'], account['provider'], trigger, started))

            for number, name in phases:
                phase_id = self._generate_id()
                tx.execute("""
                    INSERT INTO phases (id, audit_id, phase_number, name, status)
                    VALUES (?, ?, ?, ?, 'pending')
                """, (phase_id, audit_id, number, name))
                phase_ids[number] = phase_id

        logger.info("Audit %s started for account %s (%d phases, trigger=%s)",
                    audit_id, account['id'], len(phase_ids), trigger)
        return audit_id, phase_ids

    def release_claim(self, account_id: str, audit_id: str) -> bool:
        """Clear the account's run claim if it is still held by *audit_id*."""
        return self.db.execute_write("""
            UPDATE accounts SET running_audit_id = NULL
            WHERE id = ? AND running_audit_id = ?
        """, (account_id, audit_id)) > 0

    def mark_phase_running(self, phase_id: str, started_at: Optional[datetime] = None):
        self.db.execute_write(
            "UPDATE phases SET status = 'running', started_at = ? WHERE id = ?",
            (to_iso(started_at or utcnow()), phase_id)
        )

    def complete_phase(self, audit_id: str, phase_id: str, result: PhaseResult):
        """Write a finished phase's findings and final status together."""
        counts = result.severity_counts()
        created = self._now_iso()
        with self.db.transaction() as tx:
            for finding in result.findings:
                tx.execute("""
                    INSERT INTO findings
                        (id, audit_id, phase_id, finding_id, severity, title,
                         description, recommendation, resource, resource_type,
                         region, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'open', ?)
                """, (self._generate_id(), audit_id, phase_id, finding.finding_id,
                      finding.severity, finding.title, finding.description,
                      finding.recommendation, finding.resource,
                      finding.resource_type, finding.region, created))
            tx.execute("""
                UPDATE phases
                SET status = ?, findings = ?, critical = ?, high = ?, medium = ?,
                    low = ?, checks_total = ?, checks_failed = ?, errors = ?,
                    started_at = COALESCE(started_at, ?), completed_at = ?
                WHERE id = ?
            """, (result.status, len(result.findings), counts['critical'],
                  counts['high'], counts['medium'], counts['low'],
                  result.checks_total, result.checks_failed,
                  json.dumps(result.errors), to_iso(result.started_at),
                  to_iso(result.completed_at or utcnow()), phase_id))

    def mark_phases_skipped(self, audit_id: str) -> int:
        """Mark every phase that has not started as skipped."""
        return self.db.execute_write("""
            UPDATE phases SET status = 'skipped', completed_at = ?
            WHERE audit_id = ? AND status = 'pending'
        """, (self._now_iso(), audit_id))

    def abandon_phases(self, audit_id: str) -> int:
        """Close the phases of an aborted audit: running -> failed, pending -> skipped."""
        stamp = self._now_iso()
        with self.db.transaction() as tx:
            failed = tx.execute("""
                UPDATE phases SET status = 'failed', completed_at = ?
                WHERE audit_id = ? AND status = 'running'
            """, (stamp, audit_id))
            skipped = tx.execute("""
                UPDATE phases SET status = 'skipped', completed_at = ?
                WHERE audit_id = ? AND status = 'pending'
            """, (stamp, audit_id))
        return failed + skipped

    def finish_audit(self, audit_id: str, status: str,
                     counts: Optional[Dict[str, int]] = None,
                     risk_score: Optional[float] = None,
                     error_message: Optional[str] = None,
                     completed_at: Optional[datetime] = None,
                     duration_ms: Optional[int] = None) -> bool:
        """
        Close an audit. completed_at is only ever written once: returns False
        (and changes nothing) if the audit was already closed.
        """
        if status not in ("completed", "failed"):
            raise ValueError(f"Cannot finish an audit with status '{status}'")
        counts = counts or {}
        total = sum(counts.get(k, 0) for k in ('critical', 'high', 'medium', 'low'))
        return self.db.execute_write("""
            UPDATE audits
            SET status = ?, critical = ?, high = ?, medium = ?, low = ?,
                total_findings = ?, risk_score = ?, error_message = ?,
                completed_at = ?, duration_ms = ?
            WHERE id = ? AND completed_at IS NULL
        """, (status, counts.get('critical', 0), counts.get('high', 0),
              counts.get('medium', 0), counts.get('low', 0), total,
              risk_score if status == "completed" else None, error_message,
              to_iso(completed_at or utcnow()), duration_ms, audit_id)) > 0

    def recover_stale_runs(self, older_than_hours: float,
                           now: Optional[datetime] = None) -> int:
        """
        Fail audits left 'running' by a process that died.

        Only audits started more than *older_than_hours* ago are touched, so
        live audits of another scheduler sharing the database survive.
        Returns the number of audits recovered.
        """
        now = now or utcnow()
        cutoff = to_iso(now - timedelta(hours=older_than_hours))
        with self.db.transaction() as tx:
            stale = tx.query("""
                SELECT id, account_id FROM audits
                WHERE status IN ('pending', 'running') AND started_at < ?
            """, (cutoff,))
            for row in stale:
                tx.execute("""
                    UPDATE audits
                    SET status = 'failed', completed_at = COALESCE(completed_at, ?),
                        error_message = 'Interrupted: the audit process stopped before finishing'
                    WHERE id = ?
                """, (to_iso(now), row['id']))
                tx.execute("""
                    UPDATE phases SET status = 'failed', completed_at = ?
                    WHERE audit_id = ? AND status = 'running'
                """, (to_iso(now), row['id']))
                tx.execute("""
                    UPDATE phases SET status = 'skipped', completed_at = ?
                    WHERE audit_id = ? AND status = 'pending'
                """, (to_iso(now), row['id']))
                tx.execute("""
                    UPDATE accounts SET running_audit_id = NULL
                    WHERE id = ? AND running_audit_id = ?
                """, (row['account_id'], row['id']))
        if stale:
            logger.warning("Recovered %d stale audit(s)", len(stale))
        return len(stale)

    # ---- audit reads -----------------------------------------------------

    def get_audit(self, audit_id: str) -> Optional[Dict]:
        return self.db.execute_one("SELECT * FROM audits WHERE id = ?", (audit_id,))

    def list_audits(self, account_id: str, limit: int = 20) -> List[Dict]:
        return self.db.execute("""
            SELECT * FROM audits WHERE account_id = ?
            ORDER BY started_at DESC LIMIT ?
        """, (account_id, limit))

    def get_phases(self, audit_id: str) -> List[Dict]:
        rows = self.db.execute(
            "SELECT * FROM phases WHERE audit_id = ? ORDER BY phase_number ASC",
            (audit_id,)
        )
        for row in rows:
            try:
                row['errors'] = json.loads(row.get('errors') or '[]')
            except (json.JSONDecodeError, TypeError):
                row['errors'] = []
        return rows

    def get_findings(self, audit_id: str, severity: Optional[str] = None,
                     status: Optional[str] = None) -> List[Dict]:
        """Findings of an audit in phase order, most severe first within a phase."""
        sql = """
            SELECT f.*, p.phase_number FROM findings f
            JOIN phases p ON p.id = f.phase_id
            WHERE f.audit_id = ?
        """
        params: List[Any] = [audit_id]
        if severity:
            sql += " AND f.severity = ?"
            params.append(severity.upper())
        if status:
            sql += " AND f.status = ?"
            params.append(status)
        sql += f" ORDER BY p.phase_number ASC, {SEVERITY_ORDER_SQL}, f.finding_id"
        return self.db.execute(sql, params)

    def update_finding_status(self, finding_row_id: str, status: str) -> bool:
        """Change a finding's triage status, the only mutable finding field."""
        if status not in VALID_FINDING_STATUSES:
            raise ValueError(
                f"Invalid finding status '{status}'. Must be one of {VALID_FINDING_STATUSES}"
            )
        return self.db.execute_write(
            "UPDATE findings SET status = ? WHERE id = ?", (status, finding_row_id)
        ) > 0

    def delete_audit(self, audit_id: str) -> bool:
        """Delete a finished audit together with its phases and findings."""
        audit = self.get_audit(audit_id)
        if audit is None:
            return False
        if audit['status'] in ('pending', 'running'):
            raise ValueError(f"Audit {audit_id} is still {audit['status']}")
        with self.db.transaction() as tx:
            tx.execute("DELETE FROM findings WHERE audit_id = ?", (audit_id,))
            tx.execute("DELETE FROM phases WHERE audit_id = ?", (audit_id,))
            tx.execute("DELETE FROM audits WHERE id = ?", (audit_id,))
        logger.info("Deleted audit %s", audit_id)
        return True

    # ---- scheduled scan log ----------------------------------------------

    def record_scan_log(self, provider: str, account_id: str, user_id: str,
                        status: str, audit_id: Optional[str],
                        error_message: Optional[str],
                        scheduled_for: Optional[datetime],
                        executed_at: datetime, duration_ms: int) -> str:
        if status not in VALID_SCAN_LOG_STATUSES:
            raise ValueError(f"Invalid scan log status '{status}'")
        log_id = self._generate_id()
        self.db.execute_write("""
            INSERT INTO scheduled_scan_logs
                (id, provider, account_id, user_id, status, audit_id,
                 error_message, scheduled_for, executed_at, duration_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (log_id, provider, account_id, user_id or "", status, audit_id,
              error_message, to_iso(scheduled_for), to_iso(executed_at), duration_ms))
        return log_id

    def list_scan_logs(self, account_id: Optional[str] = None,
                       limit: int = 50) -> List[Dict]:
        if account_id:
            return self.db.execute("""
                SELECT * FROM scheduled_scan_logs WHERE account_id = ?
                ORDER BY executed_at DESC LIMIT ?
            """, (account_id, limit))
        return self.db.execute(
            "SELECT * FROM scheduled_scan_logs ORDER BY executed_at DESC LIMIT ?",
            (limit,)
        )

    # ---- notification settings and alert log ----------------------------

    def set_notification_channel(self, user_id: str, channel: str, enabled: bool,
                                 target: str = "", alert_on_critical: bool = True,
                                 alert_on_high: bool = False):
        """Insert or replace one channel's settings for a user."""
        with self.db.transaction() as tx:
            tx.execute(
                "DELETE FROM notification_settings WHERE user_id = ? AND channel = ?",
                (user_id, channel)
            )
            tx.execute("""
                INSERT INTO notification_settings
                    (user_id, channel, enabled, target, alert_on_critical,
                     alert_on_high, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (user_id, channel, 1 if enabled else 0, target or "",
                  1 if alert_on_critical else 0, 1 if alert_on_high else 0,
                  self._now_iso()))

    def get_notification_settings(self, user_id: str) -> Dict[str, Dict]:
        """Return {channel: settings} for a user."""
        rows = self.db.execute(
            "SELECT * FROM notification_settings WHERE user_id = ?", (user_id,)
        )
        settings = {}
        for row in rows:
            settings[row['channel']] = {
                'enabled': bool(row['enabled']),
                'target': row['target'] or "",
                'alert_on_critical': bool(row['alert_on_critical']),
                'alert_on_high': bool(row['alert_on_high']),
            }
        return settings

    def record_alert(self, audit_id: Optional[str], user_id: str, channel: str,
                     target: str, sent: bool, error_message: Optional[str] = None) -> str:
        alert_id = self._generate_id()
        self.db.execute_write("""
            INSERT INTO alert_log
                (id, audit_id, user_id, channel, target, status, error_message, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (alert_id, audit_id, user_id or "", channel, target or "",
              "sent" if sent else "failed", error_message, self._now_iso()))
        return alert_id

    def list_alerts(self, audit_id: str) -> List[Dict]:
        return self.db.execute(
            "SELECT * FROM alert_log WHERE audit_id = ? ORDER BY created_at, channel",
            (audit_id,)
        )
