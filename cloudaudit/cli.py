#!/usr/bin/env python3
"""
Cloud Audit Engine - Command Line Interface

Usage:
    cloudaudit accounts add --provider AWS --external-id 123456789012 \\
        --name prod --credentials creds.json
    cloudaudit schedule set <account_id> --frequency daily --hour 2
    cloudaudit scan <account_id>
    cloudaudit scheduler run
"""

import argparse
import json
import signal
import sys
import time
from typing import Any, Dict, List, Optional

from cloudchecks import get_provider

from . import __version__
from .alerts import VALID_CHANNELS
from .config import config
from .credentials import get_vault, load_secret_file, mask_secret
from .exceptions import CloudAuditError, ConfigurationError, PersistenceError
from .logger import get_logger
from .models import VALID_FINDING_STATUSES, VALID_FREQUENCIES, VALID_PROVIDERS
from .orchestrator import get_orchestrator
from .scheduler import configure_schedule, get_scheduler, shutdown_scheduler
from .store import AuditStore

logger = get_logger('cli')

_shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    _shutdown_requested = True


def _print_json(data: Any):
    print(json.dumps(data, indent=2, default=str))


def _table(rows: List[Dict], columns: List[str]):
    if not rows:
        print("  (none)")
        return
    widths = {c: max(len(c), *(len(str(r.get(c) if r.get(c) is not None else "-")) for r in rows))
              for c in columns}
    print("  " + "  ".join(c.upper().ljust(widths[c]) for c in columns))
    for row in rows:
        print("  " + "  ".join(
            str(row.get(c) if row.get(c) is not None else "-").ljust(widths[c]) for c in columns
        ))


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------

def _validate(provider, secret, scope=None) -> Dict[str, Any]:
    """Validate credentials, retrying once after a transient failure."""
    result = provider.validate(secret, scope)
    if result.get('transient'):
        logger.warning("Transient validation failure (%s), retrying once", result['error'])
        time.sleep(float(config.get('scanning.auth_retry_delay_seconds', 2)))
        result = provider.validate(secret, scope)
    return result


def cmd_accounts_add(args) -> int:
    provider = get_provider(args.provider)
    secret = provider.parse_secret(load_secret_file(args.credentials))
    external_id = args.external_id or provider.default_external_id(secret)
    if not external_id:
        raise ConfigurationError("--external-id is required for this credential type")

    if args.validate:
        result = _validate(provider, secret)
        if not result['valid']:
            print(f"[!] Credential validation failed: {result['error']}")
            return 1
        print("[+] Credentials validated")

    store = AuditStore()
    account_id = store.create_account(
        provider.TAG, external_id, args.name, get_vault().encrypt(secret),
        region=args.region or "", user_id=args.user or "",
    )
    print(f"[+] Added {provider.TAG} account {external_id} as {account_id}")
    return 0


def cmd_accounts_list(args) -> int:
    accounts = AuditStore().list_accounts(args.provider)
    for account in accounts:
        account['schedule'] = (account['schedule_frequency']
                               if account['schedule_enabled'] else "off")
        account['active'] = "yes" if account['is_active'] else "no"
    _table(accounts, ['id', 'provider', 'external_id', 'name', 'active', 'schedule',
                      'next_scheduled_scan', 'health_score'])
    return 0


def cmd_accounts_show(args) -> int:
    account = AuditStore().require_account(args.account_id)
    try:
        account['credentials'] = mask_secret(get_vault().decrypt(account['credentials']))
    except ConfigurationError as exc:
        account['credentials'] = f"<unreadable: {exc}>"
    _print_json(account)
    return 0


def cmd_accounts_enable(args) -> int:
    store = AuditStore()
    store.require_account(args.account_id)
    store.set_account_active(args.account_id, args.active)
    print(f"[+] Account {args.account_id} {'enabled' if args.active else 'disabled'}")
    return 0


def cmd_validate(args) -> int:
    if args.account:
        account = AuditStore().require_account(args.account)
        provider = get_provider(account['provider'])
        secret = get_vault().decrypt(account['credentials'])
        result = _validate(provider, secret, provider.scope_for(account))
    else:
        if not (args.provider and args.credentials):
            raise ConfigurationError("Either --account or --provider with --credentials is required")
        provider = get_provider(args.provider)
        result = _validate(provider, load_secret_file(args.credentials))

    if result['valid']:
        print(f"[+] {provider.TAG} credentials are valid")
        return 0
    print(f"[!] {provider.TAG} credentials are not valid: {result['error']}")
    return 1


# ---------------------------------------------------------------------------
# schedule
# ---------------------------------------------------------------------------

def cmd_schedule_set(args) -> int:
    next_scan = configure_schedule(
        AuditStore(), args.account_id, True, args.frequency, args.hour,
        args.day_of_week, args.day_of_month,
    )
    print(f"[+] Schedule saved, next run at {next_scan.isoformat()} UTC")
    return 0


def cmd_schedule_disable(args) -> int:
    configure_schedule(AuditStore(), args.account_id, False)
    print(f"[+] Schedule disabled for {args.account_id}")
    return 0


def cmd_schedule_list(args) -> int:
    rows = [a for a in AuditStore().list_accounts() if a['schedule_enabled']]
    _table(rows, ['id', 'provider', 'name', 'schedule_frequency', 'schedule_hour',
                  'schedule_day_of_week', 'schedule_day_of_month', 'next_scheduled_scan'])
    return 0


# ---------------------------------------------------------------------------
# scan / audits / findings
# ---------------------------------------------------------------------------

def cmd_scan(args) -> int:
    store = AuditStore()
    account = store.require_account(args.account_id)
    orchestrator = get_orchestrator()

    if args.background:
        outcome = orchestrator.trigger_scan(account['provider'], account['id'], wait=False)
        if not outcome['success']:
            print(f"[!] {outcome['error']}")
            return 1
        print(f"[*] Audit {outcome['audit_id']} started, waiting for it to finish...")
        orchestrator.wait_for_background()
        audit = store.get_audit(outcome['audit_id']) or {}
        print(f"[*] Audit {outcome['audit_id']} {audit.get('status', 'unknown')}")
        return 0 if audit.get('status') == "completed" else 1

    print(f"[*] Auditing {account['provider']} account {account['external_id']}...")
    outcome = orchestrator.trigger_scan(account['provider'], account['id'])
    if not outcome['success']:
        print(f"[!] Audit {outcome['audit_id'] or '-'} failed: {outcome['error']}")
        return 1

    summary = outcome['summary']
    print(f"[+] Audit {outcome['audit_id']} completed in {outcome['duration_ms'] / 1000:.1f}s")
    print(f"    Critical: {summary['critical']}  High: {summary['high']}  "
          f"Medium: {summary['medium']}  Low: {summary['low']}")
    print(f"    Risk score: {summary['risk_score']:.1f} / 100")
    return 0


def cmd_audits_list(args) -> int:
    store = AuditStore()
    store.require_account(args.account_id)
    audits = store.list_audits(args.account_id, limit=args.limit)
    _table(audits, ['id', 'status', 'trigger_type', 'critical', 'high', 'medium', 'low',
                    'risk_score', 'started_at', 'completed_at'])
    return 0


def cmd_audits_show(args) -> int:
    store = AuditStore()
    audit = store.get_audit(args.audit_id)
    if audit is None:
        print(f"[!] Audit {args.audit_id} not found")
        return 1
    audit['phases'] = store.get_phases(args.audit_id)
    if args.findings:
        audit['findings'] = store.get_findings(args.audit_id, severity=args.severity)
    _print_json(audit)
    return 0


def cmd_audits_delete(args) -> int:
    if not AuditStore().delete_audit(args.audit_id):
        print(f"[!] Audit {args.audit_id} not found")
        return 1
    print(f"[+] Deleted audit {args.audit_id}")
    return 0


def cmd_findings_status(args) -> int:
    if not AuditStore().update_finding_status(args.finding_id, args.status):
        print(f"[!] Finding {args.finding_id} not found")
        return 1
    print(f"[+] Finding {args.finding_id} marked {args.status}")
    return 0


# ---------------------------------------------------------------------------
# notify
# ---------------------------------------------------------------------------

def cmd_notify_set(args) -> int:
    store = AuditStore()
    current = store.get_notification_settings(args.user).get(args.channel, {})
    enabled = args.enabled if args.enabled is not None else current.get('enabled', True)
    target = args.target if args.target is not None else current.get('target', "")
    if enabled and not target:
        raise ConfigurationError(f"--target is required to enable the {args.channel} channel")
    store.set_notification_channel(
        args.user, args.channel, enabled, target,
        alert_on_critical=(args.critical if args.critical is not None
                           else current.get('alert_on_critical', True)),
        alert_on_high=(args.high if args.high is not None
                       else current.get('alert_on_high', False)),
    )
    print(f"[+] {args.channel} notifications {'enabled' if enabled else 'disabled'} "
          f"for user '{args.user}'")
    return 0


def cmd_notify_show(args) -> int:
    _print_json(AuditStore().get_notification_settings(args.user))
    return 0


# ---------------------------------------------------------------------------
# scheduler
# ---------------------------------------------------------------------------

def cmd_scheduler_run(args) -> int:
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    scheduler = get_scheduler()
    if args.interval:
        scheduler.interval = float(args.interval)
    scheduler.start(daemon=True)
    print(f"[*] Scheduler running (tick every {scheduler.interval:g}s), Ctrl+C to stop")

    while not _shutdown_requested and scheduler.running:
        time.sleep(0.5)

    print("[*] Stopping scheduler, waiting for running audits...")
    shutdown_scheduler(wait=True)
    print("[+] Scheduler stopped")
    return 0


def cmd_scheduler_tick(args) -> int:
    scheduler = get_scheduler()
    scheduler.prepare()
    futures = scheduler.tick()
    print(f"[*] Dispatched {len(futures)} scheduled audit(s)")
    failures = 0
    for future in futures:
        outcome = future.result()
        status = "ok" if outcome['success'] else f"failed ({outcome['error']})"
        print(f"    {outcome['audit_id'] or '-'}: {status}")
        failures += 0 if outcome['success'] else 1
    shutdown_scheduler(wait=True)
    return 1 if failures else 0


def cmd_scheduler_logs(args) -> int:
    logs = AuditStore().list_scan_logs(args.account, limit=args.limit)
    _table(logs, ['executed_at', 'provider', 'account_id', 'status', 'audit_id',
                  'duration_ms', 'error_message'])
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cloudaudit',
        description='Cloud Audit Engine - scheduled security audits for AWS, GCP and Azure',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    sub = parser.add_subparsers(dest='command', metavar='<command>')
    sub.required = True

    # accounts
    accounts = sub.add_parser('accounts', help='Manage cloud accounts')
    acc_sub = accounts.add_subparsers(dest='action', metavar='<action>')
    acc_sub.required = True

    p = acc_sub.add_parser('add', help='Register an account')
    p.add_argument('--provider', required=True, type=str.upper, choices=VALID_PROVIDERS)
    p.add_argument('--credentials', required=True, help='Path to credentials JSON')
    p.add_argument('--external-id', help='AWS account / GCP project / Azure subscription id')
    p.add_argument('--name', default='', help='Display name')
    p.add_argument('--region', default='', help='Default region')
    p.add_argument('--user', default='', help='Owner user id (for notifications)')
    p.add_argument('--validate', action='store_true', help='Validate credentials first')
    p.set_defaults(func=cmd_accounts_add)

    p = acc_sub.add_parser('list', help='List accounts')
    p.add_argument('--provider', type=str.upper, choices=VALID_PROVIDERS)
    p.set_defaults(func=cmd_accounts_list)

    p = acc_sub.add_parser('show', help='Show one account (secrets masked)')
    p.add_argument('account_id')
    p.set_defaults(func=cmd_accounts_show)

    p = acc_sub.add_parser('enable', help='Allow audits of an account')
    p.add_argument('account_id')
    p.set_defaults(func=cmd_accounts_enable, active=True)

    p = acc_sub.add_parser('disable', help='Stop audits of an account')
    p.add_argument('account_id')
    p.set_defaults(func=cmd_accounts_enable, active=False)

    # validate
    p = sub.add_parser('validate', help='Validate credentials without auditing')
    p.add_argument('--account', help='Stored account id')
    p.add_argument('--provider', type=str.upper, choices=VALID_PROVIDERS)
    p.add_argument('--credentials', help='Path to credentials JSON')
    p.set_defaults(func=cmd_validate)

    # schedule
    schedule = sub.add_parser('schedule', help='Configure recurring audits')
    sch_sub = schedule.add_subparsers(dest='action', metavar='<action>')
    sch_sub.required = True

    p = sch_sub.add_parser('set', help='Enable or change a schedule')
    p.add_argument('account_id')
    p.add_argument('--frequency', required=True, choices=VALID_FREQUENCIES)
    p.add_argument('--hour', required=True, type=int, help='Hour of day 0-23 (UTC)')
    p.add_argument('--day-of-week', type=int, help='0 = Sunday ... 6 = Saturday')
    p.add_argument('--day-of-month', type=int, help='1-31, clamped in short months')
    p.set_defaults(func=cmd_schedule_set)

    p = sch_sub.add_parser('disable', help='Disable a schedule')
    p.add_argument('account_id')
    p.set_defaults(func=cmd_schedule_disable)

    p = sch_sub.add_parser('list', help='List enabled schedules')
    p.set_defaults(func=cmd_schedule_list)

    # scan
    p = sub.add_parser('scan', help='Audit an account now')
    p.add_argument('account_id')
    p.add_argument('--background', action='store_true',
                   help='Return the audit id immediately, then wait for completion')
    p.set_defaults(func=cmd_scan)

    # audits
    audits = sub.add_parser('audits', help='Inspect audit history')
    aud_sub = audits.add_subparsers(dest='action', metavar='<action>')
    aud_sub.required = True

    p = aud_sub.add_parser('list', help='Audits of one account, newest first')
    p.add_argument('account_id')
    p.add_argument('--limit', type=int, default=20)
    p.set_defaults(func=cmd_audits_list)

    p = aud_sub.add_parser('show', help='One audit with its phases')
    p.add_argument('audit_id')
    p.add_argument('--findings', action='store_true', help='Include findings')
    p.add_argument('--severity', type=str.upper, choices=('CRITICAL', 'HIGH', 'MEDIUM', 'LOW'))
    p.set_defaults(func=cmd_audits_show)

    p = aud_sub.add_parser('delete', help='Delete a finished audit')
    p.add_argument('audit_id')
    p.set_defaults(func=cmd_audits_delete)

    # findings
    findings = sub.add_parser('findings', help='Triage findings')
    fnd_sub = findings.add_subparsers(dest='action', metavar='<action>')
    fnd_sub.required = True

    p = fnd_sub.add_parser('status', help='Set a finding status')
    p.add_argument('finding_id', help='Finding row id (from audits show --findings)')
    p.add_argument('status', choices=VALID_FINDING_STATUSES)
    p.set_defaults(func=cmd_findings_status)

    # notify
    notify = sub.add_parser('notify', help='Alert channel settings')
    ntf_sub = notify.add_subparsers(dest='action', metavar='<action>')
    ntf_sub.required = True

    p = ntf_sub.add_parser('set', help='Configure one channel for a user')
    p.add_argument('channel', choices=VALID_CHANNELS)
    p.add_argument('--user', default='', help='Owner user id')
    p.add_argument('--target', help='Email address(es) or webhook URL')
    p.add_argument('--enabled', action=argparse.BooleanOptionalAction, default=None)
    p.add_argument('--critical', action=argparse.BooleanOptionalAction, default=None,
                   help='Alert when critical findings exist')
    p.add_argument('--high', action=argparse.BooleanOptionalAction, default=None,
                   help='Alert when high findings exist')
    p.set_defaults(func=cmd_notify_set)

    p = ntf_sub.add_parser('show', help='Show channel settings for a user')
    p.add_argument('--user', default='')
    p.set_defaults(func=cmd_notify_show)

    # scheduler
    scheduler = sub.add_parser('scheduler', help='Run the scan scheduler')
    sched_sub = scheduler.add_subparsers(dest='action', metavar='<action>')
    sched_sub.required = True

    p = sched_sub.add_parser('run', help='Tick until SIGINT/SIGTERM')
    p.add_argument('--interval', type=float, help='Tick interval in seconds')
    p.set_defaults(func=cmd_scheduler_run)

    p = sched_sub.add_parser('tick', help='Run one tick and wait for its audits')
    p.set_defaults(func=cmd_scheduler_tick)

    p = sched_sub.add_parser('logs', help='Recent scheduled-run log entries')
    p.add_argument('--account', help='Filter by account id')
    p.add_argument('--limit', type=int, default=50)
    p.set_defaults(func=cmd_scheduler_logs)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ConfigurationError as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 2
    except PersistenceError as exc:
        logger.error(f"Database error: {exc}")
        print(f"[!] Database error: {exc}", file=sys.stderr)
        return 1
    except CloudAuditError as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())
