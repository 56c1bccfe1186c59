#!/usr/bin/env python3
"""
Cloud Audit Engine - Audit Orchestrator
Drives one audit through pending -> running -> completed | failed.

trigger_scan() is the single entry point for manual and scheduled runs:
configuration problems are rejected before an audit row exists, the
account's run claim and the audit with its phase rows are created in one
transaction, and the claim is always released when the run ends.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from cloudchecks import get_provider
from cloudchecks.base import CloudProvider, Phase

from .alerts import AlertDispatcher
from .config import config
from .credentials import get_vault
from .exceptions import (
    AuditAlreadyRunningError, AuthenticationError, ConfigurationError,
    PersistenceError, TransientProviderError,
)
from .logger import close_audit_logger, get_audit_logger, get_logger
from .models import AuditSummary, normalize_provider, utcnow
from .runner import PhaseRunner, describe_error
from .store import AuditStore

logger = get_logger('orchestrator')


def risk_score(critical: int, high: int, medium: int, low: int,
               weights: Optional[Dict[str, float]] = None) -> float:
    """
    100 minus weighted finding counts, clamped to [0, 100].

    With non-negative weights the score never increases when a count grows.
    """
    weights = weights or config.get_risk_weights()
    penalty = (critical * weights['critical'] + high * weights['high']
               + medium * weights['medium'] + low * weights['low'])
    return round(max(0.0, min(100.0, 100.0 - penalty)), 1)


def elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@dataclass
class AuditContext:
    """Everything an audit needs once its rows exist."""

    audit_id: str
    account: Dict[str, Any]
    provider: CloudProvider
    secret: Dict[str, Any]
    phases: List[Phase]
    phase_ids: Dict[int, str]
    trigger: str
    weights: Dict[str, float] = field(default_factory=dict)


class AuditOrchestrator:
    """Creates, runs and closes audits."""

    def __init__(self, store: Optional[AuditStore] = None, vault=None,
                 dispatcher: Optional[AlertDispatcher] = None,
                 provider_factory: Optional[Callable[[str], CloudProvider]] = None,
                 runner_factory: Optional[Callable[..., PhaseRunner]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store or AuditStore()
        self.vault = vault or get_vault()
        self.dispatcher = dispatcher or AlertDispatcher(store=self.store)
        self.provider_factory = provider_factory or get_provider
        self.runner_factory = runner_factory or self._default_runner
        self._sleep = sleep
        self._threads: List[threading.Thread] = []
        self._threads_lock = threading.Lock()

    @staticmethod
    def _default_runner(provider: CloudProvider, audit_logger) -> PhaseRunner:
        return PhaseRunner(
            max_workers=config.get_concurrency(provider.TAG),
            check_timeout=config.get_check_timeout(),
            phase_timeout=config.get_phase_timeout(),
            logger=audit_logger,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def trigger_scan(self, provider: str, account_id: str, trigger: str = "manual",
                     wait: bool = True) -> Dict[str, Any]:
        """
        Start an audit of one account.

        Returns {success, audit_id, error, duration_ms, summary}. With
        wait=False the audit runs on a background thread and only its id is
        returned.
        """
        start = time.monotonic()
        try:
            ctx = self.prepare_audit(provider, account_id, trigger)
        except AuditAlreadyRunningError as exc:
            logger.info("Rejected %s trigger for account %s: %s", trigger, account_id, exc)
            return self._outcome(False, exc.audit_id, str(exc), start)
        except (ConfigurationError, PersistenceError) as exc:
            logger.warning("Cannot start audit for %s account %s: %s", provider, account_id, exc)
            return self._outcome(False, None, str(exc), start)

        if not wait:
            thread = threading.Thread(target=self.execute_audit, args=(ctx,),
                                      name=f"audit-{ctx.audit_id[:8]}", daemon=True)
            with self._threads_lock:
                self._threads = [t for t in self._threads if t.is_alive()]
                self._threads.append(thread)
            thread.start()
            return self._outcome(True, ctx.audit_id, None, start)

        outcome = self.execute_audit(ctx)
        outcome['duration_ms'] = elapsed_ms(start)
        return outcome

    def wait_for_background(self, timeout: Optional[float] = None):
        """Join audits started with wait=False."""
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)

    @staticmethod
    def _outcome(success: bool, audit_id: Optional[str], error: Optional[str],
                 start: float, summary: Optional[AuditSummary] = None) -> Dict[str, Any]:
        return {
            'success': success,
            'audit_id': audit_id,
            'error': error,
            'duration_ms': elapsed_ms(start),
            'summary': summary.to_dict() if summary else None,
        }

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def prepare_audit(self, provider: str, account_id: str,
                      trigger: str = "manual") -> AuditContext:
        """
        Validate inputs and create the audit.

        Raises ConfigurationError subclasses for bad input (nothing is
        written) and AuditAlreadyRunningError when the account is claimed.
        """
        tag = normalize_provider(provider)
        cloud = self.provider_factory(tag)
        account = self.store.require_account(account_id, tag)
        if not account.get('is_active'):
            raise ConfigurationError(f"Account {account_id} is disabled")

        secret = cloud.parse_secret(self.vault.decrypt(account['credentials']))
        weights = config.get_risk_weights()
        phases = cloud.catalogue()

        audit_id, phase_ids = self.store.begin_audit(
            account, [(p.number, p.name) for p in phases], trigger=trigger
        )
        return AuditContext(
            audit_id=audit_id, account=account, provider=cloud, secret=secret,
            phases=phases, phase_ids=phase_ids, trigger=trigger, weights=weights,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_audit(self, ctx: AuditContext) -> Dict[str, Any]:
        """Run a prepared audit to a terminal state and release its claim."""
        audit_logger = get_audit_logger(ctx.audit_id)
        start = time.monotonic()
        try:
            return self._run(ctx, audit_logger, start)
        except PersistenceError as exc:
            message = f"Persistence failure: {exc}"
            logger.error("Audit %s aborted: %s", ctx.audit_id, message)
            audit_logger.error(message)
            self._fail_best_effort(ctx, message, start)
            return self._outcome(False, ctx.audit_id, message, start)
        except Exception as exc:
            message = f"Unexpected error: {describe_error(exc)}"
            logger.exception("Audit %s crashed", ctx.audit_id)
            audit_logger.error(message)
            self._fail_best_effort(ctx, message, start)
            return self._outcome(False, ctx.audit_id, message, start)
        finally:
            try:
                self.store.release_claim(ctx.account['id'], ctx.audit_id)
            except PersistenceError as exc:
                logger.error("Could not release claim on account %s: %s", ctx.account['id'], exc)
            close_audit_logger(ctx.audit_id)

    def _run(self, ctx: AuditContext, audit_logger, start: float) -> Dict[str, Any]:
        provider = ctx.provider
        scope = provider.scope_for(ctx.account)
        audit_logger.info("Audit %s: %s account %s (%s), trigger=%s, %d phases",
                          ctx.audit_id, provider.TAG, scope.external_id,
                          scope.name, ctx.trigger, len(ctx.phases))

        try:
            handle = self._authenticate(provider, ctx.secret, scope, audit_logger)
        except (AuthenticationError, TransientProviderError, ConfigurationError) as exc:
            message = f"Authentication failed: {exc}"
            audit_logger.error(message)
            logger.warning("Audit %s failed: %s", ctx.audit_id, message)
            self.store.mark_phases_skipped(ctx.audit_id)
            self.store.finish_audit(ctx.audit_id, "failed", error_message=message,
                                    duration_ms=elapsed_ms(start))
            self.store.update_account_after_scan(ctx.account['id'], utcnow(), None)
            return self._outcome(False, ctx.audit_id, message, start)

        runner = self.runner_factory(provider, audit_logger)
        totals = {'critical': 0, 'high': 0, 'medium': 0, 'low': 0}
        completed = 0

        for phase in ctx.phases:
            phase_id = ctx.phase_ids[phase.number]
            result = runner.run_phase(
                phase, handle, scope,
                on_start=lambda pid=phase_id: self.store.mark_phase_running(pid),
            )
            self.store.complete_phase(ctx.audit_id, phase_id, result)
            if result.status == "completed":
                completed += 1
                for severity, count in result.severity_counts().items():
                    totals[severity] += count

        if completed == 0:
            message = "No phase completed"
            audit_logger.error(message)
            self.store.finish_audit(ctx.audit_id, "failed", counts=totals,
                                    error_message=message, duration_ms=elapsed_ms(start))
            self.store.update_account_after_scan(ctx.account['id'], utcnow(), None)
            return self._outcome(False, ctx.audit_id, message, start)

        score = risk_score(weights=ctx.weights, **totals)
        self.store.finish_audit(ctx.audit_id, "completed", counts=totals,
                                risk_score=score, duration_ms=elapsed_ms(start))
        self.store.update_account_after_scan(ctx.account['id'], utcnow(), score)

        summary = AuditSummary(
            account_name=ctx.account.get('name') or scope.external_id,
            provider=provider.TAG,
            total_findings=sum(totals.values()),
            risk_score=score,
            audit_id=ctx.audit_id,
            **totals,
        )
        audit_logger.info("Audit completed: %d findings (%d critical, %d high), risk score %.1f",
                          summary.total_findings, summary.critical, summary.high, score)
        logger.info("Audit %s completed for account %s: risk score %.1f",
                    ctx.audit_id, ctx.account['id'], score)

        self._dispatch_alerts(ctx, summary)
        return self._outcome(True, ctx.audit_id, None, start, summary)

    def _authenticate(self, provider: CloudProvider, secret: Dict[str, Any], scope,
                      audit_logger):
        """Authenticate once, retrying only transient failures."""
        retries = max(0, int(config.get('scanning.auth_retry_attempts', 1)))
        delay = float(config.get('scanning.auth_retry_delay_seconds', 2))
        attempt = 0
        while True:
            try:
                return provider.authenticate(secret, scope)
            except TransientProviderError as exc:
                if attempt >= retries:
                    raise
                attempt += 1
                audit_logger.warning("Transient authentication failure (%s), retry %d/%d",
                                     exc, attempt, retries)
                self._sleep(delay)

    def _dispatch_alerts(self, ctx: AuditContext, summary: AuditSummary):
        user_id = ctx.account.get('user_id') or ""
        try:
            settings = self.store.get_notification_settings(user_id)
            self.dispatcher.dispatch(summary, settings, audit_id=ctx.audit_id, user_id=user_id)
        except Exception as exc:
            logger.error("Alert dispatch for audit %s failed: %s", ctx.audit_id, exc)

    def _fail_best_effort(self, ctx: AuditContext, message: str, start: float):
        try:
            self.store.abandon_phases(ctx.audit_id)
            self.store.finish_audit(ctx.audit_id, "failed", error_message=message,
                                    duration_ms=elapsed_ms(start))
        except PersistenceError as exc:
            logger.error("Could not mark audit %s failed: %s", ctx.audit_id, exc)


_orchestrator: Optional[AuditOrchestrator] = None


def get_orchestrator() -> AuditOrchestrator:
    """Get the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AuditOrchestrator()
    return _orchestrator
