#!/usr/bin/env python3
"""
Cloud Audit Engine - Phase Runner
Runs the check units of one phase concurrently and folds their outcomes
into a PhaseResult.

Every unit yields a tagged CheckResult; an exception or a timeout in one
unit never cancels its siblings. The phase fails only when every unit
failed.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Optional

from cloudchecks.base import AuditScope, CheckUnit, Phase

from .logger import get_logger
from .models import CheckResult, PhaseResult, utcnow

# Upper bound on how long the wait loop sleeps between timeout checks
POLL_SECONDS = 0.5


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    name = type(exc).__name__
    if not message:
        return name
    if name in ('CheckError', 'TransientProviderError'):
        return message
    return f"{name}: {message}"


class PhaseRunner:
    """
    Bounded-concurrency executor for the check units of a phase.

    One runner serves every phase of an audit. Its max_workers slots are
    shared across phases: a unit that timed out keeps its slot until the
    provider call actually returns, so abandoned calls never push the number
    of concurrent provider calls past the cap. A unit that cannot get a slot
    within check_timeout per wave of max_workers units, counted from phase
    start, fails without running.
    """

    def __init__(self, max_workers: int, check_timeout: float,
                 phase_timeout: Optional[float] = None,
                 logger: Optional[logging.Logger] = None):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.check_timeout = float(check_timeout)
        self.phase_timeout = float(phase_timeout) if phase_timeout else None
        self.logger = logger or get_logger('runner')
        self._slots = threading.BoundedSemaphore(max_workers)

    def run_phase(self, phase: Phase, handle: Any, scope: AuditScope,
                  on_start: Optional[Callable[[], None]] = None) -> PhaseResult:
        """
        Run every unit of *phase* and aggregate the results.

        on_start is invoked once before any unit runs (used to mark the
        phase running in the store); its exceptions propagate. A phase with
        no units is skipped without calling it.
        """
        started = utcnow()
        if not phase.checks:
            self.logger.info("Phase %d (%s): no checks registered, skipped", phase.number, phase.name)
            return PhaseResult(phase_number=phase.number, name=phase.name, status='skipped',
                               started_at=started, completed_at=started)

        if on_start is not None:
            on_start()

        self.logger.info("Phase %d (%s): running %d check(s)",
                         phase.number, phase.name, len(phase.checks))
        results = self._run_units(phase, handle, scope)

        findings = []
        errors = []
        for unit in phase.checks:
            result = results[unit.check_id]
            if result.ok:
                findings.extend(result.findings)
            else:
                errors.append({'check_id': unit.check_id, 'error': result.error})
                self.logger.warning("Check %s failed: %s", unit.check_id, result.error)

        total = len(phase.checks)
        failed = len(errors)
        if failed == total:
            status = 'failed'
            findings = []
        else:
            status = 'completed'

        self.logger.info("Phase %d (%s) %s: %d finding(s), %d/%d check(s) failed",
                         phase.number, phase.name, status, len(findings), failed, total)
        return PhaseResult(
            phase_number=phase.number, name=phase.name, status=status,
            findings=findings, errors=errors, checks_total=total,
            checks_failed=failed, started_at=started, completed_at=utcnow(),
        )

    def _run_units(self, phase: Phase, handle: Any,
                   scope: AuditScope) -> Dict[str, CheckResult]:
        unit_started: Dict[str, float] = {}
        abandoned = set()
        lock = threading.Lock()
        phase_start = time.monotonic()
        waves = -(-len(phase.checks) // self.max_workers)
        queue_wait = self.check_timeout * waves
        queue_deadline = phase_start + queue_wait
        phase_deadline = (phase_start + self.phase_timeout) if self.phase_timeout else None
        start_by = min(queue_deadline, phase_deadline) if phase_deadline else queue_deadline

        def invoke(unit: CheckUnit) -> CheckResult:
            if not self._slots.acquire(timeout=max(start_by - time.monotonic(), 0)):
                return CheckResult.failure(
                    unit.check_id, f"Not started within {queue_wait:g}s: worker slots busy"
                )
            try:
                with lock:
                    if unit.check_id in abandoned:
                        return CheckResult.failure(unit.check_id, "Abandoned before start")
                    t0 = time.monotonic()
                    unit_started[unit.check_id] = t0
                try:
                    findings = unit.run(handle, scope)
                except Exception as exc:
                    elapsed = int((time.monotonic() - t0) * 1000)
                    return CheckResult.failure(unit.check_id, describe_error(exc), elapsed)
                elapsed = int((time.monotonic() - t0) * 1000)
                return CheckResult.success(unit.check_id, findings, elapsed)
            finally:
                # A call that outlived its timeout holds its slot until it returns
                self._slots.release()

        # One thread per unit; the shared slots bound how many call the provider
        pool = ThreadPoolExecutor(max_workers=len(phase.checks),
                                  thread_name_prefix=f"phase{phase.number}")
        futures = {pool.submit(invoke, unit): unit for unit in phase.checks}
        pending = set(futures)
        results: Dict[str, CheckResult] = {}

        try:
            while pending:
                done, pending = wait(pending, timeout=self._next_wait(pending, futures, unit_started,
                                                                       lock, phase_deadline),
                                     return_when=FIRST_COMPLETED)
                for fut in done:
                    results[futures[fut].check_id] = fut.result()

                now = time.monotonic()
                for fut in list(pending):
                    unit = futures[fut]
                    if fut.done():
                        results[unit.check_id] = fut.result()
                        pending.discard(fut)
                        continue
                    with lock:
                        t0 = unit_started.get(unit.check_id)
                    if t0 is not None and now - t0 >= self.check_timeout:
                        results[unit.check_id] = CheckResult.failure(
                            unit.check_id, f"Timed out after {self.check_timeout:g}s",
                            int((now - t0) * 1000),
                        )
                        pending.discard(fut)

                if phase_deadline is not None and pending and now >= phase_deadline:
                    with lock:
                        for fut in pending:
                            abandoned.add(futures[fut].check_id)
                    for fut in pending:
                        unit = futures[fut]
                        results[unit.check_id] = CheckResult.failure(
                            unit.check_id, f"Phase timed out after {self.phase_timeout:g}s"
                        )
                    pending = set()
        finally:
            pool.shutdown(wait=False)

        return results

    def _next_wait(self, pending, futures, unit_started, lock,
                   phase_deadline: Optional[float]) -> float:
        now = time.monotonic()
        horizon = POLL_SECONDS
        with lock:
            for fut in pending:
                t0 = unit_started.get(futures[fut].check_id)
                if t0 is not None:
                    horizon = min(horizon, t0 + self.check_timeout - now)
        if phase_deadline is not None:
            horizon = min(horizon, phase_deadline - now)
        return max(horizon, 0.01)
