"""Reconciliation service that maps consistency findings to repair rules.

A job runs a fresh consistency check, picks the rules whose targets appear
in that report and executes them one after another in catalog order. Rule
failures become failed results; only a failing consistency check fails the
whole job. Jobs are always returned, never raised.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from gp51_integrity.config import IntegrityConfig
from gp51_integrity.exceptions import ManualReviewRequired
from gp51_integrity.models import (
    ConsistencyReport,
    JobTrigger,
    ReconciliationJob,
    ReconciliationResult,
    ReconciliationRule,
)
from gp51_integrity.registry import JobRegistry
from gp51_integrity.repairs import DEFAULT_HANDLERS, RepairHandler
from gp51_integrity.rules import RuleRegistry
from gp51_integrity.scheduler import PeriodicTask
from gp51_integrity.storage import ReportStorage
from gp51_integrity.store import SupabaseStore
from gp51_integrity.verifier import ConsistencyVerifier

logger = logging.getLogger(__name__)

_ACTIONABLE_STATUSES = ("failed", "warning")


class ReconciliationService:
    """Executes reconciliation rules and tracks the resulting jobs."""

    def __init__(
        self,
        config: IntegrityConfig,
        store: SupabaseStore,
        verifier: ConsistencyVerifier,
        remote: Any = None,
        registry: JobRegistry | None = None,
        rules: RuleRegistry | None = None,
        storage: ReportStorage | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.verifier = verifier
        self.remote = remote
        self.registry = registry or JobRegistry(config.job_retention_hours)
        self.rules = rules or RuleRegistry()
        self.storage = storage
        self._handlers: dict[str, RepairHandler] = dict(DEFAULT_HANDLERS)
        self._schedule: PeriodicTask | None = None

    def get_applicable_rules(
        self,
        report: ConsistencyReport,
        auto_execute_only: bool = False,
    ) -> list[ReconciliationRule]:
        """Rules with at least one actionable finding of matching type and severity."""
        actionable = [c for c in report.checks if c.status in _ACTIONABLE_STATUSES]
        return [
            rule for rule in self.rules.all()
            if (rule.auto_execute or not auto_execute_only)
            and any(c.check_type == rule.check_type and c.severity in rule.severity for c in actionable)
        ]

    def perform_automatic_reconciliation(self) -> ReconciliationJob:
        """Run every auto-executable rule the current data calls for."""
        job = self._start_job("automatic")
        try:
            report = self.verifier.perform_full_consistency_check()
            rules = self.get_applicable_rules(report, auto_execute_only=True)
            job.rule_ids = [r.id for r in rules]
            self._run_rules(job, rules)
            job.status = "completed"
        except Exception as exc:
            self._fail_job(job, exc)
        return self._finish_job(job)

    def perform_manual_reconciliation(self, rule_ids: Sequence[str]) -> ReconciliationJob:
        """Run the requested rules whose targets appear in a fresh report.

        Unknown rule ids and rules with nothing to act on are listed in
        ``skipped_rules``. Rules run in catalog order, not request order.
        """
        job = self._start_job("manual")
        requested = list(dict.fromkeys(rule_ids))
        job.skipped_rules = [rid for rid in requested if rid not in self.rules]
        try:
            report = self.verifier.perform_full_consistency_check()
            applicable = {r.id for r in self.get_applicable_rules(report)}
            rules = [r for r in self.rules.all() if r.id in requested]
            job.skipped_rules.extend(r.id for r in rules if r.id not in applicable)
            rules = [r for r in rules if r.id in applicable]
            job.rule_ids = [r.id for r in rules]
            self._run_rules(job, rules)
            job.status = "completed"
        except Exception as exc:
            self._fail_job(job, exc)
        return self._finish_job(job)

    def execute_rule(self, rule: ReconciliationRule) -> ReconciliationResult:
        """Run one rule's handler, converting any exception into a failed result."""
        handler = self._handlers.get(rule.id)
        if handler is None:
            return ReconciliationResult(
                rule_id=rule.id,
                success=False,
                error=f"No handler registered for rule {rule.id}",
            )

        started = time.perf_counter()
        try:
            outcome = handler(self.store, self.remote, self.config)
        except ManualReviewRequired as exc:
            logger.warning("Rule %s requires manual review: %s", rule.id, exc)
            return ReconciliationResult(
                rule_id=rule.id,
                success=False,
                duration_ms=self._elapsed_ms(started),
                details={"requires_manual_review": True, **exc.details},
                error=str(exc),
            )
        except Exception as exc:
            logger.error("Rule %s failed: %s", rule.id, exc, exc_info=True)
            return ReconciliationResult(
                rule_id=rule.id,
                success=False,
                duration_ms=self._elapsed_ms(started),
                details={"error_type": type(exc).__name__},
                error=str(exc),
            )

        logger.info(
            "Rule %s processed=%d fixed=%d failed=%d",
            rule.id,
            outcome.records_processed,
            outcome.records_fixed,
            outcome.records_failed,
        )
        return ReconciliationResult(
            rule_id=rule.id,
            success=True,
            records_processed=outcome.records_processed,
            records_fixed=outcome.records_fixed,
            records_failed=outcome.records_failed,
            duration_ms=self._elapsed_ms(started),
            details=outcome.details,
        )

    def get_job_status(self, job_id: str) -> ReconciliationJob | None:
        job = self.registry.get(job_id)
        return job.model_copy(deep=True) if job else None

    def get_active_jobs(self) -> list[ReconciliationJob]:
        return [j.model_copy(deep=True) for j in self.registry.active_jobs()]

    def list_jobs(self) -> list[ReconciliationJob]:
        return [j.model_copy(deep=True) for j in self.registry.list_jobs()]

    def get_available_rules(self) -> list[ReconciliationRule]:
        return list(self.rules.all())

    def add_custom_rule(self, rule: ReconciliationRule, handler: RepairHandler) -> ReconciliationRule:
        """Register a new rule together with the handler that executes it."""
        self.rules.add(rule)
        self._handlers[rule.id] = handler
        return rule

    def update_rule(self, rule_id: str, **changes: Any) -> ReconciliationRule:
        return self.rules.update(rule_id, **changes)

    def start_scheduled_reconciliation(self, interval_hours: float | None = None) -> PeriodicTask:
        """Run automatic reconciliation every ``interval_hours``. No-op if already running."""
        if self._schedule is not None and self._schedule.is_running:
            return self._schedule
        hours = interval_hours or self.config.reconciliation_interval_hours
        self._schedule = PeriodicTask("scheduled-reconciliation", self.perform_automatic_reconciliation, hours * 3600)
        return self._schedule.start()

    def stop_scheduled_reconciliation(self) -> None:
        if self._schedule is not None:
            self._schedule.stop()
            self._schedule = None

    def _start_job(self, trigger: JobTrigger) -> ReconciliationJob:
        job = self.registry.add(ReconciliationJob(trigger=trigger))
        job.status = "running"
        job.started_at = datetime.now(UTC)
        logger.info("Started %s reconciliation job %s", trigger, job.id)
        return job

    def _run_rules(self, job: ReconciliationJob, rules: list[ReconciliationRule]) -> None:
        for rule in rules:
            result = self.execute_rule(rule)
            job.results.append(result)
            job.total_records_processed += result.records_processed
            job.total_records_fixed += result.records_fixed
            if not result.success:
                job.error_count += 1
                job.errors.append(f"{rule.id}: {result.error}")

    def _fail_job(self, job: ReconciliationJob, exc: Exception) -> None:
        logger.error("Reconciliation job %s failed: %s", job.id, exc, exc_info=True)
        job.status = "failed"
        job.error_count += 1
        job.errors.append(f"Reconciliation failed: {exc}")

    def _finish_job(self, job: ReconciliationJob) -> ReconciliationJob:
        job.completed_at = datetime.now(UTC)
        logger.info(
            "Reconciliation job %s %s: %d rules, %d fixed, %d errors",
            job.id,
            job.status,
            len(job.results),
            job.total_records_fixed,
            job.error_count,
        )
        if self.storage is not None:
            try:
                self.storage.save_job(job)
            except OSError as exc:
                logger.error("Could not persist reconciliation job %s: %s", job.id, exc)
        return job

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
