"""Consistency verifier that runs check categories and aggregates a report.

The ConsistencyVerifier runs each category in a fixed order, turns a failing
category into a single critical finding, scores the result and writes the
compact audit row to the store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from gp51_integrity import checks as check_fns
from gp51_integrity.config import IntegrityConfig
from gp51_integrity.models import CheckType, ConsistencyCheck, ConsistencyReport
from gp51_integrity.scheduler import PeriodicTask
from gp51_integrity.schemas import GP51ResponseValidator
from gp51_integrity.scoring import ConsistencyScorer
from gp51_integrity.storage import ReportStorage
from gp51_integrity.store import CONSISTENCY_LOG_TABLE, SupabaseStore

logger = logging.getLogger(__name__)

CategoryFn = Callable[[SupabaseStore, GP51ResponseValidator, IntegrityConfig], list[ConsistencyCheck]]

CATEGORIES: list[tuple[str, CheckType, CategoryFn]] = [
    ("user_vehicle_consistency", "user_vehicle_link", check_fns.check_user_vehicle_consistency),
    ("vehicle_data_integrity", "data_integrity", check_fns.check_vehicle_data_integrity),
    ("referential_integrity", "referential_integrity", check_fns.check_referential_integrity),
    ("data_format_consistency", "data_integrity", check_fns.check_data_format_consistency),
    ("business_rule_consistency", "data_integrity", check_fns.check_business_rule_consistency),
]

_ALERT_HEALTH = ("poor", "critical")


class ConsistencyVerifier:
    """Runs consistency check categories and produces ConsistencyReport objects."""

    def __init__(
        self,
        config: IntegrityConfig,
        store: SupabaseStore,
        validator: GP51ResponseValidator | None = None,
        storage: ReportStorage | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.validator = validator or GP51ResponseValidator()
        self.storage = storage
        self.scorer = ConsistencyScorer()
        self._monitor: PeriodicTask | None = None

    def get_available_checks(self) -> list[dict]:
        """Catalog of check categories in execution order."""
        return [
            {"name": name, "check_type": check_type, "description": (fn.__doc__ or "").strip()}
            for name, check_type, fn in CATEGORIES
        ]

    def run_category(self, name: str, fn: CategoryFn, check_type: CheckType) -> list[ConsistencyCheck]:
        """Execute one category safely.

        If the category raises, returns a single failed/critical check named
        ``<name>_error`` rather than propagating the exception.

        Args:
            name: Category name from the catalog.
            fn: The category function.
            check_type: Check type used for the synthetic error finding.

        Returns:
            The category's findings, or one error finding.
        """
        try:
            return fn(self.store, self.validator, self.config)
        except Exception as exc:
            logger.error("Check category %s failed: %s", name, exc, exc_info=True)
            return [ConsistencyCheck(
                name=f"{name}_error",
                check_type=check_type,
                status="failed",
                message=f"Check category {name} failed: {exc}",
                severity="critical",
                auto_fixable=False,
                details={"category": name, "error": str(exc), "error_type": type(exc).__name__},
            )]

    def perform_full_consistency_check(self) -> ConsistencyReport:
        """Run every category in order and return the scored report."""
        return self._run(CATEGORIES)

    def execute_specific_checks(self, category_names: Sequence[str]) -> ConsistencyReport:
        """Run a subset of categories, in catalog order.

        Raises:
            ValueError: If a name is not a known category.
        """
        known = {name for name, _, _ in CATEGORIES}
        unknown = [n for n in category_names if n not in known]
        if unknown:
            raise ValueError(f"Unknown check categories: {', '.join(unknown)}")
        wanted = set(category_names)
        return self._run([c for c in CATEGORIES if c[0] in wanted])

    def _run(self, categories: list[tuple[str, CheckType, CategoryFn]]) -> ConsistencyReport:
        started = datetime.now(UTC)
        logger.info("Starting consistency check over %d categories", len(categories))
        try:
            checks: list[ConsistencyCheck] = []
            for name, check_type, fn in categories:
                logger.debug("Running check category: %s", name)
                checks.extend(self.run_category(name, fn, check_type))
            report = self._build_report(checks, started)
        except Exception:
            logger.exception("Consistency check aborted")
            raise
        logger.info(
            "Consistency check finished: score=%d health=%s (%d passed, %d failed, %d warning)",
            report.overall_score,
            report.data_health,
            report.checks_passed,
            report.checks_failed,
            report.checks_warning,
        )
        return report

    def _build_report(self, checks: list[ConsistencyCheck], started: datetime) -> ConsistencyReport:
        score = self.scorer.calculate_score(checks)
        return ConsistencyReport(
            timestamp=started,
            overall_score=score,
            checks_performed=len(checks),
            checks_passed=sum(1 for c in checks if c.status == "passed"),
            checks_failed=sum(1 for c in checks if c.status == "failed"),
            checks_warning=sum(1 for c in checks if c.status == "warning"),
            checks=checks,
            recommendations=self.scorer.build_recommendations(checks),
            data_health=self.scorer.derive_health(score, checks),
        )

    def log_consistency_check(self, report: ConsistencyReport) -> bool:
        """Append the compact audit row for a report. Failures are logged, not raised."""
        row = {
            "overall_score": report.overall_score,
            "checks_performed": report.checks_performed,
            "checks_passed": report.checks_passed,
            "checks_failed": report.checks_failed,
            "data_health": report.data_health,
            "report_data": report.model_dump(mode="json"),
        }
        try:
            self.store.insert(CONSISTENCY_LOG_TABLE, row)
        except Exception as exc:
            logger.error("Failed to write consistency log for report %s: %s", report.id, exc)
            return False
        return True

    def monitoring_tick(self) -> ConsistencyReport:
        """One real-time monitoring cycle."""
        report = self.perform_full_consistency_check()
        if report.data_health in _ALERT_HEALTH:
            logger.warning(
                "Data health alert: health=%s score=%d failed=%d",
                report.data_health,
                report.overall_score,
                report.checks_failed,
            )
        self.log_consistency_check(report)
        if self.storage is not None:
            self.storage.save_report(report)
        return report

    def start_realtime_monitoring(self, interval_seconds: float | None = None) -> PeriodicTask:
        """Start periodic full checks. Calling again while running is a no-op."""
        if self._monitor is not None and self._monitor.is_running:
            return self._monitor
        interval = interval_seconds or self.config.monitoring_interval_seconds
        self._monitor = PeriodicTask("consistency-monitor", self.monitoring_tick, interval)
        return self._monitor.start()

    def stop_realtime_monitoring(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None
