"""JSON-based file storage for consistency reports and reconciliation jobs.

Persists history to the local filesystem under the configured
report_storage_path, enabling history queries and trend comparison.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from gp51_integrity.models import ConsistencyReport, ReconciliationJob

logger = logging.getLogger(__name__)


class ReportStorage:
    """Manages persistence of consistency reports and reconciliation jobs."""

    def __init__(self, base_path: str) -> None:
        self.base_path = Path(base_path)
        self.reports_path = self.base_path / "reports"
        self.jobs_path = self.base_path / "jobs"
        self.reports_path.mkdir(parents=True, exist_ok=True)
        self.jobs_path.mkdir(parents=True, exist_ok=True)

    def save_report(self, report: ConsistencyReport) -> str:
        """Persist a consistency report to disk.

        Args:
            report: The ConsistencyReport to save.

        Returns:
            The report ID.
        """
        file_path = self.reports_path / f"{report.id}.json"
        file_path.write_text(report.model_dump_json(indent=2))
        logger.info("Saved consistency report %s to %s", report.id, file_path)
        return report.id

    def load_report(self, report_id: str) -> ConsistencyReport:
        """Load a consistency report by ID.

        Raises:
            FileNotFoundError: If the report file does not exist.
        """
        file_path = self.reports_path / f"{report_id}.json"
        if not file_path.exists():
            raise FileNotFoundError(f"Consistency report not found: {report_id}")
        return ConsistencyReport.model_validate_json(file_path.read_text())

    def list_reports(self, limit: int = 50) -> list[dict]:
        """List stored reports, newest first.

        Returns:
            List of summary dicts with id, timestamp, score, health and counts.
        """
        results: list[dict] = []
        for data in self._iter_json(self.reports_path):
            if len(results) >= limit:
                break
            try:
                results.append({
                    "id": data["id"],
                    "timestamp": data.get("timestamp"),
                    "overall_score": data.get("overall_score"),
                    "data_health": data.get("data_health"),
                    "checks_performed": data.get("checks_performed"),
                    "checks_failed": data.get("checks_failed"),
                })
            except KeyError as exc:
                logger.warning("Skipping report without %s", exc)
        return results

    def save_job(self, job: ReconciliationJob) -> str:
        """Persist a reconciliation job to disk and return its ID."""
        file_path = self.jobs_path / f"{job.id}.json"
        file_path.write_text(job.model_dump_json(indent=2))
        logger.info("Saved reconciliation job %s to %s", job.id, file_path)
        return job.id

    def load_job(self, job_id: str) -> ReconciliationJob:
        """Load a reconciliation job by ID.

        Raises:
            FileNotFoundError: If the job file does not exist.
        """
        file_path = self.jobs_path / f"{job_id}.json"
        if not file_path.exists():
            raise FileNotFoundError(f"Reconciliation job not found: {job_id}")
        return ReconciliationJob.model_validate_json(file_path.read_text())

    def list_jobs(self, status: str | None = None, limit: int = 50) -> list[dict]:
        """List stored jobs, newest first, optionally filtered by status."""
        results: list[dict] = []
        for data in self._iter_json(self.jobs_path):
            if len(results) >= limit:
                break
            if status and data.get("status") != status:
                continue
            try:
                results.append({
                    "id": data["id"],
                    "trigger": data.get("trigger"),
                    "status": data.get("status"),
                    "started_at": data.get("started_at"),
                    "completed_at": data.get("completed_at"),
                    "total_records_fixed": data.get("total_records_fixed"),
                    "error_count": data.get("error_count"),
                })
            except KeyError as exc:
                logger.warning("Skipping job without %s", exc)
        return results

    def _iter_json(self, directory: Path):
        files = sorted(directory.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        for file_path in files:
            try:
                yield json.loads(file_path.read_text())
            except json.JSONDecodeError as exc:
                logger.warning("Skipping corrupt file %s: %s", file_path, exc)
