"""Reconciliation MCP tools.

Lists repair rules, starts automatic or manual reconciliation jobs and reports
on job status, live from the in-memory registry or from stored history.
"""

from __future__ import annotations

from gp51_integrity.reconciliation import ReconciliationService
from gp51_integrity.storage import ReportStorage


def list_reconciliation_rules(service: ReconciliationService, auto_only: bool = False) -> dict:
    """List reconciliation rules in execution order.

    Args:
        service: Reconciliation service.
        auto_only: Only include rules that run during automatic reconciliation.

    Returns:
        Dict with list of rules and total count.
    """
    rules = [r for r in service.get_available_rules() if r.auto_execute or not auto_only]
    return {
        "rules": [r.model_dump(mode="json") for r in rules],
        "total_count": len(rules),
    }


def run_automatic_reconciliation(service: ReconciliationService) -> dict:
    """Run every auto-executable rule the current data calls for."""
    return service.perform_automatic_reconciliation().model_dump(mode="json")


def run_manual_reconciliation(service: ReconciliationService, rule_ids: list[str]) -> dict:
    """Run the named rules, whether or not they auto-execute."""
    return service.perform_manual_reconciliation(rule_ids).model_dump(mode="json")


def get_reconciliation_job(service: ReconciliationService, storage: ReportStorage, job_id: str) -> dict:
    """Look up a job in the live registry, falling back to stored history.

    Returns:
        Dict representation of the job, or an error dict if it is unknown.
    """
    job = service.get_job_status(job_id)
    if job is None:
        try:
            job = storage.load_job(job_id)
        except FileNotFoundError:
            return {"status": "error", "message": f"Reconciliation job not found: {job_id}"}
    return job.model_dump(mode="json")


def list_reconciliation_jobs(
    service: ReconciliationService,
    storage: ReportStorage,
    active_only: bool = False,
    limit: int = 20,
) -> dict:
    """List reconciliation jobs.

    Args:
        service: Reconciliation service.
        storage: Report storage holding finished jobs.
        active_only: Only list pending or running jobs from this process.
        limit: Maximum number of stored jobs to include.

    Returns:
        Dict with ``active`` jobs and, unless ``active_only``, stored ``history``.
    """
    active = [j.model_dump(mode="json") for j in service.get_active_jobs()]
    result: dict = {"active": active, "active_count": len(active)}
    if not active_only:
        history = storage.list_jobs(limit=limit)
        result["history"] = history
        result["history_count"] = len(history)
    return result
