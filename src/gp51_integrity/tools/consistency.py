"""Consistency verification MCP tools.

Runs a full or partial consistency check, records it in the store's audit log
and the local report history, and lists the available check categories.
"""

from __future__ import annotations

from gp51_integrity.storage import ReportStorage
from gp51_integrity.verifier import ConsistencyVerifier


def run_consistency_check(
    verifier: ConsistencyVerifier,
    storage: ReportStorage,
    categories: list[str] | None = None,
    severity_filter: str | None = None,
) -> dict:
    """Execute consistency checks and return the report.

    Args:
        verifier: Consistency verifier bound to the local store.
        storage: Report storage for persisting results.
        categories: Optional subset of category names; all categories when omitted.
        severity_filter: Optional severity; only findings of that severity are
            listed under ``checks`` (score and counts still cover every finding).

    Returns:
        Dict representation of the ConsistencyReport plus a ``logged`` flag.
    """
    if categories:
        try:
            report = verifier.execute_specific_checks(categories)
        except ValueError as exc:
            return {"status": "error", "message": str(exc)}
    else:
        report = verifier.perform_full_consistency_check()

    logged = verifier.log_consistency_check(report)
    storage.save_report(report)

    data = report.model_dump(mode="json")
    if severity_filter:
        data["checks"] = [c for c in data["checks"] if c["severity"] == severity_filter]
    data["logged"] = logged
    return data


def list_consistency_checks(verifier: ConsistencyVerifier) -> dict:
    """List check categories in the order they run."""
    checks = verifier.get_available_checks()
    return {
        "checks": checks,
        "total_count": len(checks),
        "check_types": sorted({c["check_type"] for c in checks}),
    }
