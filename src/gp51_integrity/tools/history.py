"""Consistency report history and comparison MCP tools.

Provides tools to browse past consistency reports and compare two reports
for trend analysis (score deltas, new/resolved findings).
"""

from __future__ import annotations

from gp51_integrity.storage import ReportStorage


def get_report_history(storage: ReportStorage, limit: int = 10) -> dict:
    """Retrieve a list of past consistency reports.

    Args:
        storage: Report storage instance.
        limit: Maximum number of results to return.

    Returns:
        Dict with list of report summaries, newest first.
    """
    reports = storage.list_reports(limit=limit)
    return {
        "reports": reports,
        "total_returned": len(reports),
    }


def compare_reports(storage: ReportStorage, report_id_1: str, report_id_2: str) -> dict:
    """Compare two consistency reports for trend analysis.

    A finding counts as a problem when its status is failed or warning.

    Args:
        storage: Report storage instance.
        report_id_1: The older report ID.
        report_id_2: The newer report ID.

    Returns:
        Dict with comparison data.
    """
    try:
        report_1 = storage.load_report(report_id_1)
        report_2 = storage.load_report(report_id_2)
    except FileNotFoundError as exc:
        return {"status": "error", "message": str(exc)}

    score_delta = report_2.overall_score - report_1.overall_score

    problems_1 = {c.name for c in report_1.checks if c.status != "passed"}
    problems_2 = {c.name for c in report_2.checks if c.status != "passed"}

    trend = "improving" if score_delta > 0 else "declining" if score_delta < 0 else "stable"

    return {
        "report_id_1": report_id_1,
        "report_id_2": report_id_2,
        "score_1": report_1.overall_score,
        "score_2": report_2.overall_score,
        "score_delta": score_delta,
        "health_1": report_1.data_health,
        "health_2": report_2.data_health,
        "checks_count_1": report_1.checks_performed,
        "checks_count_2": report_2.checks_performed,
        "trend": trend,
        "new_findings": sorted(problems_2 - problems_1),
        "resolved_findings": sorted(problems_1 - problems_2),
        "persistent_findings": sorted(problems_1 & problems_2),
    }
