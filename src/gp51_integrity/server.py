"""FastMCP server entry point for the GP51 data integrity service.

Registers all MCP tools and starts the server. The server reads the local
Supabase store to verify fleet data consistency, repairs what it can through
reconciliation rules and talks to GP51 for fresh device metadata.
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from gp51_integrity.config import IntegrityConfig, get_config
from gp51_integrity.exceptions import IntegrityError
from gp51_integrity.gp51 import GP51Client
from gp51_integrity.realtime import PositionPoller
from gp51_integrity.reconciliation import ReconciliationService
from gp51_integrity.storage import ReportStorage
from gp51_integrity.store import VEHICLES_TABLE, SupabaseStore
from gp51_integrity.tools.consistency import list_consistency_checks, run_consistency_check
from gp51_integrity.tools.history import compare_reports, get_report_history
from gp51_integrity.tools.reconciliation import (
    get_reconciliation_job,
    list_reconciliation_jobs,
    list_reconciliation_rules,
    run_automatic_reconciliation,
    run_manual_reconciliation,
)
from gp51_integrity.verifier import ConsistencyVerifier

logger = logging.getLogger(__name__)

mcp = FastMCP("gp51-integrity")

# Shared service instances, built on first tool call
_config: IntegrityConfig | None = None
_verifier: ConsistencyVerifier | None = None
_service: ReconciliationService | None = None
_storage: ReportStorage | None = None
_poller: PositionPoller | None = None


def _get_dependencies() -> tuple[IntegrityConfig, ConsistencyVerifier, ReconciliationService, ReportStorage]:
    """Lazily build and return the config, verifier, reconciliation service and storage."""
    global _config, _verifier, _service, _storage  # noqa: PLW0603
    if _config is None:
        config = get_config()
        store = SupabaseStore(config)
        _storage = ReportStorage(config.report_storage_path)
        _verifier = ConsistencyVerifier(config, store, storage=_storage)
        _service = ReconciliationService(
            config,
            store,
            _verifier,
            remote=GP51Client(config),
            storage=_storage,
        )
        _config = config
    return _config, _verifier, _service, _storage  # type: ignore[return-value]


def _get_poller() -> PositionPoller:
    """Lazily build the position poller around the shared GP51 client."""
    global _poller  # noqa: PLW0603
    if _poller is None:
        config, _, service, _ = _get_dependencies()
        _poller = PositionPoller(service.remote, config)
    return _poller


@mcp.tool()
def consistency_check(categories: list[str] | None = None, severity_filter: str | None = None) -> dict:
    """Run the fleet data consistency check, optionally limited to some categories."""
    _, verifier, _, storage = _get_dependencies()
    return run_consistency_check(verifier, storage, categories=categories, severity_filter=severity_filter)


@mcp.tool()
def consistency_checks_catalog() -> dict:
    """List the consistency check categories in execution order."""
    _, verifier, _, _ = _get_dependencies()
    return list_consistency_checks(verifier)


@mcp.tool()
def reconciliation_rules(auto_only: bool = False) -> dict:
    """List reconciliation rules, optionally only the auto-executable ones."""
    _, _, service, _ = _get_dependencies()
    return list_reconciliation_rules(service, auto_only=auto_only)


@mcp.tool()
def reconciliation_auto() -> dict:
    """Verify the data and run every auto-executable rule it calls for."""
    _, _, service, _ = _get_dependencies()
    return run_automatic_reconciliation(service)


@mcp.tool()
def reconciliation_manual(rule_ids: list[str] | None = None) -> dict:
    """Run specific reconciliation rules by id."""
    if not rule_ids:
        return {"status": "error", "message": "rule_ids is required"}
    _, _, service, _ = _get_dependencies()
    return run_manual_reconciliation(service, rule_ids)


@mcp.tool()
def reconciliation_job(job_id: str = "") -> dict:
    """Get the status and results of a reconciliation job."""
    if not job_id:
        return {"status": "error", "message": "job_id is required"}
    _, _, service, storage = _get_dependencies()
    return get_reconciliation_job(service, storage, job_id)


@mcp.tool()
def reconciliation_jobs(active_only: bool = False, limit: int = 20) -> dict:
    """List active reconciliation jobs and recent job history."""
    _, _, service, storage = _get_dependencies()
    return list_reconciliation_jobs(service, storage, active_only=active_only, limit=limit)


@mcp.tool()
def report_history(limit: int = 10) -> dict:
    """Retrieve past consistency reports for trend analysis."""
    _, _, _, storage = _get_dependencies()
    return get_report_history(storage, limit=limit)


@mcp.tool()
def report_compare(report_id_1: str = "", report_id_2: str = "") -> dict:
    """Compare two consistency reports showing score deltas and finding changes."""
    if not report_id_1 or not report_id_2:
        return {"status": "error", "message": "Both report_id_1 and report_id_2 are required"}
    _, _, _, storage = _get_dependencies()
    return compare_reports(storage, report_id_1, report_id_2)


@mcp.tool()
def gp51_health() -> dict:
    """Check the GP51 connection: login, session validity and device count."""
    _, _, service, _ = _get_dependencies()
    if service.remote is None:
        return {"status": "error", "message": "No GP51 client configured"}
    return service.remote.get_connection_health().model_dump(mode="json")


@mcp.tool()
def gp51_positions() -> dict:
    """Fetch positions reported since the last poll, with derived alerts."""
    try:
        update = _get_poller().poll_once()
    except IntegrityError as exc:
        return {"status": "error", "message": str(exc)}
    return update.model_dump(mode="json")


@mcp.tool()
def health_check() -> dict:
    """Verify the server is running and can reach the local store."""
    try:
        config, verifier, _, _ = _get_dependencies()
        verifier.store.select(VEHICLES_TABLE, columns="id", limit=1)
        return {"status": "healthy", "store": config.supabase_url}
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}


def main() -> None:
    """Entry point for the gp51-integrity MCP server."""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("Starting gp51-integrity MCP server")
    _, verifier, service, _ = _get_dependencies()
    verifier.start_realtime_monitoring()
    service.start_scheduled_reconciliation()
    poller = _get_poller() if config.gp51_username else None
    if poller is not None:
        poller.start()
    try:
        mcp.run()
    finally:
        verifier.stop_realtime_monitoring()
        service.stop_scheduled_reconciliation()
        if poller is not None:
            poller.stop()
