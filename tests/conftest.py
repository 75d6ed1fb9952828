"""Shared test fixtures for the GP51 data integrity test suite.

Unit tests use MagicMock to simulate HTTP responses from requests, and an
in-memory FakeStore that understands the PostgREST filters and RPC helpers
the checks and repairs use. Integration tests (tests/integration/) require
live Supabase and GP51 credentials.
"""

from __future__ import annotations

import copy
import os
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from gp51_integrity.config import IntegrityConfig
from gp51_integrity.storage import ReportStorage
from gp51_integrity.store import USERS_TABLE, VEHICLES_TABLE


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _matches(value: Any, expression: str) -> bool:
    negate = expression.startswith("not.")
    if negate:
        expression = expression[4:]
    op, _, arg = expression.partition(".")
    if op == "is":
        result = value is None if arg == "null" else value is not None and _text(value) == arg
    elif op == "eq":
        result = value is not None and _text(value) == arg
    elif op == "neq":
        result = value is not None and _text(value) != arg
    elif op == "in":
        result = value is not None and _text(value) in arg.strip("()").split(",")
    else:
        raise ValueError(f"Unsupported filter operator: {op}")
    return not result if negate else result


def _row_matches(row: dict, column: str, expression: str) -> bool:
    if column == "or":
        parts = expression.strip("()").split(",")
        return any(_matches(row.get(col), expr) for col, _, expr in (p.partition(".") for p in parts))
    return _matches(row.get(column), expression)


class FakeStore:
    """In-memory stand-in for SupabaseStore."""

    def __init__(self, tables: dict[str, list[dict]] | None = None) -> None:
        self.tables: dict[str, list[dict]] = {VEHICLES_TABLE: [], USERS_TABLE: []}
        for name, rows in (tables or {}).items():
            self.tables[name] = [dict(r) for r in rows]
        self.updates: list[tuple[str, dict, dict]] = []
        self.selects: list[tuple[str, dict | None, int | None]] = []

    def _filtered(self, table: str, filters: dict[str, str] | None) -> list[dict]:
        rows = self.tables.setdefault(table, [])
        return [r for r in rows if all(_row_matches(r, col, expr) for col, expr in (filters or {}).items())]

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, str] | None = None,
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict]:
        self.selects.append((table, filters, limit))
        rows = self._filtered(table, filters)
        if order:
            column, _, direction = order.partition(".")
            rows = sorted(rows, key=lambda r: _text(r.get(column)), reverse=direction == "desc")
        if limit is not None:
            rows = rows[:limit]
        if columns == "*":
            return copy.deepcopy(rows)
        keys = columns.split(",")
        return [{k: copy.deepcopy(r.get(k)) for k in keys} for r in rows]

    def insert(self, table: str, row: dict[str, Any]) -> list[dict]:
        self.tables.setdefault(table, []).append(copy.deepcopy(row))
        return [copy.deepcopy(row)]

    def update(self, table: str, values: dict[str, Any], filters: dict[str, str]) -> list[dict]:
        if not filters:
            raise ValueError("Refusing to update without a filter")
        rows = self._filtered(table, filters)
        for row in rows:
            row.update(copy.deepcopy(values))
        self.updates.append((table, values, filters))
        return copy.deepcopy(rows)

    def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        if function == "find_duplicate_device_ids":
            counts = Counter(v.get("device_id") for v in self.tables[VEHICLES_TABLE] if v.get("device_id"))
            return [{"device_id": d, "count": n} for d, n in counts.items() if n > 1]
        if function == "check_referential_integrity":
            params = params or {}
            targets = {r.get(params["target_column"]) for r in self.tables.get(params["target_table"], [])}
            column = params["source_column"]
            return [
                {"id": r.get("id"), column: r.get(column)}
                for r in self.tables.get(params["source_table"], [])
                if r.get(column) is not None and r.get(column) not in targets
            ]
        raise ValueError(f"Unknown RPC function: {function}")

    def vehicle(self, vehicle_id: Any) -> dict:
        return next(v for v in self.tables[VEHICLES_TABLE] if v.get("id") == vehicle_id)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def env_configured() -> bool:
    """Check whether Supabase environment variables are configured."""
    required_vars = ["SUPABASE_URL", "SUPABASE_SERVICE_KEY"]
    return all(os.environ.get(var) for var in required_vars)


@pytest.fixture
def integrity_config(tmp_path: Path) -> IntegrityConfig:
    """Return an IntegrityConfig with test values."""
    return IntegrityConfig(
        SUPABASE_URL="https://test.supabase.co",
        SUPABASE_SERVICE_KEY="service-key",
        STORE_TIMEOUT=10,
        STORE_MAX_RETRIES=0,
        GP51_BASE_URL="https://gp51.test/webapi",
        GP51_USERNAME="operator",
        GP51_PASSWORD="secret",
        GP51_MAX_RETRIES=0,
        REPORT_STORAGE_PATH=str(tmp_path / "integrity-storage"),
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def mock_session() -> MagicMock:
    """Return a MagicMock that simulates a requests.Session."""
    session = MagicMock()
    response = MagicMock()
    response.ok = True
    response.status_code = 200
    response.content = b"[]"
    response.json.return_value = []
    session.request.return_value = response
    return session


@pytest.fixture
def fake_store() -> FakeStore:
    """Return an empty in-memory store."""
    return FakeStore()


@pytest.fixture
def make_store() -> Callable[..., FakeStore]:
    """Return a factory building a FakeStore from table rows."""

    def _make(vehicles: list[dict] | None = None, users: list[dict] | None = None) -> FakeStore:
        return FakeStore({VEHICLES_TABLE: vehicles or [], USERS_TABLE: users or []})

    return _make


@pytest.fixture
def report_storage(tmp_path: Path) -> ReportStorage:
    """Return a ReportStorage using a temp directory."""
    return ReportStorage(str(tmp_path / "report-storage"))
