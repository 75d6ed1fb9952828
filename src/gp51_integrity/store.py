"""Local store client for the Supabase (PostgREST) REST interface.

Provides select / insert / update / RPC calls against the ``vehicles`` and
``envio_users`` tables, the ``data_consistency_logs`` audit table and the
RPC helpers the consistency checks rely on.
"""

from __future__ import annotations

import logging
from typing import Any

from gp51_integrity.client import BaseHTTPClient
from gp51_integrity.config import IntegrityConfig

logger = logging.getLogger(__name__)

VEHICLES_TABLE = "vehicles"
USERS_TABLE = "envio_users"
CONSISTENCY_LOG_TABLE = "data_consistency_logs"


class SupabaseStore(BaseHTTPClient):
    """REST client for the PostgREST endpoint of the local store.

    Filters are PostgREST operator expressions keyed by column, e.g.
    ``{"envio_user_id": "is.null"}`` or ``{"id": "eq.42"}``.
    """

    def __init__(self, config: IntegrityConfig) -> None:
        super().__init__(
            f"{config.supabase_url.rstrip('/')}/rest/v1",
            timeout=config.store_timeout,
            max_retries=config.store_max_retries,
        )
        self.config = config
        self.session.headers.update({
            "apikey": config.supabase_service_key,
            "Authorization": f"Bearer {config.supabase_service_key}",
        })

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, str] | None = None,
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict]:
        """Query rows from a table.

        Args:
            table: Table name (e.g. 'vehicles').
            columns: PostgREST select list.
            filters: Optional column -> operator expression mapping.
            limit: Maximum number of rows to return.
            order: Optional order clause (e.g. 'created_at.desc').

        Returns:
            List of row dictionaries.
        """
        params: dict[str, str | int] = {"select": columns}
        if filters:
            params.update(filters)
        if limit is not None:
            params["limit"] = limit
        if order:
            params["order"] = order

        response = self._request("GET", f"{self.base_url}/{table}", params=params)
        data = response.json()
        return data if isinstance(data, list) else []

    def insert(self, table: str, row: dict[str, Any]) -> list[dict]:
        """Insert one row and return the stored representation."""
        response = self._request(
            "POST",
            f"{self.base_url}/{table}",
            json=row,
            headers={"Prefer": "return=representation"},
        )
        data = response.json() if response.content else []
        return data if isinstance(data, list) else [data]

    def update(self, table: str, values: dict[str, Any], filters: dict[str, str]) -> list[dict]:
        """Update rows matching ``filters`` and return them.

        Raises:
            ValueError: If no filters are given; whole-table updates are refused.
        """
        if not filters:
            raise ValueError(f"Refusing to update every row of {table} without a filter")
        response = self._request(
            "PATCH",
            f"{self.base_url}/{table}",
            params=dict(filters),
            json=values,
            headers={"Prefer": "return=representation"},
        )
        data = response.json() if response.content else []
        return data if isinstance(data, list) else [data]

    def rpc(self, function: str, params: dict[str, Any] | None = None) -> Any:
        """Call a stored procedure exposed under /rpc."""
        response = self._request("POST", f"{self.base_url}/rpc/{function}", json=params or {})
        return response.json() if response.content else None
