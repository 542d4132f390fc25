"""Versioned row repository over Supabase tables.

Rows of a versioned table are identified by a key (e.g. funnel_id +
section_id) plus a ``version`` column, with a unique constraint on
(key..., version) and an ``is_current_version`` flag. This repository only
exposes single-row reads and conditional writes; the flip-then-insert
protocol on top of it lives in core/versioned_store.py.
"""

from typing import Any

from postgrest.exceptions import APIError

from vault_engine.core.exceptions import VersionConflictError
from vault_engine.core.logging import get_logger
from vault_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

UNIQUE_VIOLATION = "23505"

SECTIONS_TABLE = "vault_content"
SECTION_KEY = ("funnel_id", "section_id")

FIELDS_TABLE = "vault_content_fields"
FIELD_KEY = ("funnel_id", "section_id", "field_id")


class SupabaseVersionedTable:
    """Single-table versioned row operations."""

    def __init__(self, table: str, key_columns: tuple[str, ...], client: Any = None):
        self.table = table
        self.key_columns = key_columns
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def _filtered(self, query: Any, key: dict[str, Any]) -> Any:
        for column in self.key_columns:
            query = query.eq(column, key[column])
        return query

    def get_current(self, key: dict[str, Any]) -> dict[str, Any] | None:
        """Get the current row for a key, or None."""
        try:
            query = self.client.table(self.table).select("*")
            response = (
                self._filtered(query, key)
                .eq("is_current_version", True)
                .order("version", desc=True)
                .limit(1)
                .execute()
            )
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Failed to get current {self.table} row for {key}: {e}")
            raise

    def get_latest(self, key: dict[str, Any]) -> dict[str, Any] | None:
        """Get the highest-version row for a key regardless of current flag."""
        try:
            query = self.client.table(self.table).select("*")
            response = self._filtered(query, key).order("version", desc=True).limit(1).execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Failed to get latest {self.table} row for {key}: {e}")
            raise

    def list_current(
        self, funnel_id: str, section_ids: list[str] | None = None
    ) -> list[dict[str, Any]]:
        """List current rows for a funnel, optionally limited to some sections."""
        try:
            query = (
                self.client.table(self.table)
                .select("*")
                .eq("funnel_id", funnel_id)
                .eq("is_current_version", True)
            )
            if section_ids is not None:
                if not section_ids:
                    return []
                query = query.in_("section_id", section_ids)
            response = query.execute()
            return response.data or []
        except Exception as e:
            logger.error(f"Failed to list current {self.table} rows: {e}", extra={"funnel_id": funnel_id})
            raise

    def insert_version(self, row: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a new version row.

        Raises:
            VersionConflictError: If (key, version) already exists
        """
        try:
            response = self.client.table(self.table).insert(row).execute()
        except APIError as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise VersionConflictError(
                    f"{self.table} version {row.get('version')} already exists"
                ) from e
            logger.error(f"Failed to insert {self.table} version: {e}")
            raise

        if not response.data:
            raise ValueError(f"No data returned from {self.table} insert")
        return response.data[0]

    def set_current(self, row_id: str, is_current: bool) -> None:
        """Flip the current flag on one row."""
        try:
            self.client.table(self.table).update({"is_current_version": is_current}).eq(
                "id", row_id
            ).execute()
        except Exception as e:
            logger.error(f"Failed to flip {self.table} row {row_id}: {e}")
            raise

    def demote_older(self, key: dict[str, Any], version: int) -> None:
        """Clear the current flag on any row of ``key`` below ``version``."""
        try:
            query = self.client.table(self.table).update({"is_current_version": False})
            (
                self._filtered(query, key)
                .eq("is_current_version", True)
                .lt("version", version)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to demote {self.table} rows below v{version} for {key}: {e}")
            raise

    def update_row(self, row_id: str, patch: dict[str, Any]) -> None:
        """Update bookkeeping columns (status, error_message) on one row."""
        try:
            self.client.table(self.table).update(patch).eq("id", row_id).execute()
        except Exception as e:
            logger.error(f"Failed to update {self.table} row {row_id}: {e}")
            raise

    def max_display_order(self, funnel_id: str, section_id: str) -> int:
        """Highest display_order among a section's fields (0 when none)."""
        try:
            response = (
                self.client.table(self.table)
                .select("display_order")
                .eq("funnel_id", funnel_id)
                .eq("section_id", section_id)
                .order("display_order", desc=True)
                .limit(1)
                .execute()
            )
            if response.data and response.data[0].get("display_order") is not None:
                return int(response.data[0]["display_order"])
            return 0
        except Exception as e:
            logger.error(f"Failed to read display order for {section_id}: {e}")
            raise


def sections_table(client: Any = None) -> SupabaseVersionedTable:
    return SupabaseVersionedTable(SECTIONS_TABLE, SECTION_KEY, client)


def fields_table(client: Any = None) -> SupabaseVersionedTable:
    return SupabaseVersionedTable(FIELDS_TABLE, FIELD_KEY, client)
