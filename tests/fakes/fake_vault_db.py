"""In-memory versioned tables standing in for the Supabase-backed ones."""

import copy
import threading
import uuid
from collections.abc import Callable
from typing import Any

from vault_engine.core.exceptions import VersionConflictError
from vault_engine.db.versioned_rows import FIELD_KEY, SECTION_KEY


class FakeVersionedTable:
    """
    Thread-safe stand-in for SupabaseVersionedTable.

    Enforces the unique (key, version) constraint the real table has, so
    concurrent writers collide exactly as they would in Postgres.
    ``before_insert`` runs (outside the lock) ahead of every insert and may
    write to the table to simulate a writer sneaking in.
    """

    def __init__(self, table: str, key_columns: tuple[str, ...]):
        self.table = table
        self.key_columns = key_columns
        self.rows: list[dict[str, Any]] = []
        self.insert_attempts = 0
        self.conflicts = 0
        self.before_insert: Callable[[dict[str, Any]], None] | None = None
        self.fail_inserts_with: Exception | None = None
        self._lock = threading.RLock()

    def _key_of(self, row: dict[str, Any]) -> tuple:
        return tuple(row.get(c) for c in self.key_columns)

    def _matching(self, key: dict[str, Any]) -> list[dict[str, Any]]:
        wanted = tuple(key[c] for c in self.key_columns)
        return [r for r in self.rows if self._key_of(r) == wanted]

    # -- SupabaseVersionedTable interface ---------------------------------

    def get_current(self, key: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            current = [r for r in self._matching(key) if r["is_current_version"]]
            current.sort(key=lambda r: r["version"], reverse=True)
            return copy.deepcopy(current[0]) if current else None

    def get_latest(self, key: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            rows = sorted(self._matching(key), key=lambda r: r["version"], reverse=True)
            return copy.deepcopy(rows[0]) if rows else None

    def list_current(
        self, funnel_id: str, section_ids: list[str] | None = None
    ) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self.rows
                if r["funnel_id"] == funnel_id
                and r["is_current_version"]
                and (section_ids is None or r["section_id"] in section_ids)
            ]

    def insert_version(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.before_insert is not None:
            hook, self.before_insert = self.before_insert, None
            hook(row)
        with self._lock:
            self.insert_attempts += 1
            if self.fail_inserts_with is not None:
                raise self.fail_inserts_with
            key = self._key_of(row)
            if any(
                self._key_of(r) == key and r["version"] == row["version"] for r in self.rows
            ):
                self.conflicts += 1
                raise VersionConflictError(f"{self.table} version {row['version']} already exists")
            stored = {"id": str(uuid.uuid4()), **copy.deepcopy(row)}
            self.rows.append(stored)
            return copy.deepcopy(stored)

    def set_current(self, row_id: str, is_current: bool) -> None:
        with self._lock:
            for r in self.rows:
                if r["id"] == row_id:
                    r["is_current_version"] = is_current

    def demote_older(self, key: dict[str, Any], version: int) -> None:
        with self._lock:
            for r in self._matching(key):
                if r["is_current_version"] and r["version"] < version:
                    r["is_current_version"] = False

    def update_row(self, row_id: str, patch: dict[str, Any]) -> None:
        with self._lock:
            for r in self.rows:
                if r["id"] == row_id:
                    r.update(copy.deepcopy(patch))

    def max_display_order(self, funnel_id: str, section_id: str) -> int:
        with self._lock:
            orders = [
                r.get("display_order") or 0
                for r in self.rows
                if r["funnel_id"] == funnel_id and r["section_id"] == section_id
            ]
            return max(orders, default=0)

    # -- Test helpers ------------------------------------------------------

    def versions(self, **key: Any) -> list[int]:
        with self._lock:
            return sorted(r["version"] for r in self._matching(key))

    def current_rows(self, **key: Any) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._matching(key) if r["is_current_version"]]

    def seed(self, **row: Any) -> dict[str, Any]:
        """Insert a row directly, bypassing the versioning logic."""
        with self._lock:
            stored = {"id": str(uuid.uuid4()), "is_current_version": True, **row}
            self.rows.append(stored)
            return copy.deepcopy(stored)


def fake_sections_table() -> FakeVersionedTable:
    return FakeVersionedTable("vault_content", SECTION_KEY)


def fake_fields_table() -> FakeVersionedTable:
    return FakeVersionedTable("vault_content_fields", FIELD_KEY)
