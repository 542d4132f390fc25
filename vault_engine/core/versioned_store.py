"""
Versioned Field Store.

Persists whole-section content and individual field values. Every write
creates a new immutable version and flips the previous version's
``is_current_version`` flag; content history is append-only.

All writes go through one primitive, VersionedUpsert:

1. read the latest row for the key (by version, not a counter)
2. flip it to not-current if it is current
3. insert ``latest.version + 1`` (or 1) as the new current row
4. on a unique-violation conflict another writer advanced the version:
   back off and redo 1-3 against the new latest
5. after a successful insert, demote any lower version still flagged current

so at most one row per key is current once a write settles, without locks.

Usage:
    from vault_engine.core.versioned_store import VersionedFieldStore

    store = VersionedFieldStore()
    result = await store.write_field(funnel_id, "offer", "offerName", "Acme Pro")
    result.version  # -> 4
"""

import asyncio
import hashlib
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from vault_engine.core.config import get_settings
from vault_engine.core.exceptions import (
    ConcurrencyConflictError,
    FieldWriteError,
    VersionConflictError,
)
from vault_engine.core.logging import get_logger
from vault_engine.core.retry import retry_async
from vault_engine.core.section_registry import get_descriptor
from vault_engine.db.versioned_rows import SupabaseVersionedTable, fields_table, sections_table

logger = get_logger(__name__)

JSON_FIELD_TYPES = {"array", "object", "json", "list"}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def content_hash(content: Any) -> str:
    """Stable sha256 over sorted-key JSON."""
    canonical = json.dumps(content, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def encode_field_value(value: Any) -> tuple[str | None, str]:
    """Serialize a field value for storage, returning (stored_value, field_type)."""
    if value is None:
        return None, "text"
    if isinstance(value, str):
        return value, "text"
    if isinstance(value, list):
        return json.dumps(value, ensure_ascii=False), "array"
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False), "object"
    return json.dumps(value), "json"


def decode_field_value(row: dict[str, Any] | None) -> Any:
    """Read a stored field row back into its original shape."""
    if not row:
        return None
    raw = row.get("field_value")
    if isinstance(raw, str) and row.get("field_type") in JSON_FIELD_TYPES:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Field {row.get('field_id')} has malformed JSON; returning raw text")
            return raw
    return raw


def unwrap_section_content(content: Any) -> dict[str, Any]:
    """Peel a single wrapper key (``{"emailSequence": {...}}``) off section content."""
    if isinstance(content, dict) and len(content) == 1:
        (inner,) = content.values()
        if isinstance(inner, dict):
            return inner
    return content if isinstance(content, dict) else {}


class _SkipWrite(Exception):
    """Raised from a row builder to abandon a write without error."""


def _field_row(
    latest: dict[str, Any] | None,
    new_value: Any,
    metadata: dict[str, Any] | None,
    default_label: str,
    first_display_order: int | None,
) -> dict[str, Any]:
    """Non-key columns of a new field version, carrying label/type/order forward."""
    encoded, field_type = encode_field_value(new_value)
    if latest and latest.get("field_type"):
        previous_is_json = latest["field_type"] in JSON_FIELD_TYPES
        if previous_is_json == (field_type in JSON_FIELD_TYPES):
            field_type = latest["field_type"]

    merged_metadata = dict((latest or {}).get("field_metadata") or {})
    merged_metadata.update(metadata or {})

    if latest and latest.get("display_order") is not None:
        display_order = latest["display_order"]
    else:
        display_order = first_display_order or 1

    return {
        "field_value": encoded,
        "field_type": field_type,
        "field_label": (latest or {}).get("field_label") or default_label,
        "field_metadata": merged_metadata,
        "is_approved": False,
        "display_order": display_order,
        "created_at": _utc_now_iso(),
    }


@dataclass
class SectionWriteResult:
    """Outcome of a section write."""

    funnel_id: str
    section_id: str
    version: int
    row: dict[str, Any]
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "funnel_id": self.funnel_id,
            "section_id": self.section_id,
            "version": self.version,
            "skipped": self.skipped,
        }


@dataclass
class FieldWriteResult:
    """
    Outcome of a field write.

    ``old_value``/``new_value`` are at the granularity the caller wrote: for a
    nested ``parent.child`` path they are the child values, while ``row``
    holds the whole parent field version.
    """

    funnel_id: str
    section_id: str
    field_id: str
    stored_field_id: str
    version: int
    old_value: Any
    new_value: Any
    row: dict[str, Any] = field(default_factory=dict)
    propagation: Any = None

    def to_dict(self) -> dict:
        return {
            "funnel_id": self.funnel_id,
            "section_id": self.section_id,
            "field_id": self.field_id,
            "stored_field_id": self.stored_field_id,
            "version": self.version,
            "propagation_scheduled": self.propagation is not None,
        }


class VersionedUpsert:
    """Flip-then-insert with conflict retry for one versioned table."""

    def __init__(self, table: SupabaseVersionedTable, max_attempts: int, retry_delay: float):
        self.table = table
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def __call__(
        self,
        key: dict[str, Any],
        build_row: Callable[[dict[str, Any] | None, int], dict[str, Any]],
    ) -> dict[str, Any]:
        """
        Write a new current version for ``key``.

        Args:
            key: Key columns identifying the entity
            build_row: Called with (latest_row_or_None, next_version) on every
                attempt; returns the non-key columns of the new row. Raising
                from it aborts the write.

        Returns:
            The inserted row

        Raises:
            ConcurrencyConflictError: If conflicts persist past max_attempts
        """

        async def attempt() -> dict[str, Any]:
            latest = await asyncio.to_thread(self.table.get_latest, key)
            next_version = int(latest["version"]) + 1 if latest else 1
            row = {
                **build_row(latest, next_version),
                **key,
                "version": next_version,
                "is_current_version": True,
            }

            flipped = bool(latest and latest.get("is_current_version"))
            if flipped:
                await asyncio.to_thread(self.table.set_current, latest["id"], False)

            try:
                return await asyncio.to_thread(self.table.insert_version, row)
            except VersionConflictError:
                raise
            except Exception:
                # Never leave the key without a current row on a hard failure
                if flipped:
                    await asyncio.to_thread(self.table.set_current, latest["id"], True)
                raise

        try:
            inserted = await retry_async(
                attempt,
                max_attempts=self.max_attempts,
                initial_delay=self.retry_delay,
                multiplier=2.0,
                jitter=0.5,
                retry_on=(VersionConflictError,),
                label=f"{self.table.table} upsert",
            )
        except VersionConflictError as e:
            raise ConcurrencyConflictError(key, self.max_attempts) from e

        await asyncio.to_thread(self.table.demote_older, key, int(inserted["version"]))
        return inserted


class VersionedFieldStore:
    """Single writer for section and field rows."""

    def __init__(
        self,
        sections: SupabaseVersionedTable | None = None,
        fields: SupabaseVersionedTable | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
    ):
        if max_attempts is None or retry_delay is None:
            settings = get_settings()
            max_attempts = max_attempts or settings.FIELD_WRITE_MAX_ATTEMPTS
            retry_delay = settings.FIELD_WRITE_RETRY_DELAY if retry_delay is None else retry_delay

        self.sections = sections or sections_table()
        self.fields = fields or fields_table()
        self._section_upsert = VersionedUpsert(self.sections, max_attempts, retry_delay)
        self._field_upsert = VersionedUpsert(self.fields, max_attempts, retry_delay)

    # =========================================================================
    # Sections
    # =========================================================================

    async def get_current_section(self, funnel_id: str, section_id: str) -> dict[str, Any] | None:
        key = {"funnel_id": funnel_id, "section_id": section_id}
        return await asyncio.to_thread(self.sections.get_current, key)

    async def get_section_content(self, funnel_id: str, section_id: str) -> dict[str, Any] | None:
        """Current content document of a section, or None when absent or empty."""
        row = await self.get_current_section(funnel_id, section_id)
        if not row:
            return None
        content = row.get("content")
        if isinstance(content, str):
            try:
                content = json.loads(content)
            except json.JSONDecodeError:
                logger.warning(
                    f"Section {section_id} content is not valid JSON",
                    extra={"funnel_id": funnel_id, "section_id": section_id},
                )
                return None
        return content or None

    async def write_section(
        self,
        funnel_id: str,
        section_id: str,
        content: dict[str, Any],
        status: str = "generated",
        skip_if_unchanged: bool = True,
    ) -> SectionWriteResult:
        """
        Persist a new section version.

        A write whose content hash and status match the current version is
        skipped and reports the existing version. A current row marked
        ``generating`` counts as matching, since it is this write's own
        in-flight marker.
        """
        key = {"funnel_id": funnel_id, "section_id": section_id}
        digest = content_hash(content)

        if skip_if_unchanged:
            current = await asyncio.to_thread(self.sections.get_current, key)
            if (
                current
                and current.get("content_hash") == digest
                and current.get("status") in (status, "generating")
            ):
                logger.info(
                    f"Section {section_id} unchanged, skipping write",
                    extra={"funnel_id": funnel_id, "section_id": section_id},
                )
                return SectionWriteResult(
                    funnel_id, section_id, int(current["version"]), current, skipped=True
                )

        descriptor = get_descriptor(section_id)

        def build_row(latest: dict[str, Any] | None, next_version: int) -> dict[str, Any]:
            return {
                "numeric_key": descriptor.numeric_key if descriptor else None,
                "phase": descriptor.phase if descriptor else None,
                "content": content,
                "content_hash": digest,
                "status": status,
                "error_message": None,
                "created_at": _utc_now_iso(),
            }

        row = await self._section_upsert(key, build_row)
        logger.info(
            f"Wrote {section_id} v{row['version']} ({status})",
            extra={"funnel_id": funnel_id, "section_id": section_id},
        )
        return SectionWriteResult(funnel_id, section_id, int(row["version"]), row)

    async def set_section_status(
        self,
        funnel_id: str,
        section_id: str,
        status: str,
        error_message: str | None = None,
    ) -> str | None:
        """
        Update status bookkeeping on the current section row in place.

        Returns:
            The previous status, or None when the section has no current row
        """
        current = await self.get_current_section(funnel_id, section_id)
        if not current:
            return None
        await asyncio.to_thread(
            self.sections.update_row,
            current["id"],
            {"status": status, "error_message": error_message},
        )
        return current.get("status")

    async def record_section_failure(
        self,
        funnel_id: str,
        section_id: str,
        error: str,
        previous_status: str | None = None,
    ) -> dict[str, Any]:
        """
        Record a failed generation without touching the last good content.

        With a current version, its content stays as-is: the status reverts to
        ``previous_status`` (or its own, if not mid-generation) and the error
        is attached. Without one, a ``failed`` version with empty content is
        inserted so the failure is visible to operators.
        """
        current = await self.get_current_section(funnel_id, section_id)
        if current:
            status = previous_status or current.get("status") or "generated"
            if status == "generating":
                status = "failed" if not current.get("content") else "generated"
            await asyncio.to_thread(
                self.sections.update_row,
                current["id"],
                {"status": status, "error_message": error},
            )
            logger.warning(
                f"Generation of {section_id} failed; kept v{current['version']}: {error}",
                extra={"funnel_id": funnel_id, "section_id": section_id},
            )
            return {**current, "status": status, "error_message": error}

        key = {"funnel_id": funnel_id, "section_id": section_id}
        descriptor = get_descriptor(section_id)

        def build_row(latest: dict[str, Any] | None, next_version: int) -> dict[str, Any]:
            return {
                "numeric_key": descriptor.numeric_key if descriptor else None,
                "phase": descriptor.phase if descriptor else None,
                "content": {},
                "content_hash": content_hash({}),
                "status": "failed",
                "error_message": error,
                "created_at": _utc_now_iso(),
            }

        row = await self._section_upsert(key, build_row)
        logger.warning(
            f"Generation of {section_id} failed with no prior version: {error}",
            extra={"funnel_id": funnel_id, "section_id": section_id},
        )
        return row

    # =========================================================================
    # Fields
    # =========================================================================

    async def get_current_field(
        self, funnel_id: str, section_id: str, field_id: str
    ) -> dict[str, Any] | None:
        key = {"funnel_id": funnel_id, "section_id": section_id, "field_id": field_id}
        return await asyncio.to_thread(self.fields.get_current, key)

    async def get_field_value(self, funnel_id: str, section_id: str, field_id: str) -> Any:
        """Decoded current value of a field; nested ``parent.child`` paths are followed."""
        parent_id, _, child = field_id.partition(".")
        value = decode_field_value(await self.get_current_field(funnel_id, section_id, parent_id))
        if child:
            return value.get(child) if isinstance(value, dict) else None
        return value

    async def list_current_fields(
        self, funnel_id: str, section_ids: list[str] | None = None
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.fields.list_current, funnel_id, section_ids)

    async def write_field(
        self,
        funnel_id: str,
        section_id: str,
        field_id: str,
        value: Any,
        metadata: dict[str, Any] | None = None,
        field_label: str | None = None,
    ) -> FieldWriteResult:
        """
        Write a field value as a new version (the Upsert operation).

        A dotted ``parent.child`` path updates key ``child`` of the object held
        by field ``parent`` and writes the whole parent as one version. Every
        write resets ``is_approved``. Label, type, display order and metadata
        carry forward from the previous version; ``metadata`` is merged on top.

        Raises:
            FieldWriteError: If the path is empty or its parent is not an object
            ConcurrencyConflictError: If version conflicts exhaust the retry budget
        """
        if not field_id or field_id.startswith(".") or field_id.endswith("."):
            raise FieldWriteError(f"Invalid field id: {field_id!r}")

        parent_id, _, child = field_id.partition(".")
        stored_field_id = parent_id if child else field_id
        key = {"funnel_id": funnel_id, "section_id": section_id, "field_id": stored_field_id}

        existing = await asyncio.to_thread(self.fields.get_latest, key)
        first_display_order = None
        if existing is None:
            first_display_order = (
                await asyncio.to_thread(self.fields.max_display_order, funnel_id, section_id)
            ) + 1

        captured: dict[str, Any] = {}

        def build_row(latest: dict[str, Any] | None, next_version: int) -> dict[str, Any]:
            previous = decode_field_value(latest) if latest else None

            if child:
                parent_value = previous if previous is not None else {}
                if not isinstance(parent_value, dict):
                    raise FieldWriteError(
                        f"Field {stored_field_id} is not an object; cannot set {child!r}"
                    )
                captured["old"] = parent_value.get(child)
                new_value = {**parent_value, child: value}
            else:
                captured["old"] = previous
                new_value = value

            return _field_row(
                latest, new_value, metadata, field_label or stored_field_id, first_display_order
            )

        row = await self._field_upsert(key, build_row)
        logger.info(
            f"Wrote field {section_id}.{field_id} v{row['version']}",
            extra={"funnel_id": funnel_id, "section_id": section_id, "field_id": field_id},
        )
        return FieldWriteResult(
            funnel_id=funnel_id,
            section_id=section_id,
            field_id=field_id,
            stored_field_id=stored_field_id,
            version=int(row["version"]),
            old_value=captured.get("old"),
            new_value=value,
            row=row,
        )

    async def transform_field(
        self,
        funnel_id: str,
        section_id: str,
        field_id: str,
        transform: Callable[[Any], tuple[Any, dict[str, Any]] | None],
    ) -> FieldWriteResult | None:
        """
        Rewrite an existing field from its own latest value.

        ``transform`` receives the decoded latest value and returns
        ``(new_value, metadata)``, or None to leave the field alone. It runs
        again against the newer value whenever a concurrent writer wins the
        version race, so a lost race never overwrites the other write.

        Returns:
            FieldWriteResult, or None when the field does not exist or the
            transform declined
        """
        key = {"funnel_id": funnel_id, "section_id": section_id, "field_id": field_id}
        captured: dict[str, Any] = {}

        def build_row(latest: dict[str, Any] | None, next_version: int) -> dict[str, Any]:
            if latest is None:
                raise _SkipWrite()
            previous = decode_field_value(latest)
            outcome = transform(previous)
            if outcome is None:
                raise _SkipWrite()
            new_value, metadata = outcome
            captured.update(old=previous, new=new_value)
            return _field_row(latest, new_value, metadata, field_id, None)

        try:
            row = await self._field_upsert(key, build_row)
        except _SkipWrite:
            return None

        return FieldWriteResult(
            funnel_id=funnel_id,
            section_id=section_id,
            field_id=field_id,
            stored_field_id=field_id,
            version=int(row["version"]),
            old_value=captured.get("old"),
            new_value=captured.get("new"),
            row=row,
        )

    async def transform_section(
        self,
        funnel_id: str,
        section_id: str,
        transform: Callable[[dict[str, Any]], dict[str, Any] | None],
    ) -> SectionWriteResult | None:
        """Section-document counterpart of transform_field; status carries forward."""
        key = {"funnel_id": funnel_id, "section_id": section_id}

        def build_row(latest: dict[str, Any] | None, next_version: int) -> dict[str, Any]:
            if latest is None:
                raise _SkipWrite()
            content = latest.get("content")
            if isinstance(content, str):
                content = json.loads(content)
            new_content = transform(content or {})
            if new_content is None:
                raise _SkipWrite()
            return {
                "numeric_key": latest.get("numeric_key"),
                "phase": latest.get("phase"),
                "content": new_content,
                "content_hash": content_hash(new_content),
                "status": latest.get("status") or "generated",
                "error_message": None,
                "created_at": _utc_now_iso(),
            }

        try:
            row = await self._section_upsert(key, build_row)
        except _SkipWrite:
            return None
        return SectionWriteResult(funnel_id, section_id, int(row["version"]), row)

    async def sync_fields_from_section(
        self, funnel_id: str, section_id: str, content: dict[str, Any]
    ) -> list[FieldWriteResult]:
        """Mirror a section document into field rows, writing only changed values."""
        results = []
        for field_id, value in unwrap_section_content(content).items():
            current = await self.get_current_field(funnel_id, section_id, field_id)
            if current is not None and decode_field_value(current) == value:
                continue
            results.append(await self.write_field(funnel_id, section_id, field_id, value))
        return results
