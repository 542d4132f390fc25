"""
Atomic Propagation Engine.

When a field declared atomic (an offer name, a price, a lead magnet title)
changes, every section downstream of it that already quotes the old value
gets a literal find-and-replace instead of a regeneration:

1. fetch the current field rows of all downstream sections (never the
   source section itself)
2. serialize each value (strings as-is, everything else as JSON)
3. count case-insensitive occurrences of the old value; zero is a no-op
4. replace, parse back to the original type, and write a new version whose
   metadata records ``lastAutoUpdate`` provenance

Occurrences that already sit inside the new value (the "Acme" in
"Acme Pro") are neither counted nor replaced, so running the same change
twice is a no-op. A failure on one field is recorded and the rest continue.

Propagation runs detached from the write that triggered it:
``schedule_field_propagation`` returns a PropagationHandle that callers
(and tests) can await.

Usage:
    engine = AtomicPropagationEngine(store)
    result = await engine.propagate_field_change(
        funnel_id, "offer", "offerName", "Acme", "Acme Pro"
    )
    result.updated_fields[0].replacements_count  # -> 3
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from vault_engine.core.dependency_graph import DEFAULT_GRAPH, AtomicChange, DependencyGraph
from vault_engine.core.logging import get_logger
from vault_engine.core.versioned_store import VersionedFieldStore, decode_field_value

logger = get_logger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _offsets_within(haystack: str, needle: str) -> list[int]:
    """Every offset at which ``needle`` occurs in ``haystack`` (case-insensitive)."""
    haystack, needle = haystack.lower(), needle.lower()
    offsets = []
    start = haystack.find(needle)
    while start != -1:
        offsets.append(start)
        start = haystack.find(needle, start + 1)
    return offsets


def substitute_literal(text: str, old: str, new: str) -> tuple[str, int]:
    """
    Replace case-insensitive occurrences of ``old`` with ``new``.

    When ``new`` contains ``old`` ("Acme" -> "Acme Pro"), an occurrence of
    ``old`` that already sits inside an occurrence of ``new`` is skipped, so a
    second run is a no-op. Every other occurrence is replaced, including when
    ``new`` is a prefix of ``old`` ("Acme Pro" -> "Acme").

    Returns:
        (replaced_text, replacements_count)
    """
    if not old or old == new:
        return text, 0

    inner_offsets = _offsets_within(new, old)
    lowered_text, lowered_new = text.lower(), new.lower()

    def inside_new(position: int) -> bool:
        for offset in inner_offsets:
            begin = position - offset
            if begin >= 0 and lowered_text[begin : begin + len(new)] == lowered_new:
                return True
        return False

    pieces: list[str] = []
    count = 0
    cursor = 0
    for match in re.finditer(re.escape(old), text, re.IGNORECASE):
        if inside_new(match.start()):
            continue
        pieces.append(text[cursor : match.start()])
        pieces.append(new)
        cursor = match.end()
        count += 1
    pieces.append(text[cursor:])
    return "".join(pieces), count


def substitute_value(value: Any, old: str, new: str) -> tuple[Any, int]:
    """
    Substitute within a field value, preserving its type.

    Strings are replaced directly. Other values are serialized to JSON, the
    JSON-escaped forms of ``old``/``new`` are substituted, and the result is
    parsed back.

    Raises:
        ValueError: If the substituted JSON no longer parses
    """
    if isinstance(value, str):
        return substitute_literal(value, old, new)

    serialized = json.dumps(value, ensure_ascii=False)
    needle = json.dumps(old, ensure_ascii=False)[1:-1]
    replacement = json.dumps(new, ensure_ascii=False)[1:-1]
    replaced, count = substitute_literal(serialized, needle, replacement)
    if count == 0:
        return value, 0
    try:
        return json.loads(replaced), count
    except json.JSONDecodeError as e:
        raise ValueError(f"Substitution produced invalid JSON: {e}") from e


def _as_atomic_text(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int, float)):
        text = str(value).strip()
        return text or None
    return None


@dataclass
class UpdatedField:
    section_id: str
    field_id: str
    replacements_count: int
    version: int

    def to_dict(self) -> dict:
        return {
            "sectionId": self.section_id,
            "fieldId": self.field_id,
            "replacementsCount": self.replacements_count,
            "version": self.version,
        }


@dataclass
class PropagationResult:
    """Outcome of one field-level propagation."""

    source: str
    old_value: Any
    new_value: Any
    success: bool = True
    updated_fields: list[UpdatedField] = field(default_factory=list)
    skipped_fields: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    skipped_reason: str | None = None
    duration_ms: int = 0

    @property
    def replacements_count(self) -> int:
        return sum(f.replacements_count for f in self.updated_fields)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "source": self.source,
            "updatedFields": [f.to_dict() for f in self.updated_fields],
            "skippedFields": self.skipped_fields,
            "errors": self.errors,
            "replacementsCount": self.replacements_count,
            "skippedReason": self.skipped_reason,
            "duration": self.duration_ms,
        }


@dataclass
class SectionPropagationResult:
    """Outcome of propagating atomic changes between two versions of a section."""

    source_section: str
    changes: list[AtomicChange] = field(default_factory=list)
    updated_sections: list[dict[str, Any]] = field(default_factory=list)
    skipped_sections: list[str] = field(default_factory=list)
    field_results: list[PropagationResult] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors and all(r.success for r in self.field_results)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "sourceSection": self.source_section,
            "changes": [
                {"field": c.field_path, "oldValue": c.old_value, "newValue": c.new_value}
                for c in self.changes
            ],
            "updatedSections": self.updated_sections,
            "skippedSections": self.skipped_sections,
            "fieldResults": [r.to_dict() for r in self.field_results],
            "errors": self.errors,
            "duration": self.duration_ms,
        }


class PropagationHandle:
    """Awaitable handle on a detached propagation task."""

    def __init__(self, key: tuple, task: asyncio.Task):
        self.key = key
        self.task = task

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> Any:
        """Wait for completion; returns the result or raises the task's error."""
        return await self.task


class AtomicPropagationEngine:
    """Textual propagation of atomic field changes to downstream sections."""

    def __init__(
        self,
        store: VersionedFieldStore | None = None,
        graph: DependencyGraph = DEFAULT_GRAPH,
    ):
        self.store = store or VersionedFieldStore()
        self.graph = graph
        self._in_flight: dict[tuple, PropagationHandle] = {}

    # =========================================================================
    # Field level
    # =========================================================================

    async def propagate_field_change(
        self,
        funnel_id: str,
        section_id: str,
        field_id: str,
        old_value: Any,
        new_value: Any,
    ) -> PropagationResult:
        """
        Propagate an atomic field change to downstream field rows.

        Always safe to call: non-atomic fields, empty values and unchanged
        values return an empty result with ``skipped_reason`` set.

        Args:
            funnel_id: Funnel UUID string
            section_id: Section owning the changed field
            field_id: Changed field path
            old_value: Previous literal value
            new_value: New literal value

        Returns:
            PropagationResult listing updated fields and per-field errors
        """
        t0 = time.monotonic()
        source = f"{section_id}.{field_id}"
        result = PropagationResult(source=source, old_value=old_value, new_value=new_value)
        extra = {"funnel_id": funnel_id, "section_id": section_id, "field_id": field_id}

        old_text, new_text = _as_atomic_text(old_value), _as_atomic_text(new_value)
        if not self.graph.is_atomic_field(section_id, field_id):
            result.skipped_reason = "not_atomic"
            return result
        if not old_text or not new_text:
            result.skipped_reason = "empty_value"
            return result
        if old_text == new_text:
            result.skipped_reason = "unchanged"
            return result

        downstream = [s for s in self.graph.downstream_of(section_id) if s != section_id]
        if not downstream:
            result.skipped_reason = "no_dependents"
            return result

        try:
            rows = await self.store.list_current_fields(funnel_id, downstream)
        except Exception as e:
            logger.error(f"Could not list downstream fields for {source}: {e}", extra=extra)
            result.success = False
            result.errors.append({"source": source, "error": str(e)})
            result.duration_ms = int((time.monotonic() - t0) * 1000)
            return result

        logger.info(
            f"Propagating {source}: '{old_text}' -> '{new_text}' across {len(rows)} field(s)",
            extra=extra,
        )

        for row in rows:
            await self._propagate_to_row(funnel_id, row, source, old_text, new_text, result)

        result.success = not result.errors
        result.duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            f"Propagation of {source} done: {len(result.updated_fields)} updated, "
            f"{len(result.skipped_fields)} skipped, {len(result.errors)} error(s) "
            f"in {result.duration_ms}ms",
            extra=extra,
        )
        return result

    async def _propagate_to_row(
        self,
        funnel_id: str,
        row: dict[str, Any],
        source: str,
        old_text: str,
        new_text: str,
        result: PropagationResult,
    ) -> None:
        target_section, target_field = row["section_id"], row["field_id"]
        label = f"{target_section}.{target_field}"

        try:
            _, count = substitute_value(decode_field_value(row), old_text, new_text)
            if count == 0:
                result.skipped_fields.append(label)
                return

            def transform(current: Any) -> tuple[Any, dict[str, Any]] | None:
                replaced, replacements = substitute_value(current, old_text, new_text)
                if replacements == 0:
                    return None
                return replaced, {
                    "lastAutoUpdate": {
                        "timestamp": _utc_now_iso(),
                        "source": source,
                        "replacedValue": old_text,
                        "newValue": new_text,
                        "replacementsCount": replacements,
                    }
                }

            written = await self.store.transform_field(
                funnel_id, target_section, target_field, transform
            )
        except Exception as e:
            logger.warning(
                f"Propagation to {label} failed: {e}",
                extra={"funnel_id": funnel_id, "section_id": target_section, "field_id": target_field},
            )
            result.errors.append({"field": label, "error": str(e)})
            return

        if written is None:
            result.skipped_fields.append(label)
            return

        count = written.row.get("field_metadata", {}).get("lastAutoUpdate", {}).get(
            "replacementsCount", count
        )
        result.updated_fields.append(
            UpdatedField(target_section, target_field, int(count), written.version)
        )

    # =========================================================================
    # Section level
    # =========================================================================

    async def propagate_section_change(
        self,
        funnel_id: str,
        section_id: str,
        old_content: dict[str, Any] | None,
        new_content: dict[str, Any] | None,
    ) -> SectionPropagationResult:
        """
        Propagate every atomic change between two versions of a section.

        Changes are applied in declaration order. Each downstream section
        document gets at most one new version carrying all substitutions;
        downstream field rows are then updated through the field-level path.
        """
        t0 = time.monotonic()
        result = SectionPropagationResult(source_section=section_id)
        result.changes = self.graph.detect_atomic_changes(section_id, old_content, new_content)
        if not result.changes:
            return result

        downstream = [s for s in self.graph.downstream_of(section_id) if s != section_id]
        for target in downstream:
            await self._propagate_to_section(funnel_id, target, result)

        for change in result.changes:
            result.field_results.append(
                await self.propagate_field_change(
                    funnel_id, section_id, change.field_path, change.old_value, change.new_value
                )
            )

        result.duration_ms = int((time.monotonic() - t0) * 1000)
        return result

    async def _propagate_to_section(
        self, funnel_id: str, target: str, result: SectionPropagationResult
    ) -> None:
        counts: dict[str, int] = {}

        def transform(content: dict[str, Any]) -> dict[str, Any] | None:
            counts.clear()
            updated: Any = content
            for change in result.changes:
                old_text = _as_atomic_text(change.old_value)
                new_text = _as_atomic_text(change.new_value)
                if not old_text or not new_text or old_text == new_text:
                    continue
                updated, replaced = substitute_value(updated, old_text, new_text)
                if replaced:
                    counts[change.field_path] = counts.get(change.field_path, 0) + replaced
            return updated if counts else None

        try:
            written = await self.store.transform_section(funnel_id, target, transform)
        except Exception as e:
            logger.warning(
                f"Section propagation to {target} failed: {e}",
                extra={"funnel_id": funnel_id, "section_id": target},
            )
            result.errors.append({"section": target, "error": str(e)})
            return

        if written is None:
            result.skipped_sections.append(target)
            return
        result.updated_sections.append(
            {
                "sectionId": target,
                "version": written.version,
                "replacementsCount": sum(counts.values()),
            }
        )

    # =========================================================================
    # Background scheduling
    # =========================================================================

    def _schedule(self, key: tuple, coro_factory, label: str) -> PropagationHandle:
        existing = self._in_flight.get(key)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.get_running_loop().create_task(coro_factory())
        handle = PropagationHandle(key, task)
        self._in_flight[key] = handle

        def _on_done(finished: asyncio.Task) -> None:
            if self._in_flight.get(key) is handle:
                del self._in_flight[key]
            if finished.cancelled():
                logger.warning(f"Propagation {label} was cancelled")
                return
            error = finished.exception()
            if error is not None:
                logger.error(f"Background propagation {label} failed: {error}")

        task.add_done_callback(_on_done)
        return handle

    def schedule_field_propagation(
        self,
        funnel_id: str,
        section_id: str,
        field_id: str,
        old_value: Any,
        new_value: Any,
    ) -> PropagationHandle:
        """Run propagate_field_change detached; an identical in-flight request is reused."""
        key = ("field", funnel_id, section_id, field_id, str(old_value), str(new_value))
        return self._schedule(
            key,
            lambda: self.propagate_field_change(funnel_id, section_id, field_id, old_value, new_value),
            f"{section_id}.{field_id}",
        )

    def schedule_section_propagation(
        self,
        funnel_id: str,
        section_id: str,
        old_content: dict[str, Any] | None,
        new_content: dict[str, Any] | None,
        version: int | None = None,
    ) -> PropagationHandle:
        """Run propagate_section_change detached; keyed by the section version written."""
        key = ("section", funnel_id, section_id, version)
        return self._schedule(
            key,
            lambda: self.propagate_section_change(funnel_id, section_id, old_content, new_content),
            section_id,
        )

    async def get_update_status(self, funnel_id: str) -> list[dict[str, Any]]:
        """Fields whose current version was written by propagation, newest first."""
        rows = await self.store.list_current_fields(funnel_id)
        updates = []
        for row in rows:
            last = (row.get("field_metadata") or {}).get("lastAutoUpdate")
            if last:
                updates.append(
                    {
                        "sectionId": row["section_id"],
                        "fieldId": row["field_id"],
                        "version": row.get("version"),
                        "lastAutoUpdate": last,
                    }
                )
        updates.sort(key=lambda u: u["lastAutoUpdate"].get("timestamp", ""), reverse=True)
        return updates
