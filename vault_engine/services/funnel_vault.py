"""
FunnelVault: the engine's public face.

Wires the dependency graph, resolver, generation pipeline, versioned store and
propagation engine into the operations callers use. Every collaborator is
injectable so tests can swap the store tables and the generation oracle.

Usage:
    vault = FunnelVault()
    result = await vault.generate_section(funnel_id, "emails", fallback=answers)
    written = await vault.write_field(funnel_id, "offer", "offerName", "Acme Pro")
    await written.propagation.wait()
"""

from typing import Any
from uuid import UUID

from vault_engine.chains.section_prompts import build_refinement_context
from vault_engine.core.atomic_propagation import (
    AtomicPropagationEngine,
    PropagationHandle,
    PropagationResult,
)
from vault_engine.core.config import get_settings
from vault_engine.core.dependency_graph import DEFAULT_GRAPH, DependencyGraph
from vault_engine.core.dependency_resolver import DependencyResolver, ResolvedContext
from vault_engine.core.generation_pipeline import GenerationPipeline, SectionGenerationResult
from vault_engine.core.logging import get_logger
from vault_engine.core.versioned_store import FieldWriteResult, VersionedFieldStore

logger = get_logger(__name__)


class FunnelVault:
    """Generate, persist and propagate vault sections for funnels."""

    def __init__(
        self,
        store: VersionedFieldStore | None = None,
        graph: DependencyGraph = DEFAULT_GRAPH,
        resolver: DependencyResolver | None = None,
        pipeline: GenerationPipeline | None = None,
        propagation: AtomicPropagationEngine | None = None,
        propagation_enabled: bool | None = None,
    ):
        self.store = store or VersionedFieldStore()
        self.graph = graph
        self.resolver = resolver or DependencyResolver(self.store, graph)
        self.pipeline = pipeline or GenerationPipeline()
        self.propagation = propagation or AtomicPropagationEngine(self.store, graph)
        self.propagation_enabled = (
            get_settings().PROPAGATION_ENABLED
            if propagation_enabled is None
            else propagation_enabled
        )

    async def resolve_dependencies(
        self,
        funnel_id: str,
        section_id: str,
        fallback: dict[str, Any] | None = None,
    ) -> ResolvedContext:
        return await self.resolver.resolve(funnel_id, section_id, fallback)

    async def generate_section(
        self,
        funnel_id: str,
        section_id: str,
        fallback: dict[str, Any] | None = None,
        refinement: str | dict[str, Any] | None = None,
    ) -> SectionGenerationResult:
        """
        Resolve, generate and persist one section.

        A generated result becomes a new section version (skipped when the
        content hash is unchanged), is mirrored into field rows, and any atomic
        change against the previous content is propagated in the background.
        A failed result is recorded without replacing the last good version.

        Args:
            funnel_id: Funnel UUID string
            section_id: Section to generate
            fallback: Raw intake answers for missing upstream content
            refinement: Refinement note, either preformatted or as keyword
                arguments for build_refinement_context

        Returns:
            SectionGenerationResult
        """
        extra = {"funnel_id": funnel_id, "section_id": section_id}
        refinement_context = (
            build_refinement_context(**refinement) if isinstance(refinement, dict) else refinement
        )

        context = await self.resolver.resolve(funnel_id, section_id, fallback)
        core_context = await self.resolver.build_core_context(funnel_id, fallback, context.resolved)

        previous_content = await self.store.get_section_content(funnel_id, section_id)
        previous_status = await self.store.set_section_status(funnel_id, section_id, "generating")

        try:
            result = await self.pipeline.generate_section(
                funnel_id, section_id, context, core_context, refinement_context
            )
        except Exception as e:
            logger.exception(f"Pipeline crashed for {section_id}", extra=extra)
            result = SectionGenerationResult(
                section_id=section_id, status="failed", error=f"{type(e).__name__}: {e}"
            )

        if not result.ok:
            await self.store.record_section_failure(
                funnel_id, section_id, result.error or "generation failed", previous_status
            )
            return result

        try:
            written = await self.store.write_section(funnel_id, section_id, result.content)
        except Exception as e:
            logger.error(f"Persisting {section_id} failed: {e}", extra=extra)
            await self.store.record_section_failure(funnel_id, section_id, str(e), previous_status)
            raise
        if written.skipped:
            # Content unchanged; restore the status the generating marker replaced
            if previous_status is not None:
                await self.store.set_section_status(funnel_id, section_id, previous_status)
            return result

        await self.store.sync_fields_from_section(funnel_id, section_id, result.content)

        if self.propagation_enabled and previous_content:
            changes = self.graph.detect_atomic_changes(section_id, previous_content, result.content)
            if changes:
                logger.info(
                    f"{len(changes)} atomic change(s) in {section_id}, propagating",
                    extra=extra,
                )
                result.propagation = self.propagation.schedule_section_propagation(
                    funnel_id, section_id, previous_content, result.content, written.version
                )
        return result

    async def write_field(
        self,
        funnel_id: str,
        section_id: str,
        field_id: str,
        value: Any,
        metadata: dict[str, Any] | None = None,
    ) -> FieldWriteResult:
        """
        Write a field version; atomic changes schedule background propagation.

        The PropagationHandle (or None) is exposed as ``result.propagation``.

        Raises:
            FieldWriteError: If the field path is invalid for the stored value
            ConcurrencyConflictError: If version conflicts exhaust the retry budget
        """
        result = await self.store.write_field(funnel_id, section_id, field_id, value, metadata)

        if (
            self.propagation_enabled
            and result.old_value is not None
            and result.old_value != result.new_value
            and self.graph.is_atomic_field(section_id, field_id)
        ):
            result.propagation = self.propagation.schedule_field_propagation(
                funnel_id, section_id, field_id, result.old_value, result.new_value
            )
        return result

    async def propagate_atomic_change(
        self,
        funnel_id: str,
        section_id: str,
        field_id: str,
        old_value: Any,
        new_value: Any,
    ) -> PropagationResult:
        return await self.propagation.propagate_field_change(
            funnel_id, section_id, field_id, old_value, new_value
        )

    def schedule_atomic_change(
        self,
        funnel_id: str,
        section_id: str,
        field_id: str,
        old_value: Any,
        new_value: Any,
    ) -> PropagationHandle:
        return self.propagation.schedule_field_propagation(
            funnel_id, section_id, field_id, old_value, new_value
        )

    async def get_update_status(self, funnel_id: str) -> list[dict[str, Any]]:
        return await self.propagation.get_update_status(funnel_id)

    def dependency_impact(self, section_id: str, field_id: str | None = None) -> list[str]:
        return self.graph.calculate_dependency_impact(section_id, field_id)

    async def regenerate_sections(
        self,
        funnel_id: str,
        sections: list[str],
        job_id: UUID | None = None,
        fallback: dict[str, Any] | None = None,
        refinement: str | dict[str, Any] | None = None,
        parallel: bool = False,
    ) -> dict[str, Any]:
        """
        Regenerate a batch of sections, tracking progress on a generation job.

        Sequential batches are run in dependency order so that later sections
        see the fresh content of earlier ones.
        """
        from vault_engine.graphs.regenerate_sections_graph import run_regenerate_sections

        refinement_context = (
            build_refinement_context(**refinement) if isinstance(refinement, dict) else refinement
        )
        ordered = list(dict.fromkeys(sections))
        if not parallel:
            rank = {s: i for i, s in enumerate(self.graph.generation_order())}
            ordered.sort(key=lambda s: rank.get(s, len(rank)))

        return await run_regenerate_sections(
            self,
            funnel_id,
            ordered,
            job_id=job_id,
            fallback_answers=fallback,
            refinement_context=refinement_context,
            parallel=parallel,
        )
