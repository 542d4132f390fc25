"""
Section generation pipeline.

Single-shot sections make one retrying, time-limited call and parse the
result strictly; a malformed answer fails the section with a
StructuralParseError message because there is nothing to fall back to.

Chunked sections issue all chunk calls concurrently, each with its own
retry budget and its own timeout. Results are collected all-settled: a
failed or timed-out chunk becomes ``{}`` and the others still merge. The
merged content is validated, and validation issues are logged as warnings
only; partial content is reported as ``generated`` and callers see the gaps
as missing keys.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from vault_engine.chains.section_prompts import (
    build_chunk_prompt,
    build_section_prompt,
    build_system_prompt,
)
from vault_engine.core.config import get_settings
from vault_engine.core.dependency_resolver import (
    FREE_GIFT_PLACEHOLDER,
    ResolvedContext,
    format_context_for_prompt,
)
from vault_engine.core.exceptions import (
    GenerationError,
    StructuralParseError,
    TransientGenerationError,
)
from vault_engine.core.llm import GenerationOptions, GenerationOutput, generate, parse_structured
from vault_engine.core.logging import get_logger
from vault_engine.core.retry import retry_async
from vault_engine.core.section_mergers import ValidationResult
from vault_engine.core.section_registry import SectionDescriptor, get_descriptor

logger = get_logger(__name__)

GenerateFn = Callable[..., Awaitable[GenerationOutput]]

FREE_GIFT_TOKENS = ("[Free Gift]", FREE_GIFT_PLACEHOLDER)


@dataclass
class SectionGenerationResult:
    """Outcome of generating one section."""

    section_id: str
    status: str  # "generated" | "failed"
    content: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    validation: ValidationResult | None = None
    failed_chunks: list[int] = field(default_factory=list)
    raw_output: str | None = None
    # PropagationHandle when persisting the result triggered atomic propagation
    propagation: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "generated"

    def to_dict(self) -> dict:
        return {
            "section_id": self.section_id,
            "status": self.status,
            "error": self.error,
            "failed_chunks": self.failed_chunks,
            "validation_issues": self.validation.issues if self.validation else [],
        }


def replace_free_gift_placeholders(content: Any, free_gift_name: str) -> Any:
    """Swap free-gift placeholders for the real lead magnet title throughout a document."""
    if not free_gift_name or free_gift_name == FREE_GIFT_PLACEHOLDER:
        return content
    if isinstance(content, str):
        for token in FREE_GIFT_TOKENS:
            content = content.replace(token, free_gift_name)
        return content
    if isinstance(content, list):
        return [replace_free_gift_placeholders(item, free_gift_name) for item in content]
    if isinstance(content, dict):
        return {k: replace_free_gift_placeholders(v, free_gift_name) for k, v in content.items()}
    return content


class GenerationPipeline:
    """Runs single-shot and chunked generations against the generation oracle."""

    def __init__(
        self,
        generate_fn: GenerateFn = generate,
        max_attempts: int | None = None,
        initial_delay: float | None = None,
        max_delay: float | None = None,
        multiplier: float | None = None,
        timeout_override: float | None = None,
    ):
        settings = get_settings()
        self.generate_fn = generate_fn
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.GENERATION_MAX_RETRIES + 1
        )
        self.initial_delay = (
            initial_delay if initial_delay is not None else settings.GENERATION_INITIAL_DELAY
        )
        self.max_delay = max_delay if max_delay is not None else settings.GENERATION_MAX_DELAY
        self.multiplier = (
            multiplier if multiplier is not None else settings.GENERATION_BACKOFF_MULTIPLIER
        )
        self.timeout_override = timeout_override
        self.default_timeout = settings.DEFAULT_SECTION_TIMEOUT

    def _timeout_for(self, descriptor: SectionDescriptor) -> float:
        return self.timeout_override or descriptor.timeout or self.default_timeout

    async def _call(
        self,
        descriptor: SectionDescriptor,
        system_prompt: str,
        user_prompt: str,
        funnel_id: str,
        label: str,
    ) -> str:
        """One generation with its own timeout, retried on transient failures."""
        timeout = self._timeout_for(descriptor)
        options = GenerationOptions(
            json_mode=True, max_tokens=descriptor.max_tokens, timeout=timeout
        )

        async def attempt() -> str:
            try:
                output = await asyncio.wait_for(
                    self.generate_fn(
                        system_prompt,
                        user_prompt,
                        options,
                        funnel_id=funnel_id,
                        section_id=descriptor.section_id,
                    ),
                    timeout,
                )
            except asyncio.TimeoutError as e:
                raise TransientGenerationError(f"{label} timed out after {timeout}s") from e
            return output.text

        return await retry_async(
            attempt,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            jitter=0.2,
            retry_on=(TransientGenerationError,),
            label=label,
        )

    async def generate_section(
        self,
        funnel_id: str,
        section_id: str,
        context: ResolvedContext,
        core_context: dict[str, Any] | None = None,
        refinement_context: str | None = None,
    ) -> SectionGenerationResult:
        """
        Generate one section from resolved context.

        Args:
            funnel_id: Funnel UUID string
            section_id: Section to generate
            context: Resolved upstream context
            core_context: Flattened core context, injected for non-core sections
            refinement_context: Optional dependency-update note for the system prompt

        Returns:
            SectionGenerationResult; errors are reported in the result, not raised
        """
        descriptor = get_descriptor(section_id)
        if descriptor is None:
            return SectionGenerationResult(
                section_id=section_id, status="failed", error=f"Unknown section: {section_id}"
            )

        core_block = (
            format_context_for_prompt(core_context)
            if core_context and not descriptor.is_core
            else None
        )
        system_prompt = build_system_prompt(descriptor, core_block, refinement_context)

        if descriptor.is_chunked:
            result = await self._generate_chunked(descriptor, funnel_id, system_prompt, context)
        else:
            result = await self._generate_single(descriptor, funnel_id, system_prompt, context)

        if result.ok:
            result.content = replace_free_gift_placeholders(result.content, context.free_gift_name)
        return result

    async def _generate_single(
        self,
        descriptor: SectionDescriptor,
        funnel_id: str,
        system_prompt: str,
        context: ResolvedContext,
    ) -> SectionGenerationResult:
        section_id = descriptor.section_id
        extra = {"funnel_id": funnel_id, "section_id": section_id}
        raw = None
        try:
            raw = await self._call(
                descriptor, system_prompt, build_section_prompt(descriptor, context), funnel_id, section_id
            )
            content = parse_structured(raw)
        except StructuralParseError as e:
            logger.error(f"Unparsable output for {section_id}: {e}", extra=extra)
            return SectionGenerationResult(
                section_id=section_id, status="failed", error=str(e), raw_output=e.raw_output
            )
        except GenerationError as e:
            logger.error(f"Generation failed for {section_id}: {e}", extra=extra)
            return SectionGenerationResult(
                section_id=section_id, status="failed", error=str(e), raw_output=raw
            )
        except Exception as e:
            logger.exception(f"Unexpected generation error for {section_id}", extra=extra)
            return SectionGenerationResult(
                section_id=section_id, status="failed", error=f"{type(e).__name__}: {e}", raw_output=raw
            )

        validation = descriptor.validator(content)
        if not validation.valid:
            logger.warning(f"ValidationWarning for {section_id}: {validation.issues}", extra=extra)
        return SectionGenerationResult(
            section_id=section_id, status="generated", content=content, validation=validation
        )

    async def _generate_chunked(
        self,
        descriptor: SectionDescriptor,
        funnel_id: str,
        system_prompt: str,
        context: ResolvedContext,
    ) -> SectionGenerationResult:
        section_id = descriptor.section_id
        total = len(descriptor.chunks)

        async def run_chunk(index: int) -> dict[str, Any]:
            prompt = build_chunk_prompt(descriptor, descriptor.chunks[index], index, context)
            raw = await self._call(
                descriptor, system_prompt, prompt, funnel_id, f"{section_id} chunk {index + 1}/{total}"
            )
            return parse_structured(raw)

        results = await asyncio.gather(
            *(run_chunk(index) for index in range(total)), return_exceptions=True
        )

        chunks: list[dict[str, Any]] = []
        failed: list[int] = []
        errors: list[str] = []
        for index, result in enumerate(results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Chunk {index + 1}/{total} of {section_id} failed, using empty placeholder: {result}",
                    extra={"funnel_id": funnel_id, "section_id": section_id, "chunk": index + 1},
                )
                chunks.append({})
                failed.append(index + 1)
                errors.append(f"chunk {index + 1}: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                chunks.append(result)

        if len(failed) == total:
            error = f"All {total} chunks failed: " + "; ".join(errors)
            logger.error(error, extra={"funnel_id": funnel_id, "section_id": section_id})
            return SectionGenerationResult(
                section_id=section_id, status="failed", error=error, failed_chunks=failed
            )

        content = descriptor.merger(chunks)
        validation = descriptor.validator(content)
        if not validation.valid:
            logger.warning(
                f"ValidationWarning for {section_id}: {len(validation.issues)} issue(s): "
                f"{validation.issues[:5]}",
                extra={"funnel_id": funnel_id, "section_id": section_id},
            )

        logger.info(
            f"Merged {total - len(failed)}/{total} chunks for {section_id}",
            extra={"funnel_id": funnel_id, "section_id": section_id},
        )
        return SectionGenerationResult(
            section_id=section_id,
            status="generated",
            content=content,
            validation=validation,
            failed_chunks=failed,
        )
