"""Prompt assembly for section generation.

Prompt wording is deliberately thin: each prompt states the section, the
business data, and the JSON keys expected back. What matters here is the
placement rules:

- non-core sections get the formatted business context in the system prompt
- refinement context (why a dependent section is being regenerated) is
  appended to the system prompt, never to the user prompt, so it cannot
  disturb the JSON answer
- chunk prompts name their part ("Part 2 of 4") and the exact keys that part owns
"""

import json
from typing import Any

from vault_engine.core.dependency_resolver import ResolvedContext
from vault_engine.core.llm import SYSTEM_PROMPT
from vault_engine.core.section_registry import ChunkSpec, SectionDescriptor

REFINED_CHANGES_LIMIT = 500


def build_system_prompt(
    descriptor: SectionDescriptor,
    core_context_block: str | None = None,
    refinement_context: str | None = None,
) -> str:
    parts = [SYSTEM_PROMPT]
    if core_context_block and not descriptor.is_core:
        parts.append(core_context_block)
    if refinement_context:
        parts.append(refinement_context)
    return "\n\n".join(parts)


def _business_data(context: ResolvedContext) -> str:
    return json.dumps(context.enriched_data(), ensure_ascii=False, indent=2, default=str)


def build_section_prompt(descriptor: SectionDescriptor, context: ResolvedContext) -> str:
    """User prompt for a single-shot section."""
    keys = ", ".join(descriptor.output_keys) if descriptor.output_keys else "any keys you need"
    return (
        f"Generate the {descriptor.display_name} section.\n\n"
        f"{descriptor.instructions}\n\n"
        f"BUSINESS DATA:\n{_business_data(context)}\n\n"
        f"Return ONE JSON object with these top-level keys: {keys}."
    )


def build_chunk_prompt(
    descriptor: SectionDescriptor,
    chunk: ChunkSpec,
    index: int,
    context: ResolvedContext,
) -> str:
    """User prompt for chunk ``index`` (zero-based) of a chunked section."""
    total = len(descriptor.chunks)
    return (
        f"Generate the {descriptor.display_name} section, Part {index + 1} of {total}.\n\n"
        f"{descriptor.instructions} {chunk.instructions}\n\n"
        f"BUSINESS DATA:\n{_business_data(context)}\n\n"
        f"Free gift name (use verbatim): {context.free_gift_name}\n\n"
        f"Return ONE JSON object containing exactly these keys: {', '.join(chunk.keys)}."
    )


def build_refinement_context(
    source_section: str,
    source_field: str | None = None,
    user_feedback: str | None = None,
    refined_changes: Any = None,
) -> str:
    """System-prompt addendum for regenerating a section after an upstream refinement."""
    lines = [
        "--- IMPORTANT CONTEXT: DEPENDENCY UPDATE ---",
        f'This section is being regenerated because the "{source_section}" section was recently refined.',
    ]
    if source_field:
        lines.append(f'Specifically, the "{source_field}" field was updated.')
    if user_feedback:
        lines.append(f'\nThe user\'s original feedback was: "{user_feedback}"')
    if refined_changes:
        changes = (
            refined_changes
            if isinstance(refined_changes, str)
            else json.dumps(refined_changes, ensure_ascii=False)[:REFINED_CHANGES_LIMIT]
        )
        lines.append(f"\nThe refined content now includes: {changes}")
    lines.append(
        "\nPlease ensure this section is consistent with those changes while maintaining "
        "its own quality and completeness."
    )
    lines.append("--- END DEPENDENCY CONTEXT ---")
    return "\n".join(lines)
