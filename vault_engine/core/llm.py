"""Generation oracle: provider calls with fallback, plus strict JSON parsing.

``generate`` tries Anthropic first and falls back to OpenAI (through
LangChain's ChatOpenAI). Provider exceptions are mapped onto the engine's
error taxonomy so callers only ever see:

- TransientGenerationError: timeouts, connection errors, 429 and 5xx
- GenerationError: requests that will not succeed on retry (400, 401)

Retrying is the caller's job (see core/retry.py); this module makes exactly
one attempt per configured provider.
"""

import json
import re
import time
from dataclasses import dataclass
from typing import Any

import anthropic
import openai
from anthropic import AsyncAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from vault_engine.core.config import Settings, get_settings
from vault_engine.core.exceptions import (
    GenerationError,
    StructuralParseError,
    TransientGenerationError,
)
from vault_engine.core.llm_usage import log_llm_usage
from vault_engine.core.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = "You are TED-OS X Engine. Return ONLY valid JSON."

_TRANSIENT_ANTHROPIC = (
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.InternalServerError,
    anthropic.RateLimitError,
)
_TRANSIENT_OPENAI = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.InternalServerError,
    openai.RateLimitError,
)


class GenerationOptions(BaseModel):
    """Per-call generation options. Unset values fall back to settings."""

    json_mode: bool = True
    max_tokens: int | None = None
    timeout: float | None = None
    temperature: float | None = None


@dataclass
class GenerationOutput:
    """Text returned by a provider plus usage bookkeeping."""

    text: str
    provider: str
    model: str
    tokens_input: int = 0
    tokens_output: int = 0
    duration_ms: int = 0


async def _generate_anthropic(
    settings: Settings, system_prompt: str, user_prompt: str, options: GenerationOptions
) -> GenerationOutput:
    client = AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
    t0 = time.monotonic()
    try:
        response = await client.messages.create(
            model=settings.GENERATION_MODEL,
            max_tokens=options.max_tokens or settings.GENERATION_MAX_TOKENS,
            temperature=(
                options.temperature
                if options.temperature is not None
                else settings.GENERATION_TEMPERATURE
            ),
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            timeout=options.timeout,
        )
    except _TRANSIENT_ANTHROPIC as e:
        raise TransientGenerationError(f"anthropic: {e}") from e
    except anthropic.APIError as e:
        raise GenerationError(f"anthropic: {e}") from e

    text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
    return GenerationOutput(
        text=text,
        provider="anthropic",
        model=settings.GENERATION_MODEL,
        tokens_input=response.usage.input_tokens,
        tokens_output=response.usage.output_tokens,
        duration_ms=int((time.monotonic() - t0) * 1000),
    )


async def _generate_openai(
    settings: Settings, system_prompt: str, user_prompt: str, options: GenerationOptions
) -> GenerationOutput:
    llm = ChatOpenAI(
        api_key=settings.OPENAI_API_KEY,
        model=settings.FALLBACK_OPENAI_MODEL,
        temperature=(
            options.temperature
            if options.temperature is not None
            else settings.GENERATION_TEMPERATURE
        ),
        max_tokens=options.max_tokens or settings.GENERATION_MAX_TOKENS,
        timeout=options.timeout,
        max_retries=0,
    )
    runnable = llm.bind(response_format={"type": "json_object"}) if options.json_mode else llm

    t0 = time.monotonic()
    try:
        message = await runnable.ainvoke(
            [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        )
    except _TRANSIENT_OPENAI as e:
        raise TransientGenerationError(f"openai: {e}") from e
    except openai.APIError as e:
        raise GenerationError(f"openai: {e}") from e

    usage = getattr(message, "usage_metadata", None) or {}
    return GenerationOutput(
        text=str(message.content),
        provider="openai",
        model=settings.FALLBACK_OPENAI_MODEL,
        tokens_input=usage.get("input_tokens", 0),
        tokens_output=usage.get("output_tokens", 0),
        duration_ms=int((time.monotonic() - t0) * 1000),
    )


async def generate(
    system_prompt: str,
    user_prompt: str,
    options: GenerationOptions | None = None,
    *,
    funnel_id: str | None = None,
    section_id: str | None = None,
) -> GenerationOutput:
    """
    Run one generation, falling back across configured providers.

    Args:
        system_prompt: System instructions
        user_prompt: User content
        options: Generation options
        funnel_id: Optional funnel for usage attribution
        section_id: Optional section for usage attribution

    Returns:
        GenerationOutput from the first provider that succeeded

    Raises:
        TransientGenerationError: If every provider failed and at least one
            failure was transient
        GenerationError: If no provider is configured or all failures were
            non-retryable
    """
    settings = get_settings()
    options = options or GenerationOptions()

    providers = []
    if settings.ANTHROPIC_API_KEY:
        providers.append(("anthropic", _generate_anthropic))
    if settings.OPENAI_API_KEY:
        providers.append(("openai", _generate_openai))
    if not providers:
        raise GenerationError("No generation provider configured")

    errors: list[GenerationError] = []
    for name, call in providers:
        try:
            output = await call(settings, system_prompt, user_prompt, options)
        except GenerationError as e:
            logger.warning(
                f"Provider {name} failed: {e}",
                extra={"funnel_id": funnel_id, "section_id": section_id},
            )
            errors.append(e)
            continue

        log_llm_usage(
            workflow="vault_generation",
            model=output.model,
            provider=output.provider,
            tokens_input=output.tokens_input,
            tokens_output=output.tokens_output,
            duration_ms=output.duration_ms,
            funnel_id=funnel_id,
            section_id=section_id,
        )
        return output

    summary = "; ".join(str(e) for e in errors)
    if any(isinstance(e, TransientGenerationError) for e in errors):
        raise TransientGenerationError(f"All providers failed: {summary}")
    raise GenerationError(f"All providers failed: {summary}")


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_structured(raw_output: str) -> dict[str, Any]:
    """
    Parse generation output as a JSON object.

    Args:
        raw_output: Raw string from the provider

    Returns:
        Parsed dict

    Raises:
        StructuralParseError: If the output is not a JSON object after fence cleanup
    """
    cleaned = _strip_llm_fences(raw_output or "")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise StructuralParseError(f"Malformed JSON output: {e}", raw_output=raw_output) from e

    if not isinstance(parsed, dict):
        raise StructuralParseError(
            f"Expected a JSON object, got {type(parsed).__name__}", raw_output=raw_output
        )
    return parsed
