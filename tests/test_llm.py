"""Tests for provider fallback and structured output parsing."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from vault_engine.core.exceptions import (
    GenerationError,
    StructuralParseError,
    TransientGenerationError,
)
from vault_engine.core.llm import GenerationOutput, generate, parse_structured


def _settings(anthropic_key="a-key", openai_key="o-key"):
    return SimpleNamespace(ANTHROPIC_API_KEY=anthropic_key, OPENAI_API_KEY=openai_key)


def _output(provider="anthropic"):
    return GenerationOutput(text='{"ok": true}', provider=provider, model="m", tokens_input=3)


class TestParseStructured:
    def test_plain_json(self):
        assert parse_structured('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        raw = 'Here you go:\n```json\n{"headline": "Hi"}\n```\nThanks'
        assert parse_structured(raw) == {"headline": "Hi"}

    def test_bare_fence(self):
        assert parse_structured('```\n{"a": [1, 2]}\n```') == {"a": [1, 2]}

    def test_malformed_json(self):
        with pytest.raises(StructuralParseError) as exc:
            parse_structured('{"a": ')
        assert exc.value.raw_output == '{"a": '

    @pytest.mark.parametrize("raw", ["[1, 2]", '"text"', "42", ""])
    def test_non_object_is_rejected(self, raw):
        with pytest.raises(StructuralParseError):
            parse_structured(raw)


@pytest.mark.asyncio
async def test_primary_provider_success_logs_usage():
    with (
        patch("vault_engine.core.llm.get_settings", return_value=_settings()),
        patch("vault_engine.core.llm._generate_anthropic", new=AsyncMock(return_value=_output())),
        patch("vault_engine.core.llm._generate_openai", new=AsyncMock()) as openai_call,
        patch("vault_engine.core.llm.log_llm_usage") as log_usage,
    ):
        output = await generate("sys", "user", funnel_id="f1", section_id="offer")

    assert output.provider == "anthropic"
    openai_call.assert_not_called()
    log_usage.assert_called_once()
    assert log_usage.call_args.kwargs["section_id"] == "offer"
    assert log_usage.call_args.kwargs["tokens_input"] == 3


@pytest.mark.asyncio
async def test_falls_back_to_openai():
    with (
        patch("vault_engine.core.llm.get_settings", return_value=_settings()),
        patch(
            "vault_engine.core.llm._generate_anthropic",
            new=AsyncMock(side_effect=TransientGenerationError("overloaded")),
        ),
        patch(
            "vault_engine.core.llm._generate_openai",
            new=AsyncMock(return_value=_output("openai")),
        ),
        patch("vault_engine.core.llm.log_llm_usage"),
    ):
        output = await generate("sys", "user")

    assert output.provider == "openai"


@pytest.mark.asyncio
async def test_any_transient_failure_makes_the_aggregate_transient():
    with (
        patch("vault_engine.core.llm.get_settings", return_value=_settings()),
        patch(
            "vault_engine.core.llm._generate_anthropic",
            new=AsyncMock(side_effect=GenerationError("bad request")),
        ),
        patch(
            "vault_engine.core.llm._generate_openai",
            new=AsyncMock(side_effect=TransientGenerationError("timeout")),
        ),
    ):
        with pytest.raises(TransientGenerationError, match="bad request"):
            await generate("sys", "user")


@pytest.mark.asyncio
async def test_non_retryable_failures_stay_non_retryable():
    with (
        patch("vault_engine.core.llm.get_settings", return_value=_settings(openai_key=None)),
        patch(
            "vault_engine.core.llm._generate_anthropic",
            new=AsyncMock(side_effect=GenerationError("invalid key")),
        ),
    ):
        with pytest.raises(GenerationError) as exc:
            await generate("sys", "user")

    assert not isinstance(exc.value, TransientGenerationError)


@pytest.mark.asyncio
async def test_no_provider_configured():
    with patch("vault_engine.core.llm.get_settings", return_value=_settings(None, None)):
        with pytest.raises(GenerationError, match="No generation provider"):
            await generate("sys", "user")
