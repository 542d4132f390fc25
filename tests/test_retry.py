"""Tests for async retry with backoff."""

from unittest.mock import patch

import pytest

from vault_engine.core.exceptions import GenerationError, TransientGenerationError
from vault_engine.core.retry import backoff_delay, retry_async


def test_backoff_grows_and_caps():
    assert backoff_delay(0, 0.5, 1.5) == 0.5
    assert backoff_delay(2, 0.5, 1.5) == pytest.approx(1.125)
    assert backoff_delay(10, 0.5, 1.5, max_delay=5.0) == 5.0


def test_backoff_jitter_stays_within_fraction():
    for _ in range(20):
        delay = backoff_delay(1, 1.0, 2.0, jitter=0.1)
        assert 2.0 <= delay <= 2.2


@pytest.mark.asyncio
async def test_retries_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientGenerationError("timeout")
        return "ok"

    with patch("vault_engine.core.retry.asyncio.sleep") as sleep:
        sleep.return_value = None
        result = await retry_async(
            flaky,
            max_attempts=3,
            initial_delay=0.5,
            multiplier=2.0,
            retry_on=(TransientGenerationError,),
        )

    assert result == "ok"
    assert len(calls) == 3
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately():
    calls = []

    async def broken():
        calls.append(1)
        raise GenerationError("bad request")

    with pytest.raises(GenerationError, match="bad request"):
        await retry_async(
            broken, max_attempts=5, initial_delay=0.0, retry_on=(TransientGenerationError,)
        )

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_last_error_is_reraised_after_budget():
    calls = []

    async def always_down():
        calls.append(1)
        raise TransientGenerationError(f"down {len(calls)}")

    with pytest.raises(TransientGenerationError, match="down 4"):
        await retry_async(
            always_down, max_attempts=4, initial_delay=0.0, retry_on=(TransientGenerationError,)
        )

    assert len(calls) == 4
