"""Tests for the regenerate sections graph."""

import uuid
from unittest.mock import MagicMock, patch

import pytest

from tests.fakes.fake_generator import FakeGenerator
from tests.fakes.fake_jobs_db import FakeJobsClient
from vault_engine.core.exceptions import GenerationError
from vault_engine.core.generation_pipeline import GenerationPipeline
from vault_engine.graphs.regenerate_sections_graph import run_regenerate_sections
from vault_engine.services.funnel_vault import FunnelVault

JOB_ID = uuid.UUID("12345678-1234-1234-1234-123456789abc")


def _vault(store, generator):
    pipeline = GenerationPipeline(
        generate_fn=generator, max_attempts=1, initial_delay=0.0, max_delay=0.0, multiplier=1.0
    )
    return FunnelVault(store=store, pipeline=pipeline, propagation_enabled=False)


@pytest.mark.asyncio
async def test_sequential_run_generates_in_order(store, funnel_id):
    generator = FakeGenerator(
        {"message": {"oneLineMessage": "m"}, "story": {"bigIdea": "b"}, "bio": {"shortBio": "s"}}
    )
    vault = _vault(store, generator)

    result = await vault.regenerate_sections(funnel_id, ["bio", "story", "message", "story"])

    assert result["status"] == "completed"
    assert result["sections_completed"] == ["message", "story", "bio"]
    assert [c["section_id"] for c in generator.calls] == ["message", "story", "bio"]
    # Later sections see the content generated earlier in the batch
    assert await store.get_section_content(funnel_id, "story") == {"bigIdea": "b"}


@pytest.mark.asyncio
async def test_failures_are_collected_and_job_updated(store, funnel_id):
    generator = FakeGenerator({"message": {"oneLineMessage": "m"}, "story": GenerationError("nope")})
    vault = _vault(store, generator)

    with (
        patch("vault_engine.db.generation_jobs.start_job") as start_job,
        patch("vault_engine.db.generation_jobs.append_job_section") as append,
        patch("vault_engine.db.generation_jobs.finish_job", return_value="failed") as finish,
    ):
        result = await vault.regenerate_sections(funnel_id, ["message", "story"], job_id=JOB_ID)

    start_job.assert_called_once_with(JOB_ID)
    assert [c.args for c in append.call_args_list] == [
        (JOB_ID, "message", True),
        (JOB_ID, "story", False),
    ]
    finish.assert_called_once()
    assert finish.call_args.args[1:3] == (["message"], ["story"])
    assert result["status"] == "failed"
    assert result["sections_failed"] == ["story"]
    assert "Failed: story" in result["summary"]


@pytest.mark.asyncio
async def test_parallel_run_generates_whole_batch(store, funnel_id):
    generator = FakeGenerator(default={"a": 1})
    vault = _vault(store, generator)

    result = await vault.regenerate_sections(
        funnel_id, ["bio", "appointmentReminders", "facebookAds"], parallel=True
    )

    assert result["status"] == "completed"
    assert sorted(result["sections_completed"]) == ["appointmentReminders", "bio", "facebookAds"]
    assert len(generator.calls) == 3


@pytest.mark.asyncio
async def test_empty_batch_completes_immediately(store, funnel_id):
    vault = _vault(store, FakeGenerator())

    result = await run_regenerate_sections(vault, funnel_id, [])

    assert result["status"] == "completed"
    assert result["results"] == []


@pytest.mark.asyncio
async def test_job_bookkeeping_errors_do_not_stop_generation(store, funnel_id):
    generator = FakeGenerator({"bio": {"shortBio": "s"}})
    vault = _vault(store, generator)

    with (
        patch("vault_engine.db.generation_jobs.start_job"),
        patch("vault_engine.db.generation_jobs.append_job_section", side_effect=RuntimeError("db")),
        patch("vault_engine.db.generation_jobs.finish_job", return_value="completed"),
    ):
        result = await vault.regenerate_sections(funnel_id, ["bio"], job_id=JOB_ID)

    assert result["sections_completed"] == ["bio"]


@pytest.mark.asyncio
async def test_crash_marks_job_failed(store, funnel_id):
    vault = MagicMock()

    with (
        patch("vault_engine.db.generation_jobs.start_job", side_effect=RuntimeError("db down")),
        patch("vault_engine.db.generation_jobs.fail_job") as fail_job,
    ):
        with pytest.raises(RuntimeError, match="db down"):
            await run_regenerate_sections(vault, funnel_id, ["bio"], job_id=JOB_ID)

    fail_job.assert_called_once_with(JOB_ID, "db down")


@pytest.mark.asyncio
async def test_parallel_run_leaves_consistent_job_row(store, funnel_id):
    sections = ["message", "offer", "story", "leadMagnet"]
    client = FakeJobsClient(
        {
            "id": str(JOB_ID),
            "status": "queued",
            "sections_to_generate": sections,
            "sections_completed": [],
            "sections_failed": [],
            "progress_percentage": 0,
        },
        read_delay=0.05,
    )
    generator = FakeGenerator({"story": GenerationError("nope")}, default={"a": 1})
    vault = _vault(store, generator)

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=client):
        result = await vault.regenerate_sections(funnel_id, sections, job_id=JOB_ID, parallel=True)

    assert result["sections_failed"] == ["story"]

    row = client.rows[str(JOB_ID)]
    assert row["status"] == "failed"
    assert sorted(row["sections_completed"]) == ["leadMagnet", "message", "offer"]
    assert row["sections_failed"] == ["story"]
    assert row["progress_percentage"] == 100
    assert row["error_message"] == "Failed 1 section(s)"

    # Progress updates are applied one at a time, none lost
    progress = [u["progress_percentage"] for u in client.updates if "status" not in u]
    assert progress == [25, 50, 75, 100]
