"""Tests for generation job lifecycle with mocked Supabase."""

import uuid
from unittest.mock import MagicMock, patch

import pytest

JOB_ID = uuid.UUID("12345678-1234-1234-1234-123456789abc")
FUNNEL_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"


def _supabase_with_job(job: dict) -> MagicMock:
    mock_response = MagicMock()
    mock_response.data = [job]

    mock_supabase = MagicMock()
    mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = (
        mock_response
    )
    return mock_supabase


def test_create_job_inserts_queued_payload():
    mock_response = MagicMock()
    mock_response.data = [{"id": str(JOB_ID)}]

    mock_supabase = MagicMock()
    mock_supabase.table.return_value.insert.return_value.execute.return_value = mock_response

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import create_job

        job_id = create_job(FUNNEL_ID, ["emails", "sms"], input_json={"parallel": False})

    assert job_id == JOB_ID
    mock_supabase.table.assert_called_with("generation_jobs")
    payload = mock_supabase.table.return_value.insert.call_args[0][0]
    assert payload["funnel_id"] == FUNNEL_ID
    assert payload["status"] == "queued"
    assert payload["sections_to_generate"] == ["emails", "sms"]
    assert payload["sections_completed"] == []
    assert payload["progress_percentage"] == 0
    assert payload["input"] == {"parallel": False}


def test_create_job_without_data_raises():
    mock_response = MagicMock()
    mock_response.data = []

    mock_supabase = MagicMock()
    mock_supabase.table.return_value.insert.return_value.execute.return_value = mock_response

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import create_job

        with pytest.raises(ValueError):
            create_job(FUNNEL_ID, ["emails"])


def test_start_job_updates_status():
    mock_supabase = MagicMock()

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import start_job

        start_job(JOB_ID)

    update_payload = mock_supabase.table.return_value.update.call_args[0][0]
    assert update_payload["status"] == "processing"
    assert "started_at" in update_payload
    mock_supabase.table.return_value.update.return_value.eq.assert_called_with("id", str(JOB_ID))


def test_append_job_section_computes_progress():
    mock_supabase = _supabase_with_job(
        {
            "sections_to_generate": ["message", "story", "bio"],
            "sections_completed": ["message"],
            "sections_failed": [],
        }
    )

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import append_job_section

        patch_written = append_job_section(JOB_ID, "story", succeeded=False)

    assert patch_written == {
        "sections_completed": ["message"],
        "sections_failed": ["story"],
        "progress_percentage": 67,
    }
    assert mock_supabase.table.return_value.update.call_args[0][0] == patch_written


def test_append_job_section_deduplicates():
    mock_supabase = _supabase_with_job(
        {
            "sections_to_generate": ["message", "story"],
            "sections_completed": ["message"],
            "sections_failed": [],
        }
    )

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import append_job_section

        patch_written = append_job_section(JOB_ID, "message", succeeded=True)

    assert patch_written["sections_completed"] == ["message"]
    assert patch_written["progress_percentage"] == 50


def test_append_job_section_missing_job_raises():
    mock_response = MagicMock()
    mock_response.data = []
    mock_supabase = MagicMock()
    mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = (
        mock_response
    )

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import append_job_section

        with pytest.raises(ValueError, match="not found"):
            append_job_section(JOB_ID, "bio", succeeded=True)


def test_finish_job_fails_iff_sections_failed():
    mock_supabase = MagicMock()

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import finish_job

        assert finish_job(JOB_ID, ["bio"], ["sms", "emails"]) == "failed"
        failed_payload = mock_supabase.table.return_value.update.call_args[0][0]

        assert finish_job(JOB_ID, ["bio", "sms"], []) == "completed"
        completed_payload = mock_supabase.table.return_value.update.call_args[0][0]

    assert failed_payload["status"] == "failed"
    assert failed_payload["error_message"] == "Failed 2 section(s)"
    assert failed_payload["sections_completed"] == ["bio"]
    assert failed_payload["sections_failed"] == ["sms", "emails"]
    assert failed_payload["progress_percentage"] == 100
    assert completed_payload["status"] == "completed"
    assert completed_payload["error_message"] is None
    assert completed_payload["progress_percentage"] == 100


def test_get_job_returns_none_when_missing():
    mock_response = MagicMock()
    mock_response.data = []
    mock_supabase = MagicMock()
    mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value = (
        mock_response
    )

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import get_job

        assert get_job(JOB_ID) is None


def test_list_jobs_filters_by_funnel():
    mock_response = MagicMock()
    mock_response.data = [{"id": str(JOB_ID)}]
    mock_supabase = MagicMock()
    query = mock_supabase.table.return_value.select.return_value.order.return_value
    query.eq.return_value.range.return_value.execute.return_value = mock_response

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import list_jobs

        jobs = list_jobs(funnel_id=FUNNEL_ID, limit=10, offset=5)

    assert jobs == [{"id": str(JOB_ID)}]
    query.eq.assert_called_with("funnel_id", FUNNEL_ID)
    query.eq.return_value.range.assert_called_with(5, 14)


def test_db_errors_are_reraised():
    mock_supabase = MagicMock()
    mock_supabase.table.return_value.update.return_value.eq.return_value.execute.side_effect = (
        RuntimeError("connection lost")
    )

    with patch("vault_engine.db.generation_jobs.get_supabase", return_value=mock_supabase):
        from vault_engine.db.generation_jobs import start_job

        with pytest.raises(RuntimeError, match="connection lost"):
            start_job(JOB_ID)
