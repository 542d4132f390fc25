"""Generation job lifecycle database operations."""

from datetime import datetime, timezone  # noqa: UP035
from typing import Any
from uuid import UUID

from vault_engine.core.logging import get_logger
from vault_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

JOBS_TABLE = "generation_jobs"


def _utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()  # noqa: UP017


def create_job(
    funnel_id: str,
    sections: list[str],
    job_type: str = "regenerate_sections",
    input_json: dict[str, Any] | None = None,
) -> UUID:
    """
    Create a queued generation job.

    Args:
        funnel_id: Funnel UUID string
        sections: Section ids the job will generate, in order
        job_type: Type of job (e.g., "regenerate_sections", "generate_all")
        input_json: Input parameters for the job

    Returns:
        Job UUID

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table(JOBS_TABLE)
            .insert(
                {
                    "funnel_id": funnel_id,
                    "job_type": job_type,
                    "status": "queued",
                    "sections_to_generate": list(sections),
                    "sections_completed": [],
                    "sections_failed": [],
                    "progress_percentage": 0,
                    "input": input_json or {},
                    "output": {},
                }
            )
            .execute()
        )

        if not response.data:
            raise ValueError("No data returned from create_job")

        job_id = UUID(response.data[0]["id"])
        logger.info(
            f"Created {job_type} job {job_id} for {len(sections)} section(s)",
            extra={"funnel_id": funnel_id, "job_id": str(job_id)},
        )
        return job_id

    except Exception as e:
        logger.error(f"Failed to create job: {e}", extra={"funnel_id": funnel_id})
        raise


def start_job(job_id: UUID) -> None:
    """
    Mark a job as processing.

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        supabase.table(JOBS_TABLE).update(
            {
                "status": "processing",
                "started_at": _utc_now_iso(),
            }
        ).eq("id", str(job_id)).execute()

        logger.info(f"Started job {job_id}", extra={"job_id": str(job_id)})

    except Exception as e:
        logger.error(f"Failed to start job: {e}", extra={"job_id": str(job_id)})
        raise


def append_job_section(job_id: UUID, section_id: str, succeeded: bool) -> dict[str, Any]:
    """
    Record one finished section on a job and recompute progress.

    Sections are deduplicated: recording the same section twice leaves the
    lists unchanged.

    Args:
        job_id: Job UUID
        section_id: Section that finished
        succeeded: Whether the section was generated

    Returns:
        The fields written to the job row

    Raises:
        ValueError: If the job does not exist
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table(JOBS_TABLE)
            .select("sections_to_generate, sections_completed, sections_failed")
            .eq("id", str(job_id))
            .execute()
        )
        if not response.data:
            raise ValueError(f"Job {job_id} not found")

        job = response.data[0]
        completed = list(job.get("sections_completed") or [])
        failed = list(job.get("sections_failed") or [])
        target = completed if succeeded else failed
        if section_id not in target:
            target.append(section_id)

        total = len(job.get("sections_to_generate") or []) or 1
        done = len(set(completed) | set(failed))
        patch = {
            "sections_completed": completed,
            "sections_failed": failed,
            "progress_percentage": min(100, round(done / total * 100)),
        }

        supabase.table(JOBS_TABLE).update(patch).eq("id", str(job_id)).execute()

        logger.info(
            f"Job {job_id}: {section_id} {'completed' if succeeded else 'failed'} "
            f"({patch['progress_percentage']}%)",
            extra={"job_id": str(job_id), "section_id": section_id},
        )
        return patch

    except Exception as e:
        logger.error(f"Failed to append section to job: {e}", extra={"job_id": str(job_id)})
        raise


def finish_job(
    job_id: UUID,
    sections_completed: list[str],
    sections_failed: list[str],
    output_json: dict[str, Any] | None = None,
) -> str:
    """
    Move a job to its terminal status.

    The final section lists are written with the status, so the row matches
    the run even if an earlier progress update was lost. The job fails iff
    any section failed.

    Args:
        job_id: Job UUID
        sections_completed: Sections generated by the run
        sections_failed: Sections that failed in the run
        output_json: Run output (results and summary)

    Returns:
        The terminal status ("completed" or "failed")

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()
    status = "failed" if sections_failed else "completed"
    patch: dict[str, Any] = {
        "status": status,
        "sections_completed": list(sections_completed),
        "sections_failed": list(sections_failed),
        "progress_percentage": 100,
        "output": output_json or {},
        "completed_at": _utc_now_iso(),
        "error_message": f"Failed {len(sections_failed)} section(s)" if sections_failed else None,
    }

    try:
        supabase.table(JOBS_TABLE).update(patch).eq("id", str(job_id)).execute()
        logger.info(f"Finished job {job_id}: {status}", extra={"job_id": str(job_id)})
        return status

    except Exception as e:
        logger.error(f"Failed to finish job: {e}", extra={"job_id": str(job_id)})
        raise


def fail_job(job_id: UUID, error_message: str) -> None:
    """
    Mark a job as failed outright (the run itself crashed).

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        supabase.table(JOBS_TABLE).update(
            {
                "status": "failed",
                "error_message": error_message,
                "completed_at": _utc_now_iso(),
            }
        ).eq("id", str(job_id)).execute()

        logger.info(f"Failed job {job_id}: {error_message}", extra={"job_id": str(job_id)})

    except Exception as e:
        logger.error(f"Failed to update job as failed: {e}", extra={"job_id": str(job_id)})
        raise


def get_job(job_id: UUID) -> dict[str, Any] | None:
    """
    Get a job by ID.

    Returns:
        Job dict or None if not found

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = supabase.table(JOBS_TABLE).select("*").eq("id", str(job_id)).execute()

        if response.data:
            return response.data[0]

        logger.warning(f"Job {job_id} not found")
        return None

    except Exception as e:
        logger.error(f"Failed to get job {job_id}: {e}")
        raise


def list_jobs(
    funnel_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """
    List jobs, optionally filtered by funnel.

    Returns:
        List of job dicts ordered by created_at desc

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        query = supabase.table(JOBS_TABLE).select("*").order("created_at", desc=True)

        if funnel_id:
            query = query.eq("funnel_id", funnel_id)

        response = query.range(offset, offset + limit - 1).execute()

        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list jobs: {e}")
        raise
