"""API endpoints for generation job status."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query

from vault_engine.core.logging import get_logger
from vault_engine.db.generation_jobs import get_job, list_jobs

logger = get_logger(__name__)

router = APIRouter()


@router.get("/{job_id}")
async def get_job_status(job_id: UUID) -> dict:
    """
    Get a generation job with its section lists and progress percentage.

    Raises:
        HTTPException 404: If job not found
        HTTPException 500: If database error
    """
    try:
        job = get_job(job_id)

        if not job:
            raise HTTPException(status_code=404, detail="Job not found")

        return job

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to get job {job_id}")
        raise HTTPException(status_code=500, detail="Failed to retrieve job status") from e


@router.get("/")
async def list_funnel_jobs(
    funnel_id: str = Query(..., description="Funnel id to filter jobs"),
    limit: int = Query(20, description="Maximum number of jobs to return", ge=1, le=100),
    offset: int = Query(0, description="Number of jobs to skip", ge=0),
) -> dict:
    """List recent generation jobs for a funnel."""
    try:
        jobs = list_jobs(funnel_id=funnel_id, limit=limit, offset=offset)

        return {
            "jobs": jobs,
            "limit": limit,
            "offset": offset,
            "count": len(jobs),
        }

    except Exception as e:
        logger.exception(f"Failed to list jobs for funnel {funnel_id}")
        raise HTTPException(status_code=500, detail="Failed to retrieve jobs") from e
