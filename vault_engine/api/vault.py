"""API endpoints for vault sections, fields and propagation."""

from functools import lru_cache

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from vault_engine.core.exceptions import ConcurrencyConflictError, FieldWriteError
from vault_engine.core.logging import get_logger
from vault_engine.core.schemas_vault import (
    GenerateSectionRequest,
    GenerateSectionResponse,
    ImpactResponse,
    PropagateRequest,
    RegenerateSectionsRequest,
    RegenerateSectionsResponse,
    UpdateStatusResponse,
    WriteFieldRequest,
    WriteFieldResponse,
)
from vault_engine.core.section_registry import get_descriptor
from vault_engine.db.generation_jobs import create_job
from vault_engine.services.funnel_vault import FunnelVault

logger = get_logger(__name__)

router = APIRouter()


@lru_cache
def get_vault() -> FunnelVault:
    """Process-wide FunnelVault; overridden in tests."""
    return FunnelVault()


def _require_section(section_id: str) -> None:
    if get_descriptor(section_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown section: {section_id}")


@router.post(
    "/funnels/{funnel_id}/sections/{section_id}/generate",
    response_model=GenerateSectionResponse,
)
async def generate_section(
    funnel_id: str,
    section_id: str,
    request: GenerateSectionRequest,
    vault: FunnelVault = Depends(get_vault),
) -> GenerateSectionResponse:
    """
    Generate one section and persist it as a new version.

    A failed generation is reported with status "failed"; the previous
    version of the section is left in place.

    Raises:
        HTTPException 404: If the section is unknown
        HTTPException 409: If the write lost too many version races
        HTTPException 500: If persistence fails
    """
    _require_section(section_id)

    try:
        result = await vault.generate_section(
            funnel_id,
            section_id,
            fallback=request.fallback_answers,
            refinement=request.refinement.model_dump() if request.refinement else None,
        )
    except ConcurrencyConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.exception(
            f"Failed to generate {section_id}",
            extra={"funnel_id": funnel_id, "section_id": section_id},
        )
        raise HTTPException(status_code=500, detail=f"Section generation failed: {e}") from e

    return GenerateSectionResponse(
        section_id=section_id,
        status=result.status,
        content=result.content,
        error=result.error,
        failed_chunks=result.failed_chunks,
        validation_issues=result.validation.issues if result.validation else [],
    )


@router.patch(
    "/funnels/{funnel_id}/sections/{section_id}/fields/{field_id}",
    response_model=WriteFieldResponse,
)
async def write_field(
    funnel_id: str,
    section_id: str,
    field_id: str,
    request: WriteFieldRequest,
    vault: FunnelVault = Depends(get_vault),
) -> WriteFieldResponse:
    """
    Write a field value as a new version.

    Atomic changes are propagated to downstream sections in the background.

    Raises:
        HTTPException 404: If the section is unknown
        HTTPException 409: If the write lost too many version races
        HTTPException 422: If the field path is invalid for the stored value
        HTTPException 500: If persistence fails
    """
    _require_section(section_id)

    try:
        result = await vault.write_field(
            funnel_id, section_id, field_id, request.value, request.metadata
        )
    except FieldWriteError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except ConcurrencyConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.exception(
            f"Failed to write field {section_id}.{field_id}",
            extra={"funnel_id": funnel_id, "section_id": section_id, "field_id": field_id},
        )
        raise HTTPException(status_code=500, detail="Failed to write field") from e

    return WriteFieldResponse(
        funnel_id=funnel_id,
        section_id=section_id,
        field_id=field_id,
        version=result.version,
        propagation_scheduled=result.propagation is not None,
    )


@router.post("/funnels/{funnel_id}/propagate")
async def propagate(
    funnel_id: str,
    request: PropagateRequest,
    vault: FunnelVault = Depends(get_vault),
) -> dict:
    """
    Propagate an atomic value change synchronously and report the outcome.

    Raises:
        HTTPException 404: If the section is unknown
        HTTPException 500: If propagation could not run
    """
    _require_section(request.section_id)

    try:
        result = await vault.propagate_atomic_change(
            funnel_id, request.section_id, request.field_id, request.old_value, request.new_value
        )
    except Exception as e:
        logger.exception("Propagation failed", extra={"funnel_id": funnel_id})
        raise HTTPException(status_code=500, detail="Propagation failed") from e

    return result.to_dict()


@router.get("/funnels/{funnel_id}/update-status", response_model=UpdateStatusResponse)
async def update_status(
    funnel_id: str, vault: FunnelVault = Depends(get_vault)
) -> UpdateStatusResponse:
    """List fields whose current version was written by propagation."""
    try:
        updates = await vault.get_update_status(funnel_id)
    except Exception as e:
        logger.exception("Failed to read update status", extra={"funnel_id": funnel_id})
        raise HTTPException(status_code=500, detail="Failed to read update status") from e

    return UpdateStatusResponse(funnel_id=funnel_id, updates=updates, count=len(updates))


@router.get("/dependencies/{section_id}/impact", response_model=ImpactResponse)
async def dependency_impact(
    section_id: str,
    field_id: str | None = Query(None, description="Optional field within the section"),
    vault: FunnelVault = Depends(get_vault),
) -> ImpactResponse:
    """Sections affected by a change to a section or one of its fields."""
    _require_section(section_id)
    return ImpactResponse(
        section_id=section_id,
        field_id=field_id,
        affected_sections=vault.dependency_impact(section_id, field_id),
    )


async def _run_regeneration(
    vault: FunnelVault, funnel_id: str, job_id, request: RegenerateSectionsRequest
) -> None:
    try:
        await vault.regenerate_sections(
            funnel_id,
            request.sections,
            job_id=job_id,
            fallback=request.fallback_answers,
            refinement=request.refinement.model_dump() if request.refinement else None,
            parallel=request.parallel,
        )
    except Exception:
        # The graph has already marked the job failed
        logger.exception(
            f"Background regeneration job {job_id} crashed",
            extra={"funnel_id": funnel_id, "job_id": str(job_id)},
        )


@router.post("/funnels/{funnel_id}/regenerate", response_model=RegenerateSectionsResponse)
async def regenerate_sections(
    funnel_id: str,
    request: RegenerateSectionsRequest,
    background_tasks: BackgroundTasks,
    vault: FunnelVault = Depends(get_vault),
) -> RegenerateSectionsResponse:
    """
    Queue a background regeneration job and return its id.

    Progress is available from GET /jobs/{job_id}.

    Raises:
        HTTPException 404: If any section is unknown
        HTTPException 500: If the job could not be created
    """
    for section_id in request.sections:
        _require_section(section_id)

    try:
        job_id = create_job(
            funnel_id,
            request.sections,
            input_json={"sections": request.sections, "parallel": request.parallel},
        )
    except Exception as e:
        logger.exception("Failed to create regeneration job", extra={"funnel_id": funnel_id})
        raise HTTPException(status_code=500, detail="Failed to create job") from e

    background_tasks.add_task(_run_regeneration, vault, funnel_id, job_id, request)

    return RegenerateSectionsResponse(job_id=job_id, status="queued", sections=request.sections)
