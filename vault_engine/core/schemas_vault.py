"""Pydantic models for the vault API."""

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


# =============================================================================
# Requests
# =============================================================================


class RefinementRequest(BaseModel):
    """Why a dependent section is being regenerated."""

    source_section: str = Field(..., description="Section that was refined")
    source_field: str | None = Field(None, description="Field within the refined section")
    user_feedback: str | None = Field(None, description="The user's original feedback")
    refined_changes: Any = Field(None, description="Refined content, string or JSON")


class GenerateSectionRequest(BaseModel):
    """Request body for generating one section."""

    fallback_answers: dict[str, Any] = Field(
        default_factory=dict, description="Raw intake answers used where upstream content is absent"
    )
    refinement: RefinementRequest | None = None


class WriteFieldRequest(BaseModel):
    """Request body for writing a field value."""

    value: Any = Field(..., description="New field value (string, list or object)")
    metadata: dict[str, Any] | None = Field(None, description="Metadata merged onto the field")


class PropagateRequest(BaseModel):
    """Request body for a synchronous atomic propagation."""

    section_id: str
    field_id: str
    old_value: str = Field(..., min_length=1)
    new_value: str = Field(..., min_length=1)


class RegenerateSectionsRequest(BaseModel):
    """Request body for a background regeneration job."""

    sections: list[str] = Field(..., min_length=1, description="Sections to regenerate")
    fallback_answers: dict[str, Any] = Field(default_factory=dict)
    refinement: RefinementRequest | None = None
    parallel: bool = Field(False, description="Generate the whole batch concurrently")


# =============================================================================
# Responses
# =============================================================================


class GenerateSectionResponse(BaseModel):
    section_id: str
    status: str
    content: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    failed_chunks: list[int] = Field(default_factory=list)
    validation_issues: list[str] = Field(default_factory=list)


class WriteFieldResponse(BaseModel):
    funnel_id: str
    section_id: str
    field_id: str
    version: int
    propagation_scheduled: bool = False


class ImpactResponse(BaseModel):
    section_id: str
    field_id: str | None = None
    affected_sections: list[str]


class UpdateStatusResponse(BaseModel):
    funnel_id: str
    updates: list[dict[str, Any]]
    count: int


class RegenerateSectionsResponse(BaseModel):
    job_id: UUID
    status: str
    sections: list[str]
