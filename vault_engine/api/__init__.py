"""API router for v1 endpoints."""

from fastapi import APIRouter

from vault_engine.api import jobs, vault

router = APIRouter()

# Section generation, field writes and propagation
router.include_router(vault.router, tags=["vault"])

# Generation job status
router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
