"""Section regeneration LangGraph agent.

Drives a batch of section generations for one funnel and keeps the
generation job row up to date as sections finish. Sequential batches run
strictly in the given order; parallel batches are generated together and
finish in any order.

The FunnelVault doing the work is passed through the run config
(``configurable.vault``) rather than the state, so the state stays plain data.
The config also carries a per-run ``job_lock`` that serializes progress
updates, since each one is a read-modify-write of the job row.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from vault_engine.core.logging import get_logger
from vault_engine.db import generation_jobs

logger = get_logger(__name__)

MAX_STEPS = 50


@dataclass
class RegenerateSectionsState:
    """State for the regenerate sections graph."""

    # Input fields
    funnel_id: str
    sections: list[str]
    job_id: UUID | None = None
    fallback_answers: dict[str, Any] = field(default_factory=dict)
    refinement_context: str | None = None
    parallel: bool = False

    # Processing state
    step_count: int = 0
    current_index: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    # Output
    sections_completed: list[str] = field(default_factory=list)
    sections_failed: list[str] = field(default_factory=list)
    status: str = "queued"
    summary: str = ""


def _check_max_steps(state: RegenerateSectionsState) -> RegenerateSectionsState:
    """Check and increment step count, raise if exceeded."""
    state.step_count += 1
    if state.step_count > MAX_STEPS:
        raise RuntimeError(f"Graph exceeded max steps ({MAX_STEPS})")
    return state


def _vault(config: RunnableConfig) -> Any:
    vault = (config.get("configurable") or {}).get("vault")
    if vault is None:
        raise ValueError("regenerate_sections graph requires configurable.vault")
    return vault


def _job_lock(config: RunnableConfig) -> asyncio.Lock:
    return (config.get("configurable") or {}).get("job_lock") or asyncio.Lock()


async def _record(
    state: RegenerateSectionsState, job_lock: asyncio.Lock, section_id: str, succeeded: bool
) -> None:
    if state.job_id is None:
        return
    try:
        async with job_lock:
            await asyncio.to_thread(
                generation_jobs.append_job_section, state.job_id, section_id, succeeded
            )
    except Exception as e:
        # Job progress is bookkeeping; the section outcome is already persisted
        logger.error(
            f"Could not record {section_id} on job {state.job_id}: {e}",
            extra={"job_id": str(state.job_id), "section_id": section_id},
        )


async def start_job(state: RegenerateSectionsState) -> dict[str, Any]:
    """Mark the job as processing."""
    state = _check_max_steps(state)

    logger.info(
        f"Regenerating {len(state.sections)} section(s) "
        f"({'parallel' if state.parallel else 'sequential'})",
        extra={"funnel_id": state.funnel_id, "job_id": str(state.job_id)},
    )
    if state.job_id is not None:
        await asyncio.to_thread(generation_jobs.start_job, state.job_id)

    return {"status": "processing", "step_count": state.step_count}


def should_continue(state: RegenerateSectionsState) -> str:
    """Check if there are more sections to generate."""
    if state.current_index < len(state.sections):
        return "generate_next"
    return "finalize_job"


async def _generate_one(
    state: RegenerateSectionsState, vault: Any, job_lock: asyncio.Lock, section_id: str
) -> dict[str, Any]:
    try:
        result = await vault.generate_section(
            state.funnel_id,
            section_id,
            fallback=state.fallback_answers,
            refinement=state.refinement_context,
        )
        record = {"section_id": section_id, "success": result.ok, "error": result.error}
    except Exception as e:
        logger.error(
            f"Regeneration of {section_id} raised: {e}",
            extra={"funnel_id": state.funnel_id, "section_id": section_id},
        )
        record = {"section_id": section_id, "success": False, "error": str(e)}

    await _record(state, job_lock, section_id, record["success"])
    return record


async def generate_next(state: RegenerateSectionsState, config: RunnableConfig) -> dict[str, Any]:
    """Generate the next section, or every remaining section when running in parallel."""
    state = _check_max_steps(state)
    vault = _vault(config)
    job_lock = _job_lock(config)

    if state.parallel:
        batch = state.sections[state.current_index :]
        records = list(
            await asyncio.gather(*(_generate_one(state, vault, job_lock, s) for s in batch))
        )
    else:
        section_id = state.sections[state.current_index]
        logger.info(
            f"Generating section {state.current_index + 1}/{len(state.sections)}: {section_id}",
            extra={"funnel_id": state.funnel_id, "section_id": section_id},
        )
        batch = [section_id]
        records = [await _generate_one(state, vault, job_lock, section_id)]

    completed = list(state.sections_completed)
    failed = list(state.sections_failed)
    for record in records:
        target = completed if record["success"] else failed
        if record["section_id"] not in target:
            target.append(record["section_id"])

    return {
        "results": state.results + records,
        "current_index": state.current_index + len(batch),
        "sections_completed": completed,
        "sections_failed": failed,
        "step_count": state.step_count,
    }


async def finalize_job(state: RegenerateSectionsState, config: RunnableConfig) -> dict[str, Any]:
    """Move the job to its terminal status, writing the final section lists."""
    state = _check_max_steps(state)
    status = "failed" if state.sections_failed else "completed"

    summary_parts = [f"Generated {len(state.sections_completed)}/{len(state.sections)} sections"]
    if state.sections_failed:
        summary_parts.append(f"Failed: {', '.join(state.sections_failed)}")
    summary = ". ".join(summary_parts)

    if state.job_id is not None:
        async with _job_lock(config):
            status = await asyncio.to_thread(
                generation_jobs.finish_job,
                state.job_id,
                state.sections_completed,
                state.sections_failed,
                {"results": state.results, "summary": summary},
            )

    logger.info(summary, extra={"funnel_id": state.funnel_id, "job_id": str(state.job_id)})
    return {"status": status, "summary": summary, "step_count": state.step_count}


def _build_graph() -> StateGraph:
    """Build the LangGraph for section regeneration."""
    graph = StateGraph(RegenerateSectionsState)

    graph.add_node("start_job", start_job)
    graph.add_node("generate_next", generate_next)
    graph.add_node("finalize_job", finalize_job)

    graph.set_entry_point("start_job")
    graph.add_conditional_edges(
        "start_job",
        should_continue,
        {"generate_next": "generate_next", "finalize_job": "finalize_job"},
    )
    graph.add_conditional_edges(
        "generate_next",
        should_continue,
        {"generate_next": "generate_next", "finalize_job": "finalize_job"},
    )
    graph.add_edge("finalize_job", END)

    return graph


# Compile the graph once at module load
_compiled_graph = _build_graph().compile()


async def run_regenerate_sections(
    vault: Any,
    funnel_id: str,
    sections: list[str],
    job_id: UUID | None = None,
    fallback_answers: dict[str, Any] | None = None,
    refinement_context: str | None = None,
    parallel: bool = False,
) -> dict[str, Any]:
    """
    Run the regenerate sections graph.

    Args:
        vault: FunnelVault that generates and persists each section
        funnel_id: Funnel UUID string
        sections: Sections to generate, in order
        job_id: Optional generation job to keep up to date
        fallback_answers: Raw intake answers for missing upstream content
        refinement_context: Optional dependency-update note for every prompt
        parallel: Generate the whole batch concurrently

    Returns:
        Dict with status, sections_completed, sections_failed, results and summary

    Raises:
        RuntimeError: If graph exceeds max steps
    """
    initial_state = RegenerateSectionsState(
        funnel_id=funnel_id,
        sections=list(sections),
        job_id=job_id,
        fallback_answers=dict(fallback_answers or {}),
        refinement_context=refinement_context,
        parallel=parallel,
    )

    try:
        final_state = await _compiled_graph.ainvoke(
            initial_state,
            config={
                "configurable": {"vault": vault, "job_lock": asyncio.Lock()},
                "recursion_limit": MAX_STEPS + 10,
            },
        )
    except Exception as e:
        logger.error(
            f"Regeneration graph crashed: {e}",
            extra={"funnel_id": funnel_id, "job_id": str(job_id)},
        )
        if job_id is not None:
            await asyncio.to_thread(generation_jobs.fail_job, job_id, str(e))
        raise

    return {
        "status": final_state.get("status", "completed"),
        "sections_completed": final_state.get("sections_completed", []),
        "sections_failed": final_state.get("sections_failed", []),
        "results": final_state.get("results", []),
        "summary": final_state.get("summary", ""),
    }
