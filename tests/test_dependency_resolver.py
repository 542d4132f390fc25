"""Tests for upstream context resolution and core context formatting."""

import pytest

from vault_engine.core.dependency_resolver import (
    FREE_GIFT_PLACEHOLDER,
    DependencyResolver,
    build_global_context,
    extract_free_gift_name,
    extract_opt_in_headline,
    format_context_for_prompt,
)

ANSWERS = {
    "idealClient": "Busy coaches",
    "message": "We help coaches scale",
    "leadMagnetTitle": "The Scale Kit",
    "businessName": "Acme Coaching",
}


async def _seed(store, funnel_id, section_id, content):
    await store.write_section(funnel_id, section_id, content)


@pytest.mark.asyncio
async def test_resolve_with_no_upstream_content_falls_back(store, funnel_id):
    resolver = DependencyResolver(store)

    context = await resolver.resolve(funnel_id, "emails", ANSWERS)

    assert set(context.missing) == {"idealClient", "message", "leadMagnet"}
    assert context.resolved["idealClientContext"] == {"summary": "Busy coaches"}
    assert context.resolved["messageContext"] == {"oneLiner": "We help coaches scale"}
    assert context.free_gift_name == "The Scale Kit"


@pytest.mark.asyncio
async def test_resolve_without_any_fallback_uses_placeholder(store, funnel_id):
    resolver = DependencyResolver(store)

    context = await resolver.resolve(funnel_id, "sms", {})

    assert context.free_gift_name == FREE_GIFT_PLACEHOLDER
    assert "leadMagnet" in context.missing


@pytest.mark.asyncio
async def test_resolve_shapes_present_upstream_content(store, funnel_id):
    await _seed(store, funnel_id, "idealClient", {"bestIdealClient": "Agency owners", "top3Challenges": ["a", "b"]})
    await _seed(store, funnel_id, "message", {"oneLineMessage": "Scale without burnout"})
    await _seed(store, funnel_id, "leadMagnet", {"titleAndHook": {"mainTitle": "7-Day Sprint"}})
    resolver = DependencyResolver(store)

    context = await resolver.resolve(funnel_id, "emails", ANSWERS)

    assert context.missing == []
    assert context.resolved["idealClientContext"]["bestIdealClient"] == "Agency owners"
    assert context.resolved["idealClientContext"]["topChallenges"] == ["a", "b"]
    assert context.resolved["messageContext"]["oneLiner"] == "Scale without burnout"
    assert context.free_gift_name == "7-Day Sprint"

    enriched = context.enriched_data()
    assert enriched["leadMagnetTitle"] == "7-Day Sprint"
    assert enriched["message"] == "Scale without burnout"


@pytest.mark.asyncio
async def test_free_gift_falls_back_to_granular_field(store, funnel_id):
    await store.write_field(funnel_id, "leadMagnet", "mainTitle", "Field Title")
    resolver = DependencyResolver(store)

    context = await resolver.resolve(funnel_id, "sms", {})

    assert context.free_gift_name == "Field Title"
    assert "leadMagnet" in context.missing


@pytest.mark.asyncio
async def test_resolve_survives_store_errors(sections_db, fields_db, funnel_id):
    from vault_engine.core.versioned_store import VersionedFieldStore

    def boom(key):
        raise RuntimeError("db down")

    sections_db.get_current = boom
    fields_db.get_current = boom
    resolver = DependencyResolver(VersionedFieldStore(sections_db, fields_db, retry_delay=0.0))

    context = await resolver.resolve(funnel_id, "salesScripts", ANSWERS)

    assert set(context.missing) == {"idealClient", "message", "offer"}
    assert context.resolved["offerContext"]["offerName"] is None


@pytest.mark.asyncio
async def test_core_context_prefers_content_over_answers(store, funnel_id):
    await _seed(store, funnel_id, "offer", {"offerName": "Acme Accelerator", "tier1RecommendedPrice": "$2,000"})
    resolver = DependencyResolver(store)

    core = await resolver.build_core_context(funnel_id, {"offerName": "Old Name", "businessName": "Acme"})

    assert core["offerName"] == "Acme Accelerator"
    assert core["pricing"] == "$2,000"
    assert core["businessName"] == "Acme"
    assert core["freeGiftName"] == FREE_GIFT_PLACEHOLDER


def test_format_context_is_deterministic_and_skips_placeholders():
    context = build_global_context(
        {
            "idealClient": {"bestIdealClient": "Coaches", "top3Challenges": ["a", "b", "c", "d"]},
            "story": {"networkingStory": "x" * 250},
        },
        {},
    )

    first = format_context_for_prompt(context)
    second = format_context_for_prompt(dict(reversed(list(context.items()))))

    assert first == second
    assert first.startswith("=== BUSINESS CONTEXT")
    assert first.endswith("=== END CONTEXT ===")
    assert "your company" not in first
    assert FREE_GIFT_PLACEHOLDER not in first
    assert "  3. c" in first
    assert "  4. d" not in first
    assert '"' + "x" * 200 + '..."' in first


def test_extractors_handle_historical_shapes():
    assert extract_free_gift_name({"leadMagnet": {"mainTitle": " Kit "}}) == "Kit"
    assert extract_free_gift_name({}) is None
    assert extract_opt_in_headline({"funnelCopy": {"optinPage": {"headline_text": "Grab it"}}}) == "Grab it"
    assert extract_opt_in_headline({"optInHeadlines": ["First", "Second"]}) == "First"
