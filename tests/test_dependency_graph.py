"""Tests for the static section dependency graph."""

import pytest

from vault_engine.core.dependency_graph import DEFAULT_GRAPH, DependencyGraph
from vault_engine.core.section_registry import SECTION_REGISTRY, get_descriptor


def test_upstream_tables():
    assert DEFAULT_GRAPH.upstream_of("idealClient") == []
    assert DEFAULT_GRAPH.upstream_of("message") == ["idealClient"]
    assert DEFAULT_GRAPH.upstream_of("salesScripts") == ["idealClient", "message", "offer"]
    assert set(DEFAULT_GRAPH.upstream_of("facebookAds")) == {
        "idealClient",
        "message",
        "leadMagnet",
        "funnelCopy",
    }
    assert set(DEFAULT_GRAPH.upstream_of("vsl")) == {"idealClient", "message", "story", "leadMagnet"}


def test_downstream_tables():
    assert DEFAULT_GRAPH.downstream_of("offer") == ["vsl", "funnelCopy", "salesScripts", "emails"]
    assert DEFAULT_GRAPH.downstream_of("story") == ["vsl", "funnelCopy", "bio"]
    assert "message" in DEFAULT_GRAPH.downstream_of("idealClient")
    assert "message" not in DEFAULT_GRAPH.downstream_of("message")


def test_unknown_section_yields_empty_results():
    assert DEFAULT_GRAPH.upstream_of("nope") == []
    assert DEFAULT_GRAPH.downstream_of("nope") == []
    assert DEFAULT_GRAPH.is_atomic_field("nope", "offerName") is False
    assert DEFAULT_GRAPH.calculate_dependency_impact("nope") == []


def test_is_atomic_field_matches_exact_and_dotted_suffix():
    assert DEFAULT_GRAPH.is_atomic_field("offer", "offerName")
    assert DEFAULT_GRAPH.is_atomic_field("leadMagnet", "titleAndHook.mainTitle")
    assert DEFAULT_GRAPH.is_atomic_field("leadMagnet", "mainTitle")
    assert DEFAULT_GRAPH.is_atomic_field("leadMagnet", "title")
    assert DEFAULT_GRAPH.is_atomic_field("intakeForm", "businessName")


def test_is_atomic_field_rejects_partial_names():
    assert not DEFAULT_GRAPH.is_atomic_field("offer", "sevenStepBlueprint")
    assert not DEFAULT_GRAPH.is_atomic_field("offer", "Name")
    assert not DEFAULT_GRAPH.is_atomic_field("offer", "")
    assert not DEFAULT_GRAPH.is_atomic_field("emails", "offerName")


def test_field_level_impact_is_preferred():
    impact = DEFAULT_GRAPH.calculate_dependency_impact("offer", "offerName")
    assert impact == ["setterScript", "salesScripts", "emails", "vsl", "funnelCopy"]


def test_impact_falls_back_to_section_level_and_excludes_self():
    assert DEFAULT_GRAPH.calculate_dependency_impact("offer", "tier1Promise") == [
        "vsl",
        "funnelCopy",
        "salesScripts",
        "emails",
    ]
    for section in SECTION_REGISTRY:
        assert section not in DEFAULT_GRAPH.calculate_dependency_impact(section)


def test_detect_atomic_changes_in_declaration_order():
    changes = DEFAULT_GRAPH.detect_atomic_changes(
        "offer",
        {"offerName": "Acme", "tier1RecommendedPrice": "$2,000", "tier1Promise": "x"},
        {"offerName": "Acme Pro", "tier1RecommendedPrice": "$3,000", "tier1Promise": "y"},
    )
    assert [(c.field_path, c.old_value, c.new_value) for c in changes] == [
        ("offerName", "Acme", "Acme Pro"),
        ("tier1RecommendedPrice", "$2,000", "$3,000"),
    ]


def test_detect_atomic_changes_ignores_missing_and_structured_values():
    assert DEFAULT_GRAPH.detect_atomic_changes("offer", None, {"offerName": "Acme"}) == []
    assert (
        DEFAULT_GRAPH.detect_atomic_changes(
            "offer", {"pricing": {"a": 1}}, {"pricing": {"a": 2}}
        )
        == []
    )


def test_generation_order_respects_upstream():
    order = DEFAULT_GRAPH.generation_order()
    assert order[0] == "idealClient"
    position = {s: i for i, s in enumerate(order)}
    for section in order:
        for upstream in DEFAULT_GRAPH.upstream_of(section):
            assert position[upstream] < position[section]


def test_cycle_is_rejected():
    with pytest.raises(ValueError, match="cycle"):
        DependencyGraph(
            upstream={"a": ("b",), "b": ("a",)},
            downstream={},
            atomic_fields={},
        )


def test_graph_is_immutable():
    with pytest.raises(TypeError):
        DEFAULT_GRAPH.upstream["offer"] = ()
    with pytest.raises(AttributeError):
        DEFAULT_GRAPH.upstream = {}


def test_display_name_and_descriptor_lookup():
    assert DEFAULT_GRAPH.display_name("offer") == "Offer & Program"
    assert DEFAULT_GRAPH.display_name("unknown") == "unknown"
    assert get_descriptor("emails").is_chunked
    assert get_descriptor("story").is_core
    assert not get_descriptor("offer").is_core
    assert get_descriptor("nope") is None
