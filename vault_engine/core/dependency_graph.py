"""
Static dependency graph between vault sections.

The graph answers three questions for the rest of the engine:

- upstream_of(section): which sections must be resolved for context before
  generating ``section``
- downstream_of(section): which sections must be re-checked after
  ``section`` changes (not required to mirror upstream_of)
- is_atomic_field(section, path): whether a field holds a short literal value
  (names, prices, titles) that may be propagated by find-and-replace

The graph is an immutable value built once from the section registry and
passed into the resolver, pipeline and propagation engine. Unknown sections
yield empty results, so an unmapped section simply has no dependents.

Usage:
    from vault_engine.core.dependency_graph import DEFAULT_GRAPH

    DEFAULT_GRAPH.downstream_of("offer")
    # ['vsl', 'funnelCopy', 'salesScripts', 'emails']
"""

import heapq
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from vault_engine.core.section_registry import SECTION_REGISTRY, SectionDescriptor

# Field-level impact is narrower than the section-level map: when a listed
# field changes, only these sections reference it.
FIELD_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "offer.offerName": ("setterScript", "salesScripts", "emails", "vsl", "funnelCopy"),
    "leadMagnet.mainTitle": ("facebookAds", "emails", "sms", "funnelCopy", "setterScript"),
    "message.oneLineMessage": ("bio", "funnelCopy", "facebookAds"),
    "offer.sevenStepBlueprint": ("vsl", "salesScripts", "funnelCopy"),
    "story.bigIdea": ("vsl", "bio", "funnelCopy"),
    "idealClient.avatarOverview": ("message", "facebookAds", "emails", "funnelCopy"),
}

# Atomic declarations for inputs that are not generated sections
EXTRA_ATOMIC_FIELDS: dict[str, tuple[str, ...]] = {
    "intakeForm": ("businessName", "business_name"),
}


@dataclass(frozen=True)
class AtomicChange:
    """A changed atomic value detected between two versions of a section."""

    field_path: str
    old_value: str
    new_value: str


def _freeze(table: Mapping[str, Iterable[str]]) -> MappingProxyType:
    return MappingProxyType({key: tuple(values) for key, values in table.items()})


def _get_path(content: Any, path: str) -> Any:
    current = content
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


@dataclass(frozen=True)
class DependencyGraph:
    """Immutable section dependency configuration."""

    upstream: Mapping[str, tuple[str, ...]]
    downstream: Mapping[str, tuple[str, ...]]
    atomic_fields: Mapping[str, tuple[str, ...]]
    field_dependencies: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    display_names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    ordering: Mapping[str, tuple[int, int]] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        # Freeze whatever mappings were passed in and reject cycles up front
        for name in ("upstream", "downstream", "atomic_fields", "field_dependencies"):
            object.__setattr__(self, name, _freeze(getattr(self, name)))
        object.__setattr__(self, "display_names", MappingProxyType(dict(self.display_names)))
        object.__setattr__(self, "ordering", MappingProxyType(dict(self.ordering)))
        self.generation_order()

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[SectionDescriptor],
        field_dependencies: Mapping[str, Iterable[str]] | None = None,
        extra_atomic_fields: Mapping[str, Iterable[str]] | None = None,
    ) -> "DependencyGraph":
        descriptors = list(descriptors)
        atomic = {d.section_id: d.atomic_fields for d in descriptors if d.atomic_fields}
        atomic.update({k: tuple(v) for k, v in (extra_atomic_fields or {}).items()})
        return cls(
            upstream={d.section_id: d.upstream for d in descriptors},
            downstream={d.section_id: d.downstream for d in descriptors if d.downstream},
            atomic_fields=atomic,
            field_dependencies=dict(field_dependencies or {}),
            display_names={d.section_id: d.display_name for d in descriptors},
            ordering={d.section_id: (d.phase, d.numeric_key) for d in descriptors},
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def upstream_of(self, section: str) -> list[str]:
        return list(self.upstream.get(section, ()))

    def downstream_of(self, section: str) -> list[str]:
        return list(self.downstream.get(section, ()))

    def is_atomic_field(self, section: str, field_path: str) -> bool:
        """
        Check whether a field path is declared atomic for a section.

        Matches exactly, or when one path is a dotted suffix of the other, so
        ``titleAndHook.mainTitle`` and ``mainTitle`` both match a declared
        ``mainTitle``.
        """
        if not field_path:
            return False
        for declared in self.atomic_fields.get(section, ()):
            if field_path == declared:
                return True
            if field_path.endswith(f".{declared}") or declared.endswith(f".{field_path}"):
                return True
        return False

    def display_name(self, section: str) -> str:
        return self.display_names.get(section, section)

    def calculate_dependency_impact(self, section: str, field_id: str | None = None) -> list[str]:
        """
        Sections affected by a change, preferring field-level impact when declared.

        Args:
            section: Section that changed
            field_id: Optional field within the section

        Returns:
            Affected section ids, never including ``section`` itself
        """
        affected: tuple[str, ...] | None = None
        if field_id:
            affected = self.field_dependencies.get(f"{section}.{field_id}")
        if affected is None:
            affected = self.downstream.get(section, ())
        return [s for s in affected if s != section]

    def detect_atomic_changes(
        self,
        section: str,
        old_content: dict[str, Any] | None,
        new_content: dict[str, Any] | None,
    ) -> list[AtomicChange]:
        """Diff two content documents over the section's declared atomic paths."""
        changes: list[AtomicChange] = []
        for path in self.atomic_fields.get(section, ()):
            old_value = _get_path(old_content or {}, path)
            new_value = _get_path(new_content or {}, path)
            if not isinstance(old_value, (str, int, float)) or isinstance(old_value, bool):
                continue
            if not isinstance(new_value, (str, int, float)) or isinstance(new_value, bool):
                continue
            old_text, new_text = str(old_value).strip(), str(new_value).strip()
            if old_text and new_text and old_text != new_text:
                changes.append(AtomicChange(path, old_text, new_text))
        return changes

    def generation_order(self) -> list[str]:
        """
        Topological order over the upstream relation, ties broken by (phase, ordinal).

        Raises:
            ValueError: If the upstream relation contains a cycle
        """
        sections = set(self.upstream) | {u for deps in self.upstream.values() for u in deps}
        indegree = {s: 0 for s in sections}
        consumers: dict[str, list[str]] = {s: [] for s in sections}
        for section, deps in self.upstream.items():
            for dep in deps:
                indegree[section] += 1
                consumers[dep].append(section)

        def rank(section: str) -> tuple[int, int, str]:
            phase, numeric = self.ordering.get(section, (99, 99))
            return phase, numeric, section

        ready = [rank(s) for s, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            section = heapq.heappop(ready)[2]
            order.append(section)
            for consumer in consumers[section]:
                indegree[consumer] -= 1
                if indegree[consumer] == 0:
                    heapq.heappush(ready, rank(consumer))

        if len(order) != len(sections):
            cyclic = sorted(s for s, degree in indegree.items() if degree > 0)
            raise ValueError(f"Dependency cycle between sections: {cyclic}")
        return order


def build_default_graph() -> DependencyGraph:
    """Build the dependency graph for the standard section set."""
    return DependencyGraph.from_descriptors(
        SECTION_REGISTRY.values(),
        field_dependencies=FIELD_DEPENDENCIES,
        extra_atomic_fields=EXTRA_ATOMIC_FIELDS,
    )


DEFAULT_GRAPH = build_default_graph()
