"""
Dependency Resolver.

Assembles upstream context for a section about to be generated:

- resolve(): for each upstream section of the target, read its current
  content and shape it into a small context object (ideal client, message,
  story summary, free gift name, opt-in headline, offer details). Sections
  with no content fall back to raw intake answers and are reported in
  ``missing``; resolution never raises.
- build_core_context(): flattens all core sections into one context dict for
  prompt injection into non-core sections.
- format_context_for_prompt(): renders that dict as a deterministic block.

Usage:
    from vault_engine.core.dependency_resolver import DependencyResolver

    resolver = DependencyResolver(store)
    context = await resolver.resolve(funnel_id, "emails", intake_answers)
    context.missing  # -> ["leadMagnet"]
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from vault_engine.core.dependency_graph import DEFAULT_GRAPH, DependencyGraph
from vault_engine.core.logging import get_logger
from vault_engine.core.versioned_store import VersionedFieldStore

logger = get_logger(__name__)

FREE_GIFT_PLACEHOLDER = "[Free Gift Name]"

CORE_SECTIONS = ("idealClient", "message", "story", "offer", "leadMagnet", "bio", "vsl")

FREE_GIFT_PATHS = (
    "leadMagnet.titleAndHook.mainTitle",
    "titleAndHook.mainTitle",
    "leadMagnet.mainTitle",
    "mainTitle",
    "title",
)

OPT_IN_HEADLINE_PATHS = (
    "funnelCopy.optinPage.headline_text",
    "optinPage.headline_text",
    "funnelCopy.optInPageCopy.headline",
    "optInPageCopy.headline",
    "funnelCopy.optInHeadlines.primary",
    "optInHeadlines.primary",
)

# Placeholder defaults never rendered into prompts
_PLACEHOLDERS = {"your company", "the founder", "Not specified", FREE_GIFT_PLACEHOLDER}

STORY_SUMMARY_LIMIT = 200


def extract_path(content: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts; None when any hop is missing."""
    value = content
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _first(*values: Any, default: Any = "") -> Any:
    for value in values:
        if value:
            return value
    return default


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def extract_free_gift_name(content: dict[str, Any] | None) -> str | None:
    """Lead magnet title from any of the historical content shapes."""
    if not content:
        return None
    for path in FREE_GIFT_PATHS:
        value = extract_path(content, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_opt_in_headline(content: dict[str, Any] | None) -> str | None:
    if not content:
        return None
    for path in OPT_IN_HEADLINE_PATHS:
        value = extract_path(content, path)
        if isinstance(value, str) and value.strip():
            return value.strip()

    headlines = extract_path(content, "funnelCopy.optInHeadlines") or content.get("optInHeadlines")
    if isinstance(headlines, list) and headlines and isinstance(headlines[0], str):
        return headlines[0]
    return None


def extract_story_summary(content: dict[str, Any] | None) -> str | None:
    if not content:
        return None
    story = content.get("signatureStory") or content.get("story") or content
    if not isinstance(story, dict):
        return None
    return _first(story.get("oneLinerStory"), story.get("networkingStory"), story.get("bigIdea"), default=None)


def extract_offer_details(content: dict[str, Any] | None) -> dict[str, Any]:
    if not content:
        return {"pricing": None, "blueprint": None, "offerName": None}
    offer = content.get("signatureOffer") or content.get("offer") or content
    if not isinstance(offer, dict):
        offer = {}
    return {
        "pricing": _first(offer.get("tier1Investment"), offer.get("pricing"), offer.get("investment"), default=None),
        "blueprint": _first(offer.get("sevenStepBlueprint"), offer.get("blueprint"), default=None),
        "offerName": _first(offer.get("offerName"), offer.get("name"), default=None),
        "tier1Promise": _first(offer.get("tier1Promise"), offer.get("promise"), default=None),
        "tier1WhoItsFor": _first(offer.get("tier1WhoItsFor"), offer.get("whoItsFor"), default=None),
    }


def build_enriched_data(base: dict[str, Any], resolved: dict[str, Any]) -> dict[str, Any]:
    """Merge resolved upstream context into raw answers for prompt builders."""
    enriched = dict(base or {})

    ideal_client = resolved.get("idealClientContext")
    if ideal_client:
        enriched["idealClientContext"] = ideal_client
        if ideal_client.get("bestIdealClient"):
            enriched["idealClient"] = _as_text(ideal_client["bestIdealClient"])

    message = resolved.get("messageContext")
    if message:
        enriched["messageContext"] = message
        if message.get("oneLiner"):
            enriched["message"] = message["oneLiner"]

    if resolved.get("storySummary"):
        enriched["storySummary"] = resolved["storySummary"]

    if resolved.get("freeGiftName"):
        enriched["freeGiftName"] = resolved["freeGiftName"]
        enriched["leadMagnetTitle"] = resolved["freeGiftName"]

    if resolved.get("optInHeadline"):
        enriched["optInHeadline"] = resolved["optInHeadline"]

    offer = resolved.get("offerContext")
    if offer:
        enriched["offerContext"] = offer
        if offer.get("pricing"):
            enriched["pricing"] = offer["pricing"]
        if offer.get("offerName"):
            enriched["offerName"] = offer["offerName"]

    return enriched


@dataclass
class ResolvedContext:
    """Upstream context for one section generation."""

    funnel_id: str
    section_id: str
    resolved: dict[str, Any] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    fallback: dict[str, Any] = field(default_factory=dict)
    core_context: dict[str, Any] | None = None

    @property
    def free_gift_name(self) -> str:
        return self.resolved.get("freeGiftName") or FREE_GIFT_PLACEHOLDER

    def enriched_data(self) -> dict[str, Any]:
        return build_enriched_data(self.fallback, self.resolved)

    def to_dict(self) -> dict:
        return {
            "funnel_id": self.funnel_id,
            "section_id": self.section_id,
            "resolved": self.resolved,
            "missing": self.missing,
        }


# =============================================================================
# Core context
# =============================================================================


def _list_or_empty(*candidates: Any) -> list[Any]:
    for candidate in candidates:
        if isinstance(candidate, list) and candidate:
            return candidate
    return []


def build_global_context(
    sections: dict[str, dict[str, Any]],
    answers: dict[str, Any] | None = None,
    resolved: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Flatten core sections, resolved context and intake answers into one dict.

    Priority per key: resolved context, then raw section content, then intake
    answers, then a placeholder default.
    """
    answers = answers or {}
    resolved = resolved or {}
    intake = answers.get("intakeForm") or answers.get("intake_form") or {}

    ic_ctx = resolved.get("idealClientContext") or {}
    msg_ctx = resolved.get("messageContext") or {}
    offer_ctx = resolved.get("offerContext") or {}

    ideal_client = sections.get("idealClient") or {}
    snapshot = ideal_client.get("idealClientSnapshot") or {}
    message = sections.get("message") or {}
    story = sections.get("story") or {}
    offer = sections.get("offer") or {}
    lead_magnet = sections.get("leadMagnet") or {}
    bio = sections.get("bio") or {}
    vsl = sections.get("vsl") or {}

    best_ideal_client = _first(
        ic_ctx.get("bestIdealClient"),
        snapshot.get("bestIdealClient"),
        ideal_client.get("bestIdealClient"),
    )
    target_audience = (
        _as_text(best_ideal_client)
        if best_ideal_client
        else _first(answers.get("idealClient"), intake.get("idealClient"), default="Not specified")
    )

    core_problem = _first(answers.get("coreProblem"), intake.get("coreProblem"))
    outcomes = _first(answers.get("outcomes"), intake.get("outcomes"))

    key_achievements = bio.get("keyAchievements")
    credentials = (
        ", ".join(str(a) for a in key_achievements)
        if isinstance(key_achievements, list)
        else bio.get("credentials") or ""
    )

    return {
        "businessName": _first(
            answers.get("businessName"),
            answers.get("business_name"),
            intake.get("businessName"),
            intake.get("business_name"),
            bio.get("businessName"),
            default="your company",
        ),
        "founderName": _first(
            bio.get("name"),
            bio.get("founderName"),
            intake.get("founderName"),
            intake.get("name"),
            default="the founder",
        ),
        "niche": _first(answers.get("niche"), answers.get("industry"), intake.get("niche"), intake.get("industry")),
        "targetAudience": target_audience,
        "painPoints": _list_or_empty(
            ic_ctx.get("topChallenges"),
            ideal_client.get("top3Challenges"),
            snapshot.get("top3Challenges"),
            [core_problem] if core_problem else None,
        ),
        "desires": _list_or_empty(
            ic_ctx.get("topDesires"),
            ideal_client.get("top3Desires"),
            snapshot.get("top3Desires"),
            [outcomes] if outcomes else None,
        ),
        "objections": _list_or_empty(
            ic_ctx.get("topObjections"),
            ideal_client.get("topObjections"),
            snapshot.get("topObjections"),
        ),
        "wordsTheyUse": _first(
            ic_ctx.get("wordsTheyUse"), ideal_client.get("wordsTheyUse"), snapshot.get("wordsTheyUse")
        ),
        "coreMessage": _first(
            msg_ctx.get("oneLiner"),
            message.get("oneLineMessage"),
            message.get("oneLiner"),
            answers.get("message") if isinstance(answers.get("message"), str) else None,
            intake.get("message"),
        ),
        "powerLines": _list_or_empty(msg_ctx.get("powerPositioning"), message.get("powerPositioningLines")),
        "topOutcomes": _list_or_empty(msg_ctx.get("topOutcomes"), message.get("topThreeOutcomes")),
        "uniqueMechanism": _first(
            message.get("uniqueMechanism"), answers.get("uniqueAdvantage"), intake.get("uniqueAdvantage")
        ),
        "bigPromise": _first(message.get("bigPromise"), outcomes),
        "storySummary": _first(
            resolved.get("storySummary"), story.get("networkingStory"), story.get("oneLinerStory")
        ),
        "bigIdea": story.get("bigIdea") or "",
        "storyLow": _first(story.get("pit"), answers.get("storyLowMoment"), intake.get("storyLowMoment")),
        "storyBreakthrough": _first(
            story.get("breakthrough"), answers.get("storyBreakthrough"), intake.get("storyBreakthrough")
        ),
        "offerName": _first(
            offer_ctx.get("offerName"),
            offer.get("offerName"),
            answers.get("offerName"),
            answers.get("offerProgram"),
            intake.get("offerProgram"),
        ),
        "offerType": offer.get("offerMode") or "Coaching/Consulting",
        "pricing": _first(
            offer_ctx.get("pricing"),
            offer.get("tier1RecommendedPrice"),
            offer.get("tier1Investment"),
            answers.get("pricing"),
            intake.get("pricing"),
        ),
        "offerBlueprint": _first(offer_ctx.get("blueprint"), offer.get("sevenStepBlueprint")),
        "offerPromise": _first(offer_ctx.get("tier1Promise"), offer.get("tier1Promise")),
        "freeGiftName": _first(
            resolved.get("freeGiftName") if resolved.get("freeGiftName") != FREE_GIFT_PLACEHOLDER else None,
            answers.get("leadMagnetTitle"),
            extract_path(lead_magnet, "concept.title"),
            extract_free_gift_name(lead_magnet),
            intake.get("leadMagnetTitle"),
            default=FREE_GIFT_PLACEHOLDER,
        ),
        "bioSummary": _first(bio.get("fullBio"), bio.get("shortBio")),
        "bioCredentials": credentials,
        "vslPatternInterrupt": vsl.get("step1_patternInterrupt") or "",
        "vslBenefits": vsl.get("step2_benefitsHighlight") or "",
    }


def _item_text(item: Any, *keys: str) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        for key in keys:
            if item.get(key):
                return str(item[key])
    return json.dumps(item, ensure_ascii=False)


def format_context_for_prompt(context: dict[str, Any]) -> str:
    """
    Render a core context dict as a deterministic prompt block.

    Lines always appear in the same order; lists show at most three numbered
    items; empty values and placeholder defaults are omitted.
    """
    lines = ["=== BUSINESS CONTEXT (Use these exact details for consistency) ==="]

    def present(key: str) -> Any:
        value = context.get(key)
        if not value or (isinstance(value, str) and value in _PLACEHOLDERS):
            return None
        return value

    if present("businessName"):
        lines.append(f"Business Name: {context['businessName']}")
    if present("founderName"):
        lines.append(f"Founder Name: {context['founderName']}")
    if present("niche"):
        lines.append(f"Industry/Niche: {context['niche']}")

    if present("targetAudience"):
        lines.append(f"\nTarget Audience: {_as_text(context['targetAudience'])}")

    for key, title, item_keys in (
        ("painPoints", "Top Challenges", ("challenge", "text")),
        ("desires", "Top Desires", ("desire", "text")),
        ("objections", "Top Objections", ("objection", "text")),
    ):
        items = context.get(key)
        if isinstance(items, list) and items:
            lines.append(f"\n{title}:")
            for index, item in enumerate(items[:3]):
                lines.append(f"  {index + 1}. {_item_text(item, *item_keys)}")

    if present("coreMessage"):
        lines.append(f'\nOne-Liner Message: "{context["coreMessage"]}"')
    if present("uniqueMechanism"):
        lines.append(f"Unique Mechanism: {context['uniqueMechanism']}")
    if present("bigPromise"):
        lines.append(f"Big Promise: {context['bigPromise']}")

    summary = present("storySummary")
    if summary:
        summary = str(summary)
        suffix = "..." if len(summary) > STORY_SUMMARY_LIMIT else ""
        lines.append(f'\nStory Summary: "{summary[:STORY_SUMMARY_LIMIT]}{suffix}"')
    if present("bigIdea"):
        lines.append(f"Big Idea: {context['bigIdea']}")

    if present("offerName"):
        lines.append(f'\nOffer/Program Name: "{context["offerName"]}"')
    if present("pricing"):
        lines.append(f"Pricing: {_as_text(context['pricing'])}")

    if present("freeGiftName"):
        lines.append(f'\nFree Gift Name: "{context["freeGiftName"]}"')

    if present("bioCredentials"):
        lines.append(f"\nCredentials: {context['bioCredentials']}")

    lines.append("\n=== END CONTEXT ===")
    return "\n".join(lines)


# =============================================================================
# Resolver
# =============================================================================


class DependencyResolver:
    """Fetches and shapes upstream content for prompt builders."""

    def __init__(
        self,
        store: VersionedFieldStore | None = None,
        graph: DependencyGraph = DEFAULT_GRAPH,
    ):
        self.store = store or VersionedFieldStore()
        self.graph = graph
        self._extractors: dict[
            str, Callable[[str, dict[str, Any], dict[str, Any], list[str]], Awaitable[None]]
        ] = {
            "idealClient": self._resolve_ideal_client,
            "message": self._resolve_message,
            "story": self._resolve_story,
            "leadMagnet": self._resolve_free_gift,
            "funnelCopy": self._resolve_opt_in_headline,
            "offer": self._resolve_offer,
        }

    async def _fetch(self, funnel_id: str, section_id: str) -> dict[str, Any] | None:
        try:
            content = await self.store.get_section_content(funnel_id, section_id)
        except Exception as e:
            logger.warning(
                f"Could not read {section_id}, treating as missing: {e}",
                extra={"funnel_id": funnel_id, "section_id": section_id},
            )
            return None
        return content if isinstance(content, dict) and content else None

    async def resolve(
        self,
        funnel_id: str,
        target_section: str,
        fallback_answers: dict[str, Any] | None = None,
    ) -> ResolvedContext:
        """
        Resolve upstream context for ``target_section``. Never raises.

        Args:
            funnel_id: Funnel UUID string
            target_section: Section about to be generated
            fallback_answers: Raw intake answers used where upstream content is absent

        Returns:
            ResolvedContext with shaped values and the list of missing sections
        """
        fallback = dict(fallback_answers or {})
        context = ResolvedContext(funnel_id=funnel_id, section_id=target_section, fallback=fallback)

        for upstream in self.graph.upstream_of(target_section):
            extractor = self._extractors.get(upstream)
            try:
                if extractor is not None:
                    await extractor(funnel_id, fallback, context.resolved, context.missing)
                elif await self._fetch(funnel_id, upstream) is None:
                    context.missing.append(upstream)
            except Exception as e:
                logger.warning(
                    f"Resolving {upstream} failed, using fallback: {e}",
                    extra={"funnel_id": funnel_id, "section_id": target_section},
                )
                if upstream not in context.missing:
                    context.missing.append(upstream)

        if context.missing:
            logger.warning(
                f"MissingDependencyWarning: {target_section} resolved with fallback for "
                f"{', '.join(context.missing)}",
                extra={"funnel_id": funnel_id, "section_id": target_section},
            )
        else:
            logger.info(
                f"Resolved {len(context.resolved)} dependencies for {target_section}",
                extra={"funnel_id": funnel_id, "section_id": target_section},
            )
        return context

    async def _resolve_ideal_client(
        self, funnel_id: str, fallback: dict, resolved: dict, missing: list[str]
    ) -> None:
        content = await self._fetch(funnel_id, "idealClient")
        if content is None:
            resolved["idealClientContext"] = {"summary": fallback.get("idealClient", "")}
            missing.append("idealClient")
            return
        ic = content.get("idealClientSnapshot") or content.get("idealClient") or content
        if not isinstance(ic, dict):
            ic = content
        resolved["idealClientContext"] = {
            "bestIdealClient": _first(ic.get("bestIdealClient"), fallback.get("idealClient")),
            "topChallenges": _first(ic.get("topChallenges"), ic.get("top3Challenges"), default=[]),
            "topDesires": _first(ic.get("topDesires"), ic.get("whatTheyWant"), default=[]),
            "wordsTheyUse": _first(ic.get("wordsTheyUse"), ic.get("howToTalkToThem")),
        }

    async def _resolve_message(
        self, funnel_id: str, fallback: dict, resolved: dict, missing: list[str]
    ) -> None:
        content = await self._fetch(funnel_id, "message")
        if content is None:
            resolved["messageContext"] = {"oneLiner": fallback.get("message", "")}
            missing.append("message")
            return
        msg = content.get("signatureMessage") or content.get("message") or content
        if not isinstance(msg, dict):
            msg = content
        resolved["messageContext"] = {
            "oneLiner": _first(msg.get("oneLiner"), msg.get("oneLineMessage")),
            "powerPositioning": msg.get("powerPositioningLines") or [],
            "topOutcomes": _first(msg.get("topThreeOutcomes"), msg.get("topOutcomes"), default=[]),
        }

    async def _resolve_story(
        self, funnel_id: str, fallback: dict, resolved: dict, missing: list[str]
    ) -> None:
        content = await self._fetch(funnel_id, "story")
        resolved["storySummary"] = extract_story_summary(content) or fallback.get("story", "")
        if content is None:
            missing.append("story")

    async def _resolve_free_gift(
        self, funnel_id: str, fallback: dict, resolved: dict, missing: list[str]
    ) -> None:
        content = await self._fetch(funnel_id, "leadMagnet")
        name = extract_free_gift_name(content)
        if not name:
            name = await self._free_gift_from_fields(funnel_id)
        resolved["freeGiftName"] = name or fallback.get("leadMagnetTitle") or FREE_GIFT_PLACEHOLDER
        if content is None:
            missing.append("leadMagnet")

    async def _free_gift_from_fields(self, funnel_id: str) -> str | None:
        for field_path in ("titleAndHook.mainTitle", "mainTitle"):
            try:
                value = await self.store.get_field_value(funnel_id, "leadMagnet", field_path)
            except Exception as e:
                logger.warning(f"Free gift field lookup failed: {e}", extra={"funnel_id": funnel_id})
                return None
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    async def _resolve_opt_in_headline(
        self, funnel_id: str, fallback: dict, resolved: dict, missing: list[str]
    ) -> None:
        headline = extract_opt_in_headline(await self._fetch(funnel_id, "funnelCopy"))
        resolved["optInHeadline"] = headline
        if not headline:
            missing.append("funnelCopy")

    async def _resolve_offer(
        self, funnel_id: str, fallback: dict, resolved: dict, missing: list[str]
    ) -> None:
        content = await self._fetch(funnel_id, "offer")
        resolved["offerContext"] = extract_offer_details(content)
        if content is None:
            missing.append("offer")

    async def build_core_context(
        self,
        funnel_id: str,
        fallback_answers: dict[str, Any] | None = None,
        resolved: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Aggregate every core section into one flat context dict. Never raises."""
        contents = await asyncio.gather(*(self._fetch(funnel_id, s) for s in CORE_SECTIONS))
        sections = {s: c or {} for s, c in zip(CORE_SECTIONS, contents)}
        return build_global_context(sections, fallback_answers, resolved)
