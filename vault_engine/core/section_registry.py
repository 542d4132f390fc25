"""Section descriptors for every vault section.

One frozen SectionDescriptor per SectionKind carries everything the engine
needs to know about a section: its place in the dependency graph, its
atomic fields, how to prompt for it (single-shot or chunked), and how to
merge and validate chunked output. ``get_descriptor`` is the only lookup.

Usage:
    from vault_engine.core.section_registry import get_descriptor

    descriptor = get_descriptor("emails")
    if descriptor.is_chunked:
        ...
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any

from vault_engine.core import section_mergers as mergers
from vault_engine.core.section_mergers import ValidationResult

# Sections at or below this ordinal are the "core" business sections; any
# section after them receives the formatted core context in its prompt.
CORE_CONTEXT_THRESHOLD = 3

DEFAULT_MAX_TOKENS = 8000


class SectionKind(str, Enum):
    """All generated vault sections."""

    IDEAL_CLIENT = "idealClient"
    MESSAGE = "message"
    STORY = "story"
    OFFER = "offer"
    SALES_SCRIPTS = "salesScripts"
    LEAD_MAGNET = "leadMagnet"
    VSL = "vsl"
    EMAILS = "emails"
    FACEBOOK_ADS = "facebookAds"
    FUNNEL_COPY = "funnelCopy"
    BIO = "bio"
    APPOINTMENT_REMINDERS = "appointmentReminders"
    SETTER_SCRIPT = "setterScript"
    SMS = "sms"


@dataclass(frozen=True)
class ChunkSpec:
    """One parallel sub-generation of a chunked section."""

    name: str
    keys: tuple[str, ...]
    instructions: str


@dataclass(frozen=True)
class SectionDescriptor:
    """Static description of one section."""

    kind: SectionKind
    numeric_key: int
    phase: int
    display_name: str
    instructions: str
    output_keys: tuple[str, ...] = ()
    upstream: tuple[str, ...] = ()
    downstream: tuple[str, ...] = ()
    atomic_fields: tuple[str, ...] = ()
    timeout: float | None = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    chunks: tuple[ChunkSpec, ...] = ()
    merger: Callable[[Sequence[Any]], dict[str, Any]] | None = None
    validator: Callable[[dict[str, Any]], ValidationResult] = mergers.validate_document

    @property
    def section_id(self) -> str:
        return self.kind.value

    @property
    def is_chunked(self) -> bool:
        return bool(self.chunks)

    @property
    def is_core(self) -> bool:
        return self.numeric_key <= CORE_CONTEXT_THRESHOLD


def _chunks(keys: Sequence[Sequence[str]], labels: Sequence[str]) -> tuple[ChunkSpec, ...]:
    return tuple(
        ChunkSpec(name=f"part{index + 1}", keys=tuple(chunk_keys), instructions=label)
        for index, (chunk_keys, label) in enumerate(zip(keys, labels))
    )


_CORE = ("idealClient", "message")
_CORE_WITH_STORY = ("idealClient", "message", "story")
_ALL_BUT_CORE = (
    "story",
    "offer",
    "vsl",
    "funnelCopy",
    "emails",
    "sms",
    "facebookAds",
    "setterScript",
    "salesScripts",
    "bio",
)

_DESCRIPTORS: tuple[SectionDescriptor, ...] = (
    SectionDescriptor(
        kind=SectionKind.IDEAL_CLIENT,
        numeric_key=1,
        phase=1,
        display_name="Ideal Client Profile",
        instructions=(
            "Describe the single best ideal client: demographics, top challenges, "
            "what they want, what makes them pay and how to talk to them."
        ),
        output_keys=(
            "bestIdealClient",
            "top3Challenges",
            "whatTheyWant",
            "whatMakesThemPay",
            "howToTalkToThem",
        ),
        downstream=("message", *_ALL_BUT_CORE),
    ),
    SectionDescriptor(
        kind=SectionKind.MESSAGE,
        numeric_key=2,
        phase=1,
        display_name="Million-Dollar Message",
        instructions="Write the one-line message, a spoken introduction and power positioning lines.",
        output_keys=("oneLineMessage", "spokenIntroduction", "powerPositioningLines"),
        upstream=("idealClient",),
        downstream=_ALL_BUT_CORE,
    ),
    SectionDescriptor(
        kind=SectionKind.STORY,
        numeric_key=3,
        phase=1,
        display_name="Personal Story",
        instructions="Write the founder's signature story: big idea, networking and stage versions.",
        output_keys=("bigIdea", "networkingStory", "stageStory", "socialPostVersion"),
        upstream=_CORE,
        downstream=("vsl", "funnelCopy", "bio"),
    ),
    SectionDescriptor(
        kind=SectionKind.OFFER,
        numeric_key=4,
        phase=1,
        display_name="Offer & Program",
        instructions="Design the signature offer with a seven-step blueprint and tiered pricing.",
        output_keys=(
            "offerName",
            "sevenStepBlueprint",
            "tier1WhoItsFor",
            "tier1Promise",
            "tier1Timeframe",
            "tier1Deliverables",
            "tier1RecommendedPrice",
        ),
        upstream=_CORE,
        downstream=("vsl", "funnelCopy", "salesScripts", "emails"),
        atomic_fields=("offerName", "name", "tier1Investment", "tier1RecommendedPrice", "pricing"),
        timeout=120.0,
    ),
    SectionDescriptor(
        kind=SectionKind.SALES_SCRIPTS,
        numeric_key=5,
        phase=3,
        display_name="Sales Scripts",
        instructions="Write the closer call script.",
        upstream=(*_CORE, "offer"),
        timeout=90.0,
        chunks=_chunks(
            mergers.CLOSER_CHUNK_KEYS,
            (
                "Opening, discovery questions, stakes, commitment scale, decision gate and recap.",
                "Pitch, proof line, investment close, next steps and objection handling.",
            ),
        ),
        merger=mergers.merge_closer_chunks,
        validator=mergers.validate_closer_script,
    ),
    SectionDescriptor(
        kind=SectionKind.LEAD_MAGNET,
        numeric_key=6,
        phase=2,
        display_name="Lead Magnet",
        instructions="Create the free gift: title and hook, core deliverables, opt-in headline, bullets.",
        output_keys=(
            "titleAndHook",
            "mainTitle",
            "subtitle",
            "coreDeliverables",
            "optInHeadline",
            "bullets",
            "ctaButtonText",
        ),
        upstream=_CORE,
        downstream=("funnelCopy", "emails", "sms", "facebookAds", "setterScript", "vsl"),
        atomic_fields=("mainTitle", "titleAndHook.mainTitle", "concept.title"),
    ),
    SectionDescriptor(
        kind=SectionKind.VSL,
        numeric_key=7,
        phase=2,
        display_name="VSL Script",
        instructions="Write the video sales letter script from hook to call to action.",
        output_keys=(
            "hookOptions",
            "whoItsFor",
            "whoItsNotFor",
            "openingStory",
            "problemAgitation",
            "methodReveal",
            "socialProof",
            "offerPresentation",
            "strongCTA",
        ),
        upstream=(*_CORE_WITH_STORY, "leadMagnet"),
        downstream=("funnelCopy",),
        timeout=120.0,
    ),
    SectionDescriptor(
        kind=SectionKind.EMAILS,
        numeric_key=8,
        phase=2,
        display_name="Email Sequence",
        instructions="Write the nurture email sequence. Each email has subject, preview and body.",
        upstream=(*_CORE, "leadMagnet"),
        timeout=180.0,
        chunks=_chunks(
            mergers.EMAIL_CHUNK_KEYS,
            (
                "Emails 1-4: delivery and first value emails.",
                "Emails 5-8c: story, objection and first call-to-action emails.",
                "Emails 9-12: case study and authority emails.",
                "Emails 13-15c: urgency and final call-to-action emails.",
            ),
        ),
        merger=mergers.merge_email_chunks,
        validator=mergers.validate_email_sequence,
    ),
    SectionDescriptor(
        kind=SectionKind.FACEBOOK_ADS,
        numeric_key=9,
        phase=2,
        display_name="Facebook Ads",
        instructions="Write Facebook ad variations with headline, primary text and call to action.",
        output_keys=("ads",),
        upstream=(*_CORE, "leadMagnet", "funnelCopy"),
    ),
    SectionDescriptor(
        kind=SectionKind.FUNNEL_COPY,
        numeric_key=10,
        phase=2,
        display_name="Funnel Copy",
        instructions="Write the funnel page copy.",
        upstream=(*_CORE_WITH_STORY, "leadMagnet"),
        timeout=90.0,
        chunks=_chunks(
            mergers.FUNNEL_COPY_CHUNK_KEYS,
            (
                "Opt-in page, calendar page and thank-you page copy.",
                "Sales page part 1: hero, problem and agitation.",
                "Sales page part 2: solution, method and proof.",
                "Sales page part 3: offer stack, guarantee, FAQ and close.",
            ),
        ),
        merger=mergers.merge_funnel_copy_chunks,
        validator=mergers.validate_funnel_copy,
    ),
    SectionDescriptor(
        kind=SectionKind.BIO,
        numeric_key=15,
        phase=2,
        display_name="Professional Bio",
        instructions="Write the founder bio in short and long forms with credentials.",
        output_keys=("name", "founderName", "shortBio", "fullBio", "credentials"),
        upstream=_CORE_WITH_STORY,
        downstream=("funnelCopy",),
        atomic_fields=("name", "founderName"),
    ),
    SectionDescriptor(
        kind=SectionKind.APPOINTMENT_REMINDERS,
        numeric_key=16,
        phase=2,
        display_name="Appointment Reminders",
        instructions="Write appointment confirmation and reminder messages.",
        output_keys=("confirmationEmail", "reminders"),
        upstream=_CORE,
    ),
    SectionDescriptor(
        kind=SectionKind.SETTER_SCRIPT,
        numeric_key=17,
        phase=3,
        display_name="Setter Script",
        instructions="Write the appointment setter call script.",
        upstream=(*_CORE, "leadMagnet"),
        timeout=45.0,
        chunks=_chunks(
            mergers.SETTER_CHUNK_KEYS,
            (
                "Call goal, mindset, opening, permission, current situation and primary goal.",
                "Obstacle, authority drop, fit, booking, show-up confirmation and objections.",
            ),
        ),
        merger=mergers.merge_setter_chunks,
        validator=mergers.validate_setter_script,
    ),
    SectionDescriptor(
        kind=SectionKind.SMS,
        numeric_key=19,
        phase=2,
        display_name="SMS Sequences",
        instructions="Write the SMS follow-up sequence. Each SMS has a message.",
        upstream=(*_CORE, "leadMagnet"),
        timeout=30.0,
        chunks=_chunks(
            mergers.SMS_CHUNK_KEYS,
            (
                "SMS 1-5: opt-in follow-up.",
                "SMS 6-7b and no-show messages.",
            ),
        ),
        merger=mergers.merge_sms_chunks,
        validator=mergers.validate_sms_sequence,
    ),
)

SECTION_REGISTRY: MappingProxyType = MappingProxyType({d.section_id: d for d in _DESCRIPTORS})


def get_descriptor(section_id: str | SectionKind) -> SectionDescriptor | None:
    """Look up a section descriptor; unknown sections return None."""
    key = section_id.value if isinstance(section_id, SectionKind) else section_id
    return SECTION_REGISTRY.get(key)

