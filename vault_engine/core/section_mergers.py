"""Merge and validate chunked section output.

Each chunked section is generated as K independent sub-documents. The
mergers below fold them back into the section's canonical shape:

- only the keys a chunk is responsible for are taken from that chunk, so a
  chunk that over-generates cannot overwrite another chunk's keys
- a failed chunk arrives as ``{}`` and simply contributes nothing; missing
  keys are never back-filled with defaults
- models sometimes wrap their answer (``{"emailSequence": {...}}``), so
  known wrapper keys are peeled off first

Validators never raise. They return a ValidationResult whose issues are
logged as warnings by the pipeline.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

EMAIL_CHUNK_KEYS: tuple[tuple[str, ...], ...] = (
    ("email1", "email2", "email3", "email4"),
    ("email5", "email6", "email7", "email8a", "email8b", "email8c"),
    ("email9", "email10", "email11", "email12"),
    ("email13", "email14", "email15a", "email15b", "email15c"),
)

SMS_CHUNK_KEYS: tuple[tuple[str, ...], ...] = (
    ("sms1", "sms2", "sms3", "sms4", "sms5"),
    ("sms6", "sms7a", "sms7b", "smsNoShow1", "smsNoShow2"),
)

SETTER_CHUNK_KEYS: tuple[tuple[str, ...], ...] = (
    (
        "callGoal",
        "setterMindset",
        "openingOptIn",
        "permissionPurpose",
        "currentSituation",
        "primaryGoal",
    ),
    (
        "primaryObstacle",
        "authorityDrop",
        "fitReadiness",
        "bookCall",
        "confirmShowUp",
        "objectionHandling",
    ),
)

CLOSER_CHUNK_KEYS: tuple[tuple[str, ...], ...] = (
    (
        "agendaPermission",
        "discoveryQuestions",
        "stakesImpact",
        "commitmentScale",
        "decisionGate",
        "recapConfirmation",
    ),
    ("pitchScript", "proofLine", "investmentClose", "nextSteps", "objectionHandling"),
)

FUNNEL_COPY_CHUNK_KEYS: tuple[tuple[str, ...], ...] = (
    ("optinPage", "calendarPage", "thankYouPage"),
    ("salesPage_part1",),
    ("salesPage_part2",),
    ("salesPage_part3",),
)


@dataclass
class ValidationResult:
    """Outcome of a structural check over merged section content."""

    valid: bool
    issues: list[str] = field(default_factory=list)


def _unwrap(chunk: Any, wrappers: Sequence[str]) -> dict[str, Any]:
    if not isinstance(chunk, dict):
        return {}
    for wrapper in wrappers:
        inner = chunk.get(wrapper)
        if isinstance(inner, dict):
            return inner
    return chunk


def _pick(data: dict[str, Any], keys: Sequence[str]) -> dict[str, Any]:
    return {key: data[key] for key in keys if key in data}


def merge_keyed_chunks(
    chunks: Sequence[Any],
    chunk_keys: Sequence[Sequence[str]],
    wrappers: Sequence[str] = (),
) -> dict[str, Any]:
    """Fold chunk outputs into one flat dict, chunk i contributing only its keys."""
    merged: dict[str, Any] = {}
    for index, keys in enumerate(chunk_keys):
        chunk = chunks[index] if index < len(chunks) else {}
        merged.update(_pick(_unwrap(chunk, wrappers), keys))
    return merged


# =============================================================================
# Mergers
# =============================================================================


def merge_email_chunks(chunks: Sequence[Any]) -> dict[str, Any]:
    merged = merge_keyed_chunks(chunks, EMAIL_CHUNK_KEYS, ("emailSequence", "emails"))
    return {"emailSequence": merged}


def merge_sms_chunks(chunks: Sequence[Any]) -> dict[str, Any]:
    return {"smsSequence": merge_keyed_chunks(chunks, SMS_CHUNK_KEYS, ("smsSequence", "sms"))}


def merge_setter_chunks(chunks: Sequence[Any]) -> dict[str, Any]:
    merged = merge_keyed_chunks(chunks, SETTER_CHUNK_KEYS, ("setterScript", "setterCallScript"))
    return {"setterScript": merged}


def normalize_discovery_questions(questions: Any) -> list[dict[str, str]]:
    """Coerce discovery questions into {label, question, lookingFor, ifVague} items."""
    if not isinstance(questions, list):
        return []

    normalized = []
    for index, item in enumerate(questions):
        if isinstance(item, str):
            normalized.append(
                {"label": f"Question {index + 1}", "question": item, "lookingFor": "", "ifVague": ""}
            )
        elif isinstance(item, dict):
            normalized.append(
                {
                    "label": str(item.get("label") or f"Question {index + 1}"),
                    "question": str(item.get("question") or item.get("text") or ""),
                    "lookingFor": str(item.get("lookingFor") or item.get("looking_for") or ""),
                    "ifVague": str(item.get("ifVague") or item.get("if_vague") or ""),
                }
            )
    return normalized


def merge_closer_chunks(chunks: Sequence[Any]) -> dict[str, Any]:
    merged = merge_keyed_chunks(chunks, CLOSER_CHUNK_KEYS, ("salesScripts", "closerScript"))
    if "discoveryQuestions" in merged:
        merged["discoveryQuestions"] = normalize_discovery_questions(merged["discoveryQuestions"])
    return {"salesScripts": merged}


def merge_funnel_copy_chunks(chunks: Sequence[Any]) -> dict[str, Any]:
    """Merge page copy (chunk 1) with the three sales page parts (chunks 2-4)."""
    first = _unwrap(chunks[0] if chunks else {}, ("funnelCopy",))
    if "calendarPage" not in first and "bookingPage" in first:
        first = {**first, "calendarPage": first["bookingPage"]}

    merged = _pick(first, FUNNEL_COPY_CHUNK_KEYS[0])

    sales_page: dict[str, Any] = {}
    for index, keys in enumerate(FUNNEL_COPY_CHUNK_KEYS[1:], start=1):
        chunk = _unwrap(chunks[index] if index < len(chunks) else {}, ("funnelCopy",))
        for key in keys:
            part = chunk.get(key)
            # A part may also come back wrapped as {"salesPage": {...}}
            if part is None and isinstance(chunk.get("salesPage"), dict):
                part = chunk["salesPage"]
            if isinstance(part, dict):
                sales_page.update(part)

    if sales_page:
        merged["salesPage"] = sales_page

    return {"funnelCopy": merged}


# =============================================================================
# Validators
# =============================================================================


def _missing_keys(data: dict[str, Any], chunk_keys: Sequence[Sequence[str]]) -> list[str]:
    return [key for keys in chunk_keys for key in keys if key not in data]


def validate_email_sequence(content: dict[str, Any]) -> ValidationResult:
    sequence = content.get("emailSequence")
    if not isinstance(sequence, dict):
        return ValidationResult(valid=False, issues=["emailSequence missing"])

    issues = [f"missing {key}" for key in _missing_keys(sequence, EMAIL_CHUNK_KEYS)]
    for key, email in sequence.items():
        if not isinstance(email, dict):
            issues.append(f"{key} is not an object")
            continue
        for required in ("subject", "body"):
            if not email.get(required):
                issues.append(f"{key} missing {required}")
    return ValidationResult(valid=not issues, issues=issues)


def validate_sms_sequence(content: dict[str, Any]) -> ValidationResult:
    sequence = content.get("smsSequence")
    if not isinstance(sequence, dict):
        return ValidationResult(valid=False, issues=["smsSequence missing"])

    issues = [f"missing {key}" for key in _missing_keys(sequence, SMS_CHUNK_KEYS)]
    for key, sms in sequence.items():
        if not isinstance(sms, dict) or not sms.get("message"):
            issues.append(f"{key} missing message")
    return ValidationResult(valid=not issues, issues=issues)


def validate_setter_script(content: dict[str, Any]) -> ValidationResult:
    script = content.get("setterScript")
    if not isinstance(script, dict):
        return ValidationResult(valid=False, issues=["setterScript missing"])
    issues = [f"missing {key}" for key in _missing_keys(script, SETTER_CHUNK_KEYS)]
    return ValidationResult(valid=not issues, issues=issues)


def validate_closer_script(content: dict[str, Any]) -> ValidationResult:
    script = content.get("salesScripts")
    if not isinstance(script, dict):
        return ValidationResult(valid=False, issues=["salesScripts missing"])

    issues = [f"missing {key}" for key in _missing_keys(script, CLOSER_CHUNK_KEYS)]
    if "discoveryQuestions" in script and not script["discoveryQuestions"]:
        issues.append("discoveryQuestions is empty")
    return ValidationResult(valid=not issues, issues=issues)


def validate_funnel_copy(content: dict[str, Any]) -> ValidationResult:
    copy = content.get("funnelCopy")
    if not isinstance(copy, dict):
        return ValidationResult(valid=False, issues=["funnelCopy missing"])

    issues = [
        f"missing {key}"
        for key in ("optinPage", "calendarPage", "thankYouPage", "salesPage")
        if not copy.get(key)
    ]
    return ValidationResult(valid=not issues, issues=issues)


def validate_document(content: dict[str, Any]) -> ValidationResult:
    """Default check for single-shot sections: a non-empty JSON object."""
    if not isinstance(content, dict) or not content:
        return ValidationResult(valid=False, issues=["content is empty"])
    return ValidationResult(valid=True)
