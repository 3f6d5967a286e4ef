# validate and normalize an evidence payload before it is stored
# missing/invalid required fields raise NormalizationError

from __future__ import annotations

import re
from typing import Any, Protocol, Sequence, TypedDict

from ingestion.time_utils import to_utc_iso
from ml.signals import SOURCE_KINDS, Signal

# lets the API tell validation failures apart from DB/runtime errors
class NormalizationError(ValueError):
    pass

# expected input shape from EvidenceIn
class EvidencePayload(Protocol):
    source_kind: str
    occurred_at: str
    content: str | None
    person_ref: str | None
    person_name: str | None
    context_ref: str | None
    context_name: str | None
    signals: Sequence[Any] | None


class NormalizedEvidence(TypedDict):
    source_kind: str
    occurred_at: str
    content: str
    person_ref: str | None
    person_name: str | None
    context_ref: str | None
    context_name: str | None
    # None means "classify on write"
    signals: list[Signal] | None


_NON_ALNUM = re.compile(r"[^a-z0-9]+")
SOURCE_ALIASES = {
    "calendar": "calendar",
    "event": "calendar",
    "meeting": "calendar",
    "appointment": "calendar",
    "mail": "mail",
    "email": "mail",
    "e mail": "mail",
    "message": "message",
    "messages": "message",
    "sms": "message",
    "text": "message",
    "imessage": "message",
    "note": "note",
    "notes": "note",
    "manual": "manual",
    "call": "manual",
}


def _normalize_token(value: str) -> str:
    value = value.strip().lower()
    value = _NON_ALNUM.sub(" ", value)
    return " ".join(value.split())


def normalize_source_kind(source_kind: str | None) -> str:
    if source_kind is None or not source_kind.strip():
        raise NormalizationError("source_kind is required")
    normalized = SOURCE_ALIASES.get(_normalize_token(source_kind), _normalize_token(source_kind))
    if normalized not in SOURCE_KINDS:
        raise NormalizationError(f"unsupported source_kind: {source_kind}")
    return normalized


def _clean_ref(value: str | None) -> str | None:
    if value is None:
        return None
    text = value.strip()
    return text or None


def _normalize_signals(raw: Sequence[Any] | None) -> list[Signal] | None:
    if raw is None:
        return None
    out: list[Signal] = []
    for entry in raw:
        payload = entry if isinstance(entry, dict) else entry.model_dump()
        try:
            out.append(Signal.from_dict(payload))
        except (TypeError, ValueError) as exc:
            raise NormalizationError(str(exc)) from exc
    return out


def normalize_evidence(payload: EvidencePayload) -> NormalizedEvidence:
    if not payload.occurred_at or not payload.occurred_at.strip():
        raise NormalizationError("occurred_at is required")
    try:
        occurred_at = to_utc_iso(payload.occurred_at, strict=True)
    except ValueError as exc:
        raise NormalizationError(f"invalid datetime format: {payload.occurred_at}") from exc

    person_ref = _clean_ref(payload.person_ref)
    context_ref = _clean_ref(payload.context_ref)
    # a display name without a ref has nothing to attach to
    person_name = _clean_ref(payload.person_name) if person_ref else None
    context_name = _clean_ref(payload.context_name) if context_ref else None

    return {
        "source_kind": normalize_source_kind(payload.source_kind),
        "occurred_at": occurred_at,
        "content": " ".join((payload.content or "").split()),
        "person_ref": person_ref,
        "person_name": person_name,
        "context_ref": context_ref,
        "context_name": context_name,
        "signals": _normalize_signals(payload.signals),
    }
