from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ingestion.time_utils import parse_iso_utc, whole_days_between

# deterministic, explainable signal tags derived from evidence text and links

SIGNAL_COMPLIANCE_RISK = "complianceRisk"
SIGNAL_DIVORCE = "divorce"
SIGNAL_COMING_OF_AGE = "comingOfAge"
SIGNAL_PARTNER_LEFT = "partnerLeft"
SIGNAL_PRODUCT_OPPORTUNITY = "productOpportunity"
SIGNAL_UNLINKED_EVIDENCE = "unlinkedEvidence"
SIGNAL_KINDS = frozenset(
    {
        SIGNAL_COMPLIANCE_RISK,
        SIGNAL_DIVORCE,
        SIGNAL_COMING_OF_AGE,
        SIGNAL_PARTNER_LEFT,
        SIGNAL_PRODUCT_OPPORTUNITY,
        SIGNAL_UNLINKED_EVIDENCE,
    }
)

SOURCE_KINDS = frozenset({"calendar", "mail", "message", "note", "manual"})

# order matters: classify() emits signals in this order
_KEYWORD_RULES: tuple[tuple[str, tuple[str, ...], str], ...] = (
    (
        SIGNAL_DIVORCE,
        ("divorce", "separation", "separated", "custody", "alimony", "dissolution"),
        "divorce/separation",
    ),
    (
        SIGNAL_COMING_OF_AGE,
        ("turning 18", "18th birthday", "age 18", "adult child", "coming of age"),
        "coming-of-age",
    ),
    (
        SIGNAL_PARTNER_LEFT,
        ("partner left", "left the firm", "resigned", "departure", "split", "buyout"),
        "partner/departure",
    ),
    (
        SIGNAL_PRODUCT_OPPORTUNITY,
        (
            "annuity",
            "long term care",
            "long-term care",
            "ltc",
            "college savings",
            "529",
            "trust",
            "trusts",
        ),
        "product (annuity/LTC/college/trust)",
    ),
    (
        SIGNAL_COMPLIANCE_RISK,
        (
            "beneficiary",
            "survivorship",
            "consent",
            "signature",
            "sign",
            "underwriting",
            "policy change",
            "replacement",
            "illustration",
        ),
        "compliance",
    ),
)

RECENT_WINDOW_DAYS = 7
MAX_KEYWORD_CONFIDENCE = 0.90


@dataclass(frozen=True)
class Signal:
    kind: str
    confidence: float
    rationale: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "confidence": self.confidence, "rationale": self.rationale}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Signal":
        kind = str(payload.get("kind") or "")
        if kind not in SIGNAL_KINDS:
            raise ValueError(f"unknown signal kind: {kind!r}")
        confidence = float(payload.get("confidence") or 0.0)
        return cls(
            kind=kind,
            confidence=min(1.0, max(0.0, confidence)),
            rationale=str(payload.get("rationale") or ""),
        )


@dataclass
class EvidenceRecord:
    evidence_id: int
    source_kind: str
    occurred_at: datetime
    content: str
    person_ref: str | None = None
    context_ref: str | None = None
    signals: list[Signal] = field(default_factory=list)


def _normalize_text(*parts: str | None) -> str:
    joined = " ".join(part for part in parts if part)
    return " ".join(joined.lower().split())


def _count_hits(text: str, terms: tuple[str, ...]) -> int:
    # plain substring count: "signature" also counts "sign", "trusts" also counts "trust"
    return sum(1 for term in terms if term in text)


def _unlinked_confidence(occurred_at: datetime, now: datetime) -> float:
    delta_days = whole_days_between(occurred_at, now)
    if delta_days <= 2:
        return 0.75
    if delta_days <= 7:
        return 0.65
    return 0.55


def _keyword_confidence(
    hits: int,
    occurred_at: datetime,
    now: datetime,
    *,
    bump_if_upcoming: bool = False,
) -> float:
    if hits <= 1:
        confidence = 0.55
    elif hits == 2:
        confidence = 0.70
    else:
        confidence = 0.82

    if whole_days_between(occurred_at, now) <= RECENT_WINDOW_DAYS:
        confidence += 0.05
    # upcoming compliance items are more time-sensitive than past ones
    if bump_if_upcoming and occurred_at > now and whole_days_between(occurred_at, now) <= RECENT_WINDOW_DAYS:
        confidence += 0.05
    return round(min(MAX_KEYWORD_CONFIDENCE, confidence), 4)


def classify(evidence: EvidenceRecord, *, now: datetime | None = None) -> list[Signal]:
    """Derive signals for one evidence record.

    Pure for a given ``now``. An empty list means the evidence carries no
    recognised signal and is ignored by insight aggregation.
    """
    current = parse_iso_utc(now) if now is not None else datetime.now(tz=timezone.utc)
    occurred_at = parse_iso_utc(evidence.occurred_at) or current
    out: list[Signal] = []

    if evidence.source_kind == "calendar" and not evidence.person_ref and not evidence.context_ref:
        out.append(
            Signal(
                kind=SIGNAL_UNLINKED_EVIDENCE,
                confidence=_unlinked_confidence(occurred_at, current),
                rationale="Calendar event isn't linked to a person or context yet.",
            )
        )

    text = _normalize_text(evidence.content)
    if not text:
        return out

    for kind, terms, label in _KEYWORD_RULES:
        hits = _count_hits(text, terms)
        if hits == 0:
            continue
        out.append(
            Signal(
                kind=kind,
                confidence=_keyword_confidence(
                    hits,
                    occurred_at,
                    current,
                    bump_if_upcoming=kind == SIGNAL_COMPLIANCE_RISK,
                ),
                rationale=f"Matched {hits} {label} keyword(s) in content.",
            )
        )
    return out
