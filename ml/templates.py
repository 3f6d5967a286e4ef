from __future__ import annotations

from ml.signals import (
    SIGNAL_COMING_OF_AGE,
    SIGNAL_COMPLIANCE_RISK,
    SIGNAL_DIVORCE,
    SIGNAL_PARTNER_LEFT,
    SIGNAL_PRODUCT_OPPORTUNITY,
    SIGNAL_UNLINKED_EVIDENCE,
)

INSIGHT_COMPLIANCE_WARNING = "complianceWarning"
INSIGHT_RELATIONSHIP_AT_RISK = "relationshipAtRisk"
INSIGHT_FOLLOW_UP = "followUp"
INSIGHT_OPPORTUNITY = "opportunity"
INSIGHT_KINDS = frozenset(
    {
        INSIGHT_COMPLIANCE_WARNING,
        INSIGHT_RELATIONSHIP_AT_RISK,
        INSIGHT_FOLLOW_UP,
        INSIGHT_OPPORTUNITY,
    }
)

# keyed by signal kind: two signal kinds can share an insight kind but need different text
INSIGHT_KIND_BY_SIGNAL = {
    SIGNAL_COMPLIANCE_RISK: INSIGHT_COMPLIANCE_WARNING,
    SIGNAL_DIVORCE: INSIGHT_RELATIONSHIP_AT_RISK,
    SIGNAL_COMING_OF_AGE: INSIGHT_FOLLOW_UP,
    SIGNAL_UNLINKED_EVIDENCE: INSIGHT_FOLLOW_UP,
    SIGNAL_PARTNER_LEFT: INSIGHT_OPPORTUNITY,
    SIGNAL_PRODUCT_OPPORTUNITY: INSIGHT_OPPORTUNITY,
}

MESSAGE_TEMPLATE_BY_SIGNAL = {
    SIGNAL_COMPLIANCE_RISK: "Compliance review recommended{t}.",
    SIGNAL_DIVORCE: "Possible relationship change detected{t}. Consider a check-in.",
    SIGNAL_COMING_OF_AGE: "Coming of age event{t}. Review dependent coverage.",
    SIGNAL_UNLINKED_EVIDENCE: "Suggested follow-up{t}.",
    SIGNAL_PARTNER_LEFT: "Business change detected{t}. Review buy-sell agreements.",
    SIGNAL_PRODUCT_OPPORTUNITY: "Possible opportunity{t}. Consider reviewing options.",
}


def insight_kind_for(signal_kind: str) -> str:
    try:
        return INSIGHT_KIND_BY_SIGNAL[signal_kind]
    except KeyError:
        raise ValueError(f"unknown signal kind: {signal_kind!r}") from None


def resolve_target_name(
    person_ref: str | None,
    context_ref: str | None,
    *,
    person_names: dict[str, str] | None = None,
    context_names: dict[str, str] | None = None,
) -> str | None:
    # context wins over person; an unresolved ref still names the target by its id
    if context_ref:
        return (context_names or {}).get(context_ref) or context_ref
    if person_ref:
        return (person_names or {}).get(person_ref) or person_ref
    return None


def target_suffix(target_name: str | None) -> str:
    name = (target_name or "").strip()
    return f" ({name})" if name else ""


def render_message(signal_kind: str, target_name: str | None = None) -> str:
    try:
        template = MESSAGE_TEMPLATE_BY_SIGNAL[signal_kind]
    except KeyError:
        raise ValueError(f"unknown signal kind: {signal_kind!r}") from None
    return template.format(t=target_suffix(target_name))
