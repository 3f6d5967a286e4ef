from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from psycopg import Error as DatabaseError

from api.db import acquire_insight_writer_lock, get_connection
from api.repositories.evidence import list_signaled_evidence
from api.repositories.insights import (
    GroupKey,
    StoredInsight,
    fetch_insights,
    insert_insight,
    update_live_insight,
)
from api.repositories.resolve import fetch_context_name_map, fetch_person_name_map
from ml.signals import EvidenceRecord, Signal
from ml.templates import insight_kind_for, render_message, resolve_target_name

logger = logging.getLogger(__name__)


class ReconcileReadError(RuntimeError):
    """Evidence or insight scan failed; nothing was written."""


class ReconcileWriteError(RuntimeError):
    """Writing or committing the pass failed; the whole pass was rolled back."""


# everything one reconcile pass learns about a single group key
@dataclass
class GroupAggregate:
    person_ref: str | None
    context_ref: str | None
    insight_kind: str
    first_best_signal: Signal
    max_confidence: float
    evidence_ids: list[int] = field(default_factory=list)

    @property
    def group_key(self) -> GroupKey:
        return (self.person_ref, self.context_ref, self.insight_kind)


@dataclass
class InsightUpdate:
    insight_id: int
    confidence: float
    added_evidence_ids: set[int]


@dataclass
class ReconcilePlan:
    creates: list[GroupAggregate] = field(default_factory=list)
    updates: list[InsightUpdate] = field(default_factory=list)
    skipped_dismissed: int = 0
    unchanged: int = 0


def select_best_signal(signals: Iterable[Signal]) -> Signal | None:
    # strict ">" keeps the earliest signal on ties
    best: Signal | None = None
    for signal in signals:
        if best is None or signal.confidence > best.confidence:
            best = signal
    return best


def build_group_aggregates(evidence: Iterable[EvidenceRecord]) -> dict[GroupKey, GroupAggregate]:
    groups: dict[GroupKey, GroupAggregate] = {}
    for record in evidence:
        best = select_best_signal(record.signals)
        if best is None:
            continue
        key: GroupKey = (record.person_ref, record.context_ref, insight_kind_for(best.kind))
        group = groups.get(key)
        if group is None:
            # first writer fixes the message kind if a new insight has to be created
            group = GroupAggregate(
                person_ref=record.person_ref,
                context_ref=record.context_ref,
                insight_kind=key[2],
                first_best_signal=best,
                max_confidence=best.confidence,
            )
            groups[key] = group
        if record.evidence_id not in group.evidence_ids:
            group.evidence_ids.append(record.evidence_id)
        if best.confidence > group.max_confidence:
            group.max_confidence = best.confidence
    return groups


def index_existing_insights(insights: Iterable[StoredInsight]) -> dict[GroupKey, StoredInsight]:
    # oldest row wins if a defect ever left siblings behind; dedupe cleans those up
    indexed: dict[GroupKey, StoredInsight] = {}
    for insight in sorted(insights, key=lambda row: (row.created_at, row.insight_id)):
        indexed.setdefault(insight.group_key, insight)
    return indexed


def plan_reconciliation(
    groups: dict[GroupKey, GroupAggregate],
    existing: dict[GroupKey, StoredInsight],
) -> ReconcilePlan:
    plan = ReconcilePlan()
    for key, group in groups.items():
        current = existing.get(key)
        if current is None:
            plan.creates.append(group)
            continue
        if current.is_dismissed:
            plan.skipped_dismissed += 1
            continue
        added = set(group.evidence_ids) - current.evidence_refs
        confidence = max(current.confidence, group.max_confidence)
        if not added and confidence == current.confidence:
            plan.unchanged += 1
            continue
        plan.updates.append(
            InsightUpdate(
                insight_id=current.insight_id,
                confidence=confidence,
                added_evidence_ids=added,
            )
        )
    return plan


def recompute_insights(*, conn=None) -> dict[str, int]:
    """Reconcile every signaled evidence record into the insight store.

    Full recompute on each call: safe to repeat, creates at most one insight
    per (person, context, kind) and never touches dismissed insights. All
    writes commit together or not at all.
    """
    owns_connection = conn is None
    if conn is None:
        conn = get_connection()
    try:
        try:
            acquire_insight_writer_lock(conn)
            evidence = list_signaled_evidence(conn)
            existing = index_existing_insights(fetch_insights(conn))
            person_names = fetch_person_name_map(conn)
            context_names = fetch_context_name_map(conn)
        except DatabaseError as exc:
            conn.rollback()
            raise ReconcileReadError(f"evidence scan failed: {exc}") from exc

        groups = build_group_aggregates(evidence)
        plan = plan_reconciliation(groups, existing)

        try:
            for group in plan.creates:
                target_name = resolve_target_name(
                    group.person_ref,
                    group.context_ref,
                    person_names=person_names,
                    context_names=context_names,
                )
                insert_insight(
                    conn,
                    person_ref=group.person_ref,
                    context_ref=group.context_ref,
                    kind=group.insight_kind,
                    message=render_message(group.first_best_signal.kind, target_name),
                    confidence=group.max_confidence,
                    evidence_ids=group.evidence_ids,
                )
            updated = 0
            for update in plan.updates:
                if update_live_insight(
                    conn,
                    update.insight_id,
                    confidence=update.confidence,
                    added_evidence_ids=update.added_evidence_ids,
                ):
                    updated += 1
            conn.commit()
        except DatabaseError as exc:
            conn.rollback()
            raise ReconcileWriteError(f"insight commit failed: {exc}") from exc
    finally:
        if owns_connection:
            conn.close()

    return {
        "evidence_considered": len(evidence),
        "groups": len(groups),
        "insights_created": len(plan.creates),
        "insights_updated": updated,
        "insights_unchanged": plan.unchanged,
        "dismissed_skipped": plan.skipped_dismissed,
    }
