from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from api.db import acquire_insight_writer_lock, get_connection
from api.repositories.insights import (
    GroupKey,
    StoredInsight,
    delete_insights,
    fetch_insights,
    merge_into_insight,
)

logger = logging.getLogger(__name__)

# repair pass for rows that share a group key; normal reconcile never creates them


@dataclass
class DedupeMerge:
    survivor_id: int
    evidence_refs: set[int]
    confidence: float
    dismissed_at: str | None
    deleted_ids: list[int] = field(default_factory=list)


def _survivor_sort_key(insight: StoredInsight) -> tuple:
    # most evidence first, then oldest
    return (-len(insight.evidence_refs), insight.created_at, insight.insight_id)


def plan_dedupe(insights: Iterable[StoredInsight]) -> list[DedupeMerge]:
    buckets: dict[GroupKey, list[StoredInsight]] = {}
    for insight in insights:
        buckets.setdefault(insight.group_key, []).append(insight)

    merges: list[DedupeMerge] = []
    for members in buckets.values():
        if len(members) < 2:
            continue
        ordered = sorted(members, key=_survivor_sort_key)
        survivor = ordered[0]
        evidence_refs = set().union(*(member.evidence_refs for member in members))
        dismissals = sorted(member.dismissed_at for member in members if member.dismissed_at)
        merges.append(
            DedupeMerge(
                survivor_id=survivor.insight_id,
                evidence_refs=evidence_refs,
                confidence=max(member.confidence for member in members),
                # a dismissal on any sibling stays in force on the survivor
                dismissed_at=survivor.dismissed_at or (dismissals[0] if dismissals else None),
                deleted_ids=[member.insight_id for member in ordered[1:]],
            )
        )
    return merges


def dedupe_insights() -> dict[str, int]:
    conn = get_connection()
    try:
        acquire_insight_writer_lock(conn)
        merges = plan_dedupe(fetch_insights(conn))
        deleted = 0
        for merge in merges:
            merge_into_insight(
                conn,
                merge.survivor_id,
                confidence=merge.confidence,
                evidence_ids=merge.evidence_refs,
                dismissed_at=merge.dismissed_at,
            )
            deleted += delete_insights(conn, merge.deleted_ids)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    if merges:
        logger.info(
            "Merged duplicate insights",
            extra={"groups_merged": len(merges), "insights_deleted": deleted},
        )
    return {"groups_merged": len(merges), "insights_deleted": deleted}
