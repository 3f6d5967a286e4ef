"""Postgres-backed insight store.

Read helpers open their own connection and return plain dicts for the API
layer. The ``conn``-taking helpers run inside a caller-owned transaction so a
reconcile or dedupe pass can commit or roll back as one unit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from psycopg import Connection

from api.db import acquire_insight_writer_lock, get_connection
from api.repositories.evidence import best_signal_confidences, existing_evidence_ids
from ingestion.time_utils import now_iso
from ml.templates import INSIGHT_KINDS

# (person_ref, context_ref, insight kind); identifies at most one insight row
GroupKey = tuple[str | None, str | None, str]

_SELECT_INSIGHTS_SQL = """
    SELECT
        i.id AS id,
        i.person_ref AS person_ref,
        i.context_ref AS context_ref,
        i.kind AS kind,
        i.message AS message,
        i.confidence AS confidence,
        i.created_at AS created_at,
        i.dismissed_at AS dismissed_at,
        COALESCE(
            array_agg(l.evidence_id ORDER BY l.evidence_id) FILTER (WHERE l.evidence_id IS NOT NULL),
            '{}'
        ) AS evidence_refs
    FROM insights i
    LEFT JOIN insight_evidence_links l ON l.insight_id = i.id
"""


@dataclass
class StoredInsight:
    insight_id: int
    person_ref: str | None
    context_ref: str | None
    kind: str
    message: str
    confidence: float
    created_at: str
    dismissed_at: str | None = None
    evidence_refs: set[int] = field(default_factory=set)

    @property
    def group_key(self) -> GroupKey:
        return (self.person_ref, self.context_ref, self.kind)

    @property
    def is_dismissed(self) -> bool:
        return self.dismissed_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.insight_id,
            "person_ref": self.person_ref,
            "context_ref": self.context_ref,
            "kind": self.kind,
            "message": self.message,
            "confidence": self.confidence,
            "evidence_refs": sorted(self.evidence_refs),
            "created_at": self.created_at,
            "dismissed_at": self.dismissed_at,
        }


def _row_to_insight(row: dict[str, Any]) -> StoredInsight:
    return StoredInsight(
        insight_id=int(row["id"]),
        person_ref=row["person_ref"],
        context_ref=row["context_ref"],
        kind=row["kind"],
        message=row["message"],
        confidence=float(row["confidence"]),
        created_at=row["created_at"],
        dismissed_at=row["dismissed_at"],
        evidence_refs={int(evidence_id) for evidence_id in (row["evidence_refs"] or [])},
    )


def fetch_insights(
    conn: Connection,
    *,
    where_sql: str = "",
    params: tuple = (),
    newest_first: bool = False,
) -> list[StoredInsight]:
    order = "DESC" if newest_first else "ASC"
    sql = (
        _SELECT_INSIGHTS_SQL
        + (f" WHERE {where_sql}" if where_sql else "")
        + f" GROUP BY i.id ORDER BY i.created_at {order}, i.id {order}"
    )
    rows = conn.execute(sql, params).fetchall()
    return [_row_to_insight(row) for row in rows]


def add_evidence_links(conn: Connection, insight_id: int, evidence_ids: Iterable[int]) -> None:
    links = sorted({int(evidence_id) for evidence_id in evidence_ids})
    if not links:
        return
    created_at = now_iso()
    with conn.cursor() as cursor:
        cursor.executemany(
            """
            INSERT INTO insight_evidence_links (insight_id, evidence_id, created_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (insight_id, evidence_id) DO NOTHING
            """,
            [(int(insight_id), evidence_id, created_at) for evidence_id in links],
        )


def insert_insight(
    conn: Connection,
    *,
    person_ref: str | None,
    context_ref: str | None,
    kind: str,
    message: str,
    confidence: float,
    evidence_ids: Iterable[int],
    created_at: str | None = None,
    dismissed_at: str | None = None,
    insight_id: int | None = None,
) -> int:
    if kind not in INSIGHT_KINDS:
        raise ValueError(f"unknown insight kind: {kind!r}")
    evidence_ids = sorted({int(evidence_id) for evidence_id in evidence_ids})
    if not evidence_ids:
        raise ValueError("insight requires at least one evidence ref")
    stamp = created_at or now_iso()
    if insight_id is None:
        row = conn.execute(
            """
            INSERT INTO insights (
                person_ref, context_ref, kind, message, confidence, created_at, dismissed_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (person_ref, context_ref, kind, message, float(confidence), stamp, dismissed_at, stamp),
        ).fetchone()
    else:
        row = conn.execute(
            """
            INSERT INTO insights (
                id, person_ref, context_ref, kind, message, confidence, created_at, dismissed_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (int(insight_id), person_ref, context_ref, kind, message, float(confidence), stamp, dismissed_at, stamp),
        ).fetchone()
    new_id = int(row["id"])
    add_evidence_links(conn, new_id, evidence_ids)
    return new_id

# the dismissed_at guard keeps a concurrently committed dismissal frozen
def update_live_insight(
    conn: Connection,
    insight_id: int,
    *,
    confidence: float,
    added_evidence_ids: Iterable[int],
) -> bool:
    row = conn.execute(
        """
        UPDATE insights
        SET confidence = GREATEST(confidence, %s), updated_at = %s
        WHERE id = %s AND dismissed_at IS NULL
        RETURNING id
        """,
        (float(confidence), now_iso(), int(insight_id)),
    ).fetchone()
    if row is None:
        return False
    add_evidence_links(conn, int(insight_id), added_evidence_ids)
    return True


def merge_into_insight(
    conn: Connection,
    insight_id: int,
    *,
    confidence: float,
    evidence_ids: Iterable[int],
    dismissed_at: str | None,
) -> None:
    conn.execute(
        """
        UPDATE insights
        SET confidence = %s,
            dismissed_at = COALESCE(dismissed_at, %s),
            updated_at = %s
        WHERE id = %s
        """,
        (float(confidence), dismissed_at, now_iso(), int(insight_id)),
    )
    add_evidence_links(conn, int(insight_id), evidence_ids)


def delete_insights(conn: Connection, insight_ids: Iterable[int]) -> int:
    ids = sorted({int(insight_id) for insight_id in insight_ids})
    if not ids:
        return 0
    cursor = conn.execute("DELETE FROM insights WHERE id = ANY(%s)", (ids,))
    return int(cursor.rowcount or 0)


def _read(where_sql: str = "", params: tuple = ()) -> list[dict[str, Any]]:
    conn = get_connection()
    try:
        insights = fetch_insights(conn, where_sql=where_sql, params=params, newest_first=True)
        return [insight.to_dict() for insight in insights]
    finally:
        conn.close()


def list_active() -> list[dict[str, Any]]:
    return _read("i.dismissed_at IS NULL")


def list_all() -> list[dict[str, Any]]:
    return _read()


def insights_for_person(person_ref: str) -> list[dict[str, Any]]:
    return _read("i.person_ref = %s", (person_ref,))


def insights_for_context(context_ref: str) -> list[dict[str, Any]]:
    return _read("i.context_ref = %s", (context_ref,))


def get_insight(insight_id: int) -> dict[str, Any] | None:
    rows = _read("i.id = %s", (int(insight_id),))
    return rows[0] if rows else None


def dismiss_insight(insight_id: int) -> dict[str, Any]:
    conn = get_connection()
    try:
        # dismissing twice keeps the first timestamp
        row = conn.execute(
            """
            UPDATE insights
            SET dismissed_at = COALESCE(dismissed_at, %s)
            WHERE id = %s
            RETURNING id, dismissed_at
            """,
            (now_iso(), int(insight_id)),
        ).fetchone()
        if row is None:
            raise ValueError("insight_not_found")
        conn.commit()
        return {
            "status": "ok",
            "insight_id": int(row["id"]),
            "dismissed_at": row["dismissed_at"],
        }
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def export_insights() -> list[dict[str, Any]]:
    conn = get_connection()
    try:
        return [insight.to_dict() for insight in fetch_insights(conn)]
    finally:
        conn.close()


def restore_insights(rows: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Replace every insight with the given backup rows in one transaction.

    Evidence refs that no longer resolve are dropped; a row left without any
    ref is skipped. Confidence is recomputed from the surviving evidence so
    it stays the max best-signal confidence of its refs.
    """
    rows = list(rows)
    conn = get_connection()
    restored = 0
    skipped = 0
    refs_dropped = 0
    try:
        acquire_insight_writer_lock(conn)
        all_refs = {int(ref) for row in rows for ref in (row.get("evidence_refs") or [])}
        known = existing_evidence_ids(conn, all_refs)
        best_by_evidence = best_signal_confidences(conn, known)
        conn.execute("DELETE FROM insights")
        for row in rows:
            refs = {int(ref) for ref in (row.get("evidence_refs") or [])}
            kept = refs & known
            refs_dropped += len(refs - kept)
            if not kept:
                skipped += 1
                continue
            # confidence must match the evidence that survived, not the backup
            kept_confidences = [best_by_evidence[ref] for ref in kept if ref in best_by_evidence]
            confidence = max(kept_confidences) if kept_confidences else float(row["confidence"])
            insert_insight(
                conn,
                insight_id=int(row["id"]) if row.get("id") is not None else None,
                person_ref=row.get("person_ref"),
                context_ref=row.get("context_ref"),
                kind=str(row["kind"]),
                message=str(row["message"]),
                confidence=confidence,
                evidence_ids=kept,
                created_at=row.get("created_at"),
                dismissed_at=row.get("dismissed_at"),
            )
            restored += 1
        # explicit ids bypass the sequence; move it past the largest restored id
        conn.execute(
            """
            SELECT setval(
                pg_get_serial_sequence('insights', 'id'),
                COALESCE((SELECT MAX(id) FROM insights), 0) + 1,
                false
            )
            """
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return {
        "insights_restored": restored,
        "insights_skipped": skipped,
        "evidence_refs_dropped": refs_dropped,
    }
