from __future__ import annotations

from typing import Iterable

import api.db
from api.repositories.evidence import insert_evidence
from ml.signals import Signal


_TEST_TABLES = (
    "contexts",
    "evidence",
    "insight_evidence_links",
    "insights",
    "people",
)


def reset_test_database() -> None:
    api.db.initialize_database()
    conn = api.db.get_connection()
    try:
        conn.execute(f"TRUNCATE TABLE {', '.join(_TEST_TABLES)} RESTART IDENTITY CASCADE")
        conn.commit()
    finally:
        conn.close()


def seed_evidence(
    *,
    occurred_at: str,
    signals: Iterable[Signal],
    person_ref: str | None = None,
    context_ref: str | None = None,
    source_kind: str = "note",
    content: str = "",
) -> int:
    conn = api.db.get_connection()
    try:
        evidence_id = insert_evidence(
            conn,
            source_kind=source_kind,
            occurred_at=occurred_at,
            content=content,
            person_ref=person_ref,
            context_ref=context_ref,
            signals=list(signals),
        )
        conn.commit()
        return evidence_id
    finally:
        conn.close()


def seed_person(person_ref: str, display_name: str) -> None:
    conn = api.db.get_connection()
    try:
        conn.execute(
            "INSERT INTO people (id, display_name, created_at) VALUES (%s, %s, NOW()::text)",
            (person_ref, display_name),
        )
        conn.commit()
    finally:
        conn.close()
