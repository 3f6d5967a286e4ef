from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from psycopg import Connection

from ingestion.time_utils import now_iso, parse_iso_utc
from ml.signals import EvidenceRecord, Signal

logger = logging.getLogger(__name__)


def encode_signals(signals: Iterable[Signal]) -> str:
    return json.dumps([signal.to_dict() for signal in signals])


def decode_signals(raw: str | None, *, evidence_id: int | None = None) -> list[Signal]:
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unreadable signals_json on evidence", extra={"evidence_id": evidence_id})
        return []
    if not isinstance(decoded, list):
        return []
    out: list[Signal] = []
    for entry in decoded:
        if not isinstance(entry, dict):
            continue
        try:
            out.append(Signal.from_dict(entry))
        except (TypeError, ValueError):
            logger.warning(
                "Skipping malformed signal on evidence",
                extra={"evidence_id": evidence_id, "signal": entry},
            )
    return out


def _row_to_record(row: dict[str, Any]) -> EvidenceRecord | None:
    occurred_at = parse_iso_utc(row["occurred_at"])
    if occurred_at is None:
        return None
    evidence_id = int(row["id"])
    return EvidenceRecord(
        evidence_id=evidence_id,
        source_kind=row["source_kind"],
        occurred_at=occurred_at,
        content=row["content"] or "",
        person_ref=row["person_ref"],
        context_ref=row["context_ref"],
        signals=decode_signals(row["signals_json"], evidence_id=evidence_id),
    )


def insert_evidence(
    conn: Connection,
    *,
    source_kind: str,
    occurred_at: str,
    content: str,
    person_ref: str | None,
    context_ref: str | None,
    signals: Iterable[Signal],
) -> int:
    row = conn.execute(
        """
        INSERT INTO evidence (
            source_kind, occurred_at, content, person_ref, context_ref, signals_json, ingested_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            source_kind,
            occurred_at,
            content,
            person_ref,
            context_ref,
            encode_signals(signals),
            now_iso(),
        ),
    ).fetchone()
    return int(row["id"])

# one statement, so a reconcile pass never mixes evidence from before and after a concurrent import
def list_signaled_evidence(conn: Connection) -> list[EvidenceRecord]:
    rows = conn.execute(
        """
        SELECT id, source_kind, occurred_at, content, person_ref, context_ref, signals_json
        FROM evidence
        WHERE signals_json IS NOT NULL
          AND signals_json <> '[]'
        ORDER BY occurred_at ASC, id ASC
        """
    ).fetchall()
    out: list[EvidenceRecord] = []
    for row in rows:
        record = _row_to_record(row)
        if record is None or not record.signals:
            continue
        out.append(record)
    return out


def best_signal_confidences(conn: Connection, evidence_ids: Iterable[int]) -> dict[int, float]:
    # evidence with no readable signal is left out of the map
    wanted = sorted({int(evidence_id) for evidence_id in evidence_ids})
    if not wanted:
        return {}
    rows = conn.execute(
        "SELECT id, signals_json FROM evidence WHERE id = ANY(%s)",
        (wanted,),
    ).fetchall()
    out: dict[int, float] = {}
    for row in rows:
        evidence_id = int(row["id"])
        signals = decode_signals(row["signals_json"], evidence_id=evidence_id)
        if signals:
            out[evidence_id] = max(signal.confidence for signal in signals)
    return out


def existing_evidence_ids(conn: Connection, evidence_ids: Iterable[int]) -> set[int]:
    wanted = sorted({int(evidence_id) for evidence_id in evidence_ids})
    if not wanted:
        return set()
    rows = conn.execute(
        "SELECT id FROM evidence WHERE id = ANY(%s)",
        (wanted,),
    ).fetchall()
    return {int(row["id"]) for row in rows}
