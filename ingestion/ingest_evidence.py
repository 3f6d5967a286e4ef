from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from api.db import get_connection
from api.repositories.evidence import insert_evidence
from api.repositories.resolve import upsert_context_name, upsert_person_name
from ingestion.normalize_evidence import EvidencePayload, NormalizedEvidence, normalize_evidence
from ingestion.time_utils import parse_iso_utc
from ml.signals import EvidenceRecord, classify

logger = logging.getLogger(__name__)

INGEST_TRIGGER_REASON = "evidence_ingest"


def _signals_for(normalized: NormalizedEvidence, *, now: datetime | None):
    # explicit signals (even an empty list) win over the rule classifier
    if normalized["signals"] is not None:
        return normalized["signals"], False
    record = EvidenceRecord(
        evidence_id=0,
        source_kind=normalized["source_kind"],
        occurred_at=parse_iso_utc(normalized["occurred_at"]),
        content=normalized["content"],
        person_ref=normalized["person_ref"],
        context_ref=normalized["context_ref"],
    )
    return classify(record, now=now), True


def ingest_evidence_batch(
    items: Iterable[EvidencePayload],
    *,
    scheduler=None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Normalize, classify and store a batch of evidence in one transaction.

    A payload that fails normalization rejects the whole batch before anything
    is written. On commit the scheduler (if given) is triggered once.
    """
    normalized = [normalize_evidence(item) for item in items]
    if not normalized:
        return {"status": "ok", "evidence_ids": [], "classified": 0, "signals_attached": 0}

    evidence_ids: list[int] = []
    classified = 0
    signals_attached = 0
    conn = get_connection()
    try:
        for entry in normalized:
            if entry["person_ref"] and entry["person_name"]:
                upsert_person_name(conn, entry["person_ref"], entry["person_name"])
            if entry["context_ref"] and entry["context_name"]:
                upsert_context_name(conn, entry["context_ref"], entry["context_name"])
            signals, was_classified = _signals_for(entry, now=now)
            if was_classified:
                classified += 1
            signals_attached += len(signals)
            evidence_ids.append(
                insert_evidence(
                    conn,
                    source_kind=entry["source_kind"],
                    occurred_at=entry["occurred_at"],
                    content=entry["content"],
                    person_ref=entry["person_ref"],
                    context_ref=entry["context_ref"],
                    signals=signals,
                )
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    logger.info(
        "Evidence batch stored",
        extra={"count": len(evidence_ids), "classified": classified, "signals": signals_attached},
    )
    if scheduler is not None:
        scheduler.trigger(INGEST_TRIGGER_REASON)
    return {
        "status": "ok",
        "evidence_ids": evidence_ids,
        "classified": classified,
        "signals_attached": signals_attached,
    }
