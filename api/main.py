import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from psycopg import Error as DatabaseError

from api.db import initialize_database
from api.repositories.insights import (
    dismiss_insight,
    export_insights,
    insights_for_context,
    insights_for_person,
    list_active,
    list_all,
    restore_insights,
)
from api.schemas import (
    DedupeOut,
    DismissOut,
    EvidenceBatchIn,
    EvidenceBatchOut,
    InsightBackupRow,
    InsightOut,
    RestoreIn,
    RestoreOut,
    TriggerIn,
    TriggerOut,
)
from api.worker.job_processing import process_insight_dedupe, process_insight_refresh
from api.worker.scheduler import CoalescingScheduler
from ingestion.ingest_evidence import ingest_evidence_batch
from ingestion.normalize_evidence import NormalizationError

logger = logging.getLogger(__name__)

# one scheduler per process; every import path and the refresh endpoint share it
insight_scheduler = CoalescingScheduler(run=process_insight_refresh)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    _ = app
    initialize_database()
    insight_scheduler.trigger("startup")
    yield
    insight_scheduler.shutdown(wait=True, timeout=30.0)


app = FastAPI(
    title="Insight Reconciliation API",
    version="0.1.0",
    lifespan=_lifespan,
)


def _cors_allow_origins() -> list[str]:
    configured = os.getenv("CORS_ALLOW_ORIGINS", "")
    if configured.strip():
        return [origin.strip().rstrip("/") for origin in configured.split(",") if origin.strip()]
    return [
        "http://localhost:8081",
        "http://127.0.0.1:8081",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

_cors_allow_origin_regex = os.getenv("CORS_ALLOW_ORIGIN_REGEX", "").strip() or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_allow_origins(),
    allow_origin_regex=_cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.post("/evidence", response_model=EvidenceBatchOut)
def ingest_evidence(payload: EvidenceBatchIn):
    # normalize/validate first so a bad record rejects the batch before any write
    try:
        return ingest_evidence_batch(payload.items, scheduler=insight_scheduler)
    except NormalizationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/insights", response_model=list[InsightOut])
def get_insights(include_dismissed: bool = False):
    return list_all() if include_dismissed else list_active()


@app.get("/insights/export", response_model=list[InsightBackupRow])
def export_insight_backup():
    return export_insights()


@app.get("/insights/person/{person_ref}", response_model=list[InsightOut])
def get_person_insights(person_ref: str):
    return insights_for_person(person_ref)


@app.get("/insights/context/{context_ref}", response_model=list[InsightOut])
def get_context_insights(context_ref: str):
    return insights_for_context(context_ref)


@app.post("/insights/{insight_id}/dismiss", response_model=DismissOut)
def dismiss(insight_id: int):
    try:
        return dismiss_insight(insight_id)
    except ValueError as exc:
        if str(exc) == "insight_not_found":
            raise HTTPException(status_code=404, detail="Insight not found")
        raise


# fire-and-forget: the pass runs on the scheduler once triggers go quiet
@app.post("/insights/refresh", response_model=TriggerOut)
def refresh_insights(payload: TriggerIn):
    insight_scheduler.trigger(payload.reason)
    return {"status": "scheduled", "reason": payload.reason, "state": insight_scheduler.state}


@app.post("/insights/dedupe", response_model=DedupeOut)
def dedupe():
    try:
        return process_insight_dedupe()
    except DatabaseError:
        logger.exception("Insight dedupe failed")
        raise HTTPException(status_code=500, detail="dedupe failed; no changes were written")


@app.post("/insights/restore", response_model=RestoreOut)
def restore_insight_backup(payload: RestoreIn):
    try:
        result = restore_insights(row.model_dump() for row in payload.insights)
    except DatabaseError:
        logger.exception("Insight restore failed", extra={"rows": len(payload.insights)})
        raise HTTPException(status_code=500, detail="restore failed; existing insights kept")
    return {"status": "ok", **result}
