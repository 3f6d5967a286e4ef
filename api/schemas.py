# standardize base schemas for repeated payload patterns

from typing import Optional

from pydantic import BaseModel, Field


# An explicit signal attached by an upstream classifier
class SignalIn(BaseModel):
    kind: str = Field(
        pattern="^(complianceRisk|divorce|comingOfAge|partnerLeft|productOpportunity|unlinkedEvidence)$"
    )
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""


# One evidence record from an import (calendar, mail, message, note or manual entry)
# signals omitted -> rule classifier runs on write; signals=[] -> stored with none
class EvidenceIn(BaseModel):
    source_kind: str
    occurred_at: str
    content: Optional[str] = None
    person_ref: Optional[str] = None
    person_name: Optional[str] = None
    context_ref: Optional[str] = None
    context_name: Optional[str] = None
    signals: Optional[list[SignalIn]] = None


class EvidenceBatchIn(BaseModel):
    items: list[EvidenceIn] = Field(min_length=1, max_length=1000)


class EvidenceBatchOut(BaseModel):
    status: str
    evidence_ids: list[int]
    classified: int
    signals_attached: int


class InsightOut(BaseModel):
    id: int
    person_ref: Optional[str] = None
    context_ref: Optional[str] = None
    kind: str
    message: str
    confidence: float
    evidence_refs: list[int]
    created_at: str
    dismissed_at: Optional[str] = None


class DismissOut(BaseModel):
    status: str
    insight_id: int
    dismissed_at: str


class TriggerIn(BaseModel):
    reason: str = Field(default="manual", min_length=1, max_length=120)


class TriggerOut(BaseModel):
    status: str
    reason: str
    state: str


class DedupeOut(BaseModel):
    status: str
    groups_merged: int
    insights_deleted: int
    duration_ms: float


# Shape of one row in an insight backup; same fields InsightOut serializes
class InsightBackupRow(BaseModel):
    id: Optional[int] = None
    person_ref: Optional[str] = None
    context_ref: Optional[str] = None
    kind: str = Field(pattern="^(complianceWarning|relationshipAtRisk|followUp|opportunity)$")
    message: str
    confidence: float = Field(ge=0.0, le=1.0)
    evidence_refs: list[int] = Field(default_factory=list)
    created_at: Optional[str] = None
    dismissed_at: Optional[str] = None


class RestoreIn(BaseModel):
    insights: list[InsightBackupRow]


class RestoreOut(BaseModel):
    status: str
    insights_restored: int
    insights_skipped: int
    evidence_refs_dropped: int
