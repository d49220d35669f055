"""Pydantic models for the structured payload produced by the extraction black box."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class TherapyFact(BaseModel):
    name: str
    manufacturer: str
    mechanism: str
    price_per_treatment_usd: int
    sources: List[str] = Field(default_factory=list)


class RevenueFact(BaseModel):
    therapy_id: Optional[UUID] = None
    therapy_name: str
    period: str
    region: str
    revenue_millions_usd: float
    sources: List[str] = Field(default_factory=list)


class ApprovalFact(BaseModel):
    therapy_id: Optional[UUID] = None
    therapy_name: str
    disease_id: Optional[UUID] = None
    disease_name: str
    region: str
    approval_date: datetime
    approval_type: str
    regulatory_body: str
    sources: List[str] = Field(default_factory=list)


class ConfidenceScores(BaseModel):
    therapy: float = Field(0, ge=0, le=100)
    revenue: float = Field(0, ge=0, le=100)
    approvals: float = Field(0, ge=0, le=100)


class SourceQuote(BaseModel):
    page: int
    section: str
    quote: str


class ExtractedPayload(BaseModel):
    """What one extraction run found in one document."""

    therapy: List[TherapyFact] = Field(default_factory=list)
    revenue: List[RevenueFact] = Field(default_factory=list)
    approvals: List[ApprovalFact] = Field(default_factory=list)
    confidence: ConfidenceScores = Field(default_factory=ConfidenceScores)
    sources: List[SourceQuote] = Field(default_factory=list)

    def to_json(self) -> dict:
        """JSON-safe dict for the JSONB column (UUIDs and datetimes as strings)."""
        return self.model_dump(mode="json")
