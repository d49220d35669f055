from sqlalchemy import Boolean, CheckConstraint, Column, String, DateTime, Integer, Text, ForeignKey, Float, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import ARRAY, UUID, JSONB
from datetime import datetime
import uuid
from app.database import Base


class Document(Base):
    """Uploaded report; the file itself lives in the document store (GCS)."""
    __tablename__ = "documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)  # opaque store reference, e.g. gs://bucket/documents/...
    file_hash = Column(String(64), unique=True, nullable=False)  # SHA-256, prevents duplicates
    company_name = Column(String(255), nullable=True)
    report_type = Column(String(20), nullable=True)  # annual, quarterly
    reporting_period = Column(String(20), nullable=True)  # e.g. Q3-2024, 2024
    uploaded_by = Column(String(255), nullable=False)
    uploaded_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Job(Base):
    """Priority job queue for extraction tasks - claimed by separate worker processes."""
    __tablename__ = "job_queue"
    __table_args__ = (
        Index("idx_job_queue_claim", "status", "priority", "created_at"),
        Index("idx_job_queue_document_id", "document_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id"), nullable=False)
    job_type = Column(String(20), default="extraction", nullable=False)
    priority = Column(Integer, default=3, nullable=False)  # 1=high, 2=medium, 3=low
    status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, failed
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    error = Column(Text, nullable=True)  # last failure; reset appends history here
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class Extraction(Base):
    """Staging area: latest extraction payload per document, pending human review.

    ``review_status`` is the explicit review outcome. ``requires_review`` /
    ``approved_by`` / ``approved_at`` keep the dashboard's encoding
    (rejected = not requires_review, approved_by set, approved_at null); the
    check constraint only admits the three legal combinations.
    """
    __tablename__ = "extractions"
    __table_args__ = (
        CheckConstraint(
            "(review_status = 'pending' AND requires_review AND approved_at IS NULL)"
            " OR (review_status = 'approved' AND NOT requires_review"
            " AND approved_by IS NOT NULL AND approved_at IS NOT NULL)"
            " OR (review_status = 'rejected' AND NOT requires_review"
            " AND approved_by IS NOT NULL AND approved_at IS NULL)",
            name="ck_extractions_review_state",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("documents.id"), nullable=False, unique=True)
    extracted_data = Column(JSONB, nullable=False)  # therapy/revenue/approvals facts + confidence + source quotes
    review_status = Column(String(20), default="pending", nullable=False)  # pending, approved, rejected
    requires_review = Column(Boolean, default=True, nullable=False)
    review_notes = Column(Text, nullable=True)
    approved_by = Column(String(255), nullable=True)  # reviewer (also set on rejection)
    approved_at = Column(DateTime, nullable=True)  # set only on approval
    reviewed_at = Column(DateTime, nullable=True)  # time of approval or rejection
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Therapy(Base):
    __tablename__ = "therapies"
    __table_args__ = (UniqueConstraint("name", "manufacturer", name="uq_therapies_name_manufacturer"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    manufacturer = Column(String(255), nullable=False)
    mechanism = Column(Text, nullable=False)
    price_per_treatment_usd = Column(Integer, nullable=False)
    sources = Column(ARRAY(Text), nullable=False, default=list)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)


class Disease(Base):
    __tablename__ = "diseases"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    category = Column(String(100), nullable=False)  # "Uncategorized" when auto-created by approval merge
    subcategory = Column(String(100), nullable=True)
    icd10_code = Column(String(20), nullable=True)
    annual_incidence_us = Column(Integer, nullable=True)
    sources = Column(ARRAY(Text), nullable=False, default=list)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)


class TherapyApproval(Base):
    __tablename__ = "therapy_approvals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    therapy_id = Column(UUID(as_uuid=True), ForeignKey("therapies.id"), nullable=False)
    disease_id = Column(UUID(as_uuid=True), ForeignKey("diseases.id"), nullable=False)
    therapy_name = Column(String(255), nullable=True)
    disease_indication = Column(String(255), nullable=True)
    region = Column(String(100), nullable=False)
    approval_date = Column(DateTime, nullable=False)
    approval_type = Column(String(100), nullable=False)
    regulatory_body = Column(String(100), nullable=False)
    sources = Column(ARRAY(Text), nullable=False, default=list)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)


class TherapyRevenue(Base):
    """Raw revenue fact as reported (free-text period/region). Never mutated by the resolver."""
    __tablename__ = "therapy_revenue"
    __table_args__ = (
        UniqueConstraint("therapy_id", "period", "region", name="uq_therapy_revenue_period_region"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    therapy_id = Column(UUID(as_uuid=True), ForeignKey("therapies.id"), nullable=False)
    period = Column(String(50), nullable=False)  # e.g. "Q1 2024", "2024"
    region = Column(String(100), nullable=False)  # e.g. "US", "worldwide"
    revenue_millions_usd = Column(Float, nullable=False)
    sources = Column(ARRAY(Text), nullable=False, default=list)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)
