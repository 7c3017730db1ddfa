"""
ProcessingJob model for idempotent pipeline work.

One row per (tenant, job type, dedupe key). Handlers consult it before doing
work and record attempts, success and the last error on it.
"""
import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, String, Text, UniqueConstraint

from gigledger.database import Base
from gigledger.models.types import UUID, utcnow


class JobStatus(str, Enum):
    """Processing job status enumeration."""
    STARTED = "Started"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class JobType(str, Enum):
    """Job type enumeration."""
    STATEMENT_EXTRACT = "statement.extract"
    RECEIPT_EXTRACT = "receipt.extract"
    LEDGER_POST_RECEIPT = "ledger.post.receipt"
    LEDGER_POST_STATEMENT = "ledger.post.statement"
    LEDGER_POST_RECONCILIATION = "ledger.post.reconciliation"
    LEDGER_POST_MANUAL = "ledger.post.manual"
    LEDGER_POST_ADJUSTMENT = "ledger.post.adjustment"
    SNAPSHOT_COMPUTE = "snapshot.compute"


class ProcessingJob(Base):
    """Per-tenant idempotency and retry record."""

    __tablename__ = "processing_jobs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)

    job_type = Column(String(64), nullable=False)
    dedupe_key = Column(String(255), nullable=False)
    status = Column(SQLEnum(JobStatus), default=JobStatus.STARTED, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "job_type", "dedupe_key", name="uq_processing_jobs_dedupe"),
    )

    def __repr__(self) -> str:
        return f"<ProcessingJob {self.job_type} {self.dedupe_key} status={self.status}>"

    @property
    def is_succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    def mark_started(self) -> None:
        """Record a new attempt."""
        self.status = JobStatus.STARTED
        self.attempts = (self.attempts or 0) + 1
        self.last_error = None
        self.updated_at = utcnow()

    def mark_succeeded(self) -> None:
        """Mark job as succeeded."""
        self.status = JobStatus.SUCCEEDED
        self.last_error = None
        self.updated_at = utcnow()

    def mark_failed(self, error_message: Optional[str]) -> None:
        """Mark job as failed."""
        self.status = JobStatus.FAILED
        self.last_error = (error_message or "")[:4000]
        self.updated_at = utcnow()
