"""
ProcessingJob bookkeeping shared by every pipeline handler.

A job row per (tenant, job type, dedupe key) records attempts and outcome.
A Succeeded job short-circuits redelivered messages; a concurrent insert of
the same key is resolved by the unique constraint and a reload.
"""
from typing import Any, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gigledger.context import TenantContext
from gigledger.exceptions import GigLedgerError
from gigledger.models.audit import AuditAction
from gigledger.models.job import JobType, ProcessingJob
from gigledger.services.audit import log_audit_event

logger = structlog.get_logger(__name__)


def find_job(db: Session, tenant_id, job_type: JobType, dedupe_key: str) -> Optional[ProcessingJob]:
    return (
        db.query(ProcessingJob)
        .filter(
            ProcessingJob.tenant_id == tenant_id,
            ProcessingJob.job_type == job_type.value,
            ProcessingJob.dedupe_key == dedupe_key,
        )
        .first()
    )


def is_already_succeeded(db: Session, ctx: TenantContext, job_type: JobType, dedupe_key: str) -> bool:
    """Fast path: the same work finished on an earlier delivery."""
    job = find_job(db, ctx.tenant_id, job_type, dedupe_key)
    if job is not None and job.is_succeeded:
        logger.info("job_already_succeeded", job_type=job_type.value, dedupe_key=dedupe_key)
        return True
    return False


def start_job(db: Session, ctx: TenantContext, job_type: JobType, dedupe_key: str) -> ProcessingJob:
    """
    Get or create the job row and record a new attempt.

    Must be the first write of the handler's transaction: a duplicate insert
    rolls the session back before reloading the winner's row.
    """
    job = find_job(db, ctx.tenant_id, job_type, dedupe_key)
    if job is None:
        job = ProcessingJob(tenant_id=ctx.tenant_id, job_type=job_type.value, dedupe_key=dedupe_key)
        db.add(job)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.warning("job_duplicate_detected", job_type=job_type.value, dedupe_key=dedupe_key)
            job = find_job(db, ctx.tenant_id, job_type, dedupe_key)

    job.mark_started()
    return job


def mark_job_succeeded(db: Session, ctx: TenantContext, job_type: JobType, dedupe_key: str) -> ProcessingJob:
    """Mark the job Succeeded in the current transaction, creating it if needed."""
    job = find_job(db, ctx.tenant_id, job_type, dedupe_key)
    if job is None:
        job = ProcessingJob(tenant_id=ctx.tenant_id, job_type=job_type.value, dedupe_key=dedupe_key)
        job.mark_started()
        db.add(job)
    job.mark_succeeded()
    return job


def record_job_failure(
    db: Session,
    ctx: TenantContext,
    job_type: JobType,
    dedupe_key: str,
    error: BaseException,
    action: AuditAction,
    entity_type: str,
    entity_id: Any,
) -> None:
    """
    Roll back the failed work, then persist the job failure and its audit row.

    The caller re-raises the original error afterwards.
    """
    db.rollback()

    job = find_job(db, ctx.tenant_id, job_type, dedupe_key)
    if job is None:
        job = ProcessingJob(tenant_id=ctx.tenant_id, job_type=job_type.value, dedupe_key=dedupe_key)
        db.add(job)
    # The rollback discarded this attempt; count it against the persisted total.
    job.mark_started()
    job.mark_failed(str(error))

    metadata = {
        "job_type": job_type.value,
        "dedupe_key": dedupe_key,
        "error": str(error),
        "error_type": type(error).__name__,
    }
    if isinstance(error, GigLedgerError):
        metadata["error_code"] = error.error_code
        metadata["retryable"] = error.retryable

    log_audit_event(db, ctx, action, entity_type, entity_id, metadata=metadata)
    db.commit()

    logger.error(
        "job_failed",
        job_type=job_type.value,
        dedupe_key=dedupe_key,
        error=str(error),
        error_type=type(error).__name__,
    )
