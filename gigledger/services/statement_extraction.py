"""
Statement extraction handler (``statement.received`` -> ``statement.parsed``).

Reads the uploaded file, runs the extractor for its content type, replaces
the statement's lines and publishes the recomputed rollups.
"""
import uuid
from typing import Callable, List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import NotFoundError, UnsupportedContentTypeError
from gigledger.messaging import topics
from gigledger.messaging.envelope import MessageEnvelope
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.audit import AuditAction
from gigledger.models.file_object import FileObject
from gigledger.models.job import JobType
from gigledger.models.statement import PeriodType, Statement, StatementStatus
from gigledger.services.audit import log_audit_event
from gigledger.services.classification import LineClassifier
from gigledger.services.extractors import StatementExtractor, default_extractors, select_extractor
from gigledger.services.normalizer import normalize_lines, replace_statement_lines
from gigledger.services.posting.base import PipelineHandler
from gigledger.services.processing_jobs import (
    is_already_succeeded,
    record_job_failure,
    start_job,
)
from gigledger.storage import LocalObjectStore, ObjectStore

logger = structlog.get_logger(__name__)

JOB_TYPE = JobType.STATEMENT_EXTRACT

# Statuses that extraction leaves untouched
STICKY_STATUSES = (StatementStatus.RECONCILIATION_ONLY, StatementStatus.POSTED)


def extraction_dedupe_key(statement_id) -> str:
    return f"statement.extract:{statement_id}"


def statement_parsed_envelope(ctx: TenantContext, statement: Statement) -> MessageEnvelope:
    return MessageEnvelope.create(
        type=topics.STATEMENT_PARSED_V1,
        tenant_id=ctx.tenant_id,
        correlation_id=ctx.correlation_id,
        data={
            "statement_id": str(statement.id),
            "provider": statement.provider,
            "period_type": PeriodType(statement.period_type).value,
            "period_key": statement.period_key,
            "line_count": statement.line_count,
            "income_total": str(statement.income_total),
            "fee_total": str(statement.fee_total),
            "tax_total": str(statement.tax_total),
        },
    )


class StatementExtractionHandler(PipelineHandler):
    """Extracts and normalizes statement lines."""

    name = "statement.extract"

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        publisher: Optional[MessagePublisher] = None,
        store: Optional[ObjectStore] = None,
        extractors: Optional[Sequence[StatementExtractor]] = None,
        classifier: Optional[LineClassifier] = None,
    ):
        super().__init__(session_factory, publisher)
        self._store = store
        self._extractors = list(extractors) if extractors is not None else None
        self._classifier = classifier

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = LocalObjectStore()
        return self._store

    @property
    def extractors(self) -> List[StatementExtractor]:
        if self._extractors is None:
            self._extractors = default_extractors()
        return self._extractors

    def process(
        self, db: Session, ctx: TenantContext, data: dict, cancellation: CancellationToken
    ) -> Optional[uuid.UUID]:
        statement_id = uuid.UUID(str(data["statement_id"]))
        dedupe_key = extraction_dedupe_key(statement_id)

        if is_already_succeeded(db, ctx, JOB_TYPE, dedupe_key):
            return None

        try:
            job = start_job(db, ctx, JOB_TYPE, dedupe_key)

            statement = (
                db.query(Statement)
                .filter(Statement.tenant_id == ctx.tenant_id, Statement.id == statement_id)
                .first()
            )
            if statement is None:
                raise NotFoundError("Statement", str(statement_id))

            file_object = (
                db.query(FileObject)
                .filter(FileObject.tenant_id == ctx.tenant_id, FileObject.id == statement.file_object_id)
                .first()
            )
            if file_object is None:
                raise NotFoundError("FileObject", str(statement.file_object_id))

            extractor = select_extractor(self.extractors, file_object.content_type)
            if extractor is None:
                raise UnsupportedContentTypeError(file_object.content_type)

            with self.store.open_read(file_object.blob_path) as stream:
                raw_lines = extractor.extract(stream, file_object.content_type)

            candidates = normalize_lines(raw_lines, statement.provider, self._classifier)
            lines = replace_statement_lines(db, statement, candidates)

            if statement.status not in STICKY_STATUSES:
                statement.status = StatementStatus.DRAFT
            job.mark_succeeded()
            log_audit_event(
                db, ctx,
                action=AuditAction.STATEMENT_PARSED,
                entity_type="Statement",
                entity_id=statement.id,
                metadata={
                    "line_count": len(lines),
                    "income_total": str(statement.income_total),
                    "fee_total": str(statement.fee_total),
                    "tax_total": str(statement.tax_total),
                    "model_version": extractor.model_version,
                },
            )
            cancellation.raise_if_cancelled()
            db.commit()

        except Exception as e:
            record_job_failure(
                db, ctx, JOB_TYPE, dedupe_key, e,
                action=AuditAction.STATEMENT_EXTRACT_FAILED,
                entity_type="Statement",
                entity_id=statement_id,
            )
            raise

        logger.info(
            "statement_extracted",
            statement_id=str(statement.id),
            line_count=statement.line_count,
            income_total=str(statement.income_total),
        )
        self.publisher.publish(topics.STATEMENT_PARSED, statement_parsed_envelope(ctx, statement))
        return statement.id
