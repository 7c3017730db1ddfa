"""
Statement intake: upload and submit.

Upload reads the statement's own metadata to file it under its natural key,
rejects duplicates, stores the blob at a deterministic path and starts the
pipeline with ``statement.received``. Granularity is checked up front so a
statement that loses to a more granular one is stored for reconciliation
only; extraction still runs for it.
"""
import hashlib
import io
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gigledger.config import get_settings
from gigledger.context import TenantContext
from gigledger.exceptions import (
    DuplicateStatementError,
    FileTooLargeError,
    InvalidPeriodKeyError,
    NotFoundError,
    PostingBlockedError,
    UnsupportedContentTypeError,
    UnsupportedProviderError,
    ValidationError,
)
from gigledger.messaging import topics
from gigledger.messaging.envelope import MessageEnvelope
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.audit import AuditAction
from gigledger.models.file_object import FileObject, FileSource
from gigledger.models.job import JobType
from gigledger.models.statement import PeriodType, Statement, StatementStatus
from gigledger.services.audit import log_audit_event
from gigledger.services.document_analyzer import (
    AnalyzedDocument,
    DocumentAnalyzer,
    default_analyzers,
    extract_key_values,
    select_analyzer,
)
from gigledger.services.extractors.metadata import StatementMetadata, extract_metadata
from gigledger.services.granularity import initial_status, is_outranked
from gigledger.services.processing_jobs import find_job
from gigledger.services.snapshots import period_range
from gigledger.services.statement_extraction import extraction_dedupe_key, statement_parsed_envelope
from gigledger.storage import ObjectStore

logger = structlog.get_logger(__name__)

SUPPORTED_PROVIDERS = ("Uber", "Lyft")

CONTENT_TYPE_EXTENSIONS = {
    "application/pdf": "pdf",
    "text/csv": "csv",
    "text/plain": "txt",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/tiff": "tiff",
}

UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def normalize_provider(provider: Optional[str]) -> Optional[str]:
    """Canonical spelling of a supported provider, else the stripped input."""
    if not provider or not provider.strip():
        return None
    for supported in SUPPORTED_PROVIDERS:
        if supported.lower() == provider.strip().lower():
            return supported
    return provider.strip()


def sanitize_path_segment(value: str) -> str:
    return UNSAFE_PATH_CHARS.sub("", value.strip().replace(" ", "_")) or "unknown"


def statement_blob_path(tenant_id, provider: str, period_key: str, sha256: str, content_type: str) -> str:
    """``{tenant}/statements/{provider}/{period_key}/{sha256}.{ext}``"""
    ext = CONTENT_TYPE_EXTENSIONS.get((content_type or "").split(";")[0].strip().lower(), "bin")
    return (
        f"{tenant_id}/statements/{sanitize_path_segment(provider)}/"
        f"{sanitize_path_segment(period_key)}/{sha256}.{ext}"
    )


def is_text_content(content_type: str) -> bool:
    ct = (content_type or "").lower()
    return "csv" in ct or "text/plain" in ct


def statement_received_envelope(ctx: TenantContext, statement: Statement) -> MessageEnvelope:
    return MessageEnvelope.create(
        type=topics.STATEMENT_RECEIVED_V1,
        tenant_id=ctx.tenant_id,
        correlation_id=ctx.correlation_id,
        data={
            "statement_id": str(statement.id),
            "provider": statement.provider,
            "period_type": PeriodType(statement.period_type).value,
            "period_key": statement.period_key,
            "file_object_id": str(statement.file_object_id),
            "period_start": statement.period_start.isoformat(),
            "period_end": statement.period_end.isoformat(),
        },
    )


def period_bounds(
    period_type: PeriodType,
    period_key: str,
    metadata: StatementMetadata,
    explicit: bool = False,
) -> Tuple[date, date]:
    """
    Date range a statement covers.

    An explicitly supplied period is taken from its key; otherwise the key's
    range is used when it parses, falling back to the dates read from the
    document.

    Raises:
        ValidationError: explicit key does not match its type, or no dates
            could be determined.
    """
    try:
        return period_range(period_type, period_key)
    except InvalidPeriodKeyError as e:
        if explicit:
            raise ValidationError(e.message, details=e.details) from e

    if metadata.period_start is None:
        raise ValidationError(
            "Could not determine the statement period",
            details={"period_type": PeriodType(period_type).value, "period_key": period_key},
        )
    return metadata.period_start, metadata.period_end or metadata.period_start


@dataclass
class UploadedStatement:
    """Outcome of an upload."""

    statement: Statement
    file_object: FileObject

    @property
    def posted_to_ledger(self) -> bool:
        return self.statement.status != StatementStatus.RECONCILIATION_ONLY


class StatementIntakeService:
    """Accepts statement uploads and submissions for one request."""

    def __init__(
        self,
        store: ObjectStore,
        publisher: MessagePublisher,
        analyzers: Optional[Sequence[DocumentAnalyzer]] = None,
    ):
        self._store = store
        self._publisher = publisher
        self._analyzers = list(analyzers) if analyzers is not None else None

    @property
    def analyzers(self):
        if self._analyzers is None:
            self._analyzers = default_analyzers()
        return self._analyzers

    def read_metadata(self, content: bytes, content_type: str) -> StatementMetadata:
        if is_text_content(content_type):
            text = content.decode("utf-8-sig", errors="replace")
            document = AnalyzedDocument(raw_text=text, key_values=extract_key_values(text))
        else:
            analyzer = select_analyzer(self.analyzers, content_type)
            if analyzer is None:
                raise UnsupportedContentTypeError(content_type)
            document = analyzer.analyze(io.BytesIO(content))
        return extract_metadata(document)

    def upload(
        self,
        db: Session,
        ctx: TenantContext,
        content: bytes,
        content_type: str,
        filename: Optional[str] = None,
        provider: Optional[str] = None,
        period_type: Optional[PeriodType] = None,
        period_key: Optional[str] = None,
    ) -> UploadedStatement:
        """
        Store a statement and start its pipeline.

        Explicit provider/period arguments win over detected metadata.

        Raises:
            FileTooLargeError: content exceeds the upload limit.
            UnsupportedContentTypeError: no analyzer reads the file type.
            UnsupportedProviderError: provider is not Uber or Lyft.
            DuplicateStatementError: same natural key or same file already uploaded.
            ValidationError: the reporting period could not be determined.
        """
        settings = get_settings()
        if len(content) > settings.max_upload_size_bytes:
            raise FileTooLargeError(len(content), settings.max_upload_size_bytes)

        sha256 = hashlib.sha256(content).hexdigest()
        metadata = self.read_metadata(content, content_type)

        resolved_provider = normalize_provider(provider or metadata.provider)
        if resolved_provider not in SUPPORTED_PROVIDERS:
            raise UnsupportedProviderError(resolved_provider, list(SUPPORTED_PROVIDERS))

        resolved_type = PeriodType(period_type) if period_type else metadata.period_type
        resolved_key = (period_key or metadata.period_key or "").strip()
        if resolved_type is None or not resolved_key:
            raise ValidationError(
                "Could not determine the statement period",
                details={"period_type": getattr(resolved_type, "value", None), "period_key": resolved_key},
            )
        explicit_period = bool(period_type or period_key)
        period_start, period_end = period_bounds(resolved_type, resolved_key, metadata, explicit_period)

        existing = (
            db.query(Statement)
            .filter(
                Statement.tenant_id == ctx.tenant_id,
                Statement.provider == resolved_provider,
                Statement.period_type == resolved_type,
                Statement.period_key == resolved_key,
            )
            .first()
        )
        if existing is not None:
            raise DuplicateStatementError(
                f"A {resolved_provider} {resolved_type.value} statement for period "
                f"'{resolved_key}' already exists.",
                details={"existing_statement_id": str(existing.id), "existing_status": existing.status.value},
            )

        existing_file = (
            db.query(FileObject)
            .filter(
                FileObject.tenant_id == ctx.tenant_id,
                FileObject.source == FileSource.STATEMENT_UPLOAD,
                FileObject.sha256 == sha256,
            )
            .first()
        )
        if existing_file is not None:
            raise DuplicateStatementError(
                "This exact statement file was already uploaded.",
                details={"sha256": sha256, "existing_file_object_id": str(existing_file.id)},
            )

        status = initial_status(db, ctx.tenant_id, resolved_provider, resolved_type, period_start)

        blob_path = statement_blob_path(ctx.tenant_id, resolved_provider, resolved_key, sha256, content_type)
        self._store.upload(blob_path, io.BytesIO(content), content_type)

        file_object = FileObject(
            tenant_id=ctx.tenant_id,
            blob_path=blob_path,
            sha256=sha256,
            size=len(content),
            content_type=content_type,
            original_name=filename,
            source=FileSource.STATEMENT_UPLOAD,
        )
        db.add(file_object)
        db.flush()

        statement = Statement(
            tenant_id=ctx.tenant_id,
            file_object_id=file_object.id,
            provider=resolved_provider,
            period_type=resolved_type,
            period_key=resolved_key,
            period_start=period_start,
            period_end=period_end,
            vendor_name=metadata.vendor_name,
            statement_total_amount=metadata.statement_total_amount,
            tax_amount=metadata.tax_amount,
            currency_code=metadata.currency,
            status=status,
        )
        db.add(statement)
        db.flush()

        log_audit_event(
            db, ctx,
            action=AuditAction.STATEMENT_UPLOADED,
            entity_type="Statement",
            entity_id=statement.id,
            metadata={
                "provider": resolved_provider,
                "period_type": resolved_type.value,
                "period_key": resolved_key,
                "status": status.value,
                "sha256": sha256,
            },
        )
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise DuplicateStatementError(
                f"A {resolved_provider} {resolved_type.value} statement for period "
                f"'{resolved_key}' already exists."
            ) from e

        logger.info(
            "statement_uploaded",
            statement_id=str(statement.id),
            provider=resolved_provider,
            period_type=resolved_type.value,
            period_key=resolved_key,
            status=status.value,
        )
        self._publisher.publish(topics.STATEMENT_RECEIVED, statement_received_envelope(ctx, statement))
        return UploadedStatement(statement=statement, file_object=file_object)

    def submit(self, db: Session, ctx: TenantContext, statement_id) -> Statement:
        """
        Submit a stored statement for posting.

        Raises:
            NotFoundError: no such statement for the tenant.
            PostingBlockedError: the statement is, or becomes, reconciliation-only.
        """
        statement = (
            db.query(Statement)
            .filter(Statement.tenant_id == ctx.tenant_id, Statement.id == statement_id)
            .first()
        )
        if statement is None:
            raise NotFoundError("Statement", str(statement_id))

        if statement.status == StatementStatus.RECONCILIATION_ONLY:
            raise PostingBlockedError(str(statement.id))

        if statement.status in (StatementStatus.SUBMITTED, StatementStatus.POSTED):
            logger.info("statement_submit_noop", statement_id=str(statement.id), status=statement.status.value)
            return statement

        if is_outranked(
            db, ctx.tenant_id, statement.provider, statement.period_type,
            statement.period_start, exclude_id=statement.id,
        ):
            statement.status = StatementStatus.RECONCILIATION_ONLY
            log_audit_event(
                db, ctx,
                action=AuditAction.STATEMENT_DEMOTED,
                entity_type="Statement",
                entity_id=statement.id,
                metadata={"period_key": statement.period_key, "reason": "submit"},
            )
            db.commit()
            raise PostingBlockedError(str(statement.id))

        statement.status = StatementStatus.SUBMITTED
        db.commit()

        # Lines already extracted: go straight to posting
        job = find_job(db, ctx.tenant_id, JobType.STATEMENT_EXTRACT, extraction_dedupe_key(statement.id))
        if job is not None and job.is_succeeded:
            self._publisher.publish(topics.STATEMENT_PARSED, statement_parsed_envelope(ctx, statement))
        else:
            self._publisher.publish(topics.STATEMENT_RECEIVED, statement_received_envelope(ctx, statement))

        logger.info("statement_submitted", statement_id=str(statement.id))
        return statement
