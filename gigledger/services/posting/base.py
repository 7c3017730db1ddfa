"""
Shared plumbing for idempotent pipeline handlers.

Every handler follows the same shape:

1. deterministic dedupe key for the unit of work
2. fast path: a Succeeded ProcessingJob means the work is done
3. strong path: an existing LedgerEntry for (tenant, source type, source id)
4. build the entry, lines, job success and audit row; commit once
5. publish ``ledger.posted.v1`` only after the commit
6. on failure: roll back, mark the job Failed, audit, commit, re-raise

A unique-constraint violation on the entry insert means a concurrent
delivery won; it is treated as success.
"""
import uuid
from datetime import date
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gigledger.context import CancellationToken, TenantContext
from gigledger.exceptions import RaceConditionError
from gigledger.messaging import topics
from gigledger.messaging.envelope import MessageEnvelope
from gigledger.messaging.publisher import MessagePublisher
from gigledger.models.ledger import LedgerEntry, LedgerSourceType

logger = structlog.get_logger(__name__)


def default_session_factory() -> Session:
    from gigledger.database import SessionLocal
    return SessionLocal()


def default_publisher() -> MessagePublisher:
    from gigledger.messaging.publisher import CeleryMessagePublisher
    return CeleryMessagePublisher()


class PipelineHandler:
    """
    Base for message handlers.

    Handlers are plain callables of (envelope, cancellation). Each call opens
    its own session and binds the tenant context carried by the envelope.
    """

    name = "handler"

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        publisher: Optional[MessagePublisher] = None,
    ):
        self._session_factory = session_factory or default_session_factory
        self._publisher = publisher

    @property
    def publisher(self) -> MessagePublisher:
        if self._publisher is None:
            self._publisher = default_publisher()
        return self._publisher

    def __call__(self, envelope: MessageEnvelope, cancellation: Optional[CancellationToken] = None):
        return self.handle(envelope, cancellation)

    def handle(self, envelope: MessageEnvelope, cancellation: Optional[CancellationToken] = None):
        ctx = TenantContext.from_envelope(envelope)
        cancellation = cancellation or CancellationToken.none()

        with ctx.bound(handler=self.name, message_type=envelope.type):
            logger.info("handler_started")
            db = self._session_factory()
            try:
                return self.process(db, ctx, envelope.data, cancellation)
            finally:
                db.close()

    def process(self, db: Session, ctx: TenantContext, data: dict, cancellation: CancellationToken):
        raise NotImplementedError


def find_entry(db: Session, tenant_id, source_type: LedgerSourceType, source_id: str) -> Optional[LedgerEntry]:
    return (
        db.query(LedgerEntry)
        .filter(
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.source_type == source_type,
            LedgerEntry.source_id == str(source_id),
        )
        .first()
    )


def new_entry(
    ctx: TenantContext,
    source_type: LedgerSourceType,
    source_id: str,
    entry_date: date,
    posted_by: str = "System",
) -> LedgerEntry:
    return LedgerEntry(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        source_type=source_type,
        source_id=str(source_id),
        entry_date=entry_date,
        posted_by=posted_by,
        correlation_id=ctx.correlation_id,
    )


def commit_posting(db: Session, cancellation: CancellationToken) -> None:
    """
    Commit the handler's single transaction.

    Raises:
        OperationCancelledError: cancelled before commit.
        RaceConditionError: a concurrent delivery inserted the same entry.
    """
    cancellation.raise_if_cancelled()
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise RaceConditionError(f"Concurrent duplicate posting: {e.orig}") from e


def ledger_posted_envelope(ctx: TenantContext, entry: LedgerEntry) -> MessageEnvelope:
    return MessageEnvelope.create(
        type=topics.LEDGER_POSTED_V1,
        tenant_id=ctx.tenant_id,
        correlation_id=ctx.correlation_id,
        data={
            "ledger_entry_id": str(entry.id),
            "source_type": LedgerSourceType(entry.source_type).value,
            "source_id": entry.source_id,
            "entry_date": entry.entry_date.isoformat(),
        },
    )


def publish_ledger_posted(publisher: MessagePublisher, ctx: TenantContext, entry: LedgerEntry) -> None:
    publisher.publish(topics.LEDGER_POSTED, ledger_posted_envelope(ctx, entry))
    logger.info(
        "ledger_entry_posted",
        ledger_entry_id=str(entry.id),
        source_type=LedgerSourceType(entry.source_type).value,
        source_id=entry.source_id,
    )
