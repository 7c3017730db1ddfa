"""
Pytest configuration and fixtures.
"""
import io
import uuid
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import gigledger.models  # noqa: F401
from gigledger.api.dependencies import get_object_store, get_publisher
from gigledger.context import TenantContext
from gigledger.database import Base, create_db_engine, get_db, make_session_factory
from gigledger.main import app
from gigledger.messaging import topics
from gigledger.messaging.publisher import InMemoryMessagePublisher
from gigledger.models.statement import (
    Evidence,
    PeriodType,
    Statement,
    StatementLine,
    StatementStatus,
)
from gigledger.services.document_analyzer import AnalyzedDocument, DocumentAnalyzer
from gigledger.services.extractors import CsvStatementExtractor
from gigledger.services.posting import (
    ReceiptPostingHandler,
    ReconciliationPostingHandler,
    StatementPostingHandler,
)
from gigledger.services.receipts import ReceiptAnalyzer, ReceiptExtractionHandler
from gigledger.services.snapshots import SnapshotHandler, period_range
from gigledger.services.statement_extraction import StatementExtractionHandler
from gigledger.storage import InMemoryObjectStore


engine = create_db_engine("sqlite:///:memory:")
TestingSessionLocal = make_session_factory(engine)


class StaticTextAnalyzer(DocumentAnalyzer):
    """Analyzer that returns canned text for any content type."""

    model_version = "static-text"

    def __init__(self, text: str = "", tables: List = None):
        self.text = text
        self.tables = tables or []
        self.calls = 0

    def can_handle(self, content_type: str) -> bool:
        return True

    def analyze(self, stream) -> AnalyzedDocument:
        self.calls += 1
        stream.read()
        return AnalyzedDocument(raw_text=self.text, tables=self.tables, page_count=1)


@pytest.fixture
def text_analyzer():
    """Factory for analyzers returning canned text."""
    return StaticTextAnalyzer


@pytest.fixture(scope="function")
def db_session()-> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session: Session):
    """Handlers open and close their own session; hand them the test session."""
    return lambda: db_session


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def ctx(tenant_id: uuid.UUID) -> TenantContext:
    return TenantContext.create(tenant_id, correlation_id="test-correlation", actor="tester")


@pytest.fixture
def publisher() -> InMemoryMessagePublisher:
    return InMemoryMessagePublisher()


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def client(
    db_session: Session,
    publisher: InMemoryMessagePublisher,
    store: InMemoryObjectStore,
) -> Generator[TestClient, None, None]:
    """Create a test client with database, publisher and storage overrides."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_object_store] = lambda: store

    # No context manager: startup would create tables in the configured database
    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset the shared line classifier between tests."""
    import gigledger.services.classification as classification_module

    classification_module._classifier_instance = None
    yield
    classification_module._classifier_instance = None


LYFT_MONTHLY_CSV = (
    "Date,Description,Amount,Tax,Type,Currency\n"
    "2024-03-31,Gross fares,1000.00,,Income,CAD\n"
    "2024-03-31,Platform fees,150.00,,Fee,CAD\n"
    "2024-03-31,GST/HST received from passengers,,50.00,TaxCollected,CAD\n"
    "2024-03-31,GST/HST paid on Lyft fees,,10.00,Itc,CAD\n"
    "2024-03-31,Online kilometres,412.5,,Metric,\n"
)


@pytest.fixture
def lyft_monthly_csv() -> bytes:
    """A Lyft March 2024 statement export."""
    return LYFT_MONTHLY_CSV.encode("utf-8")


RECEIPT_TEXT = (
    "Canadian Tire\n"
    "2024-05-14\n"
    "Wiper blades 50.00\n"
    "GST 3.50\n"
    "Total 53.50\n"
)


@pytest.fixture
def receipt_text() -> str:
    return RECEIPT_TEXT


def stream_of(content: bytes) -> io.BytesIO:
    return io.BytesIO(content)


@pytest.fixture
def make_statement(db_session: Session, tenant_id: uuid.UUID):
    """Factory for persisted statements with optional lines."""

    def _make(
        provider: str = "Uber",
        period_type: PeriodType = PeriodType.MONTHLY,
        period_key: str = "2024-03",
        status: StatementStatus = StatementStatus.SUBMITTED,
        lines=(),
        tenant: uuid.UUID = None,
    ) -> Statement:
        start, end = period_range(period_type, period_key)
        owner = tenant or tenant_id
        statement = Statement(
            tenant_id=owner,
            provider=provider,
            period_type=period_type,
            period_key=period_key,
            period_start=start,
            period_end=end,
            status=status,
            currency_code="CAD",
        )
        for fields in lines:
            values = dict(fields)
            values.setdefault("line_date", end)
            values.setdefault("currency_code", "CAD")
            values.setdefault("currency_evidence", Evidence.EXTRACTED)
            values.setdefault("classification_evidence", Evidence.EXTRACTED)
            statement.lines.append(StatementLine(tenant_id=owner, **values))
        db_session.add(statement)
        db_session.commit()
        return statement

    return _make


@pytest.fixture
def pipeline(session_factory, publisher, store):
    """Run every queued message through its handler until the queue is empty."""
    handlers = {
        topics.STATEMENT_RECEIVED: StatementExtractionHandler(
            session_factory, publisher, store, extractors=[CsvStatementExtractor()]
        ),
        topics.STATEMENT_PARSED: StatementPostingHandler(session_factory, publisher),
        topics.RECEIPT_RECEIVED: ReceiptExtractionHandler(
            session_factory, publisher, store,
            analyzer=ReceiptAnalyzer(analyzers=[StaticTextAnalyzer(RECEIPT_TEXT)]),
        ),
        topics.RECEIPT_EXTRACTED: ReceiptPostingHandler(session_factory, publisher),
        topics.LEDGER_POSTED: SnapshotHandler(session_factory, publisher),
        topics.RECONCILIATION_COMPLETED: ReconciliationPostingHandler(session_factory, publisher),
    }

    def run() -> List[str]:
        handled = []
        while publisher.messages:
            for topic, envelope in publisher.drain():
                handlers[topic].handle(envelope)
                handled.append(topic)
        return handled

    run.handlers = handlers
    return run


@pytest.fixture
def holding_pipeline(pipeline, session_factory, publisher, store):
    """Pipeline whose receipt extraction reads no fields, so every receipt is held."""
    pipeline.handlers[topics.RECEIPT_RECEIVED] = ReceiptExtractionHandler(
        session_factory, publisher, store, analyzer=ReceiptAnalyzer(analyzers=[StaticTextAnalyzer("")]),
    )
    return pipeline
