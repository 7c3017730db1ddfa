"""Models package."""
from gigledger.models.audit import AuditAction, AuditEvent
from gigledger.models.file_object import FileObject, FileSource
from gigledger.models.job import JobStatus, JobType, ProcessingJob
from gigledger.models.ledger import LedgerEntry, LedgerLine, LedgerSourceLink, LedgerSourceType
from gigledger.models.receipt import Receipt, ReceiptExtraction, ReceiptStatus
from gigledger.models.reconciliation import (
    ReconciliationRun,
    ReconciliationStatus,
    ReconciliationVariance,
)
from gigledger.models.snapshot import LedgerSnapshot, SnapshotDetail
from gigledger.models.statement import (
    Evidence,
    LineType,
    PeriodType,
    Statement,
    StatementLine,
    StatementStatus,
)

__all__ = [
    "AuditAction", "AuditEvent",
    "FileObject", "FileSource",
    "JobStatus", "JobType", "ProcessingJob",
    "LedgerEntry", "LedgerLine", "LedgerSourceLink", "LedgerSourceType",
    "Receipt", "ReceiptExtraction", "ReceiptStatus",
    "ReconciliationRun", "ReconciliationStatus", "ReconciliationVariance",
    "LedgerSnapshot", "SnapshotDetail",
    "Evidence", "LineType", "PeriodType", "Statement", "StatementLine", "StatementStatus",
]
