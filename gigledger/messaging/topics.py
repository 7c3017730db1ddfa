"""Queue names and event types exchanged by the pipeline."""

STATEMENT_RECEIVED = "q.statement.received"
STATEMENT_PARSED = "q.statement.parsed"
RECEIPT_RECEIVED = "q.receipt.received"
RECEIPT_EXTRACTED = "q.receipt.extracted"
LEDGER_POSTED = "q.ledger.posted"
RECONCILIATION_COMPLETED = "q.reconciliation.completed"

STATEMENT_RECEIVED_V1 = "statement.received.v1"
STATEMENT_PARSED_V1 = "statement.parsed.v1"
RECEIPT_RECEIVED_V1 = "receipt.received.v1"
RECEIPT_EXTRACTED_V1 = "receipt.extracted.v1"
LEDGER_POSTED_V1 = "ledger.posted.v1"
RECONCILIATION_COMPLETED_V1 = "reconciliation.completed.v1"

ALL_TOPICS = (
    STATEMENT_RECEIVED,
    STATEMENT_PARSED,
    RECEIPT_RECEIVED,
    RECEIPT_EXTRACTED,
    LEDGER_POSTED,
    RECONCILIATION_COMPLETED,
)
