"""
Ledger workers: posting and snapshot recomputation.
"""
from typing import Any, Dict, List, Optional

from gigledger.celery_app import celery_app
from gigledger.services.posting import (
    ReceiptPostingHandler,
    ReconciliationPostingHandler,
    StatementPostingHandler,
)
from gigledger.services.snapshots import SnapshotHandler
from gigledger.tasks import run_handler


@celery_app.task(bind=True, name="gigledger.tasks.ledger_tasks.post_statement")
def post_statement(self, payload: Dict[str, Any]) -> Optional[str]:
    """Consume ``statement.parsed``."""
    result = run_handler(self, StatementPostingHandler(), payload)
    return str(result) if result else None


@celery_app.task(bind=True, name="gigledger.tasks.ledger_tasks.post_receipt")
def post_receipt(self, payload: Dict[str, Any]) -> Optional[str]:
    """Consume ``receipt.extracted``."""
    result = run_handler(self, ReceiptPostingHandler(), payload)
    return str(result) if result else None


@celery_app.task(bind=True, name="gigledger.tasks.ledger_tasks.post_reconciliation")
def post_reconciliation(self, payload: Dict[str, Any]) -> Optional[str]:
    """Consume ``reconciliation.completed``."""
    result = run_handler(self, ReconciliationPostingHandler(), payload)
    return str(result) if result else None


@celery_app.task(bind=True, name="gigledger.tasks.ledger_tasks.compute_snapshots")
def compute_snapshots(self, payload: Dict[str, Any]) -> List[str]:
    """Consume ``ledger.posted``."""
    buckets = run_handler(self, SnapshotHandler(), payload)
    return [b.dedupe_key for b in buckets]
