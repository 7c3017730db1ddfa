"""Idempotent ledger posting handlers."""
from gigledger.services.posting.base import PipelineHandler
from gigledger.services.posting.manual import ManualLineInput, post_adjustment, post_manual_entry
from gigledger.services.posting.receipt import ReceiptPostingHandler
from gigledger.services.posting.reconciliation import ReconciliationPostingHandler
from gigledger.services.posting.statement import StatementPostingHandler

__all__ = [
    "PipelineHandler",
    "ManualLineInput",
    "post_adjustment",
    "post_manual_entry",
    "ReceiptPostingHandler",
    "ReconciliationPostingHandler",
    "StatementPostingHandler",
]
