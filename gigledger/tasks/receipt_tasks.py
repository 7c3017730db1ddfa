"""Receipt extraction worker."""
from typing import Any, Dict, Optional

from gigledger.celery_app import celery_app
from gigledger.services.receipts import ReceiptExtractionHandler
from gigledger.tasks import run_handler


@celery_app.task(bind=True, name="gigledger.tasks.receipt_tasks.extract_receipt")
def extract_receipt(self, payload: Dict[str, Any]) -> Optional[str]:
    """Consume ``receipt.received``."""
    result = run_handler(self, ReceiptExtractionHandler(), payload)
    return str(result) if result else None
