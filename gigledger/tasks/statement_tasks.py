"""Statement extraction worker."""
from typing import Any, Dict, Optional

from gigledger.celery_app import celery_app
from gigledger.services.statement_extraction import StatementExtractionHandler
from gigledger.tasks import run_handler


@celery_app.task(bind=True, name="gigledger.tasks.statement_tasks.extract_statement")
def extract_statement(self, payload: Dict[str, Any]) -> Optional[str]:
    """Consume ``statement.received``."""
    result = run_handler(self, StatementExtractionHandler(), payload)
    return str(result) if result else None
