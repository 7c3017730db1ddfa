"""
Celery consumers, one per topic.

Each task rebuilds the MessageEnvelope and calls the plain handler; only
TransientInfraError is retried.
"""
from typing import Any, Callable, Dict

import structlog

from gigledger.exceptions import TransientInfraError
from gigledger.messaging.envelope import MessageEnvelope

logger = structlog.get_logger(__name__)


def run_handler(task, handler: Callable, payload: Dict[str, Any]) -> Any:
    """Run a handler for a task delivery, retrying transient failures."""
    envelope = MessageEnvelope.model_validate(payload)
    try:
        return handler(envelope)
    except TransientInfraError as e:
        logger.warning(
            "task_retry_scheduled",
            task=task.name,
            message_id=envelope.message_id,
            retries=task.request.retries,
            error=str(e),
        )
        raise task.retry(exc=e)
