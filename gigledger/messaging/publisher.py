"""
Event publishers.

Handlers publish only after their transaction commits. The Celery publisher
hands the envelope to the consumer task registered for the topic; the
in-memory publisher records messages so tests can drive the pipeline step by
step.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Tuple

import structlog

from gigledger.messaging import topics
from gigledger.messaging.envelope import MessageEnvelope

logger = structlog.get_logger(__name__)


class MessagePublisher(ABC):
    """Publishes envelopes to named topics."""

    @abstractmethod
    def publish(self, topic: str, envelope: MessageEnvelope) -> None:
        """Publish an envelope. Delivery is at-least-once."""


class InMemoryMessagePublisher(MessagePublisher):
    """Collects published messages in order."""

    def __init__(self):
        self.messages: List[Tuple[str, MessageEnvelope]] = []

    def publish(self, topic: str, envelope: MessageEnvelope) -> None:
        logger.debug("message_recorded", topic=topic, type=envelope.type, message_id=envelope.message_id)
        self.messages.append((topic, envelope))

    def published(self, topic: str) -> List[MessageEnvelope]:
        return [env for t, env in self.messages if t == topic]

    def drain(self) -> List[Tuple[str, MessageEnvelope]]:
        """Return and forget everything recorded so far."""
        drained, self.messages = self.messages, []
        return drained

    def clear(self) -> None:
        self.messages.clear()


# Consumer task for each topic
TOPIC_TASKS: Dict[str, str] = {
    topics.STATEMENT_RECEIVED: "gigledger.tasks.statement_tasks.extract_statement",
    topics.STATEMENT_PARSED: "gigledger.tasks.ledger_tasks.post_statement",
    topics.RECEIPT_RECEIVED: "gigledger.tasks.receipt_tasks.extract_receipt",
    topics.RECEIPT_EXTRACTED: "gigledger.tasks.ledger_tasks.post_receipt",
    topics.LEDGER_POSTED: "gigledger.tasks.ledger_tasks.compute_snapshots",
    topics.RECONCILIATION_COMPLETED: "gigledger.tasks.ledger_tasks.post_reconciliation",
}


class CeleryMessagePublisher(MessagePublisher):
    """Dispatches envelopes to Celery consumer tasks, one queue per topic."""

    def __init__(self, celery_app=None):
        if celery_app is None:
            from gigledger.celery_app import celery_app as default_app
            celery_app = default_app
        self._celery = celery_app

    def publish(self, topic: str, envelope: MessageEnvelope) -> None:
        task_name = TOPIC_TASKS.get(topic)
        if task_name is None:
            raise ValueError(f"No consumer registered for topic '{topic}'")

        self._celery.send_task(task_name, args=[envelope.to_json_dict()], queue=topic)
        logger.info(
            "message_published",
            topic=topic,
            type=envelope.type,
            message_id=envelope.message_id,
            tenant_id=str(envelope.tenant_id),
        )
