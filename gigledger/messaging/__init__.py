"""Message envelope, topics and publishers."""
from gigledger.messaging.envelope import MessageEnvelope
from gigledger.messaging.publisher import (
    CeleryMessagePublisher,
    InMemoryMessagePublisher,
    MessagePublisher,
)
from gigledger.messaging import topics

__all__ = [
    "MessageEnvelope",
    "MessagePublisher",
    "CeleryMessagePublisher",
    "InMemoryMessagePublisher",
    "topics",
]
