"""
Per-call tenant context and cancellation.

Every handler receives a TenantContext built from the message envelope it is
processing. The context is bound into structlog's contextvars only for the
duration of that call, so concurrent handlers never see each other's tenant.
"""
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

import structlog

from gigledger.exceptions import OperationCancelledError


def _coerce_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


@dataclass(frozen=True)
class TenantContext:
    """Identity of the tenant and trace of the message being handled."""

    tenant_id: uuid.UUID
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    message_id: Optional[str] = None
    actor: str = "system"

    @classmethod
    def create(
        cls,
        tenant_id: Union[str, uuid.UUID],
        correlation_id: Optional[str] = None,
        message_id: Optional[str] = None,
        actor: str = "system",
    ) -> "TenantContext":
        return cls(
            tenant_id=_coerce_uuid(tenant_id),
            correlation_id=correlation_id or uuid.uuid4().hex,
            message_id=message_id,
            actor=actor,
        )

    @classmethod
    def from_envelope(cls, envelope) -> "TenantContext":
        """Build the context carried by a message envelope."""
        return cls.create(
            tenant_id=envelope.tenant_id,
            correlation_id=envelope.correlation_id,
            message_id=envelope.message_id,
        )

    @contextmanager
    def bound(self, **extra) -> Iterator["TenantContext"]:
        """Bind tenant/correlation/message ids into log records for this call."""
        with structlog.contextvars.bound_contextvars(
            tenant_id=str(self.tenant_id),
            correlation_id=self.correlation_id,
            message_id=self.message_id,
            **extra,
        ):
            yield self


class CancellationToken:
    """Cooperative cancellation flag checked by handlers before committing."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError()

    @classmethod
    def none(cls) -> "CancellationToken":
        """A token that is never cancelled."""
        return cls()
