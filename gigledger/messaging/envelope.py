"""
Message envelope shared by every pipeline event.

Envelope = {message_id, type, occurred_at, tenant_id, correlation_id, data}.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator


class MessageEnvelope(BaseModel):
    """Transport-neutral event wrapper."""

    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tenant_id: uuid.UUID
    correlation_id: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", "correlation_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v

    @classmethod
    def create(
        cls,
        type: str,
        tenant_id: Union[str, uuid.UUID],
        correlation_id: Optional[str],
        data: Dict[str, Any],
    ) -> "MessageEnvelope":
        return cls(
            type=type,
            tenant_id=tenant_id,
            correlation_id=correlation_id or uuid.uuid4().hex,
            data=data,
        )

    def to_json_dict(self) -> Dict[str, Any]:
        """JSON-safe dict for the wire."""
        return self.model_dump(mode="json")
