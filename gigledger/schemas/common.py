"""
Shared response models.
"""
from typing import Any, Dict

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Body returned for every handled error."""

    error: bool = Field(True, description="Always true")
    error_code: str = Field(..., description="GL-xxx error code")
    message: str = Field(..., description="Human-readable message")
    details: Dict[str, Any] = Field(default_factory=dict, description="Additional context")
    retryable: bool = Field(False, description="Whether the client may retry")
