"""API Schemas - Response models for the audit read API.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error response body."""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable message")
    details: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = Field(default=None, description="Request ID for tracing")


class CountResponse(BaseModel):
    count: int = Field(..., ge=0, description="Number of matching events")


class HealthResponse(BaseModel):
    status: str = Field(..., description="healthy or unhealthy")
    adapter: str = Field(..., description="Storage adapter name")
    pending: int = Field(default=0, ge=0, description="Events queued but not yet persisted")
