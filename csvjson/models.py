from __future__ import annotations

from typing import List, Optional
from pydantic import BaseModel, Field


class ConversionMetadata(BaseModel):
    rows_processed: int = 0
    processing_time_ms: int = 0
    columns: List[str] = Field(default_factory=list)
    timestamp: str = Field(examples=["2024-01-01T00:00:00.000Z"])
    has_header: bool = True


class ConversionResponse(BaseModel):
    """Shape of a fully streamed document; used for the OpenAPI schema only."""

    data: List[dict] = Field(default_factory=list)
    metadata: ConversionMetadata


class ErrorResponse(BaseModel):
    error: str
    code: str
    details: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "healthy"
