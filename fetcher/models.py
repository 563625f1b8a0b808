"""
Pydantic models for fetch results.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorClassification


class FetchMethod(str, Enum):
    """Strategy that produced (or failed to produce) a fingerprint."""
    HTTP = "http"
    DOM_FALLBACK = "dom-fallback"
    BROWSER_FALLBACK = "browser-fallback"


class ScrapeOutcome(BaseModel):
    """
    Result of fetching and hashing one target.
    Produced once per fetch and never mutated.
    """
    model_config = ConfigDict(frozen=True)

    method: FetchMethod = Field(..., description="Strategy that ran last")
    success: bool = Field(..., description="Whether a fingerprint was produced")
    fingerprint: Optional[str] = Field(None, description="SHA-256 hex digest of the extracted items")
    item_count: int = Field(default=0, ge=0, description="Number of extracted items")
    error: Optional[ErrorClassification] = Field(None, description="Failure classification")
    error_message: Optional[str] = Field(None, description="Failure detail")
    attempts: int = Field(default=0, ge=0, description="Attempts across all strategies")
    elapsed_seconds: float = Field(default=0.0, ge=0, description="Wall time for the whole chain")
    memory_mb: Optional[float] = Field(None, description="Resident memory after the fetch")

    @classmethod
    def failed(
        cls,
        method: FetchMethod,
        error: ErrorClassification,
        error_message: str,
        attempts: int = 0,
        elapsed_seconds: float = 0.0,
        memory_mb: Optional[float] = None,
    ) -> "ScrapeOutcome":
        return cls(
            method=method,
            success=False,
            error=error,
            error_message=error_message,
            attempts=attempts,
            elapsed_seconds=elapsed_seconds,
            memory_mb=memory_mb,
        )
