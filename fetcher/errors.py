"""
Error taxonomy for content fetching.

This module provides:
- ScrapingError base class carrying classification and recoverability
- Concrete errors for network, timeout, HTTP status, bot detection,
  extraction and configuration failures
- classify_exception() mapping library exceptions into the taxonomy
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorClassification(str, Enum):
    """Classification attached to every fetch failure."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    BOT_DETECTED = "bot_detected"
    EXTRACTION = "extraction"
    FATAL_CONFIG = "fatal_config"
    UNKNOWN = "unknown"


class ScrapingError(Exception):
    """Base class for all fetch-layer failures."""

    classification = ErrorClassification.UNKNOWN
    recoverable = False

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.status_code = status_code
        if recoverable is not None:
            self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classification": self.classification.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "status_code": self.status_code,
            "context": self.context,
        }


class NetworkError(ScrapingError):
    """Transient transport failure (DNS, connection reset, refused)."""
    classification = ErrorClassification.NETWORK
    recoverable = True


class FetchTimeoutError(ScrapingError):
    """Request or page load did not finish in time."""
    classification = ErrorClassification.TIMEOUT
    recoverable = True


class HttpStatusError(ScrapingError):
    """Unexpected HTTP status. Only 5xx and 429 are worth retrying."""
    classification = ErrorClassification.HTTP_STATUS

    def __init__(self, message: str, status_code: int, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            context=context,
            status_code=status_code,
            recoverable=status_code == 429 or 500 <= status_code < 600,
        )


class BotDetectedError(ScrapingError):
    """The site served a block, challenge or CAPTCHA page."""
    classification = ErrorClassification.BOT_DETECTED
    recoverable = False


class ExtractionError(ScrapingError):
    """Markup arrived but the selector produced no usable content."""
    classification = ErrorClassification.EXTRACTION
    recoverable = False


class FatalConfigError(ScrapingError):
    """Target configuration is unusable (bad URL or selector)."""
    classification = ErrorClassification.FATAL_CONFIG
    recoverable = False


BOT_BLOCK_STATUS_CODES = frozenset({401, 403, 451})


def error_for_status(status_code: int, url: str) -> ScrapingError:
    """
    Build the error matching an HTTP status code.

    Args:
        status_code: Response status code (>= 400)
        url: Requested URL

    Returns:
        BotDetectedError for block statuses, HttpStatusError otherwise
    """
    context = {"url": url, "status_code": status_code}
    if status_code in BOT_BLOCK_STATUS_CODES:
        return BotDetectedError(f"Blocked with HTTP {status_code}", context=context, status_code=status_code)
    return HttpStatusError(f"HTTP {status_code}", status_code=status_code, context=context)


def classify_exception(exc: BaseException, url: Optional[str] = None) -> ScrapingError:
    """
    Map an arbitrary exception into the fetch error taxonomy.

    Args:
        exc: Exception raised while fetching
        url: URL being fetched, added to the error context

    Returns:
        A ScrapingError instance (the input itself when already classified)
    """
    if isinstance(exc, ScrapingError):
        return exc

    context = {"url": url, "exception_type": type(exc).__name__} if url else {"exception_type": type(exc).__name__}
    message = str(exc) or type(exc).__name__

    if isinstance(exc, httpx.TimeoutException) or isinstance(exc, asyncio.TimeoutError):
        return FetchTimeoutError(message, context=context)
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, url or str(exc.request.url))
    if isinstance(exc, httpx.InvalidURL) or isinstance(exc, httpx.UnsupportedProtocol):
        return FatalConfigError(message, context=context)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(message, context=context)

    # Playwright errors, matched by name
    name = type(exc).__name__
    if name == "TimeoutError" and type(exc).__module__.startswith("playwright"):
        return FetchTimeoutError(message, context=context)
    if name in ("Error", "TargetClosedError") and type(exc).__module__.startswith("playwright"):
        if "timeout" in message.lower():
            return FetchTimeoutError(message, context=context)
        return NetworkError(message, context=context)

    if isinstance(exc, (ConnectionError, OSError)):
        return NetworkError(message, context=context)

    return ScrapingError(message, context=context)
