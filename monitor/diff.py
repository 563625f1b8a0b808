"""
Fingerprint comparison for change detection.
"""

from typing import Optional

import structlog

from fetcher.models import FetchMethod
from monitor.models import Confidence, DiffResult

logger = structlog.get_logger(__name__)

LOW_CONFIDENCE_METHODS = frozenset({FetchMethod.BROWSER_FALLBACK})


class DiffDetector:
    """Compares the stored fingerprint of a target with a fresh one."""

    def __init__(self, logger=None):
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="diff_detector")

    def compare(
        self,
        previous: Optional[str],
        current: str,
        method: FetchMethod = FetchMethod.HTTP,
    ) -> DiffResult:
        """
        Compare two fingerprints.

        Args:
            previous: Last known fingerprint, None before the first check
            current: Freshly computed fingerprint
            method: Strategy that produced `current`

        Returns:
            DiffResult; a missing baseline never counts as new content
        """
        if previous is None:
            result = DiffResult(
                has_new_content=False,
                confidence=Confidence.HIGH,
                previous_fingerprint=None,
                new_fingerprint=current,
                method=method,
            )
            self.logger.debug("Baseline fingerprint recorded", hash=current[:16] + "...")
            return result

        has_new_content = previous != current
        if method in LOW_CONFIDENCE_METHODS:
            confidence = Confidence.LOW
        elif has_new_content:
            confidence = Confidence.VERY_HIGH
        else:
            confidence = Confidence.HIGH

        return DiffResult(
            has_new_content=has_new_content,
            confidence=confidence,
            previous_fingerprint=previous,
            new_fingerprint=current,
            method=method,
        )
