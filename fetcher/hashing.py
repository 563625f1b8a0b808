"""
Content hashing for change detection.

This module provides:
- Listing extraction from raw markup with CSS selectors
- Removal of non-content elements and volatile tokens
- Deterministic SHA-256 fingerprints of the extracted items
"""

import hashlib
import re
from typing import List, Optional, Union

import soupsieve
import structlog
from bs4 import BeautifulSoup

from .errors import ExtractionError, FatalConfigError

logger = structlog.get_logger(__name__)

NON_CONTENT_TAGS = ("script", "style", "noscript", "template", "svg", "iframe")

ITEM_SEPARATOR = "|"

# Order matters: full timestamps before bare dates and clock times
VOLATILE_PATTERNS = [
    re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?"),
    re.compile(r"\d{4}年\d{1,2}月\d{1,2}日"),
    re.compile(r"(?<!\d)\d{4}[/.-]\d{1,2}[/.-]\d{1,2}(?!\d)"),
    re.compile(r"(?<!\d)\d{1,2}:\d{2}(?::\d{2})?(?!\d)"),
    re.compile(r"\b(?:sid|sessionid|session|token|csrf|csrf_token|csrftoken|_t)=[^&\s\"']+", re.IGNORECASE),
    re.compile(r"\b[A-Fa-f0-9]{24,}\b"),
    re.compile(r"[A-Za-z0-9+/_-]{32,}={0,2}"),
]

WHITESPACE = re.compile(r"\s+")


class ContentHasher:
    """Turns raw markup into a stable fingerprint of its listing items."""

    def __init__(self, max_items: Optional[int] = None, strip_volatile: bool = True):
        """
        Initialize the hasher.

        Args:
            max_items: Only hash the first N items when set
            strip_volatile: Remove timestamps and session tokens before hashing
        """
        self.max_items = max_items
        self.strip_volatile = strip_volatile
        self.logger = logger.bind(component="content_hasher")

    def extract(self, raw_content: Union[bytes, str], selector: Optional[str] = None) -> List[str]:
        """
        Extract normalized item texts from markup.

        Args:
            raw_content: Page markup
            selector: CSS selector for listing items, whole body when None

        Returns:
            Non-empty normalized item texts in document order

        Raises:
            ExtractionError: The selector matched nothing or only empty nodes
            FatalConfigError: The selector is not valid CSS
        """
        soup = BeautifulSoup(raw_content, "html.parser")

        for tag in soup(list(NON_CONTENT_TAGS)):
            tag.decompose()

        if selector:
            self.validate_selector(selector)
            nodes = soup.select(selector)
        else:
            body = soup.body or soup
            nodes = [body]

        if not nodes:
            raise ExtractionError(
                f"Selector matched no elements: {selector}",
                context={"selector": selector},
            )

        items = []
        for node in nodes:
            text = self.normalize(node.get_text(" ", strip=True))
            if text:
                items.append(text)

        if not items:
            raise ExtractionError(
                "Matched elements contain no text",
                context={"selector": selector, "matched": len(nodes)},
            )

        if self.max_items is not None:
            items = items[:self.max_items]

        return items

    @staticmethod
    def validate_selector(selector: Optional[str]) -> None:
        """
        Check that a selector compiles.

        Raises:
            FatalConfigError: The selector is not valid CSS
        """
        if not selector:
            return
        try:
            soupsieve.compile(selector)
        except soupsieve.SelectorSyntaxError as e:
            raise FatalConfigError(
                f"Invalid CSS selector: {selector}",
                context={"selector": selector, "error": str(e)},
            ) from e

    def normalize(self, text: str) -> str:
        """Collapse whitespace and drop volatile tokens."""
        if self.strip_volatile:
            for pattern in VOLATILE_PATTERNS:
                text = pattern.sub(" ", text)
        return WHITESPACE.sub(" ", text).strip()

    @staticmethod
    def hash_items(items: List[str]) -> str:
        """SHA-256 hex digest of items joined by the separator."""
        joined = ITEM_SEPARATOR.join(items)
        return hashlib.sha256(joined.encode("utf-8")).hexdigest()

    def fingerprint(self, raw_content: Union[bytes, str], selector: Optional[str] = None) -> str:
        """
        Generate the fingerprint for a page.

        Args:
            raw_content: Page markup
            selector: CSS selector for listing items

        Returns:
            SHA-256 hex digest
        """
        items = self.extract(raw_content, selector)
        content_hash = self.hash_items(items)

        self.logger.debug(
            "Generated content fingerprint",
            selector=selector,
            items=len(items),
            hash=content_hash[:16] + "..."
        )

        return content_hash
