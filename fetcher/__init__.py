"""
Fetcher package for listing pages.

This package contains:
- Escalating fetch chain (HTTP, DOM rendering, stealth browser)
- Content hashing
- Retry policy and error taxonomy
- Shared browser pool
"""

__version__ = "1.0.0"
