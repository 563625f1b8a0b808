"""
Monitor package for change detection scheduling.

This package contains:
- Per-target scheduler with bounded concurrency
- Fingerprint diffing
- Execution statistics
- Notification sinks
- Circuit breaker and operating hours
"""

__version__ = "1.0.0"
