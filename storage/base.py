"""
Target store interface and in-memory implementation.

This module provides:
- TargetStore: persistence contract used by the scheduler
- InMemoryTargetStore: dictionary-backed store with an owner index
"""

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional, Set

import structlog

from monitor.models import MonitoredTarget

logger = structlog.get_logger(__name__)

# Fields written back after every check
STATE_FIELDS = (
    "is_paused",
    "last_fingerprint",
    "last_checked_at",
    "last_new_listing_at",
    "new_listings_count",
    "total_checks",
    "error_count",
    "consecutive_failures",
)


class TargetStore:
    """Persistence for target configuration and last-known state."""

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def load_targets(self) -> List[MonitoredTarget]:
        """Return every stored target, enabled or not."""
        raise NotImplementedError

    async def save_target_state(self, target: MonitoredTarget) -> None:
        """Persist the durable state fields of a target."""
        raise NotImplementedError

    async def upsert_target(self, target: MonitoredTarget) -> None:
        """Insert a target or replace its configuration."""
        raise NotImplementedError

    async def get_target(self, target_id: str) -> Optional[MonitoredTarget]:
        raise NotImplementedError

    async def targets_for_owner(self, owner_id: str) -> List[MonitoredTarget]:
        raise NotImplementedError


class InMemoryTargetStore(TargetStore):
    """Keeps targets in process memory. Returned objects are copies."""

    def __init__(self, targets: Optional[List[MonitoredTarget]] = None):
        self._targets: Dict[str, MonitoredTarget] = {}
        self._owner_index: Dict[str, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self.save_calls = 0
        for target in targets or []:
            self._put(target)

    def _put(self, target: MonitoredTarget) -> None:
        previous = self._targets.get(target.id)
        if previous is not None and previous.owner_id:
            self._owner_index[previous.owner_id].discard(target.id)
        self._targets[target.id] = target.model_copy(deep=True)
        if target.owner_id:
            self._owner_index[target.owner_id].add(target.id)

    async def load_targets(self) -> List[MonitoredTarget]:
        async with self._lock:
            return [target.model_copy(deep=True) for target in self._targets.values()]

    async def save_target_state(self, target: MonitoredTarget) -> None:
        async with self._lock:
            self.save_calls += 1
            stored = self._targets.get(target.id)
            if stored is None:
                self._put(target)
                return
            for field in STATE_FIELDS:
                setattr(stored, field, getattr(target, field))

    async def upsert_target(self, target: MonitoredTarget) -> None:
        async with self._lock:
            stored = self._targets.get(target.id)
            if stored is not None:
                target = target.model_copy(update={field: getattr(stored, field) for field in STATE_FIELDS})
            self._put(target)

    async def get_target(self, target_id: str) -> Optional[MonitoredTarget]:
        async with self._lock:
            target = self._targets.get(target_id)
            return target.model_copy(deep=True) if target is not None else None

    async def targets_for_owner(self, owner_id: str) -> List[MonitoredTarget]:
        async with self._lock:
            return [
                self._targets[target_id].model_copy(deep=True)
                for target_id in sorted(self._owner_index.get(owner_id, ()))
            ]
