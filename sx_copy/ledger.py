"""Ledger: source → derived mappings and own-order exposure.

The ledger is the only place that knows which source orders were copied.
Callers wrap check-copy-record in ``claim(source_hash)`` so that duplicate
deliveries of the same source order serialise on one lock:

    async with ledger.claim(h):
        if ledger.is_already_copied(h):
            return
        result = await engine.copy_order(order, wallet)
        if result.success:
            ledger.record_mapping(result.derived, h, wallet)

Every mutation is a plain synchronous block, so other coroutines never
observe a half-recorded mapping.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from .models import ExposureStats, MappingEntry, Order

log = logging.getLogger(__name__)

COPIED_HISTORY_MAX = 200_000


class Ledger:
    def __init__(self, history_max: int = COPIED_HISTORY_MAX) -> None:
        self._own: dict[str, Order] = {}
        self._mappings: dict[str, MappingEntry] = {}
        self._by_derived: dict[str, str] = {}

        # Sources copied at any point, kept after the mapping is gone
        self._copied: set[str] = set()
        self._copied_order: deque[str] = deque()
        self._history_max = history_max

        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = {}

    # ── Mutual exclusion ──

    @asynccontextmanager
    async def claim(self, source_hash: str) -> AsyncIterator[None]:
        lock = self._locks.get(source_hash)
        if lock is None:
            lock = self._locks[source_hash] = asyncio.Lock()
        self._lock_refs[source_hash] = self._lock_refs.get(source_hash, 0) + 1
        try:
            async with lock:
                yield
        finally:
            refs = self._lock_refs[source_hash] - 1
            if refs:
                self._lock_refs[source_hash] = refs
            else:
                del self._lock_refs[source_hash]
                del self._locks[source_hash]

    # ── Mappings ──

    def _remember(self, source_hash: str) -> None:
        if source_hash in self._copied:
            return
        self._copied.add(source_hash)
        self._copied_order.append(source_hash)
        while len(self._copied_order) > self._history_max:
            self._copied.discard(self._copied_order.popleft())

    def record_mapping(self, derived: Order, source_hash: str, source_wallet: str = "") -> bool:
        """Record source → derived. Returns False for a duplicate source hash."""
        existing = self._mappings.get(source_hash)
        if existing is not None:
            log.debug("mapping for %s already recorded (derived %s, ignored %s)",
                      source_hash, existing.derived_hash, derived.order_hash)
            return False
        self._mappings[source_hash] = MappingEntry(
            source_hash=source_hash,
            derived_hash=derived.order_hash,
            derived=derived,
            source_wallet=source_wallet,
            created_at=time.time(),
        )
        self._by_derived[derived.order_hash] = source_hash
        # The feed may already have reported the derived order
        self._own.setdefault(derived.order_hash, derived)
        self._remember(source_hash)
        return True

    def is_already_copied(self, source_hash: str) -> bool:
        return source_hash in self._mappings or source_hash in self._copied

    def mapping(self, source_hash: str) -> Optional[MappingEntry]:
        return self._mappings.get(source_hash)

    def find_derived(self, source_hash: str) -> Optional[Order]:
        entry = self._mappings.get(source_hash)
        return entry.derived if entry is not None else None

    def source_for(self, derived_hash: str) -> Optional[str]:
        return self._by_derived.get(derived_hash)

    def pop_mapping(self, source_hash: str) -> Optional[MappingEntry]:
        entry = self._mappings.pop(source_hash, None)
        if entry is not None:
            self._by_derived.pop(entry.derived_hash, None)
        return entry

    @property
    def mapping_count(self) -> int:
        return len(self._mappings)

    # ── Own orders ──

    def record_own_instruction(self, order: Order) -> None:
        self._own[order.order_hash] = order
        source_hash = self._by_derived.get(order.order_hash)
        if source_hash is not None:
            entry = self._mappings[source_hash]
            self._mappings[source_hash] = dataclasses.replace(entry, derived=order)

    def remove(self, order_hash: str) -> Optional[Order]:
        """Stop tracking an own order; a mapping onto it goes too."""
        order = self._own.pop(order_hash, None)
        source_hash = self._by_derived.pop(order_hash, None)
        if source_hash is not None:
            self._mappings.pop(source_hash, None)
        return order

    def is_tracked(self, order_hash: str) -> bool:
        return order_hash in self._own

    def tracked_orders(self) -> list[Order]:
        return list(self._own.values())

    def exposure_stats(self) -> ExposureStats:
        total = sum(o.open_exposure for o in self._own.values())
        return ExposureStats(count=len(self._own), total_open_exposure=total,
                             mappings=len(self._mappings))

    def clear(self) -> None:
        self._own.clear()
        self._mappings.clear()
        self._by_derived.clear()
