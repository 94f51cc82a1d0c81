"""Position-sensitive cache of per-pair states.

Keys embed both entities' rounded positions
(``observer@x,y:subject@x,y``), so an entry silently stops matching as
soon as either party moves; ``invalidate`` additionally drops every entry
that mentions an entity, which callers do whenever they move one.

Capacity is bounded twice, by entry count and by estimated memory, and
both bounds are checked on every insert. When either is exceeded the cache
first drops expired entries, then evicts by ``(importance tier, last
access)`` until it is back to roughly 80% of the violated budget, so a
burst of inserts does not trigger an eviction on every call.

The importance tier of a ``PositionState`` is fixed at insertion from its
visibility and cover: concealed and covered states are the expensive,
interesting ones and are evicted last. The tier also scales the state's
TTL, from half the base for plain visible states to four times it for
concealed ones.

Each entry remembers the ids of its observer and subject, which feed the
entity index. Callers with their own key scheme pass the ids to ``put``;
otherwise they are parsed from a pair key.

Every mutating method is synchronous. Under asyncio this means a method
runs to completion before any other coroutine can observe the cache, so
concurrent captures can share one instance without locking.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable

from .params import CacheParams
from .rules import TIER_RANK, derive_importance
from .types import Entity, ErrorResult, ImportanceTier, PositionState

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^(?P<observer>.+)@-?\d+,-?\d+:(?P<subject>.+)@-?\d+,-?\d+$")

# Serialized size used when a payload cannot be serialized.
_UNSERIALIZABLE_SIZE = 1024

TIER_TTL_MULTIPLIER: dict[ImportanceTier, float] = {
    ImportanceTier.CRITICAL: 4.0,
    ImportanceTier.HIGH: 2.0,
    ImportanceTier.NORMAL: 1.0,
    ImportanceTier.LOW: 0.5,
}


def _pos(entity: Entity) -> str:
    return f"{round(entity.x)},{round(entity.y)}"


def make_key(observer: Entity, subject: Entity) -> str:
    return f"{observer.id}@{_pos(observer)}:{subject.id}@{_pos(subject)}"


def parse_key(key: str) -> tuple[str, str] | None:
    """(observer_id, subject_id) for a pair key, or None."""
    m = _KEY_RE.match(key)
    if m is None:
        return None
    return m.group("observer"), m.group("subject")


def _to_jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def estimate_size(value: Any) -> int:
    """Rough byte size: two bytes per character of the JSON form."""
    try:
        return len(json.dumps(_to_jsonable(value))) * 2
    except (TypeError, ValueError):
        return _UNSERIALIZABLE_SIZE


def _round_floats(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, 2) if math.isfinite(value) else value
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k in ("timestamp", "captured_at") and isinstance(v, (int, float)):
                out[k] = float(math.floor(v))
            else:
                out[k] = _round_floats(v)
        return out
    if isinstance(value, list):
        return [_round_floats(v) for v in value]
    return value


def is_cacheable(value: Any) -> bool:
    """Failed results and failed captures are never cached."""
    if value is None or isinstance(value, ErrorResult):
        return False
    if isinstance(value, PositionState) and value.is_error_state:
        return False
    return True


def compress(value: Any) -> Any:
    """Drop precision callers do not need, keeping the value's shape.

    Floats are rounded to two decimals and timestamps floored to the
    second. Values of other types are returned unchanged.
    """
    if isinstance(value, PositionState):
        return replace(
            value,
            distance=round(value.distance, 2),
            captured_at=float(math.floor(value.captured_at)),
        )
    if isinstance(value, (dict, list)):
        return _round_floats(value)
    return value


@dataclass
class CacheEntry:
    key: str
    value: Any
    inserted_at: float  # ms
    ttl_ms: float
    importance_tier: ImportanceTier
    size_estimate_bytes: int
    access_count: int = 0
    last_access: float = 0.0
    # Tie-break for entries touched within the same clock reading.
    access_seq: int = 0
    compressed: bool = False
    observer_id: str | None = None
    subject_id: str | None = None

    def entity_ids(self) -> tuple[str, ...]:
        return tuple(i for i in (self.observer_id, self.subject_id) if i is not None)

    def is_expired(self, now_ms: float) -> bool:
        return now_ms - self.inserted_at > self.ttl_ms

    def eviction_key(self) -> tuple[int, float, int]:
        return (TIER_RANK[self.importance_tier], self.last_access, self.access_seq)


class StateCache:
    def __init__(
        self,
        params: CacheParams | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.params = params or CacheParams()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._by_entity: dict[str, set[str]] = {}
        self._memory_bytes = 0
        self._seq = 0
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.invalidations = 0
        self.compressions = 0

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    @property
    def max_memory_bytes(self) -> float:
        return self.params.max_memory_mb * 1024 * 1024

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    # -- reads --------------------------------------------------------------

    def get(self, observer: Entity, subject: Entity) -> Any:
        return self.get_by_key(make_key(observer, subject))

    def get_by_key(self, key: str) -> Any:
        """Cached value for ``key``, or None on a miss.

        Expired and unreadable entries are removed and reported as misses.
        """
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        try:
            expired = entry.is_expired(self._now_ms())
        except (AttributeError, TypeError) as exc:
            logger.warning("dropping corrupted cache entry %s: %s", key, exc)
            self._remove(key)
            self.misses += 1
            return None
        if expired:
            self._remove(key)
            self.evictions += 1
            self.misses += 1
            return None
        entry.access_count += 1
        entry.last_access = self._now_ms()
        entry.access_seq = self._next_seq()
        self.hits += 1
        return entry.value

    def peek(self, key: str) -> CacheEntry | None:
        """Entry for ``key`` without touching stats or recency."""
        return self._entries.get(key)

    # -- writes -------------------------------------------------------------

    def put(
        self,
        key: str,
        value: Any,
        ttl_ms: float | None = None,
        importance_tier: ImportanceTier | None = None,
        entity_ids: tuple[str, str] | None = None,
    ) -> None:
        """Insert ``value`` under ``key``.

        The tier of a ``PositionState`` is always derived from the state
        and multiplies its TTL; ``importance_tier`` applies to other
        payloads only. ``entity_ids`` is the (observer, subject) pair the
        entry is invalidated by and defaults to the ids in a pair key.
        Payloads larger than the whole memory budget are not cached.
        """
        if value is None:
            return
        base_ttl = self.params.default_ttl_ms if ttl_ms is None else ttl_ms
        if isinstance(value, PositionState):
            tier = derive_importance(value)
            ttl = base_ttl * TIER_TTL_MULTIPLIER[tier]
        else:
            tier = importance_tier or ImportanceTier.NORMAL
            ttl = base_ttl

        size = estimate_size(value)
        compressed = False
        if size > self.params.compress_threshold_bytes:
            value = compress(value)
            size = estimate_size(value)
            compressed = True
            self.compressions += 1

        if key in self._entries:
            self._remove(key)
        if size > self.max_memory_bytes:
            logger.warning(
                "not caching %s: %d bytes exceeds the %.2f MB budget",
                key,
                size,
                self.params.max_memory_mb,
            )
            return
        self._ensure_capacity(size)

        if entity_ids is None:
            entity_ids = parse_key(key)
        observer_id, subject_id = entity_ids or (None, None)
        now = self._now_ms()
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            ttl_ms=ttl,
            importance_tier=tier,
            size_estimate_bytes=size,
            last_access=now,
            access_seq=self._next_seq(),
            compressed=compressed,
            observer_id=observer_id,
            subject_id=subject_id,
        )
        self._entries[key] = entry
        self._memory_bytes += size
        for entity_id in entry.entity_ids():
            self._by_entity.setdefault(entity_id, set()).add(key)

    def put_state(
        self,
        observer: Entity,
        subject: Entity,
        state: PositionState,
        ttl_ms: float | None = None,
    ) -> None:
        self.put(
            make_key(observer, subject),
            state,
            ttl_ms=ttl_ms,
            entity_ids=(observer.id, subject.id),
        )

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl_ms: float | None = None,
    ) -> Any:
        cached = self.get_by_key(key)
        if cached is not None:
            return cached
        value = await compute()
        if is_cacheable(value):
            self.put(key, value, ttl_ms=ttl_ms)
        return value

    async def warm(
        self,
        pairs: Iterable[tuple[Entity, Entity]],
        compute: Callable[[Entity, Entity], Awaitable[Any]],
        batch_size: int = 10,
        ttl_ms: float | None = None,
    ) -> int:
        """Pre-compute pairs not already cached. Returns how many were added."""
        pairs = list(pairs)
        ttl = self.params.warm_ttl_ms if ttl_ms is None else ttl_ms
        started = time.perf_counter()

        async def warm_one(observer: Entity, subject: Entity) -> bool:
            key = make_key(observer, subject)
            if self.peek(key) is not None and self.get_by_key(key) is not None:
                return False
            try:
                value = await compute(observer, subject)
            except Exception as exc:
                logger.warning(
                    "cache warming failed for %s -> %s: %s",
                    observer.id,
                    subject.id,
                    exc,
                )
                return False
            if not is_cacheable(value):
                return False
            self.put(key, value, ttl_ms=ttl, entity_ids=(observer.id, subject.id))
            return True

        warmed = 0
        for i in range(0, len(pairs), batch_size):
            batch = pairs[i : i + batch_size]
            results = await asyncio.gather(*(warm_one(o, s) for o, s in batch))
            warmed += sum(results)
            if i + batch_size < len(pairs):
                await asyncio.sleep(0.005)

        logger.info(
            "cache warming completed: %d entries in %.0f ms",
            warmed,
            (time.perf_counter() - started) * 1000,
        )
        return warmed

    # -- removal ------------------------------------------------------------

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        self._memory_bytes -= getattr(entry, "size_estimate_bytes", 0)
        ids = entry.entity_ids() if isinstance(entry, CacheEntry) else ()
        for entity_id in ids:
            keys = self._by_entity.get(entity_id)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_entity[entity_id]
        return entry

    def invalidate(self, entity_id: str) -> int:
        """Drop every entry with ``entity_id`` as observer or subject."""
        keys = list(self._by_entity.get(entity_id, ()))
        for key in keys:
            self._remove(key)
        self.invalidations += len(keys)
        return len(keys)

    def batch_invalidate(self, entity_ids: Iterable[str]) -> int:
        keys: set[str] = set()
        for entity_id in set(entity_ids):
            keys.update(self._by_entity.get(entity_id, ()))
        for key in keys:
            self._remove(key)
        self.invalidations += len(keys)
        return len(keys)

    def clear(self) -> None:
        self.evictions += len(self._entries)
        self._entries.clear()
        self._by_entity.clear()
        self._memory_bytes = 0

    def purge_expired(self) -> int:
        now = self._now_ms()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            self._remove(key)
        self.evictions += len(expired)
        if len(expired) > 10:
            logger.debug("purged %d expired cache entries", len(expired))
        return len(expired)

    def _eviction_order(self) -> list[CacheEntry]:
        return sorted(self._entries.values(), key=CacheEntry.eviction_key)

    def optimize(self, target_size: int | None = None) -> int:
        """Evict lowest-priority entries until at most ``target_size`` remain."""
        if target_size is None:
            target_size = int(self.params.max_entries * 0.8)
        excess = len(self._entries) - max(0, target_size)
        if excess <= 0:
            return 0
        for entry in self._eviction_order()[:excess]:
            self._remove(entry.key)
        self.evictions += excess
        return excess

    def memory_aware_cleanup(self, target_mb: float | None = None) -> int:
        """Evict until estimated memory is at most ``target_mb``.

        Defaults to 70% of the memory budget.
        """
        if target_mb is None:
            target_mb = self.params.max_memory_mb * 0.7
        target_bytes = target_mb * 1024 * 1024
        return self._evict_to_memory(target_bytes)

    def _evict_to_memory(self, target_bytes: float) -> int:
        if self._memory_bytes <= target_bytes:
            return 0
        freed_from = self._memory_bytes
        removed = 0
        for entry in self._eviction_order():
            if self._memory_bytes <= target_bytes:
                break
            self._remove(entry.key)
            removed += 1
        self.evictions += removed
        logger.debug(
            "memory cleanup removed %d entries, freed %.2f MB",
            removed,
            (freed_from - self._memory_bytes) / 1024 / 1024,
        )
        return removed

    def _ensure_capacity(self, incoming_bytes: int) -> None:
        max_entries = self.params.max_entries
        over_count = len(self._entries) >= max_entries
        over_memory = self._memory_bytes + incoming_bytes > self.max_memory_bytes
        if not (over_count or over_memory):
            return

        self.purge_expired()
        keep = 1.0 - self.params.sweep_fraction
        if len(self._entries) >= max_entries:
            self.optimize(min(max_entries - 1, int(max_entries * keep)))
        if self._memory_bytes + incoming_bytes > self.max_memory_bytes:
            self._evict_to_memory(
                max(0.0, self.max_memory_bytes * keep - incoming_bytes)
            )

    # -- stats --------------------------------------------------------------

    def get_stats(self) -> dict:
        lookups = self.hits + self.misses
        hit_rate = (self.hits / lookups) * 100 if lookups else 0.0
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(hit_rate, 2),
            "total_entries": len(self._entries),
            "memory_usage_mb": round(self._memory_bytes / 1024 / 1024, 2),
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "compressions": self.compressions,
        }
