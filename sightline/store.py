"""In-memory persistent store and the keys sightline writes to it.

Every value describes how an observer relates to a subject, so all keys
live on the observer entity and embed the subject id.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

logger = logging.getLogger(__name__)


def visibility_key(subject_id: str) -> str:
    return f"visibility-to-{subject_id}"


def cover_key(subject_id: str) -> str:
    return f"cover-to-{subject_id}"


def override_key(subject_id: str) -> str:
    return f"avs-override-to-{subject_id}"


def cover_override_key(subject_id: str) -> str:
    return f"cover-override-to-{subject_id}"


class InMemoryStore:
    """Per-entity key/value store with async access.

    Reads return copies so callers cannot mutate stored values in place.
    ``latency_s`` inserts a suspension point on every call, which tests use
    to interleave concurrent operations.
    """

    def __init__(self, latency_s: float = 0.0) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self.latency_s = latency_s
        self.reads = 0
        self.writes = 0

    async def get(self, entity_id: str, key: str) -> Any:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        self.reads += 1
        return copy.deepcopy(self._data.get(entity_id, {}).get(key))

    async def set(self, entity_id: str, key: str, value: Any) -> None:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        self.writes += 1
        if value is None:
            flags = self._data.get(entity_id)
            if flags is not None:
                flags.pop(key, None)
                if not flags:
                    del self._data[entity_id]
            return
        self._data.setdefault(entity_id, {})[key] = copy.deepcopy(value)
        logger.debug("set %s/%s", entity_id, key)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._data)
