"""Wire one cache, integrator, optimizer, tracker and applier together."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from .applier import TransactionalApplier
from .cache import StateCache
from .integrator import DualSourceIntegrator
from .interfaces import CoverOracle, Geometry, PersistentStore, VisibilityOracle
from .optimizer import BatchOptimizer
from .params import SightlineParams
from .store import InMemoryStore
from .tracker import SnapshotTracker


@dataclass
class Services:
    cache: StateCache
    integrator: DualSourceIntegrator
    optimizer: BatchOptimizer
    tracker: SnapshotTracker
    applier: TransactionalApplier
    store: PersistentStore


def build_services(
    geometry: Geometry,
    store: PersistentStore | None = None,
    visibility_oracle: VisibilityOracle | None = None,
    cover_oracle: CoverOracle | None = None,
    params: SightlineParams | None = None,
    entity_exists: Callable[[str], bool] | None = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    """Build a service graph sharing a single cache and store.

    ``entity_exists`` defaults to the geometry's ``has_entity`` when it has
    one.
    """
    params = params or SightlineParams()
    store = store if store is not None else InMemoryStore()
    if entity_exists is None:
        entity_exists = getattr(geometry, "has_entity", None)

    cache = StateCache(params.cache)
    integrator = DualSourceIntegrator(
        geometry=geometry,
        store=store,
        visibility_oracle=visibility_oracle,
        cover_oracle=cover_oracle,
        params=params.integrator,
    )
    optimizer = BatchOptimizer(cache, params.optimizer)
    tracker = SnapshotTracker(
        integrator=integrator,
        optimizer=optimizer,
        cache=cache,
        geometry=geometry,
        params=params.tracker,
        clock=clock,
    )
    applier = TransactionalApplier(
        store=store,
        entity_exists=entity_exists,
        params=params.applier,
        clock=clock,
    )
    return Services(
        cache=cache,
        integrator=integrator,
        optimizer=optimizer,
        tracker=tracker,
        applier=applier,
        store=store,
    )
