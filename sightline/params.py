"""Tunable parameters for each sightline component."""

from __future__ import annotations

from dataclasses import dataclass, field, fields


def _pick(cls, d: dict | None):
    """Build ``cls`` from the keys of ``d`` it knows; the rest keep defaults."""
    if not d:
        return cls()
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in d.items() if k in names})


@dataclass
class CacheParams:
    max_entries: int = 1000
    default_ttl_ms: float = 30000
    max_memory_mb: float = 50
    compress_threshold_bytes: int = 8192
    # Fraction of capacity removed per eviction sweep.
    sweep_fraction: float = 0.2
    warm_ttl_ms: float = 60000

    @staticmethod
    def from_dict(d: dict | None) -> CacheParams:
        return _pick(CacheParams, d)


@dataclass
class OptimizerParams:
    max_batch_size: int = 20
    min_batch_size: int = 5
    batch_delay_ms: float = 10
    max_concurrent_operations: int = 5
    timeout_ms: float = 5000
    adaptive_batching: bool = True
    cluster_radius: float = 500
    max_cluster_size: int = 8
    stream_batch_size: int = 50
    stream_max_memory_mb: float = 100

    @staticmethod
    def from_dict(d: dict | None) -> OptimizerParams:
        return _pick(OptimizerParams, d)


@dataclass
class IntegratorParams:
    batch_size: int = 10

    @staticmethod
    def from_dict(d: dict | None) -> IntegratorParams:
        return _pick(IntegratorParams, d)


@dataclass
class TrackerParams:
    sequential_threshold: int = 10
    cache_ttl_ms: float = 30000
    large_scene_max_distance: float = 1000
    streaming_threshold: int = 100

    @staticmethod
    def from_dict(d: dict | None) -> TrackerParams:
        return _pick(TrackerParams, d)


@dataclass
class ApplierParams:
    grace_period_s: float = 30
    auto_correct_threshold: int = 3

    @staticmethod
    def from_dict(d: dict | None) -> ApplierParams:
        return _pick(ApplierParams, d)


@dataclass
class SightlineParams:
    cache: CacheParams = field(default_factory=CacheParams)
    optimizer: OptimizerParams = field(default_factory=OptimizerParams)
    integrator: IntegratorParams = field(default_factory=IntegratorParams)
    tracker: TrackerParams = field(default_factory=TrackerParams)
    applier: ApplierParams = field(default_factory=ApplierParams)

    @staticmethod
    def from_dict(d: dict | None) -> SightlineParams:
        d = d or {}
        return SightlineParams(
            cache=CacheParams.from_dict(d.get("cache")),
            optimizer=OptimizerParams.from_dict(d.get("optimizer")),
            integrator=IntegratorParams.from_dict(d.get("integrator")),
            tracker=TrackerParams.from_dict(d.get("tracker")),
            applier=ApplierParams.from_dict(d.get("applier")),
        )
