"""Batching and concurrency control for many-pair computations.

The optimizer never computes a pair itself. Callers hand it an observer,
a list of subjects and an async ``compute_fn(observer, subject)``; it

1. answers what it can from the cache,
2. splits the misses into batches of the current optimal size,
3. runs batches under a counting semaphore, with a short pause before
   every batch after the first,
4. bounds each batch by a timeout; a batch that times out yields an
   ``ErrorResult`` for every one of its subjects, and a subject whose
   computation raises yields one for itself only,
5. writes every successful result back to the cache.

The returned mapping always holds exactly one entry per distinct valid
subject id, in input order, whatever failed along the way.

Batch size, concurrency and inter-batch delay are nudged by
``adapt_performance_settings`` and always stay inside fixed bounds.

For large scenes, ``optimize_multi_target_processing`` groups subjects
into spatial clusters and ``stream_large_token_processing`` yields results
batch by batch as an async generator that callers pull at their own pace.
"""

from __future__ import annotations

import asyncio
import gc
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import numpy as np

from .cache import StateCache, estimate_size, is_cacheable, make_key
from .errors import BatchTimeoutError
from .params import OptimizerParams
from .types import Entity, ErrorResult, is_valid_entity

logger = logging.getLogger(__name__)

ComputeFn = Callable[[Entity, Entity], Awaitable[Any]]
KeyFn = Callable[[Entity, Entity], str]

MAX_CONCURRENCY = 10
MAX_BATCH_DELAY_MS = 100
# Inputs this small skip spatial clustering.
CLUSTER_MIN_SUBJECTS = 5


@dataclass
class StreamProgress:
    processed: int
    total: int
    percentage: float


@dataclass
class StreamBatch:
    results: dict[str, Any]
    progress: StreamProgress


@dataclass
class BatchMetrics:
    total_batches: int = 0
    average_batch_size: float = 0.0
    average_batch_time_ms: float = 0.0
    adaptive_adjustments: int = 0
    timeouts: int = 0
    failed_subjects: int = 0

    def record(self, size: int, duration_ms: float) -> None:
        n = self.total_batches
        self.average_batch_size = (self.average_batch_size * n + size) / (n + 1)
        self.average_batch_time_ms = (
            self.average_batch_time_ms * n + duration_ms
        ) / (n + 1)
        self.total_batches = n + 1

    def to_dict(self) -> dict:
        return {
            "total_batches": self.total_batches,
            "average_batch_size": self.average_batch_size,
            "average_batch_time_ms": self.average_batch_time_ms,
            "adaptive_adjustments": self.adaptive_adjustments,
            "timeouts": self.timeouts,
            "failed_subjects": self.failed_subjects,
        }


@dataclass
class _Options:
    cache_ttl_ms: float | None
    timeout_ms: float
    force_fresh: bool
    key_fn: KeyFn


def distinct_valid(subjects: list[Entity]) -> list[Entity]:
    """Valid subjects, first occurrence of each id, in input order."""
    seen: set[str] = set()
    out = []
    for s in subjects:
        if is_valid_entity(s) and s.id not in seen:
            seen.add(s.id)
            out.append(s)
    return out


def spatial_clusters(
    subjects: list[Entity], radius: float, max_cluster_size: int
) -> list[list[Entity]]:
    """Greedy nearest-neighbor grouping.

    Takes the first unassigned subject as a seed and adds its nearest
    unassigned neighbors strictly within ``radius`` until the cluster holds
    ``max_cluster_size`` subjects. Every subject lands in exactly one
    cluster.
    """
    n = len(subjects)
    if n == 0:
        return []
    max_cluster_size = max(1, max_cluster_size)
    if n <= max_cluster_size:
        return [list(subjects)]

    pts = np.array([(s.x, s.y) for s in subjects], dtype=np.float64)
    unassigned = np.ones(n, dtype=bool)
    clusters: list[list[Entity]] = []
    for seed in range(n):
        if not unassigned[seed]:
            continue
        unassigned[seed] = False
        dist = np.hypot(pts[:, 0] - pts[seed, 0], pts[:, 1] - pts[seed, 1])
        candidates = np.flatnonzero(unassigned & (dist < radius))
        nearest = candidates[np.argsort(dist[candidates], kind="stable")]
        members = nearest[: max_cluster_size - 1]
        unassigned[members] = False
        clusters.append([subjects[seed]] + [subjects[i] for i in members])
    return clusters


class BatchOptimizer:
    def __init__(
        self, cache: StateCache, params: OptimizerParams | None = None
    ) -> None:
        self.cache = cache
        self.params = params or OptimizerParams()
        self.optimal_batch_size = self.params.max_batch_size
        self.max_concurrent_operations = self.params.max_concurrent_operations
        self.batch_delay_ms = self.params.batch_delay_ms
        self.reset_metrics()

    def reset_metrics(self) -> None:
        self.total_operations = 0
        self.total_subjects = 0
        self.total_time_ms = 0.0
        self.peak_operation_time_ms = 0.0
        self.memory_reclaims = 0
        self.batch_metrics = BatchMetrics()

    def _options(
        self,
        cache_ttl_ms: float | None,
        timeout_ms: float | None,
        force_fresh: bool,
        key_fn: KeyFn | None,
    ) -> _Options:
        return _Options(
            cache_ttl_ms=cache_ttl_ms,
            timeout_ms=self.params.timeout_ms if timeout_ms is None else timeout_ms,
            force_fresh=force_fresh,
            key_fn=key_fn or make_key,
        )

    def _batch_size_for(self, n: int) -> int:
        size = (
            self.optimal_batch_size
            if self.params.adaptive_batching
            else self.params.max_batch_size
        )
        return max(1, min(size, n))

    # -- core path ----------------------------------------------------------

    async def optimize_position_calculation(
        self,
        observer: Entity,
        subjects: list[Entity],
        compute_fn: ComputeFn,
        *,
        cache_ttl_ms: float | None = None,
        timeout_ms: float | None = None,
        force_fresh: bool = False,
        key_fn: KeyFn | None = None,
    ) -> dict[str, Any]:
        """Result per distinct valid subject id, cached where possible."""
        opts = self._options(cache_ttl_ms, timeout_ms, force_fresh, key_fn)
        sem = asyncio.Semaphore(self.max_concurrent_operations)
        return await self._calculate(observer, subjects, compute_fn, opts, sem)

    async def _calculate(
        self,
        observer: Entity,
        subjects: list[Entity],
        compute_fn: ComputeFn,
        opts: _Options,
        sem: asyncio.Semaphore,
    ) -> dict[str, Any]:
        started = time.perf_counter()
        valid = distinct_valid(subjects)
        if not valid:
            return {}

        results: dict[str, Any] = {}
        misses = []
        for subject in valid:
            if not opts.force_fresh:
                cached = self.cache.get_by_key(opts.key_fn(observer, subject))
                if cached is not None:
                    results[subject.id] = cached
                    continue
            misses.append(subject)

        if misses:
            results.update(
                await self._process_batches(observer, misses, compute_fn, opts, sem)
            )

        self._record_operation((time.perf_counter() - started) * 1000, len(valid))
        return {s.id: results[s.id] for s in valid}

    async def _process_batches(
        self,
        observer: Entity,
        subjects: list[Entity],
        compute_fn: ComputeFn,
        opts: _Options,
        sem: asyncio.Semaphore,
    ) -> dict[str, Any]:
        size = self._batch_size_for(len(subjects))
        batches = [subjects[i : i + size] for i in range(0, len(subjects), size)]
        delay_s = self.batch_delay_ms / 1000.0

        async def run(index: int, batch: list[Entity]) -> dict[str, Any]:
            async with sem:
                if index > 0 and delay_s > 0:
                    await asyncio.sleep(delay_s)
                started = time.perf_counter()
                out = await self._run_batch(observer, batch, compute_fn, opts)
                for subject in batch:
                    value = out[subject.id]
                    if is_cacheable(value):
                        self.cache.put(
                            opts.key_fn(observer, subject),
                            value,
                            ttl_ms=opts.cache_ttl_ms,
                            entity_ids=(observer.id, subject.id),
                        )
                self.batch_metrics.record(
                    len(batch), (time.perf_counter() - started) * 1000
                )
                return out

        logger.debug(
            "processing %d subjects in %d batches of <= %d",
            len(subjects),
            len(batches),
            size,
        )
        merged: dict[str, Any] = {}
        for out in await asyncio.gather(
            *(run(i, b) for i, b in enumerate(batches))
        ):
            merged.update(out)
        return merged

    async def _run_batch(
        self,
        observer: Entity,
        batch: list[Entity],
        compute_fn: ComputeFn,
        opts: _Options,
    ) -> dict[str, Any]:
        async def one(subject: Entity) -> tuple[str, Any]:
            try:
                return subject.id, await compute_fn(observer, subject)
            except Exception as exc:
                logger.warning("calculation failed for %s: %s", subject.id, exc)
                self.batch_metrics.failed_subjects += 1
                return subject.id, ErrorResult.from_exception(exc)

        try:
            pairs = await asyncio.wait_for(
                asyncio.gather(*(one(s) for s in batch)),
                timeout=opts.timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            err = BatchTimeoutError(len(batch), opts.timeout_ms)
            logger.warning("%s", err)
            self.batch_metrics.timeouts += 1
            self.batch_metrics.failed_subjects += len(batch)
            failed = ErrorResult.from_exception(err)
            return {s.id: failed for s in batch}
        return dict(pairs)

    # -- large scenes -------------------------------------------------------

    async def optimize_multi_target_processing(
        self,
        observer: Entity,
        subjects: list[Entity],
        compute_fn: ComputeFn,
        *,
        cache_ttl_ms: float | None = None,
        timeout_ms: float | None = None,
        force_fresh: bool = False,
        key_fn: KeyFn | None = None,
    ) -> dict[str, Any]:
        """Like ``optimize_position_calculation`` but one run per cluster.

        Cluster starts are staggered by the inter-batch delay and all
        clusters share one concurrency ceiling.
        """
        opts = self._options(cache_ttl_ms, timeout_ms, force_fresh, key_fn)
        sem = asyncio.Semaphore(self.max_concurrent_operations)
        valid = distinct_valid(subjects)
        if len(valid) <= CLUSTER_MIN_SUBJECTS:
            return await self._calculate(observer, valid, compute_fn, opts, sem)

        started = time.perf_counter()
        clusters = spatial_clusters(
            valid, self.params.cluster_radius, self.params.max_cluster_size
        )
        delay_s = self.batch_delay_ms / 1000.0

        async def run(index: int, cluster: list[Entity]) -> dict[str, Any]:
            if index > 0 and delay_s > 0:
                await asyncio.sleep(delay_s * index)
            return await self._calculate(observer, cluster, compute_fn, opts, sem)

        merged: dict[str, Any] = {}
        for out in await asyncio.gather(
            *(run(i, c) for i, c in enumerate(clusters))
        ):
            merged.update(out)
        logger.info(
            "processed %d subjects in %d clusters in %.1f ms",
            len(valid),
            len(clusters),
            (time.perf_counter() - started) * 1000,
        )
        return {s.id: merged[s.id] for s in valid}

    async def stream_large_token_processing(
        self,
        observer: Entity,
        subjects: list[Entity],
        compute_fn: ComputeFn,
        *,
        stream_batch_size: int | None = None,
        max_memory_mb: float | None = None,
        cache_ttl_ms: float | None = None,
        timeout_ms: float | None = None,
        force_fresh: bool = False,
        key_fn: KeyFn | None = None,
    ) -> AsyncIterator[StreamBatch]:
        """Yield results one stream batch at a time.

        Nothing is computed until the caller pulls; a caller that stops
        pulling simply abandons the rest. ``progress.percentage`` strictly
        increases and reaches 100 on the last batch. Once the running
        estimate of yielded result memory passes ``max_memory_mb`` a
        garbage collection pass is requested and the estimate restarts.
        """
        size = max(1, stream_batch_size or self.params.stream_batch_size)
        ceiling = (
            max_memory_mb
            if max_memory_mb is not None
            else self.params.stream_max_memory_mb
        ) * 1024 * 1024
        opts = self._options(cache_ttl_ms, timeout_ms, force_fresh, key_fn)
        valid = distinct_valid(subjects)
        total = len(valid)
        processed = 0
        estimate = 0

        for i in range(0, total, size):
            chunk = valid[i : i + size]
            sem = asyncio.Semaphore(self.max_concurrent_operations)
            results = await self._calculate(observer, chunk, compute_fn, opts, sem)
            processed += len(chunk)
            estimate += sum(estimate_size(v) for v in results.values())
            if estimate > ceiling:
                gc.collect()
                self.memory_reclaims += 1
                logger.debug("stream memory estimate passed ceiling, reclaimed")
                estimate = 0
            yield StreamBatch(
                results=results,
                progress=StreamProgress(
                    processed=processed,
                    total=total,
                    percentage=processed * 100.0 / total,
                ),
            )
            await asyncio.sleep(0)

    # -- tuning and metrics -------------------------------------------------

    def adapt_performance_settings(
        self,
        avg_op_time_ms: float | None = None,
        memory_usage_ratio: float | None = None,
        system_load_ratio: float | None = None,
    ) -> None:
        p = self.params
        if avg_op_time_ms is not None:
            if avg_op_time_ms > 100:
                self.optimal_batch_size = max(
                    p.min_batch_size, self.optimal_batch_size - 2
                )
            elif avg_op_time_ms < 20:
                self.optimal_batch_size = min(
                    p.max_batch_size, self.optimal_batch_size + 1
                )
        if system_load_ratio is not None:
            if system_load_ratio > 0.8:
                self.max_concurrent_operations = max(
                    1, self.max_concurrent_operations - 1
                )
            elif system_load_ratio < 0.4:
                self.max_concurrent_operations = min(
                    MAX_CONCURRENCY, self.max_concurrent_operations + 1
                )
        if memory_usage_ratio is not None:
            if memory_usage_ratio > 0.8:
                self.batch_delay_ms = min(MAX_BATCH_DELAY_MS, self.batch_delay_ms + 5)
            else:
                self.batch_delay_ms = max(1, self.batch_delay_ms - 2)
        self.batch_metrics.adaptive_adjustments += 1

    def _record_operation(self, duration_ms: float, subject_count: int) -> None:
        self.total_operations += 1
        self.total_subjects += subject_count
        self.total_time_ms += duration_ms
        self.peak_operation_time_ms = max(self.peak_operation_time_ms, duration_ms)

    def get_metrics(self) -> dict:
        ops = self.total_operations
        per_second = (
            self.total_subjects / (self.total_time_ms / 1000.0)
            if self.total_time_ms > 0
            else 0.0
        )
        return {
            "total_operations": ops,
            "average_operation_time_ms": self.total_time_ms / ops if ops else 0.0,
            "peak_operation_time_ms": self.peak_operation_time_ms,
            "average_tokens_per_second": per_second,
            "batch_metrics": self.batch_metrics.to_dict(),
            "memory_reclaims": self.memory_reclaims,
            "settings": {
                "optimal_batch_size": self.optimal_batch_size,
                "max_concurrent_operations": self.max_concurrent_operations,
                "batch_delay_ms": self.batch_delay_ms,
            },
        }
