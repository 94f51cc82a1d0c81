#!/usr/bin/env python3
"""Benchmark position capture over a synthetic scene.

Usage (from the repository root):
    python scripts/bench_capture.py              # default: 3 iterations, 200 observers
    python scripts/bench_capture.py -n 5         # 5 iterations
    python scripts/bench_capture.py -o 1000      # 1000 observers
    python scripts/bench_capture.py --stream     # large-scene streaming path
"""

import argparse
import asyncio
import logging
import random
import statistics
import sys
import time
from pathlib import Path

# Add the repository root to path
SCRIPT_DIR = Path(__file__).resolve().parent
ROOT_DIR = SCRIPT_DIR.parent
sys.path.insert(0, str(ROOT_DIR))

from sightline.geometry import LightSource, Scene, Wall  # noqa: E402
from sightline.log import configure_logging  # noqa: E402
from sightline.services import build_services  # noqa: E402
from sightline.types import (  # noqa: E402
    CoverLevel,
    CoverReading,
    Entity,
    VisibilityLevel,
)


class SceneVisibility:
    """Answers from the scene's own line of sight, with a small delay."""

    enabled = True

    def __init__(self, scene, latency_s):
        self.scene = scene
        self.latency_s = latency_s

    async def visibility(self, observer, subject):
        await asyncio.sleep(self.latency_s)
        if self.scene.line_of_sight(observer, subject):
            return VisibilityLevel.FULL
        return VisibilityLevel.HIDDEN


class SceneCover:
    enabled = True

    def __init__(self, scene, latency_s):
        self.scene = scene
        self.latency_s = latency_s

    async def cover(self, observer, subject):
        await asyncio.sleep(self.latency_s)
        if self.scene.movement_blocked(observer, subject):
            return CoverReading(CoverLevel.STANDARD)
        return CoverReading(CoverLevel.NONE)


def make_scene(num_observers, num_walls, seed):
    rng = random.Random(seed)
    scene = Scene(lights=[LightSource(500, 500, 150, 400)])
    for _ in range(num_walls):
        x, y = rng.uniform(0, 1000), rng.uniform(0, 1000)
        scene.add_wall(Wall(x, y, x + rng.uniform(-80, 80), y + rng.uniform(-80, 80)))
    for i in range(num_observers):
        scene.add_entity(
            Entity(f"obs{i}", rng.uniform(0, 1000), rng.uniform(0, 1000))
        )
    sneaker = Entity("sneaker", 500, 500)
    scene.add_entity(sneaker)
    return scene, sneaker


async def run_once(args, scene, sneaker):
    services = build_services(
        scene,
        visibility_oracle=SceneVisibility(scene, args.latency_ms / 1000),
        cover_oracle=SceneCover(scene, args.latency_ms / 1000),
    )
    observers = [e for e in scene.entities.values() if e.id != sneaker.id]
    if args.stream:
        states = await services.tracker.capture_large_scene(
            sneaker, observers, max_distance=2000, use_streaming=True
        )
    else:
        states = await services.tracker.capture_start_positions(sneaker, observers)
    return len(states)


def main():
    parser = argparse.ArgumentParser(description="Benchmark position capture")
    parser.add_argument(
        "-n",
        "--iterations",
        type=int,
        default=3,
        help="Number of iterations (default: 3)",
    )
    parser.add_argument(
        "-o",
        "--observers",
        type=int,
        default=200,
        help="Number of observers (default: 200)",
    )
    parser.add_argument(
        "-w",
        "--walls",
        type=int,
        default=40,
        help="Number of walls (default: 40)",
    )
    parser.add_argument(
        "--latency-ms",
        type=float,
        default=1.0,
        help="Simulated oracle latency per call (default: 1.0)",
    )
    parser.add_argument("--stream", action="store_true", help="Use streaming")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log at info level"
    )
    args = parser.parse_args()
    configure_logging(logging.INFO if args.verbose else logging.WARNING)

    scene, sneaker = make_scene(args.observers, args.walls, args.seed)
    mode = "streaming" if args.stream else "capture"
    print(
        f"Benchmark: {mode}, {args.observers} observers, {args.walls} walls, "
        f"seed={args.seed}"
    )
    print(f"Iterations: {args.iterations}")
    print()

    # Warmup
    print("Warmup...", end=" ", flush=True)
    asyncio.run(run_once(args, scene, sneaker))
    print("done")

    # Timed runs
    times_ms = []
    for i in range(args.iterations):
        start = time.perf_counter()
        count = asyncio.run(run_once(args, scene, sneaker))
        elapsed_ms = (time.perf_counter() - start) * 1000
        times_ms.append(elapsed_ms)
        print(f"  Run {i + 1}: {elapsed_ms:.1f} ms ({count} states)")

    median = statistics.median(times_ms)
    mean = statistics.mean(times_ms)
    print()
    print(f"Median: {median:.1f} ms")
    print(f"Mean:   {mean:.1f} ms")
    if len(times_ms) > 1:
        stdev = statistics.stdev(times_ms)
        print(f"Stdev:  {stdev:.1f} ms")


if __name__ == "__main__":
    main()
