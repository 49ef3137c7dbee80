"""
bench.py
Latency measurement for the softmax algorithms.

The harness only measures. Whether the online algorithm beats the two-pass
one depends on the column size and the machine, so nothing here asserts an
ordering; it checks that every algorithm returns the same distribution and
reports how long each took.
"""
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np

from .column import Column
from .memory import AllocationTracker

ALGORITHMS = {
    "two_pass": Column.softmax_two_pass,
    "two_pass_unrolled": Column.softmax_two_pass_unrolled,
    "online": Column.softmax_online,
}


@dataclass
class BenchSpec:
    sizes: List[int] = field(default_factory=lambda: [256, 1024, 4096])
    num_warmup: int = 3
    num_runs: int = 10
    seed: int = 42

    @staticmethod
    def quick():
        """A few small sizes, enough to smoke-test the harness."""
        return BenchSpec(sizes=[4, 64, 256], num_warmup=1, num_runs=3)

    @staticmethod
    def default():
        """
        Sizes from cache-resident to well past L2:
        - 256 floats = 1 KB
        - 65536 floats = 256 KB
        - 262144 floats = 1 MB
        """
        return BenchSpec(sizes=[256, 1024, 4096, 16384, 65536, 262144], num_warmup=3, num_runs=10)


@dataclass
class Timing:
    mean_ms: float
    min_ms: float
    max_ms: float
    p50_ms: float
    num_runs: int


@dataclass
class BenchResult:
    algorithm: str
    size: int
    timing: Timing

    @property
    def throughput_melems(self) -> float:
        """Million elements per second, from the mean latency."""
        if self.timing.mean_ms == 0:
            return float("inf")
        return (self.size / 1e6) / (self.timing.mean_ms / 1000)


_sink = [None]


def keep_alive(result) -> None:
    """Hold on to the latest result so the call that produced it counts as used."""
    _sink[0] = result


def time_fn(fn: Callable, num_warmup: int = 3, num_runs: int = 10) -> Timing:
    """
    Time repeated calls of a no-argument function.

    Each call's result is passed to keep_alive and, if it is a Column,
    released straight away so the runs don't pile up storage.
    """
    if num_runs <= 0:
        raise ValueError(f"num_runs must be positive, got {num_runs}")

    for _ in range(num_warmup):
        _finish(fn())

    times = []
    for _ in range(num_runs):
        t_start = time.perf_counter()
        result = fn()
        t_end = time.perf_counter()
        times.append(t_end - t_start)
        _finish(result)

    times = np.array(times) * 1000
    return Timing(
        mean_ms=float(np.mean(times)),
        min_ms=float(np.min(times)),
        max_ms=float(np.max(times)),
        p50_ms=float(np.percentile(times, 50)),
        num_runs=num_runs,
    )


def _finish(result) -> None:
    keep_alive(result)
    if isinstance(result, Column):
        result.release()


def benchmark_softmax(spec: Optional[BenchSpec] = None,
                      tracker: Optional[AllocationTracker] = None) -> List[BenchResult]:
    """
    Time every algorithm in ALGORITHMS on a random column of each size.

    Raises:
        ValueError: if the algorithms disagree on some input
    """
    spec = spec or BenchSpec()
    tracker = tracker or AllocationTracker("bench")
    rng = np.random.default_rng(spec.seed)
    results = []

    for size in spec.sizes:
        print(f"\nBenchmarking softmax: N={size}")

        with Column.random(size, rng=rng, tracker=tracker, label=f"x[{size}]") as x:
            with x.softmax_two_pass() as ref:
                for name, algorithm in ALGORITHMS.items():
                    with algorithm(x) as out:
                        if not out.approx_equal(ref):
                            raise ValueError(
                                f"{name} disagrees with two_pass at N={size} "
                                f"(max diff {out.max_abs_diff(ref):.2e})"
                            )

            for name, algorithm in ALGORITHMS.items():
                print(f"  Testing {name}...")
                timing = time_fn(lambda: algorithm(x), spec.num_warmup, spec.num_runs)
                results.append(BenchResult(name, size, timing))

    return results


def report(results: List[BenchResult]) -> None:
    """Print one row per (algorithm, size)."""
    print(f"{'='*60}")
    print("Softmax latency")
    print(f"{'='*60}")
    print(f"{'algorithm':<20}{'N':>9}{'mean ms':>10}{'min ms':>10}{'max ms':>10}{'Melem/s':>10}")
    for r in results:
        t = r.timing
        print(f"{r.algorithm:<20}{r.size:>9,}{t.mean_ms:>10.3f}{t.min_ms:>10.3f}{t.max_ms:>10.3f}"
              f"{r.throughput_melems:>10.2f}")


if __name__ == "__main__":
    results = benchmark_softmax(BenchSpec.default())
    print()
    report(results)
