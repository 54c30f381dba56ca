"""
Per-route latency and error accounting.

Percentiles use the exact nearest-rank definition: the p-th percentile of n
sorted samples is the sample at rank ceil(p / 100 * n). Every sample is kept
for the lifetime of the run, so results are exact and stable across a run.
"""

import math
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

from shadowload.routes import Route

AGGREGATE = "all"
DEFAULT_RAW_SAMPLES = 10_000


@dataclass(frozen=True)
class RequestOutcome:
    route: Route
    latency_ms: float
    status: int
    success: bool
    error: Optional[str] = None


def nearest_rank(sorted_values, p: float) -> float:
    """Nearest-rank percentile over an already sorted sequence."""
    if not 0 < p <= 100:
        raise ValueError(f"Percentile must be in (0, 100], got {p}")
    if not sorted_values:
        raise ValueError("Cannot compute a percentile of zero samples")
    rank = math.ceil(p * len(sorted_values) / 100)
    return sorted_values[max(rank, 1) - 1]


@dataclass
class MetricSnapshot:
    """Point-in-time copy of one route's (or the aggregate) distribution."""

    name: str
    count: int = 0
    error_count: int = 0
    latencies: list = field(default_factory=list)
    status_counts: dict = field(default_factory=dict)
    error_counts: dict = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return self.count - self.error_count

    @property
    def error_rate(self) -> float:
        return self.error_count / self.count if self.count else 0.0

    @property
    def mean(self) -> float:
        return sum(self.latencies) / len(self.latencies) if self.latencies else 0.0

    @property
    def max(self) -> float:
        return self.latencies[-1] if self.latencies else 0.0

    def percentile(self, p: float) -> float:
        return nearest_rank(self.latencies, p)

    @property
    def p50(self) -> float:
        return self.percentile(50) if self.latencies else 0.0

    @property
    def p95(self) -> float:
        return self.percentile(95) if self.latencies else 0.0

    @property
    def p99(self) -> float:
        return self.percentile(99) if self.latencies else 0.0

    @classmethod
    def merge(cls, name: str, snapshots: Iterable["MetricSnapshot"]) -> "MetricSnapshot":
        merged = cls(name=name)
        statuses: Counter = Counter()
        errors: Counter = Counter()
        latencies = []
        for snap in snapshots:
            merged.count += snap.count
            merged.error_count += snap.error_count
            latencies.extend(snap.latencies)
            statuses.update(snap.status_counts)
            errors.update(snap.error_counts)
        latencies.sort()
        merged.latencies = latencies
        merged.status_counts = dict(statuses)
        merged.error_counts = dict(errors)
        return merged

    def to_dict(self) -> dict:
        data = {
            "count": self.count,
            "errors": self.error_count,
            "error_rate": round(self.error_rate, 6),
            "status_counts": {str(k): v for k, v in sorted(self.status_counts.items())},
            "error_counts": dict(self.error_counts),
        }
        if self.latencies:
            data.update({
                "mean_ms": round(self.mean, 3),
                "p50_ms": round(self.p50, 3),
                "p95_ms": round(self.p95, 3),
                "p99_ms": round(self.p99, 3),
                "max_ms": round(self.max, 3),
            })
        return data


class _RouteStats:
    """Mutable accumulator for one route. Only touched under its own lock."""

    __slots__ = ("lock", "count", "error_count", "latencies", "sorted_upto",
                 "status_counts", "error_counts")

    def __init__(self):
        self.lock = threading.Lock()
        self.count = 0
        self.error_count = 0
        self.latencies: list[float] = []
        self.sorted_upto = 0
        self.status_counts: Counter = Counter()
        self.error_counts: Counter = Counter()

    def sorted_latencies(self) -> list:
        # Sorting is amortised: the list stays sorted between queries and
        # only the tail appended since the last query needs merging.
        if self.sorted_upto != len(self.latencies):
            self.latencies.sort()
            self.sorted_upto = len(self.latencies)
        return self.latencies


class MetricRecorder:
    """
    Thread-safe accumulator of latency samples and counters.

    Each route has its own short-held lock, so writers on different routes
    never contend and a snapshot of one route is always internally
    consistent. Snapshots of different routes are taken independently.
    """

    def __init__(self, routes: Iterable[Route] = tuple(Route),
                 raw_samples: int = DEFAULT_RAW_SAMPLES):
        self._stats = {route: _RouteStats() for route in routes}
        if not self._stats:
            raise ValueError("MetricRecorder needs at least one route")
        self._recent_lock = threading.Lock()
        self._recent: deque = deque(maxlen=raw_samples) if raw_samples > 0 else None
        self.start_time: float = 0.0
        self.end_time: float = 0.0

    @property
    def routes(self) -> tuple:
        return tuple(self._stats)

    def _route_stats(self, route: Route) -> _RouteStats:
        if not isinstance(route, Route):
            raise ValueError(f"Expected a Route, got {route!r}")
        try:
            return self._stats[route]
        except (KeyError, TypeError):
            raise ValueError(f"Unknown route for this recorder: {route!r}") from None

    def record(self, route: Route, latency_ms: float, success: bool,
               status: int = 0, error: Optional[str] = None):
        if not isinstance(latency_ms, (int, float)) or not math.isfinite(latency_ms) or latency_ms < 0:
            raise ValueError(f"Latency must be a finite number >= 0, got {latency_ms!r}")
        stats = self._route_stats(route)
        with stats.lock:
            stats.count += 1
            stats.latencies.append(float(latency_ms))
            stats.status_counts[status] += 1
            if not success:
                stats.error_count += 1
                stats.error_counts[error or f"HTTP {status}"] += 1

        if self._recent is not None:
            with self._recent_lock:
                self._recent.append(RequestOutcome(route, float(latency_ms), status, success, error))

    def record_outcome(self, outcome: RequestOutcome):
        self.record(outcome.route, outcome.latency_ms, outcome.success,
                    status=outcome.status, error=outcome.error)

    def snapshot(self, route: Route) -> MetricSnapshot:
        stats = self._route_stats(route)
        with stats.lock:
            return MetricSnapshot(
                name=route.value,
                count=stats.count,
                error_count=stats.error_count,
                latencies=list(stats.sorted_latencies()),
                status_counts=dict(stats.status_counts),
                error_counts=dict(stats.error_counts),
            )

    def snapshots(self, include_aggregate: bool = True) -> dict:
        """All route snapshots keyed by route name, plus ``all`` when asked."""
        snaps = {route.value: self.snapshot(route) for route in self._stats}
        if include_aggregate:
            snaps[AGGREGATE] = MetricSnapshot.merge(AGGREGATE, list(snaps.values()))
        return snaps

    def percentile(self, route: Route, p: float) -> float:
        stats = self._route_stats(route)
        with stats.lock:
            return nearest_rank(stats.sorted_latencies(), p)

    def count(self, route: Route) -> int:
        stats = self._route_stats(route)
        with stats.lock:
            return stats.count

    def recent(self, limit: Optional[int] = None) -> list:
        if self._recent is None:
            return []
        with self._recent_lock:
            items = list(self._recent)
        return items[-limit:] if limit else items

    # =========================================================================
    # Run-level figures
    # =========================================================================

    def mark_start(self):
        self.start_time = time.perf_counter()
        self.end_time = 0.0

    def mark_end(self):
        self.end_time = time.perf_counter()

    @property
    def total_requests(self) -> int:
        return sum(self.count(route) for route in self._stats)

    @property
    def total_errors(self) -> int:
        total = 0
        for stats in self._stats.values():
            with stats.lock:
                total += stats.error_count
        return total

    @property
    def duration_seconds(self) -> float:
        if not self.start_time:
            return 0.0
        end = self.end_time or time.perf_counter()
        return end - self.start_time

    @property
    def requests_per_second(self) -> float:
        duration = self.duration_seconds
        return self.total_requests / duration if duration > 0 else 0.0
