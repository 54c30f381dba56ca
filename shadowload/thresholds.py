"""
SLA thresholds over recorded metrics.

Expressions follow the k6 style::

    p(99) < 500      99th percentile latency under 500ms
    p(95) <= 250.5
    med < 100        median, same as p(50)
    max < 2000       slowest request, same as p(100)
    avg < 150        mean latency
    rate < 0.01      error rate (failed / total) under 1%

Each threshold is attached to a selector: a route name or ``all`` for the
aggregate across every route. A threshold whose selector has no samples
cannot be judged and is reported as an evaluation error, never as a pass.
"""

import asyncio
import logging
import operator
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from shadowload.errors import ThresholdEvaluationError, ThresholdParseError
from shadowload.metrics import AGGREGATE, MetricSnapshot

logger = logging.getLogger(__name__)


class Statistic(str, Enum):
    PERCENTILE = "percentile"
    MEAN = "avg"
    ERROR_RATE = "rate"


COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_EXPRESSION = re.compile(
    r"""^\s*
    (?:
        p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)
      | (?P<name>med|max|avg|rate)
    )
    \s*(?P<cmp><=|>=|<|>)\s*
    (?P<limit>-?\d+(?:\.\d+)?)
    \s*(?:ms)?\s*$""",
    re.VERBOSE | re.IGNORECASE,
)


@dataclass(frozen=True)
class ThresholdSpec:
    metric_selector: str
    percentile: float
    comparator: str
    limit_ms: float
    statistic: Statistic = Statistic.PERCENTILE

    def __post_init__(self):
        if self.comparator not in COMPARATORS:
            raise ThresholdParseError(f"Unknown comparator '{self.comparator}'")
        if self.statistic is Statistic.PERCENTILE and not 0 < self.percentile <= 100:
            raise ThresholdParseError(f"Percentile must be in (0, 100], got {self.percentile}")
        if self.statistic is Statistic.ERROR_RATE and not 0 <= self.limit_ms <= 1:
            raise ThresholdParseError(f"Error rate limit must be in [0, 1], got {self.limit_ms}")

    @property
    def limit(self) -> float:
        return self.limit_ms

    def observe(self, snapshot: MetricSnapshot) -> float:
        if self.statistic is Statistic.ERROR_RATE:
            return snapshot.error_rate
        if self.statistic is Statistic.MEAN:
            return snapshot.mean
        return snapshot.percentile(self.percentile)

    def check(self, observed: float) -> bool:
        return COMPARATORS[self.comparator](observed, self.limit_ms)

    @property
    def expression(self) -> str:
        if self.statistic is Statistic.ERROR_RATE:
            return f"rate {self.comparator} {self.limit_ms:g}"
        if self.statistic is Statistic.MEAN:
            return f"avg {self.comparator} {self.limit_ms:g}"
        return f"p({self.percentile:g}) {self.comparator} {self.limit_ms:g}"

    def __str__(self) -> str:
        return f"{self.metric_selector}: {self.expression}"


def parse_threshold(selector: str, expression: str) -> ThresholdSpec:
    """Parse one ``selector`` + k6-style ``expression`` pair."""
    selector = (selector or "").strip().lower()
    if not selector:
        raise ThresholdParseError(f"Threshold '{expression}' has no metric selector")

    match = _EXPRESSION.match(expression or "")
    if not match:
        raise ThresholdParseError(f"Malformed threshold expression for {selector}: '{expression}'")

    name = (match.group("name") or "").lower()
    statistic = Statistic.PERCENTILE
    if match.group("pct") is not None:
        percentile = float(match.group("pct"))
    elif name == "med":
        percentile = 50.0
    elif name == "max":
        percentile = 100.0
    elif name == "avg":
        percentile, statistic = 0.0, Statistic.MEAN
    else:
        percentile, statistic = 0.0, Statistic.ERROR_RATE

    return ThresholdSpec(
        metric_selector=selector,
        percentile=percentile,
        comparator=match.group("cmp"),
        limit_ms=float(match.group("limit")),
        statistic=statistic,
    )


def parse_thresholds(config: dict) -> list:
    """Parse ``{selector: expression | [expressions]}`` into specs."""
    specs = []
    for selector, expressions in (config or {}).items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, (list, tuple)):
            raise ThresholdParseError(f"Thresholds for '{selector}' must be a string or a list")
        for expression in expressions:
            specs.append(parse_threshold(selector, expression))
    return specs


def parse_threshold_arg(text: str) -> ThresholdSpec:
    """Parse a command-line ``selector:expression`` value."""
    selector, sep, expression = text.partition(":")
    if not sep:
        raise ThresholdParseError(f"Expected SELECTOR:EXPRESSION, got '{text}'")
    return parse_threshold(selector, expression)


# =========================================================================
# Evaluation
# =========================================================================

@dataclass(frozen=True)
class ThresholdResult:
    spec: ThresholdSpec
    observed: Optional[float]
    passed: bool
    error: Optional[str] = None

    @property
    def evaluation_error(self) -> bool:
        return self.error is not None


class Verdict(str, Enum):
    PASSED = "passed"
    BREACHED = "breached"
    ERROR = "error"


def evaluate(snapshots: dict, specs: Iterable[ThresholdSpec]) -> list:
    """
    Evaluate every spec against ``snapshots`` (keyed by selector name).

    Pure and deterministic. A spec whose selector is unknown or has zero
    samples gets ``passed=False`` with ``error`` set.
    """
    results = []
    for spec in specs:
        snapshot = snapshots.get(spec.metric_selector)
        if snapshot is None:
            results.append(ThresholdResult(spec, None, False,
                                           f"no metrics recorded for '{spec.metric_selector}'"))
            continue
        if snapshot.count == 0:
            results.append(ThresholdResult(spec, None, False,
                                           f"zero samples for '{spec.metric_selector}'"))
            continue
        observed = spec.observe(snapshot)
        results.append(ThresholdResult(spec, observed, spec.check(observed)))
    return results


def overall_passed(results: Iterable[ThresholdResult]) -> bool:
    return all(r.passed for r in results)


def overall_status(results: Iterable[ThresholdResult]) -> Verdict:
    results = list(results)
    if any(r.evaluation_error for r in results):
        return Verdict.ERROR
    if not overall_passed(results):
        return Verdict.BREACHED
    return Verdict.PASSED


def require_complete(results: Iterable[ThresholdResult]) -> list:
    """Raise ThresholdEvaluationError if any result could not be evaluated."""
    results = list(results)
    errors = [r for r in results if r.evaluation_error]
    if errors:
        detail = "; ".join(f"{r.spec}: {r.error}" for r in errors)
        raise ThresholdEvaluationError(f"Could not evaluate thresholds: {detail}", results)
    return results


def default_thresholds() -> list:
    return [parse_threshold(AGGREGATE, "p(99) < 500")]


# =========================================================================
# Continuous evaluation
# =========================================================================

class ThresholdMonitor:
    """
    Re-evaluates thresholds periodically while a run is in progress.

    Specs without data yet are skipped rather than counted as failures. With
    ``abort_on_fail`` set, a breach seen on ``abort_after`` consecutive
    checks calls ``on_abort`` once; a clean check shrinks the streak by one.
    """

    def __init__(self, snapshot_source: Callable[[], dict], specs: list, *,
                 interval: float = 5.0, abort_on_fail: bool = False, abort_after: int = 3,
                 on_abort: Optional[Callable[[str], None]] = None):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if abort_after < 1:
            raise ValueError("abort_after must be >= 1")
        self.snapshot_source = snapshot_source
        self.specs = list(specs)
        self.interval = interval
        self.abort_on_fail = abort_on_fail
        self.abort_after = abort_after
        self.on_abort = on_abort
        self.breach_streak = 0
        self.checks = 0
        self.last_results: list = []
        self.abort_reason: Optional[str] = None

    def check(self) -> list:
        results = [r for r in evaluate(self.snapshot_source(), self.specs) if not r.evaluation_error]
        self.checks += 1
        self.last_results = results
        breached = [r for r in results if not r.passed]

        if breached:
            self.breach_streak += 1
            logger.debug("Threshold breach (streak %d): %s", self.breach_streak,
                         ", ".join(str(r.spec) for r in breached))
        elif self.breach_streak > 0:
            self.breach_streak -= 1

        if (self.abort_on_fail and self.abort_reason is None
                and self.breach_streak >= self.abort_after):
            self.abort_reason = "threshold breached: " + ", ".join(
                f"{r.spec} (observed {r.observed:.3f})" for r in breached
            )
            logger.warning("Aborting run, %s", self.abort_reason)
            if self.on_abort:
                self.on_abort(self.abort_reason)
        return results

    async def run(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                self.check()
