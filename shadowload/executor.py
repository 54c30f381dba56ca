"""
Route executors: one HTTP request per call, one recorded outcome per request.

Success is decided per route:

- search: any 2xx.
- product: any 2xx, or 404 for an id the target does not stock.
- checkout: any 2xx, or any 5xx. Server errors still show up in the status
  counts.

Network errors and timeouts are failures on every route.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import aiohttp

from shadowload.errors import ConfigError
from shadowload.metrics import MetricRecorder, RequestOutcome
from shadowload.routes import CheckoutParams, ProductParams, Route, RouteParams, SearchParams

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class SuccessPolicy:
    """Which response statuses count as a successful request."""

    ranges: tuple = ((200, 299),)
    codes: frozenset = frozenset()

    def accepts(self, status: int) -> bool:
        if status in self.codes:
            return True
        return any(low <= status <= high for low, high in self.ranges)

    @classmethod
    def parse(cls, spec) -> "SuccessPolicy":
        """
        Build a policy from config entries such as ``["2xx", 404]``.

        Accepts class patterns (``2xx``), explicit ranges (``500-599``) and
        single codes (``404`` or ``"404"``).
        """
        if isinstance(spec, (str, int)):
            spec = [spec]
        if not spec:
            raise ConfigError("A success policy needs at least one status entry")

        ranges = []
        codes = set()
        for entry in spec:
            text = str(entry).strip().lower()
            try:
                if len(text) == 3 and text.endswith("xx") and text[0].isdigit():
                    base = int(text[0]) * 100
                    ranges.append((base, base + 99))
                elif "-" in text:
                    low, high = (int(part) for part in text.split("-", 1))
                    if low > high:
                        raise ValueError
                    ranges.append((low, high))
                else:
                    codes.add(int(text))
            except ValueError:
                raise ConfigError(f"Invalid status entry in success policy: {entry!r}") from None
        return cls(ranges=tuple(ranges), codes=frozenset(codes))

    def describe(self) -> str:
        parts = []
        for low, high in self.ranges:
            if low % 100 == 0 and high == low + 99:
                parts.append(f"{low // 100}xx")
            else:
                parts.append(f"{low}-{high}")
        parts.extend(str(code) for code in sorted(self.codes))
        return ", ".join(parts)


SEARCH_POLICY = SuccessPolicy()
PRODUCT_POLICY = SuccessPolicy(codes=frozenset({404}))
CHECKOUT_POLICY = SuccessPolicy(ranges=((200, 299), (500, 599)))


class RouteExecutor(ABC):
    """Performs one request for a route and reports it to the recorder."""

    route: Route
    method: str
    default_policy: SuccessPolicy

    def __init__(self, recorder: MetricRecorder, policy: Optional[SuccessPolicy] = None,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.recorder = recorder
        self.policy = policy or self.default_policy
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @abstractmethod
    def build_path(self, params: RouteParams) -> str:
        ...

    def build_body(self, params: RouteParams) -> Optional[dict]:
        return None

    def build_headers(self, params: RouteParams) -> Optional[dict]:
        return None

    def classify(self, status: int) -> bool:
        return self.policy.accepts(status)

    async def execute(self, session: aiohttp.ClientSession, base_url: str,
                      params: RouteParams) -> RequestOutcome:
        url = f"{base_url.rstrip('/')}{self.build_path(params)}"
        body = self.build_body(params)
        headers = self.build_headers(params)

        start = time.perf_counter()
        try:
            async with session.request(
                self.method, url, json=body, headers=headers, timeout=self.timeout
            ) as resp:
                # Drain the body so latency covers the full response
                await resp.read()
                latency_ms = (time.perf_counter() - start) * 1000
                success = self.classify(resp.status)
                outcome = RequestOutcome(
                    route=self.route, latency_ms=latency_ms, status=resp.status,
                    success=success, error=None if success else f"HTTP {resp.status}",
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            latency_ms = (time.perf_counter() - start) * 1000
            outcome = RequestOutcome(
                route=self.route, latency_ms=latency_ms, status=0,
                success=False, error=type(e).__name__,
            )
            logger.debug("%s %s failed: %r", self.method, url, e)
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            self.recorder.record_outcome(RequestOutcome(
                route=self.route, latency_ms=latency_ms, status=0,
                success=False, error=type(e).__name__,
            ))
            raise

        self.recorder.record_outcome(outcome)
        return outcome


class SearchExecutor(RouteExecutor):
    route = Route.SEARCH
    method = "GET"
    default_policy = SEARCH_POLICY

    def build_path(self, params: SearchParams) -> str:
        return f"/api/search?q={quote(params.query, safe='')}"


class ProductExecutor(RouteExecutor):
    route = Route.PRODUCT
    method = "GET"
    default_policy = PRODUCT_POLICY

    def build_path(self, params: ProductParams) -> str:
        return f"/api/product/{quote(params.product_id, safe='')}"


class CheckoutExecutor(RouteExecutor):
    route = Route.CHECKOUT
    method = "POST"
    default_policy = CHECKOUT_POLICY

    def build_path(self, params: CheckoutParams) -> str:
        return "/api/checkout"

    def build_body(self, params: CheckoutParams) -> dict:
        return params.to_json()

    def build_headers(self, params: CheckoutParams) -> dict:
        return {"Content-Type": "application/json"}


EXECUTOR_TYPES = {
    Route.SEARCH: SearchExecutor,
    Route.PRODUCT: ProductExecutor,
    Route.CHECKOUT: CheckoutExecutor,
}


def build_executors(recorder: MetricRecorder, policies: Optional[dict] = None,
                    timeout: float = DEFAULT_TIMEOUT_SECONDS) -> dict:
    """One executor per route, with per-route policy overrides applied."""
    policies = policies or {}
    return {
        route: executor_type(recorder, policy=policies.get(route), timeout=timeout)
        for route, executor_type in EXECUTOR_TYPES.items()
    }
