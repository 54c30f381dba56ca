"""
Routes, request parameters and weighted route selection.

Every iteration of a virtual user picks one route with a single uniform
draw and asks the catalog for parameters to send with it.
"""

import math
import random
from bisect import bisect_left
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from shadowload.errors import ConfigError


class Route(str, Enum):
    SEARCH = "search"
    PRODUCT = "product"
    CHECKOUT = "checkout"

    @classmethod
    def parse(cls, name: str) -> "Route":
        try:
            return cls(name.strip().lower())
        except ValueError:
            known = ", ".join(r.value for r in cls)
            raise ConfigError(f"Unknown route '{name}' (expected one of: {known})") from None


@dataclass(frozen=True)
class SearchParams:
    query: str


@dataclass(frozen=True)
class ProductParams:
    product_id: str


@dataclass(frozen=True)
class CheckoutParams:
    product_ids: tuple[str, ...]
    email: str

    def to_json(self) -> dict:
        return {"productIds": list(self.product_ids), "email": self.email}


RouteParams = Union[SearchParams, ProductParams, CheckoutParams]


# =========================================================================
# Sample data
# =========================================================================

SEARCH_QUERIES = ("ssd", "ram", "monitor", "keyboard", "mouse", "hub", "")
PRODUCT_IDS = tuple(f"p-{n}" for n in range(100, 110))
# Well-formed but not stocked by the target, expected to come back 404
UNKNOWN_PRODUCT_ID = "p-999"
EMAILS = ("demo@example.com", "test@example.com", "user@example.com")

MAX_CART_ITEMS = 3


class RouteCatalog:
    """Randomized parameter generators for each route."""

    def __init__(self, rng: Optional[random.Random] = None,
                 search_queries=SEARCH_QUERIES,
                 product_ids=PRODUCT_IDS + (UNKNOWN_PRODUCT_ID,),
                 emails=EMAILS):
        if not search_queries or not product_ids or not emails:
            raise ConfigError("Route catalog needs at least one query, product id and email")
        self.rng = rng or random.Random()
        self.search_queries = tuple(search_queries)
        self.product_ids = tuple(product_ids)
        self.emails = tuple(emails)

    def generate_params(self, route: Route, rng: Optional[random.Random] = None) -> RouteParams:
        rng = rng or self.rng
        if route is Route.SEARCH:
            return SearchParams(query=rng.choice(self.search_queries))
        if route is Route.PRODUCT:
            return ProductParams(product_id=rng.choice(self.product_ids))
        if route is Route.CHECKOUT:
            count = rng.randint(1, MAX_CART_ITEMS)
            ids = tuple(rng.choice(self.product_ids) for _ in range(count))
            return CheckoutParams(product_ids=ids, email=rng.choice(self.emails))
        raise ValueError(f"Unknown route: {route!r}")


# =========================================================================
# Weighted selection
# =========================================================================

DEFAULT_WEIGHTS = {Route.SEARCH: 0.5, Route.PRODUCT: 0.3, Route.CHECKOUT: 0.2}

WEIGHT_TOLERANCE = 1e-6


class RouteWeights:
    """
    Cumulative probability table over routes.

    Selection takes one uniform draw in [0, 1) and returns the first route
    whose cumulative weight is >= the draw. Routes keep catalog order, so a
    tie goes to the route listed first.
    """

    def __init__(self, weights: dict):
        if not weights:
            raise ConfigError("At least one route weight is required")

        routes: list[Route] = []
        cumulative: list[float] = []
        running = 0.0
        for route in Route:
            if route not in weights:
                continue
            weight = weights[route]
            if not isinstance(weight, (int, float)) or isinstance(weight, bool) \
                    or not math.isfinite(weight) or weight < 0:
                raise ConfigError(f"Weight for '{route.value}' must be a non-negative number, got {weight!r}")
            running += weight
            routes.append(route)
            cumulative.append(running)

        unknown = set(weights) - set(Route)
        if unknown:
            raise ConfigError(f"Weights reference unknown routes: {sorted(map(str, unknown))}")
        if abs(running - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigError(f"Route weights must sum to 1.0, got {running:.6f}")

        self.routes = tuple(routes)
        self.cumulative = tuple(cumulative)

    @classmethod
    def from_names(cls, weights: dict) -> "RouteWeights":
        return cls({Route.parse(name): value for name, value in weights.items()})

    def pairs(self) -> list[tuple[Route, float]]:
        return list(zip(self.routes, self.cumulative))

    def weight_of(self, route: Route) -> float:
        if route not in self.routes:
            return 0.0
        idx = self.routes.index(route)
        previous = self.cumulative[idx - 1] if idx else 0.0
        return self.cumulative[idx] - previous

    def select(self, draw: float) -> Route:
        if not 0.0 <= draw < 1.0:
            raise ValueError(f"Draw must be in [0, 1), got {draw}")
        idx = bisect_left(self.cumulative, draw)
        if idx >= len(self.routes):
            # Rounding can leave the last cumulative value a hair under 1.0
            idx = len(self.routes) - 1
            while idx > 0 and self.weight_of(self.routes[idx]) == 0.0:
                idx -= 1
            return self.routes[idx]
        # A draw of exactly 0.0 lands on a leading zero-weight route
        while self.weight_of(self.routes[idx]) == 0.0 and idx + 1 < len(self.routes):
            idx += 1
        return self.routes[idx]

    def choose(self, rng: random.Random) -> Route:
        return self.select(rng.random())

    def __repr__(self) -> str:
        parts = ", ".join(f"{r.value}<={c:.3f}" for r, c in self.pairs())
        return f"RouteWeights({parts})"
