"""Route catalog parameters and weighted route selection."""

import random
from collections import Counter

import pytest

from shadowload.errors import ConfigError
from shadowload.routes import (
    EMAILS, MAX_CART_ITEMS, UNKNOWN_PRODUCT_ID, CheckoutParams, ProductParams, Route,
    RouteCatalog, RouteWeights, SearchParams,
)

pytestmark = pytest.mark.unit


class TestRouteWeights:

    def test_selection_converges_to_configured_split(self):
        weights = RouteWeights({Route.SEARCH: 0.5, Route.PRODUCT: 0.3, Route.CHECKOUT: 0.2})
        rng = random.Random(42)
        draws = 100_000

        counts = Counter(weights.choose(rng) for _ in range(draws))

        assert counts[Route.SEARCH] / draws == pytest.approx(0.5, abs=0.02)
        assert counts[Route.PRODUCT] / draws == pytest.approx(0.3, abs=0.02)
        assert counts[Route.CHECKOUT] / draws == pytest.approx(0.2, abs=0.02)

    def test_cumulative_pairs_are_in_catalog_order(self):
        weights = RouteWeights({Route.CHECKOUT: 0.2, Route.SEARCH: 0.5, Route.PRODUCT: 0.3})

        pairs = weights.pairs()

        assert [r for r, _ in pairs] == [Route.SEARCH, Route.PRODUCT, Route.CHECKOUT]
        assert [c for _, c in pairs] == pytest.approx([0.5, 0.8, 1.0])

    def test_first_cumulative_weight_at_or_above_draw_wins(self):
        weights = RouteWeights({Route.SEARCH: 0.5, Route.PRODUCT: 0.3, Route.CHECKOUT: 0.2})

        assert weights.select(0.0) is Route.SEARCH
        assert weights.select(0.5) is Route.SEARCH
        assert weights.select(0.5000001) is Route.PRODUCT
        assert weights.select(0.79) is Route.PRODUCT
        assert weights.select(0.99999) is Route.CHECKOUT

    def test_zero_weight_route_is_never_selected(self):
        weights = RouteWeights({Route.SEARCH: 0.0, Route.PRODUCT: 1.0, Route.CHECKOUT: 0.0})

        assert weights.select(0.0) is Route.PRODUCT
        assert weights.select(0.999999) is Route.PRODUCT

    def test_weight_of(self):
        weights = RouteWeights({Route.SEARCH: 0.25, Route.CHECKOUT: 0.75})

        assert weights.weight_of(Route.SEARCH) == pytest.approx(0.25)
        assert weights.weight_of(Route.CHECKOUT) == pytest.approx(0.75)
        assert weights.weight_of(Route.PRODUCT) == 0.0

    @pytest.mark.parametrize("weights", [
        {Route.SEARCH: 0.5, Route.PRODUCT: 0.3},
        {Route.SEARCH: 0.9, Route.PRODUCT: 0.3},
        {Route.SEARCH: 1.2, Route.PRODUCT: -0.2},
        {Route.SEARCH: "half", Route.PRODUCT: 0.5},
        {},
    ])
    def test_invalid_weights_are_rejected(self, weights):
        with pytest.raises(ConfigError):
            RouteWeights(weights)

    def test_from_names_rejects_unknown_route(self):
        with pytest.raises(ConfigError, match="Unknown route"):
            RouteWeights.from_names({"search": 0.5, "login": 0.5})

    @pytest.mark.parametrize("draw", [-0.1, 1.0, 1.5])
    def test_draw_outside_unit_interval_is_an_error(self, draw):
        weights = RouteWeights({Route.SEARCH: 1.0})
        with pytest.raises(ValueError):
            weights.select(draw)


class TestRouteCatalog:

    def test_search_params_include_empty_query(self, catalog):
        queries = {catalog.generate_params(Route.SEARCH).query for _ in range(500)}

        assert "" in queries
        assert queries <= set(catalog.search_queries)

    def test_product_params_include_unknown_id(self, catalog):
        ids = {catalog.generate_params(Route.PRODUCT).product_id for _ in range(500)}

        assert UNKNOWN_PRODUCT_ID in ids
        assert all(pid.startswith("p-") for pid in ids)

    def test_checkout_params_carry_one_to_three_items(self, catalog):
        sizes = set()
        for _ in range(500):
            params = catalog.generate_params(Route.CHECKOUT)
            assert isinstance(params, CheckoutParams)
            assert 1 <= len(params.product_ids) <= MAX_CART_ITEMS
            assert params.email in EMAILS
            sizes.add(len(params.product_ids))

        assert sizes == {1, 2, 3}

    def test_checkout_json_shape(self):
        params = CheckoutParams(product_ids=("p-100", "p-101"), email="demo@example.com")

        assert params.to_json() == {"productIds": ["p-100", "p-101"], "email": "demo@example.com"}

    def test_same_seed_gives_same_params(self):
        a = RouteCatalog(rng=random.Random(7))
        b = RouteCatalog(rng=random.Random(7))

        for route in list(Route) * 20:
            assert a.generate_params(route) == b.generate_params(route)

    def test_param_types_match_route(self, catalog):
        assert isinstance(catalog.generate_params(Route.SEARCH), SearchParams)
        assert isinstance(catalog.generate_params(Route.PRODUCT), ProductParams)
        assert isinstance(catalog.generate_params(Route.CHECKOUT), CheckoutParams)

    def test_empty_catalog_is_rejected(self):
        with pytest.raises(ConfigError):
            RouteCatalog(emails=())
