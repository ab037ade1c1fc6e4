"""
test_router.py - Unit tests for the multi-fragment fee router

Tests:
- Splitting a single fragment across several destinations
- Fragments landing exactly on destination boundaries (no splits)
- Fragments straddling a boundary (one split)
- Zero-amount destinations
- Validation before any coin is touched
- Conservation and split bound (property-based)
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from curve_ledger import (
    Coin, Destination, route, total_value,
    RESERVE, TOKEN,
    InsufficientFunds, StateError, ValidationError,
)


def coins(*values, unit=RESERVE):
    return [Coin(unit, v) for v in values]


class TestRouteBasics:

    def test_single_fragment_split_across_destinations(self):
        result = route(coins(100), [("fee", 10), ("payout", 50)])
        assert result.amount("fee") == 10
        assert result.amount("payout") == 50
        assert result.remainder.value == 40
        assert result.splits == 2

    def test_exact_boundaries_need_no_splits(self):
        result = route(coins(30, 20, 50), [("a", 30), ("b", 70)])
        assert result.amount("a") == 30
        assert result.amount("b") == 70
        assert result.remainder.value == 0
        assert result.splits == 0

    def test_straddling_fragment_is_split_once(self):
        result = route(coins(40, 40), [("a", 50)])
        assert result.amount("a") == 50
        assert result.remainder.value == 30
        assert result.splits == 1

    def test_no_destinations_joins_everything(self):
        result = route(coins(1, 2, 3), [])
        assert result.allocations == {}
        assert result.remainder.value == 6

    def test_zero_amount_destination(self):
        result = route(coins(10), [("a", 0), ("b", 5)])
        assert result.amount("a") == 0
        assert result.amount("b") == 5
        assert result.remainder.value == 5

    def test_destination_objects_accepted(self):
        result = route(coins(10), [Destination("fee", 3)])
        assert result.amount("fee") == 3
        assert result.remainder.value == 7

    def test_fragments_are_consumed(self):
        fragments = coins(10, 20)
        route(fragments, [("a", 15)])
        assert all(c.consumed for c in fragments)

    def test_token_unit_is_preserved(self):
        result = route(coins(10, unit=TOKEN), [("a", 4)])
        assert result.allocations["a"].unit == TOKEN
        assert result.remainder.unit == TOKEN


class TestRouteValidation:

    def test_insufficient_total(self):
        fragments = coins(5, 5)
        with pytest.raises(InsufficientFunds):
            route(fragments, [("a", 11)])
        assert not any(c.consumed for c in fragments)
        assert total_value(fragments) == 10

    def test_empty_fragments(self):
        with pytest.raises(ValidationError):
            route([], [])

    def test_duplicate_destination(self):
        fragments = coins(10)
        with pytest.raises(ValidationError):
            route(fragments, [("a", 1), ("a", 2)])
        assert fragments[0].value == 10

    def test_negative_amount(self):
        with pytest.raises(ValidationError):
            route(coins(10), [("a", -1)])

    def test_mixed_units(self):
        with pytest.raises(ValidationError):
            route([Coin(RESERVE, 1), Coin(TOKEN, 1)], [])

    def test_consumed_fragment(self):
        spent = Coin(RESERVE, 5)
        spent.take()
        live = Coin(RESERVE, 5)
        with pytest.raises(StateError):
            route([live, spent], [("a", 1)])
        assert live.value == 5

    def test_same_fragment_twice(self):
        coin = Coin(RESERVE, 5)
        with pytest.raises(StateError):
            route([coin, coin], [("a", 6)])
        assert coin.value == 5


@st.composite
def routing_case(draw):
    values = draw(st.lists(st.integers(min_value=0, max_value=10_000), min_size=1, max_size=8))
    total = sum(values)
    cuts = sorted(draw(st.lists(st.integers(min_value=0, max_value=total), max_size=5)))
    amounts = []
    previous = 0
    for cut in cuts:
        amounts.append(cut - previous)
        previous = cut
    return values, amounts


class TestRouteProperties:

    @given(routing_case())
    @settings(max_examples=200)
    def test_conservation(self, case):
        """Destinations plus remainder always equal the fragments' total."""
        values, amounts = case
        dests = [(f"d{i}", a) for i, a in enumerate(amounts)]
        result = route(coins(*values), dests)
        routed = sum(c.value for c in result.allocations.values())
        assert routed + result.remainder.value == sum(values)
        for name, amount in dests:
            assert result.amount(name) == amount

    @given(routing_case())
    @settings(max_examples=200)
    def test_at_most_one_split_per_boundary(self, case):
        values, amounts = case
        dests = [(f"d{i}", a) for i, a in enumerate(amounts)]
        result = route(coins(*values), dests)
        assert result.splits <= len(dests)
