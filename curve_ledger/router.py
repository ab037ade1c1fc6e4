"""
router.py - Multi-Fragment Fee Router

Splits an ordered list of incoming coins across ordered named destinations
(fee, payout, pool deposit, ...) without creating or destroying value.

Algorithm:
    1. Validate everything before a coin is touched
    2. Consume fragments in order
    3. The current unfilled destination takes up to its remaining need from the
       current fragment; a fragment straddling the boundary is split once
    4. Advance to the next destination when the current one is filled
    5. Once all destinations are filled, the rest becomes the remainder

Guarantees:
    - Conservation: sum(outputs) + remainder == sum(fragments)
    - Each destination receives exactly its amount, or nothing happens
    - A fragment is split at most once per boundary it crosses
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from .core import (
    Coin, InsufficientFunds, StateError, ValidationError,
    checked_add, to_u64,
)


@dataclass(frozen=True, slots=True)
class Destination:
    """A named amount the router must fill exactly."""
    name: str
    amount: int


@dataclass(slots=True)
class Routing:
    """
    Result of a routing pass.

    Attributes:
        allocations: destination name -> coin holding exactly its amount
        remainder: everything left after all destinations were filled
        splits: number of fragment splits performed
    """
    allocations: Dict[str, Coin]
    remainder: Coin
    splits: int = 0

    def amount(self, name: str) -> int:
        return self.allocations[name].value


def _normalize(destinations) -> List[Destination]:
    normalized = []
    for dest in destinations:
        if isinstance(dest, Destination):
            normalized.append(dest)
        else:
            name, amount = dest
            normalized.append(Destination(name, amount))
    return normalized


def _validate(fragments: Sequence[Coin], destinations: List[Destination]) -> Tuple[str, int]:
    if not fragments:
        raise ValidationError("at least one fragment is required")
    unit = fragments[0].unit
    total = 0
    seen = set()
    for coin in fragments:
        if coin.consumed:
            raise StateError("fragment has already been consumed")
        if coin.unit != unit:
            raise ValidationError(f"mixed units in fragments: {unit} and {coin.unit}")
        if id(coin) in seen:
            raise StateError("the same fragment was passed twice")
        seen.add(id(coin))
        total = to_u64(checked_add(total, coin.value))

    names = set()
    need = 0
    for dest in destinations:
        if dest.name in names:
            raise ValidationError(f"duplicate destination {dest.name!r}")
        names.add(dest.name)
        if isinstance(dest.amount, bool) or not isinstance(dest.amount, int) or dest.amount < 0:
            raise ValidationError(f"destination {dest.name!r} amount must be a non-negative integer")
        need = to_u64(checked_add(need, dest.amount))

    if need > total:
        raise InsufficientFunds(f"destinations need {need} but fragments hold {total}")
    return unit, total


def route(fragments: Sequence[Coin], destinations) -> Routing:
    """
    Route `fragments` to `destinations` in order.

    Args:
        fragments: Coins of a single unit, consumed by this call
        destinations: Ordered Destination objects or (name, amount) pairs

    Returns:
        Routing with one coin per destination and the remainder coin

    Raises:
        InsufficientFunds: if the destinations need more than the fragments hold
        ValidationError: for mixed units, duplicate names or negative amounts
        StateError: if a fragment was already consumed
    """
    fragments = list(fragments)
    dests = _normalize(destinations)
    unit, _ = _validate(fragments, dests)

    allocations = {d.name: Coin.zero(unit) for d in dests}
    remainder = Coin.zero(unit)
    splits = 0

    index = 0
    need = dests[0].amount if dests else 0
    # Skip leading zero-amount destinations
    while index < len(dests) and need == 0:
        index += 1
        need = dests[index].amount if index < len(dests) else 0

    for fragment in fragments:
        while index < len(dests) and fragment.value > 0:
            target = allocations[dests[index].name]
            if fragment.value <= need:
                need -= fragment.value
                target.join(fragment.split(fragment.value))
            else:
                target.join(fragment.split(need))
                splits += 1
                need = 0
            while index < len(dests) and need == 0:
                index += 1
                need = dests[index].amount if index < len(dests) else 0
        remainder.join(fragment)

    return Routing(allocations=allocations, remainder=remainder, splits=splits)
