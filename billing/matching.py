"""Inventory matching: which line items draw on finite stock.

A line item draws on stock when it carries an explicit inventory reference.
Invoices converted from estimates lose those references, so the default
policy also re-links a bare line item whose description and unit price equal
the name and unit cost of exactly one inventory item. Ambiguous matches are
skipped rather than guessed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from billing.errors import DocumentValidationError, InsufficientStockError
from schemas.document_schema import InventoryItem, LineItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AmbiguousInventoryMatch:
    """Soft condition: a line item matched several inventory items identically."""

    description: str
    unit_price: Decimal
    candidate_ids: tuple[str, ...]


@dataclass(frozen=True)
class InventoryMatch:
    line_index: int
    item_id: str
    source: str  # "reference" or "fallback"


MatchOutcome = InventoryMatch | AmbiguousInventoryMatch | None


class MatchPolicy(Protocol):
    name: str

    def match(
        self, line_index: int, line_item: LineItem, inventory: Mapping[str, InventoryItem]
    ) -> MatchOutcome:
        """Resolve one line item against the known inventory."""


class ExplicitReferencePolicy:
    name = "explicit"

    def match(
        self, line_index: int, line_item: LineItem, inventory: Mapping[str, InventoryItem]
    ) -> MatchOutcome:
        ref = line_item.inventory_reference
        if ref is None:
            return None
        if ref.item_id not in inventory:
            raise DocumentValidationError(
                f"line_items[{line_index}] references unknown inventory item {ref.item_id}",
                code="unknown_inventory_item",
            )
        return InventoryMatch(line_index=line_index, item_id=ref.item_id, source="reference")


class NameAndPriceFallbackPolicy(ExplicitReferencePolicy):
    name = "fallback"

    def match(
        self, line_index: int, line_item: LineItem, inventory: Mapping[str, InventoryItem]
    ) -> MatchOutcome:
        if line_item.inventory_reference is not None:
            return super().match(line_index, line_item, inventory)
        candidates = tuple(
            item.id
            for item in inventory.values()
            if item.name == line_item.description and item.unit_cost == line_item.unit_price
        )
        if not candidates:
            return None
        if len(candidates) > 1:
            return AmbiguousInventoryMatch(
                description=line_item.description,
                unit_price=line_item.unit_price,
                candidate_ids=candidates,
            )
        return InventoryMatch(line_index=line_index, item_id=candidates[0], source="fallback")


MATCH_POLICIES: dict[str, type[ExplicitReferencePolicy]] = {
    ExplicitReferencePolicy.name: ExplicitReferencePolicy,
    NameAndPriceFallbackPolicy.name: NameAndPriceFallbackPolicy,
}


def policy_from_name(name: str) -> MatchPolicy:
    try:
        return MATCH_POLICIES[name.strip().lower()]()
    except KeyError as exc:
        raise ValueError(f"Unknown match policy: {name}") from exc


@dataclass
class StockPlan:
    """Units to draw per inventory item, summed across a document's line items."""

    draws: dict[str, int] = field(default_factory=dict)
    item_names: dict[str, str] = field(default_factory=dict)
    matches: list[InventoryMatch] = field(default_factory=list)
    ambiguous: list[AmbiguousInventoryMatch] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(self.draws.values())

    @classmethod
    def from_allocations(
        cls, allocations: Mapping[str, int], item_names: Mapping[str, str] | None = None
    ) -> "StockPlan":
        names = dict(item_names or {})
        return cls(
            draws={k: v for k, v in allocations.items() if v},
            item_names={k: names.get(k, k) for k in allocations},
        )


def match_line_items(
    line_items: Iterable[LineItem],
    inventory: Iterable[InventoryItem],
    policy: MatchPolicy | None = None,
) -> StockPlan:
    active = policy or NameAndPriceFallbackPolicy()
    known = {item.id: item for item in inventory}
    plan = StockPlan()
    summed: dict[str, Decimal] = {}

    for index, line_item in enumerate(line_items):
        outcome = active.match(index, line_item, known)
        if outcome is None:
            continue
        if isinstance(outcome, AmbiguousInventoryMatch):
            logger.warning(
                "Ambiguous inventory match for %r at %s (%d candidates); not deducting stock",
                outcome.description,
                outcome.unit_price,
                len(outcome.candidate_ids),
            )
            plan.ambiguous.append(outcome)
            continue
        plan.matches.append(outcome)
        plan.item_names[outcome.item_id] = known[outcome.item_id].name
        summed[outcome.item_id] = summed.get(outcome.item_id, Decimal("0")) + line_item.quantity

    for item_id, quantity in summed.items():
        if quantity != quantity.to_integral_value():
            raise DocumentValidationError(
                f"Stocked item {plan.item_names[item_id]} must be drawn in whole units, got {quantity}",
                code="fractional_stock_quantity",
            )
        plan.draws[item_id] = int(quantity)
    return plan


def diff_plans(previous: StockPlan, current: StockPlan) -> tuple[StockPlan, StockPlan]:
    """Split the change between two plans into (to_deduct, to_restock)."""
    to_deduct = StockPlan()
    to_restock = StockPlan()
    names = {**previous.item_names, **current.item_names}
    for item_id in dict.fromkeys([*previous.draws, *current.draws]):
        delta = current.draws.get(item_id, 0) - previous.draws.get(item_id, 0)
        if delta > 0:
            to_deduct.draws[item_id] = delta
            to_deduct.item_names[item_id] = names.get(item_id, item_id)
        elif delta < 0:
            to_restock.draws[item_id] = -delta
            to_restock.item_names[item_id] = names.get(item_id, item_id)
    return to_deduct, to_restock


def check_availability(plan: StockPlan, snapshot: Mapping[str, InventoryItem]) -> None:
    for item_id, requested in plan.draws.items():
        item = snapshot.get(item_id)
        if item is None:
            raise DocumentValidationError(
                f"Inventory item {item_id} no longer exists", code="unknown_inventory_item"
            )
        if requested > item.stock_level:
            raise InsufficientStockError(
                item.name, item.stock_level, requested, item_id=item_id
            )
