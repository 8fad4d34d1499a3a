from __future__ import annotations

from decimal import Decimal

import pytest

from billing.errors import DocumentValidationError, InsufficientStockError
from billing.matching import (
    AmbiguousInventoryMatch,
    ExplicitReferencePolicy,
    NameAndPriceFallbackPolicy,
    StockPlan,
    check_availability,
    diff_plans,
    match_line_items,
    policy_from_name,
)
from schemas.document_schema import InventoryItem, InventoryReference, LineItem


def _inventory() -> list[InventoryItem]:
    return [
        InventoryItem(id="itm-filter", name="Filter", unit_cost=Decimal("12.50"), stock_level=5),
        InventoryItem(id="itm-valve", name="Valve", unit_cost=Decimal("40.00"), stock_level=2),
        InventoryItem(id="itm-valve-b", name="Valve", unit_cost=Decimal("40.00"), stock_level=9),
    ]


def _line(description: str, quantity: str, price: str, ref: str | None = None) -> LineItem:
    reference = InventoryReference(item_id=ref, name=description) if ref else None
    return LineItem(
        description=description,
        quantity=Decimal(quantity),
        unit_price=Decimal(price),
        category="Materials",
        inventory_reference=reference,
    )


def test_explicit_reference_is_matched() -> None:
    plan = match_line_items([_line("Furnace filter", "2", "15.00", ref="itm-filter")], _inventory())

    assert plan.draws == {"itm-filter": 2}
    assert plan.item_names == {"itm-filter": "Filter"}
    assert plan.matches[0].source == "reference"


def test_fallback_matches_name_and_price() -> None:
    plan = match_line_items([_line("Filter", "3", "12.50")], _inventory())

    assert plan.draws == {"itm-filter": 3}
    assert plan.matches[0].source == "fallback"


def test_fallback_requires_exact_price() -> None:
    plan = match_line_items([_line("Filter", "3", "12.00")], _inventory())
    assert plan.is_empty


def test_ambiguous_fallback_skips_deduction() -> None:
    plan = match_line_items([_line("Valve", "1", "40.00")], _inventory())

    assert plan.draws == {}
    assert plan.ambiguous == [
        AmbiguousInventoryMatch(
            description="Valve",
            unit_price=Decimal("40.00"),
            candidate_ids=("itm-valve", "itm-valve-b"),
        )
    ]


def test_explicit_policy_ignores_unreferenced_lines() -> None:
    plan = match_line_items([_line("Filter", "3", "12.50")], _inventory(), ExplicitReferencePolicy())
    assert plan.is_empty


def test_unknown_reference_is_rejected() -> None:
    with pytest.raises(DocumentValidationError) as exc_info:
        match_line_items([_line("Widget", "1", "1.00", ref="itm-missing")], _inventory())
    assert exc_info.value.code == "unknown_inventory_item"


def test_quantities_are_summed_per_item() -> None:
    plan = match_line_items(
        [_line("Filter", "2", "12.50"), _line("Spare filter", "1", "0", ref="itm-filter")],
        _inventory(),
    )
    assert plan.draws == {"itm-filter": 3}


def test_fractional_stock_draw_is_rejected() -> None:
    with pytest.raises(DocumentValidationError) as exc_info:
        match_line_items([_line("Filter", "1.5", "12.50")], _inventory())
    assert exc_info.value.code == "fractional_stock_quantity"


def test_policy_from_name() -> None:
    assert isinstance(policy_from_name("fallback"), NameAndPriceFallbackPolicy)
    assert isinstance(policy_from_name("EXPLICIT"), ExplicitReferencePolicy)
    with pytest.raises(ValueError, match="Unknown match policy"):
        policy_from_name("fuzzy")


def test_diff_plans_splits_deductions_and_restocks() -> None:
    previous = StockPlan.from_allocations({"itm-filter": 3, "itm-valve": 1})
    current = StockPlan.from_allocations({"itm-filter": 5, "itm-hose": 2})

    to_deduct, to_restock = diff_plans(previous, current)

    assert to_deduct.draws == {"itm-filter": 2, "itm-hose": 2}
    assert to_restock.draws == {"itm-valve": 1}


def test_check_availability_reports_shortfall() -> None:
    snapshot = {item.id: item for item in _inventory()}
    plan = StockPlan(draws={"itm-filter": 6}, item_names={"itm-filter": "Filter"})

    with pytest.raises(InsufficientStockError) as exc_info:
        check_availability(plan, snapshot)

    assert str(exc_info.value) == "Insufficient stock for Filter. Available: 5, Requested: 6"
    assert exc_info.value.item_id == "itm-filter"
