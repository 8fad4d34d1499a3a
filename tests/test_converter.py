from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing.converter import convert_estimate
from billing.errors import ConversionError
from schemas.document_schema import EstimateRecord, InventoryReference, LineItem

_NOW = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


def _estimate(status: str = "approved", **overrides: object) -> EstimateRecord:
    fields: dict[str, object] = {
        "id": "est_abc",
        "document_number": "EST-ABC",
        "customer_id": "cust-1",
        "job_id": "job-9",
        "line_items": [
            LineItem(description="Install", quantity=Decimal("3"), unit_price=Decimal("80")),
            LineItem(
                description="Filter",
                quantity=Decimal("2"),
                unit_price=Decimal("12.50"),
                category="Materials",
                inventory_reference=InventoryReference(item_id="itm-filter", name="Filter"),
            ),
            LineItem(description="Trip", quantity=Decimal("1"), unit_price=Decimal("45"), category="Travel"),
        ],
        "tax_rate": Decimal("9.25"),
        "discount": Decimal("20.00"),
        "notes": "Side entrance",
        "created_at": _NOW - timedelta(days=3),
        "updated_at": _NOW - timedelta(days=1),
        "subtotal": Decimal("310.00"),
        "tax_amount": Decimal("26.83"),
        "total": Decimal("316.83"),
        "status": status,
        "expires_at": _NOW + timedelta(days=27),
    }
    fields.update(overrides)
    return EstimateRecord(**fields)


def test_conversion_copies_lines_and_sets_terms() -> None:
    estimate = _estimate()
    draft = convert_estimate(estimate, now=_NOW)

    assert len(draft.line_items) == 3
    assert [item.description for item in draft.line_items] == ["Install", "Filter", "Trip"]
    assert [item.quantity for item in draft.line_items] == [Decimal("3"), Decimal("2"), Decimal("1")]
    assert all(item.inventory_reference is None for item in draft.line_items)
    assert draft.discount == Decimal("20.00")
    assert draft.tax_rate == Decimal("9.25")
    assert draft.customer_id == "cust-1"
    assert draft.job_id == "job-9"
    assert draft.due_date == date(2026, 4, 1)
    assert draft.payment_terms == "Net 30"
    assert draft.source_estimate_id == "est_abc"


def test_conversion_does_not_modify_estimate() -> None:
    estimate = _estimate()
    before = estimate.model_dump()
    convert_estimate(estimate, now=_NOW)
    assert estimate.model_dump() == before


def test_custom_net_terms() -> None:
    draft = convert_estimate(_estimate(), net_terms_days=15, now=_NOW)
    assert draft.due_date == date(2026, 3, 17)
    assert draft.payment_terms == "Net 15"


@pytest.mark.parametrize("status", ["draft", "sent", "rejected", "expired"])
def test_only_approved_estimates_convert(status: str) -> None:
    with pytest.raises(ConversionError, match="not approved"):
        convert_estimate(_estimate(status=status), now=_NOW)


def test_already_converted_estimate_is_rejected() -> None:
    with pytest.raises(ConversionError, match="already converted"):
        convert_estimate(_estimate(converted_invoice_id="inv_123"), now=_NOW)
