from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from fastapi.testclient import TestClient

from billing.api import create_app
from billing.repository import InMemoryDocumentRepository, InMemoryInventoryRepository
from billing.service import DocumentService
from schemas.document_schema import InventoryItem

_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _client(stock_level: int = 5) -> TestClient:
    inventory = InMemoryInventoryRepository(
        [InventoryItem(id="itm-filter", name="Filter", unit_cost=Decimal("12.50"), stock_level=stock_level)]
    )
    service = DocumentService(InMemoryDocumentRepository(), inventory, clock=lambda: _NOW)
    return TestClient(create_app(service))


def _lines() -> list[dict[str, str]]:
    return [
        {"description": "Labor", "quantity": "2", "unit_price": "50"},
        {"description": "Materials", "quantity": "3", "unit_price": "10", "category": "Materials"},
    ]


def test_health_and_totals_preview() -> None:
    client = _client()

    assert client.get("/health").json() == {"status": "ok"}
    response = client.post("/totals", json={"line_items": _lines(), "tax_rate": "9.25"})

    assert response.status_code == 200
    assert response.json()["subtotal"] == "130.00"
    assert response.json()["tax_amount"] == "12.03"
    assert response.json()["total"] == "142.03"


def test_estimate_lifecycle_and_conversion() -> None:
    client = _client()
    created = client.post("/estimates", json={"customer_id": "cust-1", "line_items": _lines(), "discount": "20"})
    assert created.status_code == 201
    estimate_id = created.json()["id"]

    for status in ("sent", "approved"):
        moved = client.post(f"/documents/{estimate_id}/transitions", json={"status": status})
        assert moved.status_code == 200
        assert moved.json()["status"] == status

    converted = client.post(f"/estimates/{estimate_id}/convert")
    assert converted.status_code == 201
    assert converted.json()["status"] == "draft"
    assert converted.json()["source_estimate_id"] == estimate_id
    assert converted.json()["due_date"] == "2026-04-01"

    again = client.post(f"/estimates/{estimate_id}/convert")
    assert again.status_code == 409
    assert again.json()["error"] == "conversion_error"

    listed = client.get("/documents", params={"kind": "invoice"})
    assert listed.json()["count"] == 1
    assert client.get("/metrics").json()["conversions_total"] == 1


def test_error_responses_carry_codes() -> None:
    client = _client()

    missing = client.get("/documents/inv_missing")
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"

    invalid = client.post("/invoices", json={"customer_id": "cust-1", "line_items": []})
    assert invalid.status_code == 422
    assert invalid.json()["violations"][0]["field"] == "line_items"

    short = client.post(
        "/invoices",
        json={
            "customer_id": "cust-1",
            "line_items": [{"description": "Filter", "quantity": "6", "unit_price": "12.50"}],
        },
    )
    assert short.status_code == 409
    assert short.json() == {
        "error": "insufficient_stock",
        "message": "Insufficient stock for Filter. Available: 5, Requested: 6",
        "item": "Filter",
        "item_id": "itm-filter",
        "available": 5,
        "requested": "6",
    }


def test_invoice_payment_patch_and_delete() -> None:
    client = _client()
    invoice = client.post(
        "/invoices", json={"customer_id": "cust-1", "line_items": _lines(), "tax_rate": "0"}
    ).json()

    patched = client.patch(f"/documents/{invoice['id']}", json={"notes": "gate code 1234"})
    assert patched.json()["notes"] == "gate code 1234"

    draft_paid = client.post(f"/documents/{invoice['id']}/transitions", json={"status": "paid"})
    assert draft_paid.status_code == 409
    assert draft_paid.json()["current"] == "draft"

    client.post(f"/documents/{invoice['id']}/transitions", json={"status": "sent"})
    paid = client.post(f"/documents/{invoice['id']}/payments", json={"amount": "130.00", "method": "check"})
    assert paid.json()["status"] == "paid"
    assert paid.json()["balance_due"] == "0.00"

    refused = client.delete(f"/documents/{invoice['id']}")
    assert refused.status_code == 409

    other = client.post("/invoices", json={"customer_id": "cust-1", "line_items": _lines()}).json()
    assert client.delete(f"/documents/{other['id']}").status_code == 204
    assert client.get(f"/documents/{other['id']}").status_code == 404


def test_transition_requires_status() -> None:
    client = _client()
    estimate = client.post("/estimates", json={"customer_id": "cust-1", "line_items": _lines()}).json()

    response = client.post(f"/documents/{estimate['id']}/transitions", json={})
    assert response.status_code == 422
    assert response.json()["error"] == "missing_field"
