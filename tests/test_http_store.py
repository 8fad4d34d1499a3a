from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest
import requests

from billing.errors import ConversionError, DocumentNotFoundError, InventoryItemNotFoundError, RepositoryError
from billing.http_store import HttpApiClient, HttpDocumentRepository, HttpInventoryRepository
from billing.retry_utils import RetryPolicy
from schemas.document_schema import EstimateRecord, InvoiceRecord, LineItem

_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _FakeResponse:
    def __init__(self, status_code: int, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self) -> Any:
        return self._payload


class _FakeSession:
    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(session: _FakeSession) -> HttpApiClient:
    return HttpApiClient(
        "https://store.example/api/",
        "secret",
        session=session,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.001),
        sleep_fn=lambda _: None,
    )


def _estimate() -> EstimateRecord:
    return EstimateRecord(
        id="est_1",
        document_number="EST-1",
        customer_id="cust-1",
        line_items=[LineItem(description="Labor", quantity=Decimal("1"), unit_price=Decimal("90"))],
        tax_rate=Decimal("0"),
        created_at=_NOW,
        updated_at=_NOW,
        subtotal=Decimal("90.00"),
        tax_amount=Decimal("0.00"),
        total=Decimal("90.00"),
        expires_at=_NOW,
    )


def test_client_sends_token_and_retries_server_errors() -> None:
    session = _FakeSession(
        [
            requests.ConnectionError("reset"),
            _FakeResponse(503, {"detail": "busy"}),
            _FakeResponse(200, [{"id": 7, "name": "Filter", "cost_per_unit": "12.50", "stock_level": 4}]),
        ]
    )
    items = HttpInventoryRepository(_client(session)).list_items()

    assert items[0].id == "7"
    assert items[0].unit_cost == Decimal("12.50")
    assert len(session.calls) == 3
    assert session.calls[0]["url"] == "https://store.example/api/inventory/"
    assert session.calls[0]["headers"]["Authorization"] == "Token secret"


def test_client_gives_up_after_retries() -> None:
    session = _FakeSession([_FakeResponse(500, {}), _FakeResponse(502, {}), _FakeResponse(500, {})])

    with pytest.raises(RepositoryError) as exc_info:
        HttpInventoryRepository(_client(session)).list_items()
    assert exc_info.value.status_code == 500


def test_compare_and_set_uses_if_match_precondition() -> None:
    session = _FakeSession([_FakeResponse(200, {}), _FakeResponse(412, {}), _FakeResponse(404, {})])
    repo = HttpInventoryRepository(_client(session))

    assert repo.compare_and_set_stock("itm-1", 5, 2)
    assert not repo.compare_and_set_stock("itm-1", 5, 2)
    with pytest.raises(InventoryItemNotFoundError):
        repo.compare_and_set_stock("itm-1", 2, 1)

    first = session.calls[0]
    assert first["method"] == "PATCH"
    assert first["json"] == {"stock_level": 2}
    assert first["headers"]["If-Match"] == '"stock_level=5"'


def test_document_crud_paths() -> None:
    estimate = _estimate()
    stored = estimate.model_dump(mode="json")
    session = _FakeSession(
        [
            _FakeResponse(201, stored),
            _FakeResponse(200, stored),
            _FakeResponse(200, {"results": [stored]}),
            _FakeResponse(404, {}),
        ]
    )
    repo = HttpDocumentRepository(_client(session))

    assert repo.add(estimate).model_dump() == estimate.model_dump()
    assert repo.get("est_1").model_dump() == estimate.model_dump()
    assert [d.id for d in repo.list(kind="estimate", status="draft")] == ["est_1"]
    with pytest.raises(DocumentNotFoundError):
        repo.get("est_missing")

    assert [call["method"] for call in session.calls] == ["POST", "GET", "GET", "GET"]
    assert session.calls[1]["url"].endswith("/estimates/est_1/")
    assert session.calls[2]["params"] == {"status": "draft"}


def test_duplicate_conversion_maps_conflict() -> None:
    invoice = InvoiceRecord(
        id="inv_1",
        document_number="INV-1",
        customer_id="cust-1",
        line_items=[LineItem(description="Labor", quantity=Decimal("1"), unit_price=Decimal("90"))],
        tax_rate=Decimal("0"),
        created_at=_NOW,
        updated_at=_NOW,
        subtotal=Decimal("90.00"),
        tax_amount=Decimal("0.00"),
        total=Decimal("90.00"),
        due_date=_NOW.date(),
        balance_due=Decimal("90.00"),
        source_estimate_id="est_1",
    )
    session = _FakeSession([_FakeResponse(409, {"detail": "exists"})])

    with pytest.raises(ConversionError):
        HttpDocumentRepository(_client(session)).add(invoice)
