"""Adapters for the remote document store's HTTP/JSON CRUD API.

Resources live under ``{base_url}/estimates/``, ``{base_url}/invoices/`` and
``{base_url}/inventory/``. Stock changes are single-field PATCHes guarded by
an ``If-Match`` precondition on the current stock level; the server answers
409 or 412 when the precondition no longer holds.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests

from billing.errors import (
    ConversionError,
    DocumentNotFoundError,
    InventoryItemNotFoundError,
    RepositoryError,
)
from billing.repository import Document
from billing.retry_utils import RetryExhaustedError, RetryPolicy, run_with_retry
from schemas.document_schema import InventoryItem, InvoiceRecord, document_adapter

logger = logging.getLogger(__name__)

_COLLECTIONS = {"estimate": "estimates", "invoice": "invoices"}
_ID_PREFIXES = {"est_": "estimate", "inv_": "invoice"}


class HttpApiClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        session: Any | None = None,
        timeout: int = 30,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required for the HTTP store")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._session = session or requests.Session()
        self._timeout = timeout
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay_seconds=0.5)
        self._sleep_fn = sleep_fn

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Token {self._token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send one request, retrying transport failures and 5xx responses.

        Returns the raw response for any status below 500 so callers can map
        404/409/412 onto domain outcomes.
        """
        url = f"{self._base_url}/{path.lstrip('/')}"

        def _send() -> Any:
            try:
                response = self._session.request(
                    method,
                    url,
                    headers=self._headers(headers),
                    json=json,
                    params=params,
                    timeout=self._timeout,
                )
            except requests.RequestException as exc:
                raise RepositoryError(f"{method} {url} failed: {exc}", retryable=True) from exc
            if response.status_code >= 500:
                raise RepositoryError(
                    f"{method} {url} failed with status {response.status_code}: {response.text[:300]}",
                    status_code=response.status_code,
                    retryable=True,
                )
            return response

        try:
            return run_with_retry(
                _send,
                should_retry=lambda exc: isinstance(exc, RepositoryError) and exc.retryable,
                policy=self._retry_policy,
                sleep_fn=self._sleep_fn,
            )
        except RetryExhaustedError as exc:
            cause = exc.__cause__
            status_code = cause.status_code if isinstance(cause, RepositoryError) else None
            raise RepositoryError(str(cause or exc), status_code=status_code) from exc


def _raise_for_status(response: Any, context: str) -> None:
    if response.status_code >= 400:
        raise RepositoryError(
            f"{context} failed with status {response.status_code}: {response.text[:300]}",
            status_code=response.status_code,
        )


def _kind_for_id(document_id: str) -> str | None:
    for prefix, kind in _ID_PREFIXES.items():
        if document_id.startswith(prefix):
            return kind
    return None


def _results(payload: Any) -> list[dict[str, Any]]:
    # list endpoints answer either a bare list or a paginated {"results": [...]}
    if isinstance(payload, dict):
        return list(payload.get("results", []))
    return list(payload or [])


class HttpDocumentRepository:
    def __init__(self, client: HttpApiClient) -> None:
        self._client = client

    def _path(self, kind: str, document_id: str | None = None) -> str:
        collection = _COLLECTIONS[kind]
        return f"{collection}/{document_id}/" if document_id else f"{collection}/"

    def add(self, document: Document) -> Document:
        response = self._client.request(
            "POST", self._path(document.kind), json=document.model_dump(mode="json")
        )
        if response.status_code == 409 and getattr(document, "source_estimate_id", None):
            raise ConversionError(f"estimate {document.source_estimate_id} already converted")
        _raise_for_status(response, f"create {document.kind}")
        return document_adapter.validate_python(response.json())

    def update(self, document: Document) -> Document:
        response = self._client.request(
            "PUT", self._path(document.kind, document.id), json=document.model_dump(mode="json")
        )
        if response.status_code == 404:
            raise DocumentNotFoundError(document.id)
        _raise_for_status(response, f"update {document.kind}")
        return document_adapter.validate_python(response.json())

    def get(self, document_id: str) -> Document:
        kind = _kind_for_id(document_id)
        for candidate in [kind] if kind else list(_COLLECTIONS):
            response = self._client.request("GET", self._path(candidate, document_id))
            if response.status_code == 404:
                continue
            _raise_for_status(response, f"read {candidate}")
            return document_adapter.validate_python(response.json())
        raise DocumentNotFoundError(document_id)

    def delete(self, document_id: str) -> None:
        document = self.get(document_id)
        response = self._client.request("DELETE", self._path(document.kind, document_id))
        if response.status_code == 404:
            raise DocumentNotFoundError(document_id)
        _raise_for_status(response, f"delete {document.kind}")

    def list(self, kind: str | None = None, status: str | None = None) -> list[Document]:
        params = {"status": status} if status else None
        documents: list[Document] = []
        for candidate in [kind] if kind else list(_COLLECTIONS):
            response = self._client.request("GET", self._path(candidate), params=params)
            _raise_for_status(response, f"list {candidate}")
            documents.extend(document_adapter.validate_python(row) for row in _results(response.json()))
        return documents

    def find_by_source_estimate(self, estimate_id: str) -> InvoiceRecord | None:
        response = self._client.request(
            "GET", self._path("invoice"), params={"source_estimate_id": estimate_id}
        )
        _raise_for_status(response, "lookup invoice by estimate")
        for row in _results(response.json()):
            document = document_adapter.validate_python(row)
            if isinstance(document, InvoiceRecord) and document.source_estimate_id == estimate_id:
                return document
        return None


class HttpInventoryRepository:
    def __init__(self, client: HttpApiClient) -> None:
        self._client = client

    def list_items(self) -> list[InventoryItem]:
        response = self._client.request("GET", "inventory/")
        _raise_for_status(response, "list inventory")
        return [_to_item(row) for row in _results(response.json())]

    def get_item(self, item_id: str) -> InventoryItem:
        response = self._client.request("GET", f"inventory/{item_id}/")
        if response.status_code == 404:
            raise InventoryItemNotFoundError(item_id)
        _raise_for_status(response, "read inventory item")
        return _to_item(response.json())

    def compare_and_set_stock(self, item_id: str, expected: int, new_level: int) -> bool:
        if new_level < 0:
            raise ValueError("stock_level must not go below zero")
        response = self._client.request(
            "PATCH",
            f"inventory/{item_id}/",
            json={"stock_level": new_level},
            headers={"If-Match": f'"stock_level={expected}"'},
        )
        if response.status_code in (409, 412):
            logger.info("Stock precondition failed for %s (expected %d)", item_id, expected)
            return False
        if response.status_code == 404:
            raise InventoryItemNotFoundError(item_id)
        _raise_for_status(response, "update inventory stock")
        return True


def _to_item(row: dict[str, Any]) -> InventoryItem:
    # the store names unit cost cost_per_unit
    payload = dict(row)
    if "unit_cost" not in payload and "cost_per_unit" in payload:
        payload["unit_cost"] = payload["cost_per_unit"]
    payload["id"] = str(payload["id"])
    return InventoryItem.model_validate(
        {key: payload.get(key) for key in ("id", "name", "sku", "unit_cost", "stock_level")}
    )
