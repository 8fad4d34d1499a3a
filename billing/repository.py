"""Persistence ports and the in-memory adapters.

The engine only talks to these protocols. SQLite and HTTP adapters live in
``billing.sqlite_store`` and ``billing.http_store``.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Protocol

from billing.errors import ConversionError, DocumentNotFoundError, InventoryItemNotFoundError
from schemas.document_schema import EstimateRecord, InventoryItem, InvoiceRecord

Document = EstimateRecord | InvoiceRecord


class DocumentRepository(Protocol):
    def add(self, document: Document) -> Document: ...

    def update(self, document: Document) -> Document: ...

    def get(self, document_id: str) -> Document: ...

    def delete(self, document_id: str) -> None: ...

    def list(self, kind: str | None = None, status: str | None = None) -> list[Document]: ...

    def find_by_source_estimate(self, estimate_id: str) -> InvoiceRecord | None: ...


class InventoryRepository(Protocol):
    def list_items(self) -> list[InventoryItem]: ...

    def get_item(self, item_id: str) -> InventoryItem: ...

    def compare_and_set_stock(self, item_id: str, expected: int, new_level: int) -> bool:
        """Write ``new_level`` only if the stored level still equals ``expected``."""


class InMemoryDocumentRepository:
    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._lock = threading.Lock()

    def add(self, document: Document) -> Document:
        with self._lock:
            if document.id in self._documents:
                raise ValueError(f"Document already exists: {document.id}")
            source = getattr(document, "source_estimate_id", None)
            if source and any(
                getattr(doc, "source_estimate_id", None) == source
                for doc in self._documents.values()
            ):
                raise ConversionError(f"estimate {source} already converted")
            self._documents[document.id] = document.model_copy(deep=True)
        return document.model_copy(deep=True)

    def update(self, document: Document) -> Document:
        with self._lock:
            if document.id not in self._documents:
                raise DocumentNotFoundError(document.id)
            self._documents[document.id] = document.model_copy(deep=True)
        return document.model_copy(deep=True)

    def get(self, document_id: str) -> Document:
        with self._lock:
            document = self._documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document.model_copy(deep=True)

    def delete(self, document_id: str) -> None:
        with self._lock:
            if self._documents.pop(document_id, None) is None:
                raise DocumentNotFoundError(document_id)

    def list(self, kind: str | None = None, status: str | None = None) -> list[Document]:
        with self._lock:
            documents = list(self._documents.values())
        return [
            doc.model_copy(deep=True)
            for doc in sorted(documents, key=lambda d: d.created_at)
            if (kind is None or doc.kind == kind) and (status is None or doc.status == status)
        ]

    def find_by_source_estimate(self, estimate_id: str) -> InvoiceRecord | None:
        with self._lock:
            for doc in self._documents.values():
                if isinstance(doc, InvoiceRecord) and doc.source_estimate_id == estimate_id:
                    return doc.model_copy(deep=True)
        return None


class InMemoryInventoryRepository:
    def __init__(self, items: Iterable[InventoryItem] = ()) -> None:
        self._items: dict[str, InventoryItem] = {item.id: item.model_copy() for item in items}
        self._lock = threading.Lock()

    def add_item(self, item: InventoryItem) -> InventoryItem:
        with self._lock:
            self._items[item.id] = item.model_copy()
        return item

    def list_items(self) -> list[InventoryItem]:
        with self._lock:
            return [item.model_copy() for item in self._items.values()]

    def get_item(self, item_id: str) -> InventoryItem:
        with self._lock:
            item = self._items.get(item_id)
        if item is None:
            raise InventoryItemNotFoundError(item_id)
        return item.model_copy()

    def compare_and_set_stock(self, item_id: str, expected: int, new_level: int) -> bool:
        if new_level < 0:
            raise ValueError("stock_level must not go below zero")
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise InventoryItemNotFoundError(item_id)
            if item.stock_level != expected:
                return False
            self._items[item_id] = item.model_copy(update={"stock_level": new_level})
            return True
