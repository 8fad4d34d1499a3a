from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from billing.errors import ConversionError, DocumentNotFoundError, InventoryItemNotFoundError
from billing.repository import Document
from schemas.document_schema import InventoryItem, InvoiceRecord, document_adapter


class _SqliteStore:
    def __init__(self, db_path: str | Path = "data/billing.db") -> None:
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    source_estimate_id TEXT,
                    payload TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS documents_source_estimate
                ON documents (source_estimate_id)
                WHERE source_estimate_id IS NOT NULL
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS inventory_items (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    sku TEXT,
                    unit_cost TEXT NOT NULL,
                    stock_level INTEGER NOT NULL CHECK (stock_level >= 0),
                    updated_at_utc TEXT NOT NULL
                )
                """
            )


class SqliteDocumentRepository(_SqliteStore):
    def add(self, document: Document) -> Document:
        now = datetime.now(timezone.utc).isoformat()
        source = getattr(document, "source_estimate_id", None)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO documents
                    (id, kind, status, source_estimate_id, payload, created_at_utc, updated_at_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document.id,
                        document.kind,
                        document.status,
                        source,
                        document.model_dump_json(),
                        document.created_at.isoformat(),
                        now,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if source and "source_estimate_id" in str(exc):
                raise ConversionError(f"estimate {source} already converted") from exc
            raise
        return document

    def update(self, document: Document) -> Document:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE documents
                SET status = ?, payload = ?, updated_at_utc = ?
                WHERE id = ?
                """,
                (document.status, document.model_dump_json(), now, document.id),
            )
            if cursor.rowcount != 1:
                raise DocumentNotFoundError(document.id)
        return document

    def get(self, document_id: str) -> Document:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        if not row:
            raise DocumentNotFoundError(document_id)
        return document_adapter.validate_json(row[0])

    def delete(self, document_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            if cursor.rowcount != 1:
                raise DocumentNotFoundError(document_id)

    def list(self, kind: str | None = None, status: str | None = None) -> list[Document]:
        query = "SELECT payload FROM documents WHERE 1 = 1"
        params: list[str] = []
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at_utc, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [document_adapter.validate_json(row[0]) for row in rows]

    def find_by_source_estimate(self, estimate_id: str) -> InvoiceRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM documents WHERE source_estimate_id = ?", (estimate_id,)
            ).fetchone()
        if not row:
            return None
        document = document_adapter.validate_json(row[0])
        return document if isinstance(document, InvoiceRecord) else None


class SqliteInventoryRepository(_SqliteStore):
    def upsert_items(self, items: Iterable[InventoryItem]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            for item in items:
                conn.execute(
                    """
                    INSERT INTO inventory_items (id, name, sku, unit_cost, stock_level, updated_at_utc)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        name = excluded.name,
                        sku = excluded.sku,
                        unit_cost = excluded.unit_cost,
                        stock_level = excluded.stock_level,
                        updated_at_utc = excluded.updated_at_utc
                    """,
                    (item.id, item.name, item.sku, str(item.unit_cost), item.stock_level, now),
                )
            conn.execute("COMMIT")

    def list_items(self) -> list[InventoryItem]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, sku, unit_cost, stock_level FROM inventory_items ORDER BY id"
            ).fetchall()
        return [_to_item(row) for row in rows]

    def get_item(self, item_id: str) -> InventoryItem:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, sku, unit_cost, stock_level FROM inventory_items WHERE id = ?",
                (item_id,),
            ).fetchone()
        if not row:
            raise InventoryItemNotFoundError(item_id)
        return _to_item(row)

    def compare_and_set_stock(self, item_id: str, expected: int, new_level: int) -> bool:
        if new_level < 0:
            raise ValueError("stock_level must not go below zero")
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE inventory_items
                SET stock_level = ?, updated_at_utc = ?
                WHERE id = ? AND stock_level = ?
                """,
                (new_level, now, item_id, expected),
            )
            if cursor.rowcount == 1:
                conn.execute("COMMIT")
                return True
            exists = conn.execute(
                "SELECT 1 FROM inventory_items WHERE id = ?", (item_id,)
            ).fetchone()
            conn.execute("COMMIT")
        if not exists:
            raise InventoryItemNotFoundError(item_id)
        return False


def _to_item(row: tuple) -> InventoryItem:
    item_id, name, sku, unit_cost, stock_level = row
    return InventoryItem(
        id=item_id, name=name, sku=sku, unit_cost=Decimal(unit_cost), stock_level=stock_level
    )
