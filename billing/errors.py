from __future__ import annotations

from decimal import Decimal
from typing import Any


class EngineError(RuntimeError):
    code = "engine_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self), **self.details()}


class DocumentValidationError(EngineError):
    code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        violations: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.violations = violations or []

    def details(self) -> dict[str, Any]:
        if not self.violations:
            return {}
        return {"violations": self.violations}


class DocumentLockedError(DocumentValidationError):
    code = "document_locked"


class InsufficientStockError(EngineError):
    code = "insufficient_stock"

    def __init__(
        self,
        item: str,
        available: int,
        requested: Decimal | int,
        *,
        item_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Insufficient stock for {item}. Available: {available}, Requested: {requested}"
        )
        self.item = item
        self.available = available
        self.requested = requested
        self.item_id = item_id

    def details(self) -> dict[str, Any]:
        return {
            "item": self.item,
            "item_id": self.item_id,
            "available": self.available,
            "requested": str(self.requested),
        }


class InvalidTransitionError(EngineError):
    code = "invalid_transition"

    def __init__(self, current: str, requested: str, reason: str | None = None) -> None:
        message = f"Invalid transition: {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.current = current
        self.requested = requested
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"current": self.current, "requested": self.requested, "reason": self.reason}


class ConversionError(EngineError):
    code = "conversion_error"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Cannot convert estimate: {reason}")
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"reason": self.reason}


class DocumentNotFoundError(EngineError):
    code = "not_found"

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class InventoryItemNotFoundError(EngineError):
    code = "inventory_item_not_found"

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Inventory item not found: {item_id}")
        self.item_id = item_id


class DeleteNotAllowedError(EngineError):
    code = "delete_not_allowed"

    def __init__(self, document_id: str, reason: str) -> None:
        super().__init__(f"Document {document_id} cannot be deleted: {reason}")
        self.document_id = document_id
        self.reason = reason


class StockContentionError(EngineError):
    code = "stock_contention"

    def __init__(self, item_id: str, attempts: int) -> None:
        super().__init__(f"Stock update for {item_id} lost {attempts} compare-and-set races")
        self.item_id = item_id
        self.attempts = attempts


class RepositoryError(EngineError):
    code = "repository_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
