from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from billing.errors import (
    ConversionError,
    DeleteNotAllowedError,
    DocumentLockedError,
    DocumentNotFoundError,
    DocumentValidationError,
    EngineError,
    InsufficientStockError,
    InvalidTransitionError,
    InventoryItemNotFoundError,
    RepositoryError,
    StockContentionError,
)
from billing.service import DocumentService

logger = logging.getLogger(__name__)

_STATUS_CODES: tuple[tuple[type[EngineError], int], ...] = (
    (DocumentNotFoundError, 404),
    (InventoryItemNotFoundError, 404),
    (DocumentLockedError, 409),
    (InvalidTransitionError, 409),
    (ConversionError, 409),
    (InsufficientStockError, 409),
    (DeleteNotAllowedError, 409),
    (StockContentionError, 409),
    (DocumentValidationError, 422),
    (RepositoryError, 502),
)


def status_code_for(exc: EngineError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _dump(document: Any) -> dict[str, Any]:
    return document.model_dump(mode="json")


def create_app(service: DocumentService) -> FastAPI:
    app = FastAPI(title="Trades Billing Engine API", version="0.1.0")

    @app.exception_handler(EngineError)
    def handle_engine_error(request: Request, exc: EngineError) -> JSONResponse:
        status_code = status_code_for(exc)
        logger.info("%s %s -> %d %s", request.method, request.url.path, status_code, exc.code)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return service.metrics.snapshot()

    @app.post("/totals")
    def totals(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        if "tax_rate" not in payload:
            raise DocumentValidationError("tax_rate is required", code="missing_field")
        result = service.compute_totals(
            payload.get("line_items") or [],
            payload["tax_rate"],
            payload.get("discount", "0"),
        )
        return _dump(result)

    @app.post("/estimates", status_code=201)
    def create_estimate(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        return _dump(service.create_document("estimate", payload))

    @app.post("/invoices", status_code=201)
    def create_invoice(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        return _dump(service.create_document("invoice", payload))

    @app.get("/documents")
    def list_documents(kind: str | None = None, status: str | None = None) -> dict[str, Any]:
        documents = service.list_documents(kind=kind, status=status)
        return {"count": len(documents), "items": [_dump(doc) for doc in documents]}

    @app.get("/documents/{document_id}")
    def get_document(document_id: str) -> dict[str, Any]:
        return _dump(service.get_document(document_id))

    @app.patch("/documents/{document_id}")
    def update_document(document_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        return _dump(service.update_document(document_id, payload))

    @app.post("/documents/{document_id}/transitions")
    def transition(document_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        target = payload.get("status")
        if not isinstance(target, str) or not target.strip():
            raise DocumentValidationError("status is required", code="missing_field")
        return _dump(service.transition_status(document_id, target, payload.get("payment")))

    @app.post("/documents/{document_id}/payments")
    def record_payment(document_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        return _dump(service.record_payment(document_id, payload))

    @app.post("/estimates/{estimate_id}/convert", status_code=201)
    def convert(estimate_id: str) -> dict[str, Any]:
        return _dump(service.convert_estimate_to_invoice(estimate_id))

    @app.delete("/documents/{document_id}", status_code=204)
    def delete_document(document_id: str) -> Response:
        service.delete_document(document_id)
        return Response(status_code=204)

    return app
