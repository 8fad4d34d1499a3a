"""Document Service: the externally callable operations of the billing engine.

Each operation validates everything it can before touching storage. Stock is
drawn by invoices only; estimates are quotes and are checked for
availability without reserving anything. An invoice commit deducts stock
through the ledger first and saves the document second, restocking if the
save fails, so a document is never stored without its stock and stock is
never deducted without its document.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from billing.config import Settings
from billing.converter import convert_estimate
from billing.errors import (
    ConversionError,
    DeleteNotAllowedError,
    DocumentLockedError,
    DocumentValidationError,
    EngineError,
    InvalidTransitionError,
)
from billing.logger import log_document_event
from billing.matching import (
    MatchPolicy,
    NameAndPriceFallbackPolicy,
    StockPlan,
    check_availability,
    diff_plans,
    match_line_items,
    policy_from_name,
)
from billing.metrics import MetricsCollector
from billing.movement_journal import StockMovementJournal
from billing.repository import (
    Document,
    DocumentRepository,
    InMemoryDocumentRepository,
    InMemoryInventoryRepository,
    InventoryRepository,
)
from billing.retry_utils import RetryPolicy
from billing.state_machine import is_terminal, transition_state
from billing.stock_ledger import KeyedLocks, StockLedger
from billing.totals import compute_totals, evaluate_totals_rules
from schemas.document_schema import (
    DocumentPatch,
    EstimateDraft,
    EstimateRecord,
    InvoiceDraft,
    InvoiceRecord,
    LineItem,
    PaymentInfo,
    Totals,
)

logger = logging.getLogger(__name__)

_DRAFT_MODELS: dict[str, type[EstimateDraft] | type[InvoiceDraft]] = {
    "estimate": EstimateDraft,
    "invoice": InvoiceDraft,
}
_ID_PREFIX = {"estimate": "est", "invoice": "inv"}
_NUMBER_PREFIX = {"estimate": "EST", "invoice": "INV"}
# fields that change money or stock; see _money_locked
_LOCKED_FIELDS = {"line_items", "tax_rate", "discount", "customer_id"}
_REQUIRED_FIELDS = {
    "customer_id", "line_items", "tax_rate", "discount", "expires_at", "due_date", "payment_terms",
}
_KIND_ONLY_FIELDS = {"estimate": {"due_date", "payment_terms"}, "invoice": {"expires_at"}}


def _validate_model(model: type[BaseModel], payload: Any, what: str) -> Any:
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        violations = [
            {
                "code": "schema_validation_failed",
                "severity": "error",
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        first = violations[0]
        raise DocumentValidationError(
            f"Invalid {what}: {first['field']}: {first['message']}",
            violations=violations,
        ) from exc


def _money_locked(document: Document) -> bool:
    # an approved estimate stays editable until it has been converted
    if isinstance(document, EstimateRecord) and document.status == "approved":
        return document.converted_invoice_id is not None
    return is_terminal(document.kind, document.status)


def _normalize_kind(kind: str) -> str:
    normalized = str(kind).strip().lower()
    if normalized not in _DRAFT_MODELS:
        raise DocumentValidationError(f"Unknown document kind: {kind}", code="unknown_kind")
    return normalized


class DocumentService:
    def __init__(
        self,
        documents: DocumentRepository,
        inventory: InventoryRepository,
        *,
        ledger: StockLedger | None = None,
        match_policy: MatchPolicy | None = None,
        rounding: str = "half_up",
        discount_policy: str = "clamp",
        default_tax_rate: Decimal = Decimal("9.25"),
        net_terms_days: int = 30,
        payment_terms: str | None = None,
        estimate_valid_days: int = 30,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._documents = documents
        self._inventory = inventory
        self._metrics = metrics or MetricsCollector()
        self._ledger = ledger or StockLedger(inventory, metrics=self._metrics)
        self._policy = match_policy or NameAndPriceFallbackPolicy()
        self._rounding = rounding
        self._discount_policy = discount_policy
        self._default_tax_rate = default_tax_rate
        self._net_terms_days = net_terms_days
        self._payment_terms = payment_terms or f"Net {net_terms_days}"
        self._estimate_valid_days = estimate_valid_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._document_locks = KeyedLocks()
        self._conversion_locks = KeyedLocks()

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    # -- pure preview -------------------------------------------------

    def compute_totals(
        self,
        line_items: Iterable[LineItem | Mapping[str, Any]],
        tax_rate: Any,
        discount: Any = Decimal("0"),
    ) -> Totals:
        return compute_totals(
            line_items,
            tax_rate,
            discount,
            rounding=self._rounding,
            discount_policy=self._discount_policy,
        )

    # -- reads --------------------------------------------------------

    def get_document(self, document_id: str) -> Document:
        return self._documents.get(document_id)

    def list_documents(self, kind: str | None = None, status: str | None = None) -> list[Document]:
        normalized = _normalize_kind(kind) if kind else None
        return self._documents.list(kind=normalized, status=status.strip().lower() if status else None)

    # -- create -------------------------------------------------------

    def create_document(self, kind: str, draft: Any) -> Document:
        normalized = _normalize_kind(kind)
        model = _DRAFT_MODELS[normalized]
        validated = _validate_model(model, draft, f"{normalized} draft")
        if normalized == "estimate":
            return self._create_estimate(validated)
        return self._create_invoice(validated)

    def _new_identity(self, kind: str) -> tuple[str, str]:
        token = uuid4().hex
        return f"{_ID_PREFIX[kind]}_{token}", f"{_NUMBER_PREFIX[kind]}-{token[:8].upper()}"

    def _create_estimate(self, draft: EstimateDraft) -> EstimateRecord:
        now = self._clock()
        tax_rate = draft.tax_rate if draft.tax_rate is not None else self._default_tax_rate
        totals = self.compute_totals(draft.line_items, tax_rate, draft.discount)
        plan = self._plan(draft.line_items)
        check_availability(plan, self._ledger.snapshot(plan))

        document_id, number = self._new_identity("estimate")
        estimate = EstimateRecord(
            id=document_id,
            document_number=number,
            customer_id=draft.customer_id,
            job_id=draft.job_id,
            line_items=list(draft.line_items),
            tax_rate=tax_rate,
            discount=draft.discount,
            notes=draft.notes,
            created_at=now,
            updated_at=now,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total=totals.total,
            expires_at=draft.expires_at or now + timedelta(days=self._estimate_valid_days),
        )
        saved = self._documents.add(estimate)
        self._metrics.increment("documents_created_total")
        log_document_event(
            logger, logging.INFO, "Estimate created",
            document_id=saved.id, document_kind="estimate", status=saved.status,
            stage="create", outcome="success",
        )
        return saved

    def _create_invoice(self, draft: InvoiceDraft) -> InvoiceRecord:
        now = self._clock()
        tax_rate = draft.tax_rate if draft.tax_rate is not None else self._default_tax_rate
        totals = self.compute_totals(draft.line_items, tax_rate, draft.discount)
        plan = self._plan(draft.line_items)

        document_id, number = self._new_identity("invoice")
        invoice = InvoiceRecord(
            id=document_id,
            document_number=number,
            customer_id=draft.customer_id,
            job_id=draft.job_id,
            line_items=list(draft.line_items),
            tax_rate=tax_rate,
            discount=draft.discount,
            notes=draft.notes,
            created_at=now,
            updated_at=now,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total=totals.total,
            due_date=draft.due_date or (now + timedelta(days=self._net_terms_days)).date(),
            payment_terms=draft.payment_terms or self._payment_terms,
            balance_due=totals.total,
            source_estimate_id=draft.source_estimate_id,
            stock_allocations=dict(plan.draws),
        )
        saved = self._commit_with_stock(
            invoice.id, plan, StockPlan(), lambda: self._documents.add(invoice)
        )
        self._metrics.increment("documents_created_total")
        log_document_event(
            logger, logging.INFO, "Invoice created",
            document_id=saved.id, document_kind="invoice", status=saved.status,
            stage="create", outcome="success",
        )
        return saved

    def _plan(self, line_items: Iterable[LineItem]) -> StockPlan:
        plan = match_line_items(line_items, self._inventory.list_items(), self._policy)
        if plan.ambiguous:
            self._metrics.increment("ambiguous_matches_total", len(plan.ambiguous))
        return plan

    def _commit_with_stock(
        self,
        document_id: str,
        to_deduct: StockPlan,
        to_restock: StockPlan,
        persist: Callable[[], Document],
    ) -> Any:
        self._ledger.deduct(to_deduct, document_id=document_id)
        try:
            saved = persist()
        except Exception:
            logger.exception("Persisting %s failed; restoring stock", document_id)
            self._ledger.restock(to_deduct, document_id=document_id, movement="rollback")
            raise
        if not to_restock.is_empty:
            self._ledger.restock(to_restock, document_id=document_id)
        return saved

    # -- update -------------------------------------------------------

    def update_document(self, document_id: str, patch: Any) -> Document:
        validated: DocumentPatch = _validate_model(DocumentPatch, patch, "document patch")
        changes = validated.model_dump(exclude_unset=True)
        with self._document_locks.hold(document_id):
            current = self._documents.get(document_id)
            if not changes:
                return current

            misplaced = set(changes) & _KIND_ONLY_FIELDS[current.kind]
            if misplaced:
                raise DocumentValidationError(
                    f"{', '.join(sorted(misplaced))} cannot be set on an {current.kind}",
                    code="field_not_applicable",
                )
            cleared = sorted(name for name in _REQUIRED_FIELDS if name in changes and changes[name] is None)
            if cleared:
                raise DocumentValidationError(
                    f"{', '.join(cleared)} cannot be cleared", code="missing_field"
                )
            locked = set(changes) & _LOCKED_FIELDS
            if locked and _money_locked(current):
                state = current.status
                if isinstance(current, EstimateRecord) and current.converted_invoice_id:
                    state = f"{state} and converted"
                raise DocumentLockedError(
                    f"{current.kind} {current.id} is {state}; "
                    f"{', '.join(sorted(locked))} can no longer change",
                )

            # keep validated LineItem instances rather than their dumped dicts
            if "line_items" in changes:
                changes["line_items"] = list(validated.line_items or [])
            line_items = changes.get("line_items", current.line_items)
            tax_rate = changes.get("tax_rate", current.tax_rate)
            discount = changes.get("discount", current.discount)
            totals = self.compute_totals(line_items, tax_rate, discount)
            changes.update(
                subtotal=totals.subtotal,
                tax_amount=totals.tax_amount,
                total=totals.total,
                updated_at=self._clock(),
            )

            if isinstance(current, EstimateRecord):
                if "line_items" in changes:
                    plan = self._plan(line_items)
                    check_availability(plan, self._ledger.snapshot(plan))
                updated = current.model_copy(update=changes, deep=True)
                saved = self._documents.update(updated)
            else:
                if current.paid_amount > totals.total:
                    raise DocumentValidationError(
                        f"new total {totals.total} is below the amount already paid {current.paid_amount}",
                        code="total_below_paid",
                    )
                changes["balance_due"] = totals.total - current.paid_amount
                to_deduct, to_restock = StockPlan(), StockPlan()
                if "line_items" in changes:
                    plan = self._plan(line_items)
                    previous = StockPlan.from_allocations(current.stock_allocations)
                    to_deduct, to_restock = diff_plans(previous, plan)
                    changes["stock_allocations"] = dict(plan.draws)
                updated = current.model_copy(update=changes, deep=True)
                saved = self._commit_with_stock(
                    current.id, to_deduct, to_restock, lambda: self._documents.update(updated)
                )

        self._metrics.increment("documents_updated_total")
        log_document_event(
            logger, logging.INFO, "Document updated",
            document_id=saved.id, document_kind=saved.kind, status=saved.status,
            stage="update", outcome="success",
        )
        return saved

    # -- status transitions ------------------------------------------

    def transition_status(
        self,
        document_id: str,
        target_status: str,
        payment_info: Any = None,
    ) -> Document:
        payment = (
            _validate_model(PaymentInfo, payment_info, "payment info")
            if payment_info is not None
            else None
        )
        with self._document_locks.hold(document_id):
            current = self._documents.get(document_id)
            try:
                updated = self._apply_transition(current, target_status, payment)
            except InvalidTransitionError:
                self._metrics.increment("transitions_rejected_total")
                log_document_event(
                    logger, logging.INFO, f"Transition to {target_status} rejected",
                    document_id=current.id, document_kind=current.kind, status=current.status,
                    stage="transition", outcome="rejected",
                )
                raise
            saved = self._documents.update(updated)

        self._metrics.increment("transitions_total")
        log_document_event(
            logger, logging.INFO, f"Transitioned {current.status} -> {saved.status}",
            document_id=saved.id, document_kind=saved.kind, status=saved.status,
            stage="transition", outcome="success",
        )
        return saved

    def _apply_transition(
        self, current: Document, target_status: str, payment: PaymentInfo | None
    ) -> Document:
        target = transition_state(current.kind, current.status, target_status)
        now = self._clock()
        changes: dict[str, Any] = {"status": target, "updated_at": now}

        if payment is not None and not (isinstance(current, InvoiceRecord) and target == "paid"):
            raise DocumentValidationError(
                "payment info is only accepted when marking an invoice paid",
                code="unexpected_payment",
            )

        if isinstance(current, InvoiceRecord) and target == "paid":
            paid_amount = current.paid_amount
            if payment is not None:
                paid_amount = payment.amount
                if paid_amount > current.total:
                    raise DocumentValidationError(
                        f"paid amount {paid_amount} exceeds invoice total {current.total}",
                        code="overpayment",
                    )
                changes["paid_at"] = payment.paid_at or now
            balance_due = current.total - paid_amount
            if balance_due > 0:
                raise InvalidTransitionError(
                    current.status, target, reason=f"balance due {balance_due} is not settled"
                )
            changes["paid_amount"] = paid_amount
            changes["balance_due"] = balance_due

        self._revalidate(current, target)
        return current.model_copy(update=changes, deep=True)

    def _revalidate(self, document: Document, target: str) -> None:
        violations = evaluate_totals_rules(
            document.line_items,
            document.tax_rate,
            document.discount,
            declared=document,
            rounding=self._rounding,
        )
        errors = [v for v in violations if v["severity"] == "error"]
        if errors:
            raise InvalidTransitionError(
                document.status, target, reason=errors[0]["message"]
            )
        if isinstance(document, EstimateRecord) and target in {"sent", "approved"}:
            try:
                plan = self._plan(document.line_items)
                check_availability(plan, self._ledger.snapshot(plan))
            except EngineError as exc:
                raise InvalidTransitionError(document.status, target, reason=str(exc)) from exc

    def record_payment(self, document_id: str, payment_info: Any) -> InvoiceRecord:
        """Set the invoice's paid amount; a payment covering the total marks it paid."""
        payment: PaymentInfo = _validate_model(PaymentInfo, payment_info, "payment info")
        current = self._documents.get(document_id)
        if not isinstance(current, InvoiceRecord):
            raise DocumentValidationError("payments apply to invoices only", code="not_an_invoice")
        if payment.amount >= current.total:
            return self.transition_status(document_id, "paid", payment)

        with self._document_locks.hold(document_id):
            current = self._documents.get(document_id)
            if current.status not in {"sent", "overdue"}:
                raise InvalidTransitionError(
                    current.status, current.status, reason="payments require a sent or overdue invoice"
                )
            updated = current.model_copy(
                update={
                    "paid_amount": payment.amount,
                    "balance_due": current.total - payment.amount,
                    "paid_at": payment.paid_at or self._clock(),
                    "updated_at": self._clock(),
                }
            )
            saved = self._documents.update(updated)
        log_document_event(
            logger, logging.INFO, "Partial payment recorded",
            document_id=saved.id, document_kind="invoice", status=saved.status,
            stage="payment", outcome="success",
        )
        return saved

    # -- conversion ---------------------------------------------------

    def convert_estimate_to_invoice(self, estimate_id: str) -> InvoiceRecord:
        # the estimate stays locked until it points at its invoice
        with self._conversion_locks.hold(estimate_id), self._document_locks.hold(estimate_id):
            estimate = self._documents.get(estimate_id)
            if not isinstance(estimate, EstimateRecord):
                raise ConversionError(f"{estimate_id} is not an estimate")
            existing = self._documents.find_by_source_estimate(estimate_id)
            if existing is not None:
                raise ConversionError(f"estimate {estimate_id} already converted to {existing.id}")

            draft = convert_estimate(
                estimate,
                net_terms_days=self._net_terms_days,
                payment_terms=self._payment_terms,
                now=self._clock(),
            )
            invoice = self._create_invoice(draft)
            self._documents.update(
                estimate.model_copy(
                    update={"converted_invoice_id": invoice.id, "updated_at": self._clock()}
                )
            )

        self._metrics.increment("conversions_total")
        log_document_event(
            logger, logging.INFO, f"Estimate converted to {invoice.id}",
            document_id=estimate_id, document_kind="estimate", status=estimate.status,
            stage="convert", outcome="success",
        )
        return invoice

    # -- delete -------------------------------------------------------

    def delete_document(self, document_id: str) -> None:
        with self._document_locks.hold(document_id):
            current = self._documents.get(document_id)
            if isinstance(current, InvoiceRecord):
                if current.paid_amount > 0 or current.status == "paid":
                    raise DeleteNotAllowedError(document_id, "a payment has been recorded; cancel it instead")
            else:
                invoice_id = current.converted_invoice_id
                if invoice_id is None:
                    linked = self._documents.find_by_source_estimate(document_id)
                    invoice_id = linked.id if linked is not None else None
                if invoice_id:
                    raise DeleteNotAllowedError(document_id, f"converted to invoice {invoice_id}")
            self._documents.delete(document_id)
            # an unsent draft never left the shop, so its parts go back on the shelf
            if isinstance(current, InvoiceRecord) and current.status == "draft":
                self._ledger.restock(
                    StockPlan.from_allocations(current.stock_allocations),
                    document_id=document_id,
                )
        log_document_event(
            logger, logging.INFO, "Document deleted",
            document_id=document_id, document_kind=current.kind, status=current.status,
            stage="delete", outcome="success",
        )

    # -- operator sweeps ---------------------------------------------

    def expire_estimates(self, now: datetime | None = None) -> list[EstimateRecord]:
        cutoff = now or self._clock()
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        expired: list[EstimateRecord] = []
        for estimate in self._documents.list(kind="estimate", status="sent"):
            if estimate.expires_at <= cutoff:
                expired.append(self.transition_status(estimate.id, "expired"))
        return expired

    def flag_overdue_invoices(self, now: datetime | None = None) -> list[InvoiceRecord]:
        today = (now or self._clock()).date()
        flagged: list[InvoiceRecord] = []
        for invoice in self._documents.list(kind="invoice", status="sent"):
            if invoice.due_date < today:
                flagged.append(self.transition_status(invoice.id, "overdue"))
        return flagged


def build_service(settings: Settings, *, metrics: MetricsCollector | None = None) -> DocumentService:
    collector = metrics or MetricsCollector()
    if settings.store_backend == "sqlite":
        from billing.sqlite_store import SqliteDocumentRepository, SqliteInventoryRepository

        documents: DocumentRepository = SqliteDocumentRepository(settings.sqlite_path)
        inventory: InventoryRepository = SqliteInventoryRepository(settings.sqlite_path)
    elif settings.store_backend == "http":
        from billing.http_store import HttpApiClient, HttpDocumentRepository, HttpInventoryRepository

        assert settings.api_base_url is not None and settings.api_token is not None
        client = HttpApiClient(
            settings.api_base_url, settings.api_token, timeout=settings.api_timeout_seconds
        )
        documents = HttpDocumentRepository(client)
        inventory = HttpInventoryRepository(client)
    else:
        documents = InMemoryDocumentRepository()
        inventory = InMemoryInventoryRepository()

    journal = (
        StockMovementJournal(settings.movement_journal_path)
        if settings.movement_journal_path
        else None
    )
    ledger = StockLedger(
        inventory,
        retry_policy=RetryPolicy(
            max_attempts=settings.stock_cas_max_attempts,
            base_delay_seconds=0.005,
            max_delay_seconds=0.1,
        ),
        journal=journal,
        metrics=collector,
    )
    return DocumentService(
        documents,
        inventory,
        ledger=ledger,
        match_policy=policy_from_name(settings.match_policy),
        rounding=settings.rounding_mode,
        discount_policy=settings.discount_policy,
        default_tax_rate=settings.default_tax_rate,
        net_terms_days=settings.default_net_terms_days,
        payment_terms=settings.default_payment_terms,
        estimate_valid_days=settings.estimate_valid_days,
        metrics=collector,
    )
