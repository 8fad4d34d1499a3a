from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

DocumentKind = Literal["estimate", "invoice"]
LineCategory = Literal["Labor", "Materials", "Equipment", "Travel", "Other"]
EstimateStatus = Literal["draft", "sent", "approved", "rejected", "expired"]
InvoiceStatus = Literal["draft", "sent", "paid", "overdue", "cancelled"]
PaymentMethod = Literal["card", "cash", "bank", "check", "unknown"]

ZERO = Decimal("0.00")


def _assume_utc(value: datetime | None) -> datetime | None:
    # naive timestamps are read as UTC so they compare with the service clock
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _strip_required(value: str | None, field_name: str) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} must not be blank")
    return stripped


class InventoryReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    sku: str | None = None


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str = Field(min_length=1)
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    category: LineCategory = "Labor"
    inventory_reference: InventoryReference | None = None

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("description must not be blank")
        return stripped


class Totals(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    discount_applied: Decimal
    taxable_base: Decimal
    tax_amount: Decimal
    total: Decimal


class InventoryItem(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    sku: str | None = None
    unit_cost: Decimal = Field(ge=0)
    stock_level: int = Field(ge=0)


class _DocumentFields(BaseModel):
    id: str = Field(min_length=1)
    document_number: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    job_id: str | None = None
    line_items: list[LineItem] = Field(min_length=1)
    tax_rate: Decimal = Field(ge=0)
    discount: Decimal = Field(default=ZERO, ge=0)
    notes: str = ""
    created_at: datetime
    updated_at: datetime
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


class EstimateRecord(_DocumentFields):
    kind: Literal["estimate"] = "estimate"
    status: EstimateStatus = "draft"
    expires_at: datetime
    converted_invoice_id: str | None = None

    _aware_expiry = field_validator("expires_at")(_assume_utc)


class InvoiceRecord(_DocumentFields):
    kind: Literal["invoice"] = "invoice"
    status: InvoiceStatus = "draft"
    due_date: date
    payment_terms: str = "Net 30"
    paid_amount: Decimal = Field(default=ZERO, ge=0)
    balance_due: Decimal
    paid_at: datetime | None = None
    source_estimate_id: str | None = None
    # inventory item id -> units deducted from stock for this invoice
    stock_allocations: dict[str, int] = Field(default_factory=dict)


FinancialDocument = Annotated[Union[EstimateRecord, InvoiceRecord], Field(discriminator="kind")]

document_adapter: TypeAdapter[EstimateRecord | InvoiceRecord] = TypeAdapter(FinancialDocument)


class DocumentDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    customer_id: str = Field(min_length=1)
    job_id: str | None = None
    line_items: list[LineItem] = Field(min_length=1)
    tax_rate: Decimal | None = Field(default=None, ge=0)
    discount: Decimal = Field(default=ZERO, ge=0)
    notes: str = ""

    @field_validator("customer_id")
    @classmethod
    def _strip_customer(cls, value: str) -> str:
        return _strip_required(value, "customer_id")


class EstimateDraft(DocumentDraft):
    expires_at: datetime | None = None

    _aware_expiry = field_validator("expires_at")(_assume_utc)


class InvoiceDraft(DocumentDraft):
    due_date: date | None = None
    payment_terms: str | None = None
    source_estimate_id: str | None = None


class DocumentPatch(BaseModel):
    """Editable fields. Status and payment fields move only through transitions."""

    model_config = ConfigDict(extra="forbid")

    customer_id: str | None = Field(default=None, min_length=1)
    job_id: str | None = None
    line_items: list[LineItem] | None = Field(default=None, min_length=1)
    tax_rate: Decimal | None = Field(default=None, ge=0)
    discount: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    expires_at: datetime | None = None
    due_date: date | None = None
    payment_terms: str | None = None

    _aware_expiry = field_validator("expires_at")(_assume_utc)

    @field_validator("customer_id")
    @classmethod
    def _strip_customer(cls, value: str | None) -> str | None:
        return _strip_required(value, "customer_id")

    @field_validator("notes")
    @classmethod
    def _clear_notes(cls, value: str | None) -> str:
        return value or ""


class PaymentInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal = Field(ge=0)
    method: PaymentMethod = "unknown"
    paid_at: datetime | None = None
