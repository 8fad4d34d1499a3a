from __future__ import annotations

from datetime import datetime, timedelta, timezone

from billing.errors import ConversionError
from billing.state_machine import CONVERTIBLE_STATE
from schemas.document_schema import EstimateRecord, InvoiceDraft, LineItem

DEFAULT_NET_TERMS_DAYS = 30


def convert_estimate(
    estimate: EstimateRecord,
    *,
    net_terms_days: int = DEFAULT_NET_TERMS_DAYS,
    payment_terms: str | None = None,
    now: datetime | None = None,
) -> InvoiceDraft:
    """Build a draft invoice from an approved estimate.

    Line items are copied without their inventory references; the fallback
    matcher re-links them to stock when the invoice is committed. The
    estimate itself is not modified.
    """
    if estimate.status != CONVERTIBLE_STATE:
        raise ConversionError(f"estimate {estimate.id} is {estimate.status}, not approved")
    if estimate.converted_invoice_id:
        raise ConversionError(
            f"estimate {estimate.id} already converted to {estimate.converted_invoice_id}"
        )
    if net_terms_days < 0:
        raise ValueError("net_terms_days must not be negative")

    issued_at = now or datetime.now(timezone.utc)
    line_items = [
        LineItem(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            category=item.category,
        )
        for item in estimate.line_items
    ]
    return InvoiceDraft(
        customer_id=estimate.customer_id,
        job_id=estimate.job_id,
        line_items=line_items,
        tax_rate=estimate.tax_rate,
        discount=estimate.discount,
        notes=estimate.notes,
        due_date=(issued_at + timedelta(days=net_terms_days)).date(),
        payment_terms=payment_terms or f"Net {net_terms_days}",
        source_estimate_id=estimate.id,
    )
