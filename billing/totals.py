from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from billing.errors import DocumentValidationError
from schemas.document_schema import LineItem, Totals

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

ROUNDING_MODES: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
}
DISCOUNT_POLICIES = ("clamp", "reject")


def quantize_money(value: Decimal, rounding: str = "half_up") -> Decimal:
    try:
        mode = ROUNDING_MODES[rounding]
    except KeyError as exc:
        raise ValueError(f"Unknown rounding mode: {rounding}") from exc
    return value.quantize(CENT, rounding=mode)


def to_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise DocumentValidationError(f"{field_name} must be a number", code="invalid_number")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise DocumentValidationError(
                f"{field_name} must be a number", code="invalid_number"
            ) from exc
    elif isinstance(value, float):
        # str() keeps 9.25 as 9.25 instead of its binary expansion
        result = Decimal(str(value))
    else:
        raise DocumentValidationError(f"{field_name} must be a number", code="invalid_number")
    if not result.is_finite():
        raise DocumentValidationError(f"{field_name} must be finite", code="invalid_number")
    return result


def coerce_line_items(line_items: Iterable[LineItem | Mapping[str, Any]]) -> list[LineItem]:
    items: list[LineItem] = []
    for index, raw in enumerate(line_items):
        if isinstance(raw, LineItem):
            item = raw
        else:
            try:
                item = LineItem.model_validate(raw)
            except ValidationError as exc:
                raise DocumentValidationError(
                    f"line_items[{index}] is invalid: {exc.errors()[0]['msg']}",
                    code="invalid_line_item",
                ) from exc
        # model_construct() bypasses field constraints, so check the money rules here too
        if not item.description or not item.description.strip():
            raise DocumentValidationError(
                f"line_items[{index}].description must not be empty", code="empty_description"
            )
        if item.quantity <= 0:
            raise DocumentValidationError(
                f"line_items[{index}].quantity must be positive", code="non_positive_quantity"
            )
        if item.unit_price < 0:
            raise DocumentValidationError(
                f"line_items[{index}].unit_price must not be negative", code="negative_price"
            )
        items.append(item)
    return items


def line_extension(item: LineItem, rounding: str = "half_up") -> Decimal:
    return quantize_money(item.quantity * item.unit_price, rounding)


def compute_totals(
    line_items: Iterable[LineItem | Mapping[str, Any]],
    tax_rate: Any,
    discount: Any = ZERO,
    *,
    rounding: str = "half_up",
    discount_policy: str = "clamp",
) -> Totals:
    """Compute subtotal, tax and total for a set of line items.

    Each line extension is rounded to cents before summation, and the tax
    amount and total are rounded after their own arithmetic step, so large
    documents do not accumulate drift. A discount larger than the subtotal
    is clamped to the subtotal (logged as a soft violation) unless
    ``discount_policy`` is ``"reject"``.
    """
    if discount_policy not in DISCOUNT_POLICIES:
        raise ValueError(f"Unknown discount policy: {discount_policy}")
    items = coerce_line_items(line_items)
    rate = to_decimal(tax_rate, "tax_rate")
    if rate < 0:
        raise DocumentValidationError("tax_rate must not be negative", code="negative_tax_rate")
    requested_discount = quantize_money(to_decimal(discount, "discount"), rounding)
    if requested_discount < 0:
        raise DocumentValidationError("discount must not be negative", code="negative_discount")

    subtotal = quantize_money(
        sum((line_extension(item, rounding) for item in items), ZERO), rounding
    )

    applied_discount = requested_discount
    if requested_discount > subtotal:
        if discount_policy == "reject":
            raise DocumentValidationError(
                f"discount {requested_discount} exceeds subtotal {subtotal}",
                code="over_discount",
            )
        logger.warning(
            "Discount %s exceeds subtotal %s; clamping to subtotal",
            requested_discount,
            subtotal,
        )
        applied_discount = subtotal

    taxable_base = max(ZERO, subtotal - applied_discount)
    tax_amount = quantize_money(taxable_base * rate / HUNDRED, rounding)
    total = quantize_money(taxable_base + tax_amount, rounding)
    return Totals(
        subtotal=subtotal,
        discount_applied=applied_discount,
        taxable_base=taxable_base,
        tax_amount=tax_amount,
        total=total,
    )


def evaluate_totals_rules(
    line_items: Iterable[LineItem],
    tax_rate: Decimal,
    discount: Decimal,
    *,
    declared: Any = None,
    rounding: str = "half_up",
) -> list[dict[str, Any]]:
    """Return machine-readable violations for a document's money fields.

    ``declared`` is a stored document (or ``Totals``); a mismatch with the
    recomputed figures is an error, over-discount and zero totals are warnings.
    """
    items = list(line_items)
    violations: list[dict[str, Any]] = []
    computed = compute_totals(items, tax_rate, discount, rounding=rounding)

    if discount > computed.subtotal:
        violations.append(
            {
                "code": "over_discount",
                "severity": "warning",
                "message": "discount exceeds subtotal and was clamped",
                "requested_discount": str(discount),
                "subtotal": str(computed.subtotal),
            }
        )

    if computed.total == ZERO and computed.subtotal > ZERO:
        violations.append(
            {
                "code": "zero_total",
                "severity": "warning",
                "message": "discount reduces the document total to zero",
            }
        )

    if declared is not None:
        for field_name in ("subtotal", "tax_amount", "total"):
            expected = getattr(computed, field_name)
            actual = getattr(declared, field_name)
            if expected != actual:
                violations.append(
                    {
                        "code": f"{field_name}_mismatch",
                        "severity": "error",
                        "message": f"stored {field_name} does not match line items",
                        "expected": str(expected),
                        "actual": str(actual),
                    }
                )
    return violations
