"""
Deterministic money math for finished invoices.

normalize_invoice assigns line ids, derives missing amounts and recomputes
subtotal, discount, total and balance due. Every monetary value is rounded
to cents, half away from zero. Normalizing twice gives the same result.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .schemas import FinishedInvoice, InvoiceLineItem

_CENT = Decimal("1")


def round_to_cents(value: float) -> float:
    """
    Round a money value to two decimals, half away from zero.

    The value is converted through its shortest repr so that binary noise
    such as 26.400000000000002 does not push a value across a cent boundary.
    """
    cents = (Decimal(str(value)) * 100).quantize(_CENT, rounding=ROUND_HALF_UP)
    return float(cents / 100)


def derive_amount(quantity: Optional[float], unit_price: Optional[float]) -> float:
    """Return quantity x unit price when both are known, else 0."""
    if quantity is not None and unit_price is not None:
        return quantity * unit_price
    return 0.0


def normalize_line_item(line_item: InvoiceLineItem, index: int) -> InvoiceLineItem:
    """Assign a positional id and settle the amount of a single line."""
    line_id = line_item.id or f"line_{index + 1}"

    if line_item.decision_id:
        # Undecided lines keep no amount until the question is answered
        return line_item.model_copy(update={"id": line_id, "amount": None})

    amount = line_item.amount
    if amount is None:
        amount = derive_amount(line_item.quantity, line_item.unit_price)

    return line_item.model_copy(update={"id": line_id, "amount": round_to_cents(amount)})


def normalize_invoice(invoice: FinishedInvoice) -> FinishedInvoice:
    """
    Recompute every derived money field of an invoice.

    Args:
        invoice: Invoice to normalize (left untouched)

    Returns:
        A new FinishedInvoice whose subtotal, discount, total and
        balance due are consistent with its line items.
    """
    line_items = [normalize_line_item(item, index) for index, item in enumerate(invoice.line_items)]

    subtotal = round_to_cents(sum(item.amount or 0.0 for item in line_items))
    discount_amount = round_to_cents(max(0.0, invoice.discount_amount or 0.0))
    total = round_to_cents(max(0.0, subtotal - discount_amount))

    return invoice.model_copy(
        update={
            "line_items": line_items,
            "subtotal": subtotal,
            "discount_amount": discount_amount,
            "total": total,
            "balance_due": total,
        }
    )
