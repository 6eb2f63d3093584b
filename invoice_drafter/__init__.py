"""
Invoice Drafter

A Python service that turns messy job notes and uploaded documents into
priced, editable invoices, asking a follow-up question when labor pricing is
missing and flagging billing decisions it cannot make on its own.
"""

__version__ = "0.1.0"
__author__ = "Invoice Drafter Team"

from .schemas import FinishedInvoice, InvoiceLineItem, OpenDecision, StructuredInvoice
from .normalizer import normalize_invoice
from .pipeline import (
    apply_discount_after_follow_up,
    continue_invoice_after_labor_pricing,
    create_invoice_from_input,
)

__all__ = [
    "FinishedInvoice",
    "InvoiceLineItem",
    "OpenDecision",
    "StructuredInvoice",
    "normalize_invoice",
    "create_invoice_from_input",
    "continue_invoice_after_labor_pricing",
    "apply_discount_after_follow_up",
]
