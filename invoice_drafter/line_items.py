"""
Line item derivation.

Converts priced tasks and materials into invoice line items and assembles the
finished invoice. Labor lines follow a fixed precedence over whichever of
hours, rate and amount the task carries.
"""

from typing import Optional

from .config import DEFAULT_CURRENCY
from .normalizer import normalize_invoice, round_to_cents
from .schemas import (
    FinishedInvoice,
    InvoiceLineItem,
    Material,
    OpenDecision,
    StructuredInvoice,
    Task,
    generate_invoice_number,
)
from .text_utils import extract_keywords, keywords_overlap, normalize_decision_text


def _labor_line(task: Task, session_date: Optional[str], quantity: float, unit_price: float,
                amount: float) -> InvoiceLineItem:
    return InvoiceLineItem(
        type="labor",
        description=task.description,
        quantity=round_to_cents(quantity),
        unit_price=round_to_cents(unit_price),
        amount=round_to_cents(amount),
        source_session_date=session_date,
    )


def build_labor_line_item(task: Task, session_date: Optional[str] = None) -> InvoiceLineItem:
    """
    Build a labor line from a task.

    Precedence:
        1. hours and rate -> hours x rate (or the stated amount)
        2. amount and hours > 0 -> unit price = amount / hours
        3. amount and rate > 0 -> quantity = amount / rate
        4. amount only -> one unit at the amount
        5. hours only -> zero-billed hours
        6. rate only -> one unit at the rate
        7. nothing -> one zero-priced unit
    """
    hours, rate, amount = task.hours, task.rate, task.amount

    if hours is not None and rate is not None and (rate > 0 or amount is None):
        return _labor_line(task, session_date, hours, rate, amount if amount is not None else hours * rate)
    if amount is not None and hours is not None and hours > 0:
        return _labor_line(task, session_date, hours, amount / hours, amount)
    if amount is not None and rate is not None and rate > 0:
        return _labor_line(task, session_date, amount / rate, rate, amount)
    if amount is not None:
        return _labor_line(task, session_date, 1, amount, amount)
    if hours is not None and rate is None:
        return _labor_line(task, session_date, hours, 0, 0)
    if rate is not None:
        return _labor_line(task, session_date, 1, rate, rate)
    return _labor_line(task, session_date, 1, 0, 0)


def build_material_line_item(material: Material) -> InvoiceLineItem:
    """Build a material line; quantity defaults to 1 when missing or not positive."""
    quantity = material.quantity if material.quantity and material.quantity > 0 else 1.0

    if material.unit_cost is not None:
        unit_price = material.unit_cost
    elif material.amount is not None:
        unit_price = material.amount / quantity
    else:
        unit_price = 0.0

    amount = material.amount if material.amount is not None else quantity * unit_price

    return InvoiceLineItem(
        type="material",
        description=material.description,
        quantity=round_to_cents(quantity),
        unit_price=round_to_cents(unit_price),
        amount=round_to_cents(amount),
    )


def generate_finished_invoice(structured: StructuredInvoice) -> FinishedInvoice:
    """
    Assemble and normalize a finished invoice: labor lines in session order,
    then material lines.
    """
    line_items = [
        build_labor_line_item(task, session.date)
        for session in structured.work_sessions
        for task in session.tasks
    ]
    line_items.extend(build_material_line_item(material) for material in structured.materials)

    invoice = FinishedInvoice(
        invoice_number=structured.invoice_number or generate_invoice_number(),
        issue_date=structured.issue_date,
        service_period_start=structured.service_period_start,
        service_period_end=structured.service_period_end,
        customer_name=structured.customer_name,
        currency=DEFAULT_CURRENCY,
        line_items=line_items,
        notes=structured.notes,
    )
    return normalize_invoice(invoice)


def _same_wording(first: Optional[str], second: str) -> bool:
    return bool(first) and normalize_decision_text(first) == normalize_decision_text(second)


def apply_decision_holds(invoice: FinishedInvoice, decisions: list[OpenDecision]) -> FinishedInvoice:
    """
    Hold back the amount of lines tied to an open billing decision.

    A labor or other line is tied to a decision when its description shares
    enough keywords with the decision, or matches its source snippet. The
    held line keeps its quantity and unit price, loses its amount and records
    the decision id.
    """
    billing = [
        (decision, decision.keywords or extract_keywords(decision.source_snippet or decision.prompt))
        for decision in decisions
        if decision.kind == "billing"
    ]
    if not billing:
        return invoice

    line_items = []
    for item in invoice.line_items:
        if item.type == "material":
            line_items.append(item)
            continue
        item_keywords = extract_keywords(item.description)
        match = next(
            (
                d
                for d, keywords in billing
                if keywords_overlap(keywords, item_keywords) or _same_wording(d.source_snippet, item.description)
            ),
            None,
        )
        if match is None:
            line_items.append(item)
            continue
        line_items.append(item.model_copy(update={"amount": None, "decision_id": match.id}))

    return normalize_invoice(invoice.model_copy(update={"line_items": line_items}))
