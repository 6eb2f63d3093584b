"""
Model-assisted invoice editing.

Wording changes go through the completion service; money never does. Every
edited invoice is re-validated and re-normalized before it is returned.
"""

from typing import Optional

from pydantic import Field

from .completion import CompletionService, run_json_task
from .config import logger
from .errors import ValidationError
from .normalizer import normalize_invoice
from .prompts import build_edit_prompt, build_reword_full_prompt, build_reword_line_prompt
from .schemas import CamelModel, FinishedInvoice, OptionalString

DEFAULT_TONE = "neutral professional"


class RewordLineResponse(CamelModel):
    description: str = Field(..., min_length=1)


class RewordedLine(CamelModel):
    id: str
    description: str = Field(..., min_length=1)


class RewordFullResponse(CamelModel):
    line_items: list[RewordedLine] = Field(default_factory=list)
    notes: OptionalString = None


class EditResponse(CamelModel):
    invoice: FinishedInvoice
    follow_up: OptionalString = None


async def change_line_wording(
    invoice: FinishedInvoice,
    line_item_id: str,
    service: CompletionService,
    tone: Optional[str] = None,
) -> FinishedInvoice:
    """
    Reword one line item description.

    Raises:
        ValidationError: If no line item has the given id
    """
    invoice = normalize_invoice(invoice)
    target = next((item for item in invoice.line_items if item.id == line_item_id), None)
    if target is None:
        raise ValidationError(f'Line item "{line_item_id}" was not found.', field_path="lineItemId")

    response = await run_json_task(service, build_reword_line_prompt(target.description, tone or DEFAULT_TONE), RewordLineResponse)
    line_items = [
        item.model_copy(update={"description": response.description}) if item.id == line_item_id else item
        for item in invoice.line_items
    ]
    return normalize_invoice(invoice.model_copy(update={"line_items": line_items}))


async def reword_full_invoice(
    invoice: FinishedInvoice,
    service: CompletionService,
    tone: Optional[str] = None,
) -> FinishedInvoice:
    """Reword every line description (and optionally the notes), leaving amounts alone."""
    invoice = normalize_invoice(invoice)
    response = await run_json_task(service, build_reword_full_prompt(invoice, tone or DEFAULT_TONE), RewordFullResponse)

    descriptions = {line.id: line.description for line in response.line_items}
    line_items = [
        item.model_copy(update={"description": descriptions.get(item.id, item.description)})
        for item in invoice.line_items
    ]
    return normalize_invoice(
        invoice.model_copy(update={"line_items": line_items, "notes": response.notes or invoice.notes})
    )


async def apply_invoice_edit_instruction(
    invoice: FinishedInvoice,
    instruction: str,
    service: CompletionService,
) -> tuple[FinishedInvoice, Optional[str]]:
    """
    Apply a free-form edit instruction.

    Returns:
        The normalized edited invoice and an optional follow-up question
        the model asked when the instruction was ambiguous
    """
    response = await run_json_task(service, build_edit_prompt(invoice, instruction), EditResponse)
    follow_up = response.follow_up.strip() if response.follow_up else None
    if follow_up:
        logger.info("Edit instruction needs clarification")

    # A held line the edit gave an amount has had its billing decision answered
    line_items = [
        item.model_copy(update={"decision_id": None}) if item.decision_id and item.amount is not None else item
        for item in response.invoice.line_items
    ]
    edited = response.invoice.model_copy(update={"line_items": line_items})
    return normalize_invoice(edited), follow_up or None
