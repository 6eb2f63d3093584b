"""
Invoice drafting pipeline.

Ties the stages together into the two-step flow callers see:
- create_invoice_from_input: parse the notes, then either finish the invoice
  or halt with a labor pricing follow-up
- continue_invoice_after_labor_pricing: apply the caller's labor pricing
  answer and finish the invoice
- apply_discount_after_follow_up: apply a manually chosen discount

Only missing labor pricing halts the flow; the audit overlay is advisory.
"""

from typing import Optional

from .audit import AuditOutcome, audit_with_timeout
from .completion import CompletionService
from .config import logger
from .decisions import (
    decisions_for_flagged_tasks,
    decisions_from_audit,
    detect_open_decisions_from_text,
    extract_ambiguous_billing_decisions,
    filter_decisions_against_invoice,
    filter_resolved_decisions,
    flagged_optional_labor_tasks,
    identify_optional_labor_tasks,
    mark_optional_labor_tasks,
    merge_decisions,
)
from .discount import apply_discount, detect_discount
from .line_items import apply_decision_holds, generate_finished_invoice
from .notes import (
    TAX_ASSUMPTION,
    SanitizedNotes,
    detect_explicit_tax_directive,
    detect_tax_ambiguity,
    extract_unparsed_lines,
    filter_assumptions_against_decisions,
    filter_invoice_notes,
    filter_unparsed_lines,
    has_explicit_tax_request,
    merge_unparsed_lines,
    normalize_assumptions,
    sanitize_structured_notes,
    tax_assumption_needed,
)
from .parser import (
    apply_customer_name_fallback,
    apply_explicit_service_period,
    build_source_text,
    has_explicit_issue_date,
    parse_input,
)
from .pricing import (
    apply_inline_labor_minutes,
    apply_inline_labor_pricing,
    apply_labor_pricing,
    build_labor_pricing_follow_up,
    unpriced_labor_tasks,
)
from .schemas import (
    DraftResult,
    FinishedInvoice,
    FlatLaborPricing,
    HourlyLaborPricing,
    InvoiceReadyResult,
    LaborPricingFollowUpResult,
    ParseMode,
    StructuredInvoice,
    validate_finished_invoice,
    validate_structured_invoice,
)


async def create_invoice_from_input(
    messy_input: Optional[str],
    uploaded_invoice_text: Optional[str],
    service: CompletionService,
    last_user_message: Optional[str] = None,
    mode: ParseMode = "full",
    audit_timeout: Optional[float] = None,
) -> DraftResult:
    """
    Draft an invoice from job notes and/or uploaded document text.

    Args:
        messy_input: Free-form job notes typed by the user
        uploaded_invoice_text: Text extracted from an uploaded document
        service: Completion service used for parsing and the audit
        last_user_message: The user's latest reply, used to resolve decisions
        mode: "full" runs the audit, "fast" skips it
        audit_timeout: Override for the audit time budget, in seconds

    Returns:
        InvoiceReadyResult, or LaborPricingFollowUpResult when some labor
        tasks carry no price

    Raises:
        InputError: If both inputs are blank
        ModelOutputError: If parsing fails twice
    """
    source_text = build_source_text(messy_input, uploaded_invoice_text)
    logger.info(f"Drafting invoice from {len(source_text)} chars of source text (mode={mode})")

    parsed = await parse_input(messy_input, uploaded_invoice_text, service)
    priced = apply_inline_labor_minutes(apply_inline_labor_pricing(parsed, source_text), source_text)
    structured = apply_customer_name_fallback(apply_explicit_service_period(priced), source_text)

    optional_tasks = identify_optional_labor_tasks(structured, source_text)
    structured = mark_optional_labor_tasks(structured, optional_tasks)
    sanitized = sanitize_structured_notes(structured.notes)
    sanitized_invoice = structured.model_copy(update={"notes": sanitized.cleaned_notes})

    refs = unpriced_labor_tasks(structured, optional_tasks)
    if refs:
        logger.info(f"Halting for labor pricing: {len(refs)} unpriced task(s)")
        tax_directive = detect_explicit_tax_directive(source_text)
        seeded = [TAX_ASSUMPTION] if sanitized.tax_ambiguity_found else []
        return LaborPricingFollowUpResult(
            structured_invoice=sanitized_invoice,
            follow_up=build_labor_pricing_follow_up(refs),
            assumptions=normalize_assumptions(seeded, tax_directive),
            unparsed_lines=filter_unparsed_lines(
                merge_unparsed_lines(sanitized.removed_lines, extract_unparsed_lines(source_text, sanitized_invoice))
            ),
        )

    return await _finalize(
        sanitized_invoice,
        source_text,
        sanitized,
        service,
        last_user_message,
        mode,
        audit_timeout,
    )


async def continue_invoice_after_labor_pricing(
    structured: StructuredInvoice,
    labor_pricing: HourlyLaborPricing | FlatLaborPricing,
    service: CompletionService,
    source_text: Optional[str] = None,
    last_user_message: Optional[str] = None,
    mode: ParseMode = "full",
    audit_timeout: Optional[float] = None,
) -> InvoiceReadyResult:
    """
    Apply the caller's labor pricing answer and finish the invoice.

    Args:
        structured: The structured invoice returned with the follow-up
        labor_pricing: Hourly rate and per-line hours, or a flat amount
        service: Completion service used for the audit
        source_text: Original notes; falls back to the structured notes.
            Tasks flagged as billing-undecided in the follow-up stay out of
            pricing either way

    Raises:
        ValidationError: If the answer does not match the unpriced tasks
    """
    structured = validate_structured_invoice(structured)
    source = source_text or structured.notes or ""
    optional_tasks = identify_optional_labor_tasks(structured, source) | flagged_optional_labor_tasks(structured)
    structured = mark_optional_labor_tasks(structured, optional_tasks)
    with_pricing = apply_labor_pricing(structured, labor_pricing, optional_tasks)

    sanitized = sanitize_structured_notes(with_pricing.notes)
    sanitized_invoice = with_pricing.model_copy(update={"notes": sanitized.cleaned_notes})

    return await _finalize(
        sanitized_invoice,
        source,
        sanitized,
        service,
        last_user_message,
        mode,
        audit_timeout,
    )


def apply_discount_after_follow_up(
    invoice: FinishedInvoice,
    discount_amount: float,
    discount_reason: Optional[str] = None,
) -> FinishedInvoice:
    """Apply a discount chosen by the user to an existing invoice."""
    return apply_discount(validate_finished_invoice(invoice), discount_amount, discount_reason)


# ============================================================================
# Finalization
# ============================================================================

async def _finalize(
    structured: StructuredInvoice,
    source_text: str,
    sanitized: SanitizedNotes,
    service: CompletionService,
    last_user_message: Optional[str],
    mode: ParseMode,
    audit_timeout: Optional[float],
) -> InvoiceReadyResult:
    """Derive the invoice, run the overlay, apply holds and any discount."""
    tax_directive = detect_explicit_tax_directive(source_text)
    tax_ambiguity = detect_tax_ambiguity(source_text)

    invoice = generate_finished_invoice(structured)
    if not has_explicit_issue_date(source_text):
        invoice = invoice.model_copy(update={"issue_date": None})
    discount = detect_discount(source_text)

    if mode == "fast":
        outcome = AuditOutcome(None, "skipped")
    else:
        outcome = await audit_with_timeout(source_text, structured, service, audit_timeout)
    audit = outcome.audit

    if audit is not None:
        decisions = filter_resolved_decisions(
            merge_decisions(decisions_from_audit(audit.decisions), extract_ambiguous_billing_decisions(source_text)),
            last_user_message,
        )
    else:
        decisions = detect_open_decisions_from_text(source_text, last_user_message)
    decisions = [
        *decisions,
        *filter_resolved_decisions(decisions_for_flagged_tasks(structured, decisions), last_user_message),
    ]

    seeded = tax_assumption_needed(sanitized, tax_ambiguity, tax_directive)
    assumptions = normalize_assumptions([*(audit.assumptions if audit else []), *seeded], tax_directive)

    heuristic_unparsed = extract_unparsed_lines(source_text, structured, decisions)
    if audit is not None and audit.unparsed_lines:
        unparsed = merge_unparsed_lines(sanitized.removed_lines, merge_unparsed_lines(audit.unparsed_lines, heuristic_unparsed))
    else:
        unparsed = merge_unparsed_lines(sanitized.removed_lines, heuristic_unparsed)

    decisions = filter_decisions_against_invoice(
        decisions, invoice, tax_directive, has_explicit_tax_request(source_text)
    )
    invoice = filter_invoice_notes(apply_decision_holds(invoice, decisions), source_text, decisions)
    if discount.kind == "apply":
        invoice = apply_discount(invoice, discount.amount, discount.reason)

    logger.info(
        f"Invoice {invoice.invoice_number} ready: total={invoice.total} "
        f"decisions={len(decisions)} audit={outcome.status}"
    )
    return InvoiceReadyResult(
        structured_invoice=structured,
        invoice=invoice,
        open_decisions=decisions,
        assumptions=filter_assumptions_against_decisions(assumptions, decisions),
        unparsed_lines=filter_unparsed_lines(unparsed),
        audit_status=outcome.status,
    )
