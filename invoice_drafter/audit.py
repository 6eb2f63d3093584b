"""
Advisory audit of a parsed invoice.

The audit asks the completion service to compare the structured invoice with
the source notes and report assumptions, open decisions and lines it missed.
It never blocks a draft: failures are logged and the heuristics take over,
and the call is bounded by AUDIT_TIMEOUT_SECONDS.
"""

import asyncio
from typing import NamedTuple, Optional

from . import config
from .completion import CompletionService, run_json_task
from .config import logger
from .decisions import decisions_from_audit, extract_ambiguous_billing_decisions, filter_resolved_decisions, merge_decisions
from .errors import AuditTimeoutError
from .notes import (
    detect_explicit_tax_directive,
    detect_tax_ambiguity,
    filter_unparsed_lines,
    merge_unparsed_lines,
    normalize_assumptions,
    sanitize_structured_notes,
    tax_assumption_needed,
)
from .prompts import build_audit_prompt
from .schemas import AuditOverlay, AuditStatus, InvoiceAudit, StructuredInvoice


class AuditOutcome(NamedTuple):
    audit: Optional[InvoiceAudit]
    status: AuditStatus


async def audit_invoice_interpretation(
    source_text: str,
    structured: StructuredInvoice,
    service: CompletionService,
) -> Optional[InvoiceAudit]:
    """
    Run the audit task.

    Returns:
        The audit report, or None when there is no source text or the call
        failed for any reason
    """
    if not source_text.strip():
        return None
    try:
        return await run_json_task(service, build_audit_prompt(source_text, structured), InvoiceAudit)
    except Exception as exc:
        logger.warning(f"Invoice audit failed: {exc}")
        return None


async def audit_with_timeout(
    source_text: str,
    structured: StructuredInvoice,
    service: CompletionService,
    timeout: Optional[float] = None,
) -> AuditOutcome:
    """
    Run the audit under a time budget.

    Args:
        source_text: Source notes; blank text skips the audit
        structured: Parsed invoice
        service: Completion service
        timeout: Seconds to wait (defaults to AUDIT_TIMEOUT_SECONDS)

    Returns:
        AuditOutcome with status "skipped", "timed_out" or "completed".
        A failed audit still completes, with no report.
    """
    if not source_text.strip():
        return AuditOutcome(None, "skipped")

    budget = timeout if timeout is not None else config.AUDIT_TIMEOUT_SECONDS
    try:
        audit = await _audit_within(budget, source_text, structured, service)
    except AuditTimeoutError as exc:
        logger.warning(exc.message)
        return AuditOutcome(None, "timed_out")
    return AuditOutcome(audit, "completed")


async def _audit_within(
    budget: float,
    source_text: str,
    structured: StructuredInvoice,
    service: CompletionService,
) -> Optional[InvoiceAudit]:
    try:
        return await asyncio.wait_for(audit_invoice_interpretation(source_text, structured, service), budget)
    except asyncio.TimeoutError as exc:
        raise AuditTimeoutError(f"Invoice audit timed out after {budget}s") from exc


async def run_invoice_audit_overlay(
    source_text: str,
    structured: StructuredInvoice,
    service: CompletionService,
    last_user_message: Optional[str] = None,
) -> AuditOverlay:
    """
    Audit an existing structured invoice on demand.

    Without an audit report only the notes-derived assumptions and removed
    note lines are returned.
    """
    sanitized = sanitize_structured_notes(structured.notes)
    tax_directive = detect_explicit_tax_directive(source_text)
    seeded = tax_assumption_needed(sanitized, detect_tax_ambiguity(source_text), tax_directive)

    audit = await audit_invoice_interpretation(source_text, structured, service)
    if audit is None:
        return AuditOverlay(
            assumptions=normalize_assumptions(seeded, tax_directive),
            unparsed_lines=filter_unparsed_lines(sanitized.removed_lines),
        )

    decisions = merge_decisions(decisions_from_audit(audit.decisions), extract_ambiguous_billing_decisions(source_text))
    return AuditOverlay(
        open_decisions=filter_resolved_decisions(decisions, last_user_message),
        assumptions=normalize_assumptions([*audit.assumptions, *seeded], tax_directive),
        unparsed_lines=filter_unparsed_lines(merge_unparsed_lines(sanitized.removed_lines, audit.unparsed_lines)),
    )
