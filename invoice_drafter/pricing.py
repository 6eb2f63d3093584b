"""
Labor pricing resolution.

Finds labor tasks that carry no price, builds the follow-up question for
them, and applies the caller's answer (hourly or flat) positionally. Also
picks up an explicit "N hours at $R/hr" or "N minutes at $R/hr" phrase when
exactly one task is unpriced.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import AbstractSet, Optional

from .config import logger
from .errors import ValidationError
from .normalizer import round_to_cents
from .schemas import (
    FlatLaborPricing,
    HourlyLaborPricing,
    LaborItem,
    LaborPricingFollowUp,
    LaborPricingOption,
    StructuredInvoice,
    Task,
)
from .text_utils import normalize_decision_text

LABOR_FOLLOW_UP_MESSAGE = (
    "I see labor work, but some labor pricing is missing. Please choose how labor should be billed."
)
LABOR_PRICING_OPTIONS = [
    LaborPricingOption(billing_type="hourly", label="Hourly (rate + hours per labor line)"),
    LaborPricingOption(billing_type="flat", label="Flat labor amount"),
]

_RATE_UNIT = r"(?:/hr|per hour|hr)"
_HOURS_THEN_RATE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?)\s*(?:@|at)\s*\$?\s*(\d+(?:\.\d{1,2})?)\s*" + _RATE_UNIT + r"\b",
    re.IGNORECASE,
)
_RATE_THEN_HOURS = re.compile(
    r"\$\s*(\d+(?:\.\d{1,2})?)\s*" + _RATE_UNIT + r"\s*.*?(\d+(?:\.\d+)?)\s*hours?\b",
    re.IGNORECASE,
)
_MINUTES_THEN_RATE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(?:mins?|minutes?)\s*(?:@|at)\s*\$?\s*(\d+(?:\.\d{1,2})?)\s*" + _RATE_UNIT + r"\b",
    re.IGNORECASE,
)
_RATE_THEN_MINUTES = re.compile(
    r"\$\s*(\d+(?:\.\d{1,2})?)\s*" + _RATE_UNIT + r"\s*.*?(\d+(?:\.\d+)?)\s*(?:mins?|minutes?)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class LaborTaskRef:
    """Position of a task inside a StructuredInvoice."""
    session_index: int
    task_index: int
    task: Task
    date: Optional[str] = None


def is_task_priced(task: Task) -> bool:
    """A task is priced when it has an amount, or positive hours and rate."""
    if task.amount is not None:
        return True
    return bool(task.hours and task.hours > 0 and task.rate and task.rate > 0)


def unpriced_labor_tasks(
    structured: StructuredInvoice,
    skip: AbstractSet[str] = frozenset(),
) -> list[LaborTaskRef]:
    """
    List unpriced tasks in session order.

    Args:
        structured: Parsed invoice
        skip: Normalized descriptions of tasks awaiting a billing decision

    Returns:
        Task references; this order is the one a pricing answer is matched against
    """
    refs = []
    for session_index, session in enumerate(structured.work_sessions):
        for task_index, task in enumerate(session.tasks):
            if is_task_priced(task):
                continue
            if normalize_decision_text(task.description) in skip:
                continue
            refs.append(LaborTaskRef(session_index, task_index, task, session.date))
    return refs


def needs_labor_pricing_follow_up(
    structured: StructuredInvoice,
    skip: AbstractSet[str] = frozenset(),
) -> bool:
    return bool(unpriced_labor_tasks(structured, skip))


def build_labor_pricing_follow_up(refs: list[LaborTaskRef]) -> LaborPricingFollowUp:
    return LaborPricingFollowUp(
        message=LABOR_FOLLOW_UP_MESSAGE,
        options=LABOR_PRICING_OPTIONS,
        labor_items=[
            LaborItem(description=ref.task.description, date=ref.date, hours=ref.task.hours)
            for ref in refs
        ],
    )


def _with_task_updates(structured: StructuredInvoice, updates: dict[tuple[int, int], dict]) -> StructuredInvoice:
    """Return a copy of the invoice with the given task fields replaced."""
    sessions = []
    for session_index, session in enumerate(structured.work_sessions):
        tasks = [
            task.model_copy(update=updates[(session_index, task_index)])
            if (session_index, task_index) in updates
            else task
            for task_index, task in enumerate(session.tasks)
        ]
        sessions.append(session.model_copy(update={"tasks": tasks}))
    return structured.model_copy(update={"work_sessions": sessions})


def split_across_items(total: float, item_count: int) -> list[float]:
    """
    Split an amount into cent-exact shares.

    Every share gets floor(totalCents / n) cents and the remainder is handed
    out one cent at a time to the first shares, so the shares always sum to
    the total (80 over 3 gives 26.67, 26.67, 26.66).
    """
    if item_count <= 0:
        return []
    total_cents = int((Decimal(str(total)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    base, remainder = divmod(total_cents, item_count)
    return [(base + (1 if index < remainder else 0)) / 100 for index in range(item_count)]


def apply_labor_pricing(
    structured: StructuredInvoice,
    choice: HourlyLaborPricing | FlatLaborPricing,
    skip: AbstractSet[str] = frozenset(),
) -> StructuredInvoice:
    """
    Price the unpriced labor tasks from the caller's answer.

    Args:
        structured: Invoice returned with the labor follow-up
        choice: Hourly rate plus hours per line, or one flat amount
        skip: Normalized descriptions excluded from the follow-up

    Returns:
        A new StructuredInvoice with the tasks priced

    Raises:
        ValidationError: If nothing needs pricing, or the hours list does
            not cover every unpriced line
    """
    refs = unpriced_labor_tasks(structured, skip)
    if not refs:
        raise ValidationError(
            "Labor pricing follow-up was provided, but no unpriced labor tasks were found."
        )

    updates: dict[tuple[int, int], dict] = {}
    if isinstance(choice, HourlyLaborPricing):
        if len(choice.line_hours) != len(refs):
            raise ValidationError("Please provide hours for every labor line item.", field_path="laborPricing.lineHours")
        for ref, hours in zip(refs, choice.line_hours):
            updates[(ref.session_index, ref.task_index)] = {
                "hours": round_to_cents(hours),
                "rate": round_to_cents(choice.rate),
                "amount": round_to_cents(hours * choice.rate),
            }
    else:
        shares = split_across_items(choice.flat_amount, len(refs))
        for ref, share in zip(refs, shares):
            updates[(ref.session_index, ref.task_index)] = {"hours": None, "rate": None, "amount": share}

    logger.info(f"Applied {choice.billing_type} labor pricing to {len(refs)} task(s)")
    return _with_task_updates(structured, updates)


# ============================================================================
# Inline Pricing Hints
# ============================================================================

def apply_inline_labor_pricing(structured: StructuredInvoice, source_text: str) -> StructuredInvoice:
    """Price the single unpriced task from an "N hours at $R/hr" phrase."""
    if not source_text.strip():
        return structured

    match = _HOURS_THEN_RATE.search(source_text)
    if match:
        hours, rate = float(match.group(1)), float(match.group(2))
    else:
        match = _RATE_THEN_HOURS.search(source_text)
        if not match:
            return structured
        rate, hours = float(match.group(1)), float(match.group(2))

    refs = unpriced_labor_tasks(structured)
    if len(refs) != 1:
        return structured

    ref = refs[0]
    return _with_task_updates(
        structured,
        {
            (ref.session_index, ref.task_index): {
                "hours": round_to_cents(hours),
                "rate": round_to_cents(rate),
                "amount": round_to_cents(hours * rate),
            }
        },
    )


def apply_inline_labor_minutes(structured: StructuredInvoice, source_text: str) -> StructuredInvoice:
    """Price the single unpriced task from an "N minutes at $R/hr" phrase."""
    if not source_text.strip():
        return structured

    match = _MINUTES_THEN_RATE.search(source_text)
    if match:
        minutes, rate = float(match.group(1)), float(match.group(2))
    else:
        match = _RATE_THEN_MINUTES.search(source_text)
        if not match:
            return structured
        rate, minutes = float(match.group(1)), float(match.group(2))

    if minutes <= 0 or rate <= 0:
        return structured

    refs = unpriced_labor_tasks(structured)
    if len(refs) != 1:
        return structured

    task = refs[0].task
    hours = round_to_cents(task.hours if task.hours and task.hours > 0 else minutes / 60)
    task_rate = task.rate if task.rate and task.rate > 0 else round_to_cents(rate)
    update = {"hours": hours, "rate": task_rate}
    if task.amount is None:
        update["amount"] = round_to_cents(hours * task_rate)

    return _with_task_updates(structured, {(refs[0].session_index, refs[0].task_index): update})
