"""
Discount detection and application.

Only an explicit number turns a discount mention into a discount; phrases
like "apply a discount for delay" are left for the user to decide.
"""

import re
from dataclasses import dataclass
from typing import Literal, Optional

from .normalizer import normalize_invoice, round_to_cents
from .schemas import FinishedInvoice

_AMOUNT_PATTERNS = [
    re.compile(r"\$\s*(\d+(?:\.\d{1,2})?)\s*(?:courtesy\s+)?(?:discount|credit|off)\b", re.IGNORECASE),
    re.compile(r"\b(?:discount|credit)\b[^$0-9]{0,25}\$?\s*(\d+(?:\.\d{1,2})?)", re.IGNORECASE),
    re.compile(r"\b(\d+(?:\.\d{1,2})?)\s*(?:dollars?\s*)?(?:off)\b", re.IGNORECASE),
]

_REASON_PATTERNS = [
    re.compile(r"\b(?:discount|credit|off)\b[^.:\n-]{0,80}\b(?:because|for)\b([^.\n]+)", re.IGNORECASE),
    re.compile(r"\b(?:because|for)\b([^.\n]+)\b(?:discount|credit|off)", re.IGNORECASE),
]


@dataclass(frozen=True)
class DiscountIntent:
    """Outcome of discount detection."""
    kind: Literal["none", "apply"] = "none"
    amount: float = 0.0
    reason: Optional[str] = None


NO_DISCOUNT = DiscountIntent()


def _extract_reason(text: str) -> Optional[str]:
    for pattern in _REASON_PATTERNS:
        match = pattern.search(text)
        if match:
            reason = match.group(1).strip()
            return f"Discount for {reason}" if len(reason) > 2 else None
    return None


def detect_discount(text: str) -> DiscountIntent:
    """
    Detect an explicit discount amount in free text.

    Patterns are tried in order: "$N discount/credit/off", a discount or
    credit keyword followed closely by a number, then "N dollars off".

    Args:
        text: Source notes

    Returns:
        DiscountIntent with kind "apply" and the rounded amount, or NO_DISCOUNT
    """
    stripped = text.strip()
    if not stripped:
        return NO_DISCOUNT

    for pattern in _AMOUNT_PATTERNS:
        match = pattern.search(stripped)
        if not match:
            continue
        amount = float(match.group(1))
        if amount <= 0:
            return NO_DISCOUNT
        return DiscountIntent(kind="apply", amount=round_to_cents(amount), reason=_extract_reason(stripped))

    return NO_DISCOUNT


def apply_discount(
    invoice: FinishedInvoice,
    discount_amount: float,
    discount_reason: Optional[str] = None,
) -> FinishedInvoice:
    """Return a normalized copy of the invoice carrying the discount."""
    reason = discount_reason.strip() if discount_reason and discount_reason.strip() else invoice.discount_reason
    discounted = invoice.model_copy(
        update={"discount_amount": round_to_cents(discount_amount), "discount_reason": reason}
    )
    return normalize_invoice(discounted)
