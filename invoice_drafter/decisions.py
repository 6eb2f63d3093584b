"""
Open billing decisions.

A decision is raised when the notes hedge about billing an item ("not sure
if I should bill", "maybe", "up to you"). Decisions never block an invoice;
they leave the matching line undecided until the user answers. This module
covers:
- Heuristic detection from source sentences, with context borrowing
- Resolution by later sentences or the user's last message
- Merging audit decisions with heuristic ones
- Filtering decisions that the invoice itself already settles
"""

import hashlib
import re
from typing import Iterable, NamedTuple, Optional

from .config import logger
from .schemas import AuditDecision, FinishedInvoice, OpenDecision, StructuredInvoice
from .text_utils import (
    expand_keyword_variants,
    extract_keywords,
    keyword_overlap,
    keywords_overlap,
    normalize_decision_text,
    split_into_sentences,
    truncate,
)

UNCERTAINTY_PHRASES = (
    "up to you",
    "if it makes sense",
    "if that makes sense",
    "i guess",
    "i suppose",
    "not sure",
    "unsure",
    "sometimes",
    "maybe",
    "if needed",
    "as needed",
    "if you think",
    "depends",
    "depending",
)

NO_CHARGE_MARKERS = re.compile(
    r"\b(no charge|no-charge|didn't charge|did not charge|not charged|no cost|complimentary|free)\b",
    re.IGNORECASE,
)
AMBIGUOUS_TAX_MARKERS = re.compile(
    r"\b(sometimes|maybe|if applicable|not sure|do what makes sense|might|may apply|unless specified)\b",
    re.IGNORECASE,
)

_DETECTION_ACTION_VERBS = re.compile(
    r"\b(fixed|repair(?:ed)?|install(?:ed)?|replace(?:d)?|tighten(?:ed)?|adjust(?:ed)?|inspect(?:ed)?"
    r"|clean(?:ed)?|swap(?:ped)?|paint(?:ed)?|design(?:ed)?|refresh(?:ed)?|update(?:d)?)\b",
    re.IGNORECASE,
)
_OPTIONAL_ACTION_VERBS = re.compile(
    r"\b(fixed|repair(?:ed)?|installed|replaced|tightened|adjusted|inspected|cleaned|patched|paint(?:ed)?"
    r"|tuned|tweak(?:ed)?|designed|updated)\b",
    re.IGNORECASE,
)
_AMBIGUOUS_MARKERS = re.compile(
    r"\b(maybe|might|not sure|unsure|up to you|do what makes sense|if you want|if needed|optional)\b",
    re.IGNORECASE,
)
_BILLING_MARKERS = re.compile(r"\b(bill|charge|invoice|include)\b", re.IGNORECASE)
_TIME_ONLY = re.compile(r"\b\d+(?:\.\d+)?\s*(?:mins?|minutes?|hours?|hrs?)\b", re.IGNORECASE)
_PRONOUNS = re.compile(r"\b(this|that|it|them|those|these)\b", re.IGNORECASE)

_EXPLICIT_TAX_REQUEST = [
    re.compile(r"\b(apply|add|include|charge)\s+(?:sales\s+)?tax\b"),
    re.compile(r"\btax\s*\?"),
    re.compile(r"\bshould\s+i\s+.*tax\b"),
    re.compile(r"\bwant\s+.*tax\b"),
    re.compile(r"\b\d+(?:\.\d+)?%\s*tax\b"),
]


def decision_id(prompt: str) -> str:
    """Stable id derived from the decision prompt."""
    return f"decision-{hashlib.sha1(prompt.encode('utf-8')).hexdigest()[:8]}"


def decision_keywords(decision: OpenDecision) -> list[str]:
    return decision.keywords or extract_keywords(decision.source_snippet or decision.prompt)


# ============================================================================
# Building Decisions
# ============================================================================

def build_decision_snippet(sentence: str) -> str:
    """Strip the hedge from a sentence, leaving the item it talks about."""
    normalized = re.sub(r"\s+", " ", sentence).strip()
    cleaned = re.sub(
        r"\b(not sure if i should bill|up to you|do what makes sense|if you think|depends|depending)\b.*$",
        "",
        normalized,
        flags=re.IGNORECASE,
    )
    cleaned = re.sub(r"\bmaybe\b", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"[\s,;:\-–—]+$", "", cleaned)
    cleaned = re.sub(r"\s{2,}", " ", cleaned).strip()
    return truncate(cleaned) if cleaned else normalized


def build_decision_from_sentence(sentence: str) -> Optional[OpenDecision]:
    """
    Turn a hedging sentence into a decision, or None when it is not one.

    Explicit no-charge wording and ambiguous tax remarks never become
    decisions; the latter are reported as assumptions instead.
    """
    lower = sentence.lower()
    if NO_CHARGE_MARKERS.search(normalize_decision_text(sentence)):
        return None

    if "tax" in lower:
        if AMBIGUOUS_TAX_MARKERS.search(lower):
            return None
        if not any(pattern.search(lower) for pattern in _EXPLICIT_TAX_REQUEST):
            return None
        prompt, kind, keywords = "Apply tax?", "tax", ["tax"]
    elif "discount" in lower:
        prompt, kind, keywords = "Apply a discount?", "billing", ["discount"]
    elif "bill" in lower or "charge" in lower or "invoice" in lower:
        prompt, kind, keywords = f'Bill this item? "{build_decision_snippet(sentence)}"', "billing", extract_keywords(sentence)
    else:
        prompt, kind, keywords = f"Confirm: {build_decision_snippet(sentence)}", "billing", extract_keywords(sentence)

    return OpenDecision(id=decision_id(prompt), kind=kind, prompt=prompt, keywords=keywords)


# ============================================================================
# Resolution
# ============================================================================

class DecisionResolution(NamedTuple):
    resolved: bool
    reason: Optional[str] = None


def evaluate_decision_resolution(decision: OpenDecision, resolution_text: str) -> DecisionResolution:
    """
    Decide whether a later sentence (or the user's reply) answers a decision.

    Billing decisions need billing intent plus context overlap with the
    decision. A "bill to <name>" directive alone never resolves one.
    """
    normalized = normalize_decision_text(resolution_text)
    if not normalized:
        return DecisionResolution(False, "resolution_text_missing")
    resolution_keywords = set(expand_keyword_variants(extract_keywords(normalized)))

    if decision.kind == "tax":
        tax_yes = re.search(r"\b(apply|add|include|charge)\s+(?:sales\s+)?tax(?:es)?\b|\btax\s+at\b|\bwith\s+tax(?:es)?\b", normalized)
        tax_no = re.search(
            r"\b(no|without|exclude|skip)\s+(?:sales\s+)?tax(?:es)?\b|\bdo\s+not\s+apply\s+tax\b"
            r"|\bdon'?t\s+apply\s+tax\b|\btax\s+exempt\b|\btax[-\s]*free\b",
            normalized,
        )
        if tax_yes or tax_no:
            return DecisionResolution(True)
        return DecisionResolution(False, "tax_intent_missing")

    if "discount" in decision.prompt.lower() or "discount" in decision.keywords:
        discount_yes = re.search(r"\b(apply|add|include)\s+discount\b|\bdiscount\s+it\b", normalized)
        discount_no = re.search(r"\b(no|without|exclude|skip)\s+discount\b|\bdo\s+not\s+discount\b|\bdon'?t\s+discount\b", normalized)
        if discount_yes or discount_no:
            return DecisionResolution(True)
        return DecisionResolution(False, "discount_intent_missing")

    billing_no = re.search(
        r"\bno\s+charge\b|\bdon'?t\s+bill\b|\bdo\s+not\s+bill\b|\bnot\s+billed\b|\bwaive\b|\bfree\b"
        r"|\bincluded\s+in\s+flat\b|\bno\s+bill\b",
        normalized,
    )
    billing_yes = not billing_no and re.search(r"\b(bill|charge|invoice|include|add)\b", normalized)
    if not billing_yes and not billing_no:
        return DecisionResolution(False, "billing_intent_missing")

    context = expand_keyword_variants(dict.fromkeys([*decision.keywords, *extract_keywords(decision.prompt)]))

    def mentions(keyword: str) -> bool:
        return keyword in resolution_keywords or keyword in normalized

    if re.search(r"\bbill\s+to\b", normalized):
        if not any(mentions(keyword) for keyword in context if keyword != "bill"):
            return DecisionResolution(False, "bill_to_directive")

    if context and any(mentions(keyword) for keyword in context):
        return DecisionResolution(True)

    if _PRONOUNS.search(normalized) and re.search(r'".+"', decision.prompt):
        return DecisionResolution(True)

    if not context:
        return DecisionResolution(True)

    return DecisionResolution(False, "billing_intent_missing_context")


def _log_unresolved(decision: OpenDecision, reason: str, resolution_text: str = "") -> None:
    logger.debug(
        f"Decision unresolved: id={decision.id} kind={decision.kind} reason={reason} "
        f"prompt={decision.prompt!r} resolution={resolution_text!r}"
    )


def filter_resolved_decisions(decisions: list[OpenDecision], last_user_message: Optional[str] = None) -> list[OpenDecision]:
    """Drop decisions answered by the user's last message."""
    reply = (last_user_message or "").strip()
    if not reply:
        return decisions
    return [d for d in decisions if not evaluate_decision_resolution(d, reply).resolved]


# ============================================================================
# Heuristic Detection
# ============================================================================

def _has_uncertainty(sentence: str) -> bool:
    lower = sentence.lower()
    return any(phrase in lower for phrase in UNCERTAINTY_PHRASES)


def _is_low_context(sentence: str) -> bool:
    """A bare time remark such as "45 mins, not sure if I should bill"."""
    return (
        not _DETECTION_ACTION_VERBS.search(sentence)
        and bool(_TIME_ONLY.search(sentence))
        and len(extract_keywords(sentence)) <= 3
    )


def _is_generic_billing_follow_up(sentence: str) -> bool:
    """A hedge that points back at something, like "bill it?"."""
    normalized = normalize_decision_text(sentence)
    refers_back = (
        re.search(r"\b(bill|charge|invoice|billing)\b", normalized)
        or _PRONOUNS.search(normalized)
        or "up to you" in normalized
    )
    return not _DETECTION_ACTION_VERBS.search(sentence) and bool(refers_back)


def detect_open_decisions_from_text(source_text: str, last_user_message: Optional[str] = None) -> list[OpenDecision]:
    """
    Detect unresolved billing decisions from the notes alone.

    Args:
        source_text: Source notes
        last_user_message: The user's latest reply, checked as a resolution

    Returns:
        Decisions not answered by any later sentence or by the reply
    """
    if not source_text:
        return []

    sentences = split_into_sentences(source_text)
    uncertain = [_has_uncertainty(sentence) for sentence in sentences]
    tax_indices = {i for i, sentence in enumerate(sentences) if re.search(r"\btax\b", sentence, re.IGNORECASE)}

    def is_likely_tax_sentence(sentence: str, index: int) -> bool:
        if not tax_indices:
            return False
        normalized = normalize_decision_text(sentence)
        has_percent = bool(re.search(r"\d+(?:\.\d+)?%", sentence) or re.search(r"\bpercent\b", sentence, re.IGNORECASE))
        has_add_intent = bool(re.search(r"\b(add|apply|charge|include)\b", normalized))
        has_ambiguity = bool(
            re.search(r"\b(sometimes|depends|depending|maybe|not sure|unsure|if applicable|unless specified)\b", normalized)
        )
        about_tax = "tax" in normalized.split() or (index - 1) in tax_indices
        return about_tax and has_percent and has_add_intent and has_ambiguity

    found: dict[str, tuple[OpenDecision, int]] = {}
    for index, sentence in enumerate(sentences):
        if not uncertain[index] or is_likely_tax_sentence(sentence, index):
            continue

        decision_sentence = sentence
        if index > 0 and _is_low_context(sentence):
            decision_sentence = f"{sentences[index - 1]} {sentence}"
        elif index > 0 and _is_generic_billing_follow_up(sentence):
            previous = sentences[index - 1]
            if _DETECTION_ACTION_VERBS.search(previous):
                if uncertain[index - 1]:
                    # The previous sentence already raised this item
                    continue
                decision_sentence = f"{previous} {sentence}"

        decision = build_decision_from_sentence(decision_sentence)
        if decision is None:
            continue
        decision = decision.model_copy(update={"source_snippet": sentence})
        existing = found.get(decision.id)
        if existing is None or index >= existing[1]:
            found[decision.id] = (decision, index)

    candidates = list(enumerate(sentences))
    reply = (last_user_message or "").strip()
    if reply:
        candidates.append((len(sentences) + 1, reply))

    unresolved = []
    for decision, index in found.values():
        reason, last_text = "resolution_candidate_missing", ""
        resolved = False
        for candidate_index, text in candidates:
            if candidate_index <= index:
                continue
            result = evaluate_decision_resolution(decision, text)
            reason, last_text = result.reason or reason, text
            if result.resolved:
                resolved = True
                break
        if not resolved:
            _log_unresolved(decision, reason, normalize_decision_text(last_text))
            unresolved.append(decision)
    return unresolved


def extract_ambiguous_billing_decisions(source_text: str) -> list[OpenDecision]:
    """
    Find sentences that hedge about billing a concrete piece of work.

    Used alongside the audit and to keep optional tasks out of the labor
    pricing question.
    """
    decisions = []
    for sentence in split_into_sentences(source_text):
        if NO_CHARGE_MARKERS.search(normalize_decision_text(sentence)):
            continue
        if not _AMBIGUOUS_MARKERS.search(sentence) or "tax" in sentence.lower():
            continue
        if not _BILLING_MARKERS.search(sentence) and not _OPTIONAL_ACTION_VERBS.search(sentence):
            continue
        snippet = truncate(sentence)
        prompt = f'Bill this item? "{snippet}"'
        decisions.append(
            OpenDecision(
                id=decision_id(prompt),
                kind="billing",
                prompt=prompt,
                source_snippet=snippet,
                keywords=extract_keywords(sentence),
            )
        )
    return decisions


def identify_optional_labor_tasks(structured: StructuredInvoice, source_text: str) -> set[str]:
    """Normalized descriptions of tasks the notes hedge about billing."""
    keyword_sets = [decision_keywords(d) for d in extract_ambiguous_billing_decisions(source_text)]
    if not keyword_sets:
        return set()

    optional = set()
    for session in structured.work_sessions:
        for task in session.tasks:
            task_keywords = extract_keywords(task.description)
            if any(keywords_overlap(task_keywords, keywords) for keywords in keyword_sets):
                optional.add(normalize_decision_text(task.description))
    return optional


def mark_optional_labor_tasks(structured: StructuredInvoice, optional: set[str]) -> StructuredInvoice:
    """
    Flag the optional tasks on the invoice itself.

    The flag travels with the structured invoice through the labor pricing
    follow-up, so the continuation skips the same tasks even without the
    original notes.
    """
    if not optional:
        return structured
    sessions = [
        session.model_copy(
            update={
                "tasks": [
                    task.model_copy(update={"billing_undecided": True})
                    if normalize_decision_text(task.description) in optional
                    else task
                    for task in session.tasks
                ]
            }
        )
        for session in structured.work_sessions
    ]
    return structured.model_copy(update={"work_sessions": sessions})


def flagged_optional_labor_tasks(structured: StructuredInvoice) -> set[str]:
    return {
        normalize_decision_text(task.description)
        for session in structured.work_sessions
        for task in session.tasks
        if task.billing_undecided
    }


def decisions_for_flagged_tasks(structured: StructuredInvoice, existing: list[OpenDecision]) -> list[OpenDecision]:
    """Billing decisions for flagged tasks that no existing decision mentions."""
    existing_keywords = [decision_keywords(d) for d in existing if d.kind == "billing"]
    decisions = []
    for session in structured.work_sessions:
        for task in session.tasks:
            if not task.billing_undecided:
                continue
            keywords = extract_keywords(task.description)
            if any(keyword_overlap(keywords, other) > 0 for other in existing_keywords):
                continue
            prompt = f'Bill this item? "{truncate(task.description)}"'
            decisions.append(
                OpenDecision(
                    id=decision_id(prompt),
                    kind="billing",
                    prompt=prompt,
                    source_snippet=task.description,
                    keywords=keywords,
                )
            )
    return decisions


# ============================================================================
# Audit Decisions and Merging
# ============================================================================

def decisions_from_audit(decisions: Iterable[AuditDecision]) -> list[OpenDecision]:
    return [
        OpenDecision(
            id=decision_id(d.prompt),
            kind=d.kind,
            prompt=d.prompt,
            source_snippet=d.source_snippet,
            keywords=extract_keywords(d.source_snippet or d.prompt),
        )
        for d in decisions
    ]


def merge_decisions(primary: list[OpenDecision], secondary: list[OpenDecision]) -> list[OpenDecision]:
    """
    Add secondary decisions that do not duplicate a primary one.

    A duplicate shares an id, or enough keywords with an existing decision.
    """
    merged = {d.id: d for d in primary}
    for decision in secondary:
        if decision.id in merged:
            continue
        keywords = decision_keywords(decision)
        if any(keywords_overlap(keywords, decision_keywords(existing)) for existing in merged.values()):
            continue
        merged[decision.id] = decision
    return list(merged.values())


def filter_decisions_against_invoice(
    decisions: list[OpenDecision],
    invoice: FinishedInvoice,
    tax_directive: str,
    explicit_tax_request: bool,
) -> list[OpenDecision]:
    """
    Drop decisions the invoice or the notes already settle.

    Tax decisions survive only when tax was explicitly asked about and no
    tax directive was given. Discount decisions go once a discount is set.
    Rate questions go when they quote the single labor rate in use.
    """
    if not decisions:
        return decisions

    if not explicit_tax_request or tax_directive != "none":
        decisions = [d for d in decisions if d.kind != "tax"]

    if invoice.discount_amount and invoice.discount_amount > 0:
        decisions = [d for d in decisions if "discount" not in normalize_decision_text(d.prompt)]

    labor_rates = {
        f"{item.unit_price:.2f}"
        for item in invoice.line_items
        if item.type == "labor" and item.unit_price and item.unit_price > 0
    }

    kept = []
    for decision in decisions:
        prompt = decision.prompt
        if re.match(r"(bill this item\?|confirm:)", prompt, re.IGNORECASE):
            kept.append(decision)
            continue
        mentions_rate = re.search(r"\brate\b|/hr|per hour|hourly", prompt, re.IGNORECASE)
        if not mentions_rate or len(labor_rates) != 1:
            kept.append(decision)
            continue
        prompt_rates = {f"{float(value):.2f}" for value in re.findall(r"\b(\d+(?:\.\d+)?)\b", prompt)}
        if not prompt_rates or not (prompt_rates & labor_rates):
            kept.append(decision)
    return kept
