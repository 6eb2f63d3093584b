"""
Notes, assumptions and unparsed lines.

Keeps the invoice notes customer-facing and reports what the draft left out:
- Structured notes sanitization (internal reminders, hedges, tax remarks)
- Unparsed source lines the structured invoice does not reflect
- Assumption normalization ("Tax assumed 0%.")
- Explicit and ambiguous tax directives in the source text
"""

import re
from typing import Literal, NamedTuple, Optional

from .config import MAX_UNPARSED_LINES
from .decisions import AMBIGUOUS_TAX_MARKERS
from .schemas import FinishedInvoice, OpenDecision, StructuredInvoice
from .text_utils import (
    extract_keywords,
    keywords_overlap,
    normalize_decision_text,
    split_into_lines,
    split_note_lines,
)

TaxDirective = Literal["apply", "exclude", "none"]

TAX_ASSUMPTION = "Tax assumed 0%."

_INTERNAL_MARKERS = re.compile(
    r"\b(need to|order|next week|reminder|follow up|call|quote|estimate|drill|tool|purchase|buy|to do)\b",
    re.IGNORECASE,
)
_DECISION_MARKERS = re.compile(
    r"\b(up to you|do what makes sense|if you want|optional|not sure|unsure|maybe|if needed|as needed)\b",
    re.IGNORECASE,
)
_EXPLICIT_TAX_IN_LINE = [
    re.compile(r"\b(apply|add|include|charge)\s+(?:sales\s+)?tax\b", re.IGNORECASE),
    re.compile(r"\btax\s+at\b", re.IGNORECASE),
    re.compile(r"\bno\s+tax\b", re.IGNORECASE),
    re.compile(r"\bwithout\s+tax\b", re.IGNORECASE),
    re.compile(r"\btax[-\s]*exempt\b", re.IGNORECASE),
    re.compile(r"\btax[-\s]*free\b", re.IGNORECASE),
    re.compile(r"\b\d+(?:\.\d+)?%\s*tax\b", re.IGNORECASE),
]
_TAX_AMBIGUITY = re.compile(
    r"\b(sometimes|maybe|might|if applicable|not sure|do what makes sense|may apply|unless specified|depends|depending)\b"
)
_TAX_DIRECTIVE_AMBIGUITY = re.compile(
    r"\b(sometimes|maybe|might|if applicable|not sure|do what makes sense|may apply|unless specified)\b"
)

_IGNORED_LINE = re.compile(
    r"^(parts?|materials?|labor|notes?|misc|line items?|messy job notes|uploaded invoice text)\s*:?\s*$",
    re.IGNORECASE,
)
_HEDGE_LINE = re.compile(r"\b(up to you|do what makes sense|not sure|unsure|maybe|if applicable|sometimes)\b", re.IGNORECASE)
_TAX_WORD = re.compile(r"\btax\b", re.IGNORECASE)

_NOTE_MARKERS = re.compile(
    r"\b(notes?|memo|special instructions|terms?|net\s*\d+|due|payment|payable|please|thank you|thanks|warranty"
    r"|guarantee|make\s+checks?\s+payable|remit|ach|wire|bank|venmo|zelle|call|text|email|contact|access|gate"
    r"|code|lockbox|entry|enter|leave|drop\s+off|pickup|schedule|availability)\b",
    re.IGNORECASE,
)
_WORK_MARKERS = re.compile(
    r"(?:\b\d+(?:\.\d+)?\s*(?:hours?|hrs?)\b|\$|\b(?:parts?|materials?|labor|rate|fixed|repair(?:ed)?|install(?:ed)?"
    r"|replace(?:d)?|tighten(?:ed)?|adjust(?:ed)?|inspect(?:ed)?|clean(?:ed)?|service|visit)\b)",
    re.IGNORECASE,
)

_GENERIC_ASSUMPTIONS = [
    re.compile(r"\ball\s+(?:line\s+items?|items?)\s+(?:are\s+)?(captured|included|reflected|accounted)\b"),
    re.compile(r"\ball\s+labor\s+and\s+materials?\s+(?:are\s+)?(captured|included|reflected|accounted)\b"),
    re.compile(r"\beverything\s+(?:is\s+)?(captured|included|reflected|accounted)\b"),
    re.compile(r"\bno\s+additional\s+assumptions\b"),
    re.compile(r"\bno\s+other\s+assumptions\b"),
]


# ============================================================================
# Tax Directives
# ============================================================================

def detect_tax_ambiguity(source_text: str) -> bool:
    """True when the notes mention tax with hedging language."""
    normalized = normalize_decision_text(source_text)
    if "tax" not in normalized:
        return False
    return bool(_TAX_AMBIGUITY.search(normalized))


def detect_explicit_tax_directive(source_text: str) -> TaxDirective:
    """Classify an unhedged tax instruction as "apply", "exclude" or "none"."""
    normalized = normalize_decision_text(source_text)
    if "tax" not in normalized or _TAX_DIRECTIVE_AMBIGUITY.search(normalized):
        return "none"

    exclude_patterns = [
        r"\bno\s+tax\b",
        r"\bwithout\s+tax\b",
        r"\bdo\s+not\s+apply\s+tax\b",
        r"\bdon'?t\s+apply\s+tax\b",
        r"\btax\s+exempt\b",
        r"\btax[-\s]*free\b",
    ]
    if any(re.search(pattern, normalized) for pattern in exclude_patterns):
        return "exclude"

    apply_patterns = [
        r"\b(apply|add|include|charge)\s+(?:sales\s+)?tax\b",
        r"\btax\s+at\b",
        r"\bwith\s+tax\b",
        r"\b\d+(?:\.\d+)?%\s*tax\b",
    ]
    if any(re.search(pattern, normalized) for pattern in apply_patterns):
        return "apply"

    return "none"


def has_explicit_tax_request(source_text: str) -> bool:
    """True when the notes plainly ask about or for tax."""
    normalized = normalize_decision_text(source_text)
    if "tax" not in normalized or _TAX_DIRECTIVE_AMBIGUITY.search(normalized):
        return False
    raw = source_text.lower()
    request_patterns = [
        r"\b(apply|add|include|charge)\s+(?:sales\s+)?tax\b",
        r"\btax\s*\?",
        r"\bshould\s+i\s+.*tax\b",
        r"\bdo\s+i\s+.*tax\b",
        r"\bneed\s+.*tax\b",
        r"\bwant\s+.*tax\b",
        r"\bwith\s+tax\b",
        r"\btax\s+at\b",
        r"\b\d+(?:\.\d+)?%\s*tax\b",
    ]
    return any(re.search(pattern, raw) for pattern in request_patterns)


# ============================================================================
# Notes Sanitization
# ============================================================================

class SanitizedNotes(NamedTuple):
    cleaned_notes: Optional[str]
    removed_lines: list[str]
    tax_ambiguity_found: bool


def sanitize_structured_notes(notes: Optional[str]) -> SanitizedNotes:
    """
    Strip notes that do not belong on a customer invoice.

    Tax remarks and hedges are dropped silently (an ambiguous tax remark is
    flagged so the caller can add the 0% assumption). Internal reminders
    such as "need to order a drill" are dropped and returned so they can be
    reported as unparsed lines.
    """
    if not notes or not notes.strip():
        return SanitizedNotes(notes, [], False)

    kept: list[str] = []
    removed: list[str] = []
    tax_ambiguity_found = False

    for line in split_note_lines(notes):
        has_tax = bool(_TAX_WORD.search(line))
        if has_tax:
            explicit = not AMBIGUOUS_TAX_MARKERS.search(line) and any(
                pattern.search(line) for pattern in _EXPLICIT_TAX_IN_LINE
            )
            if AMBIGUOUS_TAX_MARKERS.search(line) and not explicit:
                tax_ambiguity_found = True
            continue
        if _DECISION_MARKERS.search(line):
            continue
        if _INTERNAL_MARKERS.search(line):
            removed.append(line)
            continue
        kept.append(line)

    return SanitizedNotes("\n".join(kept) if kept else None, removed, tax_ambiguity_found)


# ============================================================================
# Unparsed Lines
# ============================================================================

def _format_number(value: Optional[float]) -> Optional[str]:
    return None if value is None else f"{value:.2f}"


def _build_keyword_set(structured: StructuredInvoice, decisions: list[OpenDecision]) -> set[str]:
    texts = [structured.customer_name, structured.notes]
    texts.extend(task.description for session in structured.work_sessions for task in session.tasks)
    texts.extend(material.description for material in structured.materials)
    for decision in decisions:
        texts.extend([decision.prompt, decision.source_snippet])

    keywords: set[str] = set()
    for text in texts:
        if text:
            keywords.update(extract_keywords(text))
    return keywords


def extract_unparsed_lines(
    source_text: str,
    structured: StructuredInvoice,
    decisions: Optional[list[OpenDecision]] = None,
) -> list[str]:
    """
    List source lines the structured invoice does not account for.

    A line counts as reflected when it names a session date, quotes a known
    amount, hours or rate, or shares any keyword with the invoice content.

    Args:
        source_text: Source notes
        structured: Parsed invoice
        decisions: Open decisions; their wording also counts as reflected

    Returns:
        At most MAX_UNPARSED_LINES distinct lines, in source order
    """
    lines = split_into_lines(source_text)
    if not lines:
        return []

    keywords = _build_keyword_set(structured, decisions or [])
    session_dates = [s.date.strip().lower() for s in structured.work_sessions if s.date and s.date.strip()]

    known_amounts: set[str] = set()
    known_hours: set[str] = set()
    for session in structured.work_sessions:
        for task in session.tasks:
            known_amounts.update(v for v in (_format_number(task.amount), _format_number(task.rate)) if v)
            if task.hours is not None:
                known_hours.add(_format_number(task.hours))
    for material in structured.materials:
        known_amounts.update(v for v in (_format_number(material.amount), _format_number(material.unit_cost)) if v)

    seen: set[str] = set()
    unparsed: list[str] = []
    for line in lines:
        lower = line.lower()
        if _IGNORED_LINE.match(line) or _HEDGE_LINE.search(line) or _TAX_WORD.search(line):
            continue
        if any(date in lower for date in session_dates):
            continue
        dollars = [f"{float(v):.2f}" for v in re.findall(r"\$\s*(\d+(?:\.\d+)?)", line)]
        if any(value in known_amounts for value in dollars):
            continue
        hours_match = re.search(r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?)\b", line, re.IGNORECASE)
        if hours_match and f"{float(hours_match.group(1)):.2f}" in known_hours:
            continue
        rates = [f"{float(v):.2f}" for v in re.findall(r"(\d+(?:\.\d+)?)\s*(?:/hr|per hour|hr)\b", line, re.IGNORECASE)]
        if any(value in known_amounts for value in rates):
            continue

        tokens = extract_keywords(line)
        if not tokens or any(token in keywords for token in tokens):
            continue
        normalized = normalize_decision_text(line)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        unparsed.append(line)
        if len(unparsed) >= MAX_UNPARSED_LINES:
            break

    return unparsed


def merge_unparsed_lines(primary: list[str], secondary: list[str], max_items: int = MAX_UNPARSED_LINES) -> list[str]:
    """Merge two line lists, skipping repeats and near-duplicates by keyword overlap."""
    merged: list[str] = []
    seen: set[str] = set()
    keyword_sets: list[list[str]] = []

    for line in [*primary, *secondary]:
        normalized = normalize_decision_text(line)
        if not normalized or normalized in seen:
            continue
        keywords = extract_keywords(line)
        if keywords:
            if any(keywords_overlap(keywords, existing) for existing in keyword_sets):
                continue
            keyword_sets.append(keywords)
        seen.add(normalized)
        merged.append(line.strip())

    return merged[:max_items]


def filter_unparsed_lines(lines: list[str]) -> list[str]:
    """Drop tax remarks, hedges and bill-to/customer lines from the unparsed list."""
    kept = []
    for line in lines:
        if _TAX_WORD.search(line) or _HEDGE_LINE.search(line):
            continue
        if re.match(r"^\s*(bill\s+to|invoice\s+to)\b", line, re.IGNORECASE):
            continue
        if re.match(r"^\s*customer\s*[:\-]", line, re.IGNORECASE):
            continue
        if re.match(r"^\s*[Cc]ustomer\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,4}\s*$", line):
            continue
        if re.match(r"^\s*bill\s+[A-Z]", line) and "$" not in line:
            continue
        kept.append(line)
    return kept


# ============================================================================
# Invoice Notes
# ============================================================================

def extract_user_note_candidates(source_text: str) -> list[str]:
    """Source lines that read like customer-facing notes (terms, access codes, thanks)."""
    candidates: list[str] = []
    capture_next = False
    for line in split_into_lines(source_text):
        labeled = re.match(r"^(notes?|memo|special instructions|terms?)\s*[:\-]\s*(.*)$", line, re.IGNORECASE)
        if labeled:
            rest = labeled.group(2).strip()
            if rest:
                candidates.append(rest)
            else:
                capture_next = True
            continue
        if capture_next:
            candidates.append(line)
            capture_next = False
            continue
        if _NOTE_MARKERS.search(line) and not _WORK_MARKERS.search(line):
            candidates.append(line)
    return candidates


def filter_invoice_notes(invoice: FinishedInvoice, source_text: str, decisions: list[OpenDecision]) -> FinishedInvoice:
    """
    Keep only note lines the user actually wrote as notes.

    Without note-like source lines, a note line survives on its own merit
    (note wording, no work wording). Lines about an open decision go.
    """
    if not invoice.notes:
        return invoice

    candidates = extract_user_note_candidates(source_text)
    candidate_keywords = [extract_keywords(line) for line in candidates]
    normalized_candidates = [normalize_decision_text(line) for line in candidates]
    decision_keyword_sets = [extract_keywords(d.source_snippet or d.prompt) for d in decisions]

    kept = []
    for line in split_note_lines(invoice.notes):
        normalized = normalize_decision_text(line)
        if not normalized:
            continue
        line_keywords = extract_keywords(line)
        if candidates:
            keep = any(keywords_overlap(line_keywords, keywords) for keywords in candidate_keywords) or any(
                candidate and candidate in normalized for candidate in normalized_candidates
            )
        else:
            keep = bool(_NOTE_MARKERS.search(line)) and not _WORK_MARKERS.search(line)
        if not keep:
            continue
        if line_keywords and any(keywords_overlap(line_keywords, keywords) for keywords in decision_keyword_sets):
            continue
        kept.append(line)

    return invoice.model_copy(update={"notes": "\n".join(kept) if kept else None})


# ============================================================================
# Assumptions
# ============================================================================

def normalize_assumptions(assumptions: list[str], tax_directive: TaxDirective = "none") -> list[str]:
    """
    Deduplicate assumptions and collapse tax assumptions to "Tax assumed 0%.".

    Tax assumptions are dropped entirely when the notes give a tax
    directive; filler like "all items are captured" is dropped always.
    """
    normalized: list[str] = []
    seen: set[str] = set()
    has_tax_assumption = False

    for assumption in assumptions:
        if not assumption:
            continue
        text = normalize_decision_text(assumption)
        if not text or text in seen:
            continue
        if tax_directive != "none" and "tax" in text:
            continue
        if any(pattern.search(text) for pattern in _GENERIC_ASSUMPTIONS):
            continue
        if "tax" in text and ("assum" in text or "0" in text):
            if has_tax_assumption:
                continue
            has_tax_assumption = True
            seen.add(text)
            normalized.append(TAX_ASSUMPTION)
            continue
        seen.add(text)
        normalized.append(assumption)

    return normalized


def filter_assumptions_against_decisions(assumptions: list[str], decisions: list[OpenDecision]) -> list[str]:
    """Drop assumptions that restate an open decision."""
    if not assumptions or not decisions:
        return assumptions

    keyword_sets = [extract_keywords(d.source_snippet or d.prompt) for d in decisions]
    has_tax_decision = any(d.kind == "tax" for d in decisions)

    kept = []
    for assumption in assumptions:
        text = normalize_decision_text(assumption)
        if not text:
            continue
        if has_tax_decision and "tax" in text and "assum" in text:
            continue
        assumption_keywords = extract_keywords(assumption)
        if any(keywords_overlap(assumption_keywords, keywords) for keywords in keyword_sets):
            continue
        kept.append(assumption)
    return kept


def tax_assumption_needed(sanitized: SanitizedNotes, tax_ambiguity: bool, tax_directive: TaxDirective) -> list[str]:
    """The 0% tax assumption to seed, if the notes left tax unclear."""
    if sanitized.tax_ambiguity_found or (tax_ambiguity and tax_directive == "none"):
        return [TAX_ASSUMPTION]
    return []
