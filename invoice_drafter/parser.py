"""
Structured parsing of job notes.

Turns free text into a StructuredInvoice through the completion service:
- Source text assembly from typed notes and/or uploaded document text
- Paragraph-bounded chunking for long single inputs, parsed concurrently
- Order-preserving merge of chunk results
- Source hints the model tends to miss (customer name, service period,
  whether an issue date was really stated)
"""

import asyncio
import re
from typing import Optional

from .completion import CompletionService, run_json_task
from .config import CHUNK_MAX_CHARS, CHUNK_THRESHOLD, logger
from .errors import InputError
from .prompts import build_parse_prompt
from .schemas import StructuredInvoice
from .text_utils import normalize_decision_text, split_into_lines

MESSY_NOTES_LABEL = "Messy job notes:"
UPLOADED_TEXT_LABEL = "Uploaded invoice text:"
SOURCE_SEPARATOR = "\n\n---\n\n"

MONTH_NUMBERS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6, "jul": 7,
    "aug": 8, "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}

_MONTH_DAY = re.compile(r"\b(" + "|".join(MONTH_NUMBERS) + r")\s+(\d{1,2})\b", re.IGNORECASE)

_NAME_STOPWORDS = frozenset(
    {
        "jan", "january", "feb", "february", "mar", "march", "apr", "april", "may",
        "jun", "june", "jul", "july", "aug", "august", "sep", "sept", "september",
        "oct", "october", "nov", "november", "dec", "december",
        "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
        "labor", "invoice", "service", "visit", "job", "task", "parts", "material", "materials",
    }
)

_CAPITALIZED_NAME = r"[A-Z][A-Za-z'.-]+(?:\s+[A-Z][A-Za-z'.-]+){1,4}"
_NAME = r"[A-Za-z][A-Za-z'.-]+(?:\s+[A-Za-z][A-Za-z'.-]+){1,4}"

_CUSTOMER_PATTERNS = [
    re.compile(r"\b(?i:bill(?:\s+to)?)\s+(" + _CAPITALIZED_NAME + ")"),
    re.compile(r"\b(?:client|customer)\s*[:\-]\s*(" + _NAME + ")", re.IGNORECASE),
    re.compile(r"\((" + _CAPITALIZED_NAME + r"),\s*\d{1,5}\s+[^)]+\)"),
    re.compile(r"(" + _CAPITALIZED_NAME + r"),\s*\d{1,5}\s+[A-Za-z0-9.\s]+\b"),
]

_ISSUE_DATE_PATTERNS = [
    re.compile(r"\binvoice\s+(?:date|dated)\b"),
    re.compile(r"\bissue\s+date\b"),
    re.compile(r"\bdate\s+of\s+invoice\b"),
    re.compile(r"\bdate\s+for\s+invoice\b"),
    re.compile(r"\bdated\s+invoice\b"),
]


# ============================================================================
# Source Text
# ============================================================================

def build_source_text(messy_input: Optional[str] = None, uploaded_invoice_text: Optional[str] = None) -> str:
    """
    Combine typed notes and uploaded text into one labelled source text.

    Raises:
        InputError: If both inputs are missing or blank
    """
    parts = []
    if messy_input and messy_input.strip():
        parts.append(f"{MESSY_NOTES_LABEL}\n{messy_input.strip()}")
    if uploaded_invoice_text and uploaded_invoice_text.strip():
        parts.append(f"{UPLOADED_TEXT_LABEL}\n{uploaded_invoice_text.strip()}")

    if not parts:
        raise InputError("Provide messyInput text, uploadedInvoiceText, or both.")

    return SOURCE_SEPARATOR.join(parts)


# ============================================================================
# Chunking
# ============================================================================

def should_chunk_input(messy_input: Optional[str], uploaded_invoice_text: Optional[str]) -> bool:
    """Chunk only when exactly one input is present and it is long."""
    present = [text for text in (messy_input, uploaded_invoice_text) if text and text.strip()]
    return len(present) == 1 and len(present[0]) > CHUNK_THRESHOLD


def split_input_into_chunks(text: str, max_chars: int = CHUNK_MAX_CHARS) -> list[str]:
    """
    Pack paragraphs into chunks of at most max_chars characters.

    A paragraph longer than max_chars becomes a chunk of its own.
    """
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    if not paragraphs:
        return [text]

    chunks: list[str] = []
    current = ""
    for paragraph in paragraphs:
        separator = "\n\n" if current else ""
        if current and len(current) + len(separator) + len(paragraph) > max_chars:
            chunks.append(current)
            current = paragraph
            continue
        current = f"{current}{separator}{paragraph}"
    if current:
        chunks.append(current)
    return chunks


def merge_notes(primary: Optional[str], secondary: Optional[str]) -> Optional[str]:
    """Join two note blocks line by line, dropping repeated lines."""
    lines: dict[str, None] = {}
    for block in (primary, secondary):
        if not block:
            continue
        for line in split_into_lines(block):
            lines[line] = None
    return "\n".join(lines) if lines else None


def merge_structured_invoices(base: StructuredInvoice, nxt: StructuredInvoice) -> StructuredInvoice:
    """Merge a later chunk into an earlier one, keeping source order."""
    return StructuredInvoice(
        customer_name=base.customer_name or nxt.customer_name,
        invoice_number=base.invoice_number or nxt.invoice_number,
        issue_date=base.issue_date or nxt.issue_date,
        service_period_start=base.service_period_start or nxt.service_period_start,
        service_period_end=base.service_period_end or nxt.service_period_end,
        work_sessions=[*base.work_sessions, *nxt.work_sessions],
        materials=[*base.materials, *nxt.materials],
        notes=merge_notes(base.notes, nxt.notes),
    )


# ============================================================================
# Parsing
# ============================================================================

async def parse_structured_invoice(source_text: str, service: CompletionService) -> StructuredInvoice:
    """Parse one source text into a StructuredInvoice."""
    return await run_json_task(service, build_parse_prompt(source_text), StructuredInvoice)


async def parse_structured_invoice_from_chunks(
    text: str,
    service: CompletionService,
    label: str = MESSY_NOTES_LABEL,
) -> StructuredInvoice:
    """
    Parse a long input chunk by chunk and merge the results.

    Chunk requests run concurrently; results are merged in chunk order.
    When one chunk fails, the chunk requests still running are cancelled.
    """
    chunks = split_input_into_chunks(text)
    logger.info(f"Parsing long input in {len(chunks)} chunk(s)")

    tasks = [asyncio.ensure_future(parse_structured_invoice(f"{label}\n{chunk}", service)) for chunk in chunks]
    try:
        parsed = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        raise

    merged = parsed[0]
    for chunk_invoice in parsed[1:]:
        merged = merge_structured_invoices(merged, chunk_invoice)
    return merged


async def parse_input(
    messy_input: Optional[str],
    uploaded_invoice_text: Optional[str],
    service: CompletionService,
) -> StructuredInvoice:
    """Parse the caller's input, chunking long single inputs."""
    if should_chunk_input(messy_input, uploaded_invoice_text):
        if messy_input and messy_input.strip():
            return await parse_structured_invoice_from_chunks(messy_input, service, MESSY_NOTES_LABEL)
        return await parse_structured_invoice_from_chunks(uploaded_invoice_text or "", service, UPLOADED_TEXT_LABEL)

    return await parse_structured_invoice(build_source_text(messy_input, uploaded_invoice_text), service)


# ============================================================================
# Source Hints
# ============================================================================

def extract_explicit_date_label(value: Optional[str]) -> Optional[str]:
    """Return a "Mon DD" label when the value names a month and day."""
    if not value:
        return None
    match = _MONTH_DAY.search(value)
    if not match:
        return None
    return f"{match.group(1).capitalize()} {match.group(2)}"


def _date_sort_key(label: str) -> int:
    match = _MONTH_DAY.search(label)
    return MONTH_NUMBERS[match.group(1).lower()] * 32 + int(match.group(2))


def apply_explicit_service_period(invoice: StructuredInvoice) -> StructuredInvoice:
    """Fill the service period from explicit session dates when the model left it out."""
    if extract_explicit_date_label(invoice.service_period_start):
        return invoice

    labels = [
        label for label in (extract_explicit_date_label(s.date) for s in invoice.work_sessions) if label
    ]
    if not labels:
        return invoice

    ordered = sorted(labels, key=_date_sort_key)
    return invoice.model_copy(
        update={
            "service_period_start": ordered[0],
            "service_period_end": invoice.service_period_end or ordered[-1],
        }
    )


def extract_customer_name_from_source(source_text: str) -> Optional[str]:
    """Find a "bill to"/"client:"/address-style customer name in the notes."""
    candidates = []
    for line in split_into_lines(source_text):
        for pattern in _CUSTOMER_PATTERNS:
            match = pattern.search(line)
            if match:
                candidates.append(match.group(1))
                break

    for candidate in candidates:
        cleaned = re.sub(r"[^\w\s.'-]|_", "", candidate).strip(" .'-")
        words = cleaned.split()
        if len(words) < 2 or len(cleaned) > 60:
            continue
        if re.search(r"\d|@", cleaned):
            continue
        if any(word.lower().strip(".") in _NAME_STOPWORDS for word in words):
            continue
        return cleaned
    return None


def apply_customer_name_fallback(invoice: StructuredInvoice, source_text: str) -> StructuredInvoice:
    if invoice.customer_name:
        return invoice
    name = extract_customer_name_from_source(source_text)
    if not name:
        return invoice
    return invoice.model_copy(update={"customer_name": name})


def has_explicit_issue_date(source_text: str) -> bool:
    """True when the notes explicitly state an invoice or issue date."""
    normalized = normalize_decision_text(source_text)
    if "invoice" not in normalized and "issue" not in normalized:
        return False
    return any(pattern.search(normalized) for pattern in _ISSUE_DATE_PATTERNS)
