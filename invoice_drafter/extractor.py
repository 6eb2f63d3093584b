"""
Upload text extraction.

Turns an uploaded document into plain text for the drafting pipeline:
- PDFs are read page by page with pdfplumber
- text/* and application/json uploads are decoded as UTF-8
"""

import io
import mimetypes
from pathlib import Path
from typing import Optional

import pdfplumber

from .config import logger
from .errors import InputError

PDF_CONTENT_TYPE = "application/pdf"


# ============================================================================
# Text Extraction
# ============================================================================

def extract_text_from_pdf_bytes(content: bytes) -> str:
    """
    Extract all text content from PDF bytes.

    Args:
        content: Raw PDF file content

    Returns:
        Concatenated text from all pages
    """
    text_parts = []
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        for page in pdf.pages:
            page_text = page.extract_text()
            if page_text:
                text_parts.append(page_text)
    return "\n".join(text_parts)


def extract_uploaded_text(content: bytes, content_type: Optional[str]) -> str:
    """
    Extract text from an uploaded file.

    Args:
        content: Raw file content
        content_type: MIME type reported for the upload

    Returns:
        The stripped document text

    Raises:
        InputError: If the file is empty, yields no text, or has an
            unsupported type
    """
    if not content:
        raise InputError("Uploaded file is empty.")

    content_type = (content_type or "").split(";")[0].strip().lower()

    if content_type == PDF_CONTENT_TYPE:
        try:
            text = extract_text_from_pdf_bytes(content).strip()
        except Exception as e:
            logger.error(f"Error extracting text from uploaded PDF: {e}")
            raise InputError("Could not extract text from the uploaded PDF.") from e
        if not text:
            raise InputError("Could not extract text from the uploaded PDF.")
        logger.info(f"Extracted {len(text)} chars from uploaded PDF")
        return text

    if content_type.startswith("text/") or content_type == "application/json":
        text = content.decode("utf-8", errors="replace").strip()
        if not text:
            raise InputError("Uploaded text file is empty.")
        return text

    raise InputError(f"Unsupported file type: {content_type or 'unknown'}. Upload PDF or text.")


def extract_text_from_file(path: Path) -> str:
    """Extract text from a local PDF or text file, guessing the type from its name."""
    content_type, _ = mimetypes.guess_type(path.name)
    if content_type is None and path.suffix.lower() in {".md", ".txt", ""}:
        content_type = "text/plain"
    return extract_uploaded_text(path.read_bytes(), content_type)
