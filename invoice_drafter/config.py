"""
Configuration constants for the Invoice Drafter service.

Values are read from the environment (a local ``.env`` file is loaded first)
so deployments can tune the pipeline without code changes.
"""

import logging
import os
from typing import Final

from dotenv import load_dotenv

load_dotenv()

# ============================================================================
# Completion Service
# ============================================================================

OPENAI_API_KEY: Final[str] = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL: Final[str] = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")

# ============================================================================
# Pipeline Tuning
# ============================================================================

# Single inputs longer than this are parsed in paragraph-bounded chunks
CHUNK_THRESHOLD: Final[int] = int(os.getenv("CHUNK_THRESHOLD", "4000"))
CHUNK_MAX_CHARS: Final[int] = int(os.getenv("CHUNK_MAX_CHARS", "2000"))

# Upper bound for the advisory audit call, in seconds
AUDIT_TIMEOUT_SECONDS: float = float(os.getenv("AUDIT_TIMEOUT_SECONDS", "2.5"))

DEFAULT_CURRENCY: Final[str] = "USD"

# Keyword overlap needed before a decision is tied to a line item
KEYWORD_OVERLAP_THRESHOLD: Final[int] = 2

MAX_UNPARSED_LINES: Final[int] = 5

# ============================================================================
# Saved Invoice Store
# ============================================================================

INVOICE_STORE_FILE: Final[str] = os.getenv("INVOICE_STORE_FILE", "data/saved-invoices.json")

# ============================================================================
# API Configuration
# ============================================================================

API_HOST: Final[str] = os.getenv("API_HOST", "0.0.0.0")
API_PORT: Final[int] = int(os.getenv("API_PORT", "8000"))
MAX_UPLOAD_SIZE_MB: Final[int] = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))

# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")

def setup_logging() -> logging.Logger:
    """Configure and return the application logger."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("invoice_drafter")


logger = setup_logging()
