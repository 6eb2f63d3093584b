"""
Error taxonomy for the invoice drafting pipeline.

Every error raised on purpose by the package derives from InvoiceDraftError
and carries a single user-facing message.
"""

from typing import Optional


class InvoiceDraftError(Exception):
    """Base class for all drafting pipeline errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(InvoiceDraftError):
    """Missing or empty source text, or an unsupported upload."""


class ModelOutputError(InvoiceDraftError):
    """The completion service did not return usable JSON after one retry."""


class ValidationError(InvoiceDraftError):
    """An entity failed schema validation or a pricing contract was violated."""

    def __init__(self, message: str, field_path: Optional[str] = None):
        super().__init__(message)
        self.field_path = field_path


class AuditTimeoutError(InvoiceDraftError):
    """The audit overlay exceeded its time budget. Recovered inside the pipeline."""


class CompletionServiceError(InvoiceDraftError):
    """The completion service could not be reached or rejected the request."""


class ConfigurationError(InvoiceDraftError):
    """Required configuration (such as an API key) is missing."""


class InvoiceNotFoundError(InvoiceDraftError):
    """No saved invoice exists with the requested id."""

    def __init__(self, invoice_id: str):
        super().__init__(f'Invoice "{invoice_id}" was not found.')
        self.invoice_id = invoice_id
