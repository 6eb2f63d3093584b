"""
FastAPI application for the Invoice Drafter service.

Provides REST API endpoints for:
- Health check
- Drafting invoices from job notes or uploaded documents
- Answering the labor pricing follow-up and applying discounts
- Audit overlay, rewording and free-form edits
- Saved invoice management
"""

from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .audit import run_invoice_audit_overlay
from .completion import CompletionService, get_completion_service
from .config import API_HOST, API_PORT, MAX_UPLOAD_SIZE_MB, logger
from .editing import apply_invoice_edit_instruction, change_line_wording, reword_full_invoice
from .errors import CompletionServiceError, InputError, InvoiceDraftError, InvoiceNotFoundError
from .extractor import extract_uploaded_text
from .pipeline import (
    apply_discount_after_follow_up,
    continue_invoice_after_labor_pricing,
    create_invoice_from_input,
)
from .schemas import (
    AuditOverlay,
    AuditRequest,
    CreateInvoiceRequest,
    DeleteResponse,
    DiscountRequest,
    DiscountResponse,
    DraftResponse,
    DraftResult,
    EditInvoiceRequest,
    EditInvoiceResponse,
    InvoiceResponse,
    LaborPricingFollowUpResult,
    LaborPricingRequest,
    ParseMode,
    RewordFullRequest,
    RewordLineRequest,
    SavedInvoiceListResponse,
    SavedInvoiceResponse,
    SaveInvoiceRequest,
    UpdateStatusRequest,
)
from .store import InvoiceStore, get_invoice_store


# ============================================================================
# FastAPI App Configuration
# ============================================================================

app = FastAPI(
    title="Invoice Drafter API",
    description="""
    Invoice Drafter API.

    Turns messy job notes into priced, editable invoices.

    ## Features

    - **Draft**: Parse notes or uploaded documents into a finished invoice
    - **Labor follow-up**: Ask how unpriced labor should be billed
    - **Audit overlay**: Surface assumptions, open billing decisions and unparsed lines
    - **Saved invoices**: Save, duplicate, change status, soft delete and restore
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Request/Response Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


def _draft_response(result: DraftResult) -> DraftResponse:
    if isinstance(result, LaborPricingFollowUpResult):
        return DraftResponse(
            needs_follow_up=True,
            follow_up=result.follow_up,
            structured_invoice=result.structured_invoice,
            open_decisions=result.open_decisions,
            assumptions=result.assumptions,
            unparsed_lines=result.unparsed_lines,
            audit_status=result.audit_status,
        )
    return DraftResponse(
        needs_follow_up=False,
        structured_invoice=result.structured_invoice,
        invoice=result.invoice,
        open_decisions=result.open_decisions,
        assumptions=result.assumptions,
        unparsed_lines=result.unparsed_lines,
        audit_status=result.audit_status,
    )


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Returns the service status and version information.
    """
    from . import __version__
    return HealthResponse(status="ok", version=__version__)


@app.post(
    "/api/invoices/from-input",
    response_model=DraftResponse,
    response_model_exclude_none=True,
    tags=["Drafting"],
    summary="Draft an invoice from job notes",
)
async def create_from_input(
    request: CreateInvoiceRequest,
    service: CompletionService = Depends(get_completion_service),
) -> DraftResponse:
    """
    Draft an invoice from typed notes and/or uploaded document text.

    Responds with `needsFollowUp: true` and a labor pricing question when
    some labor tasks carry no price.
    """
    result = await create_invoice_from_input(
        request.messy_input,
        request.uploaded_invoice_text,
        service,
        last_user_message=request.last_user_message,
        mode=request.mode,
    )
    return _draft_response(result)


@app.post(
    "/api/invoices/from-upload",
    response_model=DraftResponse,
    response_model_exclude_none=True,
    tags=["Drafting"],
    summary="Draft an invoice from an uploaded document",
)
async def create_from_upload(
    invoice_file: UploadFile = File(..., alias="invoiceFile", description="PDF or text document"),
    messy_input: Optional[str] = Form(None, alias="messyInput"),
    last_user_message: Optional[str] = Form(None, alias="lastUserMessage"),
    mode: ParseMode = Form("full"),
    service: CompletionService = Depends(get_completion_service),
) -> DraftResponse:
    """
    Extract text from an uploaded PDF or text file and draft an invoice.

    **Limitations:**
    - Maximum file size: MAX_UPLOAD_SIZE_MB
    - Supported formats: PDF, text/*, application/json
    """
    content = await invoice_file.read()
    if len(content) > MAX_UPLOAD_SIZE_MB * 1024 * 1024:
        raise InputError(f"File too large (max {MAX_UPLOAD_SIZE_MB}MB).")

    uploaded_text = extract_uploaded_text(content, invoice_file.content_type)
    logger.info(f"Extracted upload text from: {invoice_file.filename}")

    result = await create_invoice_from_input(
        messy_input,
        uploaded_text,
        service,
        last_user_message=last_user_message,
        mode=mode,
    )
    return _draft_response(result)


@app.post(
    "/api/invoices/from-input/labor-pricing",
    response_model=DraftResponse,
    response_model_exclude_none=True,
    tags=["Drafting"],
    summary="Answer the labor pricing follow-up",
)
async def labor_pricing(
    request: LaborPricingRequest,
    service: CompletionService = Depends(get_completion_service),
) -> DraftResponse:
    result = await continue_invoice_after_labor_pricing(
        request.structured_invoice,
        request.labor_pricing,
        service,
        source_text=request.source_text,
        last_user_message=request.last_user_message,
        mode=request.mode,
    )
    return _draft_response(result)


@app.post(
    "/api/invoices/from-input/discount",
    response_model=DiscountResponse,
    response_model_exclude_none=True,
    tags=["Drafting"],
    summary="Apply a discount",
)
async def discount(request: DiscountRequest) -> DiscountResponse:
    invoice = apply_discount_after_follow_up(request.invoice, request.discount_amount, request.discount_reason)
    return DiscountResponse(invoice=invoice)


@app.post(
    "/api/invoices/audit",
    response_model=AuditOverlay,
    response_model_exclude_none=True,
    tags=["Drafting"],
    summary="Audit a structured invoice against its notes",
)
async def audit(
    request: AuditRequest,
    service: CompletionService = Depends(get_completion_service),
) -> AuditOverlay:
    return await run_invoice_audit_overlay(
        request.source_text,
        request.structured_invoice,
        service,
        last_user_message=request.last_user_message,
    )


@app.post(
    "/api/invoices/reword-line",
    response_model=InvoiceResponse,
    response_model_exclude_none=True,
    tags=["Editing"],
)
async def reword_line(
    request: RewordLineRequest,
    service: CompletionService = Depends(get_completion_service),
) -> InvoiceResponse:
    invoice = await change_line_wording(request.invoice, request.line_item_id, service, tone=request.tone)
    return InvoiceResponse(invoice=invoice)


@app.post(
    "/api/invoices/reword-full",
    response_model=InvoiceResponse,
    response_model_exclude_none=True,
    tags=["Editing"],
)
async def reword_full(
    request: RewordFullRequest,
    service: CompletionService = Depends(get_completion_service),
) -> InvoiceResponse:
    invoice = await reword_full_invoice(request.invoice, service, tone=request.tone)
    return InvoiceResponse(invoice=invoice)


@app.post(
    "/api/invoices/edit",
    response_model=EditInvoiceResponse,
    response_model_exclude_none=True,
    tags=["Editing"],
)
async def edit(
    request: EditInvoiceRequest,
    service: CompletionService = Depends(get_completion_service),
) -> EditInvoiceResponse:
    invoice, follow_up = await apply_invoice_edit_instruction(request.invoice, request.instruction, service)
    return EditInvoiceResponse(invoice=invoice, follow_up=follow_up)


# ============================================================================
# Saved Invoices
# ============================================================================

@app.post(
    "/api/invoices/save",
    response_model=SavedInvoiceResponse,
    response_model_exclude_none=True,
    tags=["Saved Invoices"],
)
async def save_invoice(
    request: SaveInvoiceRequest,
    store: InvoiceStore = Depends(get_invoice_store),
) -> SavedInvoiceResponse:
    """Save an invoice. The request must carry `confirmSave: true`."""
    saved = store.save(request.source_type, request.invoice_data, invoice_id=request.invoice_id)
    return SavedInvoiceResponse(invoice=saved)


@app.get(
    "/api/invoices",
    response_model=SavedInvoiceListResponse,
    response_model_exclude_none=True,
    tags=["Saved Invoices"],
)
async def list_invoices(
    include_deleted: bool = Query(False, alias="includeDeleted"),
    store: InvoiceStore = Depends(get_invoice_store),
) -> SavedInvoiceListResponse:
    return SavedInvoiceListResponse(invoices=store.list_invoices(include_deleted=include_deleted))


@app.get(
    "/api/invoices/{invoice_id}",
    response_model=SavedInvoiceResponse,
    response_model_exclude_none=True,
    tags=["Saved Invoices"],
)
async def get_invoice(invoice_id: str, store: InvoiceStore = Depends(get_invoice_store)) -> SavedInvoiceResponse:
    return SavedInvoiceResponse(invoice=store.get(invoice_id))


@app.post(
    "/api/invoices/{invoice_id}/duplicate",
    response_model=SavedInvoiceResponse,
    response_model_exclude_none=True,
    tags=["Saved Invoices"],
)
async def duplicate_invoice(invoice_id: str, store: InvoiceStore = Depends(get_invoice_store)) -> SavedInvoiceResponse:
    return SavedInvoiceResponse(invoice=store.duplicate(invoice_id))


@app.post(
    "/api/invoices/{invoice_id}/status",
    response_model=SavedInvoiceResponse,
    response_model_exclude_none=True,
    tags=["Saved Invoices"],
)
async def update_invoice_status(
    invoice_id: str,
    request: UpdateStatusRequest,
    store: InvoiceStore = Depends(get_invoice_store),
) -> SavedInvoiceResponse:
    return SavedInvoiceResponse(invoice=store.update_status(invoice_id, request.status))


@app.post(
    "/api/invoices/{invoice_id}/restore",
    response_model=SavedInvoiceResponse,
    response_model_exclude_none=True,
    tags=["Saved Invoices"],
)
async def restore_invoice(invoice_id: str, store: InvoiceStore = Depends(get_invoice_store)) -> SavedInvoiceResponse:
    return SavedInvoiceResponse(invoice=store.restore(invoice_id))


@app.delete("/api/invoices/{invoice_id}", response_model=DeleteResponse, tags=["Saved Invoices"])
async def delete_invoice(invoice_id: str, store: InvoiceStore = Depends(get_invoice_store)) -> DeleteResponse:
    """Soft delete: the invoice is hidden from default listings and can be restored."""
    store.delete(invoice_id)
    return DeleteResponse()


# ============================================================================
# Error Handlers
# ============================================================================

@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report the first invalid field as a 400."""
    errors = exc.errors()
    if errors:
        location = ".".join(str(part) for part in errors[0]["loc"] if part != "body")
        message = f"{location}: {errors[0]['msg']}" if location else errors[0]["msg"]
    else:
        message = "Invalid request."
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(InvoiceNotFoundError)
async def not_found_exception_handler(request: Request, exc: InvoiceNotFoundError):
    return JSONResponse(status_code=404, content={"error": exc.message})


@app.exception_handler(CompletionServiceError)
async def completion_service_exception_handler(request: Request, exc: CompletionServiceError):
    logger.error(f"CompletionServiceError: {exc.message}")
    return JSONResponse(status_code=502, content={"error": exc.message})


@app.exception_handler(InvoiceDraftError)
async def draft_exception_handler(request: Request, exc: InvoiceDraftError):
    logger.warning(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=400, content={"error": exc.message})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


# ============================================================================
# Startup/Shutdown Events
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup information."""
    logger.info(f"Invoice Drafter API starting on {API_HOST}:{API_PORT}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("Invoice Drafter API shutting down")


# ============================================================================
# Main Entry Point
# ============================================================================

def run_server():
    """Run the API server using uvicorn."""
    import uvicorn
    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    run_server()
