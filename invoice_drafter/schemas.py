"""
Pydantic models for the invoice drafting pipeline.

This module defines the data structures that flow through the drafter:
- Task, WorkSession, Material and StructuredInvoice for parsed job notes
- InvoiceLineItem and FinishedInvoice for priced invoices
- LaborPricingChoice, OpenDecision and InvoiceAudit for the follow-up and audit steps
- SavedInvoice records and the API request/response payloads

Python attributes are snake_case; the JSON contract is camelCase. Every model
accepts either spelling on input and serializes with camelCase aliases.
"""

import random
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, BeforeValidator, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .config import DEFAULT_CURRENCY
from .errors import ValidationError


def _blank_to_none(value: Any) -> Any:
    """Treat empty or whitespace-only strings as absent values."""
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


OptionalString = Annotated[Optional[str], BeforeValidator(_blank_to_none)]
OptionalAmount = Annotated[
    Optional[Annotated[float, Field(ge=0, allow_inf_nan=False)]],
    BeforeValidator(_blank_to_none),
]
PositiveAmount = Annotated[float, Field(gt=0, allow_inf_nan=False), BeforeValidator(_blank_to_none)]

LineItemType = Literal["labor", "material", "other"]
DecisionKind = Literal["billing", "tax"]
AuditStatus = Literal["completed", "skipped", "timed_out"]
ParseMode = Literal["full", "fast"]
SavedInvoiceStatus = Literal["draft", "sent", "paid", "deleted"]
SavedInvoiceSourceType = Literal["text_input", "upload"]


class CamelModel(BaseModel):
    """Base model exposing camelCase aliases while keeping snake_case attributes."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    def to_json_dict(self) -> dict:
        """Serialize using the public camelCase contract, omitting absent fields."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# Structured (parsed) Invoice
# ============================================================================

class Task(CamelModel):
    """
    One unit of labor inside a work session.

    A task is priced when it has an amount, or both positive hours and rate.
    """
    description: str = Field(..., min_length=1, description="Task wording from the notes")
    hours: OptionalAmount = Field(None, description="Hours worked, when stated")
    rate: OptionalAmount = Field(None, description="Hourly rate, when stated")
    amount: OptionalAmount = Field(None, description="Total charge for the task, when stated")
    billing_undecided: Optional[bool] = Field(
        None, description="Set when the notes hedge about billing this task; it is then left out of labor pricing"
    )


class WorkSession(CamelModel):
    """Tasks grouped under an optional calendar label, in insertion order."""
    date: OptionalString = None
    tasks: list[Task] = Field(default_factory=list)


class Material(CamelModel):
    """A part or material used on the job."""
    description: str = Field(..., min_length=1)
    quantity: OptionalAmount = None
    unit_cost: OptionalAmount = None
    amount: OptionalAmount = None


class StructuredInvoice(CamelModel):
    """
    Intermediate, not-yet-priced representation of the job notes.

    Numeric fields are left unset rather than guessed.
    """
    customer_name: OptionalString = None
    invoice_number: OptionalString = None
    issue_date: OptionalString = None
    service_period_start: OptionalString = None
    service_period_end: OptionalString = None
    work_sessions: list[WorkSession] = Field(default_factory=list)
    materials: list[Material] = Field(default_factory=list)
    notes: OptionalString = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "customerName": "Jill Parker",
                    "workSessions": [
                        {
                            "date": "Jan 10",
                            "tasks": [{"description": "Fixed sink leak", "hours": 2, "rate": 95}],
                        }
                    ],
                    "materials": [{"description": "Pipe tape", "quantity": 1, "unitCost": 7}],
                }
            ]
        }
    }


# ============================================================================
# Finished Invoice
# ============================================================================

def generate_invoice_number() -> str:
    """Build an invoice number of the form INV-YYYYMMDD-NNNN."""
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"INV-{today}-{random.randint(1000, 9999)}"


class InvoiceLineItem(CamelModel):
    """
    A single priced line on a finished invoice.

    A line carrying a decision_id is decision-gated: its amount stays unset
    until the billing question is answered.
    """
    id: OptionalString = None
    type: LineItemType = "other"
    description: str = Field(..., min_length=1)
    quantity: OptionalAmount = None
    unit_price: OptionalAmount = None
    amount: OptionalAmount = None
    source_session_date: OptionalString = None
    decision_id: OptionalString = None


class FinishedInvoice(CamelModel):
    """
    A priced invoice ready for presentation or persistence.

    subtotal, total and balance_due are recomputed by the normalizer; values
    supplied on input are accepted but never trusted.
    """
    invoice_number: OptionalString = Field(default_factory=generate_invoice_number)
    issue_date: OptionalString = None
    service_period_start: OptionalString = None
    service_period_end: OptionalString = None
    customer_name: OptionalString = None
    currency: OptionalString = DEFAULT_CURRENCY
    line_items: list[InvoiceLineItem] = Field(..., min_length=1)
    notes: OptionalString = None
    subtotal: OptionalAmount = None
    total: OptionalAmount = None
    balance_due: OptionalAmount = None
    discount_amount: OptionalAmount = None
    discount_reason: OptionalString = None

    @field_validator("invoice_number", mode="after")
    @classmethod
    def ensure_invoice_number(cls, v: Optional[str]) -> str:
        """Generate a number when the input leaves it blank."""
        return v or generate_invoice_number()

    @field_validator("currency", mode="after")
    @classmethod
    def normalize_currency(cls, v: Optional[str]) -> str:
        """Default and uppercase the currency code."""
        return (v or DEFAULT_CURRENCY).upper()


# ============================================================================
# Labor Pricing
# ============================================================================

class HourlyLaborPricing(CamelModel):
    """Hourly billing: one rate, and hours for every unpriced labor line."""
    billing_type: Literal["hourly"] = "hourly"
    rate: PositiveAmount
    line_hours: list[PositiveAmount] = Field(..., min_length=1)


class FlatLaborPricing(CamelModel):
    """Flat billing: a single amount split across the unpriced labor lines."""
    billing_type: Literal["flat"] = "flat"
    flat_amount: PositiveAmount


LaborPricingChoice = Annotated[
    Union[HourlyLaborPricing, FlatLaborPricing],
    Field(discriminator="billing_type"),
]


class LaborPricingOption(CamelModel):
    billing_type: Literal["hourly", "flat"]
    label: str


class LaborItem(CamelModel):
    description: str
    date: Optional[str] = None
    hours: Optional[float] = None


class LaborPricingFollowUp(CamelModel):
    """The question asked when labor work is present but not priced."""
    type: Literal["labor_pricing"] = "labor_pricing"
    message: str
    options: list[LaborPricingOption]
    labor_items: list[LaborItem]


# ============================================================================
# Decisions and Audit
# ============================================================================

class OpenDecision(CamelModel):
    """A billing (or explicit tax) question that leaves a line undecided."""
    id: str
    kind: DecisionKind = "billing"
    prompt: str
    source_snippet: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)


class AuditDecision(CamelModel):
    kind: DecisionKind = "billing"
    prompt: str = Field(..., min_length=1)
    source_snippet: OptionalString = None


class InvoiceAudit(CamelModel):
    """Audit report returned by the completion service."""
    assumptions: list[str] = Field(default_factory=list)
    decisions: list[AuditDecision] = Field(default_factory=list)
    unparsed_lines: list[str] = Field(default_factory=list)


class AuditOverlay(CamelModel):
    """Advisory output of the audit step."""
    open_decisions: list[OpenDecision] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    unparsed_lines: list[str] = Field(default_factory=list)


# ============================================================================
# Pipeline Results
# ============================================================================

class InvoiceReadyResult(CamelModel):
    """The pipeline produced a finished invoice."""
    kind: Literal["invoice_ready"] = "invoice_ready"
    structured_invoice: StructuredInvoice
    invoice: FinishedInvoice
    open_decisions: list[OpenDecision] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    unparsed_lines: list[str] = Field(default_factory=list)
    audit_status: Optional[AuditStatus] = None


class LaborPricingFollowUpResult(CamelModel):
    """The pipeline halted to ask how labor should be billed."""
    kind: Literal["labor_pricing_follow_up"] = "labor_pricing_follow_up"
    structured_invoice: StructuredInvoice
    follow_up: LaborPricingFollowUp
    open_decisions: list[OpenDecision] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    unparsed_lines: list[str] = Field(default_factory=list)
    audit_status: Optional[AuditStatus] = None


DraftResult = Union[InvoiceReadyResult, LaborPricingFollowUpResult]


# ============================================================================
# Saved Invoices
# ============================================================================

class SavedInvoiceData(CamelModel):
    structured_invoice: StructuredInvoice
    finished_invoice: FinishedInvoice


class SavedInvoice(CamelModel):
    """A persisted invoice document with lifecycle metadata."""
    invoice_id: str
    created_at: str
    updated_at: str
    status: SavedInvoiceStatus = "draft"
    previous_status: Optional[SavedInvoiceStatus] = None
    source_type: SavedInvoiceSourceType
    invoice_data: SavedInvoiceData


class SavedInvoiceListItem(CamelModel):
    invoice_id: str
    created_at: str
    updated_at: str
    status: SavedInvoiceStatus
    source_type: SavedInvoiceSourceType
    invoice_number: Optional[str] = None
    customer_name: Optional[str] = None
    total: Optional[float] = None


class SavedInvoiceCollection(CamelModel):
    invoices: list[SavedInvoice] = Field(default_factory=list)


# ============================================================================
# Validate-and-coerce Helpers
# ============================================================================

ModelT = TypeVar("ModelT", bound=BaseModel)


def _validate(model_cls: Type[ModelT], data: Any) -> ModelT:
    """Validate data against model_cls, raising the package ValidationError."""
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field_path = ".".join(str(part) for part in first["loc"]) or model_cls.__name__
        raise ValidationError(f"{field_path}: {first['msg']}", field_path=field_path) from exc


def validate_task(data: Any) -> Task:
    return _validate(Task, data)


def validate_work_session(data: Any) -> WorkSession:
    return _validate(WorkSession, data)


def validate_material(data: Any) -> Material:
    return _validate(Material, data)


def validate_structured_invoice(data: Any) -> StructuredInvoice:
    return _validate(StructuredInvoice, data)


def validate_line_item(data: Any) -> InvoiceLineItem:
    return _validate(InvoiceLineItem, data)


def validate_finished_invoice(data: Any) -> FinishedInvoice:
    return _validate(FinishedInvoice, data)


# ============================================================================
# API Request/Response Models
# ============================================================================

class CreateInvoiceRequest(CamelModel):
    """Request body for /api/invoices/from-input."""
    messy_input: OptionalString = None
    uploaded_invoice_text: OptionalString = None
    last_user_message: OptionalString = None
    mode: ParseMode = "full"

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"messyInput": "Jan 10 fixed sink leak 2h @ 95/hr and pipe tape $7", "mode": "full"}
            ]
        }
    }


class LaborPricingRequest(CamelModel):
    """Request body answering the labor pricing follow-up."""
    structured_invoice: StructuredInvoice
    labor_pricing: LaborPricingChoice
    source_text: OptionalString = None
    last_user_message: OptionalString = None
    mode: ParseMode = "full"


class DiscountRequest(CamelModel):
    """Request body for applying a manual discount."""
    invoice: FinishedInvoice
    discount_amount: Annotated[float, Field(ge=0, allow_inf_nan=False)]
    discount_reason: OptionalString = None


class AuditRequest(CamelModel):
    source_text: str = ""
    structured_invoice: StructuredInvoice
    last_user_message: OptionalString = None


class RewordLineRequest(CamelModel):
    invoice: FinishedInvoice
    line_item_id: str = Field(..., min_length=1)
    tone: OptionalString = None


class RewordFullRequest(CamelModel):
    invoice: FinishedInvoice
    tone: OptionalString = None


class EditInvoiceRequest(CamelModel):
    invoice: FinishedInvoice
    instruction: str = Field(..., min_length=1)


class SaveInvoiceRequest(CamelModel):
    """Saving is explicit: confirmSave must be true."""
    confirm_save: Literal[True]
    invoice_id: OptionalString = None
    source_type: SavedInvoiceSourceType
    invoice_data: SavedInvoiceData


class UpdateStatusRequest(CamelModel):
    status: SavedInvoiceStatus


class DraftResponse(CamelModel):
    """Response for the create and continue endpoints."""
    needs_follow_up: bool
    follow_up: Optional[LaborPricingFollowUp] = None
    structured_invoice: StructuredInvoice
    invoice: Optional[FinishedInvoice] = None
    open_decisions: list[OpenDecision] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    unparsed_lines: list[str] = Field(default_factory=list)
    audit_status: Optional[AuditStatus] = None


class DiscountResponse(CamelModel):
    needs_follow_up: bool = False
    invoice: FinishedInvoice


class InvoiceResponse(CamelModel):
    invoice: FinishedInvoice


class EditInvoiceResponse(CamelModel):
    invoice: FinishedInvoice
    follow_up: Optional[str] = None


class SavedInvoiceResponse(CamelModel):
    invoice: SavedInvoice


class SavedInvoiceListResponse(CamelModel):
    invoices: list[SavedInvoiceListItem]


class DeleteResponse(CamelModel):
    ok: bool = True
