"""
Tests for the validate-and-coerce helpers and the camelCase contract.
"""

import pytest

from invoice_drafter.errors import ValidationError
from invoice_drafter.schemas import (
    FinishedInvoice,
    InvoiceLineItem,
    validate_finished_invoice,
    validate_line_item,
    validate_material,
    validate_structured_invoice,
    validate_task,
    validate_work_session,
)


class TestCoercion:
    """Tests for numeric strings and blank values."""

    def test_numeric_strings_become_numbers(self):
        task = validate_task({"description": "Fixed sink leak", "hours": "2", "rate": "95.50"})

        assert (task.hours, task.rate) == (2.0, 95.5)

    def test_blank_strings_become_absent(self):
        task = validate_task({"description": "Fixed sink leak", "hours": "  ", "amount": ""})
        session = validate_work_session({"date": " ", "tasks": []})

        assert task.hours is None
        assert task.amount is None
        assert session.date is None

    def test_material_by_alias(self):
        material = validate_material({"description": "Pipe tape", "unitCost": "7"})

        assert material.unit_cost == 7

    def test_structured_invoice_blank_notes(self):
        structured = validate_structured_invoice({"customerName": "Jill Parker", "notes": "\n"})

        assert structured.customer_name == "Jill Parker"
        assert structured.notes is None
        assert structured.work_sessions == []


class TestValidationErrors:
    """Tests for failures naming the offending field."""

    def test_nested_field_path(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_work_session({"tasks": [{"description": ""}]})

        assert exc_info.value.field_path == "tasks.0.description"

    def test_negative_amount(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_line_item({"description": "Fixed sink", "amount": -5})

        assert exc_info.value.field_path == "amount"

    def test_finished_invoice_needs_line_items(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_finished_invoice({"lineItems": []})

        assert exc_info.value.field_path == "lineItems"

    def test_unknown_line_type(self):
        with pytest.raises(ValidationError):
            validate_line_item({"type": "travel", "description": "Drive out"})


class TestJsonContract:
    """Tests for the camelCase output shape."""

    def test_absent_fields_are_omitted(self):
        invoice = FinishedInvoice(
            invoice_number="INV-1",
            line_items=[InvoiceLineItem(type="labor", description="Fixed sink leak", amount=190)],
        )

        body = invoice.to_json_dict()

        assert body["invoiceNumber"] == "INV-1"
        assert body["lineItems"] == [{"type": "labor", "description": "Fixed sink leak", "amount": 190.0}]
        assert "issueDate" not in body
        assert body["currency"] == "USD"
