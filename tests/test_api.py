"""
Tests for the HTTP API.

These tests drive the endpoints end to end with a scripted completion
service and a temporary invoice store.
"""

import re

import pytest

from invoice_drafter import config
from invoice_drafter.errors import CompletionServiceError
from invoice_drafter.pricing import LABOR_FOLLOW_UP_MESSAGE


def labor_lines(body: dict) -> list[dict]:
    return [item for item in body["invoice"]["lineItems"] if item["type"] == "labor"]


def empty_audit() -> dict:
    return {"assumptions": [], "decisions": [], "unparsedLines": []}


# ============================================================================
# System
# ============================================================================

class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": "0.1.0"}


# ============================================================================
# Labor Pricing Follow-up
# ============================================================================

class TestLaborPricingFollowUp:
    """Tests for the labor pricing question and its answer."""

    def test_asks_one_follow_up_instead_of_zero_labor(self, client, fake_service, structured_without_labor_pricing):
        fake_service.add(structured_without_labor_pricing)

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 10 fixed sink leak and Jan 11 tested seal"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["needsFollowUp"] is True
        assert "invoice" not in body
        assert body["followUp"]["message"] == LABOR_FOLLOW_UP_MESSAGE
        assert body["followUp"]["type"] == "labor_pricing"
        assert len(body["followUp"]["laborItems"]) == 2
        assert [option["billingType"] for option in body["followUp"]["options"]] == ["hourly", "flat"]

    def test_asks_follow_up_when_hours_exist_but_rate_missing(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {"date": "Tuesday", "tasks": [{"description": "Tree removal and haul-off", "hours": 8}]},
                    {"date": "Wednesday", "tasks": [{"description": "Lawn cleanup"}]},
                ],
                "materials": [],
            }
        )

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "I worked 8 hours Tuesday removing trees and Wednesday cleanup."},
        )

        body = response.json()
        assert body["needsFollowUp"] is True
        assert len(body["followUp"]["laborItems"]) == 2
        assert body["followUp"]["laborItems"][0]["hours"] == 8

    def test_explicit_hours_and_rate_avoid_follow_up(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [{"date": "Jan 10", "tasks": [{"description": "Fixed faucet leak"}]}],
                "materials": [],
            }
        )

        response = client.post("/api/invoices/from-input", json={"messyInput": "Fixed faucet leak (2 hours @ $80/hr)."})

        body = response.json()
        assert body["needsFollowUp"] is False
        lines = labor_lines(body)
        assert len(lines) == 1
        assert lines[0]["quantity"] == 2
        assert lines[0]["unitPrice"] == 80
        assert lines[0]["amount"] == 160

    def test_explicit_minutes_convert_to_hours(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [{"date": "Feb 2", "tasks": [{"description": "Cabinet door adjustment"}]}],
                "materials": [],
            }
        )

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Feb 2 cabinet door adjustment, 20 minutes at $80/hr."},
        )

        body = response.json()
        assert body["needsFollowUp"] is False
        lines = labor_lines(body)
        assert lines[0]["quantity"] == 0.33
        assert lines[0]["unitPrice"] == 80
        assert lines[0]["amount"] == 26.4

    def test_no_charge_labor_needs_no_follow_up(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {"date": "Thursday", "tasks": [{"description": "Inspect prior repair", "amount": 0}]}
                ],
                "materials": [{"description": "Washer", "quantity": 1, "unitCost": 4, "amount": 4}],
            }
        )

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Returned Thursday to inspect prior repair, no charge. Replaced one washer $4."},
        )

        body = response.json()
        assert body["needsFollowUp"] is False
        assert body["invoice"]["total"] == 4

    def test_incomplete_hours_are_rejected(self, client, fake_service, structured_without_labor_pricing):
        fake_service.add(structured_without_labor_pricing)
        first = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 10 fixed sink leak and Jan 11 tested seal"},
        ).json()

        second = client.post(
            "/api/invoices/from-input/labor-pricing",
            json={
                "structuredInvoice": first["structuredInvoice"],
                "laborPricing": {"billingType": "hourly", "rate": 10, "lineHours": [5]},
            },
        )

        assert second.status_code == 400
        assert re.search(r"provide hours for every labor line item", second.json()["error"], re.IGNORECASE)

    def test_hourly_answer_finalizes_totals(self, client, fake_service, structured_without_labor_pricing):
        fake_service.add(structured_without_labor_pricing)
        first = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 10 fixed sink leak and Jan 11 tested seal"},
        ).json()

        second = client.post(
            "/api/invoices/from-input/labor-pricing",
            json={
                "structuredInvoice": first["structuredInvoice"],
                "laborPricing": {"billingType": "hourly", "rate": 10, "lineHours": [3, 2]},
            },
        )

        assert second.status_code == 200
        body = second.json()
        assert body["needsFollowUp"] is False
        lines = labor_lines(body)
        assert [line["quantity"] for line in lines] == [3, 2]
        assert [line["unitPrice"] for line in lines] == [10, 10]
        assert [line["amount"] for line in lines] == [30, 20]
        assert body["invoice"]["total"] == 55

    def test_flat_answer_splits_amount(self, client, fake_service, structured_without_labor_pricing):
        fake_service.add(structured_without_labor_pricing)
        first = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 10 fixed sink leak and Jan 11 tested seal"},
        ).json()

        second = client.post(
            "/api/invoices/from-input/labor-pricing",
            json={
                "structuredInvoice": first["structuredInvoice"],
                "laborPricing": {"billingType": "flat", "flatAmount": 80},
                "mode": "fast",
            },
        )

        body = second.json()
        assert [line["amount"] for line in labor_lines(body)] == [40, 40]
        assert body["invoice"]["total"] == 85
        assert body["auditStatus"] == "skipped"

    def test_unknown_billing_type_is_rejected(self, client, structured_without_labor_pricing):
        response = client.post(
            "/api/invoices/from-input/labor-pricing",
            json={
                "structuredInvoice": structured_without_labor_pricing,
                "laborPricing": {"billingType": "daily", "rate": 10},
            },
        )
        assert response.status_code == 400
        assert "laborPricing" in response.json()["error"]

    def test_hedged_task_stays_out_of_pricing_without_source_text(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {
                        "date": "Jan 10",
                        "tasks": [{"description": "Fixed sink leak"}, {"description": "Cleaned gutters"}],
                    }
                ]
            }
        )
        first = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 10 fixed sink leak. Cleaned gutters, not sure if I should bill.", "mode": "fast"},
        ).json()
        assert [item["description"] for item in first["followUp"]["laborItems"]] == ["Fixed sink leak"]
        assert first["structuredInvoice"]["workSessions"][0]["tasks"][1]["billingUndecided"] is True

        second = client.post(
            "/api/invoices/from-input/labor-pricing",
            json={
                "structuredInvoice": first["structuredInvoice"],
                "laborPricing": {"billingType": "hourly", "rate": 50, "lineHours": [2]},
                "mode": "fast",
            },
        )

        assert second.status_code == 200
        body = second.json()
        sink, gutters = labor_lines(body)
        assert sink["amount"] == 100
        assert "amount" not in gutters
        assert gutters["decisionId"] == body["openDecisions"][0]["id"]
        assert body["invoice"]["total"] == 100


# ============================================================================
# Decisions and Audit
# ============================================================================

class TestOpenDecisions:
    """Tests for billing decisions and the audit overlay."""

    def test_unsure_billing_holds_line_in_fast_mode(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {
                        "date": "Jan 3",
                        "tasks": [{"description": "Emergency leak stop", "hours": 0.75, "rate": 95, "amount": 71.25}],
                    }
                ],
                "materials": [],
            }
        )

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 3 emergency leak stop, not sure if I should bill.", "mode": "fast"},
        )

        body = response.json()
        assert body["auditStatus"] == "skipped"
        assert any(re.search(r"leak stop", d["prompt"], re.IGNORECASE) for d in body["openDecisions"])
        leak_line = next(line for line in labor_lines(body) if "leak stop" in line["description"].lower())
        assert "amount" not in leak_line
        assert leak_line["decisionId"] == body["openDecisions"][0]["id"]
        assert body["invoice"]["total"] == 0

    def test_keeps_decision_when_prompt_quotes_hourly_rate(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {
                        "date": "Jan 3",
                        "tasks": [{"description": "Emergency leak stop", "hours": 0.75, "rate": 95, "amount": 71.25}],
                    }
                ],
                "materials": [],
            }
        )

        response = client.post(
            "/api/invoices/from-input",
            json={
                "messyInput": "Jan 3 emergency leak stop, 0.75 hours at $95/hr — not sure if I should bill.",
                "mode": "fast",
            },
        )

        body = response.json()
        assert any(re.search(r"leak stop", d["prompt"], re.IGNORECASE) for d in body["openDecisions"])
        leak_line = next(line for line in labor_lines(body) if "leak stop" in line["description"].lower())
        assert "amount" not in leak_line

    def test_bill_to_directive_does_not_resolve_decision(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {
                        "date": "Feb 4",
                        "tasks": [
                            {"description": "Cabinet hinge adjustment", "hours": 0.25, "rate": 95, "amount": 23.75}
                        ],
                    }
                ],
                "materials": [],
            }
        )

        response = client.post(
            "/api/invoices/from-input",
            json={
                "messyInput": "Adjusted a cabinet hinge 0.25 hours at $95/hr — not sure if I should bill. "
                "Bill to Jill Parker.",
                "mode": "fast",
            },
        )

        body = response.json()
        assert any(re.search(r"cabinet hinge", d["prompt"], re.IGNORECASE) for d in body["openDecisions"])
        assert body["invoice"]["customerName"] == "Jill Parker"

    def test_time_only_uncertainty_borrows_prior_sentence(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {
                        "date": "Jan 3",
                        "tasks": [
                            {
                                "description": "Emergency leak stop at Cafe Luna",
                                "hours": 0.75,
                                "rate": 95,
                                "amount": 71.25,
                            }
                        ],
                    }
                ],
                "materials": [],
            }
        )

        response = client.post(
            "/api/invoices/from-input",
            json={
                "messyInput": "Jan 3 emergency leak stop at Cafe Luna. 45 mins, not sure if I should bill.",
                "mode": "fast",
            },
        )

        body = response.json()
        assert any(re.search(r"emergency leak stop", d["prompt"], re.IGNORECASE) for d in body["openDecisions"])
        leak_line = next(line for line in labor_lines(body) if "emergency leak stop" in line["description"].lower())
        assert "amount" not in leak_line

    def test_ambiguous_tax_mention_is_not_a_decision(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(structured_with_labor_pricing)

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Fixed leak 2h @ $90/hr. Tax? I sometimes add 7.5% depending on job.", "mode": "fast"},
        )

        body = response.json()
        assert body["openDecisions"] == []
        assert "Tax assumed 0%." in body["assumptions"]

    def test_fast_mode_still_detects_decisions(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(structured_with_labor_pricing)

        response = client.post(
            "/api/invoices/from-input",
            json={
                "messyInput": "Feb 3 fixed leak 2h @ $90/hr. Tightened a cabinet hinge maybe — not sure if I should bill it.",
                "mode": "fast",
            },
        )

        body = response.json()
        assert body["needsFollowUp"] is False
        assert any(re.search(r"cabinet", d["prompt"], re.IGNORECASE) for d in body["openDecisions"])
        assert len(fake_service.prompts) == 1

    def test_decisions_survive_an_empty_audit(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {"date": "Feb 3", "tasks": [{"description": "Fixed leak", "hours": 2, "rate": 90, "amount": 180}]}
                ],
                "materials": [],
            },
            empty_audit(),
        )

        response = client.post(
            "/api/invoices/from-input",
            json={
                "messyInput": "Feb 3 fixed leak 2h @ $90/hr. Tightened a cabinet hinge maybe — not sure if I should bill it."
            },
        )

        body = response.json()
        assert body["auditStatus"] == "completed"
        assert any(re.search(r"cabinet", d["prompt"], re.IGNORECASE) for d in body["openDecisions"])

    def test_audit_timeout_falls_back_to_heuristics(
        self, client, fake_service, structured_with_labor_pricing, slow_audit_handler, monkeypatch
    ):
        monkeypatch.setattr(config, "AUDIT_TIMEOUT_SECONDS", 0.05)
        fake_service.handler = slow_audit_handler(structured_with_labor_pricing)

        response = client.post(
            "/api/invoices/from-input",
            json={
                "messyInput": "Feb 3 fixed leak 2h @ $90/hr. Tightened a cabinet hinge maybe — not sure if I should bill it."
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["auditStatus"] == "timed_out"
        assert any(re.search(r"cabinet", d["prompt"], re.IGNORECASE) for d in body["openDecisions"])

    def test_audit_endpoint_returns_overlay(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(
            {
                "assumptions": ["Tax assumed 0%."],
                "decisions": [
                    {
                        "kind": "billing",
                        "prompt": 'Bill this item? "Tightened cabinet hinge"',
                        "sourceSnippet": "Tightened cabinet hinge maybe",
                    }
                ],
                "unparsedLines": ["Customer asked about fence painting"],
            }
        )

        response = client.post(
            "/api/invoices/audit",
            json={
                "sourceText": "Feb 3 fixed leak 2h @ $90/hr. Tightened cabinet hinge maybe.",
                "structuredInvoice": structured_with_labor_pricing,
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert any(re.search(r"cabinet", d["prompt"], re.IGNORECASE) for d in body["openDecisions"])
        assert any("tax assumed" in item.lower() for item in body["assumptions"])
        assert any("fence" in item.lower() for item in body["unparsedLines"])


# ============================================================================
# Notes, Assumptions and Unparsed Lines
# ============================================================================

class TestNotesAndUnparsedLines:
    """Tests for what the draft reports outside the line items."""

    def test_unrelated_lines_are_reported(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(structured_with_labor_pricing)

        response = client.post(
            "/api/invoices/from-input",
            json={
                "messyInput": "Jan 10 fixed sink leak 2h @ 95/hr and pipe tape $7.\n"
                "Customer asked about painting the fence next month."
            },
        )

        body = response.json()
        assert body["needsFollowUp"] is False
        combined = " ".join(body["unparsedLines"]).lower()
        assert "painting" in combined or "fence" in combined

    def test_internal_reminders_move_to_unparsed_lines(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {"date": "Feb 3", "tasks": [{"description": "Fixed leak", "hours": 2, "rate": 90, "amount": 180}]}
                ],
                "materials": [],
                "notes": "Need to order a new drill next week.",
            },
            empty_audit(),
        )

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Feb 3 fixed leak 2h @ $90/hr. Need to order a new drill next week."},
        )

        body = response.json()
        assert "drill" not in (body["invoice"].get("notes") or "").lower()
        assert "drill" in " ".join(body["unparsedLines"]).lower()

    def test_ambiguous_tax_notes_become_assumptions(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {"date": "Feb 3", "tasks": [{"description": "Fixed leak", "hours": 2, "rate": 90, "amount": 180}]}
                ],
                "materials": [],
                "notes": "Tax may apply at 5% if applicable.",
            },
            empty_audit(),
        )

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Feb 3 fixed leak 2h @ $90/hr. Sometimes I add 5% tax."},
        )

        body = response.json()
        assert "tax may apply" not in (body["invoice"].get("notes") or "").lower()
        assert "tax assumed" in " ".join(body["assumptions"]).lower()


# ============================================================================
# Parsing Behaviour
# ============================================================================

class TestDrafting:
    """Tests for chunking, invoice numbers and input validation."""

    def test_long_input_is_chunked_and_merged(self, client, fake_service):
        fake_service.add(
            {
                "workSessions": [
                    {"date": "Jan 5", "tasks": [{"description": "Fixed sink", "hours": 2, "rate": 100, "amount": 200}]}
                ],
                "materials": [],
            },
            {"workSessions": [], "materials": [{"description": "Washer", "quantity": 1, "unitCost": 5, "amount": 5}]},
        )
        filler = "lorem ipsum " * 180
        long_input = f"Job A: Fixed sink 2 hours at $100/hr. {filler}\n\nParts: washer $5. {filler}"
        assert len(long_input) > 4000

        response = client.post("/api/invoices/from-input", json={"messyInput": long_input, "mode": "fast"})

        body = response.json()
        assert body["needsFollowUp"] is False
        descriptions = [item["description"] for item in body["invoice"]["lineItems"]]
        assert descriptions == ["Fixed sink", "Washer"]
        assert body["invoice"]["total"] == 205
        assert len(fake_service.prompts) == 2

    def test_invoice_number_is_generated(self, client, fake_service):
        fake_service.add(
            {
                "issueDate": "2026-02-04",
                "workSessions": [
                    {
                        "date": "Jan 10",
                        "tasks": [{"description": "Fixed sink leak", "hours": 2, "rate": 95, "amount": 190}],
                    }
                ],
                "materials": [],
            }
        )

        response = client.post("/api/invoices/from-input", json={"messyInput": "Jan 10 fixed sink leak 2h @ 95/hr"})

        body = response.json()
        assert body["needsFollowUp"] is False
        assert re.match(r"^INV-\d{8}-\d{4}$", body["invoice"]["invoiceNumber"])

    def test_issue_date_requires_explicit_mention(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(structured_with_labor_pricing)

        response = client.post("/api/invoices/from-input", json={"messyInput": "Jan 10 fixed sink leak 2h @ 95/hr"})

        body = response.json()
        assert "issueDate" not in body["invoice"]
        assert body["invoice"]["servicePeriodStart"] == "Jan 10"

    def test_empty_input_is_rejected(self, client, fake_service):
        response = client.post("/api/invoices/from-input", json={"messyInput": "   "})

        assert response.status_code == 400
        assert response.json()["error"] == "Provide messyInput text, uploadedInvoiceText, or both."
        assert fake_service.prompts == []

    def test_invalid_mode_is_rejected(self, client):
        response = client.post("/api/invoices/from-input", json={"messyInput": "Fixed sink", "mode": "slow"})

        assert response.status_code == 400
        assert response.json()["error"].startswith("mode")

    def test_model_output_error_is_reported(self, client, fake_service):
        fake_service.add("no json here", "still no json")

        response = client.post("/api/invoices/from-input", json={"messyInput": "Fixed sink"})

        assert response.status_code == 400
        assert "valid JSON" in response.json()["error"]
        assert len(fake_service.prompts) == 2

    def test_completion_service_failure_is_reported(self, client, fake_service):
        async def unreachable(prompt: str) -> str:
            raise CompletionServiceError("Completion service request failed: APIConnectionError.")

        fake_service.handler = unreachable

        response = client.post("/api/invoices/from-input", json={"messyInput": "Fixed sink"})

        assert response.status_code == 502
        assert response.json() == {"error": "Completion service request failed: APIConnectionError."}
        assert len(fake_service.prompts) == 1


class TestUpload:
    """Tests for drafting from an uploaded document."""

    def test_text_upload(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(structured_with_labor_pricing)

        response = client.post(
            "/api/invoices/from-upload",
            files={"invoiceFile": ("notes.txt", b"Jan 10 fixed sink leak 2h @ 95/hr and pipe tape $7", "text/plain")},
            data={"mode": "fast"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["invoice"]["total"] == 197
        assert "Uploaded invoice text:" in fake_service.prompts[0]

    def test_unsupported_upload_type(self, client):
        response = client.post(
            "/api/invoices/from-upload",
            files={"invoiceFile": ("photo.png", b"\x89PNG", "image/png")},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Unsupported file type: image/png. Upload PDF or text."


# ============================================================================
# Discounts
# ============================================================================

class TestDiscounts:
    """Tests for discount detection and the manual discount endpoint."""

    def test_explicit_discount_amount_is_applied(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(structured_with_labor_pricing)

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 10 fixed sink leak 2h @ 95/hr and please add a $20 discount for delay"},
        )

        body = response.json()
        assert body["needsFollowUp"] is False
        assert body["invoice"]["discountAmount"] == 20
        assert body["invoice"]["discountReason"] == "Discount for delay"
        assert body["invoice"]["total"] == 177

    def test_discount_without_amount_is_not_applied(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(structured_with_labor_pricing)

        response = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 10 fixed sink leak 2h @ 95/hr and apply a discount for delay"},
        )

        body = response.json()
        assert body["needsFollowUp"] is False
        assert body["invoice"]["discountAmount"] == 0
        assert body["invoice"]["total"] == 197

    def test_discount_without_amount_after_labor_pricing(self, client, fake_service, structured_without_labor_pricing):
        source = "Jan 10 fixed sink leak and Jan 11 tested seal; apply a discount for delay"
        fake_service.add(structured_without_labor_pricing)
        first = client.post("/api/invoices/from-input", json={"messyInput": source}).json()
        assert first["followUp"]["type"] == "labor_pricing"

        second = client.post(
            "/api/invoices/from-input/labor-pricing",
            json={
                "structuredInvoice": first["structuredInvoice"],
                "laborPricing": {"billingType": "hourly", "rate": 10, "lineHours": [3, 2]},
                "sourceText": source,
            },
        )

        body = second.json()
        assert body["needsFollowUp"] is False
        assert body["invoice"]["discountAmount"] == 0

    def test_manual_discount_endpoint(self, client, fake_service, structured_with_labor_pricing):
        fake_service.add(structured_with_labor_pricing)
        first = client.post("/api/invoices/from-input", json={"messyInput": "Jan 10 fixed sink leak 2h @ 95/hr"}).json()

        second = client.post(
            "/api/invoices/from-input/discount",
            json={"invoice": first["invoice"], "discountAmount": 25, "discountReason": "Discount for delay"},
        )

        assert second.status_code == 200
        body = second.json()
        assert body["needsFollowUp"] is False
        assert body["invoice"]["discountAmount"] == 25
        assert body["invoice"]["total"] == 172
        assert body["invoice"]["balanceDue"] == 172


# ============================================================================
# Editing
# ============================================================================

def editable_invoice(unit_price: float = 90) -> dict:
    return {
        "invoiceNumber": "INV-200",
        "issueDate": "2026-02-05",
        "customerName": "Jamie Client",
        "currency": "USD",
        "lineItems": [
            {
                "id": "line-1",
                "type": "labor",
                "description": "Repair work",
                "quantity": 2,
                "unitPrice": unit_price,
                "amount": 2 * unit_price,
            }
        ],
        "notes": "Original notes",
        "subtotal": 2 * unit_price,
        "total": 2 * unit_price,
        "balanceDue": 2 * unit_price,
    }


class TestEditing:
    """Tests for rewording and free-form edits."""

    def test_edit_applies_instruction(self, client, fake_service):
        edited = editable_invoice(80)
        edited["notes"] = "Updated notes"
        fake_service.add({"invoice": edited})

        response = client.post(
            "/api/invoices/edit",
            json={"instruction": "Change the labor rate to $80/hr.", "invoice": editable_invoice(90)},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["invoice"]["lineItems"][0]["unitPrice"] == 80
        assert body["invoice"]["total"] == 160
        assert "followUp" not in body

    def test_edit_returns_follow_up_question(self, client, fake_service):
        fake_service.add({"invoice": editable_invoice(90), "followUp": "Which line should change?"})

        response = client.post(
            "/api/invoices/edit",
            json={"instruction": "Make it cheaper.", "invoice": editable_invoice(90)},
        )

        body = response.json()
        assert body["followUp"] == "Which line should change?"
        assert body["invoice"]["total"] == 180

    def test_edit_answering_held_line_bills_it(self, client, fake_service):
        held = editable_invoice(90)
        held["lineItems"][0].update({"amount": None, "decisionId": "decision-211408b7"})
        answered = editable_invoice(45)
        answered["lineItems"][0].update({"decisionId": "decision-211408b7"})
        fake_service.add({"invoice": answered})

        response = client.post(
            "/api/invoices/edit",
            json={"instruction": "Bill the repair work at $90.", "invoice": held},
        )

        line = response.json()["invoice"]["lineItems"][0]
        assert line["amount"] == 90
        assert "decisionId" not in line
        assert response.json()["invoice"]["total"] == 90

    def test_edit_leaving_held_line_unpriced_keeps_hold(self, client, fake_service):
        held = editable_invoice(90)
        held["lineItems"][0].update({"amount": None, "decisionId": "decision-211408b7"})
        fake_service.add({"invoice": held})

        response = client.post(
            "/api/invoices/edit",
            json={"instruction": "Make the notes friendlier.", "invoice": held},
        )

        line = response.json()["invoice"]["lineItems"][0]
        assert "amount" not in line
        assert line["decisionId"] == "decision-211408b7"

    def test_reword_line_keeps_money_unchanged(self, client, fake_service):
        fake_service.add({"description": "Reworded labor description"})

        response = client.post(
            "/api/invoices/reword-line",
            json={
                "lineItemId": "line_1",
                "tone": "concise",
                "invoice": {
                    "currency": "USD",
                    "lineItems": [
                        {
                            "id": "line_1",
                            "type": "labor",
                            "description": "Original labor description",
                            "quantity": 2,
                            "unitPrice": 60,
                            "amount": 120,
                        }
                    ],
                    "subtotal": 120,
                    "total": 120,
                    "balanceDue": 120,
                },
            },
        )

        assert response.status_code == 200
        line = response.json()["invoice"]["lineItems"][0]
        assert line["description"] == "Reworded labor description"
        assert (line["quantity"], line["unitPrice"], line["amount"]) == (2, 60, 120)
        assert response.json()["invoice"]["total"] == 120
        assert "Tone preference: concise." in fake_service.prompts[0]

    def test_reword_line_unknown_id(self, client, fake_service):
        response = client.post(
            "/api/invoices/reword-line",
            json={"lineItemId": "line_9", "invoice": editable_invoice()},
        )

        assert response.status_code == 400
        assert response.json()["error"] == 'Line item "line_9" was not found.'
        assert fake_service.prompts == []

    def test_reword_full(self, client, fake_service):
        fake_service.add({"lineItems": [{"id": "line-1", "description": "Plumbing repair"}], "notes": "Thank you!"})

        response = client.post("/api/invoices/reword-full", json={"invoice": editable_invoice()})

        invoice = response.json()["invoice"]
        assert invoice["lineItems"][0]["description"] == "Plumbing repair"
        assert invoice["lineItems"][0]["amount"] == 180
        assert invoice["notes"] == "Thank you!"


# ============================================================================
# Saved Invoices
# ============================================================================

def generate_and_save(client, fake_service, structured: dict) -> dict:
    fake_service.add(structured)
    generated = client.post(
        "/api/invoices/from-input",
        json={"messyInput": "Jan 10 fixed sink leak 2h @ 95/hr and pipe tape $7"},
    ).json()
    saved = client.post(
        "/api/invoices/save",
        json={
            "confirmSave": True,
            "sourceType": "text_input",
            "invoiceData": {
                "structuredInvoice": generated["structuredInvoice"],
                "finishedInvoice": generated["invoice"],
            },
        },
    )
    assert saved.status_code == 200
    return saved.json()["invoice"]


class TestSavedInvoices:
    """Tests for the saved invoice endpoints."""

    def test_save_is_explicit_only(self, client, fake_service, structured_with_labor_pricing):
        assert client.get("/api/invoices").json()["invoices"] == []

        fake_service.add(structured_with_labor_pricing)
        generated = client.post(
            "/api/invoices/from-input",
            json={"messyInput": "Jan 10 fixed sink leak 2h @ 95/hr and pipe tape $7"},
        ).json()
        assert client.get("/api/invoices").json()["invoices"] == []

        payload = {
            "confirmSave": False,
            "sourceType": "text_input",
            "invoiceData": {
                "structuredInvoice": generated["structuredInvoice"],
                "finishedInvoice": generated["invoice"],
            },
        }
        rejected = client.post("/api/invoices/save", json=payload)
        assert rejected.status_code == 400

        accepted = client.post("/api/invoices/save", json={**payload, "confirmSave": True})
        assert accepted.status_code == 200
        assert accepted.json()["invoice"]["status"] == "draft"

        listed = client.get("/api/invoices").json()["invoices"]
        assert len(listed) == 1
        assert listed[0]["invoiceNumber"] == "INV-100"
        assert listed[0]["total"] == 197

    def test_get_and_duplicate(self, client, fake_service, structured_with_labor_pricing):
        saved = generate_and_save(client, fake_service, structured_with_labor_pricing)

        fetched = client.get(f"/api/invoices/{saved['invoiceId']}")
        assert fetched.status_code == 200
        assert fetched.json()["invoice"]["invoiceData"]["finishedInvoice"]["total"] == 197

        copy = client.post(f"/api/invoices/{saved['invoiceId']}/duplicate").json()["invoice"]
        assert copy["invoiceId"] != saved["invoiceId"]
        assert copy["status"] == "draft"
        assert len(client.get("/api/invoices").json()["invoices"]) == 2

    def test_delete_hides_invoice(self, client, fake_service, structured_with_labor_pricing):
        saved = generate_and_save(client, fake_service, structured_with_labor_pricing)

        deleted = client.delete(f"/api/invoices/{saved['invoiceId']}")

        assert deleted.status_code == 200
        assert deleted.json() == {"ok": True}
        assert client.get("/api/invoices").json()["invoices"] == []

    def test_soft_delete_and_restore(self, client, fake_service, structured_with_labor_pricing):
        saved = generate_and_save(client, fake_service, structured_with_labor_pricing)
        invoice_id = saved["invoiceId"]

        soft_delete = client.post(f"/api/invoices/{invoice_id}/status", json={"status": "deleted"})
        assert soft_delete.status_code == 200
        assert soft_delete.json()["invoice"]["status"] == "deleted"
        assert client.get("/api/invoices").json()["invoices"] == []

        including_deleted = client.get("/api/invoices", params={"includeDeleted": "true"}).json()["invoices"]
        assert len(including_deleted) == 1
        assert including_deleted[0]["status"] == "deleted"

        restored = client.post(f"/api/invoices/{invoice_id}/restore")
        assert restored.status_code == 200
        assert restored.json()["invoice"]["status"] == "draft"
        assert len(client.get("/api/invoices").json()["invoices"]) == 1

    def test_restore_returns_previous_status(self, client, fake_service, structured_with_labor_pricing):
        saved = generate_and_save(client, fake_service, structured_with_labor_pricing)
        invoice_id = saved["invoiceId"]

        client.post(f"/api/invoices/{invoice_id}/status", json={"status": "sent"})
        client.delete(f"/api/invoices/{invoice_id}")
        restored = client.post(f"/api/invoices/{invoice_id}/restore").json()["invoice"]

        assert restored["status"] == "sent"

    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/invoices/missing"),
            ("post", "/api/invoices/missing/duplicate"),
            ("post", "/api/invoices/missing/restore"),
            ("delete", "/api/invoices/missing"),
        ],
    )
    def test_unknown_invoice_is_404(self, client, method, path):
        response = getattr(client, method)(path)

        assert response.status_code == 404
        assert response.json()["error"] == 'Invoice "missing" was not found.'
