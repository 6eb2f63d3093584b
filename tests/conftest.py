"""
Shared fixtures for the invoice drafter tests.

The completion service is replaced by a scripted fake so no test reaches a
real model.
"""

import asyncio
import json
from typing import Awaitable, Callable, Optional

import pytest
from fastapi.testclient import TestClient

from invoice_drafter.api import app
from invoice_drafter.completion import get_completion_service
from invoice_drafter.store import InvoiceStore, get_invoice_store


class FakeCompletionService:
    """
    Completion service that replays queued responses.

    Dict responses are sent as JSON text. When a handler is given, every
    prompt goes to it instead of the queue.
    """

    def __init__(self, responses=None, handler: Optional[Callable[[str], Awaitable[str]]] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.prompts: list[str] = []

    def add(self, *responses) -> "FakeCompletionService":
        self.responses.extend(responses)
        return self

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.handler is not None:
            return await self.handler(prompt)
        if not self.responses:
            raise RuntimeError("Fake response queue is empty.")
        response = self.responses.pop(0)
        return response if isinstance(response, str) else json.dumps(response)


def _slow_audit_handler(structured: dict, delay: float = 5.0) -> Callable[[str], Awaitable[str]]:
    """Handler that parses immediately but stalls on the audit prompt."""

    async def handler(prompt: str) -> str:
        if prompt.startswith("Parse messy invoice/job notes"):
            return json.dumps(structured)
        if prompt.startswith("You are auditing a parsed invoice"):
            await asyncio.sleep(delay)
            return json.dumps({"assumptions": [], "decisions": [], "unparsedLines": []})
        raise RuntimeError("Unexpected prompt")

    return handler


# ============================================================================
# Structured Invoice Fixtures
# ============================================================================

def structured_without_labor_pricing_data() -> dict:
    return {
        "workSessions": [
            {"date": "Jan 10", "tasks": [{"description": "Fixed sink leak"}]},
            {"date": "Jan 11", "tasks": [{"description": "Tested seal"}]},
        ],
        "materials": [{"description": "Pipe tape", "quantity": 1, "unitCost": 5, "amount": 5}],
    }


def structured_with_labor_pricing_data() -> dict:
    return {
        "invoiceNumber": "INV-100",
        "issueDate": "2026-02-04",
        "workSessions": [
            {
                "date": "Jan 10",
                "tasks": [{"description": "Fixed sink leak", "hours": 2, "rate": 95, "amount": 190}],
            }
        ],
        "materials": [{"description": "Pipe tape", "quantity": 1, "unitCost": 7, "amount": 7}],
    }


@pytest.fixture
def structured_without_labor_pricing() -> dict:
    """Two unpriced labor tasks on Jan 10 and Jan 11, plus $5 of pipe tape."""
    return structured_without_labor_pricing_data()


@pytest.fixture
def structured_with_labor_pricing() -> dict:
    """One priced labor task (2h @ $95) plus $7 of pipe tape."""
    return structured_with_labor_pricing_data()


# ============================================================================
# Service, Store and Client Fixtures
# ============================================================================

@pytest.fixture
def fake_service() -> FakeCompletionService:
    return FakeCompletionService()


@pytest.fixture
def store(tmp_path) -> InvoiceStore:
    return InvoiceStore(tmp_path / "saved-invoices.json")


@pytest.fixture
def client(fake_service, store):
    """Test client wired to the fake completion service and a temporary store."""
    app.dependency_overrides[get_completion_service] = lambda: fake_service
    app.dependency_overrides[get_invoice_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def slow_audit_handler():
    """Factory for a completion handler whose audit call never finishes in time."""
    return _slow_audit_handler
