"""
Command-line interface for the Invoice Drafter service.

Provides commands:
- draft: Draft an invoice from job notes, answering the labor follow-up from flags
- extract-text: Print the text extracted from an uploaded document
- saved: List saved invoices
- serve: Run the HTTP API
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from .completion import get_completion_service
from .config import logger
from .errors import InvoiceDraftError
from .extractor import extract_text_from_file
from .parser import build_source_text
from .pipeline import continue_invoice_after_labor_pricing, create_invoice_from_input
from .schemas import (
    FlatLaborPricing,
    HourlyLaborPricing,
    InvoiceReadyResult,
    LaborPricingFollowUpResult,
)
from .store import InvoiceStore


# Create Typer app
app = typer.Typer(
    name="invoice-drafter",
    help="Invoice Drafter CLI: turn messy job notes into priced invoices",
    add_completion=False,
)


def _print_invoice(result: InvoiceReadyResult) -> None:
    invoice = result.invoice
    typer.echo(f"\nInvoice {invoice.invoice_number}  {invoice.customer_name or ''}".rstrip())
    for item in invoice.line_items:
        amount = "undecided" if item.amount is None else f"{item.amount:.2f}"
        typer.echo(f"  - [{item.type}] {item.description}: {amount}")
    if invoice.discount_amount:
        typer.echo(f"  Discount: -{invoice.discount_amount:.2f} ({invoice.discount_reason or 'no reason given'})")
    typer.echo(f"  Total: {invoice.total:.2f} {invoice.currency}")

    for decision in result.open_decisions:
        typer.echo(f"  ? {decision.prompt}")
    for assumption in result.assumptions:
        typer.echo(f"  * {assumption}")
    for line in result.unparsed_lines:
        typer.echo(f"  ! Not on invoice: {line}")
    typer.echo(f"  Audit: {result.audit_status}")


@app.command()
def draft(
    notes_file: Optional[Path] = typer.Option(
        None,
        "--notes-file",
        "-f",
        help="Text file containing job notes",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    text: Optional[str] = typer.Option(None, "--text", "-t", help="Job notes given inline"),
    upload: Optional[Path] = typer.Option(
        None,
        "--upload",
        "-u",
        help="PDF or text document to draft from",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    rate: Optional[float] = typer.Option(None, "--rate", help="Hourly rate answering the labor follow-up"),
    hours: Optional[list[float]] = typer.Option(None, "--hours", help="Hours per unpriced labor line (repeat)"),
    flat: Optional[float] = typer.Option(None, "--flat", help="Flat labor amount answering the labor follow-up"),
    fast: bool = typer.Option(False, "--fast", help="Skip the audit pass"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the result JSON to this file"),
) -> None:
    """
    Draft an invoice from job notes.

    When labor pricing is missing and no --rate/--hours or --flat answer was
    given, prints the follow-up question and exits with code 2.
    """
    messy_input = notes_file.read_text(encoding="utf-8") if notes_file else text
    mode = "fast" if fast else "full"

    try:
        uploaded_text = extract_text_from_file(upload) if upload else None
        service = get_completion_service()
        result = asyncio.run(create_invoice_from_input(messy_input, uploaded_text, service, mode=mode))

        if isinstance(result, LaborPricingFollowUpResult):
            if flat is not None:
                choice = FlatLaborPricing(flat_amount=flat)
            elif rate is not None and hours:
                choice = HourlyLaborPricing(rate=rate, line_hours=hours)
            else:
                typer.echo(result.follow_up.message)
                for index, item in enumerate(result.follow_up.labor_items, start=1):
                    known = f" ({item.hours}h)" if item.hours is not None else ""
                    typer.echo(f"  {index}. {item.description}{known}")
                typer.echo("\nRe-run with --rate and one --hours per line, or with --flat.")
                raise typer.Exit(code=2)

            source_text = build_source_text(messy_input, uploaded_text)
            result = asyncio.run(
                continue_invoice_after_labor_pricing(
                    result.structured_invoice, choice, service, source_text=source_text, mode=mode
                )
            )

        _print_invoice(result)
        if output:
            with open(output, "w", encoding="utf-8") as f:
                json.dump(result.to_json_dict(), f, indent=2)
            typer.echo(f"\n[OK] Wrote draft to: {output}")

    except InvoiceDraftError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=1)
    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error during drafting: {e}", err=True)
        logger.exception("Drafting failed")
        raise typer.Exit(code=1)


@app.command("extract-text")
def extract_text(
    path: Path = typer.Argument(..., exists=True, file_okay=True, dir_okay=False, resolve_path=True),
) -> None:
    """Print the text extracted from a PDF or text document."""
    try:
        typer.echo(extract_text_from_file(path))
    except InvoiceDraftError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=1)


@app.command()
def saved(
    store_file: Optional[Path] = typer.Option(None, "--store", "-s", help="Saved invoice store file"),
    include_deleted: bool = typer.Option(False, "--include-deleted", help="Also list deleted invoices"),
) -> None:
    """List saved invoices, most recently updated first."""
    store = InvoiceStore(store_file) if store_file else InvoiceStore()
    invoices = store.list_invoices(include_deleted=include_deleted)
    if not invoices:
        typer.echo("No saved invoices.")
        return
    for item in invoices:
        total = f"{item.total:.2f}" if item.total is not None else "-"
        typer.echo(
            f"  - {item.invoice_id} | {item.status} | {item.invoice_number or '-'} | "
            f"{item.customer_name or '-'} | {total} | {item.updated_at}"
        )


@app.command()
def serve() -> None:
    """Run the HTTP API with uvicorn."""
    from .api import run_server
    run_server()


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__
    typer.echo(f"Invoice Drafter v{__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
