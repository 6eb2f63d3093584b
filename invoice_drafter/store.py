"""
Saved invoice store.

Invoices are kept in a single JSON document on disk:
- Writes are serialized through a lock and replace the file atomically
- Deletion is soft: the status becomes "deleted" and the previous status is
  remembered so restore can bring it back
"""

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .config import INVOICE_STORE_FILE, logger
from .errors import InvoiceNotFoundError
from .schemas import (
    SavedInvoice,
    SavedInvoiceCollection,
    SavedInvoiceData,
    SavedInvoiceListItem,
    SavedInvoiceSourceType,
    SavedInvoiceStatus,
)

T = TypeVar("T")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class InvoiceStore:
    """JSON-file backed store of saved invoices."""

    def __init__(self, path: Path | str = INVOICE_STORE_FILE):
        self.path = Path(path).resolve()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------

    def _ensure_exists(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text('{\n  "invoices": []\n}\n', encoding="utf-8")

    def _read(self) -> SavedInvoiceCollection:
        self._ensure_exists()
        with open(self.path, "r", encoding="utf-8") as f:
            return SavedInvoiceCollection.model_validate(json.load(f))

    def _write(self, collection: SavedInvoiceCollection) -> None:
        self._ensure_exists()
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(collection.to_json_dict(), f, indent=2)
            f.write("\n")
        os.replace(temp_path, self.path)

    def _mutate(self, mutation: Callable[[SavedInvoiceCollection], T]) -> T:
        """Read, mutate and write the collection under the store lock."""
        with self._lock:
            collection = self._read()
            result = mutation(collection)
            self._write(collection)
            return result

    @staticmethod
    def _index_of(collection: SavedInvoiceCollection, invoice_id: str) -> int:
        for index, invoice in enumerate(collection.invoices):
            if invoice.invoice_id == invoice_id:
                return index
        raise InvoiceNotFoundError(invoice_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def save(
        self,
        source_type: SavedInvoiceSourceType,
        invoice_data: SavedInvoiceData,
        invoice_id: Optional[str] = None,
    ) -> SavedInvoice:
        """
        Save a new invoice, or overwrite the data of an existing one.

        Raises:
            InvoiceNotFoundError: If invoice_id is given but unknown
        """

        def mutation(collection: SavedInvoiceCollection) -> SavedInvoice:
            now = _now()
            if invoice_id:
                index = self._index_of(collection, invoice_id)
                updated = collection.invoices[index].model_copy(
                    update={"source_type": source_type, "invoice_data": invoice_data, "updated_at": now}
                )
                collection.invoices[index] = updated
                return updated

            created = SavedInvoice(
                invoice_id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                status="draft",
                source_type=source_type,
                invoice_data=invoice_data,
            )
            collection.invoices.append(created)
            return created

        saved = self._mutate(mutation)
        logger.info(f"Saved invoice {saved.invoice_id}")
        return saved

    def list_invoices(self, include_deleted: bool = False) -> list[SavedInvoiceListItem]:
        """List invoice metadata, most recently updated first."""
        items = [
            SavedInvoiceListItem(
                invoice_id=invoice.invoice_id,
                created_at=invoice.created_at,
                updated_at=invoice.updated_at,
                status=invoice.status,
                source_type=invoice.source_type,
                invoice_number=invoice.invoice_data.finished_invoice.invoice_number,
                customer_name=invoice.invoice_data.finished_invoice.customer_name,
                total=invoice.invoice_data.finished_invoice.total,
            )
            for invoice in self._read().invoices
            if include_deleted or invoice.status != "deleted"
        ]
        return sorted(items, key=lambda item: item.updated_at, reverse=True)

    def get(self, invoice_id: str) -> SavedInvoice:
        collection = self._read()
        return collection.invoices[self._index_of(collection, invoice_id)]

    def duplicate(self, invoice_id: str) -> SavedInvoice:
        """Copy an invoice into a new draft with a fresh id."""

        def mutation(collection: SavedInvoiceCollection) -> SavedInvoice:
            original = collection.invoices[self._index_of(collection, invoice_id)]
            now = _now()
            copy = SavedInvoice(
                invoice_id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                status="draft",
                source_type=original.source_type,
                invoice_data=original.invoice_data,
            )
            collection.invoices.append(copy)
            return copy

        return self._mutate(mutation)

    def update_status(self, invoice_id: str, status: SavedInvoiceStatus) -> SavedInvoice:
        """Set the status; moving to "deleted" remembers the previous status."""

        def mutation(collection: SavedInvoiceCollection) -> SavedInvoice:
            index = self._index_of(collection, invoice_id)
            current = collection.invoices[index]
            update = {"status": status, "updated_at": _now()}
            if status == "deleted" and current.status != "deleted":
                update["previous_status"] = current.status
            elif status != "deleted":
                update["previous_status"] = None
            updated = current.model_copy(update=update)
            collection.invoices[index] = updated
            return updated

        updated = self._mutate(mutation)
        logger.info(f"Invoice {invoice_id} status -> {status}")
        return updated

    def delete(self, invoice_id: str) -> SavedInvoice:
        return self.update_status(invoice_id, "deleted")

    def restore(self, invoice_id: str) -> SavedInvoice:
        """Undo a soft delete, returning to the previous status (draft by default)."""
        current = self.get(invoice_id)
        if current.status != "deleted":
            return current
        return self.update_status(invoice_id, current.previous_status or "draft")


@lru_cache(maxsize=1)
def get_invoice_store() -> InvoiceStore:
    """Return the process-wide invoice store."""
    return InvoiceStore()
