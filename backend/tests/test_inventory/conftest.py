"""
In-memory stock repository for ledger and reconciler tests.

Mirrors the database behaviour the services rely on: compare-and-swap on the
version column, the non-negative stock check, and the unique restoration
index on (product, cause, reference).
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import pytest

from storefront.core.errors import VersionConflictError
from storefront.core.retry import RetryPolicy
from storefront.database.models.inventory import InventoryLedgerEntry, LedgerCause
from storefront.services.inventory.ledger import InventoryLedgerService
from storefront.services.inventory.repository import (
    AlreadyRestoredError,
    InsufficientStockError,
)

RESTORATION_CAUSES = (LedgerCause.REFUND_CREDIT, LedgerCause.CANCEL_CREDIT)


@dataclass
class StockRow:
    id: uuid.UUID
    name: str
    stock: int
    initial_stock: int
    version: int = 0


class InMemoryStockRepository:
    def __init__(self):
        self.rows: dict[uuid.UUID, StockRow] = {}
        self.ledger: list[InventoryLedgerEntry] = []
        self.conflicts = 0
        self.forced_conflicts: dict[uuid.UUID, int] = {}

    def add_product(self, stock: int, name: str = "Product") -> uuid.UUID:
        product_id = uuid.uuid4()
        self.rows[product_id] = StockRow(product_id, name, stock, stock)
        return product_id

    def stock_of(self, product_id: uuid.UUID) -> int:
        return self.rows[product_id].stock

    def ledger_sum(self, product_id: uuid.UUID) -> int:
        return sum(entry.delta for entry in self.ledger if entry.product_id == product_id)

    async def get_stock(self, product_id: uuid.UUID) -> Optional[StockRow]:
        row = self.rows.get(product_id)
        if row is None:
            return None
        # Readers get a snapshot, like a fresh SELECT
        return StockRow(row.id, row.name, row.stock, row.initial_stock, row.version)

    async def apply_delta(
        self,
        product_id,
        expected_version,
        delta,
        cause,
        reference_id=None,
        notes=None,
        trace_id=None,
    ) -> InventoryLedgerEntry:
        # Yield so concurrent writers interleave between read and write
        await asyncio.sleep(0)

        if self.forced_conflicts.get(product_id, 0) > 0:
            self.forced_conflicts[product_id] -= 1
            self.conflicts += 1
            raise VersionConflictError("Stock record was modified concurrently")

        row = self.rows[product_id]
        if row.version != expected_version:
            self.conflicts += 1
            raise VersionConflictError("Stock record was modified concurrently")
        if cause in RESTORATION_CAUSES and any(
            entry.product_id == product_id
            and entry.cause == cause
            and entry.reference_id == reference_id
            for entry in self.ledger
        ):
            raise AlreadyRestoredError("Inventory already restored for this order")
        if row.stock + delta < 0:
            raise InsufficientStockError("Insufficient stock")

        previous = row.stock
        row.stock += delta
        row.version += 1
        entry = InventoryLedgerEntry(
            id=uuid.uuid4(),
            product_id=product_id,
            delta=delta,
            cause=cause,
            reference_id=reference_id,
            previous_stock=previous,
            new_stock=row.stock,
            notes=notes,
            trace_id=trace_id,
            created_at=datetime.now(timezone.utc),
        )
        self.ledger.append(entry)
        return entry

    async def has_restoration(self, product_id, cause, reference_id) -> bool:
        return any(
            entry.product_id == product_id
            and entry.cause == cause
            and entry.reference_id == reference_id
            for entry in self.ledger
        )

    async def get_ledger_entries(
        self,
        product_id,
        cause=None,
        start=None,
        end_exclusive=None,
        offset=0,
        limit=20,
    ):
        entries = [
            entry
            for entry in self.ledger
            if entry.product_id == product_id
            and (cause is None or entry.cause == cause)
            and (start is None or entry.created_at >= start)
            and (end_exclusive is None or entry.created_at < end_exclusive)
        ]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries[offset:offset + limit], len(entries)


@pytest.fixture
def stock_repository() -> InMemoryStockRepository:
    return InMemoryStockRepository()


@pytest.fixture
def conflict_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=5,
        base_delay=0.0,
        backoff="linear",
        is_retryable=lambda e: isinstance(e, VersionConflictError),
    )


@pytest.fixture
def ledger_service(stock_repository, conflict_policy) -> InventoryLedgerService:
    return InventoryLedgerService(repository=stock_repository, conflict_policy=conflict_policy)
