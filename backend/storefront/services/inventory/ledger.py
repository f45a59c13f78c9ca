"""
Inventory ledger service: optimistic stock writes, history and statistics.
"""

import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from storefront.core.errors import NotFoundError, ValidationError
from storefront.core.logging import get_logger, get_trace_id
from storefront.core.retry import RetryPolicy, retry
from storefront.database.models.inventory import InventoryLedgerEntry, LedgerCause
from storefront.services.inventory.repository import BUCKET_FORMATS, StockRepository

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _end_of(day: date) -> datetime:
    """Exclusive upper bound that still includes the whole of ``day``."""
    return _start_of(day) + timedelta(days=1)


def format_entry(entry: InventoryLedgerEntry) -> dict[str, Any]:
    return {
        "id": str(entry.id) if entry.id else None,
        "product_id": str(entry.product_id),
        "delta": entry.delta,
        "cause": entry.cause.value,
        "reference_id": entry.reference_id,
        "previous_stock": entry.previous_stock,
        "new_stock": entry.new_stock,
        "notes": entry.notes,
        "trace_id": entry.trace_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class InventoryLedgerService:
    """
    Owns every stock mutation and the audit queries over the ledger.

    Stock writes read the current version, then compare-and-swap. Version
    conflicts are retried under ``conflict_policy``; exhaustion surfaces as
    VersionConflictError to the caller.
    """

    def __init__(self, repository: StockRepository, conflict_policy: RetryPolicy):
        self.repository = repository
        self.conflict_policy = conflict_policy

    async def record_change(
        self,
        product_id: uuid.UUID,
        delta: int,
        cause: LedgerCause,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> InventoryLedgerEntry:
        """
        Apply ``delta`` to a product's stock and write its ledger entry.

        Raises:
            NotFoundError: Product does not exist
            VersionConflictError: Conflicts persisted past the retry budget
            InsufficientStockError: Stock would become negative
            AlreadyRestoredError: Restoration already recorded
        """
        if delta == 0:
            raise ValidationError("Stock change must be non-zero", product_id=str(product_id))

        trace_id = get_trace_id() or None

        async def attempt() -> InventoryLedgerEntry:
            record = await self.repository.get_stock(product_id)
            if record is None:
                raise NotFoundError("Product not found", product_id=str(product_id))
            return await self.repository.apply_delta(
                product_id=product_id,
                expected_version=record.version,
                delta=delta,
                cause=cause,
                reference_id=reference_id,
                notes=notes,
                trace_id=trace_id,
            )

        return await retry(
            attempt,
            self.conflict_policy,
            trace_id=trace_id,
            operation_name=f"stock write {product_id}",
        )

    async def has_restoration(
        self,
        product_id: uuid.UUID,
        cause: LedgerCause,
        order_id: str,
    ) -> bool:
        return await self.repository.has_restoration(product_id, cause, order_id)

    async def adjust_stock(
        self,
        product_id: uuid.UUID,
        delta: int,
        actor_id: Optional[str],
        notes: Optional[str] = None,
    ) -> dict[str, Any]:
        """Manual stock correction by an administrator."""
        entry = await self.record_change(
            product_id=product_id,
            delta=delta,
            cause=LedgerCause.ADMIN_ADJUSTMENT,
            reference_id=actor_id,
            notes=notes,
        )
        logger.info(
            "Stock adjusted by admin",
            product_id=str(product_id),
            delta=delta,
            new_stock=entry.new_stock,
        )
        return format_entry(entry)

    async def get_history(
        self,
        product_id: uuid.UUID,
        cause: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """
        Page through a product's stock changes, newest first.

        ``end_date`` is inclusive of the whole day.
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", page=page, limit=limit)
        limit = min(limit, MAX_PAGE_SIZE)

        if await self.repository.get_stock(product_id) is None:
            raise NotFoundError("Product not found", product_id=str(product_id))

        try:
            cause_filter = LedgerCause.from_string(cause) if cause else None
        except ValueError as e:
            raise ValidationError(str(e), cause=cause) from e

        entries, total = await self.repository.get_ledger_entries(
            product_id=product_id,
            cause=cause_filter,
            start=_start_of(start_date) if start_date else None,
            end_exclusive=_end_of(end_date) if end_date else None,
            offset=(page - 1) * limit,
            limit=limit,
        )

        return {
            "data": [format_entry(entry) for entry in entries],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
        }

    async def get_stats(
        self,
        start_date: Optional[date],
        end_date: Optional[date],
        group_by: str = "day",
    ) -> list[dict[str, Any]]:
        """
        Net stock movement per time bucket, broken down by cause.

        Raises:
            ValidationError: Missing dates, reversed range or unknown group_by
        """
        if start_date is None or end_date is None:
            raise ValidationError("startDate and endDate are required")
        if end_date < start_date:
            raise ValidationError(
                "endDate must not be before startDate",
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
            )
        if group_by not in BUCKET_FORMATS:
            raise ValidationError(
                "Invalid groupBy parameter. Must be hour, day, or month",
                group_by=group_by,
            )

        rows = await self.repository.aggregate_ledger(
            start=_start_of(start_date),
            end_exclusive=_end_of(end_date),
            group_by=group_by,
        )

        buckets: dict[str, dict[str, Any]] = {}
        for bucket, cause, total_delta, count in rows:
            summary = buckets.setdefault(
                bucket,
                {"date": bucket, "sources": [], "total_delta": 0, "total_count": 0},
            )
            summary["sources"].append(
                {"source": cause.value, "total_delta": total_delta, "count": count}
            )
            summary["total_delta"] += total_delta
            summary["total_count"] += count

        return [buckets[key] for key in sorted(buckets)]
