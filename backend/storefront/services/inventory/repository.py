"""
Stock record and inventory ledger data access.

Stock quantities are only ever changed through ``apply_delta``, which does a
compare-and-swap on the record's version and inserts the matching ledger
entry in the same transaction. The ledger has no update or delete path.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import (
    ConflictError,
    InternalError,
    ValidationError,
    VersionConflictError,
)
from storefront.core.logging import get_logger
from storefront.database.models.inventory import (
    InventoryLedgerEntry,
    LedgerCause,
    StockRecord,
)

logger = get_logger(__name__)

BUCKET_FORMATS = {
    "hour": "YYYY-MM-DD HH24:00",
    "day": "YYYY-MM-DD",
    "month": "YYYY-MM",
}


class InventoryRepositoryError(InternalError):
    """Raised when a stock or ledger query fails."""

    pass


class AlreadyRestoredError(ConflictError):
    """A restoration for this product, order and cause is already recorded."""

    code = "ALREADY_RESTORED"


class InsufficientStockError(ValidationError):
    """The write would take quantity on hand below zero."""

    code = "INSUFFICIENT_STOCK"


class StockRepository:
    """
    Repository for stock records and their ledger.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_stock(self, product_id: uuid.UUID) -> Optional[StockRecord]:
        """
        Read the current stock and version, bypassing the identity map so a
        retry after a conflict sees the latest committed version.
        """
        try:
            result = await self.session.execute(
                select(StockRecord)
                .where(StockRecord.id == product_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to read stock record",
                product_id=str(product_id),
                error=str(e),
            )
            raise InventoryRepositoryError(
                "Failed to read stock record",
                product_id=str(product_id),
            ) from e

    async def apply_delta(
        self,
        product_id: uuid.UUID,
        expected_version: int,
        delta: int,
        cause: LedgerCause,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> InventoryLedgerEntry:
        """
        Atomically change stock by ``delta`` and append one ledger entry.

        The write only applies if the record still carries
        ``expected_version``.

        Raises:
            VersionConflictError: Someone else wrote first
            InsufficientStockError: Stock would become negative
            AlreadyRestoredError: Restoration already recorded
            InventoryRepositoryError: Any other database failure
        """
        context = {
            "product_id": str(product_id),
            "expected_version": expected_version,
            "delta": delta,
            "cause": cause.value,
            "reference_id": reference_id,
        }

        try:
            result = await self.session.execute(
                update(StockRecord)
                .where(
                    StockRecord.id == product_id,
                    StockRecord.version == expected_version,
                )
                .values(
                    stock=StockRecord.stock + delta,
                    version=StockRecord.version + 1,
                )
                .returning(StockRecord.stock)
                .execution_options(synchronize_session=False)
            )
            new_stock = result.scalar_one_or_none()

            if new_stock is None:
                await self.session.rollback()
                logger.info("Stock version conflict", **context)
                raise VersionConflictError("Stock record was modified concurrently", **context)

            entry = InventoryLedgerEntry(
                product_id=product_id,
                delta=delta,
                cause=cause,
                reference_id=reference_id,
                previous_stock=new_stock - delta,
                new_stock=new_stock,
                notes=notes,
                trace_id=trace_id,
            )
            self.session.add(entry)
            await self.session.flush()
            await self.session.commit()

            logger.info(
                "Stock updated",
                previous_stock=entry.previous_stock,
                new_stock=entry.new_stock,
                **context,
            )
            return entry

        except IntegrityError as e:
            await self.session.rollback()
            detail = str(e.orig) if e.orig is not None else str(e)
            if "uq_inventory_ledger_restoration" in detail:
                raise AlreadyRestoredError(
                    "Inventory already restored for this order", **context
                ) from e
            if "ck_stock_records_stock_non_negative" in detail:
                raise InsufficientStockError("Insufficient stock", **context) from e
            logger.error("Stock update failed - integrity error", error=detail, **context)
            raise InventoryRepositoryError("Stock update violated a constraint", **context) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Stock update failed - database error", error=str(e), **context)
            raise InventoryRepositoryError("Stock update failed", **context) from e

    async def has_restoration(
        self,
        product_id: uuid.UUID,
        cause: LedgerCause,
        reference_id: str,
    ) -> bool:
        try:
            result = await self.session.execute(
                select(InventoryLedgerEntry.id)
                .where(
                    InventoryLedgerEntry.product_id == product_id,
                    InventoryLedgerEntry.cause == cause,
                    InventoryLedgerEntry.reference_id == reference_id,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            logger.error(
                "Failed to check restoration",
                product_id=str(product_id),
                reference_id=reference_id,
                error=str(e),
            )
            raise InventoryRepositoryError("Failed to check restoration") from e

    async def get_ledger_entries(
        self,
        product_id: uuid.UUID,
        cause: Optional[LedgerCause] = None,
        start: Optional[datetime] = None,
        end_exclusive: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[InventoryLedgerEntry], int]:
        """
        Page through a product's ledger, newest first.

        Returns:
            Tuple of (entries, total matching count)
        """
        filters: list[Any] = [InventoryLedgerEntry.product_id == product_id]
        if cause is not None:
            filters.append(InventoryLedgerEntry.cause == cause)
        if start is not None:
            filters.append(InventoryLedgerEntry.created_at >= start)
        if end_exclusive is not None:
            filters.append(InventoryLedgerEntry.created_at < end_exclusive)

        try:
            total = await self.session.scalar(
                select(func.count()).select_from(InventoryLedgerEntry).where(*filters)
            )
            result = await self.session.execute(
                select(InventoryLedgerEntry)
                .where(*filters)
                .order_by(InventoryLedgerEntry.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return result.scalars().all(), int(total or 0)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to load ledger entries",
                product_id=str(product_id),
                error=str(e),
            )
            raise InventoryRepositoryError("Failed to load ledger entries") from e

    async def aggregate_ledger(
        self,
        start: datetime,
        end_exclusive: datetime,
        group_by: str,
    ) -> list[tuple[str, LedgerCause, int, int]]:
        """
        Sum deltas per time bucket and cause.

        Returns:
            Rows of (bucket, cause, total_delta, count) ordered by bucket
        """
        bucket = func.to_char(InventoryLedgerEntry.created_at, BUCKET_FORMATS[group_by]).label(
            "bucket"
        )

        try:
            result = await self.session.execute(
                select(
                    bucket,
                    InventoryLedgerEntry.cause,
                    func.sum(InventoryLedgerEntry.delta),
                    func.count(InventoryLedgerEntry.id),
                )
                .where(
                    InventoryLedgerEntry.created_at >= start,
                    InventoryLedgerEntry.created_at < end_exclusive,
                )
                .group_by(bucket, InventoryLedgerEntry.cause)
                .order_by(bucket)
            )
            return [
                (row[0], row[1], int(row[2] or 0), int(row[3] or 0))
                for row in result.all()
            ]
        except SQLAlchemyError as e:
            logger.error("Failed to aggregate ledger", group_by=group_by, error=str(e))
            raise InventoryRepositoryError("Failed to aggregate ledger") from e
