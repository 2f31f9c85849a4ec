"""
Stock ledger with row-locked mutations.

Every quantity change goes through one of the functions below. Each one
locks the ledger row with SELECT ... FOR UPDATE before reading it, appends
a history entry, mirrors the quantity onto the product and applies the
availability auto-flip, all inside the caller's transaction.
"""
import time

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.core.errors import ConflictError, InsufficientStockError, NotFoundError
from storebot.core.records import StockChange, StockHistoryRecord, StockInfo
from storebot.database import (
    AvailabilityStatus,
    Product,
    StockChangeReason,
    StockHistoryEntry,
    StockLedger,
    get_session_factory,
    utcnow,
)
from storebot.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def resolve_availability_status(current_status: str, quantity: int) -> str:
    """
    Availability auto-flip rule.

    Args:
        current_status: Product's availability status
        quantity: New stock quantity

    Returns:
        str: Status the product should have
    """
    if current_status == AvailabilityStatus.DISCONTINUED.value:
        return current_status
    if quantity <= 0:
        return AvailabilityStatus.OUT_OF_STOCK.value
    if current_status == AvailabilityStatus.OUT_OF_STOCK.value:
        return AvailabilityStatus.AVAILABLE.value
    return current_status


async def lock_ledger_row(db: AsyncSession, product_id: int) -> StockLedger | None:
    """
    Lock and load the ledger row for a product.

    populate_existing makes sure a row already in the identity map is
    re-read after the lock is granted.
    """
    started = time.perf_counter()
    result = await db.execute(
        select(StockLedger)
        .where(StockLedger.product_id == product_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    metrics.record_lock_wait(time.perf_counter() - started)
    return result.scalar_one_or_none()


async def sync_product_mirror(
    db: AsyncSession, product_id: int, quantity: int
) -> tuple[Product | None, bool]:
    """
    Mirror a ledger quantity onto its product and apply the auto-flip.

    Args:
        db: Database session
        product_id: Product to update
        quantity: Ledger quantity to mirror

    Returns:
        tuple: (product or None if absent, whether the status flipped)
    """
    product = await db.get(Product, product_id, populate_existing=True)
    if product is None:
        return None, False

    new_status = resolve_availability_status(product.availability_status, quantity)
    flipped = new_status != product.availability_status
    product.stock_quantity = max(quantity, 0)
    if flipped:
        logger.info(
            "availability_flipped",
            product_id=product_id,
            from_status=product.availability_status,
            to_status=new_status,
            quantity=quantity,
        )
        product.availability_status = new_status
    return product, flipped


def _append_history(
    db: AsyncSession,
    product_id: int,
    previous_quantity: int,
    new_quantity: int,
    actor_id: int | None,
    reason: StockChangeReason,
) -> None:
    db.add(
        StockHistoryEntry(
            product_id=product_id,
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            actor_id=actor_id,
            reason=reason.value,
        )
    )


async def deduct_with_lock(
    product_id: int,
    quantity: int,
    db: AsyncSession,
    actor_id: int | None = None,
) -> StockLedger:
    """
    Decrement stock under the ledger row lock.

    Must run inside the caller's active transaction. Up to `quantity`
    reserved units are released along with the decrement.

    Args:
        product_id: Product to deduct from
        quantity: Units to deduct (positive)
        db: Database session with an active transaction
        actor_id: Who caused the change (None for automatic)

    Returns:
        StockLedger: Updated ledger row

    Raises:
        ConflictError: If quantity is not positive
        NotFoundError: If the product has no ledger row
        InsufficientStockError: If quantity exceeds current stock
    """
    if quantity <= 0:
        raise ConflictError(f"Deduction quantity must be positive, got {quantity}")

    ledger = await lock_ledger_row(db, product_id)
    if ledger is None:
        raise NotFoundError(f"No stock record for product {product_id}")

    if quantity > ledger.current_quantity:
        metrics.record_stock_deduction("insufficient")
        logger.warning(
            "stock_deduction_rejected",
            product_id=product_id,
            requested=quantity,
            available=ledger.current_quantity,
        )
        raise InsufficientStockError(product_id, quantity, ledger.current_quantity)

    previous = ledger.current_quantity
    ledger.current_quantity = previous - quantity
    ledger.reserved_quantity = max(ledger.reserved_quantity - quantity, 0)
    ledger.last_updated_by = actor_id
    ledger.last_updated_at = utcnow()

    _append_history(
        db, product_id, previous, ledger.current_quantity, actor_id,
        StockChangeReason.PAYMENT_VERIFIED,
    )
    await sync_product_mirror(db, product_id, ledger.current_quantity)
    await db.flush()

    metrics.record_stock_deduction("deducted")
    logger.info(
        "stock_deducted",
        product_id=product_id,
        quantity=quantity,
        previous_quantity=previous,
        new_quantity=ledger.current_quantity,
    )
    return ledger


async def _apply_absolute_quantity(
    db: AsyncSession, product_id: int, new_quantity: int, actor_id: int | None
) -> StockChange:
    product = await db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")

    ledger = await lock_ledger_row(db, product_id)
    if ledger is None:
        ledger = StockLedger(product_id=product_id, current_quantity=0, reserved_quantity=0)
        db.add(ledger)

    previous = ledger.current_quantity
    ledger.current_quantity = new_quantity
    ledger.last_updated_by = actor_id
    ledger.last_updated_at = utcnow()

    _append_history(db, product_id, previous, new_quantity, actor_id, StockChangeReason.RESTOCK)
    product, _ = await sync_product_mirror(db, product_id, new_quantity)
    await db.flush()

    metrics.record_stock_update()
    logger.info(
        "stock_quantity_set",
        product_id=product_id,
        previous_quantity=previous,
        new_quantity=new_quantity,
        actor_id=actor_id,
    )
    return StockChange(
        product_id=product_id,
        previous_quantity=previous,
        new_quantity=new_quantity,
        actor_id=actor_id,
        availability_status=product.availability_status,
    )


async def update_quantity(
    product_id: int,
    new_quantity: int,
    actor_id: int | None,
    db: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> StockChange:
    """
    Set the absolute stock quantity for a product.

    Runs in the caller's transaction when `db` is given, otherwise opens
    and commits its own. The ledger row is created if missing.

    Args:
        product_id: Product to update
        new_quantity: New absolute quantity
        actor_id: Admin performing the update
        db: Optional session with an active transaction
        session_factory: Session factory used when db is None

    Returns:
        StockChange: Previous and new quantity

    Raises:
        ConflictError: If new_quantity is negative (ledger unchanged)
        NotFoundError: If the product does not exist
    """
    if new_quantity < 0:
        raise ConflictError(f"Stock quantity cannot be negative, got {new_quantity}")

    if db is not None:
        return await _apply_absolute_quantity(db, product_id, new_quantity, actor_id)

    factory = session_factory or get_session_factory()
    async with factory() as session:
        async with session.begin():
            return await _apply_absolute_quantity(session, product_id, new_quantity, actor_id)


async def reserve_with_lock(product_id: int, quantity: int, db: AsyncSession) -> StockLedger:
    """
    Reserve stock for a pending order under the ledger row lock.

    Raises:
        ConflictError: If quantity is not positive
        NotFoundError: If the product has no ledger row
        InsufficientStockError: If fewer than `quantity` units are unreserved
    """
    if quantity <= 0:
        raise ConflictError(f"Reservation quantity must be positive, got {quantity}")

    ledger = await lock_ledger_row(db, product_id)
    if ledger is None:
        raise NotFoundError(f"No stock record for product {product_id}")

    available = max(ledger.available_quantity, 0)
    if quantity > available:
        metrics.record_stock_reservation("insufficient")
        raise InsufficientStockError(product_id, quantity, available)

    ledger.reserved_quantity += quantity
    ledger.last_updated_at = utcnow()
    await db.flush()

    metrics.record_stock_reservation("reserved")
    logger.info(
        "stock_reserved",
        product_id=product_id,
        quantity=quantity,
        reserved_quantity=ledger.reserved_quantity,
    )
    return ledger


async def release_reserved(product_id: int, quantity: int, db: AsyncSession) -> StockLedger:
    """Release up to `quantity` reserved units under the ledger row lock."""
    ledger = await lock_ledger_row(db, product_id)
    if ledger is None:
        raise NotFoundError(f"No stock record for product {product_id}")

    released = min(max(quantity, 0), ledger.reserved_quantity)
    ledger.reserved_quantity -= released
    ledger.last_updated_at = utcnow()
    await db.flush()

    logger.info("stock_reservation_released", product_id=product_id, released=released)
    return ledger


async def create_for_product(
    product_id: int,
    initial_quantity: int,
    db: AsyncSession,
    actor_id: int | None = None,
) -> StockLedger:
    """
    Create the ledger row for a newly created product.

    Raises:
        ConflictError: If initial_quantity is negative or a row already exists
        NotFoundError: If the product does not exist
    """
    if initial_quantity < 0:
        raise ConflictError(f"Stock quantity cannot be negative, got {initial_quantity}")

    product = await db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")

    existing = await db.execute(select(StockLedger.id).where(StockLedger.product_id == product_id))
    if existing.scalar_one_or_none() is not None:
        raise ConflictError(f"Stock record already exists for product {product_id}")

    ledger = StockLedger(
        product_id=product_id,
        current_quantity=initial_quantity,
        reserved_quantity=0,
        last_updated_by=actor_id,
        last_updated_at=utcnow(),
    )
    db.add(ledger)
    _append_history(db, product_id, 0, initial_quantity, actor_id, StockChangeReason.INITIAL)
    await sync_product_mirror(db, product_id, initial_quantity)
    await db.flush()
    return ledger


async def get_stock_info(product_id: int, db: AsyncSession) -> StockInfo:
    """
    Current, reserved and available stock for a product.

    Raises:
        NotFoundError: If the product does not exist
    """
    result = await db.execute(
        select(Product, StockLedger)
        .outerjoin(StockLedger, StockLedger.product_id == Product.id)
        .where(Product.id == product_id)
    )
    row = result.first()
    if row is None:
        raise NotFoundError(f"Product {product_id} not found")

    product, ledger = row
    current = ledger.current_quantity if ledger is not None else 0
    reserved = ledger.reserved_quantity if ledger is not None else 0
    return StockInfo(
        product_id=product.id,
        product_name=product.name,
        current_quantity=current,
        reserved_quantity=reserved,
        available_quantity=max(current - reserved, 0),
        availability_status=product.availability_status,
    )


async def get_history(product_id: int, db: AsyncSession, limit: int = 50) -> list[StockHistoryRecord]:
    """Newest-first stock history for a product."""
    result = await db.execute(
        select(StockHistoryEntry)
        .where(StockHistoryEntry.product_id == product_id)
        .order_by(StockHistoryEntry.created_at.desc(), StockHistoryEntry.id.desc())
        .limit(limit)
    )
    return [StockHistoryRecord.model_validate(entry) for entry in result.scalars()]
