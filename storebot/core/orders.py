"""
Order lifecycle and payment-status coupling.

update_payment_status is the only place an order's status changes because
of a payment. The module-level functions run inside the caller's
transaction; OrderService owns its sessions and handles the post-commit
customer notifications.
"""
from datetime import timedelta
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.core import stock_ledger
from storebot.core.errors import ConflictError, NotFoundError
from storebot.core.records import OrderRecord
from storebot.core.side_effects import run_best_effort
from storebot.database import (
    AvailabilityStatus,
    Customer,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    get_session_factory,
    utcnow,
)
from storebot.monitoring.metrics import metrics
from storebot.notifications.customer import CustomerNotifier

logger = structlog.get_logger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PAYMENT_RECEIVED, OrderStatus.CANCELLED}),
    OrderStatus.PAYMENT_RECEIVED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.ACCOUNT_DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.ACCOUNT_DELIVERED: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# order statuses the customer hears about
_CUSTOMER_NOTIFIED = {
    OrderStatus.PROCESSING,
    OrderStatus.ACCOUNT_DELIVERED,
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
}


def can_transition(current: str, new: str) -> bool:
    """Check the order state machine."""
    return OrderStatus(new) in ORDER_TRANSITIONS[OrderStatus(current)]


async def lock_order(db: AsyncSession, order_id: int) -> Order:
    """
    Lock and load an order row.

    Raises:
        NotFoundError: If the order does not exist
    """
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


async def create_order(
    customer_id: int,
    product_id: int,
    quantity: int,
    payment_method: PaymentMethod | str,
    db: AsyncSession,
) -> Order:
    """
    Create an order and reserve its stock.

    Args:
        customer_id: Ordering customer
        product_id: Product ordered
        quantity: Units ordered
        payment_method: qris or manual_bank_transfer
        db: Session with an active transaction

    Returns:
        Order: New order in pending_payment

    Raises:
        NotFoundError: If the customer or product does not exist
        ConflictError: If the product is not available, the quantity is not
            positive or the payment method is unknown
        InsufficientStockError: If not enough unreserved stock remains
    """
    try:
        method = PaymentMethod(payment_method)
    except ValueError as e:
        raise ConflictError(f"Unknown payment method: {payment_method}") from e
    if quantity <= 0:
        raise ConflictError(f"Order quantity must be positive, got {quantity}")

    if await db.get(Customer, customer_id) is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    product = await db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    if product.availability_status != AvailabilityStatus.AVAILABLE.value:
        raise ConflictError(
            f"Product {product_id} is not available ({product.availability_status})"
        )

    await stock_ledger.reserve_with_lock(product_id, quantity, db)

    order = Order(
        customer_id=customer_id,
        product_id=product_id,
        quantity=quantity,
        total_amount=Decimal(product.price) * quantity,
        payment_method=method.value,
        payment_status=PaymentStatus.PENDING.value,
        order_status=OrderStatus.PENDING_PAYMENT.value,
    )
    db.add(order)
    await db.flush()

    logger.info(
        "order_created",
        order_id=order.id,
        customer_id=customer_id,
        product_id=product_id,
        quantity=quantity,
        total_amount=str(order.total_amount),
    )
    return order


async def update_payment_status(
    order_id: int, status: PaymentStatus | str, db: AsyncSession
) -> Order:
    """
    Reflect a payment transition on its order.

    verified sets payment_status and advances pending_payment to
    payment_received. failed sets payment_status only. Stock is never
    touched here.

    Raises:
        NotFoundError: If the order does not exist
        ConflictError: If status is not a terminal payment status
    """
    status = PaymentStatus(status)
    order = await lock_order(db, order_id)

    if status == PaymentStatus.VERIFIED:
        order.payment_status = status.value
        order.payment_verified_at = utcnow()
        if order.order_status == OrderStatus.PENDING_PAYMENT.value:
            order.order_status = OrderStatus.PAYMENT_RECEIVED.value
    elif status == PaymentStatus.FAILED:
        order.payment_status = status.value
    else:
        raise ConflictError(f"Cannot move order {order_id} back to payment status {status.value}")

    await db.flush()
    logger.info(
        "order_payment_status_updated",
        order_id=order_id,
        payment_status=order.payment_status,
        order_status=order.order_status,
    )
    return order


async def update_order_status(
    order_id: int, new_status: OrderStatus | str, db: AsyncSession
) -> Order:
    """
    Move an order through its state machine.

    Raises:
        NotFoundError: If the order does not exist
        ConflictError: If the transition is not allowed
    """
    new_status = OrderStatus(new_status)
    order = await lock_order(db, order_id)

    if not can_transition(order.order_status, new_status):
        raise ConflictError(
            f"Invalid order transition {order.order_status} -> {new_status.value} "
            f"for order {order_id}"
        )

    previous = order.order_status
    order.order_status = new_status.value
    await db.flush()
    logger.info(
        "order_status_updated",
        order_id=order_id,
        from_status=previous,
        to_status=new_status.value,
    )
    return order


class OrderService:
    """Session-owning order operations."""

    def __init__(
        self,
        customer_notifier: CustomerNotifier | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self._session_factory = session_factory
        self.customer_notifier = customer_notifier or CustomerNotifier(
            session_factory=session_factory
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def get_order(self, order_id: int) -> OrderRecord:
        """
        Raises:
            NotFoundError: If the order does not exist
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            return OrderRecord.model_validate(order)

    async def get_orders_by_customer(self, customer_id: int) -> list[OrderRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.customer_id == customer_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
            )
            return [OrderRecord.model_validate(order) for order in result.scalars()]

    async def update_order_status(
        self, order_id: int, new_status: OrderStatus | str
    ) -> OrderRecord:
        """
        Advance an order (fulfilment steps) and tell the customer.

        Cancellation goes through cancel_order so the reservation is
        released.
        """
        new_status = OrderStatus(new_status)
        if new_status == OrderStatus.CANCELLED:
            return await self.cancel_order(order_id)

        async with self.session_factory() as db:
            async with db.begin():
                order = await update_order_status(order_id, new_status, db)
            record = OrderRecord.model_validate(order)

        if new_status in _CUSTOMER_NOTIFIED:
            await run_best_effort(
                "customer_notification",
                self.customer_notifier.send_order_status_notification(order_id, new_status.value),
                order_id=order_id,
            )
        return record

    async def cancel_order(
        self,
        order_id: int,
        reason: str | None = None,
        expected_status: OrderStatus | None = None,
    ) -> OrderRecord:
        """
        Cancel an order. Idempotent.

        An unpaid order has its stock reservation released and its pending
        payment, if any, failed. A verified order keeps its deduction.
        With expected_status set, an order found in any other status once
        locked is returned unchanged.

        Raises:
            NotFoundError: If the order does not exist
            ConflictError: If the order is already completed
        """
        async with self.session_factory() as db:
            async with db.begin():
                # payment row first, then order, then ledger
                payment_result = await db.execute(
                    select(Payment)
                    .where(Payment.order_id == order_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                payment = payment_result.scalar_one_or_none()
                order = await lock_order(db, order_id)

                if order.order_status == OrderStatus.CANCELLED.value:
                    logger.info("order_already_cancelled", order_id=order_id)
                    return OrderRecord.model_validate(order)

                if (
                    expected_status is not None
                    and order.order_status != OrderStatus(expected_status).value
                ):
                    logger.info(
                        "order_cancel_skipped",
                        order_id=order_id,
                        order_status=order.order_status,
                    )
                    return OrderRecord.model_validate(order)

                if not can_transition(order.order_status, OrderStatus.CANCELLED):
                    raise ConflictError(
                        f"Order {order_id} cannot be cancelled from {order.order_status}"
                    )

                unpaid = order.payment_status != PaymentStatus.VERIFIED.value
                if payment is not None and payment.status == PaymentStatus.PENDING.value:
                    payment.status = PaymentStatus.FAILED.value
                    payment.failure_reason = reason or "order cancelled"
                    order.payment_status = PaymentStatus.FAILED.value

                order.order_status = OrderStatus.CANCELLED.value
                if unpaid:
                    await stock_ledger.release_reserved(order.product_id, order.quantity, db)
                await db.flush()
                record = OrderRecord.model_validate(order)

        logger.info("order_cancelled", order_id=order_id, released_reservation=unpaid)
        await run_best_effort(
            "customer_notification",
            self.customer_notifier.send_order_status_notification(
                order_id, OrderStatus.CANCELLED.value, reason=reason
            ),
            order_id=order_id,
        )
        return record

    async def expire_abandoned_orders(self, max_age: timedelta) -> int:
        """
        Cancel pending_payment orders older than max_age, releasing their
        reservations.

        Each order is re-checked under its lock, so an order verified while
        the sweep runs is left alone.

        Returns:
            int: Number of orders cancelled
        """
        cutoff = utcnow() - max_age
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order.id)
                .where(
                    Order.order_status == OrderStatus.PENDING_PAYMENT.value,
                    Order.created_at < cutoff,
                )
                .order_by(Order.id)
            )
            order_ids = list(result.scalars())

        cancelled = 0
        for order_id in order_ids:
            try:
                record = await self.cancel_order(
                    order_id,
                    reason="checkout timed out",
                    expected_status=OrderStatus.PENDING_PAYMENT,
                )
            except (ConflictError, NotFoundError) as e:
                metrics.record_abandoned_order("failed")
                logger.warning("abandoned_order_cancel_failed", order_id=order_id, error=str(e))
                continue

            if record.order_status == OrderStatus.CANCELLED.value:
                cancelled += 1
                metrics.record_abandoned_order("cancelled")
            else:
                metrics.record_abandoned_order("skipped")

        if order_ids:
            logger.info(
                "abandoned_orders_expired",
                candidates=len(order_ids),
                cancelled=cancelled,
                max_age_seconds=max_age.total_seconds(),
            )
        return cancelled
