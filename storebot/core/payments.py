"""
Payment state machine.

Payments move pending -> verified or pending -> failed and never leave a
terminal state. Verification runs as one transaction that:
1. Locks the payment row and re-checks its status
2. Flips the payment to verified
3. Advances the order (order row lock)
4. Deducts stock (ledger row lock)
5. Commits

Locks are always taken in that order: payment, order, stock ledger.
Re-checking the status while holding the payment lock is what makes
verification idempotent: a second call sees "verified" and returns without
touching stock. Publishing and notifications run only after commit and
cannot fail the verification.
"""
import time
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.core import orders, stock_ledger
from storebot.core.errors import ConflictError, NotFoundError
from storebot.core.records import CheckoutResult, OrderRecord, PaymentRecord, StockChange
from storebot.core.side_effects import run_best_effort
from storebot.database import (
    Customer,
    Order,
    Payment,
    PaymentMethod,
    PaymentStatus,
    VerificationMethod,
    get_session_factory,
    utcnow,
)
from storebot.monitoring.metrics import metrics
from storebot.notifications.admin_dispatcher import AdminNotificationDispatcher
from storebot.notifications.customer import CustomerNotifier
from storebot.realtime.product_cache import ProductCache
from storebot.realtime.stock_notifier import StockUpdateNotifier

logger = structlog.get_logger(__name__)


async def lock_payment(db: AsyncSession, payment_id: int) -> Payment:
    """
    Lock and load a payment row by id.

    Raises:
        NotFoundError: If the payment does not exist
    """
    result = await db.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


async def lock_payment_by_order(db: AsyncSession, order_id: int) -> Payment:
    """
    Lock and load the payment of an order.

    Raises:
        NotFoundError: If the order has no payment
    """
    result = await db.execute(
        select(Payment)
        .where(Payment.order_id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError(f"No payment for order {order_id}")
    return payment


async def create_payment(
    order_id: int,
    payment_method: PaymentMethod | str,
    amount: Decimal,
    db: AsyncSession,
) -> Payment:
    """
    Insert a pending payment for an order.

    Raises:
        NotFoundError: If the order does not exist
        ConflictError: If the method is unknown, the amount is not positive
            or the order already has a payment
    """
    try:
        method = PaymentMethod(payment_method)
    except ValueError as e:
        raise ConflictError(f"Unknown payment method: {payment_method}") from e
    amount = Decimal(amount)
    if amount <= 0:
        raise ConflictError(f"Payment amount must be positive, got {amount}")

    if await db.get(Order, order_id) is None:
        raise NotFoundError(f"Order {order_id} not found")

    existing = await db.execute(select(Payment.id).where(Payment.order_id == order_id))
    if existing.scalar_one_or_none() is not None:
        raise ConflictError(f"Order {order_id} already has a payment")

    payment = Payment(
        order_id=order_id,
        payment_method=method.value,
        amount=amount,
        status=PaymentStatus.PENDING.value,
    )
    db.add(payment)
    await db.flush()

    metrics.record_payment_transition("created", method.value)
    logger.info(
        "payment_created",
        payment_id=payment.id,
        order_id=order_id,
        payment_method=method.value,
        amount=str(amount),
    )
    return payment


async def _apply_verification(
    db: AsyncSession,
    payment: Payment,
    verification_method: VerificationMethod,
    actor_id: Optional[int],
) -> StockChange:
    payment.status = PaymentStatus.VERIFIED.value
    payment.verification_method = verification_method.value
    payment.verified_at = utcnow()

    order = await orders.update_payment_status(payment.order_id, PaymentStatus.VERIFIED, db)
    ledger = await stock_ledger.deduct_with_lock(order.product_id, order.quantity, db, actor_id)
    await db.flush()

    return StockChange(
        product_id=order.product_id,
        previous_quantity=ledger.current_quantity + order.quantity,
        new_quantity=ledger.current_quantity,
        actor_id=actor_id,
    )


class PaymentService:
    """
    Payment operations with post-commit side effects.

    Collaborators default to their production implementations and can be
    replaced for tests.
    """

    def __init__(
        self,
        notifier: Optional[StockUpdateNotifier] = None,
        admin_dispatcher: Optional[AdminNotificationDispatcher] = None,
        customer_notifier: Optional[CustomerNotifier] = None,
        cache: Optional[ProductCache] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._session_factory = session_factory
        self.notifier = notifier or StockUpdateNotifier()
        self.admin_dispatcher = admin_dispatcher or AdminNotificationDispatcher(
            session_factory=session_factory
        )
        self.customer_notifier = customer_notifier or CustomerNotifier(
            session_factory=session_factory
        )
        self.cache = cache or ProductCache(session_factory=session_factory)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def create_payment(
        self, order_id: int, payment_method: PaymentMethod | str, amount: Decimal
    ) -> PaymentRecord:
        """Create a pending payment for an existing order."""
        async with self.session_factory() as db:
            async with db.begin():
                payment = await create_payment(order_id, payment_method, amount, db)
                record = PaymentRecord.model_validate(payment)
        return record

    async def checkout(
        self,
        customer_id: int,
        product_id: int,
        quantity: int,
        payment_method: PaymentMethod | str,
    ) -> CheckoutResult:
        """
        Create an order with reserved stock and its pending payment.

        Args:
            customer_id: Ordering customer
            product_id: Product ordered
            quantity: Units ordered
            payment_method: qris or manual_bank_transfer

        Returns:
            CheckoutResult: The order and its payment

        Raises:
            NotFoundError: If the customer or product does not exist
            ConflictError: If the product is unavailable or the input is invalid
            InsufficientStockError: If not enough stock can be reserved
        """
        async with self.session_factory() as db:
            async with db.begin():
                order = await orders.create_order(
                    customer_id, product_id, quantity, payment_method, db
                )
                payment = await create_payment(
                    order.id, order.payment_method, order.total_amount, db
                )
                result = CheckoutResult(
                    order=OrderRecord.model_validate(order),
                    payment=PaymentRecord.model_validate(payment),
                )

        await run_best_effort(
            "admin_notification",
            self.admin_dispatcher.notify_order_event("new_order", result.order.id),
            order_id=result.order.id,
        )
        return result

    async def verify_automatic(self, order_id: int, transaction_id: str) -> PaymentRecord:
        """
        Verify a QRIS payment reported by the payment gateway.

        Idempotent: verifying an already verified payment returns it
        unchanged and deducts nothing.

        Args:
            order_id: Order whose payment was confirmed
            transaction_id: Gateway transaction id (already authenticated)

        Returns:
            PaymentRecord: The verified payment

        Raises:
            NotFoundError: If the order has no payment or its product has no stock record
            ConflictError: If the payment failed or is not a QRIS payment
            InsufficientStockError: If the stock ran out (nothing is changed)
        """
        started = time.perf_counter()
        change: Optional[StockChange] = None

        async with self.session_factory() as db:
            async with db.begin():
                payment = await lock_payment_by_order(db, order_id)
                self._check_verifiable(payment, PaymentMethod.QRIS)

                if payment.status == PaymentStatus.PENDING.value:
                    payment.gateway_transaction_id = transaction_id
                    change = await _apply_verification(
                        db, payment, VerificationMethod.AUTOMATIC, actor_id=None
                    )
                record = PaymentRecord.model_validate(payment)

        if change is None:
            metrics.record_payment_transition("already_verified", record.payment_method)
            logger.info(
                "payment_already_verified",
                payment_id=record.id,
                order_id=order_id,
                transaction_id=transaction_id,
            )
            return record

        metrics.record_payment_transition("verified", record.payment_method)
        metrics.record_verification_duration(
            VerificationMethod.AUTOMATIC.value, time.perf_counter() - started
        )
        logger.info(
            "payment_verified",
            payment_id=record.id,
            order_id=order_id,
            verification_method=VerificationMethod.AUTOMATIC.value,
            transaction_id=transaction_id,
        )

        await self._after_verification(record, change)
        await run_best_effort(
            "admin_notification",
            self.admin_dispatcher.notify_order_event("qris_verified", order_id),
            order_id=order_id,
        )
        return record

    async def verify_manual(self, payment_id: int, admin_id: int) -> PaymentRecord:
        """
        Verify a bank transfer payment on an admin's confirmation.

        The caller has already checked the admin's permission. Idempotent
        like verify_automatic.

        Raises:
            NotFoundError: If the payment does not exist
            ConflictError: If the payment failed or is not a manual bank transfer
            InsufficientStockError: If the stock ran out (nothing is changed)
        """
        started = time.perf_counter()
        change: Optional[StockChange] = None

        async with self.session_factory() as db:
            async with db.begin():
                payment = await lock_payment(db, payment_id)
                self._check_verifiable(payment, PaymentMethod.MANUAL_BANK_TRANSFER)

                if payment.status == PaymentStatus.PENDING.value:
                    payment.admin_id = admin_id
                    change = await _apply_verification(
                        db, payment, VerificationMethod.MANUAL, actor_id=admin_id
                    )
                record = PaymentRecord.model_validate(payment)

        if change is None:
            metrics.record_payment_transition("already_verified", record.payment_method)
            logger.info("payment_already_verified", payment_id=payment_id, admin_id=admin_id)
            return record

        metrics.record_payment_transition("verified", record.payment_method)
        metrics.record_verification_duration(
            VerificationMethod.MANUAL.value, time.perf_counter() - started
        )
        logger.info(
            "payment_verified",
            payment_id=payment_id,
            order_id=record.order_id,
            verification_method=VerificationMethod.MANUAL.value,
            admin_id=admin_id,
        )

        await self._after_verification(record, change)
        return record

    @staticmethod
    def _check_verifiable(payment: Payment, expected_method: PaymentMethod) -> None:
        # a verified payment is returned as-is before the method check
        if payment.status == PaymentStatus.VERIFIED.value:
            return
        if payment.status == PaymentStatus.FAILED.value:
            raise ConflictError(f"Payment {payment.id} has failed and cannot be verified")
        if payment.payment_method != expected_method.value:
            raise ConflictError(
                f"Payment {payment.id} uses {payment.payment_method}, "
                f"expected {expected_method.value}"
            )

    async def _after_verification(self, record: PaymentRecord, change: StockChange) -> None:
        await run_best_effort(
            "stock_update_publish",
            self.notifier.notify_stock_update(
                change.product_id,
                change.previous_quantity,
                change.new_quantity,
                change.actor_id,
            ),
            product_id=change.product_id,
            order_id=record.order_id,
        )
        await run_best_effort(
            "product_cache_invalidate",
            self.cache.invalidate_product(change.product_id),
            product_id=change.product_id,
        )
        await run_best_effort(
            "customer_notification",
            self.customer_notifier.send_order_status_notification(
                record.order_id, "payment_received"
            ),
            order_id=record.order_id,
        )

    async def mark_failed(self, payment_id: int, reason: str) -> PaymentRecord:
        """
        Fail a pending payment.

        Failing an already failed payment is a no-op. Stock is never
        touched; an unpaid order keeps its reservation until cancelled.

        Raises:
            NotFoundError: If the payment does not exist
            ConflictError: If the payment is already verified
        """
        transitioned = False
        async with self.session_factory() as db:
            async with db.begin():
                payment = await lock_payment(db, payment_id)
                if payment.status == PaymentStatus.VERIFIED.value:
                    raise ConflictError(f"Payment {payment_id} is verified and cannot fail")

                if payment.status == PaymentStatus.PENDING.value:
                    payment.status = PaymentStatus.FAILED.value
                    payment.failure_reason = reason
                    await orders.update_payment_status(payment.order_id, PaymentStatus.FAILED, db)
                    await db.flush()
                    transitioned = True
                record = PaymentRecord.model_validate(payment)

        if not transitioned:
            logger.info("payment_already_failed", payment_id=payment_id)
            return record

        metrics.record_payment_transition("failed", record.payment_method)
        logger.info("payment_failed", payment_id=payment_id, order_id=record.order_id, reason=reason)

        await run_best_effort(
            "customer_notification",
            self.customer_notifier.send_order_status_notification(
                record.order_id, "payment_failed", reason=reason
            ),
            order_id=record.order_id,
        )
        await run_best_effort(
            "admin_notification",
            self.admin_dispatcher.notify_order_event(
                "payment_failed", record.order_id, reason=reason
            ),
            order_id=record.order_id,
        )
        return record

    async def attach_proof(self, payment_id: int, proof_ref: str) -> PaymentRecord:
        """
        Attach a transfer proof to a pending manual payment and alert admins.

        Raises:
            NotFoundError: If the payment does not exist
            ConflictError: If the payment is not a pending manual bank transfer
        """
        async with self.session_factory() as db:
            async with db.begin():
                payment = await lock_payment(db, payment_id)
                if payment.payment_method != PaymentMethod.MANUAL_BANK_TRANSFER.value:
                    raise ConflictError(f"Payment {payment_id} is not a manual bank transfer")
                if payment.status != PaymentStatus.PENDING.value:
                    raise ConflictError(f"Payment {payment_id} is already {payment.status}")

                payment.payment_proof = proof_ref
                await db.flush()
                record = PaymentRecord.model_validate(payment)

        logger.info("payment_proof_attached", payment_id=payment_id, order_id=record.order_id)
        await run_best_effort(
            "admin_notification",
            self.admin_dispatcher.notify_order_event("payment_proof", record.order_id),
            order_id=record.order_id,
        )
        return record

    async def attach_proof_for_customer(self, telegram_user_id: int, proof_ref: str) -> PaymentRecord:
        """
        Attach a proof to the customer's most recent pending bank transfer.

        Raises:
            NotFoundError: If the customer is unknown or has no pending manual payment
        """
        async with self.session_factory() as db:
            customer = (
                await db.execute(
                    select(Customer).where(Customer.telegram_user_id == telegram_user_id)
                )
            ).scalar_one_or_none()
            if customer is None:
                raise NotFoundError(f"Customer with chat id {telegram_user_id} not found")

            result = await db.execute(
                select(Payment.id)
                .join(Order, Order.id == Payment.order_id)
                .where(
                    Order.customer_id == customer.id,
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.payment_method == PaymentMethod.MANUAL_BANK_TRANSFER.value,
                )
                .order_by(Payment.created_at.desc(), Payment.id.desc())
                .limit(1)
            )
            payment_id = result.scalar_one_or_none()

        if payment_id is None:
            raise NotFoundError(f"No pending bank transfer for customer {customer.id}")
        return await self.attach_proof(payment_id, proof_ref)

    async def get_payment(self, payment_id: int) -> PaymentRecord:
        """
        Raises:
            NotFoundError: If the payment does not exist
        """
        async with self.session_factory() as db:
            payment = await db.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            return PaymentRecord.model_validate(payment)

    async def get_payment_by_order(self, order_id: int) -> PaymentRecord:
        """
        Raises:
            NotFoundError: If the order has no payment
        """
        async with self.session_factory() as db:
            result = await db.execute(select(Payment).where(Payment.order_id == order_id))
            payment = result.scalar_one_or_none()
            if payment is None:
                raise NotFoundError(f"No payment for order {order_id}")
            return PaymentRecord.model_validate(payment)

    async def get_payment_by_transaction_id(self, transaction_id: str) -> Optional[PaymentRecord]:
        """Look up a payment by gateway transaction id (None if unknown)."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment).where(Payment.gateway_transaction_id == transaction_id)
            )
            payment = result.scalar_one_or_none()
            return PaymentRecord.model_validate(payment) if payment else None
