"""
Customer order-status notifications.

Every message is written to the notifications table before it is sent,
so a failed delivery is left behind as a failed row for the retry sweep.
"""
import asyncio
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.config import Settings, get_settings
from storebot.core.errors import NotFoundError
from storebot.core.side_effects import SideEffectResult
from storebot.database import (
    Customer,
    Notification,
    NotificationStatus,
    RecipientType,
    get_session_factory,
    utcnow,
)
from storebot.monitoring.metrics import metrics
from storebot.notifications.context import load_notification_context
from storebot.notifications.templates import CustomerNotificationType, format_customer_notification
from storebot.notifications.transport import BotApiSender, MessageSender

logger = structlog.get_logger(__name__)

_PAYMENT_TYPES = {
    CustomerNotificationType.PAYMENT_RECEIVED,
    CustomerNotificationType.PAYMENT_FAILED,
}


class CustomerNotifier:
    """Sends order-status messages to customers."""

    def __init__(
        self,
        sender: Optional[MessageSender] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.sender = sender or BotApiSender(settings=self.settings)
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def send_order_status_notification(
        self,
        order_id: int,
        notification_type: str,
        reason: Optional[str] = None,
    ) -> SideEffectResult:
        """
        Tell the customer about an order status change.

        Args:
            order_id: Order the message is about
            notification_type: payment_received, processing, account_delivered,
                completed, payment_failed or cancelled
            reason: Optional reason shown for failures and cancellations

        Returns:
            SideEffectResult: Delivery outcome (failures stay queued for retry)

        Raises:
            ValueError: If the notification type is unknown
            NotFoundError: If the order or its customer does not exist
        """
        kind = CustomerNotificationType(notification_type)

        async with self.session_factory() as db:
            async with db.begin():
                context = await load_notification_context(db, order_id, reason)
                customer = await db.get(Customer, context.order.customer_id)
                if customer is None:
                    raise NotFoundError(f"Customer {context.order.customer_id} not found")
                message = format_customer_notification(kind.value, context)
                notification = Notification(
                    recipient_id=customer.telegram_user_id,
                    recipient_type=RecipientType.CUSTOMER.value,
                    type="payment" if kind in _PAYMENT_TYPES else "order_status",
                    notification_type=kind.value,
                    content=message.text,
                    reply_markup=message.reply_markup,
                    order_id=order_id,
                    status=NotificationStatus.PENDING.value,
                )
                db.add(notification)
                await db.flush()
                notification_id = notification.id
                chat_id = customer.telegram_user_id

        error: Optional[str] = None
        try:
            await asyncio.wait_for(
                self.sender.send_message(
                    chat_id,
                    message.text,
                    parse_mode=message.parse_mode,
                    reply_markup=message.reply_markup,
                ),
                timeout=self.settings.customer_delivery_timeout,
            )
        except asyncio.TimeoutError:
            error = f"delivery timed out after {self.settings.customer_delivery_timeout}s"
        except Exception as e:
            error = str(e) or type(e).__name__

        await self._record_outcome(notification_id, error)
        metrics.record_customer_notification(kind.value, "sent" if error is None else "failed")

        if error is not None:
            logger.warning(
                "customer_notification_failed",
                order_id=order_id,
                notification_id=notification_id,
                notification_type=kind.value,
                error=error,
            )
            return SideEffectResult.failure("customer_notification", error)

        logger.info(
            "customer_notification_sent",
            order_id=order_id,
            notification_id=notification_id,
            notification_type=kind.value,
        )
        return SideEffectResult.success("customer_notification")

    async def _record_outcome(self, notification_id: int, error: Optional[str]) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                notification = await db.get(Notification, notification_id)
                if notification is None:
                    return
                if error is None:
                    notification.status = NotificationStatus.SENT.value
                    notification.sent_at = utcnow()
                else:
                    notification.status = NotificationStatus.FAILED.value
                    notification.last_error = error
