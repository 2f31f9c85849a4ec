"""
Admin notification dispatcher.

Fans business events (new orders, payment proofs, verified QRIS payments,
failed payments) out to every admin who has not opted out. Deliveries run
concurrently, each bounded by its own timeout, so one slow or broken chat
never holds up the others.
"""
import asyncio
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.config import Settings, get_settings
from storebot.database import (
    Admin,
    Notification,
    NotificationStatus,
    RecipientType,
    get_session_factory,
    utcnow,
)
from storebot.monitoring.metrics import metrics
from storebot.notifications.context import load_notification_context
from storebot.notifications.read_status import (
    InMemoryReadStatusStore,
    ReadStatus,
    ReadStatusStore,
)
from storebot.notifications.templates import (
    NotificationContext,
    NotificationMessage,
    format_admin_notification,
)
from storebot.notifications.transport import BotApiSender, MessageSender

logger = structlog.get_logger(__name__)


class AdminDeliveryResult(BaseModel):
    """Outcome of delivering one notification to one admin."""

    admin_id: int
    success: bool
    error: Optional[str] = None
    message_id: Optional[int] = None


def should_notify_admin(admin: Admin, notification_type: str) -> bool:
    """
    Check an admin's notification preferences.

    Admins without preferences receive everything.
    """
    preferences: Dict[str, Any] = admin.notification_preferences or {}
    if not preferences:
        return True
    if notification_type in (preferences.get("disabled_types") or []):
        return False
    if preferences.get("all_disabled") is True:
        return False
    return True


class AdminNotificationDispatcher:
    """Sends admin notifications and tracks whether they were read."""

    def __init__(
        self,
        sender: Optional[MessageSender] = None,
        read_status_store: Optional[ReadStatusStore] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            sender: Chat transport (Bot API sender by default)
            read_status_store: Where read status is kept (in-memory by default)
            session_factory: Optional session factory
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.sender = sender or BotApiSender(settings=self.settings)
        self.read_status_store = read_status_store or InMemoryReadStatusStore(
            ttl_seconds=self.settings.notification_read_status_ttl
        )
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def send_to_all_admins(
        self, notification_type: str, context: NotificationContext
    ) -> List[AdminDeliveryResult]:
        """
        Send a notification to every admin who accepts this type.

        Args:
            notification_type: new_order, payment_proof, qris_verified or payment_failed
            context: Order details for the template

        Returns:
            List[AdminDeliveryResult]: One entry per admin notified (opted-out
                admins are skipped)

        Raises:
            ValueError: If the notification type is unknown
        """
        message = format_admin_notification(notification_type, context)

        async with self.session_factory() as db:
            admins = list((await db.execute(select(Admin).order_by(Admin.id))).scalars())

        recipients = []
        for admin in admins:
            if should_notify_admin(admin, notification_type):
                recipients.append(admin)
            else:
                metrics.record_admin_notification(notification_type, "skipped")
                logger.debug(
                    "admin_notification_skipped",
                    admin_id=admin.id,
                    notification_type=notification_type,
                )

        results = await asyncio.gather(
            *(self._deliver(admin, notification_type, message) for admin in recipients)
        )

        failed = [
            (admin, result) for admin, result in zip(recipients, results) if not result.success
        ]
        if failed:
            await self._persist_failures(notification_type, message, context, failed)

        logger.info(
            "admin_notifications_dispatched",
            notification_type=notification_type,
            order_id=context.order.id,
            recipients=len(recipients),
            failed=len(failed),
        )
        return list(results)

    async def notify_order_event(
        self,
        notification_type: str,
        order_id: int,
        reason: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> List[AdminDeliveryResult]:
        """Load an order's details and send them to all admins."""
        async with self.session_factory() as db:
            context = await load_notification_context(db, order_id, reason, reply_markup)
        return await self.send_to_all_admins(notification_type, context)

    async def _deliver(
        self, admin: Admin, notification_type: str, message: NotificationMessage
    ) -> AdminDeliveryResult:
        try:
            sent = await asyncio.wait_for(
                self.sender.send_message(
                    admin.telegram_user_id,
                    message.text,
                    parse_mode=message.parse_mode,
                    reply_markup=message.reply_markup,
                ),
                timeout=self.settings.admin_delivery_timeout,
            )
        except asyncio.TimeoutError:
            error = "Admin notification delivery timeout"
        except Exception as e:
            error = str(e) or type(e).__name__
        else:
            metrics.record_admin_notification(notification_type, "sent")
            await self._track_sent(admin, notification_type, sent.message_id)
            logger.info(
                "admin_notification_sent",
                admin_id=admin.id,
                notification_type=notification_type,
                message_id=sent.message_id,
            )
            return AdminDeliveryResult(admin_id=admin.id, success=True, message_id=sent.message_id)

        metrics.record_admin_notification(notification_type, "failed")
        logger.warning(
            "admin_notification_failed",
            admin_id=admin.id,
            notification_type=notification_type,
            error=error,
        )
        return AdminDeliveryResult(admin_id=admin.id, success=False, error=error)

    async def _track_sent(self, admin: Admin, notification_type: str, message_id: int) -> None:
        status = ReadStatus(
            admin_id=admin.id,
            admin_telegram_id=admin.telegram_user_id,
            notification_type=notification_type,
            sent_at=utcnow(),
        )
        try:
            await self.read_status_store.record_sent(message_id, status)
        except Exception as e:
            logger.warning("read_status_record_failed", message_id=message_id, error=str(e))

    async def _persist_failures(
        self,
        notification_type: str,
        message: NotificationMessage,
        context: NotificationContext,
        failed: List[tuple[Admin, AdminDeliveryResult]],
    ) -> None:
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    for admin, result in failed:
                        db.add(
                            Notification(
                                recipient_id=admin.telegram_user_id,
                                recipient_type=RecipientType.ADMIN.value,
                                type="admin_alert",
                                notification_type=notification_type,
                                content=message.text,
                                reply_markup=message.reply_markup,
                                order_id=context.order.id,
                                status=NotificationStatus.FAILED.value,
                                last_error=result.error,
                            )
                        )
        except Exception as e:
            logger.error(
                "admin_notification_persist_failed",
                notification_type=notification_type,
                count=len(failed),
                error=str(e),
            )

    async def mark_notification_as_read(self, message_id: int, admin_telegram_id: int) -> bool:
        """
        Mark a notification read when the admin interacts with it.

        Returns:
            bool: False if the notification is unknown or expired
        """
        marked = await self.read_status_store.mark_read(message_id, admin_telegram_id)
        if marked:
            logger.info(
                "admin_notification_read",
                message_id=message_id,
                admin_telegram_id=admin_telegram_id,
            )
        return marked

    async def get_notification_read_status(
        self, message_id: int, admin_telegram_id: int
    ) -> Optional[ReadStatus]:
        return await self.read_status_store.get(message_id, admin_telegram_id)
