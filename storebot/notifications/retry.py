"""Periodic resend of failed notifications."""
import asyncio
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.config import Settings, get_settings
from storebot.database import (
    Notification,
    NotificationStatus,
    RecipientType,
    get_session_factory,
    utcnow,
)
from storebot.monitoring.metrics import metrics
from storebot.notifications.transport import BotApiSender, MessageSender

logger = structlog.get_logger(__name__)


class NotificationRetrier:
    """Resends failed notifications until they succeed or run out of retries."""

    def __init__(
        self,
        sender: Optional[MessageSender] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        batch_size: int = 100,
    ):
        self.settings = settings or get_settings()
        self.sender = sender or BotApiSender(settings=self.settings)
        self._session_factory = session_factory
        self.batch_size = batch_size

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def _timeout_for(self, notification: Notification) -> float:
        if notification.recipient_type == RecipientType.ADMIN.value:
            return self.settings.admin_delivery_timeout
        return self.settings.customer_delivery_timeout

    async def _fetch_failed(self, max_retries: int) -> List[Notification]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Notification)
                .where(
                    Notification.status == NotificationStatus.FAILED.value,
                    Notification.retry_count < max_retries,
                )
                .order_by(Notification.created_at, Notification.id)
                .limit(self.batch_size)
            )
            return list(result.scalars())

    async def retry_failed_notifications(self, max_retries: Optional[int] = None) -> int:
        """
        Resend failed notifications whose retry count is below max_retries.

        Args:
            max_retries: Retry ceiling (defaults to notification_max_retries)

        Returns:
            int: Number of notifications delivered this sweep
        """
        if max_retries is None:
            max_retries = self.settings.notification_max_retries

        delivered = 0
        for notification in await self._fetch_failed(max_retries):
            error: Optional[str] = None
            try:
                await asyncio.wait_for(
                    self.sender.send_message(
                        notification.recipient_id,
                        notification.content,
                        parse_mode="Markdown",
                        reply_markup=notification.reply_markup,
                    ),
                    timeout=self._timeout_for(notification),
                )
            except asyncio.TimeoutError:
                error = "delivery timed out"
            except Exception as e:
                error = str(e) or type(e).__name__

            await self._record_attempt(notification.id, error)
            if error is None:
                delivered += 1
                metrics.record_notification_retry("sent")
            else:
                metrics.record_notification_retry("failed")
                logger.warning(
                    "notification_retry_failed",
                    notification_id=notification.id,
                    retry_count=notification.retry_count + 1,
                    error=error,
                )

        if delivered:
            logger.info("notification_retry_completed", delivered=delivered)
        return delivered

    async def _record_attempt(self, notification_id: int, error: Optional[str]) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                notification = await db.get(Notification, notification_id)
                if notification is None:
                    return
                if error is None:
                    notification.status = NotificationStatus.SENT.value
                    notification.sent_at = utcnow()
                    notification.last_error = None
                else:
                    notification.retry_count += 1
                    notification.last_error = error


async def retry_failed_notifications(max_retries: int = 3) -> int:
    """Run one sweep with the default sender and session factory."""
    return await NotificationRetrier().retry_failed_notifications(max_retries)
