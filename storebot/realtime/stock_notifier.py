"""
Stock update notifier.

Publishes StockUpdateEvents on a Redis pub/sub channel after stock
changes commit, and runs subscriptions that feed those events to
listeners such as the catalog synchronizer. Publishing is fire-and-forget
with a hard sub-second timeout; delivery is at most once and unordered.
"""
import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from storebot.config import Settings, get_settings
from storebot.core.side_effects import SideEffectResult
from storebot.monitoring.metrics import metrics
from storebot.realtime.events import StockUpdateEvent

logger = structlog.get_logger(__name__)

StockUpdateCallback = Callable[[StockUpdateEvent], Awaitable[Any] | Any]
ConnectionFactory = Callable[[], aioredis.Redis]

_RECONNECTABLE = (RedisError, OSError)


class SubscriptionLost(Exception):
    """An established subscription dropped; the retry budget starts over."""


class StockUpdateSubscription:
    """
    Background task delivering stock update events to one callback.

    The subscription owns its own Redis connection, separate from the
    publishing client. Lost connections are re-established with
    exponential backoff. `max_retries` bounds the consecutive failed
    connection attempts; a successful subscribe resets the count, and once
    the budget is used up the subscription gives up and reports inactive.
    """

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        channel: str,
        callback: StockUpdateCallback,
        max_retries: int = 5,
        retry_base_delay: float = 0.05,
        retry_max_delay: float = 2.0,
    ):
        self.channel = channel
        self._connection_factory = connection_factory
        self._callback = callback
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._task: asyncio.Task | None = None
        self._client: aioredis.Redis | None = None
        self._pubsub: Any = None
        self._gave_up = False
        self.subscribed = asyncio.Event()

    @property
    def active(self) -> bool:
        """Whether the subscriber task is still running."""
        return self._task is not None and not self._task.done() and not self._gave_up

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    def start(self) -> "StockUpdateSubscription":
        """Start the subscriber task. Calling start twice is a no-op."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"subscription:{self.channel}")
            logger.info("stock_subscription_started", channel=self.channel)
        return self

    async def stop(self) -> None:
        """Cancel the subscriber task and close its connection."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._close_connection()
        logger.info("stock_subscription_stopped", channel=self.channel)

    unsubscribe = stop

    async def join(self) -> None:
        """Wait until the subscriber task finishes on its own (gave up)."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def _log_reconnect(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "stock_subscription_reconnecting",
            channel=self.channel,
            attempt=retry_state.attempt_number,
            max_retries=self._max_retries,
            error=str(error),
        )

    async def _run(self) -> None:
        while True:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self._max_retries),
                wait=wait_exponential(multiplier=self._retry_base_delay, max=self._retry_max_delay),
                retry=retry_if_exception_type(_RECONNECTABLE),
                before_sleep=self._log_reconnect,
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        await self._listen()
            except SubscriptionLost as e:
                logger.warning("stock_subscription_lost", channel=self.channel, error=str(e))
                await asyncio.sleep(self._retry_base_delay)
            except _RECONNECTABLE as e:
                self._gave_up = True
                logger.error(
                    "stock_subscription_gave_up",
                    channel=self.channel,
                    attempts=self._max_retries,
                    error=str(e),
                )
                return

    async def _listen(self) -> None:
        self._client = self._connection_factory()
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            await self._pubsub.subscribe(self.channel)
            self.subscribed.set()
            try:
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self._dispatch(message.get("data"))
            except _RECONNECTABLE as e:
                raise SubscriptionLost(str(e)) from e
            raise SubscriptionLost(f"Subscription to {self.channel} closed by server")
        finally:
            self.subscribed.clear()
            await self._close_connection()

    async def _dispatch(self, data: Any) -> None:
        try:
            event = StockUpdateEvent.from_wire(data)
        except (ValidationError, TypeError) as e:
            metrics.record_stock_event_received("malformed")
            logger.warning("stock_update_malformed", channel=self.channel, error=str(e))
            return

        try:
            result = self._callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            metrics.record_stock_event_received("callback_error")
            logger.error(
                "stock_update_callback_failed",
                product_id=event.product_id,
                error=str(e),
                exc_info=True,
            )
            return

        metrics.record_stock_event_received("delivered")

    async def _close_connection(self) -> None:
        pubsub, client = self._pubsub, self._client
        self._pubsub, self._client = None, None
        if pubsub is not None:
            try:
                await pubsub.aclose()
            except Exception as e:
                logger.debug("stock_subscription_close_failed", error=str(e))
        if client is not None:
            try:
                await client.aclose()
            except Exception as e:
                logger.debug("stock_subscription_close_failed", error=str(e))


class StockUpdateNotifier:
    """Publishes and subscribes to stock update events."""

    def __init__(
        self,
        redis_client: aioredis.Redis | None = None,
        settings: Settings | None = None,
        connection_factory: ConnectionFactory | None = None,
    ):
        """
        Initialize notifier.

        Args:
            redis_client: Optional publishing client
            settings: Optional settings override
            connection_factory: Optional factory for dedicated subscriber connections
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self._connection_factory = connection_factory or self._new_connection

    def _new_connection(self) -> aioredis.Redis:
        return aioredis.from_url(
            self.settings.redis_url, encoding="utf-8", decode_responses=True
        )

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure the publishing client is initialized."""
        if self.redis_client is None:
            self.redis_client = self._new_connection()
        return self.redis_client

    async def notify_stock_update(
        self,
        product_id: int,
        previous_quantity: int,
        new_quantity: int,
        actor_id: int | None = None,
    ) -> SideEffectResult:
        """
        Publish a stock update event.

        Never raises: failures and timeouts are logged and reported in
        the returned result.

        Args:
            product_id: Product whose stock changed
            previous_quantity: Quantity before the change
            new_quantity: Quantity after the change
            actor_id: Admin who made the change (None for automatic)

        Returns:
            SideEffectResult: Publish outcome
        """
        event = StockUpdateEvent(
            product_id=product_id,
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            actor_id=actor_id,
        )
        timeout = self.settings.stock_publish_timeout

        try:
            client = self._ensure_redis()
            receivers = await asyncio.wait_for(
                client.publish(self.settings.stock_update_channel, event.to_wire()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            metrics.record_stock_publish("timeout")
            logger.warning("stock_update_publish_timeout", product_id=product_id, timeout=timeout)
            return SideEffectResult.failure(
                "stock_update_publish", f"timed out after {timeout}s", timed_out=True
            )
        except Exception as e:
            metrics.record_stock_publish("failed")
            logger.warning("stock_update_publish_failed", product_id=product_id, error=str(e))
            return SideEffectResult.failure("stock_update_publish", str(e) or type(e).__name__)

        metrics.record_stock_publish("published")
        logger.info(
            "stock_update_published",
            product_id=product_id,
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            receivers=receivers,
        )
        return SideEffectResult.success("stock_update_publish")

    def subscribe_to_updates(self, callback: StockUpdateCallback) -> StockUpdateSubscription:
        """
        Subscribe a callback to stock updates.

        The callback may be sync or async and is invoked at most once per
        delivered event. The returned subscription is already started;
        call its stop() to unsubscribe.
        """
        subscription = StockUpdateSubscription(
            connection_factory=self._connection_factory,
            channel=self.settings.stock_update_channel,
            callback=callback,
            max_retries=self.settings.subscriber_max_retries,
            retry_base_delay=self.settings.subscriber_retry_base_delay,
            retry_max_delay=self.settings.subscriber_retry_max_delay,
        )
        return subscription.start()

    async def close(self) -> None:
        """Close the publishing client."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
