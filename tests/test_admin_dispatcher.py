"""
Tests for admin notification fan-out and read tracking.
"""
import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import select

from storebot.core.errors import NotFoundError
from storebot.database import Admin, Notification
from storebot.notifications.admin_dispatcher import should_notify_admin


@pytest_asyncio.fixture
async def order_id(payment_service, seed) -> int:
    product_id = await seed.product(quantity=5)
    customer = await seed.customer()
    checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")
    return checkout.order.id


class TestPreferences:
    """Test suite for opt-out handling."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "preferences,expected",
        [
            (None, True),
            ({}, True),
            ({"disabled_types": ["new_order"]}, False),
            ({"disabled_types": ["payment_failed"]}, True),
            ({"all_disabled": True}, False),
            ({"all_disabled": False}, True),
        ],
    )
    def test_should_notify_admin(self, preferences, expected) -> None:
        admin = Admin(telegram_user_id=1, name="A", notification_preferences=preferences)

        assert should_notify_admin(admin, "new_order") is expected


class TestSendToAllAdmins:
    """Test suite for dispatching."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_opted_out_admins_are_skipped(
        self, admin_dispatcher, seed, fake_sender, order_id
    ) -> None:
        keen = await seed.admin(name="Keen")
        muted = await seed.admin(name="Muted", preferences={"disabled_types": ["new_order"]})
        silent = await seed.admin(name="Silent", preferences={"all_disabled": True})

        results = await admin_dispatcher.notify_order_event("new_order", order_id)

        assert [result.admin_id for result in results] == [keen.id]
        assert all(result.success for result in results)
        assert fake_sender.sent_to(muted.telegram_user_id) == []
        assert fake_sender.sent_to(silent.telegram_user_id) == []
        assert len(fake_sender.sent_to(keen.telegram_user_id)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failing_admin_does_not_affect_others(
        self, admin_dispatcher, session_factory, seed, fake_sender, order_id
    ) -> None:
        healthy = await seed.admin(name="Healthy")
        broken = await seed.admin(name="Broken")
        fake_sender.fail_for.add(broken.telegram_user_id)

        results = await admin_dispatcher.notify_order_event(
            "payment_failed", order_id, reason="expired"
        )

        by_admin = {result.admin_id: result for result in results}
        assert by_admin[healthy.id].success
        assert by_admin[healthy.id].message_id is not None
        assert not by_admin[broken.id].success
        assert "unreachable" in by_admin[broken.id].error

        async with session_factory() as db:
            rows = (await db.execute(select(Notification))).scalars().all()
        failed = [row for row in rows if row.recipient_id == broken.telegram_user_id]
        assert len(failed) == 1
        assert failed[0].status == "failed"
        assert failed[0].type == "admin_alert"
        assert failed[0].notification_type == "payment_failed"
        assert failed[0].order_id == order_id
        assert "expired" in failed[0].content

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_slow_admin_times_out_without_blocking_others(
        self, admin_dispatcher, seed, fake_sender, order_id
    ) -> None:
        fast = await seed.admin(name="Fast")
        slow = await seed.admin(name="Slow")
        fake_sender.delay_for[slow.telegram_user_id] = 2.0
        loop = asyncio.get_running_loop()
        started = loop.time()

        results = await admin_dispatcher.notify_order_event("new_order", order_id)

        assert loop.time() - started < 1.5
        by_admin = {result.admin_id: result for result in results}
        assert by_admin[fast.id].success
        assert by_admin[slow.id].error == "Admin notification delivery timeout"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, admin_dispatcher, seed, order_id) -> None:
        await seed.admin()

        with pytest.raises(ValueError):
            await admin_dispatcher.notify_order_event("refund_issued", order_id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order_rejected(self, admin_dispatcher) -> None:
        with pytest.raises(NotFoundError):
            await admin_dispatcher.notify_order_event("new_order", 9999)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_no_admins_means_no_results(self, admin_dispatcher, order_id) -> None:
        assert await admin_dispatcher.notify_order_event("new_order", order_id) == []


class TestReadTracking:
    """Test suite for read status."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mark_read(self, admin_dispatcher, seed, order_id) -> None:
        admin = await seed.admin()
        [result] = await admin_dispatcher.notify_order_event("new_order", order_id)

        status = await admin_dispatcher.get_notification_read_status(
            result.message_id, admin.telegram_user_id
        )
        assert status is not None
        assert status.read is False
        assert status.notification_type == "new_order"

        marked = await admin_dispatcher.mark_notification_as_read(
            result.message_id, admin.telegram_user_id
        )
        status = await admin_dispatcher.get_notification_read_status(
            result.message_id, admin.telegram_user_id
        )

        assert marked is True
        assert status.read is True
        assert status.read_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_admins_message_is_unknown(self, admin_dispatcher, seed, order_id) -> None:
        admin = await seed.admin()
        [result] = await admin_dispatcher.notify_order_event("new_order", order_id)

        assert await admin_dispatcher.mark_notification_as_read(result.message_id, 1) is False
        assert await admin_dispatcher.get_notification_read_status(
            result.message_id, admin.telegram_user_id + 1
        ) is None
