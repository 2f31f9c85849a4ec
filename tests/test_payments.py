"""
Tests for checkout, payment verification and failure handling.
"""
import asyncio
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from storebot.core import stock_ledger
from storebot.core.errors import ConflictError, InsufficientStockError, NotFoundError
from storebot.database import Order


async def stock_of(session_factory, product_id):
    async with session_factory() as db:
        return await stock_ledger.get_stock_info(product_id, db)


async def order_of(session_factory, order_id):
    async with session_factory() as db:
        return await db.get(Order, order_id)


class TestCheckout:
    """Test suite for order creation with a pending payment."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_reserves_stock_and_creates_pending_payment(
        self, payment_service, session_factory, seed
    ) -> None:
        product_id = await seed.product(quantity=3, price="50000")
        customer = await seed.customer()

        result = await payment_service.checkout(customer.id, product_id, 2, "qris")

        assert result.order.total_amount == Decimal("100000")
        assert result.order.order_status == "pending_payment"
        assert result.order.payment_status == "pending"
        assert result.payment.status == "pending"
        assert result.payment.amount == Decimal("100000")
        info = await stock_of(session_factory, product_id)
        assert info.current_quantity == 3
        assert info.reserved_quantity == 2
        assert info.available_quantity == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_notifies_admins(self, payment_service, seed, fake_sender) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer(name="Siti", username="siti")
        admin = await seed.admin()

        result = await payment_service.checkout(customer.id, product_id, 1, "manual_bank_transfer")

        messages = fake_sender.sent_to(admin.telegram_user_id)
        assert len(messages) == 1
        assert "Pesanan Baru" in messages[0]["text"]
        assert f"#{result.order.id}" in messages[0]["text"]
        assert "@siti" in messages[0]["text"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_beyond_available_stock(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=1)
        customer = await seed.customer()

        with pytest.raises(InsufficientStockError):
            await payment_service.checkout(customer.id, product_id, 2, "qris")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_unknown_method_rejected(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=1)
        customer = await seed.customer()

        with pytest.raises(ConflictError):
            await payment_service.checkout(customer.id, product_id, 1, "paypal")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_out_of_stock_product_rejected(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=0)
        customer = await seed.customer()

        with pytest.raises(ConflictError):
            await payment_service.checkout(customer.id, product_id, 1, "qris")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_payment_rules(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=2)
        customer = await seed.customer()
        result = await payment_service.checkout(customer.id, product_id, 1, "qris")

        with pytest.raises(ConflictError):
            await payment_service.create_payment(result.order.id, "qris", Decimal("50000"))
        with pytest.raises(ConflictError):
            await payment_service.create_payment(result.order.id, "qris", Decimal("0"))
        with pytest.raises(NotFoundError):
            await payment_service.create_payment(9999, "qris", Decimal("1000"))


class TestAutomaticVerification:
    """Test suite for QRIS verification."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_deducts_and_advances_order(
        self, payment_service, session_factory, seed, mock_redis, fake_sender
    ) -> None:
        product_id = await seed.product(quantity=3, price="50000", product_id=42)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")
        assert checkout.order.total_amount == Decimal("50000")

        payment = await payment_service.verify_automatic(checkout.order.id, "TXN-1")

        assert payment.status == "verified"
        assert payment.verification_method == "automatic"
        assert payment.gateway_transaction_id == "TXN-1"
        assert payment.verified_at is not None
        assert (await stock_of(session_factory, 42)).current_quantity == 2

        order = await order_of(session_factory, checkout.order.id)
        assert order.payment_status == "verified"
        assert order.order_status == "payment_received"
        assert order.payment_verified_at is not None

        channel, payload = mock_redis.publish.await_args.args
        assert channel == "stock:updated"
        assert '"productId":42' in payload
        assert '"previousQuantity":3' in payload
        assert '"newQuantity":2' in payload

        customer_messages = fake_sender.sent_to(customer.telegram_user_id)
        assert any("Pembayaran Diterima" in m["text"] for m in customer_messages)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeat_verification_is_a_no_op(
        self, payment_service, session_factory, seed, mock_redis
    ) -> None:
        product_id = await seed.product(quantity=3, product_id=42)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")

        first = await payment_service.verify_automatic(checkout.order.id, "TXN-1")
        second = await payment_service.verify_automatic(checkout.order.id, "TXN-1")

        assert second.id == first.id
        assert second.verified_at == first.verified_at
        assert (await stock_of(session_factory, 42)).current_quantity == 2
        assert mock_redis.publish.await_count == 1

        async with session_factory() as db:
            history = await stock_ledger.get_history(product_id, db)
        deductions = [entry for entry in history if entry.reason == "payment_verified"]
        assert len(deductions) == 1
        assert deductions[0].actor_id is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_qris_verified_alerts_admins(self, payment_service, seed, fake_sender) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        admin = await seed.admin()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")

        await payment_service.verify_automatic(checkout.order.id, "TXN-7")

        texts = [m["text"] for m in fake_sender.sent_to(admin.telegram_user_id)]
        assert any("QRIS Terverifikasi" in text for text in texts)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_manual_payment_cannot_be_auto_verified(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(
            customer.id, product_id, 1, "manual_bank_transfer"
        )

        with pytest.raises(ConflictError):
            await payment_service.verify_automatic(checkout.order.id, "TXN-1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order_raises_not_found(self, payment_service) -> None:
        with pytest.raises(NotFoundError):
            await payment_service.verify_automatic(404, "TXN-1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_stock_leaves_payment_pending(
        self, payment_service, session_factory, seed
    ) -> None:
        product_id = await seed.product(quantity=2)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 2, "qris")
        await stock_ledger.update_quantity(
            product_id, 1, actor_id=5, session_factory=session_factory
        )

        with pytest.raises(InsufficientStockError):
            await payment_service.verify_automatic(checkout.order.id, "TXN-1")

        payment = await payment_service.get_payment(checkout.payment.id)
        assert payment.status == "pending"
        order = await order_of(session_factory, checkout.order.id)
        assert order.order_status == "pending_payment"
        assert (await stock_of(session_factory, product_id)).current_quantity == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_verification(
        self, payment_service, session_factory, seed, mock_redis
    ) -> None:
        mock_redis.publish.side_effect = RedisConnectionError("redis down")
        mock_redis.delete.side_effect = RedisConnectionError("redis down")
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")

        payment = await payment_service.verify_automatic(checkout.order.id, "TXN-1")

        assert payment.status == "verified"
        assert (await stock_of(session_factory, product_id)).current_quantity == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_publish_timeout_does_not_block_verification(
        self, payment_service, session_factory, seed, mock_redis
    ) -> None:
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        mock_redis.publish.side_effect = hang
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")

        payment = await asyncio.wait_for(
            payment_service.verify_automatic(checkout.order.id, "TXN-1"), timeout=3
        )

        assert payment.status == "verified"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lookup_by_transaction_id(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")
        await payment_service.verify_automatic(checkout.order.id, "TXN-LOOKUP")

        found = await payment_service.get_payment_by_transaction_id("TXN-LOOKUP")
        by_order = await payment_service.get_payment_by_order(checkout.order.id)

        assert found is not None
        assert found.id == checkout.payment.id == by_order.id
        assert await payment_service.get_payment_by_transaction_id("TXN-NONE") is None
        with pytest.raises(NotFoundError):
            await payment_service.get_payment(9999)


class TestManualVerification:
    """Test suite for admin-confirmed bank transfers."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_verifies_bank_transfer(
        self, payment_service, session_factory, seed, fake_sender
    ) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(
            customer.id, product_id, 1, "manual_bank_transfer"
        )

        payment = await payment_service.verify_manual(checkout.payment.id, admin_id=77)

        assert payment.status == "verified"
        assert payment.verification_method == "manual"
        assert payment.admin_id == 77
        async with session_factory() as db:
            history = await stock_ledger.get_history(product_id, db)
        assert history[0].reason == "payment_verified"
        assert history[0].actor_id == 77
        assert any(
            "Pembayaran Diterima" in m["text"]
            for m in fake_sender.sent_to(customer.telegram_user_id)
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_qris_payment_cannot_be_manually_verified(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")

        with pytest.raises(ConflictError):
            await payment_service.verify_manual(checkout.payment.id, admin_id=1)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verified_payment_returned_regardless_of_method(
        self, payment_service, seed
    ) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")
        await payment_service.verify_automatic(checkout.order.id, "TXN-1")

        payment = await payment_service.verify_manual(checkout.payment.id, admin_id=1)

        assert payment.status == "verified"
        assert payment.verification_method == "automatic"


class TestMarkFailed:
    """Test suite for failing payments."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fail_pending_payment(
        self, payment_service, session_factory, seed, fake_sender
    ) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        admin = await seed.admin()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")

        payment = await payment_service.mark_failed(checkout.payment.id, "expired")

        assert payment.status == "failed"
        assert payment.failure_reason == "expired"
        order = await order_of(session_factory, checkout.order.id)
        assert order.payment_status == "failed"
        assert order.order_status == "pending_payment"
        info = await stock_of(session_factory, product_id)
        assert info.current_quantity == 3
        assert info.reserved_quantity == 1
        assert any(
            "Verifikasi Pembayaran Gagal" in m["text"]
            for m in fake_sender.sent_to(customer.telegram_user_id)
        )
        assert any("expired" in m["text"] for m in fake_sender.sent_to(admin.telegram_user_id))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fail_twice_is_a_no_op(self, payment_service, seed, fake_sender) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")

        await payment_service.mark_failed(checkout.payment.id, "expired")
        sent_before = len(fake_sender.sent)
        again = await payment_service.mark_failed(checkout.payment.id, "other reason")

        assert again.status == "failed"
        assert again.failure_reason == "expired"
        assert len(fake_sender.sent) == sent_before

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_payment_cannot_be_verified(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")
        await payment_service.mark_failed(checkout.payment.id, "expired")

        with pytest.raises(ConflictError):
            await payment_service.verify_automatic(checkout.order.id, "TXN-LATE")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verified_payment_cannot_fail(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")
        await payment_service.verify_automatic(checkout.order.id, "TXN-1")

        with pytest.raises(ConflictError):
            await payment_service.mark_failed(checkout.payment.id, "chargeback")


class TestPaymentProof:
    """Test suite for bank transfer proofs."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_attach_proof_alerts_admins_with_actions(
        self, payment_service, seed, fake_sender
    ) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        admin = await seed.admin()
        checkout = await payment_service.checkout(
            customer.id, product_id, 1, "manual_bank_transfer"
        )

        payment = await payment_service.attach_proof(checkout.payment.id, "file-abc")

        assert payment.payment_proof == "file-abc"
        proof_messages = [
            m for m in fake_sender.sent_to(admin.telegram_user_id)
            if "Bukti Pembayaran" in m["text"]
        ]
        assert len(proof_messages) == 1
        buttons = [
            button["callback_data"]
            for row in proof_messages[0]["reply_markup"]["inline_keyboard"]
            for button in row
        ]
        assert f"admin_payment_verify_{payment.id}" in buttons
        assert f"admin_payment_reject_{payment.id}" in buttons

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_attach_proof_to_qris_rejected(self, payment_service, seed) -> None:
        product_id = await seed.product(quantity=3)
        customer = await seed.customer()
        checkout = await payment_service.checkout(customer.id, product_id, 1, "qris")

        with pytest.raises(ConflictError):
            await payment_service.attach_proof(checkout.payment.id, "file-abc")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_attach_proof_for_customer_picks_pending_transfer(
        self, payment_service, seed
    ) -> None:
        product_id = await seed.product(quantity=5)
        customer = await seed.customer()
        await payment_service.checkout(customer.id, product_id, 1, "qris")
        transfer = await payment_service.checkout(
            customer.id, product_id, 1, "manual_bank_transfer"
        )

        payment = await payment_service.attach_proof_for_customer(
            customer.telegram_user_id, "file-xyz"
        )

        assert payment.id == transfer.payment.id
        assert payment.payment_proof == "file-xyz"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_attach_proof_for_unknown_customer(self, payment_service) -> None:
        with pytest.raises(NotFoundError):
            await payment_service.attach_proof_for_customer(123, "file-xyz")
