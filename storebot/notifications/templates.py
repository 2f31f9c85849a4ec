"""
Notification message templates.

Customer and admin messages are written in Indonesian and rendered with
Telegram Markdown. Formatters are pure: the caller loads the order,
payment, product and customer into a NotificationContext first.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from storebot.core.records import OrderRecord, PaymentRecord


class AdminNotificationType(str, Enum):
    NEW_ORDER = "new_order"
    PAYMENT_PROOF = "payment_proof"
    QRIS_VERIFIED = "qris_verified"
    PAYMENT_FAILED = "payment_failed"


class CustomerNotificationType(str, Enum):
    PAYMENT_RECEIVED = "payment_received"
    PROCESSING = "processing"
    ACCOUNT_DELIVERED = "account_delivered"
    COMPLETED = "completed"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


class NotificationMessage(BaseModel):
    """Rendered message handed to the chat transport."""

    model_config = ConfigDict(frozen=True)

    text: str
    parse_mode: str = "Markdown"
    reply_markup: Optional[Dict[str, Any]] = None


class NotificationContext(BaseModel):
    """Everything a template may print about an order."""

    model_config = ConfigDict(frozen=True)

    order: OrderRecord
    payment: Optional[PaymentRecord] = None
    product_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_username: Optional[str] = None
    reason: Optional[str] = None
    reply_markup: Optional[Dict[str, Any]] = None


ORDER_STATUS_TEXT = {
    "pending_payment": "Menunggu Pembayaran",
    "payment_received": "Pembayaran Diterima",
    "processing": "Sedang Diproses",
    "account_delivered": "Akun Terkirim",
    "completed": "Selesai",
    "cancelled": "Dibatalkan",
}


def format_rupiah(amount: Decimal) -> str:
    """Format an amount the Indonesian way, e.g. Rp 50.000."""
    return "Rp " + f"{int(amount):,}".replace(",", ".")


def _customer_line(ctx: NotificationContext) -> str:
    line = ctx.customer_name or "Tidak diketahui"
    if ctx.customer_username:
        line += f" (@{ctx.customer_username})"
    return line


def _product_name(ctx: NotificationContext) -> str:
    return ctx.product_name or "Tidak ditemukan"


def _payment_status(ctx: NotificationContext) -> str:
    return ctx.payment.status if ctx.payment else ctx.order.payment_status


# Admin templates


def _admin_new_order(ctx: NotificationContext) -> NotificationMessage:
    order = ctx.order
    method = "QRIS" if order.payment_method == "qris" else "Transfer Bank Manual"
    text = (
        "🆕 *Pesanan Baru*\n\n"
        f"*ID Pesanan:* #{order.id}\n"
        f"*Pelanggan:* {_customer_line(ctx)}\n"
        f"*Produk:* {_product_name(ctx)}\n"
        f"*Jumlah:* {order.quantity}\n"
        f"*Total:* {format_rupiah(order.total_amount)}\n"
        f"*Metode Pembayaran:* {method}\n"
        f"*Status:* {ORDER_STATUS_TEXT.get(order.order_status, order.order_status)}\n\n"
        "Pesanan menunggu verifikasi pembayaran."
    )
    return NotificationMessage(text=text)


def _admin_payment_proof(ctx: NotificationContext) -> NotificationMessage:
    order = ctx.order
    payment_id = ctx.payment.id if ctx.payment else None
    text = (
        "💳 *Bukti Pembayaran Diterima*\n\n"
        f"*ID Pesanan:* #{order.id}\n"
        f"*Pelanggan:* {_customer_line(ctx)}\n"
        f"*Produk:* {_product_name(ctx)}\n"
        f"*Jumlah:* {format_rupiah(order.total_amount)}\n"
        "*Metode:* Transfer Bank Manual\n"
        f"*Status Pembayaran:* {_payment_status(ctx)}\n\n"
        "Silakan verifikasi bukti pembayaran."
    )
    reply_markup = ctx.reply_markup or {
        "inline_keyboard": [
            [
                {"text": "✅ Verifikasi", "callback_data": f"admin_payment_verify_{payment_id}"},
                {"text": "❌ Tolak", "callback_data": f"admin_payment_reject_{payment_id}"},
            ],
            [
                {"text": "📋 Lihat Detail Pesanan", "callback_data": f"admin_order_view_{order.id}"},
            ],
        ]
    }
    return NotificationMessage(text=text, reply_markup=reply_markup)


def _admin_qris_verified(ctx: NotificationContext) -> NotificationMessage:
    order = ctx.order
    verified_at = (ctx.payment.verified_at if ctx.payment else None) or datetime.now()
    text = (
        "✅ *Pembayaran QRIS Terverifikasi Otomatis*\n\n"
        f"*ID Pesanan:* #{order.id}\n"
        f"*Produk:* {_product_name(ctx)}\n"
        f"*Jumlah:* {format_rupiah(order.total_amount)}\n"
        "*Status:* Pembayaran berhasil diverifikasi secara otomatis\n"
        f"*Waktu:* {verified_at:%d/%m/%Y %H:%M}\n\n"
        "Pesanan siap diproses."
    )
    return NotificationMessage(text=text)


def _admin_payment_failed(ctx: NotificationContext) -> NotificationMessage:
    order = ctx.order
    text = (
        "⚠️ *Pembayaran Gagal atau Memerlukan Perhatian*\n\n"
        f"*ID Pesanan:* #{order.id}\n"
        f"*Produk:* {_product_name(ctx)}\n"
        f"*Jumlah:* {format_rupiah(order.total_amount)}\n"
        f"*Alasan:* {ctx.reason or 'Tidak diketahui'}\n"
        f"*Status Pembayaran:* {_payment_status(ctx)}\n\n"
        "Tindakan diperlukan untuk menangani pembayaran ini."
    )
    return NotificationMessage(text=text)


_ADMIN_FORMATTERS: Dict[AdminNotificationType, Callable[[NotificationContext], NotificationMessage]] = {
    AdminNotificationType.NEW_ORDER: _admin_new_order,
    AdminNotificationType.PAYMENT_PROOF: _admin_payment_proof,
    AdminNotificationType.QRIS_VERIFIED: _admin_qris_verified,
    AdminNotificationType.PAYMENT_FAILED: _admin_payment_failed,
}


def format_admin_notification(
    notification_type: str, ctx: NotificationContext
) -> NotificationMessage:
    """
    Render an admin notification.

    Raises:
        ValueError: If the notification type is unknown
    """
    try:
        kind = AdminNotificationType(notification_type)
    except ValueError:
        raise ValueError(f"Unknown admin notification type: {notification_type}") from None
    return _ADMIN_FORMATTERS[kind](ctx)


# Customer templates


def _customer_payment_received(ctx: NotificationContext) -> NotificationMessage:
    order = ctx.order
    text = (
        "✅ *Pembayaran Diterima*\n\n"
        f"Pesanan #{order.id}\n"
        "Status: *Pembayaran Diterima - Sedang Diproses*\n\n"
        "🔄 *Progress:* ████░░░░░░ 40%\n\n"
        "Pembayaran Anda telah diverifikasi dan pesanan sedang diproses. "
        "Kami akan mengirimkan akun premium Anda segera.\n\n"
        "📦 *Detail Pesanan:*\n"
        f"• Produk: {ctx.product_name or 'N/A'}\n"
        f"• Jumlah: {order.quantity}\n"
        f"• Total: {format_rupiah(order.total_amount)}"
    )
    return NotificationMessage(text=text)


def _customer_processing(ctx: NotificationContext) -> NotificationMessage:
    text = (
        "⚙️ *Mempersiapkan Akun Anda*\n\n"
        f"Pesanan #{ctx.order.id}\n"
        "Status: *Sedang Diproses*\n\n"
        "🔄 *Progress:* ████████░░ 80%\n\n"
        "Tim kami sedang mempersiapkan akun premium Anda. "
        "Proses ini biasanya memakan waktu beberapa menit."
    )
    return NotificationMessage(text=text)


def _customer_account_delivered(ctx: NotificationContext) -> NotificationMessage:
    text = (
        "🎉 *Akun Premium Anda Telah Dikirim!*\n\n"
        f"Pesanan #{ctx.order.id}\n"
        "Status: *Akun Dikirim*\n\n"
        "✅ *Progress:* ██████████ 100%\n\n"
        "Akun premium Anda telah siap dan dikirim melalui pesan terpisah.\n\n"
        "⚠️ *Penting:* Simpan informasi akun Anda dengan aman."
    )
    return NotificationMessage(text=text)


def _customer_completed(ctx: NotificationContext) -> NotificationMessage:
    text = (
        "✨ *Pesanan Selesai*\n\n"
        f"Pesanan #{ctx.order.id} telah selesai!\n\n"
        "Terima kasih telah berbelanja di toko kami. "
        "Jika ada pertanyaan atau butuh bantuan, silakan hubungi admin."
    )
    return NotificationMessage(text=text)


def _customer_payment_failed(ctx: NotificationContext) -> NotificationMessage:
    text = (
        "❌ *Verifikasi Pembayaran Gagal*\n\n"
        f"Pesanan #{ctx.order.id}\n\n"
        "Maaf, verifikasi pembayaran Anda gagal.\n\n"
        f"*Alasan:* {ctx.reason or 'Tidak diketahui'}\n\n"
        "*Langkah Selanjutnya:*\n"
        "1. Pastikan bukti pembayaran yang Anda kirim jelas dan valid\n"
        "2. Hubungi admin untuk bantuan lebih lanjut\n"
        "3. Atau coba lagi dengan metode pembayaran lain"
    )
    return NotificationMessage(text=text)


def _customer_cancelled(ctx: NotificationContext) -> NotificationMessage:
    text = (
        "🚫 *Pesanan Dibatalkan*\n\n"
        f"Pesanan #{ctx.order.id} telah dibatalkan.\n\n"
        + (f"*Alasan:* {ctx.reason}\n\n" if ctx.reason else "")
        + "Jika Anda merasa ini keliru, silakan hubungi admin."
    )
    return NotificationMessage(text=text)


_CUSTOMER_FORMATTERS: Dict[
    CustomerNotificationType, Callable[[NotificationContext], NotificationMessage]
] = {
    CustomerNotificationType.PAYMENT_RECEIVED: _customer_payment_received,
    CustomerNotificationType.PROCESSING: _customer_processing,
    CustomerNotificationType.ACCOUNT_DELIVERED: _customer_account_delivered,
    CustomerNotificationType.COMPLETED: _customer_completed,
    CustomerNotificationType.PAYMENT_FAILED: _customer_payment_failed,
    CustomerNotificationType.CANCELLED: _customer_cancelled,
}


def format_customer_notification(
    notification_type: str, ctx: NotificationContext
) -> NotificationMessage:
    """
    Render an order-status message for the customer.

    Raises:
        ValueError: If the notification type is unknown
    """
    try:
        kind = CustomerNotificationType(notification_type)
    except ValueError:
        raise ValueError(f"Unknown customer notification type: {notification_type}") from None
    return _CUSTOMER_FORMATTERS[kind](ctx)
