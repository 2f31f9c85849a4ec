"""Loading order details for notification templates."""
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storebot.core.errors import NotFoundError
from storebot.core.records import OrderRecord, PaymentRecord
from storebot.database import Customer, Order, Payment, Product
from storebot.notifications.templates import NotificationContext


async def load_notification_context(
    db: AsyncSession,
    order_id: int,
    reason: Optional[str] = None,
    reply_markup: Optional[Dict[str, Any]] = None,
) -> NotificationContext:
    """
    Build a NotificationContext from the current database state.

    Raises:
        NotFoundError: If the order does not exist
    """
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")

    payment = (
        await db.execute(select(Payment).where(Payment.order_id == order_id))
    ).scalar_one_or_none()
    product = await db.get(Product, order.product_id)
    customer = await db.get(Customer, order.customer_id)

    return NotificationContext(
        order=OrderRecord.model_validate(order),
        payment=PaymentRecord.model_validate(payment) if payment else None,
        product_name=product.name if product else None,
        customer_name=customer.name if customer else None,
        customer_username=customer.username if customer else None,
        reason=reason,
        reply_markup=reply_markup,
    )
