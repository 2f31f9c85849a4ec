"""
Query API routes for stock, payments and orders.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storebot.core import stock_ledger
from storebot.core.errors import NotFoundError
from storebot.database import Order, Payment, get_db
from storebot.monitoring.health import HealthCheck

from .schemas import (
    HealthCheckResponse,
    OrderResponse,
    PaymentResponse,
    StockHistoryResponse,
    StockResponse,
)

logger = structlog.get_logger(__name__)

stock_router = APIRouter(prefix="/stock", tags=["stock"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_health_check() -> HealthCheck:
    return HealthCheck()


@stock_router.get(
    "/{product_id}",
    response_model=StockResponse,
    summary="Get stock",
    description="Current, reserved and available stock for a product",
)
async def get_stock(product_id: int, db: AsyncSession = Depends(get_db)) -> Any:
    return await stock_ledger.get_stock_info(product_id, db)


@stock_router.get(
    "/{product_id}/history",
    response_model=StockHistoryResponse,
    summary="Get stock history",
    description="Newest-first stock change history for a product",
)
async def get_stock_history(
    product_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    # 404 for unknown products rather than an empty list
    await stock_ledger.get_stock_info(product_id, db)
    entries = await stock_ledger.get_history(product_id, db, limit)
    return {"product_id": product_id, "entries": entries}


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    summary="Get payment",
)
async def get_payment(payment_id: int, db: AsyncSession = Depends(get_db)) -> Any:
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(order_id: int, db: AsyncSession = Depends(get_db)) -> Any:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


@order_router.get(
    "/{order_id}/payment",
    response_model=PaymentResponse,
    summary="Get the payment of an order",
)
async def get_order_payment(order_id: int, db: AsyncSession = Depends(get_db)) -> Any:
    result = await db.execute(select(Payment).where(Payment.order_id == order_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError(f"No payment for order {order_id}")
    return payment


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe: 503 unless every dependency is healthy."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
