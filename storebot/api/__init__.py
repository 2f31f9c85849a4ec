"""FastAPI query application and routes."""
from .main import app
from .schemas import OrderResponse, PaymentResponse, StockHistoryResponse, StockResponse

__all__ = [
    "app",
    "OrderResponse",
    "PaymentResponse",
    "StockHistoryResponse",
    "StockResponse",
]
