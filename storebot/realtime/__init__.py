"""Stock update pub/sub, product cache and catalog synchronization."""
from .events import StockUpdateEvent

__all__ = ["StockUpdateEvent"]
