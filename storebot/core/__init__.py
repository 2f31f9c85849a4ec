"""Core engine: stock ledger, orders and payment state machine."""
from .errors import (
    ConflictError,
    EngineError,
    InsufficientStockError,
    NotFoundError,
    TransientDeliveryFailure,
)
from .side_effects import SideEffectResult, run_best_effort

__all__ = [
    "ConflictError",
    "EngineError",
    "InsufficientStockError",
    "NotFoundError",
    "SideEffectResult",
    "TransientDeliveryFailure",
    "run_best_effort",
]
