"""
Best-effort side effects.

Work that runs after a stock or payment transaction has committed
(publishing, cache invalidation, notifications) goes through
run_best_effort. It never raises; the outcome comes back as a
SideEffectResult that callers log and otherwise ignore.
"""
import asyncio
from collections.abc import Awaitable
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from storebot.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SideEffectResult(BaseModel):
    """Outcome of one best-effort side effect."""

    model_config = ConfigDict(frozen=True)

    name: str
    ok: bool
    error: str | None = None
    timed_out: bool = False

    @classmethod
    def success(cls, name: str) -> "SideEffectResult":
        return cls(name=name, ok=True)

    @classmethod
    def failure(cls, name: str, error: str, timed_out: bool = False) -> "SideEffectResult":
        return cls(name=name, ok=False, error=error, timed_out=timed_out)


async def run_best_effort(
    name: str,
    operation: Awaitable[Any],
    timeout: float | None = None,
    **log_context: Any,
) -> SideEffectResult:
    """
    Await a side effect, isolating its failure from the caller.

    Args:
        name: Side effect name used in logs and metrics
        operation: Awaitable performing the side effect
        timeout: Optional hard timeout in seconds
        **log_context: Extra fields for the log line

    Returns:
        SideEffectResult: ok, or the error that was swallowed
    """
    try:
        if timeout is not None:
            outcome = await asyncio.wait_for(operation, timeout=timeout)
        else:
            outcome = await operation
    except asyncio.TimeoutError:
        result = SideEffectResult.failure(name, f"timed out after {timeout}s", timed_out=True)
    except Exception as e:
        result = SideEffectResult.failure(name, str(e) or type(e).__name__)
    else:
        # operations that already report their own outcome pass it through
        if isinstance(outcome, SideEffectResult):
            result = outcome
        else:
            result = SideEffectResult.success(name)

    metrics.record_side_effect(name, result.ok)
    if result.ok:
        logger.debug("side_effect_completed", side_effect=name, **log_context)
    else:
        logger.warning(
            "side_effect_failed",
            side_effect=name,
            error=result.error,
            timed_out=result.timed_out,
            **log_context,
        )
    return result
