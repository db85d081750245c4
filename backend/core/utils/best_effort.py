"""
Best-effort side effects.

Calls wrapped here may fail without affecting the caller: the outcome is
captured in a BestEffortResult and logged, never raised. Use it only for
side effects whose failure must not block a primary state transition, such
as cancelling a request at the fulfillment dispatcher.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from core.utils.logging import structured_logger


@dataclass
class BestEffortResult:
    succeeded: bool
    value: Any = None
    error: Optional[str] = None


async def run_best_effort(
    label: str,
    coro_factory: Callable[[], Awaitable[Any]],
    order_id: Optional[str] = None,
) -> BestEffortResult:
    try:
        value = await coro_factory()
    except Exception as e:
        structured_logger.warning(
            message=f"Best-effort action '{label}' failed",
            order_id=order_id,
            metadata={"action": label},
            exception=e,
        )
        return BestEffortResult(succeeded=False, error=str(e) or type(e).__name__)
    return BestEffortResult(succeeded=True, value=value)
