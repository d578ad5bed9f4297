import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from api.metrics import metrics


logger = logging.getLogger(__name__)


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel ``task`` and wait until it has finished; a no-op for the running task."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any, label: str = "callback") -> bool:
    """Run a sync or async subscriber callback, logging instead of raising.

    Returns False when the callback raised.
    """
    if callback is None:
        return True
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Subscriber %s failed", label)
        metrics.record_callback_error(label)
        return False
    return True
