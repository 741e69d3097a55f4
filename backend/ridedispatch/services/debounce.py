import asyncio
import logging
import threading
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ridedispatch.core.config import settings

logger = logging.getLogger(__name__)


class TriggerDebouncer:
    """
    Collapse bursts of triggers into one optimization run per tenant.

    Each trigger cancels the tenant's pending timer and starts a new one;
    the run happens once the tenant has been quiet for ``quiet_period_ms``.
    The tenant -> task map is guarded by a lock held only while a timer is
    swapped, never across the run itself.
    """

    def __init__(
        self,
        run_callback: Callable[[uuid.UUID], Awaitable[Any]],
        quiet_period_ms: Optional[int] = None,
    ):
        self.run_callback = run_callback
        self.quiet_period_ms = (
            quiet_period_ms if quiet_period_ms is not None else settings.OPTIMIZATION_DEBOUNCE_MS
        )
        self._lock = threading.Lock()
        self._pending: Dict[uuid.UUID, asyncio.Task] = {}
        self._running: Dict[uuid.UUID, asyncio.Task] = {}

    def trigger(self, tenant_id: uuid.UUID) -> asyncio.Task:
        """Restart the tenant's quiet period. Must be called on the event loop."""
        with self._lock:
            previous = self._pending.get(tenant_id)
            if previous is not None:
                previous.cancel()
            task = asyncio.get_running_loop().create_task(self._fire_later(tenant_id))
            self._pending[tenant_id] = task
        logger.debug(f"Optimization for tenant {tenant_id} scheduled in {self.quiet_period_ms}ms")
        return task

    def trigger_threadsafe(self, tenant_id: uuid.UUID, loop: asyncio.AbstractEventLoop) -> None:
        """Trigger from a thread other than the event loop's."""
        loop.call_soon_threadsafe(self.trigger, tenant_id)

    async def _fire_later(self, tenant_id: uuid.UUID) -> None:
        await asyncio.sleep(self.quiet_period_ms / 1000)

        current = asyncio.current_task()
        with self._lock:
            if self._pending.get(tenant_id) is not current:
                return
            del self._pending[tenant_id]
            self._running[tenant_id] = current

        try:
            await self.run_callback(tenant_id)
        except asyncio.CancelledError:
            logger.info(f"Optimization for tenant {tenant_id} cancelled")
            raise
        except Exception:
            logger.exception(f"Debounced optimization failed for tenant {tenant_id}")
        finally:
            with self._lock:
                if self._running.get(tenant_id) is current:
                    del self._running[tenant_id]

    def cancel(self, tenant_id: uuid.UUID) -> bool:
        """Cancel the tenant's pending timer and in-flight run, if any."""
        with self._lock:
            tasks = [t for t in (self._pending.pop(tenant_id, None), self._running.pop(tenant_id, None)) if t]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelled optimization work for tenant {tenant_id}")
        return bool(tasks)

    def pending_tenants(self) -> List[uuid.UUID]:
        with self._lock:
            return list(self._pending)

    def is_pending(self, tenant_id: uuid.UUID) -> bool:
        with self._lock:
            return tenant_id in self._pending

    async def shutdown(self) -> None:
        """Cancel every timer and run, waiting for them to unwind."""
        with self._lock:
            tasks = list(self._pending.values()) + list(self._running.values())
            self._pending.clear()
            self._running.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
