import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[object]]


class Slot(str, Enum):
    FOLLOWUP = "followup"
    HANDSHAKE = "handshake"
    PERIODIC = "periodic"


class DebouncedScheduler:
    """One pending delayed action per slot.

    Scheduling into a slot that already has a pending action replaces it, so a
    burst of requests fires once, ``delay`` after the last request. Actions
    that have already fired run to completion.
    """

    def __init__(self) -> None:
        self._pending: dict[Slot, asyncio.TimerHandle] = {}
        self._repeating: dict[Slot, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()

    # ── One-shot (coalescing) ─────────────────────────────

    def schedule(self, slot: Slot, delay: float, callback: Callback) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop, dropping %s request", slot.value)
            return

        self.cancel(slot)
        self._pending[slot] = loop.call_later(delay, self._fire, slot, callback)
        logger.debug("Scheduled %s in %.1fs", slot.value, delay)

    def _fire(self, slot: Slot, callback: Callback) -> None:
        self._pending.pop(slot, None)
        task = asyncio.create_task(self._run(slot, callback), name=f"slot-{slot.value}")
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, slot: Slot, callback: Callback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled %s action failed", slot.value)

    def is_pending(self, slot: Slot) -> bool:
        return slot in self._pending

    def cancel(self, slot: Slot) -> None:
        handle = self._pending.pop(slot, None)
        if handle is not None:
            handle.cancel()

    # ── Repeating ─────────────────────────────────────────

    def schedule_repeating(self, slot: Slot, interval: float, callback: Callback) -> None:
        """Fire ``callback`` now and then every ``interval`` seconds."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop, dropping repeating %s", slot.value)
            return

        self.cancel_repeating(slot)
        self._repeating[slot] = asyncio.create_task(
            self._repeat(slot, interval, callback), name=f"repeat-{slot.value}"
        )
        logger.debug("Repeating %s every %.1fs", slot.value, interval)

    async def _repeat(self, slot: Slot, interval: float, callback: Callback) -> None:
        while True:
            await self._run(slot, callback)
            await asyncio.sleep(interval)

    def is_repeating(self, slot: Slot) -> bool:
        task = self._repeating.get(slot)
        return task is not None and not task.done()

    def cancel_repeating(self, slot: Slot) -> None:
        task = self._repeating.pop(slot, None)
        if task is not None:
            task.cancel()

    # ── Lifecycle ─────────────────────────────────────────

    @property
    def pending_slots(self) -> list[str]:
        return sorted(slot.value for slot in self._pending)

    async def close(self) -> None:
        for slot in list(self._pending):
            self.cancel(slot)
        tasks = list(self._repeating.values()) + list(self._running)
        self._repeating.clear()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
