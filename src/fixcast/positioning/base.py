import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from fixcast.exceptions import ProviderUnavailableError
from fixcast.fix import RawReading, ReadingOrigin

logger = logging.getLogger(__name__)

ReadingCallback = Callable[[RawReading], None]


class PositioningProvider(ABC):
    """A source of position readings.

    Every reading a source produces goes to exactly one place: pending
    one-shot requests first, then continuous subscribers, and only if nobody
    asked for it, the passive listeners.
    """

    name = "provider"

    def __init__(self) -> None:
        self._passive: list[ReadingCallback] = []
        self._continuous: list[ReadingCallback] = []
        self._waiters: list[asyncio.Future] = []

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        for fut in self._waiters:
            fut.cancel()
        self._waiters.clear()
        self._continuous.clear()

    # ── Capabilities ───────────────────────────────────────

    @abstractmethod
    def available(self) -> bool:
        """True if the source can currently produce readings."""

    def supports_single_shot(self) -> bool:
        return True

    # ── Passive feed ───────────────────────────────────────

    def add_passive_listener(self, callback: ReadingCallback) -> None:
        if callback not in self._passive:
            self._passive.append(callback)

    def remove_passive_listener(self, callback: ReadingCallback) -> None:
        if callback in self._passive:
            self._passive.remove(callback)

    # ── Active requests ────────────────────────────────────

    def request_one_reading(self) -> asyncio.Future:
        """Return a future resolved by the next reading.

        Raises ProviderUnavailableError immediately when no source is up.
        """
        if not self.supports_single_shot():
            raise ProviderUnavailableError(f"{self.name} has no single-shot support")
        if not self.available():
            raise ProviderUnavailableError(f"{self.name} is not available")
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        return fut

    def request_continuous_readings(self, callback: ReadingCallback) -> None:
        if not self.available():
            raise ProviderUnavailableError(f"{self.name} is not available")
        if callback not in self._continuous:
            self._continuous.append(callback)

    def remove_updates(self, callback: ReadingCallback) -> None:
        if callback in self._continuous:
            self._continuous.remove(callback)

    # ── Delivery ───────────────────────────────────────────

    def _fail_waiters(self, reason: str) -> None:
        """Fail pending one-shot requests once the source has gone away."""
        waiters = [f for f in self._waiters if not f.done()]
        self._waiters.clear()
        for fut in waiters:
            fut.set_exception(ProviderUnavailableError(f"{self.name}: {reason}"))
        if waiters:
            logger.debug("%s: failed %d pending request(s)", self.name, len(waiters))

    def _deliver(self, reading: RawReading) -> None:
        waiters = [f for f in self._waiters if not f.done()]
        self._waiters.clear()
        if waiters:
            one_shot = dataclasses.replace(reading, origin=ReadingOrigin.ONE_SHOT)
            for fut in waiters:
                fut.set_result(one_shot)
            return

        if self._continuous:
            continuous = dataclasses.replace(reading, origin=ReadingOrigin.CONTINUOUS)
            for cb in list(self._continuous):
                self._call(cb, continuous)
            return

        passive = dataclasses.replace(reading, origin=ReadingOrigin.PASSIVE)
        for cb in list(self._passive):
            self._call(cb, passive)

    def _call(self, callback: ReadingCallback, reading: RawReading) -> None:
        try:
            callback(reading)
        except Exception:
            logger.exception("%s: reading listener failed", self.name)
