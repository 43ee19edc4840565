import asyncio
import logging

from fixcast.exceptions import ProviderUnavailableError
from fixcast.positioning.base import PositioningProvider, ReadingCallback

logger = logging.getLogger(__name__)


class ProviderGroup(PositioningProvider):
    """Presents several sources as one positioning capability.

    Passive listeners hear every member. Active requests go to the first
    available member that can serve them, in the order given.
    """

    name = "group"

    def __init__(self, providers: list[PositioningProvider]) -> None:
        super().__init__()
        self.providers = list(providers)

    async def start(self) -> None:
        for p in self.providers:
            await p.start()

    async def stop(self) -> None:
        await asyncio.gather(*(p.stop() for p in self.providers), return_exceptions=True)
        await super().stop()

    def available(self) -> bool:
        return any(p.available() for p in self.providers)

    def supports_single_shot(self) -> bool:
        return any(p.available() and p.supports_single_shot() for p in self.providers)

    def add_passive_listener(self, callback: ReadingCallback) -> None:
        for p in self.providers:
            p.add_passive_listener(callback)

    def remove_passive_listener(self, callback: ReadingCallback) -> None:
        for p in self.providers:
            p.remove_passive_listener(callback)

    def request_one_reading(self) -> asyncio.Future:
        for p in self.providers:
            if p.available() and p.supports_single_shot():
                logger.debug("Single-shot request routed to %s", p.name)
                return p.request_one_reading()
        raise ProviderUnavailableError("No provider can serve a single reading")

    def request_continuous_readings(self, callback: ReadingCallback) -> None:
        for p in self.providers:
            if p.available():
                logger.debug("Continuous request routed to %s", p.name)
                p.request_continuous_readings(callback)
                return
        raise ProviderUnavailableError("No provider is available")

    def remove_updates(self, callback: ReadingCallback) -> None:
        for p in self.providers:
            p.remove_updates(callback)
