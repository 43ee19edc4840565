import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

import httpx

from fixcast.fix import Fix

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    PERIODIC = "periodic"
    TICKER = "ticker"


@dataclass(frozen=True)
class Notification:
    topic: Topic
    fix: Fix
    sent_at: float = field(default_factory=time.time)

    def to_payload(self) -> dict:
        return {"topic": self.topic.value, "fix": self.fix.model_dump()}


class NotificationSink(ABC):
    """Fire-and-forget delivery of fixes downstream.

    Delivery is at-least-once at best; consumers de-duplicate on
    ``fix.timestamp``. ``publish`` never raises.
    """

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def publish(self, topic: Topic, fix: Fix) -> bool: ...


class LogSink(NotificationSink):
    async def publish(self, topic: Topic, fix: Fix) -> bool:
        logger.info(
            "%s fix: lat=%.6f lon=%.6f accuracy=%s t=%d",
            topic.value, fix.latitude, fix.longitude, fix.accuracy, fix.timestamp,
        )
        return True


class RecordingSink(NotificationSink):
    """Keeps the most recent notifications in memory."""

    def __init__(self, maxlen: int = 50) -> None:
        self.notifications: deque[Notification] = deque(maxlen=maxlen)

    async def publish(self, topic: Topic, fix: Fix) -> bool:
        self.notifications.append(Notification(topic, fix))
        return True


class WebhookSink(NotificationSink):
    """POSTs each notification as JSON to a consumer URL."""

    def __init__(self, url: str, timeout: float = 2.0) -> None:
        self.url = url
        self.timeout = timeout
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._http = httpx.AsyncClient(timeout=self.timeout)
        logger.info("Webhook sink started (url: %s)", self.url)

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def publish(self, topic: Topic, fix: Fix) -> bool:
        if not self._http:
            return False
        try:
            resp = await self._http.post(self.url, json=Notification(topic, fix).to_payload())
        except httpx.RequestError as exc:
            logger.error("Webhook send failed: %s", exc)
            return False
        if not resp.is_success:
            logger.warning("Webhook returned %d", resp.status_code)
        return resp.is_success


class FanoutSink(NotificationSink):
    def __init__(self, sinks: list[NotificationSink]) -> None:
        self.sinks = list(sinks)

    async def start(self) -> None:
        for s in self.sinks:
            await s.start()

    async def stop(self) -> None:
        for s in self.sinks:
            await s.stop()

    async def publish(self, topic: Topic, fix: Fix) -> bool:
        results = await asyncio.gather(
            *(s.publish(topic, fix) for s in self.sinks), return_exceptions=True
        )
        ok = True
        for sink, result in zip(self.sinks, results):
            if isinstance(result, BaseException):
                logger.error("%s failed: %s", type(sink).__name__, result)
                ok = False
            elif not result:
                ok = False
        return ok
