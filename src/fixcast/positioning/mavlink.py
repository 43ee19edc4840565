import asyncio
import json
import logging
from collections.abc import Callable

import websockets
from websockets.exceptions import ConnectionClosed

from fixcast.config import Settings
from fixcast.fix import RawReading, now_ms
from fixcast.positioning.base import PositioningProvider
from fixcast.positioning.nmea import accuracy_from_hdop

logger = logging.getLogger(__name__)

GPS_FIX_TYPE_2D = 2
EPH_UNKNOWN = 65535


def _fix_type(msg: dict) -> int:
    fix = msg.get("fix_type", 0)
    if isinstance(fix, dict):
        fix = fix.get("type", 0)
    if isinstance(fix, str):
        # MAVLink2REST sends enum names, e.g. GPS_FIX_TYPE_3D_FIX
        for number, token in ((6, "RTK_FIXED"), (5, "RTK_FLOAT"), (4, "DGPS"),
                              (3, "3D_FIX"), (2, "2D_FIX")):
            if token in fix:
                return number
        return 0
    return fix if isinstance(fix, int) else 0


def accuracy_from_gps_raw(msg: dict) -> int | None:
    h_acc = msg.get("h_acc", 0)
    if h_acc:
        return int(round(h_acc / 1000.0))
    eph = msg.get("eph", EPH_UNKNOWN)
    if not eph or eph == EPH_UNKNOWN:
        return None
    return accuracy_from_hdop(eph / 100.0)


class MavlinkPositionFeed(PositioningProvider):
    """Passive GPS_RAW_INT feed from an autopilot via MAVLink2REST.

    The autopilot streams positions on its own schedule, so there is no
    single-shot request; active requests fall back to continuous readings.
    """

    name = "mavlink"

    def __init__(self, config: Settings, clock: Callable[[], int] = now_ms) -> None:
        super().__init__()
        self.config = config
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.connected = False
        self.messages_received = 0

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        self._task = asyncio.create_task(self._telemetry_loop(), name="mavlink-feed")
        logger.info("MAVLink feed started (target: %s)", self.config.mavlink_host)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        await super().stop()
        logger.info("MAVLink feed stopped")

    def available(self) -> bool:
        return self.connected

    def supports_single_shot(self) -> bool:
        return False

    # ── Telemetry (WebSocket) ──────────────────────────────

    async def _telemetry_loop(self) -> None:
        url = f"{self.config.mavlink_ws_url}?filter=GPS_RAW_INT"
        backoff = 1.0

        while True:
            try:
                async with websockets.connect(
                    url, ping_interval=5, ping_timeout=10
                ) as ws:
                    self.connected = True
                    backoff = 1.0
                    logger.info("WebSocket connected to %s", url)

                    async for raw in ws:
                        try:
                            self._process_message(json.loads(raw))
                        except (json.JSONDecodeError, KeyError, TypeError) as exc:
                            logger.debug("Skipping malformed message: %s", exc)

            except (ConnectionClosed, ConnectionRefusedError, OSError) as exc:
                self.connected = False
                logger.warning(
                    "WebSocket disconnected: %s. Reconnecting in %.0fs", exc, backoff
                )
            except asyncio.CancelledError:
                self.connected = False
                return

            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, 10.0)

    def _process_message(self, msg: dict) -> None:
        header = msg.get("header", {})
        if header.get("system_id") != self.config.target_system:
            return

        body = msg.get("message", {})
        if body.get("type") != "GPS_RAW_INT":
            return
        self.messages_received += 1

        reading = self._parse_gps_raw(body)
        if reading is not None:
            self._deliver(reading)

    def _parse_gps_raw(self, body: dict) -> RawReading | None:
        if _fix_type(body) < GPS_FIX_TYPE_2D:
            return None
        return RawReading(
            latitude=body["lat"] / 1e7,
            longitude=body["lon"] / 1e7,
            accuracy=accuracy_from_gps_raw(body),
            timestamp=self._clock(),
        )
