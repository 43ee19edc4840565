import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import pynmea2
import serial

from fixcast.config import Settings
from fixcast.fix import RawReading, now_ms
from fixcast.positioning.base import PositioningProvider

logger = logging.getLogger(__name__)

# Typical user equivalent range error for consumer receivers, metres per HDOP
UERE_M = 5.0


def accuracy_from_hdop(hdop: float | None) -> int | None:
    if hdop is None or hdop <= 0:
        return None
    return int(round(hdop * UERE_M))


@dataclass
class GPSState:
    fix_quality: int = 0
    satellites: int = 0
    hdop: float = 99.9

    serial_connected: bool = False

    sentences_received: int = 0
    parse_errors: int = 0
    readings_emitted: int = 0
    last_sentence_time: float = field(default_factory=time.monotonic)


class NmeaGpsProvider(PositioningProvider):
    """Reads NMEA from a serial GPS and turns position sentences into readings."""

    name = "nmea"

    def __init__(
        self,
        config: Settings,
        state: GPSState | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        super().__init__()
        self.config = config
        self.state = state or GPSState()
        self._clock = clock
        self._task: asyncio.Task | None = None

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        self._task = asyncio.create_task(self._read_loop(), name="gps-reader")
        logger.info(
            "NMEA provider started: port=%s baud=%s",
            self.config.gps_serial_port,
            self.config.gps_serial_baud,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        await super().stop()
        logger.info("NMEA provider stopped")

    def available(self) -> bool:
        return self.state.serial_connected

    # ── Main loop ─────────────────────────────────────────

    async def _read_loop(self) -> None:
        backoff = 1.0

        while True:
            try:
                ser = serial.Serial(
                    self.config.gps_serial_port,
                    self.config.gps_serial_baud,
                    timeout=2.0,
                )
                self.state.serial_connected = True
                backoff = 1.0
                logger.info("Serial port %s opened", self.config.gps_serial_port)

                try:
                    while True:
                        raw = await asyncio.to_thread(ser.readline)
                        if not raw:
                            continue
                        line = raw.decode("ascii", errors="replace").strip()
                        if not line:
                            continue

                        reading = self._parse_sentence(line)
                        if reading is not None:
                            self._deliver(reading)
                finally:
                    ser.close()

            except serial.SerialException as exc:
                self._disconnected(f"serial error: {exc}")
                logger.warning(
                    "Serial error on %s: %s. Reconnecting in %.0fs",
                    self.config.gps_serial_port,
                    exc,
                    backoff,
                )
            except asyncio.CancelledError:
                self.state.serial_connected = False
                return
            except Exception as exc:
                self._disconnected(f"unexpected error: {exc}")
                logger.error("Unexpected GPS error: %s", exc)

            try:
                await asyncio.sleep(backoff)
            except asyncio.CancelledError:
                return
            backoff = min(backoff * 2, 10.0)

    def _disconnected(self, reason: str) -> None:
        self.state.serial_connected = False
        self._fail_waiters(reason)

    # ── NMEA parsing ──────────────────────────────────────

    def _parse_sentence(self, line: str) -> RawReading | None:
        """Update counters from one sentence; return a reading if it carries a fix."""
        try:
            msg = pynmea2.parse(line)
        except pynmea2.ParseError:
            self.state.parse_errors += 1
            return None

        self.state.sentences_received += 1
        self.state.last_sentence_time = time.monotonic()

        if isinstance(msg, pynmea2.types.talker.GGA):
            self.state.fix_quality = int(msg.gps_qual) if msg.gps_qual else 0
            self.state.satellites = int(msg.num_sats) if msg.num_sats else 0
            self.state.hdop = float(msg.horizontal_dil) if msg.horizontal_dil else 99.9
            if self.state.fix_quality == 0 or not (msg.lat and msg.lon):
                return None
            accuracy = accuracy_from_hdop(
                float(msg.horizontal_dil) if msg.horizontal_dil else None
            )
            return self._reading(msg.latitude, msg.longitude, accuracy)

        if isinstance(msg, pynmea2.types.talker.RMC):
            if msg.status != "A" or not (msg.lat and msg.lon):
                return None
            return self._reading(msg.latitude, msg.longitude, None)

        return None

    def _reading(self, lat: float, lon: float, accuracy: int | None) -> RawReading:
        self.state.readings_emitted += 1
        return RawReading(
            latitude=lat,
            longitude=lon,
            accuracy=accuracy,
            timestamp=self._clock(),
        )
