"""The escalation loop: when to announce the stored fix, and when to ask for a new one.

Every read-modify-write over the store happens under one asyncio.Lock, so
readings, ticks and scheduled re-checks never lose each other's updates.

State per device::

    NoFixYet -> HasFix(unbroadcast) <-> HasFix(broadcast)

A reconciled reading moves to ``unbroadcast``; a periodic emission moves to
``broadcast``.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from enum import Enum
from functools import partial

from fixcast.config import Settings
from fixcast.exceptions import ProviderUnavailableError, StoreError
from fixcast.fix import PersistedState, RawReading, ReadingOrigin, now_ms
from fixcast.notifier import NotificationSink, Topic
from fixcast.positioning.base import PositioningProvider
from fixcast.reconciler import ReconciliationResult, reconcile
from fixcast.scheduler import DebouncedScheduler, Slot
from fixcast.store import StateStore
from fixcast.tick import run_tick
from fixcast.validators import is_valid_position

logger = logging.getLogger(__name__)


class EscalationOutcome(str, Enum):
    IDLE = "idle"
    BROADCAST = "broadcast"
    REQUESTED_READING = "requested_reading"
    PROVIDER_UNAVAILABLE = "provider_unavailable"


class FixService:
    def __init__(
        self,
        config: Settings,
        store: StateStore,
        provider: PositioningProvider,
        sink: NotificationSink,
        scheduler: DebouncedScheduler | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config
        self.store = store
        self.provider = provider
        self.sink = sink
        self.scheduler = scheduler or DebouncedScheduler()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._one_shot: asyncio.Task | None = None
        self._one_shot_future: asyncio.Future | None = None
        self._one_shot_since = 0

    # ── Bootstrap ──────────────────────────────────────────

    @property
    def installed(self) -> bool:
        return self.scheduler.is_repeating(Slot.PERIODIC)

    async def bootstrap(self) -> bool:
        """Install the periodic tick and the passive listener.

        Idempotent. The persisted ``run_once`` sentinel records that the device
        was ever bootstrapped; the in-process check re-installs the tick after
        a restart, since timers do not outlive the process.
        Returns True if anything was installed.
        """
        async with self._lock:
            state = await asyncio.to_thread(self.store.read)
            if state.run_once and self.installed:
                return False

            if not state.run_once:
                logger.debug("Bootstrap: first time ever run, start tick and listener")
            logger.debug(
                "Bootstrap: alarm_frequency=%.0fs max_fix_age=%.0fs",
                self.config.alarm_frequency,
                self.config.max_fix_age,
            )
            self.provider.add_passive_listener(self._on_passive_reading)
            self.scheduler.schedule_repeating(
                Slot.PERIODIC, self.config.alarm_frequency, partial(run_tick, self)
            )
            if not state.run_once:
                await asyncio.to_thread(
                    self.store.write, state.model_copy(update={"run_once": True})
                )
            return True

    async def shutdown(self) -> None:
        self.provider.remove_passive_listener(self._on_passive_reading)
        self.provider.remove_updates(self._on_continuous_reading)
        await self.scheduler.close()
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def info(self) -> PersistedState:
        return await asyncio.to_thread(self.store.read)

    # ── Ingestion ──────────────────────────────────────────

    async def ingest(self, reading: RawReading) -> ReconciliationResult | None:
        """Reconcile one reading from any origin and store the outcome.

        Returns None if the reading was dropped. Raises StoreError if the new
        state could not be written.
        """
        if not is_valid_position(reading.latitude, reading.longitude):
            logger.warning(
                "Dropping out-of-range reading lat=%s lon=%s",
                reading.latitude, reading.longitude,
            )
            return None

        async with self._lock:
            state = await asyncio.to_thread(self.store.read)
            if reading.timestamp < state.last_fix_timestamp:
                logger.debug(
                    "Dropping reading at t=%d, older than stored t=%d",
                    reading.timestamp, state.last_fix_timestamp,
                )
                return None
            result = reconcile(reading, state.last_fix)
            await asyncio.to_thread(
                self.store.write, state.model_copy(update={"last_fix": result.fix})
            )

        if result.distance_m is not None:
            logger.debug("Distance from last reading: %.0fm", result.distance_m)
        if result.position_accepted:
            logger.debug(
                "Storing location update, lat=%.6f lon=%.6f accuracy=%s t=%d",
                result.fix.latitude, result.fix.longitude,
                result.fix.accuracy, result.fix.timestamp,
            )
        else:
            logger.debug(
                "Storing location update, less accurate so reusing prior location, t=%d",
                result.fix.timestamp,
            )

        if self.config.broadcast_every_reading:
            await self.sink.publish(Topic.TICKER, result.fix)

        if result.elapsed_ms > self.config.alarm_frequency_ms:
            # Readings tend to arrive in bursts; announce once, after the last.
            logger.debug("Treating this update as a periodic update")
            self._schedule_escalation(Slot.FOLLOWUP, self.config.followup_delay)

        if reading.origin is ReadingOrigin.CONTINUOUS:
            self._schedule_escalation(Slot.FOLLOWUP, self.config.continuous_followup_delay)

        return result

    def _on_passive_reading(self, reading: RawReading) -> None:
        self._spawn(self._ingest_safely(reading))

    def _on_continuous_reading(self, reading: RawReading) -> None:
        # Continuous updates end with the first reading delivered.
        self.provider.remove_updates(self._on_continuous_reading)
        self._spawn(self._ingest_safely(reading))

    async def _ingest_safely(self, reading: RawReading) -> None:
        try:
            await self.ingest(reading)
        except StoreError as exc:
            logger.warning("Reading not stored, will retry on next reading: %s", exc)

    # ── Escalation ─────────────────────────────────────────

    async def run_escalation(self) -> EscalationOutcome:
        """Broadcast a fix newer than the last broadcast, or refresh a stale one.

        Raises StoreError if the broadcast bookkeeping could not be written;
        nothing is published in that case.
        """
        async with self._lock:
            state = await asyncio.to_thread(self.store.read)

            if state.last_broadcast_timestamp == state.last_fix_timestamp:
                logger.debug("No new location update found")
                if self._clock() - state.last_fix_timestamp > self.config.max_fix_age_ms:
                    return self._request_fresh_reading()
                return EscalationOutcome.IDLE

            fix = state.last_fix
            await asyncio.to_thread(
                self.store.write,
                state.model_copy(update={"last_broadcast_timestamp": fix.timestamp}),
            )

        logger.debug("Broadcasting periodic location update timed at %d", fix.timestamp)
        await self.sink.publish(Topic.PERIODIC, fix)
        return EscalationOutcome.BROADCAST

    async def force_update(self) -> EscalationOutcome:
        """Forget freshness and broadcast bookkeeping, then escalate.

        The stored position is kept, but its timestamp becomes 0, so the loop
        treats it as stale and requests a fresh reading.
        """
        async with self._lock:
            state = await asyncio.to_thread(self.store.read)
            fix = state.last_fix
            if fix is not None:
                fix = fix.model_copy(update={"timestamp": 0})
            await asyncio.to_thread(
                self.store.write,
                state.model_copy(update={"last_fix": fix, "last_broadcast_timestamp": 0}),
            )
        logger.debug("Forced location update")
        return await self.run_escalation()

    def _request_fresh_reading(self) -> EscalationOutcome:
        if self.awaiting_reading:
            waited = self._clock() - self._one_shot_since
            if (
                self.provider.available()
                and self.provider.supports_single_shot()
                and waited <= self.config.max_fix_age_ms
            ):
                logger.debug("Fresh reading already requested")
                return EscalationOutcome.REQUESTED_READING
            logger.info("Abandoning unanswered reading request after %.0fs", waited / 1000)
            self._abandon_one_shot()

        try:
            if self.provider.supports_single_shot():
                logger.debug("Force a single location update, current location is too old")
                future = self.provider.request_one_reading()
                self._one_shot_future = future
                self._one_shot_since = self._clock()
                self._one_shot = self._spawn(self._await_one_shot(future))
            else:
                logger.debug("Force continuous location updates, current location is too old")
                self.provider.request_continuous_readings(self._on_continuous_reading)
        except ProviderUnavailableError as exc:
            logger.warning("Cannot request a fresh reading: %s", exc)
            return EscalationOutcome.PROVIDER_UNAVAILABLE

        return EscalationOutcome.REQUESTED_READING

    async def _await_one_shot(self, future: asyncio.Future) -> None:
        try:
            reading = await future
        except ProviderUnavailableError as exc:
            # The request ended without a reading in hand; look again once
            # the sources have had a chance to settle.
            logger.warning("Reading request failed: %s", exc)
            self._schedule_escalation(Slot.HANDSHAKE, self.config.handshake_delay)
            return
        logger.debug(
            "Single location update received: %.6f,%.6f",
            reading.latitude, reading.longitude,
        )
        await self._ingest_safely(reading)

    def _abandon_one_shot(self) -> None:
        if self._one_shot_future is not None:
            self._one_shot_future.cancel()
        if self._one_shot is not None:
            self._one_shot.cancel()
        self._one_shot = None
        self._one_shot_future = None

    # ── Helpers ────────────────────────────────────────────

    def _schedule_escalation(self, slot: Slot, delay: float) -> None:
        self.scheduler.schedule(slot, delay, partial(run_tick, self))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def awaiting_reading(self) -> bool:
        return self._one_shot is not None and not self._one_shot.done()
