import asyncio
import random
import threading
from unittest.mock import ANY, MagicMock

import pytest

from fixcast.config import Settings
from fixcast.escalation import EscalationOutcome, FixService
from fixcast.exceptions import StoreError
from fixcast.fix import Fix, PersistedState, RawReading, ReadingOrigin
from fixcast.notifier import RecordingSink, Topic
from fixcast.positioning.base import PositioningProvider
from fixcast.positioning.group import ProviderGroup
from fixcast.scheduler import DebouncedScheduler, Slot
from fixcast.store import MemoryStateStore
from fixcast.tick import run_tick


class FakeProvider(PositioningProvider):
    name = "fake"

    def __init__(self, up: bool = True, single_shot: bool = True) -> None:
        super().__init__()
        self.up = up
        self.single_shot = single_shot

    def available(self) -> bool:
        return self.up

    def supports_single_shot(self) -> bool:
        return self.single_shot

    def emit(self, reading: RawReading) -> None:
        self._deliver(reading)


class FailingStore(MemoryStateStore):
    def write(self, state: PersistedState) -> None:
        raise StoreError("disk full")


class ThreadRecordingStore(MemoryStateStore):
    def __init__(self, state: PersistedState | None = None) -> None:
        super().__init__(state)
        self.threads: set[int] = set()

    def read(self) -> PersistedState:
        self.threads.add(threading.get_ident())
        return super().read()

    def write(self, state: PersistedState) -> None:
        self.threads.add(threading.get_ident())
        super().write(state)


class Clock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _make_service(
    state: PersistedState | None = None,
    *,
    now: int = 0,
    provider: FakeProvider | None = None,
    store=None,
    scheduler=None,
    **settings,
) -> tuple[FixService, MemoryStateStore, FakeProvider, RecordingSink]:
    settings.setdefault("max_fix_age", 1.0)
    settings.setdefault("alarm_frequency", 15.0)
    config = Settings(**settings)
    store = store or MemoryStateStore(state)
    provider = provider or FakeProvider()
    sink = RecordingSink()
    service = FixService(
        config,
        store,
        provider,
        sink,
        scheduler=scheduler or MagicMock(spec=DebouncedScheduler),
        clock=Clock(now),
    )
    return service, store, provider, sink


def _fix(t: int, lat: float = 51.5, lon: float = -0.1, accuracy: int | None = 10) -> Fix:
    return Fix(latitude=lat, longitude=lon, accuracy=accuracy, timestamp=t)


async def _settle() -> None:
    # spawned ingestion reaches the store through worker threads
    for _ in range(10):
        await asyncio.sleep(0.01)


class TestEscalationLoop:
    def test_stale_fix_requests_reading(self):
        # Scenario D
        state = PersistedState(last_fix=_fix(5000), last_broadcast_timestamp=5000)
        service, store, provider, sink = _make_service(state, now=5000 + 1000 + 1)

        async def scenario():
            outcome = await service.run_escalation()
            assert len(provider._waiters) == 1
            await service.shutdown()
            return outcome

        assert asyncio.run(scenario()) is EscalationOutcome.REQUESTED_READING
        assert list(sink.notifications) == []
        assert store.read().last_broadcast_timestamp == 5000

    def test_fresh_fix_is_idle(self):
        state = PersistedState(last_fix=_fix(5000), last_broadcast_timestamp=5000)
        service, _, provider, sink = _make_service(state, now=5000 + 1000)

        assert asyncio.run(service.run_escalation()) is EscalationOutcome.IDLE
        assert provider._waiters == []
        assert list(sink.notifications) == []

    def test_no_fix_yet_requests_reading(self):
        service, _, provider, _ = _make_service(now=10_000)

        async def scenario():
            outcome = await service.run_escalation()
            await service.shutdown()
            return outcome

        assert asyncio.run(scenario()) is EscalationOutcome.REQUESTED_READING

    def test_newer_fix_is_broadcast(self):
        # Scenario E
        state = PersistedState(last_fix=_fix(6000), last_broadcast_timestamp=5000)
        service, store, _, sink = _make_service(state, now=6500)

        assert asyncio.run(service.run_escalation()) is EscalationOutcome.BROADCAST
        assert store.read().last_broadcast_timestamp == 6000
        assert [(n.topic, n.fix) for n in sink.notifications] == [(Topic.PERIODIC, _fix(6000))]

    def test_broadcast_only_once(self):
        state = PersistedState(last_fix=_fix(6000), last_broadcast_timestamp=5000)
        service, _, _, sink = _make_service(state, now=6500)

        async def scenario():
            first = await service.run_escalation()
            second = await service.run_escalation()
            return first, second

        assert asyncio.run(scenario()) == (EscalationOutcome.BROADCAST, EscalationOutcome.IDLE)
        assert len(sink.notifications) == 1

    def test_provider_unavailable_is_not_fatal(self):
        service, _, _, sink = _make_service(now=10_000, provider=FakeProvider(up=False))
        assert asyncio.run(service.run_escalation()) is EscalationOutcome.PROVIDER_UNAVAILABLE
        assert list(sink.notifications) == []

    def test_outstanding_request_not_repeated(self):
        service, _, provider, _ = _make_service(now=10_000)

        async def scenario():
            await service.run_escalation()
            await service.run_escalation()
            assert len(provider._waiters) == 1
            assert service.awaiting_reading is True
            await service.shutdown()

        asyncio.run(scenario())

    def test_write_failure_publishes_nothing(self):
        state = PersistedState(last_fix=_fix(6000), last_broadcast_timestamp=5000)
        store = FailingStore(state)
        service, _, _, sink = _make_service(store=store, now=6500)

        with pytest.raises(StoreError):
            asyncio.run(service.run_escalation())
        assert list(sink.notifications) == []
        assert store.read().last_broadcast_timestamp == 5000

    def test_tick_swallows_store_failure(self, caplog):
        state = PersistedState(last_fix=_fix(6000), last_broadcast_timestamp=5000)
        service, _, _, _ = _make_service(store=FailingStore(state), now=6500)

        assert asyncio.run(run_tick(service)) is None
        assert "retrying on next tick" in caplog.text


class TestFreshReadingRequest:
    def test_single_shot_result_is_ingested(self):
        service, store, provider, _ = _make_service(now=10_000)
        reading = RawReading(latitude=48.1173, longitude=11.5167, accuracy=5, timestamp=10_000)

        async def scenario():
            await service.run_escalation()
            provider.emit(reading)
            await _settle()

        asyncio.run(scenario())
        fix = store.read().last_fix
        assert (fix.latitude, fix.longitude, fix.timestamp) == (48.1173, 11.5167, 10_000)
        assert service.awaiting_reading is False
        slots = [c.args[0] for c in service.scheduler.schedule.call_args_list]
        assert Slot.HANDSHAKE not in slots

    def test_single_shot_reading_skips_passive_feed(self):
        service, _, provider, _ = _make_service(now=10_000)
        passive = MagicMock()
        provider.add_passive_listener(passive)

        async def scenario():
            await service.run_escalation()
            provider.emit(RawReading(latitude=1.0, longitude=2.0, timestamp=10_000))
            await _settle()

        asyncio.run(scenario())
        passive.assert_not_called()

    def test_continuous_when_no_single_shot(self):
        provider = FakeProvider(single_shot=False)
        service, store, _, _ = _make_service(now=10_000, provider=provider)
        reading = RawReading(latitude=1.0, longitude=2.0, accuracy=20, timestamp=10_000)

        async def scenario():
            outcome = await service.run_escalation()
            assert outcome is EscalationOutcome.REQUESTED_READING
            assert len(provider._continuous) == 1
            provider.emit(reading)
            assert provider._continuous == []
            await _settle()

        asyncio.run(scenario())
        assert store.read().last_fix.timestamp == 10_000
        service.scheduler.schedule.assert_called_with(Slot.FOLLOWUP, 1.0, ANY)

    def test_continuous_unavailable(self):
        provider = FakeProvider(up=False, single_shot=False)
        service, _, _, _ = _make_service(now=10_000, provider=provider)
        assert asyncio.run(service.run_escalation()) is EscalationOutcome.PROVIDER_UNAVAILABLE

    def test_source_drop_fails_request_and_next_tick_retries(self):
        state = PersistedState(last_fix=_fix(5000), last_broadcast_timestamp=5000)
        service, _, provider, _ = _make_service(state, now=10_000)

        async def scenario():
            assert await service.run_escalation() is EscalationOutcome.REQUESTED_READING
            provider.up = False
            provider._fail_waiters("serial error: unplugged")
            await _settle()
            assert service.awaiting_reading is False
            service._clock.now += 3_600_000
            return await service.run_escalation()

        assert asyncio.run(scenario()) is EscalationOutcome.PROVIDER_UNAVAILABLE
        service.scheduler.schedule.assert_any_call(Slot.HANDSHAKE, 30.0, ANY)

    def test_request_to_lost_source_falls_back_to_continuous(self):
        gps = FakeProvider()
        feed = FakeProvider(single_shot=False)
        state = PersistedState(last_fix=_fix(5000), last_broadcast_timestamp=5000)
        service, _, _, _ = _make_service(state, now=10_000, provider=ProviderGroup([gps, feed]))

        async def scenario():
            await service.run_escalation()
            pending = gps._waiters[0]
            gps.up = False
            outcomes = []
            for _ in range(3):
                service._clock.now += 3_600_000
                outcomes.append(await service.run_escalation())
            await _settle()
            assert pending.cancelled()
            return outcomes

        outcomes = asyncio.run(scenario())
        assert outcomes[0] is EscalationOutcome.REQUESTED_READING
        assert feed._continuous == [service._on_continuous_reading]
        assert service.awaiting_reading is False

    def test_unanswered_request_reissued_after_max_age(self):
        service, _, provider, _ = _make_service(now=10_000)

        async def scenario():
            await service.run_escalation()
            first = provider._waiters[0]
            service._clock.now += 1001
            outcome = await service.run_escalation()
            await _settle()
            assert first.cancelled()
            live = [f for f in provider._waiters if not f.done()]
            assert len(live) == 1
            await service.shutdown()
            return outcome

        assert asyncio.run(scenario()) is EscalationOutcome.REQUESTED_READING


class TestIngest:
    def test_first_reading(self):
        service, store, _, sink = _make_service()
        reading = RawReading(latitude=51.5000019, longitude=-0.1000019, accuracy=10, timestamp=1000)

        result = asyncio.run(service.ingest(reading))

        assert result.position_accepted is True
        state = store.read()
        assert state.last_fix == _fix(1000, 51.500001, -0.100001)
        assert state.last_broadcast_timestamp == 0
        assert state.latest_data_broadcast is False
        assert list(sink.notifications) == []
        service.scheduler.schedule.assert_not_called()

    def test_partial_accept_advances_timestamp(self):
        state = PersistedState(last_fix=_fix(1000), last_broadcast_timestamp=1000)
        service, store, _, _ = _make_service(state)
        reading = RawReading(latitude=51.500001, longitude=-0.100001, accuracy=50, timestamp=2000)

        result = asyncio.run(service.ingest(reading))

        assert result.position_accepted is False
        assert store.read().last_fix == _fix(2000)
        # the fix is now unbroadcast again
        assert store.read().latest_data_broadcast is False

    def test_long_gap_schedules_followup(self):
        state = PersistedState(last_fix=_fix(1000), last_broadcast_timestamp=1000)
        service, _, _, _ = _make_service(state)
        reading = RawReading(latitude=51.51, longitude=-0.1, accuracy=10, timestamp=1000 + 15_001)

        asyncio.run(service.ingest(reading))
        service.scheduler.schedule.assert_called_once_with(Slot.FOLLOWUP, 10.0, ANY)

    def test_short_gap_does_not_schedule(self):
        state = PersistedState(last_fix=_fix(1000), last_broadcast_timestamp=1000)
        service, _, _, _ = _make_service(state)
        reading = RawReading(latitude=51.51, longitude=-0.1, accuracy=10, timestamp=1000 + 15_000)

        asyncio.run(service.ingest(reading))
        service.scheduler.schedule.assert_not_called()

    def test_one_shot_reading_in_hand_needs_no_recheck(self):
        service, store, _, _ = _make_service()
        reading = RawReading(latitude=1.0, longitude=2.0, timestamp=5, origin=ReadingOrigin.ONE_SHOT)

        asyncio.run(service.ingest(reading))
        assert store.read().last_fix.timestamp == 5
        service.scheduler.schedule.assert_not_called()

    def test_ticker_every_reading(self):
        state = PersistedState(last_fix=_fix(1000), last_broadcast_timestamp=1000)
        service, store, _, sink = _make_service(state, broadcast_every_reading=True)

        async def scenario():
            await service.ingest(RawReading(latitude=51.500001, longitude=-0.100001, accuracy=50, timestamp=2000))
            await service.ingest(RawReading(latitude=51.51, longitude=-0.1, accuracy=5, timestamp=3000))

        asyncio.run(scenario())
        assert [(n.topic, n.fix.timestamp) for n in sink.notifications] == [
            (Topic.TICKER, 2000),
            (Topic.TICKER, 3000),
        ]
        assert store.read().last_broadcast_timestamp == 1000

    def test_older_reading_dropped(self):
        state = PersistedState(last_fix=_fix(6000), last_broadcast_timestamp=6000)
        service, store, _, _ = _make_service(state)

        result = asyncio.run(service.ingest(RawReading(latitude=1.0, longitude=2.0, timestamp=5500)))

        assert result is None
        assert store.read().last_fix == _fix(6000)

    def test_out_of_range_reading_dropped(self):
        service, store, _, _ = _make_service()
        result = asyncio.run(service.ingest(RawReading(latitude=95.0, longitude=2.0, timestamp=1)))
        assert result is None
        assert store.read().last_fix is None

    def test_write_failure_raises_and_keeps_state(self):
        state = PersistedState(last_fix=_fix(1000), last_broadcast_timestamp=1000)
        store = FailingStore(state)
        service, _, _, sink = _make_service(store=store, broadcast_every_reading=True)

        with pytest.raises(StoreError):
            asyncio.run(service.ingest(RawReading(latitude=1.0, longitude=2.0, timestamp=2000)))
        assert store.read().last_fix == _fix(1000)
        assert list(sink.notifications) == []

    def test_passive_feed_is_ingested(self):
        service, store, provider, _ = _make_service(scheduler=DebouncedScheduler())

        async def scenario():
            await service.bootstrap()
            provider.emit(RawReading(latitude=1.0, longitude=2.0, timestamp=1234))
            await _settle()
            await service.shutdown()

        asyncio.run(scenario())
        assert store.read().last_fix.timestamp == 1234


class TestForceUpdate:
    def test_requests_reading_even_when_fresh(self):
        state = PersistedState(last_fix=_fix(6000), last_broadcast_timestamp=6000)
        service, store, provider, _ = _make_service(state, now=6001)

        async def scenario():
            outcome = await service.force_update()
            await service.shutdown()
            return outcome

        assert asyncio.run(scenario()) is EscalationOutcome.REQUESTED_READING
        after = store.read()
        assert after.last_fix == _fix(0)
        assert after.last_broadcast_timestamp == 0
        assert after.any_location_data_received is False

    def test_next_reading_is_broadcast_promptly(self):
        state = PersistedState(last_fix=_fix(6000), last_broadcast_timestamp=6000)
        service, _, _, _ = _make_service(state, now=6001, provider=FakeProvider(up=False))

        async def scenario():
            await service.force_update()
            await service.ingest(
                RawReading(latitude=51.5, longitude=-0.1, accuracy=10, timestamp=1_700_000_000_000)
            )

        asyncio.run(scenario())
        service.scheduler.schedule.assert_called_once_with(Slot.FOLLOWUP, 10.0, ANY)


class TestBootstrap:
    def test_installs_once(self):
        service, store, provider, _ = _make_service(scheduler=DebouncedScheduler(), alarm_frequency=60.0)

        async def scenario():
            first = await service.bootstrap()
            second = await service.bootstrap()
            assert service.installed is True
            assert len(provider._passive) == 1
            await service.shutdown()
            return first, second

        assert asyncio.run(scenario()) == (True, False)
        assert store.read().run_once is True

    def test_concurrent_calls_install_once(self):
        service, _, _, _ = _make_service(scheduler=DebouncedScheduler(), alarm_frequency=60.0)

        async def scenario():
            results = await asyncio.gather(*(service.bootstrap() for _ in range(5)))
            await service.shutdown()
            return results

        assert sorted(asyncio.run(scenario())) == [False, False, False, False, True]

    def test_restart_reinstalls_tick(self):
        store = MemoryStateStore(PersistedState(run_once=True))
        service, _, _, _ = _make_service(store=store, scheduler=DebouncedScheduler(), alarm_frequency=60.0)

        async def scenario():
            installed = await service.bootstrap()
            assert service.installed is True
            await service.shutdown()
            return installed

        assert asyncio.run(scenario()) is True


class TestBurstCoalescing:
    def test_burst_emits_one_periodic_notification(self):
        state = PersistedState(last_fix=_fix(1000), last_broadcast_timestamp=1000)
        service, store, _, sink = _make_service(
            state,
            now=100_000,
            scheduler=DebouncedScheduler(),
            alarm_frequency=0.001,
            followup_delay=0.05,
            max_fix_age=3600.0,
        )

        async def scenario():
            for i, t in enumerate((50_000, 60_000, 70_000)):
                await service.ingest(
                    RawReading(latitude=51.5 + i / 100, longitude=-0.1, accuracy=10, timestamp=t)
                )
                await asyncio.sleep(0.01)
            assert service.scheduler.is_pending(Slot.FOLLOWUP)
            await asyncio.sleep(0.15)
            await service.shutdown()

        asyncio.run(scenario())
        periodic = [n for n in sink.notifications if n.topic is Topic.PERIODIC]
        assert len(periodic) == 1
        assert periodic[0].fix.timestamp == 70_000
        assert store.read().last_broadcast_timestamp == 70_000


class TestBroadcastInvariant:
    def test_random_operations(self):
        service, store, _, _ = _make_service(now=0, provider=FakeProvider(up=False))
        rng = random.Random(1234)
        seen = {0}

        async def scenario():
            t = 1000
            for _ in range(300):
                op = rng.random()
                if op < 0.5:
                    t += rng.randint(1, 20_000)
                    reading = RawReading(
                        latitude=51.5 + rng.uniform(-0.001, 0.001),
                        longitude=-0.1 + rng.uniform(-0.001, 0.001),
                        accuracy=rng.choice([None, 5, 10, 50, 200]),
                        timestamp=t,
                    )
                    await service.ingest(reading)
                elif op < 0.95:
                    service._clock.now = t + rng.randint(0, 5000)
                    await service.run_escalation()
                else:
                    await service.force_update()

                state = store.read()
                seen.add(state.last_fix_timestamp)
                assert state.last_broadcast_timestamp in seen
                assert state.last_broadcast_timestamp <= state.last_fix_timestamp

        asyncio.run(scenario())


class TestStoreAccess:
    def test_store_io_runs_off_the_event_loop(self):
        store = ThreadRecordingStore()
        service, _, _, _ = _make_service(store=store, now=100_000, provider=FakeProvider(up=False))

        async def scenario():
            await service.bootstrap()
            await service.ingest(RawReading(latitude=1.0, longitude=2.0, timestamp=99_000))
            await service.run_escalation()
            await service.force_update()
            await service.info()
            return threading.get_ident()

        loop_thread = asyncio.run(scenario())
        assert store.threads
        assert loop_thread not in store.threads
        assert store.read().run_once is True
