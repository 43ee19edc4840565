import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fixcast.config import Settings
from fixcast.escalation import FixService
from fixcast.exceptions import StoreError
from fixcast.notifier import FanoutSink, LogSink, NotificationSink, RecordingSink, WebhookSink
from fixcast.positioning.group import ProviderGroup
from fixcast.positioning.mavlink import MavlinkPositionFeed
from fixcast.positioning.nmea import NmeaGpsProvider
from fixcast.routes.fix import router as fix_router
from fixcast.routes.status import router as status_router
from fixcast.store import JsonFileStateStore, MemoryStateStore, StateStore


def build_store(config: Settings) -> StateStore:
    if config.state_path:
        return JsonFileStateStore(config.state_path)
    return MemoryStateStore()


def build_provider(config: Settings) -> ProviderGroup:
    providers = []
    if config.gps_enabled:
        providers.append(NmeaGpsProvider(config))
    if config.mavlink_enabled:
        providers.append(MavlinkPositionFeed(config))
    return ProviderGroup(providers)


def build_sinks(config: Settings, recorder: RecordingSink) -> NotificationSink:
    sinks: list[NotificationSink] = [LogSink(), recorder]
    if config.webhook_url:
        sinks.append(WebhookSink(config.webhook_url, timeout=config.webhook_timeout))
    return FanoutSink(sinks)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = Settings()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    )
    logger = logging.getLogger("fixcast")
    if config.debug_logging:
        logger.setLevel(logging.DEBUG)

    recorder = RecordingSink(maxlen=config.recent_notifications)
    provider = build_provider(config)
    sink = build_sinks(config, recorder)
    service = FixService(config, build_store(config), provider, sink)

    app.state.config = config
    app.state.fix_service = service
    app.state.recorder = recorder
    app.state.start_time = time.monotonic()

    await sink.start()
    await provider.start()
    try:
        await service.bootstrap()
    except StoreError as exc:
        logger.error("Bootstrap failed, periodic tick not installed: %s", exc)
    logger.info(
        "fixcast ready: providers=%s tick=%.0fs max_age=%.0fs",
        [p.name for p in provider.providers] or "none",
        config.alarm_frequency,
        config.max_fix_age,
    )

    yield

    await service.shutdown()
    await provider.stop()
    await sink.stop()
    logger.info("fixcast stopped")


app = FastAPI(
    title="fixcast",
    description="Keeps one best-known position fix and announces it without waking the device needlessly",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(fix_router)
app.include_router(status_router)
