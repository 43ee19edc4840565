import time

from fastapi import APIRouter, Request

from fixcast.models import HealthResponse

router = APIRouter(tags=["status"])


@router.get("/health", response_model=HealthResponse)
async def get_health(request: Request) -> HealthResponse:
    service = request.app.state.fix_service
    start = request.app.state.start_time
    provider_available = service.provider.available()

    if not service.installed:
        status = "stopped"
    elif not provider_available:
        status = "degraded"
    else:
        status = "ok"

    return HealthResponse(
        status=status,
        provider_available=provider_available,
        single_shot_supported=service.provider.supports_single_shot(),
        tick_installed=service.installed,
        awaiting_reading=service.awaiting_reading,
        pending_slots=service.scheduler.pending_slots,
        uptime_s=round(time.monotonic() - start, 1),
    )
