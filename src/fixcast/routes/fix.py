from fastapi import APIRouter, HTTPException, Request

from fixcast.exceptions import StoreError
from fixcast.fix import Fix, RawReading, now_ms
from fixcast.models import (
    CommandResponse,
    FixInfoResponse,
    FixResponse,
    NotificationResponse,
    ReadingRequest,
    ReadingResponse,
)

router = APIRouter(tags=["fix"])


def _fix_response(fix: Fix | None) -> FixResponse | None:
    if fix is None:
        return None
    return FixResponse(**fix.model_dump())


@router.get("/fix", response_model=FixInfoResponse)
async def get_fix(request: Request) -> FixInfoResponse:
    service = request.app.state.fix_service
    try:
        state = await service.info()
    except StoreError as exc:
        raise HTTPException(503, str(exc))
    if state.last_fix is None:
        raise HTTPException(404, "No location data received yet")

    return FixInfoResponse(
        fix=_fix_response(state.last_fix),
        last_broadcast_timestamp=state.last_broadcast_timestamp,
        any_location_data_received=state.any_location_data_received,
        any_location_data_broadcast=state.any_location_data_broadcast,
        latest_data_broadcast=state.latest_data_broadcast,
        age_s=(
            round(state.age_seconds(now_ms()), 1)
            if state.any_location_data_received
            else None
        ),
    )


@router.post("/fix/readings", response_model=ReadingResponse)
async def post_reading(req: ReadingRequest, request: Request) -> ReadingResponse:
    service = request.app.state.fix_service
    reading = RawReading(
        latitude=req.lat,
        longitude=req.lon,
        accuracy=req.accuracy,
        timestamp=req.timestamp or now_ms(),
    )
    try:
        result = await service.ingest(reading)
    except StoreError as exc:
        raise HTTPException(503, str(exc))

    if result is None:
        return ReadingResponse(
            success=False, position_accepted=False, distance_m=None, fix=None
        )
    return ReadingResponse(
        success=True,
        position_accepted=result.position_accepted,
        distance_m=(
            round(result.distance_m, 2) if result.distance_m is not None else None
        ),
        fix=_fix_response(result.fix),
    )


@router.post("/fix/force_update", response_model=CommandResponse)
async def force_update(request: Request) -> CommandResponse:
    service = request.app.state.fix_service
    try:
        outcome = await service.force_update()
    except StoreError as exc:
        raise HTTPException(503, str(exc))
    return CommandResponse(success=True, message=outcome.value)


@router.get("/notifications", response_model=list[NotificationResponse])
async def get_notifications(request: Request) -> list[NotificationResponse]:
    recorder = request.app.state.recorder
    return [
        NotificationResponse(
            topic=n.topic.value, fix=_fix_response(n.fix), sent_at=n.sent_at
        )
        for n in reversed(recorder.notifications)
    ]
