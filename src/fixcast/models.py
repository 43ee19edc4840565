from pydantic import BaseModel, Field


# ── Requests ───────────────────────────────────────────────


class ReadingRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    accuracy: int | None = Field(
        None, ge=0, description="Radius of uncertainty in metres; omit if unknown"
    )
    timestamp: int | None = Field(
        None, gt=0, description="Reading time, ms since epoch; defaults to now"
    )


# ── Responses ──────────────────────────────────────────────


class CommandResponse(BaseModel):
    success: bool
    message: str


class FixResponse(BaseModel):
    latitude: float
    longitude: float
    accuracy: int | None
    timestamp: int


class FixInfoResponse(BaseModel):
    fix: FixResponse | None
    last_broadcast_timestamp: int
    any_location_data_received: bool
    any_location_data_broadcast: bool
    latest_data_broadcast: bool
    age_s: float | None


class ReadingResponse(BaseModel):
    success: bool
    position_accepted: bool
    distance_m: float | None
    fix: FixResponse | None


class NotificationResponse(BaseModel):
    topic: str
    fix: FixResponse
    sent_at: float


class HealthResponse(BaseModel):
    status: str
    provider_available: bool
    single_shot_supported: bool
    tick_installed: bool
    awaiting_reading: bool
    pending_slots: list[str]
    uptime_s: float
