import enum
from datetime import datetime, timezone
from typing import List, Optional

from dateutil import parser
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def norm(s: str) -> str:
    return (s or "").strip().lower()


# ---- geo ----

class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    northeast: Coordinates
    southwest: Coordinates


class GeofenceKind(str, enum.Enum):
    SERVICE_AREA = "service_area"
    RESTRICTION = "restriction"
    NOTIFICATION = "notification"


class GeofenceRegion(BaseModel):
    model_config = ConfigDict(frozen=True)

    center: Coordinates
    radius_m: float
    enabled: bool = True
    kind: GeofenceKind = GeofenceKind.SERVICE_AREA
    name: Optional[str] = None


class Address(BaseModel):
    model_config = ConfigDict(frozen=True)

    formatted_address: str
    city: str = ""
    country: str = ""
    coordinates: Coordinates
    street_number: Optional[str] = None
    street_name: Optional[str] = None
    neighborhood: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    place_id: Optional[str] = None


class LocationSearchResult(BaseModel):
    place_id: str
    description: str
    main_text: str
    secondary_text: str = ""
    coordinates: Optional[Coordinates] = None
    types: List[str] = Field(default_factory=list)
    distance_meters: Optional[float] = None


class PermissionStatus(str, enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"
    UNAVAILABLE = "unavailable"


class LocationConfig(BaseModel):
    enable_high_accuracy: bool = True
    timeout_ms: int = Field(default=10000, gt=0)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)


class TrackingStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class LocationSample(BaseModel):
    coordinates: Coordinates
    timestamp: datetime = Field(default_factory=utcnow)


class TrackingSession(BaseModel):
    id: str
    user_id: str
    request_id: Optional[str] = None
    status: TrackingStatus = TrackingStatus.ACTIVE
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    locations: List[LocationSample] = Field(default_factory=list)


# ---- mechanics ----

class WorkingHours(BaseModel):
    """Daily window in HH:MM; days use 0 = Sunday .. 6 = Saturday."""

    start: str = "08:00"
    end: str = "18:00"
    days: set[int] = Field(default_factory=lambda: {1, 2, 3, 4, 5, 6})

    @field_validator("start", "end")
    @classmethod
    def _check_clock(cls, v: str) -> str:
        try:
            parser.parse(v).time()
        except (ValueError, OverflowError):
            raise ValueError(f"Invalid time of day: {v!r}")
        return v

    @field_validator("days")
    @classmethod
    def _check_days(cls, v: set[int]) -> set[int]:
        bad = [d for d in v if d < 0 or d > 6]
        if bad:
            raise ValueError(f"Invalid weekday(s): {sorted(bad)}")
        return v

    def contains(self, when: datetime) -> bool:
        # datetime.weekday() is Monday=0; shift to Sunday=0
        day = (when.weekday() + 1) % 7
        if day not in self.days:
            return False
        start = parser.parse(self.start).time()
        end = parser.parse(self.end).time()
        now = when.time().replace(tzinfo=None)
        if start <= end:
            return start <= now < end
        # overnight window, e.g. 22:00-06:00
        return now >= start or now < end


class MechanicAvailability(BaseModel):
    mechanic_id: str
    is_available: bool = True
    max_concurrent_jobs: int = 3
    current_active_jobs: int = 0
    base_location: Address
    service_radius_km: float = 25.0
    specializations: set[str] = Field(default_factory=set)
    hourly_rate: float = 50.0
    emergency_service: bool = False
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    updated_at: Optional[datetime] = None

    @field_validator("specializations")
    @classmethod
    def _normalize_specializations(cls, v: set[str]) -> set[str]:
        return {norm(s) for s in v if norm(s)}

    @property
    def location(self) -> Coordinates:
        return self.base_location.coordinates

    def service_area(self) -> GeofenceRegion:
        return GeofenceRegion(
            center=self.location,
            radius_m=self.service_radius_km * 1000,
            kind=GeofenceKind.SERVICE_AREA,
            name=f"service-area:{self.mechanic_id}",
        )


# ---- requests ----

class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DIAGNOSED = "diagnosed"
    QUOTED = "quoted"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    PARTS_REQUESTED = "parts_requested"
    PARTS_RECEIVED = "parts_received"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)


class Request(BaseModel):
    id: str
    car_id: str
    owner_id: str
    mechanic_id: Optional[str] = None
    location: Coordinates
    urgency: Urgency = Urgency.MEDIUM
    status: RequestStatus = RequestStatus.PENDING
    car_make: Optional[str] = None
    service_tag: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    slot_released: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def implied_specialization(self) -> Optional[str]:
        tag = norm(self.service_tag or "") or norm(self.car_make or "")
        return tag or None


class MatchFactors(BaseModel):
    proximity: float
    availability: float
    specialization: float
    rating: float
    price: float


class LocationBasedRequestMatch(BaseModel):
    request_id: str
    mechanic_id: str
    distance_km: float
    travel_minutes_est: int
    compatibility_score: int
    factors: MatchFactors


# ---- HTTP bodies ----

class CreateRequest(BaseModel):
    car_id: str
    latitude: float
    longitude: float
    urgency: Urgency = Urgency.MEDIUM
    car_make: Optional[str] = None
    service_tag: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class TransitionBody(BaseModel):
    status: RequestStatus


class MatchBody(BaseModel):
    request_id: str
    max_radius_km: Optional[float] = Field(default=None, gt=0)
    required_specializations: List[str] = Field(default_factory=list)
    at: Optional[datetime] = None  # only mechanics on shift at this instant
    limit: int = Field(default=20, ge=1, le=50)


class MatchResponse(BaseModel):
    request_id: str
    matches: List[LocationBasedRequestMatch]
    cached: bool = False


class SetAvailability(BaseModel):
    is_available: bool = True
    max_concurrent_jobs: int = 3
    base_location: Address
    service_radius_km: float = 25.0
    specializations: List[str] = Field(default_factory=list)
    hourly_rate: float = 50.0
    emergency_service: bool = False
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    rating: Optional[float] = Field(default=None, ge=0, le=5)
