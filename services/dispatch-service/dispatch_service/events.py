import logging
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

from shared.events import build_event, to_json
from shared.rabbitmq import RabbitPublisher

from .schemas import Coordinates, RequestStatus, Urgency, utcnow

_LOGGER = logging.getLogger(__name__)


class RequestCreated(BaseModel):
    event_type: Literal["request.created"] = "request.created"
    request_id: str
    owner_id: str
    car_id: str
    urgency: Urgency
    location: Coordinates
    timestamp: datetime = Field(default_factory=utcnow)


class RequestClaimed(BaseModel):
    """Also the hand-off point for chat: owner and mechanic are both known."""

    event_type: Literal["request.claimed"] = "request.claimed"
    request_id: str
    from_status: RequestStatus = RequestStatus.PENDING
    to_status: RequestStatus = RequestStatus.CLAIMED
    actor_id: str
    owner_id: str
    mechanic_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class RequestTransitioned(BaseModel):
    event_type: Literal["request.transitioned"] = "request.transitioned"
    request_id: str
    from_status: RequestStatus
    to_status: RequestStatus
    actor_id: str
    owner_id: str
    mechanic_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class MatchesRanked(BaseModel):
    event_type: Literal["request.matched"] = "request.matched"
    request_id: str
    ranked_mechanic_ids: List[str]
    urgency: Urgency
    timestamp: datetime = Field(default_factory=utcnow)


class AvailabilityUpdated(BaseModel):
    event_type: Literal["availability.updated"] = "availability.updated"
    mechanic_id: str
    is_available: bool
    current_active_jobs: int
    max_concurrent_jobs: int
    timestamp: datetime = Field(default_factory=utcnow)


DomainEvent = Annotated[
    Union[RequestCreated, RequestClaimed, RequestTransitioned, MatchesRanked, AvailabilityUpdated],
    Field(discriminator="event_type"),
]


class EventSink(Protocol):
    async def publish(self, event: DomainEvent) -> None:
        ...


def to_envelope(event: DomainEvent) -> dict:
    return build_event(event.event_type, event.model_dump(mode="json", exclude={"event_type"}))


class RabbitEventSink:
    """Publishes domain events on the topic exchange, routed by event type."""

    def __init__(self, publisher: RabbitPublisher):
        self.publisher = publisher

    async def publish(self, event: DomainEvent) -> None:
        await self.publisher.publish(event.event_type, to_json(to_envelope(event)))


class RecordingEventSink:
    def __init__(self):
        self.events: list = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.event_type == event_type]


class NullEventSink:
    async def publish(self, event: DomainEvent) -> None:
        _LOGGER.debug("Dropping %s event (no sink configured)", event.event_type)
