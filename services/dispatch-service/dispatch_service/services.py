import logging
from datetime import datetime
from typing import Iterable

from .availability import AvailabilityRegistry
from .cache import MatchCache
from .errors import InvalidState
from .events import EventSink, MatchesRanked, NullEventSink
from .lifecycle import RequestLifecycle
from .location import LocationService
from .repository import Repository
from .schemas import (
    Coordinates,
    CreateRequest,
    LocationBasedRequestMatch,
    MechanicAvailability,
    Request,
    RequestStatus,
    SetAvailability,
)
from .scoring import MatchingEngine, ScoringWeights

_LOGGER = logging.getLogger(__name__)


class Dispatcher:
    """
    Wires the dispatch core together for the HTTP layer and the consumer:
    one repository, one event sink, one registry shared by matching and the
    lifecycle so slot accounting goes through a single place.
    """

    def __init__(
        self,
        repository: Repository,
        events: EventSink | None = None,
        cache: MatchCache | None = None,
        location: LocationService | None = None,
        weights: ScoringWeights | None = None,
    ):
        self.repository = repository
        self.events = events or NullEventSink()
        self.cache = cache or MatchCache()
        self.location = location or LocationService()

        self.registry = AvailabilityRegistry(repository, self.events)
        self.engine = MatchingEngine(self.registry, weights or ScoringWeights.from_config())
        self.lifecycle = RequestLifecycle(repository, self.registry, self.events)

    # ---- requests ----

    async def create_request(self, owner_id: str, data: CreateRequest) -> Request:
        return await self.lifecycle.create(
            owner_id=owner_id,
            car_id=data.car_id,
            location=Coordinates(lat=data.latitude, lng=data.longitude),
            urgency=data.urgency,
            car_make=data.car_make,
            service_tag=data.service_tag,
            title=data.title,
            description=data.description,
        )

    async def get_request(self, request_id: str) -> Request:
        return await self.lifecycle.get(request_id)

    async def claim(self, request_id: str, mechanic_id: str) -> Request:
        request = await self.lifecycle.claim(request_id, mechanic_id)
        await self.cache.invalidate(request_id)
        return request

    async def transition(self, request_id: str, new_status: RequestStatus, actor_id: str) -> Request:
        request = await self.lifecycle.transition(request_id, new_status, actor_id)
        await self.cache.invalidate(request_id)
        return request

    # ---- matching ----

    async def match_request(
        self,
        request_id: str,
        max_radius_km: float | None = None,
        required_specializations: Iterable[str] = (),
        at: datetime | None = None,
        limit: int = 20,
    ) -> tuple[list[LocationBasedRequestMatch], bool]:
        """Ranked matches for a pending request and whether they came from cache."""
        request = await self.lifecycle.get(request_id)
        if request.status != RequestStatus.PENDING:
            raise InvalidState(
                f"Request {request_id} is {request.status.value}; only pending requests are matched",
                {"request_id": request_id, "status": request.status.value},
            )

        required = list(required_specializations)
        # only the default query is cached; filtered ones are cheap enough to recompute
        cacheable = max_radius_km is None and not required and at is None

        if cacheable:
            cached = await self.cache.get(request_id)
            if cached is not None:
                return cached[:limit], True

        matches = await self.engine.match(request, max_radius_km, required, at=at)
        if cacheable:
            await self.cache.set(request_id, matches)

        top = matches[:limit]
        await self.events.publish(
            MatchesRanked(
                request_id=request_id,
                ranked_mechanic_ids=[m.mechanic_id for m in top],
                urgency=request.urgency,
            )
        )
        return top, False

    # ---- availability ----

    async def set_availability(self, mechanic_id: str, data: SetAvailability) -> MechanicAvailability:
        availability = MechanicAvailability(mechanic_id=mechanic_id, **data.model_dump())
        return await self.registry.update_profile(mechanic_id, availability)

    async def get_availability(self, mechanic_id: str) -> MechanicAvailability:
        return await self.registry.get(mechanic_id)
