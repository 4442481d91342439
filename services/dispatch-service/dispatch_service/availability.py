import logging
from datetime import datetime
from typing import Iterable

from .errors import CapacityExceeded, InvalidCoordinates, InvalidState, NotFound
from .events import AvailabilityUpdated, EventSink, NullEventSink
from .geo import bounding_box, distance_km, is_valid, is_within
from .repository import Repository
from .schemas import Coordinates, MechanicAvailability, norm, utcnow

_LOGGER = logging.getLogger(__name__)


class AvailabilityRegistry:
    """
    Owns each mechanic's MechanicAvailability.

    current_active_jobs is only ever moved by reserve_slot/release_slot, which
    are single conditional updates at the repository and therefore
    linearizable per mechanic.
    """

    def __init__(self, repository: Repository, events: EventSink | None = None):
        self.repository = repository
        self.events = events or NullEventSink()

    def _validate(self, availability: MechanicAvailability) -> None:
        if availability.max_concurrent_jobs < 1:
            raise InvalidState(
                "max_concurrent_jobs must be at least 1",
                {"max_concurrent_jobs": availability.max_concurrent_jobs},
            )
        if availability.current_active_jobs < 0:
            raise InvalidState(
                "current_active_jobs cannot be negative",
                {"current_active_jobs": availability.current_active_jobs},
            )
        if availability.current_active_jobs > availability.max_concurrent_jobs:
            raise InvalidState(
                "current_active_jobs exceeds max_concurrent_jobs",
                {
                    "current_active_jobs": availability.current_active_jobs,
                    "max_concurrent_jobs": availability.max_concurrent_jobs,
                },
            )
        if availability.service_radius_km < 0:
            raise InvalidState("service_radius_km cannot be negative")
        if not is_valid(availability.location):
            raise InvalidCoordinates(
                "Mechanic base location has invalid coordinates",
                {"lat": availability.location.lat, "lng": availability.location.lng},
            )

    async def upsert(self, mechanic_id: str, availability: MechanicAvailability) -> MechanicAvailability:
        self._validate(availability)

        stored = availability.model_copy(update={"mechanic_id": mechanic_id, "updated_at": utcnow()})
        await self.repository.save_availability(mechanic_id, stored)
        await self._announce(stored)
        return stored

    async def update_profile(self, mechanic_id: str, availability: MechanicAvailability) -> MechanicAvailability:
        """
        Upsert from an outside source. The stored active-jobs count is left
        alone, so a concurrent reserve or release is never overwritten.
        """
        profile = availability.model_copy(
            update={"mechanic_id": mechanic_id, "current_active_jobs": 0, "updated_at": utcnow()}
        )
        self._validate(profile)

        stored = await self.repository.save_profile(mechanic_id, profile)
        if stored is None:
            raise InvalidState(
                f"Mechanic {mechanic_id} has more open jobs than the new capacity",
                {"mechanic_id": mechanic_id, "max_concurrent_jobs": profile.max_concurrent_jobs},
            )
        await self._announce(stored)
        return stored

    async def get(self, mechanic_id: str) -> MechanicAvailability:
        availability = await self.repository.load_availability(mechanic_id)
        if availability is None:
            raise NotFound(f"Mechanic {mechanic_id} has no availability", {"mechanic_id": mechanic_id})
        return availability

    async def find_candidates(
        self,
        origin: Coordinates,
        max_radius_km: float,
        required_specializations: Iterable[str] = (),
        at: datetime | None = None,
    ) -> list[MechanicAvailability]:
        if not is_valid(origin):
            raise InvalidCoordinates("Invalid origin coordinates", {"lat": origin.lat, "lng": origin.lng})

        required = {norm(s) for s in required_specializations if norm(s)}
        box = bounding_box(origin, max_radius_km)

        results = []
        for a in await self.repository.list_availability(box):
            if not a.is_available:
                continue
            if a.current_active_jobs >= a.max_concurrent_jobs:
                continue
            if not required.issubset(a.specializations):
                continue
            if at is not None and not a.working_hours.contains(at):
                continue

            if not is_within(origin, a.service_area()):
                continue
            if distance_km(origin, a.location) > max_radius_km:
                continue

            results.append(a)

        _LOGGER.debug(
            "Found %d candidates within %.1fkm of (%.5f, %.5f)",
            len(results), max_radius_km, origin.lat, origin.lng,
        )
        return results

    async def reserve_slot(self, mechanic_id: str) -> MechanicAvailability:
        updated = await self.repository.adjust_active_jobs(mechanic_id, +1)
        if updated is None:
            raise CapacityExceeded(
                f"Mechanic {mechanic_id} is at capacity",
                {"mechanic_id": mechanic_id},
            )
        await self._announce(updated)
        return updated

    async def release_slot(self, mechanic_id: str) -> MechanicAvailability:
        updated = await self.repository.adjust_active_jobs(mechanic_id, -1)
        if updated is None:
            raise InvalidState(
                f"Mechanic {mechanic_id} has no active job to release",
                {"mechanic_id": mechanic_id},
            )
        await self._announce(updated)
        return updated

    async def _announce(self, a: MechanicAvailability) -> None:
        await self.events.publish(
            AvailabilityUpdated(
                mechanic_id=a.mechanic_id,
                is_available=a.is_available,
                current_active_jobs=a.current_active_jobs,
                max_concurrent_jobs=a.max_concurrent_jobs,
            )
        )
