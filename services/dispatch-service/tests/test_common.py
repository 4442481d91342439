"""
Shared helpers and factory functions for dispatch-service tests.
Import from this module in each test file to avoid duplication.
"""

from __future__ import annotations

import asyncio

from dispatch_service.availability import AvailabilityRegistry
from dispatch_service.events import RecordingEventSink
from dispatch_service.lifecycle import RequestLifecycle
from dispatch_service.repository import InMemoryRepository
from dispatch_service.schemas import (
    Address,
    Coordinates,
    MechanicAvailability,
    PermissionStatus,
    Request,
    RequestStatus,
    Urgency,
)

# Accra, roughly where the scenarios in these tests live.
ORIGIN = Coordinates(lat=5.60, lng=-0.19)
NEARBY = Coordinates(lat=5.61, lng=-0.18)  # ~1.57 km from ORIGIN


def make_address(lat: float = NEARBY.lat, lng: float = NEARBY.lng, **kwargs) -> Address:
    defaults = dict(
        formatted_address=f"{lat:.4f}, {lng:.4f}",
        city="Accra",
        country="Ghana",
        coordinates=Coordinates(lat=lat, lng=lng),
    )
    defaults.update(kwargs)
    return Address(**defaults)


def make_availability(
    mechanic_id: str = "m1",
    lat: float = NEARBY.lat,
    lng: float = NEARBY.lng,
    **kwargs,
) -> MechanicAvailability:
    defaults = dict(
        mechanic_id=mechanic_id,
        is_available=True,
        max_concurrent_jobs=3,
        current_active_jobs=0,
        base_location=make_address(lat, lng),
        service_radius_km=10.0,
        specializations={"toyota"},
        hourly_rate=50.0,
        emergency_service=False,
        rating=4.0,
    )
    defaults.update(kwargs)
    return MechanicAvailability(**defaults)


def make_request(
    request_id: str = "r1",
    lat: float = ORIGIN.lat,
    lng: float = ORIGIN.lng,
    **kwargs,
) -> Request:
    defaults = dict(
        id=request_id,
        car_id="car-1",
        owner_id="owner-1",
        location=Coordinates(lat=lat, lng=lng),
        urgency=Urgency.MEDIUM,
        status=RequestStatus.PENDING,
        car_make="Toyota",
    )
    defaults.update(kwargs)
    return Request(**defaults)


class Core:
    """A wired-up dispatch core over an in-memory repository."""

    def __init__(self, repository: InMemoryRepository | None = None):
        self.repository = repository or InMemoryRepository()
        self.events = RecordingEventSink()
        self.registry = AvailabilityRegistry(self.repository, self.events)
        self.lifecycle = RequestLifecycle(self.repository, self.registry, self.events)

    async def add_mechanic(self, mechanic_id: str = "m1", **kwargs) -> MechanicAvailability:
        return await self.registry.upsert(mechanic_id, make_availability(mechanic_id, **kwargs))

    async def add_request(self, request_id: str = "r1", **kwargs) -> Request:
        request = make_request(request_id, **kwargs)
        await self.repository.insert_request(request)
        return request

    async def active_jobs(self, mechanic_id: str) -> int:
        return (await self.registry.get(mechanic_id)).current_active_jobs


class SlowReadRepository(InMemoryRepository):
    """Reads yield to the event loop first, as a database round trip would."""

    async def load_availability(self, mechanic_id: str):
        await asyncio.sleep(0.01)
        return await super().load_availability(mechanic_id)


class FakePositionProvider:
    """
    Position source that plays back a script of outcomes: each entry is
    either Coordinates to return or an exception to raise.
    """

    def __init__(self, *outcomes, permission: PermissionStatus = PermissionStatus.GRANTED, delay: float = 0):
        self.outcomes = list(outcomes)
        self.permission = permission
        self.delay = delay
        self.calls = 0

    async def get_position(self, enable_high_accuracy: bool) -> Coordinates:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def permission_status(self) -> PermissionStatus:
        return self.permission


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
