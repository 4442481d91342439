"""
Persistence collaborator for the dispatch core.

The core only needs a narrow surface: load/insert a request, compare-and-set
its status, load/save a mechanic's availability and atomically nudge the
active-jobs counter. ``SqlRepository`` backs it with async SQLAlchemy;
``InMemoryRepository`` is a lock-guarded fake used by tests and local runs.
"""
import abc
import asyncio
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .errors import NotFound
from .geo import box_contains
from .models import AvailabilityRecord, RequestRecord
from .schemas import (
    BoundingBox,
    Coordinates,
    MechanicAvailability,
    Request,
    RequestStatus,
)

REQUEST_CAS_FIELDS = {"status", "mechanic_id", "slot_released", "updated_at"}


class Repository(abc.ABC):

    @abc.abstractmethod
    async def insert_request(self, request: Request) -> None:
        ...

    @abc.abstractmethod
    async def load_request(self, request_id: str) -> Request | None:
        ...

    @abc.abstractmethod
    async def cas_update_request(
        self,
        request_id: str,
        expected_status: RequestStatus,
        fields: dict[str, Any],
    ) -> Request | None:
        """
        Apply fields only if the stored status still equals expected_status.
        Returns the updated request, or None when the request is missing or
        its status moved on.
        """

    @abc.abstractmethod
    async def load_availability(self, mechanic_id: str) -> MechanicAvailability | None:
        ...

    @abc.abstractmethod
    async def save_availability(self, mechanic_id: str, availability: MechanicAvailability) -> None:
        ...

    @abc.abstractmethod
    async def save_profile(self, mechanic_id: str, availability: MechanicAvailability) -> MechanicAvailability | None:
        """
        Write every profile field but current_active_jobs, in one atomic step.
        A new mechanic starts at zero active jobs. Returns None when the
        stored active jobs exceed the new max_concurrent_jobs.
        """

    @abc.abstractmethod
    async def list_availability(self, box: BoundingBox | None = None) -> list[MechanicAvailability]:
        ...

    @abc.abstractmethod
    async def adjust_active_jobs(self, mechanic_id: str, delta: int) -> MechanicAvailability | None:
        """
        Atomically add delta to current_active_jobs, keeping it within
        [0, max_concurrent_jobs]. Returns None when the bound would be
        crossed; raises NotFound for an unknown mechanic.
        """


def _check_cas_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - REQUEST_CAS_FIELDS
    if unknown:
        raise ValueError(f"Fields not writable through CAS: {sorted(unknown)}")


# ---- in-memory ----

class InMemoryRepository(Repository):

    def __init__(self):
        self._requests: dict[str, Request] = {}
        self._availability: dict[str, MechanicAvailability] = {}
        self._lock = asyncio.Lock()

    async def insert_request(self, request: Request) -> None:
        async with self._lock:
            if request.id in self._requests:
                raise ValueError(f"Request {request.id} already exists")
            self._requests[request.id] = request.model_copy(deep=True)

    async def load_request(self, request_id: str) -> Request | None:
        async with self._lock:
            stored = self._requests.get(request_id)
            return stored.model_copy(deep=True) if stored else None

    async def cas_update_request(self, request_id, expected_status, fields):
        _check_cas_fields(fields)
        async with self._lock:
            stored = self._requests.get(request_id)
            if stored is None or stored.status != expected_status:
                return None
            updated = stored.model_copy(update=fields, deep=True)
            self._requests[request_id] = updated
            return updated.model_copy(deep=True)

    async def load_availability(self, mechanic_id: str) -> MechanicAvailability | None:
        async with self._lock:
            stored = self._availability.get(mechanic_id)
            return stored.model_copy(deep=True) if stored else None

    async def save_availability(self, mechanic_id: str, availability: MechanicAvailability) -> None:
        async with self._lock:
            self._availability[mechanic_id] = availability.model_copy(
                update={"mechanic_id": mechanic_id}, deep=True
            )

    async def save_profile(self, mechanic_id: str, availability: MechanicAvailability) -> MechanicAvailability | None:
        async with self._lock:
            stored = self._availability.get(mechanic_id)
            current = stored.current_active_jobs if stored else 0
            if current > availability.max_concurrent_jobs:
                return None
            updated = availability.model_copy(
                update={"mechanic_id": mechanic_id, "current_active_jobs": current}, deep=True
            )
            self._availability[mechanic_id] = updated
            return updated.model_copy(deep=True)

    async def list_availability(self, box: BoundingBox | None = None) -> list[MechanicAvailability]:
        async with self._lock:
            items = list(self._availability.values())
        return [
            a.model_copy(deep=True)
            for a in items
            if box is None or box_contains(box, a.location)
        ]

    async def adjust_active_jobs(self, mechanic_id: str, delta: int) -> MechanicAvailability | None:
        async with self._lock:
            stored = self._availability.get(mechanic_id)
            if stored is None:
                raise NotFound(f"Mechanic {mechanic_id} has no availability", {"mechanic_id": mechanic_id})
            new_value = stored.current_active_jobs + delta
            if new_value < 0 or new_value > stored.max_concurrent_jobs:
                return None
            updated = stored.model_copy(update={"current_active_jobs": new_value})
            self._availability[mechanic_id] = updated
            return updated.model_copy(deep=True)


# ---- SQL ----

def _request_from_row(row) -> Request:
    return Request(
        id=row["id"],
        car_id=row["car_id"],
        owner_id=row["owner_id"],
        mechanic_id=row["mechanic_id"],
        location=Coordinates(lat=row["latitude"], lng=row["longitude"]),
        urgency=row["urgency"],
        status=row["status"],
        car_make=row["car_make"],
        service_tag=row["service_tag"],
        title=row["title"],
        description=row["description"],
        slot_released=bool(row["slot_released"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _request_values(request: Request) -> dict:
    return {
        "id": request.id,
        "car_id": request.car_id,
        "owner_id": request.owner_id,
        "mechanic_id": request.mechanic_id,
        "latitude": request.location.lat,
        "longitude": request.location.lng,
        "urgency": request.urgency.value,
        "status": request.status.value,
        "car_make": request.car_make,
        "service_tag": request.service_tag,
        "title": request.title,
        "description": request.description,
        "slot_released": request.slot_released,
        "created_at": request.created_at,
        "updated_at": request.updated_at,
    }


def _availability_from_row(row) -> MechanicAvailability:
    return MechanicAvailability.model_validate(
        {
            "mechanic_id": row["mechanic_id"],
            "is_available": row["is_available"],
            "max_concurrent_jobs": row["max_concurrent_jobs"],
            "current_active_jobs": row["current_active_jobs"],
            "base_location": row["base_location"],
            "service_radius_km": row["service_radius_km"],
            "specializations": row["specializations"] or [],
            "hourly_rate": row["hourly_rate"],
            "emergency_service": row["emergency_service"],
            "working_hours": row["working_hours"],
            "rating": row["rating"],
            "updated_at": row["updated_at"],
        }
    )


def _availability_values(mechanic_id: str, a: MechanicAvailability) -> dict:
    return {
        "mechanic_id": mechanic_id,
        "is_available": a.is_available,
        "max_concurrent_jobs": a.max_concurrent_jobs,
        "current_active_jobs": a.current_active_jobs,
        "latitude": a.location.lat,
        "longitude": a.location.lng,
        "base_location": a.base_location.model_dump(mode="json"),
        "service_radius_km": a.service_radius_km,
        "specializations": sorted(a.specializations),
        "hourly_rate": a.hourly_rate,
        "emergency_service": a.emergency_service,
        "working_hours": {
            "start": a.working_hours.start,
            "end": a.working_hours.end,
            "days": sorted(a.working_hours.days),
        },
        "rating": a.rating,
        "updated_at": a.updated_at,
    }


class SqlRepository(Repository):
    """Async SQLAlchemy repository; CAS is a conditional UPDATE ... RETURNING."""

    def __init__(self, session_factory):
        self._sessions = session_factory

    async def insert_request(self, request: Request) -> None:
        async with self._sessions() as db:
            db.add(RequestRecord(**_request_values(request)))
            await db.commit()

    async def load_request(self, request_id: str) -> Request | None:
        t = RequestRecord.__table__
        async with self._sessions() as db:
            res = await db.execute(select(t).where(t.c.id == request_id))
            row = res.mappings().first()
            return _request_from_row(row) if row else None

    async def cas_update_request(self, request_id, expected_status, fields):
        _check_cas_fields(fields)
        values = {
            k: (v.value if isinstance(v, RequestStatus) else v)
            for k, v in fields.items()
        }

        t = RequestRecord.__table__
        stmt = (
            update(t)
            .where(t.c.id == request_id, t.c.status == expected_status.value)
            .values(**values)
            .returning(*t.c)
        )
        async with self._sessions() as db:
            res = await db.execute(stmt)
            row = res.mappings().first()
            await db.commit()
            return _request_from_row(row) if row else None

    async def load_availability(self, mechanic_id: str) -> MechanicAvailability | None:
        t = AvailabilityRecord.__table__
        async with self._sessions() as db:
            res = await db.execute(select(t).where(t.c.mechanic_id == mechanic_id))
            row = res.mappings().first()
            return _availability_from_row(row) if row else None

    async def save_availability(self, mechanic_id: str, availability: MechanicAvailability) -> None:
        async with self._sessions() as db:
            await db.merge(AvailabilityRecord(**_availability_values(mechanic_id, availability)))
            await db.commit()

    async def save_profile(self, mechanic_id: str, availability: MechanicAvailability) -> MechanicAvailability | None:
        t = AvailabilityRecord.__table__
        profile = _availability_values(mechanic_id, availability)
        del profile["mechanic_id"]
        del profile["current_active_jobs"]

        stmt = (
            update(t)
            .where(
                t.c.mechanic_id == mechanic_id,
                t.c.current_active_jobs <= availability.max_concurrent_jobs,
            )
            .values(**profile)
            .returning(*t.c)
        )
        created = availability.model_copy(update={"mechanic_id": mechanic_id, "current_active_jobs": 0})

        async with self._sessions() as db:
            res = await db.execute(stmt)
            row = res.mappings().first()
            if row:
                await db.commit()
                return _availability_from_row(row)

            exists = await db.execute(select(t.c.mechanic_id).where(t.c.mechanic_id == mechanic_id))
            if exists.first() is not None:
                return None

            db.add(AvailabilityRecord(**_availability_values(mechanic_id, created)))
            try:
                await db.commit()
                return created
            except IntegrityError:
                await db.rollback()

        # another writer inserted this mechanic first; apply as an update
        return await self.save_profile(mechanic_id, availability)

    async def list_availability(self, box: BoundingBox | None = None) -> list[MechanicAvailability]:
        t = AvailabilityRecord.__table__
        stmt = select(t)
        if box is not None:
            stmt = stmt.where(t.c.latitude.between(box.southwest.lat, box.northeast.lat))
            # longitude filter only when the box does not spill over the antimeridian
            if box.southwest.lng >= -180 and box.northeast.lng <= 180:
                stmt = stmt.where(t.c.longitude.between(box.southwest.lng, box.northeast.lng))

        async with self._sessions() as db:
            res = await db.execute(stmt)
            return [_availability_from_row(row) for row in res.mappings().all()]

    async def adjust_active_jobs(self, mechanic_id: str, delta: int) -> MechanicAvailability | None:
        t = AvailabilityRecord.__table__
        new_value = t.c.current_active_jobs + delta
        stmt = (
            update(t)
            .where(
                t.c.mechanic_id == mechanic_id,
                new_value >= 0,
                new_value <= t.c.max_concurrent_jobs,
            )
            .values(current_active_jobs=new_value)
            .returning(*t.c)
        )
        async with self._sessions() as db:
            res = await db.execute(stmt)
            row = res.mappings().first()
            await db.commit()
            if row:
                return _availability_from_row(row)

            exists = await db.execute(select(t.c.mechanic_id).where(t.c.mechanic_id == mechanic_id))
            if exists.first() is None:
                raise NotFound(f"Mechanic {mechanic_id} has no availability", {"mechanic_id": mechanic_id})
            return None
