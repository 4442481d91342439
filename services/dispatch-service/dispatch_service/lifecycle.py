"""
Request lifecycle state machine.

    pending         -> claimed | cancelled
    claimed         -> diagnosed | cancelled
    diagnosed       -> quoted | cancelled
    quoted          -> approved | cancelled
    approved        -> in_progress | cancelled
    in_progress     -> parts_requested | completed | cancelled
    parts_requested -> parts_received | cancelled
    parts_received  -> completed | cancelled
    completed, cancelled are terminal

Every write is a compare-and-set on the status the caller observed, so two
actors racing on the same request cannot both win. Events are published only
after the write has committed.
"""
import logging
import uuid

from .availability import AvailabilityRegistry
from .errors import (
    AlreadyClaimed,
    DispatchError,
    Forbidden,
    InvalidCoordinates,
    InvalidTransition,
    NotFound,
)
from .events import (
    EventSink,
    NullEventSink,
    RequestClaimed,
    RequestCreated,
    RequestTransitioned,
)
from .geo import is_valid
from .repository import Repository
from .schemas import Coordinates, Request, RequestStatus, Urgency, utcnow

_LOGGER = logging.getLogger(__name__)

S = RequestStatus

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    S.PENDING: frozenset({S.CLAIMED, S.CANCELLED}),
    S.CLAIMED: frozenset({S.DIAGNOSED, S.CANCELLED}),
    S.DIAGNOSED: frozenset({S.QUOTED, S.CANCELLED}),
    S.QUOTED: frozenset({S.APPROVED, S.CANCELLED}),
    S.APPROVED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.PARTS_REQUESTED, S.COMPLETED, S.CANCELLED}),
    S.PARTS_REQUESTED: frozenset({S.PARTS_RECEIVED, S.CANCELLED}),
    S.PARTS_RECEIVED: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}


def can_transition(current: RequestStatus, new_status: RequestStatus) -> bool:
    return new_status in ALLOWED_TRANSITIONS[current]


class RequestLifecycle:

    def __init__(
        self,
        repository: Repository,
        registry: AvailabilityRegistry,
        events: EventSink | None = None,
    ):
        self.repository = repository
        self.registry = registry
        self.events = events or NullEventSink()

    async def create(
        self,
        owner_id: str,
        car_id: str,
        location: Coordinates,
        urgency: Urgency = Urgency.MEDIUM,
        car_make: str | None = None,
        service_tag: str | None = None,
        title: str | None = None,
        description: str | None = None,
        request_id: str | None = None,
    ) -> Request:
        if not is_valid(location):
            raise InvalidCoordinates(
                "Request location has invalid coordinates",
                {"lat": location.lat, "lng": location.lng},
            )

        now = utcnow()
        request = Request(
            id=request_id or str(uuid.uuid4()),
            car_id=car_id,
            owner_id=owner_id,
            location=location,
            urgency=urgency,
            car_make=car_make,
            service_tag=service_tag,
            title=title,
            description=description,
            created_at=now,
            updated_at=now,
        )
        await self.repository.insert_request(request)

        await self.events.publish(
            RequestCreated(
                request_id=request.id,
                owner_id=owner_id,
                car_id=car_id,
                urgency=request.urgency,
                location=location,
            )
        )
        return request

    async def get(self, request_id: str) -> Request:
        request = await self.repository.load_request(request_id)
        if request is None:
            raise NotFound(f"Request {request_id} not found", {"request_id": request_id})
        return request

    async def claim(self, request_id: str, mechanic_id: str) -> Request:
        request = await self.get(request_id)
        if request.status != S.PENDING:
            raise AlreadyClaimed(
                f"Request {request_id} is no longer pending",
                {"request_id": request_id, "status": request.status.value},
            )

        # Reserve first: a capacity failure then leaves the request untouched.
        await self.registry.reserve_slot(mechanic_id)

        claimed = await self.repository.cas_update_request(
            request_id,
            S.PENDING,
            {"status": S.CLAIMED, "mechanic_id": mechanic_id, "updated_at": utcnow()},
        )
        if claimed is None:
            # lost the race; hand back the slot we took
            await self.registry.release_slot(mechanic_id)
            raise AlreadyClaimed(
                f"Request {request_id} was claimed by another mechanic",
                {"request_id": request_id},
            )

        _LOGGER.info("Request %s claimed by mechanic %s", request_id, mechanic_id)
        await self.events.publish(
            RequestClaimed(
                request_id=request_id,
                actor_id=mechanic_id,
                owner_id=claimed.owner_id,
                mechanic_id=mechanic_id,
            )
        )
        return claimed

    async def transition(self, request_id: str, new_status: RequestStatus | str, actor_id: str) -> Request:
        try:
            new_status = RequestStatus(new_status)
        except ValueError:
            raise InvalidTransition(f"Unknown status: {new_status}", {"status": str(new_status)})

        request = await self.get(request_id)
        current = request.status

        # claiming also reserves a slot, so it only goes through claim()
        if new_status == S.CLAIMED or not can_transition(current, new_status):
            raise InvalidTransition(
                f"Cannot move request from {current.value} to {new_status.value}",
                {"request_id": request_id, "from": current.value, "to": new_status.value},
            )

        if not self._may_act(request, new_status, actor_id):
            raise Forbidden(
                f"Actor {actor_id} may not move request {request_id} to {new_status.value}",
                {"request_id": request_id, "actor_id": actor_id},
            )

        fields = {"status": new_status, "updated_at": utcnow()}
        release = (
            new_status.is_terminal
            and request.mechanic_id is not None
            and not request.slot_released
        )
        if release:
            fields["slot_released"] = True

        updated = await self.repository.cas_update_request(request_id, current, fields)
        if updated is None:
            latest = await self.repository.load_request(request_id)
            if latest is None:
                raise NotFound(f"Request {request_id} not found", {"request_id": request_id})
            raise InvalidTransition(
                f"Request {request_id} changed concurrently to {latest.status.value}",
                {"request_id": request_id, "from": current.value, "observed": latest.status.value},
            )

        if release:
            try:
                await self.registry.release_slot(request.mechanic_id)
            except DispatchError as e:
                # the transition is already committed; report it, do not undo it
                _LOGGER.error(
                    "Request %s is %s but releasing a slot for mechanic %s failed (%s): %s",
                    request_id, new_status.value, request.mechanic_id, e.kind, e.message,
                )

        _LOGGER.info(
            "Request %s moved %s -> %s by %s",
            request_id, current.value, new_status.value, actor_id,
        )
        await self.events.publish(
            RequestTransitioned(
                request_id=request_id,
                from_status=current,
                to_status=new_status,
                actor_id=actor_id,
                owner_id=updated.owner_id,
                mechanic_id=updated.mechanic_id,
            )
        )
        return updated

    async def cancel(self, request_id: str, actor_id: str) -> Request:
        return await self.transition(request_id, S.CANCELLED, actor_id)

    @staticmethod
    def _may_act(request: Request, new_status: RequestStatus, actor_id: str) -> bool:
        if not actor_id:
            return False
        if request.mechanic_id is not None and actor_id == request.mechanic_id:
            return True
        return new_status == S.CANCELLED and actor_id == request.owner_id
