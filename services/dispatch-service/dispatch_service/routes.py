from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request as HttpRequest
from fastapi.responses import JSONResponse

from .errors import DispatchError, Forbidden
from .schemas import (
    Address,
    Coordinates,
    CreateRequest,
    LocationSearchResult,
    MatchBody,
    MatchResponse,
    MechanicAvailability,
    Request,
    SetAvailability,
    TransitionBody,
)
from .services import Dispatcher

router = APIRouter()


def get_dispatcher(request: HttpRequest) -> Dispatcher:
    return request.app.state.dispatcher


async def get_actor(x_user_sub: Optional[str] = Header(default=None)) -> str:
    if not x_user_sub:
        raise HTTPException(status_code=401, detail="Missing X-User-Sub header")
    return x_user_sub


async def dispatch_error_handler(request: HttpRequest, exc: DispatchError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---- requests ----

@router.post("/requests", response_model=Request, status_code=201)
async def create_request(
    data: CreateRequest,
    actor: str = Depends(get_actor),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return await dispatcher.create_request(actor, data)


@router.get("/requests/{request_id}", response_model=Request)
async def get_request(request_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)):
    return await dispatcher.get_request(request_id)


@router.post("/requests/{request_id}/claim", response_model=Request)
async def claim_request(
    request_id: str,
    actor: str = Depends(get_actor),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return await dispatcher.claim(request_id, actor)


@router.post("/requests/{request_id}/transition", response_model=Request)
async def transition_request(
    request_id: str,
    data: TransitionBody,
    actor: str = Depends(get_actor),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return await dispatcher.transition(request_id, data.status, actor)


# ---- matching ----

@router.post("/match", response_model=MatchResponse)
async def match(data: MatchBody, dispatcher: Dispatcher = Depends(get_dispatcher)):
    matches, cached = await dispatcher.match_request(
        data.request_id,
        max_radius_km=data.max_radius_km,
        required_specializations=data.required_specializations,
        at=data.at,
        limit=data.limit,
    )
    return MatchResponse(request_id=data.request_id, matches=matches, cached=cached)


@router.get("/requests/{request_id}/matches", response_model=MatchResponse)
async def request_matches(
    request_id: str,
    limit: int = Query(default=20, ge=1, le=50),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    matches, cached = await dispatcher.match_request(request_id, limit=limit)
    return MatchResponse(request_id=request_id, matches=matches, cached=cached)


# ---- availability ----

@router.put("/mechanics/{mechanic_id}/availability", response_model=MechanicAvailability)
async def set_availability(
    mechanic_id: str,
    data: SetAvailability,
    actor: str = Depends(get_actor),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    if actor != mechanic_id:
        raise Forbidden("Mechanics can only set their own availability", {"mechanic_id": mechanic_id})
    return await dispatcher.set_availability(mechanic_id, data)


@router.get("/mechanics/{mechanic_id}/availability", response_model=MechanicAvailability)
async def get_availability(mechanic_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)):
    return await dispatcher.get_availability(mechanic_id)


# ---- geocoding ----

@router.get("/geocode/reverse", response_model=Address)
async def reverse_geocode(
    lat: float,
    lng: float,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return await dispatcher.location.reverse_geocode(Coordinates(lat=lat, lng=lng))


@router.get("/geocode/search", response_model=List[LocationSearchResult])
async def search_addresses(
    q: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    bias = Coordinates(lat=lat, lng=lng) if lat is not None and lng is not None else None
    return await dispatcher.location.search_addresses(q, bias).collect()
