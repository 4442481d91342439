import asyncio
import logging
import uuid
from typing import AsyncIterator, Awaitable, Callable, Protocol

import httpx

from .config import GEOCODER_URL, GEOCODER_USER_AGENT, HTTP_TIMEOUT
from .errors import (
    INVALID_COORDINATES,
    NETWORK_ERROR,
    POSITION_UNAVAILABLE,
    SERVICE_UNAVAILABLE,
    TIMEOUT,
    LocationError,
)
from .geo import distance_km, is_valid
from .schemas import (
    Address,
    Coordinates,
    LocationConfig,
    LocationSample,
    LocationSearchResult,
    PermissionStatus,
    TrackingSession,
    TrackingStatus,
    utcnow,
)

_LOGGER = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 5
SEARCH_BIAS_DEG = 0.1
TRACKING_INTERVAL_SECONDS = 30.0


class PositionProvider(Protocol):
    """Platform position source. Failures are raised as LocationError."""

    async def get_position(self, enable_high_accuracy: bool) -> Coordinates:
        ...

    async def permission_status(self) -> PermissionStatus:
        ...


class Geocoder(Protocol):
    async def reverse(self, coords: Coordinates) -> Address:
        ...

    async def search(
        self, query: str, bias: Coordinates | None = None, limit: int = MAX_SEARCH_RESULTS
    ) -> list[LocationSearchResult]:
        ...


class AddressSearch:
    """
    Lazy address lookup. Nothing is fetched until iteration starts, and every
    new iteration asks the geocoder again, so the same object can be reused
    after the caller's debounce window.
    """

    def __init__(self, geocoder: Geocoder | None, query: str, bias: Coordinates | None = None):
        self.geocoder = geocoder
        self.query = (query or "").strip()
        self.bias = bias if bias is not None and is_valid(bias) else None

    def __aiter__(self) -> AsyncIterator[LocationSearchResult]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LocationSearchResult]:
        if not self.query:
            return
        if self.geocoder is None:
            raise LocationError(SERVICE_UNAVAILABLE, "No geocoder configured")

        results = await self.geocoder.search(self.query, self.bias, MAX_SEARCH_RESULTS)
        for r in results[:MAX_SEARCH_RESULTS]:
            if self.bias is not None and r.coordinates is not None and is_valid(r.coordinates):
                r = r.model_copy(
                    update={"distance_meters": distance_km(self.bias, r.coordinates) * 1000}
                )
            yield r

    async def collect(self) -> list[LocationSearchResult]:
        return [r async for r in self]


class LocationService:

    def __init__(
        self,
        provider: PositionProvider | None = None,
        geocoder: Geocoder | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.geocoder = geocoder
        self._sleep = sleep

    async def request_location(self, config: LocationConfig | None = None) -> Coordinates:
        """
        Current position of the device. Transient failures (timeout, network,
        no fix) are retried up to config.retry_attempts times with a linearly
        growing delay; a permission denial is returned immediately.
        """
        config = config or LocationConfig()
        if self.provider is None:
            raise LocationError(POSITION_UNAVAILABLE, "No position provider configured")

        attempt = 0
        while True:
            try:
                coords = await self._fix(config)
                break
            except LocationError as e:
                if not e.retriable or attempt >= config.retry_attempts:
                    raise
                attempt += 1
                _LOGGER.info(
                    "Location attempt %d/%d failed with %s, retrying",
                    attempt, config.retry_attempts + 1, e.kind,
                )
                await self._sleep(config.retry_delay_ms * attempt / 1000)

        if not is_valid(coords):
            raise LocationError(
                INVALID_COORDINATES,
                "Position source returned invalid coordinates",
                {"lat": coords.lat, "lng": coords.lng},
            )
        return coords

    async def _fix(self, config: LocationConfig) -> Coordinates:
        try:
            return await asyncio.wait_for(
                self.provider.get_position(config.enable_high_accuracy),
                timeout=config.timeout_ms / 1000,
            )
        except LocationError:
            raise
        except asyncio.TimeoutError:
            raise LocationError(TIMEOUT, f"No position fix within {config.timeout_ms}ms")
        except Exception as e:
            _LOGGER.warning("[dispatch-service] Position provider failed: %s", e)
            raise LocationError(NETWORK_ERROR, "Position source failed", {"error": str(e)}) from e

    async def reverse_geocode(self, coords: Coordinates) -> Address:
        if not is_valid(coords):
            raise LocationError(
                INVALID_COORDINATES,
                "Cannot reverse geocode invalid coordinates",
                {"lat": coords.lat, "lng": coords.lng},
            )
        if self.geocoder is None:
            raise LocationError(SERVICE_UNAVAILABLE, "No geocoder configured")
        return await self.geocoder.reverse(coords)

    def search_addresses(self, query: str, bias: Coordinates | None = None) -> AddressSearch:
        return AddressSearch(self.geocoder, query, bias)

    async def get_permission_status(self) -> PermissionStatus:
        if self.provider is None:
            return PermissionStatus.UNAVAILABLE
        return await self.provider.permission_status()


class LocationTracker:
    """
    Periodic position sampling for one user, e.g. a mechanic driving to a
    request. Each session polls LocationService.request_location on its own
    task and keeps the fixes in order. A failed fix ends the session.
    """

    def __init__(
        self,
        service: LocationService,
        interval_seconds: float = TRACKING_INTERVAL_SECONDS,
        config: LocationConfig | None = None,
    ):
        self.service = service
        self.interval_seconds = interval_seconds
        self.config = config or LocationConfig(retry_attempts=0)
        self._sessions: dict[str, TrackingSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self, user_id: str, request_id: str | None = None) -> TrackingSession:
        """Open a session and start sampling; must be called from a running loop."""
        session = TrackingSession(
            id=f"tracking_{user_id}_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            request_id=request_id,
        )
        self._sessions[session.id] = session
        self._tasks[session.id] = asyncio.create_task(self._run(session))
        _LOGGER.info("Tracking session %s started for %s", session.id, user_id)
        return session

    async def stop(self, session_id: str) -> TrackingSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None

        task = self._tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if session.status == TrackingStatus.ACTIVE:
            session.status = TrackingStatus.COMPLETED
            session.ended_at = utcnow()
        return session

    def get(self, session_id: str) -> TrackingSession | None:
        return self._sessions.get(session_id)

    async def close(self) -> None:
        for session_id in list(self._tasks):
            await self.stop(session_id)

    async def _run(self, session: TrackingSession) -> None:
        while True:
            try:
                coords = await self.service.request_location(self.config)
            except LocationError as e:
                _LOGGER.warning(
                    "[dispatch-service] Tracking session %s stopped after %s: %s",
                    session.id, e.kind, e.message,
                )
                session.status = TrackingStatus.FAILED
                session.error_kind = e.kind
                session.ended_at = utcnow()
                self._tasks.pop(session.id, None)
                return

            session.locations.append(LocationSample(coordinates=coords))
            await asyncio.sleep(self.interval_seconds)


# ---- OpenStreetMap Nominatim ----

class NominatimGeocoder:

    def __init__(
        self,
        base_url: str = GEOCODER_URL,
        user_agent: str = GEOCODER_USER_AGENT,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self._transport = transport

    async def _get(self, path: str, params: dict):
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
                transport=self._transport,
            ) as client:
                r = await client.get(path, params=params)
                r.raise_for_status()
                return r.json()
        except (httpx.HTTPError, ValueError) as e:
            _LOGGER.warning("[dispatch-service] Geocoder call %s failed: %s", path, e)
            raise LocationError(
                SERVICE_UNAVAILABLE, "Geocoding service unavailable", {"error": str(e)}
            ) from e

    async def reverse(self, coords: Coordinates) -> Address:
        data = await self._get(
            "/reverse",
            {
                "format": "json",
                "lat": coords.lat,
                "lon": coords.lng,
                "zoom": 18,
                "addressdetails": 1,
            },
        )
        if not isinstance(data, dict) or "error" in data:
            raise LocationError(SERVICE_UNAVAILABLE, "No address found", {"lat": coords.lat, "lng": coords.lng})
        return parse_reverse(data, coords)

    async def search(
        self, query: str, bias: Coordinates | None = None, limit: int = MAX_SEARCH_RESULTS
    ) -> list[LocationSearchResult]:
        params = {"format": "json", "addressdetails": 1, "limit": limit, "q": query}
        if bias is not None:
            params.update(
                {
                    "lat": bias.lat,
                    "lon": bias.lng,
                    "bounded": 1,
                    "viewbox": ",".join(
                        str(v) for v in (
                            bias.lng - SEARCH_BIAS_DEG,
                            bias.lat + SEARCH_BIAS_DEG,
                            bias.lng + SEARCH_BIAS_DEG,
                            bias.lat - SEARCH_BIAS_DEG,
                        )
                    ),
                }
            )

        data = await self._get("/search", params)
        if not isinstance(data, list):
            return []
        return [parse_search_result(item) for item in data[:limit]]


def parse_reverse(data: dict, coords: Coordinates) -> Address:
    address = data.get("address") or {}
    place_id = data.get("place_id")
    return Address(
        formatted_address=data.get("display_name") or f"{coords.lat:.4f}, {coords.lng:.4f}",
        coordinates=coords,
        street_number=address.get("house_number"),
        street_name=address.get("road"),
        neighborhood=address.get("neighbourhood") or address.get("suburb"),
        city=address.get("city") or address.get("town") or address.get("village") or "",
        state=address.get("state"),
        country=address.get("country") or "",
        postal_code=address.get("postcode"),
        place_id=str(place_id) if place_id is not None else None,
    )


def parse_search_result(item: dict) -> LocationSearchResult:
    display = item.get("display_name") or ""
    parts = display.split(",")
    coords = None
    try:
        coords = Coordinates(lat=float(item["lat"]), lng=float(item["lon"]))
    except (KeyError, TypeError, ValueError):
        pass

    return LocationSearchResult(
        place_id=str(item.get("place_id", "")),
        description=display,
        main_text=item.get("name") or parts[0].strip(),
        secondary_text=",".join(parts[1:]).strip(),
        types=[item["type"]] if item.get("type") else [],
        coordinates=coords,
    )
