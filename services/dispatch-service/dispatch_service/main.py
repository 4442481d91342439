import asyncio
import logging

from fastapi import FastAPI

from shared.rabbitmq import RabbitPublisher

from .cache import MatchCache, make_redis_client
from .config import DATABASE_URL, LOG_LEVEL, RABBIT_URL, SERVICE_NAME
from .db import make_session_factory
from .errors import DispatchError
from .event_consumer import make_handler, start_consumer_with_retry
from .events import RabbitEventSink
from .location import Geocoder, LocationService, NominatimGeocoder
from .middleware import RequestLoggingMiddleware
from .repository import InMemoryRepository, Repository, SqlRepository
from .routes import dispatch_error_handler, router
from .services import Dispatcher

_LOGGER = logging.getLogger(__name__)


def create_app(
    repository: Repository | None = None,
    publisher: RabbitPublisher | None = None,
    geocoder: Geocoder | None = None,
    redis_client=None,
    rabbit_url: str | None = RABBIT_URL,
) -> FastAPI:
    app = FastAPI(title="Dispatch Service")
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    engine = None
    if repository is None:
        if DATABASE_URL:
            engine, session_factory = make_session_factory(DATABASE_URL)
            repository = SqlRepository(session_factory)
        else:
            _LOGGER.warning("[%s] DISPATCH_DB not set; using in-memory storage", SERVICE_NAME)
            repository = InMemoryRepository()

    if publisher is None:
        publisher = RabbitPublisher(rabbit_url, SERVICE_NAME)
    if redis_client is None:
        redis_client = make_redis_client()

    dispatcher = Dispatcher(
        repository,
        events=RabbitEventSink(publisher),
        cache=MatchCache(redis_client),
        location=LocationService(geocoder=geocoder or NominatimGeocoder()),
    )
    app.state.dispatcher = dispatcher

    stop_event = asyncio.Event()
    state = {"consumer_task": None}

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "events_enabled": publisher.enabled,
            "cache_enabled": dispatcher.cache.enabled,
        }

    @app.on_event("startup")
    async def startup():
        try:
            await publisher.connect()
        except Exception as e:
            _LOGGER.warning("[%s] RabbitMQ connect failed at startup; continuing: %s", SERVICE_NAME, e)

        handler = make_handler(dispatcher.registry, redis_client)
        state["consumer_task"] = asyncio.create_task(
            start_consumer_with_retry(rabbit_url, handler, stop_event)
        )

    @app.on_event("shutdown")
    async def shutdown():
        stop_event.set()

        task = state["consumer_task"]
        if task is not None:
            if not task.done():
                task.cancel()
            try:
                conn = await task
            except asyncio.CancelledError:
                conn = None
            if conn is not None and not conn.is_closed:
                await conn.close()

        await publisher.close()
        if redis_client is not None:
            await redis_client.aclose()
        if engine is not None:
            await engine.dispose()

    return app


logging.basicConfig(level=LOG_LEVEL)
app = create_app()
