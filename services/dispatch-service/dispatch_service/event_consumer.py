"""
Consumer for mechanic availability pushed by the mechanic profile side.

Each message is a shared.events envelope whose ``data`` carries a full
availability profile for one mechanic. The profile is applied wholesale
except for current_active_jobs, which this service owns.
"""
import asyncio
import json
import logging

import aio_pika
from aio_pika import ExchangeType
from pydantic import ValidationError

from shared.idempotency import mark_processed
from shared.rabbitmq import EXCHANGE_NAME

from .availability import AvailabilityRegistry
from .errors import DispatchError
from .schemas import MechanicAvailability, SetAvailability

_LOGGER = logging.getLogger(__name__)

QUEUE_NAME = "dispatch_service_availability_events"
ROUTING_KEYS = ["mechanic.availability_updated"]

RETRY_SECONDS = 5


class AvailabilityUpdatePayload(SetAvailability):
    mechanic_id: str


async def apply_event(payload: dict, registry: AvailabilityRegistry, redis_client=None) -> bool:
    """Apply one envelope. Returns True when the registry was updated."""
    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}

    if not event_id or not event_type:
        return False

    if event_type not in ROUTING_KEYS:
        return False

    if redis_client is not None and not await mark_processed(redis_client, event_id):
        _LOGGER.debug("Skipping duplicate event %s", event_id)
        return False

    try:
        update = AvailabilityUpdatePayload.model_validate(data)
    except ValidationError as e:
        _LOGGER.warning("[dispatch-service] malformed %s event %s: %s", event_type, event_id, e)
        return False

    try:
        await registry.update_profile(
            update.mechanic_id, MechanicAvailability(**update.model_dump())
        )
    except DispatchError as e:
        _LOGGER.warning(
            "[dispatch-service] rejected availability for %s (%s): %s",
            update.mechanic_id, e.kind, e.message,
        )
        return False

    return True


def make_handler(registry: AvailabilityRegistry, redis_client=None):

    async def handle_message(message: aio_pika.abc.AbstractIncomingMessage):
        async with message.process(requeue=False):
            try:
                payload = json.loads(message.body.decode("utf-8"))
            except ValueError:
                _LOGGER.warning("[dispatch-service] dropping non-JSON message")
                return

            if not isinstance(payload, dict):
                return

            await apply_event(payload, registry, redis_client)

    return handle_message


async def _connect_and_consume(rabbit_url: str, handler):
    connection = await aio_pika.connect_robust(rabbit_url)

    channel = await connection.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await channel.declare_exchange(
        EXCHANGE_NAME,
        ExchangeType.TOPIC,
        durable=True,
    )

    queue = await channel.declare_queue(
        QUEUE_NAME,
        durable=True,
    )

    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(handler)

    _LOGGER.info("[dispatch-service] availability consumer started")
    return connection


async def start_consumer_with_retry(rabbit_url: str | None, handler, stop_event: asyncio.Event):
    if not rabbit_url:
        _LOGGER.info("[dispatch-service] RABBIT_URL not set; availability consumer disabled")
        return None

    while not stop_event.is_set():
        try:
            return await _connect_and_consume(rabbit_url, handler)
        except Exception as e:
            _LOGGER.warning(
                "[dispatch-service] consumer connect failed, retrying in %ss: %s",
                RETRY_SECONDS, e,
            )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=RETRY_SECONDS)
            except asyncio.TimeoutError:
                continue

    return None
