IDEMPOTENCY_TTL_SECONDS = 60 * 60  # 1 hour


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


async def mark_processed(redis_client, event_id: str, ttl: int = IDEMPOTENCY_TTL_SECONDS) -> bool:
    """
    Atomically mark an event as processed.
    Returns False when another consumer already marked it.
    """
    created = await redis_client.set(processed_key(event_id), "1", ex=ttl, nx=True)
    return bool(created)
