"""
Redis client factory shared by the progress store, locks and cancellation flags.

Clients are bound to the event loop that creates them, so Celery tasks (which
run each job on a fresh loop) create one per job and close it afterwards.
"""
from __future__ import annotations

import redis.asyncio as redis

from config import get_redis_connection_kwargs, settings


async def get_redis_client() -> redis.Redis:
    """Get an async Redis client."""
    return redis.from_url(
        settings.REDIS_URL, **get_redis_connection_kwargs(decode_responses=True)
    )
