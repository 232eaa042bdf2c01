"""
Shared redis-py async client.

The matching queue lives in PostgreSQL; Redis only carries the Celery
broker and the cross-instance maintenance lock.  Use a ``rediss://``
URL to connect over TLS.
"""

import redis.asyncio as aioredis

from app.config import settings

redis: aioredis.Redis = aioredis.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    health_check_interval=30,
)
