"""
Redis connections
Sync client for health checks, async client factory for the realtime feed.
"""

import logging
import os
from typing import Optional

import redis
import redis.asyncio as aioredis

from .config import REDIS_URL

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None

CONNECTION_OPTIONS = {
    "decode_responses": True,
    "socket_connect_timeout": 15,
    "socket_timeout": 30,
    "retry_on_timeout": True,
    "health_check_interval": 30,
}


def _masked(url: str) -> str:
    if "@" in url:
        url_parts = url.split("@")
        protocol = url_parts[0].split(":")[0]
        return f"{protocol}:****@{url_parts[1]}"
    return "****"


def redis_configured() -> bool:
    return bool(REDIS_URL or os.getenv("REDIS_HOST"))


def get_redis_client() -> redis.Redis:
    """
    Get or create the shared sync Redis client
    Supports a REDIS_URL (managed Redis) or individual REDIS_* settings
    """
    global redis_client

    if redis_client is None:
        logger.info("🔄 Initializing Redis connection...")
        if REDIS_URL:
            logger.info(f"📡 Using Redis URL connection: {_masked(REDIS_URL)}")
            client = redis.from_url(REDIS_URL, max_connections=20, **CONNECTION_OPTIONS)
        else:
            client = redis.Redis(
                host=os.getenv("REDIS_HOST", "localhost"),
                port=int(os.getenv("REDIS_PORT", "6379")),
                password=os.getenv("REDIS_PASSWORD"),
                db=int(os.getenv("REDIS_DB", "0")),
                ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
                max_connections=20,
                **CONNECTION_OPTIONS,
            )
        try:
            client.ping()
        except redis.RedisError as e:
            logger.error(f"❌ Failed to connect to Redis: {str(e)}")
            raise
        redis_client = client
        logger.info("✅ Redis connected successfully")

    return redis_client


def async_redis_factory():
    """New redis.asyncio client per subscription; None when Redis is not configured"""
    if not redis_configured():
        return None

    def _factory() -> aioredis.Redis:
        if REDIS_URL:
            return aioredis.from_url(REDIS_URL, **CONNECTION_OPTIONS)
        return aioredis.Redis(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            password=os.getenv("REDIS_PASSWORD"),
            db=int(os.getenv("REDIS_DB", "0")),
            ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
            **CONNECTION_OPTIONS,
        )

    return _factory
