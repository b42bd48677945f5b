from __future__ import annotations
from typing import Optional
from redis.asyncio import from_url, Redis

def build_redis(url: str) -> Optional[Redis]:
    """Idempotency backend; None when REDIS_URL is unset."""
    if not url:
        return None
    return from_url(
        url,
        encoding="utf-8",
        decode_responses=True,  # store/read JSON strings
        socket_timeout=5,
    )
