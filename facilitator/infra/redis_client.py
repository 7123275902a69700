import os
from typing import Optional
import redis
from facilitator.config import REDIS_URL

_redis: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """
    Client Redis synchrone partagé (store de jetons à usage unique).
    - USE_FAKE_REDIS_FOR_TESTS=1: fakeredis en mémoire (tests)
    """
    global _redis
    if _redis is None:
        if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
            import fakeredis
            _redis = fakeredis.FakeRedis(decode_responses=True)
        else:
            _redis = redis.from_url(REDIS_URL, encoding="utf-8", decode_responses=True)
    return _redis


def reset_redis() -> None:
    global _redis
    _redis = None
