import logging

import redis
from django.conf import settings

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "skorly:batch-sweep"

# Delete only if the key still holds our token.
_RELEASE_IF_OWNER = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_redis_client = None


def _get_redis_client():
    global _redis_client
    if _redis_client is None:
        url = getattr(settings, "CELERY_BROKER_URL", "redis://localhost:6379/0")
        _redis_client = redis.Redis.from_url(url)
    return _redis_client


def acquire_lock(lock_key: str, token: str, ttl_seconds: int = 600) -> bool:
    try:
        client = _get_redis_client()
        return bool(client.set(lock_key, token, nx=True, ex=ttl_seconds))
    except Exception:
        logger.exception("Lock failure for %s; continuing without lock.", lock_key)
        return True


def release_lock(lock_key: str, token: str) -> None:
    """Delete the lock only while it still holds ``token``."""
    try:
        if not _get_redis_client().eval(_RELEASE_IF_OWNER, 1, lock_key, token):
            logger.warning("Lock %s is no longer held by %s; left in place.", lock_key, token)
    except Exception:
        logger.exception("Failed to release lock %s", lock_key)


def entry_lock_key(batch_id: str, reg_no: str) -> str:
    return f"student-entry:{batch_id}:{reg_no}"
