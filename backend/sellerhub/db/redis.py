"""Redis client for session lookup, subscription caching and locks"""
import json
import logging
from typing import Dict, Optional

import redis

from sellerhub.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

# Pub/sub channel consumers listen on to drop their own cached subscription copies
SUBSCRIPTION_INVALIDATION_CHANNEL = "subscription-invalidated"


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


# ============================================================================
# SESSIONS
# ============================================================================

def set_session(session_id: str, seller_id: str, ttl: int = 30 * 24 * 60 * 60) -> None:
    """Store a seller session (written by the platform's auth service)"""
    get_redis_client().setex(f"session:{session_id}", ttl, seller_id)


def get_session(session_id: str) -> Optional[str]:
    """Get seller_id from session"""
    return get_redis_client().get(f"session:{session_id}")


# ============================================================================
# CURRENT SUBSCRIPTION CACHE
# ============================================================================

def _subscription_key(seller_id: str) -> str:
    return f"subscription:{seller_id}"


def get_cached_subscription(seller_id: str) -> Optional[Dict]:
    """Get the cached current-subscription view for a seller"""
    cached = get_redis_client().get(_subscription_key(seller_id))
    if cached:
        return json.loads(cached)
    return None


def set_cached_subscription(seller_id: str, view: Dict) -> None:
    """Cache the current-subscription view for a seller"""
    get_redis_client().setex(
        _subscription_key(seller_id),
        settings.SUBSCRIPTION_CACHE_TTL,
        json.dumps(view, default=str)
    )


def invalidate_subscription_cache(seller_id: str, reason: str) -> None:
    """Drop the cached view and announce the invalidation.

    Called after every committed write to a seller's subscription or ledger.
    Cache failures are logged and never propagate into the write path.
    """
    try:
        client = get_redis_client()
        client.delete(_subscription_key(seller_id))
        client.publish(
            SUBSCRIPTION_INVALIDATION_CHANNEL,
            json.dumps({"seller_id": seller_id, "reason": reason})
        )
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate subscription cache for seller {seller_id}: {e}")


# ============================================================================
# LOCKS
# ============================================================================

def acquire_lock(lock_key: str, timeout: int = 30) -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Returns:
        True if lock was acquired, False if lock already exists
    """
    result = get_redis_client().set(lock_key, "1", nx=True, ex=timeout)
    return result is True


def release_lock(lock_key: str) -> None:
    """Release a distributed lock by deleting the key."""
    get_redis_client().delete(lock_key)
