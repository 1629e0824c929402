import logging
from typing import Optional, Dict
from marketplace_billing.core.config import settings
from marketplace_billing.core.redis_cache import RedisCache

logger = logging.getLogger(__name__)


# Global cache instance
_cache_instance: Optional[RedisCache] = None

# A retried commit inside the idempotency window must see the first result
PLAN_CHANGE_RESULT_TTL_MINUTES = 24 * 60


def get_cache() -> RedisCache:
    """Get global Redis cache instance"""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = RedisCache()
    return _cache_instance


def _plan_change_key(idempotency_key: str) -> str:
    return f"plan_change:{idempotency_key}"


def _subscription_view_key(account_id: str) -> str:
    return f"subscription_view:{account_id}"


def get_cached_plan_change(idempotency_key: str) -> Optional[Dict]:
    """Result of an already committed plan change, if any."""
    return get_cache().get(_plan_change_key(idempotency_key))


def set_cached_plan_change(idempotency_key: str, result: Dict):
    get_cache().set(_plan_change_key(idempotency_key), result, PLAN_CHANGE_RESULT_TTL_MINUTES)


def get_cached_subscription_view(account_id: str) -> Optional[Dict]:
    """Last known-good subscription view, served when the database read fails."""
    return get_cache().get(_subscription_view_key(account_id))


def set_cached_subscription_view(account_id: str, view: Dict):
    get_cache().set(_subscription_view_key(account_id), view, settings.subscription_view_ttl_minutes)


def delete_cached_subscription_view(account_id: str):
    get_cache().delete(_subscription_view_key(account_id))
