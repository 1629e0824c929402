import json
import logging
from typing import Optional, Dict, Any
import redis
from redis.exceptions import RedisError
from marketplace_billing.core.config import settings

logger = logging.getLogger(__name__)


class RedisCache:
    """Redis-backed cache for idempotent commit results and subscription views.

    Every operation degrades to a miss/no-op when Redis is unavailable so the
    billing flow never depends on the cache being up.
    """

    def __init__(self):
        """Initialize Redis cache (lazy connection)"""
        self._client: Optional[redis.Redis] = None
        self._connected = False

    def _client_kwargs(self) -> Dict[str, Any]:
        kwargs = {
            'decode_responses': False,
            'socket_connect_timeout': 2,
            'socket_timeout': 2,
            'retry_on_timeout': False,
            'health_check_interval': 0,
        }
        # settings.redis_password takes precedence over a password embedded in the URL
        if settings.redis_password:
            kwargs['password'] = settings.redis_password
        return kwargs

    def _connect(self):
        """Connect to Redis server"""
        try:
            if settings.redis_url:
                self._client = redis.from_url(settings.redis_url, **self._client_kwargs())
            else:
                self._client = redis.Redis(
                    host='localhost',
                    port=6379,
                    db=settings.redis_db,
                    **self._client_kwargs(),
                )
            self._client.ping()
            self._connected = True
            logger.info("RedisCache: Connected to Redis")
        except RedisError as e:
            message = str(e).lower()
            if 'auth' in message or 'password' in message:
                logger.error(f"RedisCache: Authentication failed - {e}. Ensure REDIS_PASSWORD is set correctly.")
            else:
                logger.warning(f"RedisCache: Connection test failed - {e}")
            self._connected = False
            self._client = None

    def _ensure_connected(self) -> bool:
        """Ensure Redis connection is established (lazy connection)"""
        if self._connected and self._client is not None:
            return True
        self._connect()
        return self._client is not None

    def get(self, key: str) -> Optional[Dict]:
        """Get cached value, None on miss or when Redis is down"""
        if not self._ensure_connected():
            logger.warning(f"RedisCache: Cannot get key {key} - Redis not available")
            return None

        try:
            data = self._client.get(key)
            if data is None:
                logger.debug(f"Cache miss: {key}")
                return None
            try:
                decoded = json.loads(data.decode('utf-8'))
                logger.debug(f"Cache hit: {key}")
                return decoded
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"RedisCache: Failed to decode value for key {key}: {e}")
                # Drop corrupted entry
                self._client.delete(key)
                return None
        except RedisError as e:
            logger.error(f"RedisCache: Error getting key {key}: {e}")
            self._connected = False
            return None

    def set(self, key: str, value: Dict, ttl_minutes: int):
        """Set cache value with TTL in minutes"""
        if not self._ensure_connected():
            logger.warning(f"RedisCache: Cannot set key {key} - Redis not available")
            return

        try:
            serialized = json.dumps(value, default=str).encode('utf-8')
            self._client.setex(key, ttl_minutes * 60, serialized)
            logger.debug(f"Cache set: {key}, TTL: {ttl_minutes} minutes")
        except RedisError as e:
            logger.error(f"RedisCache: Error setting key {key}: {e}")
            self._connected = False

    def delete(self, key: str):
        """Delete cache entry"""
        if not self._ensure_connected():
            logger.warning(f"RedisCache: Cannot delete key {key} - Redis not available")
            return

        try:
            self._client.delete(key)
            logger.debug(f"Cache deleted: {key}")
        except RedisError as e:
            logger.error(f"RedisCache: Error deleting key {key}: {e}")
            self._connected = False

    def ping(self) -> bool:
        """Check if Redis connection is alive"""
        if not self._ensure_connected():
            return False
        try:
            self._client.ping()
            return True
        except RedisError:
            self._connected = False
            return False
