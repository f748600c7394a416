"""
Redis Manager
=============

Một connection pool dùng chung cho:
- SessionState của agent (client thô, xem SessionManager)
- Counter / histogram của monitoring
- Bản mirror của activity log

Redis là tùy chọn. Khi mất kết nối, mọi operation trả giá trị mặc định
và caller tiếp tục với dữ liệu trong bộ nhớ.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Optional, Any, List, Callable

logger = logging.getLogger(__name__)


@dataclass
class RedisConfig:
    url: str = "redis://localhost:6379"
    max_connections: int = 20
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    retry_on_timeout: bool = True
    health_check_interval: int = 30


class RedisManager:
    """Connection pool + reconnect; operations never raise on Redis errors."""

    def __init__(self, config: RedisConfig = None):
        self.config = config or RedisConfig()
        self._redis = None
        self._connected = False
        self._checked_at = 0.0
        self._connect()

    def _connect(self) -> bool:
        try:
            import redis

            pool = redis.ConnectionPool.from_url(
                self.config.url,
                max_connections=self.config.max_connections,
                socket_timeout=self.config.socket_timeout,
                socket_connect_timeout=self.config.socket_connect_timeout,
                retry_on_timeout=self.config.retry_on_timeout,
                health_check_interval=self.config.health_check_interval,
                decode_responses=True,
            )
            self._redis = redis.Redis(connection_pool=pool)
            self._redis.ping()
        except Exception as e:
            logger.warning(f"Redis unavailable at {self.config.url}: {e}. Using in-memory storage.")
            self._connected = False
            return False

        self._connected = True
        self._checked_at = time.time()
        logger.info(f"Redis connected: {self.config.url}")
        return True

    @property
    def is_connected(self) -> bool:
        if not self._connected:
            return False
        if time.time() - self._checked_at > self.config.health_check_interval:
            try:
                self._redis.ping()
                self._checked_at = time.time()
            except Exception:
                logger.warning("Redis health check failed, reconnecting")
                self._connected = False
                return self._connect()
        return True

    @property
    def client(self):
        """Raw redis.Redis (decode_responses=True), or None when disconnected."""
        return self._redis if self.is_connected else None

    def _run(self, name: str, default: Any, operation: Callable[[Any], Any]) -> Any:
        if not self.is_connected:
            return default
        try:
            return operation(self._redis)
        except Exception as e:
            logger.error(f"Redis {name} failed: {e}")
            return default

    # ==================== Counters ====================

    def incr(self, key: str, amount: int = 1) -> int:
        return self._run("incr", -1, lambda r: r.incr(key, amount))

    def get_counter(self, key: str) -> int:
        return self._run("get_counter", 0, lambda r: int(r.get(key) or 0))

    def expire(self, key: str, ttl: int) -> bool:
        return bool(self._run("expire", False, lambda r: r.expire(key, ttl)))

    # ==================== Lists ====================

    def list_push(self, key: str, *values) -> int:
        """RPUSH; values that are not strings are stored as JSON."""
        encoded = [v if isinstance(v, str) else json.dumps(v) for v in values]
        return self._run("list_push", 0, lambda r: r.rpush(key, *encoded))

    def list_range(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        raw = self._run("list_range", [], lambda r: r.lrange(key, start, end))
        values = []
        for item in raw:
            try:
                values.append(json.loads(item))
            except (json.JSONDecodeError, TypeError):
                values.append(item)
        return values

    def list_trim(self, key: str, start: int, end: int) -> bool:
        return self._run("list_trim", False, lambda r: r.ltrim(key, start, end) or True)

    def close(self) -> None:
        if self._redis is not None:
            try:
                self._redis.close()
            except Exception as e:
                logger.debug(f"Redis close error: {e}")
        self._redis = None
        self._connected = False


# ==================== Global Instance ====================

_redis_manager: Optional[RedisManager] = None


def get_redis_manager() -> Optional[RedisManager]:
    return _redis_manager


def init_redis(url: str = None, **kwargs) -> RedisManager:
    """Create (or replace) the process-wide manager."""
    global _redis_manager
    if _redis_manager is not None:
        _redis_manager.close()
    config = RedisConfig(url=url, **kwargs) if url else RedisConfig(**kwargs)
    _redis_manager = RedisManager(config)
    return _redis_manager
