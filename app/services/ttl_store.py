# app/services/ttl_store.py
"""
TTL Store：所有安全狀態（refresh / blacklist / revoked / 計數器 / 封鎖 / 稽核紀錄）
都放在這裡，程序內不保留可變狀態。

- RedisTTLStore：正式環境（redis.asyncio）
- InMemoryTTLStore：開發 / 測試用，行為與 Redis 子集一致
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple, Union

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.config import Settings

logger = logging.getLogger(__name__)


class StoreUnavailableError(RuntimeError):
    """Store 連線失敗 / 逾時。驗證路徑 fail-closed，稽核路徑 fail-open。"""


class TTLStore(Protocol):
    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, ttl: float) -> bool: ...

    async def ttl(self, key: str) -> Optional[float]: ...

    async def push_capped(self, key: str, value: str, cap: int, ttl: Optional[float] = None) -> None: ...

    async def lrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def llen(self, key: str) -> int: ...

    async def ping(self) -> bool: ...

    async def aclose(self) -> None: ...


def _ms(ttl: float) -> int:
    # Redis PX 最小 1ms；避免剩餘 0.x ms 時被當成「不過期」
    return max(1, int(ttl * 1000))


class RedisTTLStore:
    """redis.asyncio 實作；socket timeout 即 store 的 RPC 上限"""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @classmethod
    def from_url(cls, url: str, timeout: float) -> "RedisTTLStore":
        return cls(
            Redis.from_url(
                url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        )

    @contextlib.contextmanager
    def _guard(self, op: str, key: str) -> Iterator[None]:
        try:
            yield
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning("TTL store %s failed for %s: %s", op, key, e)
            raise StoreUnavailableError(f"{op} {key}: {e}") from e

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        with self._guard("set", key):
            if ttl is None:
                await self._redis.set(key, value)
            else:
                await self._redis.set(key, value, px=_ms(ttl))

    async def get(self, key: str) -> Optional[str]:
        with self._guard("get", key):
            return await self._redis.get(key)

    async def delete(self, key: str) -> None:
        with self._guard("delete", key):
            await self._redis.delete(key)

    async def exists(self, key: str) -> bool:
        with self._guard("exists", key):
            return bool(await self._redis.exists(key))

    async def incr(self, key: str) -> int:
        with self._guard("incr", key):
            return int(await self._redis.incr(key))

    async def expire(self, key: str, ttl: float) -> bool:
        with self._guard("expire", key):
            return bool(await self._redis.pexpire(key, _ms(ttl)))

    async def ttl(self, key: str) -> Optional[float]:
        with self._guard("ttl", key):
            remaining = await self._redis.pttl(key)
        # -2: key 不存在；-1: 沒有設定過期
        if remaining is None or remaining < 0:
            return None
        return remaining / 1000.0

    async def push_capped(self, key: str, value: str, cap: int, ttl: Optional[float] = None) -> None:
        with self._guard("push_capped", key):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lpush(key, value)
                pipe.ltrim(key, 0, cap - 1)
                if ttl is not None:
                    pipe.pexpire(key, _ms(ttl))
                await pipe.execute()

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._guard("lrange", key):
            return list(await self._redis.lrange(key, start, stop))

    async def llen(self, key: str) -> int:
        with self._guard("llen", key):
            return int(await self._redis.llen(key))

    async def ping(self) -> bool:
        with self._guard("ping", "-"):
            return bool(await self._redis.ping())

    async def aclose(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError:
            logger.debug("Redis close failed", exc_info=True)


_Value = Union[str, List[str]]


class InMemoryTTLStore:
    """
    單程序用的 TTL store（測試 / 本機開發）。
    過期以 lazy 方式在存取時清除；clock 可注入以便測試快轉時間。
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _alive(self, key: str) -> Optional[Tuple[_Value, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return item

    def _deadline(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (str(value), self._deadline(ttl))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._alive(key)
            if item is None or isinstance(item[0], list):
                return None
            return item[0]

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._alive(key) is not None

    async def incr(self, key: str) -> int:
        with self._lock:
            item = self._alive(key)
            if item is None:
                value, expires_at = 1, None
            else:
                if isinstance(item[0], list):
                    raise TypeError(f"{key} holds a list, not a counter")
                value, expires_at = int(item[0]) + 1, item[1]
            self._data[key] = (str(value), expires_at)
            return value

    async def expire(self, key: str, ttl: float) -> bool:
        with self._lock:
            item = self._alive(key)
            if item is None:
                return False
            self._data[key] = (item[0], self._deadline(ttl))
            return True

    async def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            item = self._alive(key)
            if item is None or item[1] is None:
                return None
            return item[1] - self._clock()

    async def push_capped(self, key: str, value: str, cap: int, ttl: Optional[float] = None) -> None:
        with self._lock:
            item = self._alive(key)
            items: List[str] = list(item[0]) if item is not None and isinstance(item[0], list) else []
            expires_at = item[1] if item is not None else None
            items.insert(0, value)
            del items[cap:]
            if ttl is not None:
                expires_at = self._deadline(ttl)
            self._data[key] = (items, expires_at)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            item = self._alive(key)
            if item is None or not isinstance(item[0], list):
                return []
            items = item[0]
            # 與 Redis 相同：stop 為包含端點，-1 表示到尾端
            end = len(items) if stop == -1 else stop + 1
            return list(items[start:end])

    async def llen(self, key: str) -> int:
        with self._lock:
            item = self._alive(key)
            if item is None or not isinstance(item[0], list):
                return 0
            return len(item[0])

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


def build_store(settings: Settings) -> TTLStore:
    backend = (settings.STORE_BACKEND or "redis").lower()
    if backend == "memory":
        logger.info("Using in-memory TTL store")
        return InMemoryTTLStore()
    if backend == "redis":
        return RedisTTLStore.from_url(settings.REDIS_URL, settings.STORE_TIMEOUT_SEC)
    raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")
