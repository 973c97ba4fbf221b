"""Counter stores: durable per (subject, action) quota counters."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..monitoring.metrics import QuotaMetrics, get_metrics
from .clock import Clock, SystemClock, ensure_utc
from .errors import CounterNotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

# Marks "no stale_start given" in reset_and_increment; None means "expected absent"
_UNSET: Any = object()


@dataclass(frozen=True)
class QuotaCounter:
    """Usage of one action by one subject within the current window."""

    count: int
    window_start: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "window_start": self.window_start.isoformat(),
        }


class CounterStore:
    """
    Base class for counter stores.

    Every mutation is atomic per (subject, action). Callers must not read a
    counter, compute in process and write it back; they go through
    reset_and_increment, try_increment and release only.
    """

    backend_name = "base"

    def __init__(self, metrics: Optional[QuotaMetrics] = None):
        self.metrics = metrics or get_metrics()

    async def peek(self, subject: str, action: str) -> Optional[QuotaCounter]:
        """Read the counter without side effects; None if there is none."""
        raise NotImplementedError

    async def reset_and_increment(self, subject: str, action: str, now: datetime,
                                  ttl: Optional[timedelta] = None,
                                  stale_start: Any = _UNSET) -> QuotaCounter:
        """
        Start a new window at ``now`` with count 1, replacing any prior record.

        With ``stale_start`` the reset is conditional: it only happens while the
        stored window still starts at ``stale_start`` (or is still absent when
        ``stale_start`` is None). If another caller renewed the window first, the
        renewed record is incremented instead and returned.
        """
        raise NotImplementedError

    async def try_increment(self, subject: str, action: str) -> QuotaCounter:
        """Add one to an existing counter; CounterNotFoundError if absent."""
        raise NotImplementedError

    async def release(self, subject: str, action: str,
                      window_start: datetime) -> Optional[QuotaCounter]:
        """
        Give back one slot, floored at zero.

        Only applies while the record still belongs to ``window_start``; returns
        None when the window has moved on or the record is gone.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources."""

    @asynccontextmanager
    async def _operation(self, name: str):
        """Time a store call and count failures."""
        start = time.perf_counter()
        try:
            yield
        except StoreUnavailableError:
            self.metrics.record_store_error(self.backend_name, name)
            raise
        finally:
            self.metrics.observe_store_operation(
                self.backend_name, name, time.perf_counter() - start
            )


@dataclass
class _Entry:
    count: int
    window_start: datetime
    expires_at: Optional[datetime] = None

    def snapshot(self) -> QuotaCounter:
        return QuotaCounter(count=self.count, window_start=self.window_start)


class InMemoryCounterStore(CounterStore):
    """
    Process-local counter store.

    Mutations for a key run under that key's asyncio.Lock. Records expire after
    their TTL; a background compaction task can evict them periodically.
    """

    backend_name = "memory"

    def __init__(self, clock: Optional[Clock] = None,
                 metrics: Optional[QuotaMetrics] = None):
        super().__init__(metrics)
        self.clock = clock or SystemClock()
        self._entries: Dict[Tuple[str, str], _Entry] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

        # Background compaction
        self._compaction_task: Optional[asyncio.Task] = None
        self._running = False

    def _lock_for(self, key: Tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def _discard_lock(self, key: Tuple[str, str]) -> None:
        # Critical sections never await, so an unlocked lock has no waiters
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def _live_entry(self, key: Tuple[str, str]) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self.clock.now():
            del self._entries[key]
            self._discard_lock(key)
            return None
        return entry

    async def peek(self, subject: str, action: str) -> Optional[QuotaCounter]:
        async with self._operation("peek"):
            entry = self._live_entry((subject, action))
            return entry.snapshot() if entry else None

    async def reset_and_increment(self, subject: str, action: str, now: datetime,
                                  ttl: Optional[timedelta] = None,
                                  stale_start: Any = _UNSET) -> QuotaCounter:
        key = (subject, action)
        now = ensure_utc(now)
        async with self._operation("reset_and_increment"):
            async with self._lock_for(key):
                entry = self._live_entry(key)

                if stale_start is not _UNSET and entry is not None:
                    if stale_start is None or entry.window_start != ensure_utc(stale_start):
                        # Window already renewed by a concurrent caller
                        entry.count += 1
                        return entry.snapshot()

                # Expiry is measured on the store clock, not the caller's ``now``
                expires_at = self.clock.now() + ttl if ttl is not None else None
                entry = _Entry(count=1, window_start=now, expires_at=expires_at)
                self._entries[key] = entry
                self.metrics.set_active_counters(self.backend_name, len(self._entries))
                return entry.snapshot()

    async def try_increment(self, subject: str, action: str) -> QuotaCounter:
        key = (subject, action)
        async with self._operation("try_increment"):
            async with self._lock_for(key):
                entry = self._live_entry(key)
                if entry is None:
                    raise CounterNotFoundError(subject, action)
                entry.count += 1
                return entry.snapshot()

    async def release(self, subject: str, action: str,
                      window_start: datetime) -> Optional[QuotaCounter]:
        key = (subject, action)
        async with self._operation("release"):
            async with self._lock_for(key):
                entry = self._live_entry(key)
                if entry is None or entry.window_start != ensure_utc(window_start):
                    return None
                entry.count = max(0, entry.count - 1)
                return entry.snapshot()

    def __len__(self) -> int:
        return len(self._entries)

    async def compact(self) -> int:
        """Evict expired records. Returns how many were removed."""
        now = self.clock.now()
        removed = 0
        for key, entry in list(self._entries.items()):
            if entry.expires_at is None or entry.expires_at > now:
                continue
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            del self._entries[key]
            self._locks.pop(key, None)
            removed += 1

        # Locks left behind by records that were never created or already evicted
        for key in [key for key in self._locks if key not in self._entries]:
            self._discard_lock(key)

        self.metrics.set_active_counters(self.backend_name, len(self._entries))
        if removed:
            logger.debug(f"Compacted {removed} expired quota counters")
        return removed

    async def start_compaction(self, interval: float = 300.0):
        """Start the periodic eviction task."""
        if self._compaction_task is not None:
            return
        self._running = True
        self._compaction_task = asyncio.create_task(self._compaction_loop(interval))
        logger.info("Started quota counter compaction")

    async def stop_compaction(self):
        """Stop the periodic eviction task."""
        self._running = False
        if self._compaction_task:
            self._compaction_task.cancel()
            try:
                await self._compaction_task
            except asyncio.CancelledError:
                pass
            self._compaction_task = None
        logger.info("Stopped quota counter compaction")

    async def _compaction_loop(self, interval: float):
        while self._running:
            try:
                await self.compact()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in quota compaction loop: {e}")
                await asyncio.sleep(interval)

    async def close(self) -> None:
        await self.stop_compaction()


# --------- Redis backend ---------
# Counters live in a hash {count, start} where start is epoch milliseconds.

# KEYS[1] = counter hash
# ARGV = [now_ms, ttl_ms, check_stale ('1' or '0'), stale_start_ms ('' = expected absent)]
_LUA_RESET_AND_INCREMENT = r"""
local key = KEYS[1]
local now_ms = ARGV[1]
local ttl_ms = tonumber(ARGV[2])
local check_stale = ARGV[3]
local expected = ARGV[4]

if check_stale == '1' then
  local current = redis.call('HGET', key, 'start')
  if current and current ~= expected then
    local c = redis.call('HINCRBY', key, 'count', 1)
    return {c, current}
  end
end

redis.call('HSET', key, 'count', 1, 'start', now_ms)
if ttl_ms > 0 then
  redis.call('PEXPIRE', key, ttl_ms)
else
  redis.call('PERSIST', key)
end
return {1, now_ms}
"""

# KEYS[1] = counter hash
_LUA_TRY_INCREMENT = r"""
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return nil
end
local c = redis.call('HINCRBY', key, 'count', 1)
local s = redis.call('HGET', key, 'start')
return {c, s}
"""

# KEYS[1] = counter hash
# ARGV = [window_start_ms]
_LUA_RELEASE = r"""
local key = KEYS[1]
local s = redis.call('HGET', key, 'start')
if (not s) or s ~= ARGV[1] then
  return nil
end
local c = tonumber(redis.call('HGET', key, 'count') or '0')
if c > 0 then
  c = redis.call('HINCRBY', key, 'count', -1)
end
return {c, s}
"""


def _to_ms(moment: datetime) -> int:
    return int(ensure_utc(moment).timestamp() * 1000)


def _from_ms(value) -> datetime:
    if isinstance(value, bytes):
        value = value.decode()
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _to_int(value) -> int:
    if isinstance(value, bytes):
        value = value.decode()
    return int(value)


class RedisCounterStore(CounterStore):
    """
    Redis-backed counter store.

    Each mutation is a single Lua script, so Redis serializes every operation
    on a key. Keys expire on their own through PEXPIRE.
    """

    backend_name = "redis"

    def __init__(self, redis: Redis, key_prefix: str = "quota",
                 metrics: Optional[QuotaMetrics] = None):
        super().__init__(metrics)
        self.redis = redis
        self.key_prefix = key_prefix
        self._reset_script = redis.register_script(_LUA_RESET_AND_INCREMENT)
        self._increment_script = redis.register_script(_LUA_TRY_INCREMENT)
        self._release_script = redis.register_script(_LUA_RELEASE)

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "quota", timeout: float = 2.0,
                 metrics: Optional[QuotaMetrics] = None) -> "RedisCounterStore":
        client = Redis.from_url(url, socket_timeout=timeout, socket_connect_timeout=timeout)
        return cls(client, key_prefix=key_prefix, metrics=metrics)

    def key_for(self, subject: str, action: str) -> str:
        """
        Build the Redis key for a counter.

        Format: {prefix}:{action}:{subject}
        Example: quota:ai_chat:user:64f1c2
        """
        return ":".join([self.key_prefix, action, subject])

    def _unavailable(self, operation: str, error: Exception) -> StoreUnavailableError:
        logger.error(f"Redis counter store failed during {operation}: {error}")
        return StoreUnavailableError(
            f"Counter store unavailable during {operation}: {error}",
            operation=operation,
            backend=self.backend_name,
        )

    @staticmethod
    def _counter(result) -> Optional[QuotaCounter]:
        if not result:
            return None
        count, start = result
        return QuotaCounter(count=_to_int(count), window_start=_from_ms(start))

    async def peek(self, subject: str, action: str) -> Optional[QuotaCounter]:
        async with self._operation("peek"):
            try:
                count, start = await self.redis.hmget(self.key_for(subject, action), ["count", "start"])
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                raise self._unavailable("peek", e) from e
            if count is None or start is None:
                return None
            return QuotaCounter(count=_to_int(count), window_start=_from_ms(start))

    async def reset_and_increment(self, subject: str, action: str, now: datetime,
                                  ttl: Optional[timedelta] = None,
                                  stale_start: Any = _UNSET) -> QuotaCounter:
        check_stale = "0" if stale_start is _UNSET else "1"
        expected = "" if stale_start is _UNSET or stale_start is None else str(_to_ms(stale_start))
        ttl_ms = int(ttl.total_seconds() * 1000) if ttl is not None else 0

        async with self._operation("reset_and_increment"):
            try:
                result = await self._reset_script(
                    keys=[self.key_for(subject, action)],
                    args=[_to_ms(now), ttl_ms, check_stale, expected],
                )
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                raise self._unavailable("reset_and_increment", e) from e
            return self._counter(result)

    async def try_increment(self, subject: str, action: str) -> QuotaCounter:
        async with self._operation("try_increment"):
            try:
                result = await self._increment_script(keys=[self.key_for(subject, action)])
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                raise self._unavailable("try_increment", e) from e
            counter = self._counter(result)
            if counter is None:
                raise CounterNotFoundError(subject, action)
            return counter

    async def release(self, subject: str, action: str,
                      window_start: datetime) -> Optional[QuotaCounter]:
        async with self._operation("release"):
            try:
                result = await self._release_script(
                    keys=[self.key_for(subject, action)],
                    args=[str(_to_ms(window_start))],
                )
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                raise self._unavailable("release", e) from e
            return self._counter(result)

    async def close(self) -> None:
        await self.redis.aclose()


def create_counter_store(store_config, clock: Optional[Clock] = None,
                         metrics: Optional[QuotaMetrics] = None) -> CounterStore:
    """Build the configured counter store backend."""
    if store_config.backend == "redis":
        logger.info(f"Using Redis counter store with prefix {store_config.key_prefix!r}")
        return RedisCounterStore.from_url(
            store_config.redis_url,
            key_prefix=store_config.key_prefix,
            timeout=store_config.operation_timeout,
            metrics=metrics,
        )
    logger.info("Using in-memory counter store")
    return InMemoryCounterStore(clock=clock, metrics=metrics)
