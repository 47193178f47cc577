"""
In-process TTL cache for admin request listings.

Each entry carries its own TTL and an optional set of tags; invalidation is
either by tag (``invalidate_tag("listing")``) or by key pattern
(``delete("admin:requests:*")``). One instance is created per application and
injected through FastAPI dependencies.
"""

import asyncio
import contextlib
import threading
import time
from typing import Any, Callable, Dict, Iterable, NamedTuple, Optional, Set

import structlog
from cachetools import TLRUCache

logger = structlog.get_logger(__name__)

WILDCARD = "*"


class _Entry(NamedTuple):
    value: Any
    ttl: float
    tags: frozenset


def _time_to_use(_key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class _EvictingTLRUCache(TLRUCache):
    """TLRUCache, сообщающий о каждой записи, вытесненной по TTL или размеру."""

    def __init__(self, maxsize, ttu, timer, on_evict: Callable[[str, _Entry], None]):
        super().__init__(maxsize=maxsize, ttu=ttu, timer=timer)
        self._on_evict = on_evict

    def expire(self, time=None):
        expired = super().expire(time)
        for key, entry in expired:
            self._on_evict(key, entry)
        return expired

    def popitem(self):
        key, entry = super().popitem()
        self._on_evict(key, entry)
        return key, entry


class ListingCache:
    """
    Кэш с TTL на уровне записи и инвалидацией по тегам или шаблону ключа.
    Доступ к словарю защищён одной блокировкой: записи мелкие, удержание короткое.
    """

    def __init__(
        self,
        maxsize: int = 10000,
        timer: Callable[[], float] = time.monotonic,
    ):
        # evictions happen inside the cache (on set and when full); the tag index follows them
        self._data: TLRUCache = _EvictingTLRUCache(
            maxsize, _time_to_use, timer, on_evict=self._forget_entry
        )
        self._tags: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self._reaper: Optional[asyncio.Task] = None

    def get(self, key: str) -> Optional[Any]:
        """Вернуть значение, если оно есть и не истекло, иначе None."""
        with self._lock:
            entry = self._data.get(key)
        if entry is None:
            return None
        return entry.value

    def set(
        self, key: str, value: Any, ttl: float = 300, tags: Iterable[str] = ()
    ) -> None:
        """Сохранить значение на ttl секунд, перезаписав прежнее."""
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        entry = _Entry(value=value, ttl=ttl, tags=frozenset(tags))
        with self._lock:
            previous = self._data.get(key)
            if previous is not None:
                self._forget_tags(key, previous.tags)
            self._data[key] = entry
            for tag in entry.tags:
                self._tags.setdefault(tag, set()).add(key)

    def delete(self, pattern: str) -> int:
        """
        Удалить ключ. Если в шаблоне есть '*', удаляются все ключи,
        содержащие текст до первого '*'. Отсутствующий ключ — не ошибка.
        Возвращает число удалённых записей.
        """
        with self._lock:
            self._expire_locked()
            if WILDCARD not in pattern:
                return self._pop_keys([pattern])
            prefix = pattern.split(WILDCARD, 1)[0]
            matched = [key for key in list(self._data.keys()) if prefix in key]
            return self._pop_keys(matched)

    def invalidate_tag(self, tag: str) -> int:
        """Удалить все записи, сохранённые с тегом tag."""
        with self._lock:
            keys = self._tags.pop(tag, set())
            return self._pop_keys(keys)

    def flush(self) -> None:
        with self._lock:
            self._data.clear()
            self._tags.clear()

    def purge_expired(self) -> int:
        """Вытеснить все истёкшие записи. Возвращает их количество."""
        with self._lock:
            return self._expire_locked()

    def __len__(self) -> int:
        with self._lock:
            self._expire_locked()
            return len(self._data)

    def _expire_locked(self) -> int:
        return len(self._data.expire())

    def _forget_entry(self, key: str, entry: _Entry) -> None:
        self._forget_tags(key, entry.tags)

    def _pop_keys(self, keys: Iterable[str]) -> int:
        removed = 0
        for key in list(keys):
            entry = self._data.pop(key, None)
            if entry is None:
                continue
            self._forget_tags(key, entry.tags)
            removed += 1
        return removed

    def _forget_tags(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            keys = self._tags.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tags[tag]

    async def _reap_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.purge_expired()
            if removed:
                logger.debug("cache.reaper.evicted", count=removed)

    def start_reaper(self, interval: float) -> None:
        """Запустить фоновую очистку истёкших записей раз в interval секунд."""
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_forever(interval))

    async def close(self) -> None:
        """Остановить очистку и сбросить кэш (при остановке приложения)."""
        if self._reaper is not None:
            self._reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper
            self._reaper = None
        self.flush()
