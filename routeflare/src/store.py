from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from routeflare.src.intent import ContentMode, RecordType, RouteIntent
from routeflare.src.metrics import METRICS
from routeflare.src.objects import RouteKey


@dataclass(frozen=True)
class TrackedRoute:
    """Last intent applied for a route and the addresses it resolved to."""

    namespace: str
    name: str
    content_mode: ContentMode
    zone_name: str
    record_name: str
    record_type: RecordType
    ttl: int
    proxied: bool
    last_addresses: tuple[str, ...]
    gateway: RouteKey | None = None

    @property
    def key(self) -> RouteKey:
        return RouteKey(self.namespace, self.name)

    @classmethod
    def from_intent(
        cls,
        key: RouteKey,
        intent: RouteIntent,
        addresses: list[str] | tuple[str, ...],
        gateway: RouteKey | None = None,
    ) -> TrackedRoute:
        return cls(
            namespace=key.namespace,
            name=key.name,
            content_mode=intent.content_mode,
            zone_name=intent.zone_name,
            record_name=intent.record_name,
            record_type=intent.record_type,
            ttl=intent.ttl,
            proxied=intent.proxied,
            last_addresses=tuple(addresses),
            gateway=gateway,
        )


class ReadWriteLock:
    """Shared/exclusive lock. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class TrackedRouteStore:
    """Concurrency-safe map of route key to :class:`TrackedRoute`.

    Reads take the shared side of a reader/writer lock and each single-entry
    write takes the exclusive side, so the map lock is only ever held for a
    dictionary operation. Callers that need a read/provider-call/write
    sequence to be atomic for one route hold :meth:`route_lock` for that key,
    which serializes same-key work without blocking other keys.
    """

    def __init__(self) -> None:
        self._routes: dict[RouteKey, TrackedRoute] = {}
        self._lock = ReadWriteLock()
        self._key_locks: dict[RouteKey, tuple[threading.Lock, int]] = {}
        self._key_locks_guard = threading.Lock()

    def get(self, key: RouteKey) -> TrackedRoute | None:
        with self._lock.shared():
            return self._routes.get(key)

    def snapshot(self) -> list[TrackedRoute]:
        with self._lock.shared():
            return list(self._routes.values())

    def __len__(self) -> int:
        with self._lock.shared():
            return len(self._routes)

    def __contains__(self, key: object) -> bool:
        with self._lock.shared():
            return key in self._routes

    def put(self, route: TrackedRoute) -> None:
        with self._lock.exclusive():
            self._routes[route.key] = route
            size = len(self._routes)
        METRICS.tracked_routes.set(size)

    def remove(self, key: RouteKey) -> TrackedRoute | None:
        with self._lock.exclusive():
            removed = self._routes.pop(key, None)
            size = len(self._routes)
        METRICS.tracked_routes.set(size)
        return removed

    @contextmanager
    def route_lock(self, key: RouteKey) -> Iterator[None]:
        """Hold the per-route mutex for *key*.

        Locks are reference counted and dropped once no caller holds or
        waits for them, so keys of deleted routes do not accumulate.
        """
        with self._key_locks_guard:
            lock, users = self._key_locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._key_locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._key_locks_guard:
                _, users = self._key_locks[key]
                if users <= 1:
                    del self._key_locks[key]
                else:
                    self._key_locks[key] = (lock, users - 1)
