from __future__ import annotations

import logging
import random
import threading
from collections import deque
from collections.abc import Callable, Hashable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from routeflare.src.errors import ClusterUnavailable, MalformedObject
from routeflare.src.metrics import METRICS
from routeflare.src.objects import EventKind, HTTPRoute
from routeflare.src.reconciler import Reconciler


class RouteSource(Protocol):
    def list_routes(self) -> tuple[list[HTTPRoute], str | None]: ...

    def watch_routes(
        self, watcher: watch.Watch, resource_version: str | None, timeout_seconds: int
    ) -> Any: ...


class WatchState(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass
class BackoffPolicy:
    """Delays between watch connections.

    A stream that ends normally (server timeout, channel closed) is restarted
    after the fixed ``reconnect_seconds``. Failed attempts back off
    exponentially from ``initial_seconds`` up to ``max_seconds``, with
    jitter between 0.5x and 1.5x so replicas do not reconnect in lockstep.
    """

    reconnect_seconds: float = 5.0
    initial_seconds: float = 1.0
    max_seconds: float = 30.0
    jitter: bool = True
    _next_error_seconds: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._next_error_seconds = self.initial_seconds

    def reset(self) -> None:
        self._next_error_seconds = self.initial_seconds

    def after_close(self) -> float:
        self.reset()
        return self.reconnect_seconds

    def after_error(self) -> float:
        delay = self._next_error_seconds
        self._next_error_seconds = min(self._next_error_seconds * 2, self.max_seconds)
        if self.jitter:
            delay *= 0.5 + random.random()  # noqa: S311
        return delay


class KeyedDispatcher:
    """Runs reconciliation work on a thread pool without blocking the caller.

    Work submitted for the same key runs one item at a time in submission
    order; different keys run in parallel. Exceptions are logged and counted,
    never propagated to the submitter.
    """

    def __init__(self, max_workers: int = 8, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="routeflare-reconcile"
        )
        self._pending: dict[Hashable, deque[tuple[Callable[..., Any], tuple[Any, ...]]]] = {}
        self._in_flight = 0
        self._cond = threading.Condition()

    def submit(self, key: Hashable, fn: Callable[..., Any], *args: Any) -> None:
        with self._cond:
            self._in_flight += 1
            queue = self._pending.get(key)
            if queue is not None:
                queue.append((fn, args))
                return
            self._pending[key] = deque([(fn, args)])
        self._executor.submit(self._run_key, key)

    def _run_key(self, key: Hashable) -> None:
        while True:
            with self._cond:
                queue = self._pending[key]
                if not queue:
                    del self._pending[key]
                    return
                fn, args = queue[0]
            try:
                fn(*args)
            except Exception:
                METRICS.dispatch_errors_total.inc()
                self.logger.exception("Unexpected error reconciling %s", key)
            finally:
                with self._cond:
                    queue.popleft()
                    self._in_flight -= 1
                    self._cond.notify_all()

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until all submitted work has finished. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


class RouteflareController:
    """Drives the reconciler from two change sources: a route watch and a sweep ticker.

    Startup lists all HTTPRoutes and observes each of them, then marks the
    controller ready and starts the periodic sweep thread. The watch loop
    resumes from the list's resourceVersion and moves through
    :class:`WatchState`:

    ``CONNECTED``
        Events are dispatched to the reconciler. ``ADDED``/``MODIFIED``
        become observations and ``DELETED`` a deletion; dispatch never waits
        for the reconciliation to finish.
    ``RECONNECTING``
        Entered when the stream ends (fixed reconnect delay) or fails
        (exponential backoff). ``410 Gone`` re-lists immediately and
        re-observes every route.
    ``STOPPED``
        Entered on shutdown or on ``401``/``403``, which indicate RBAC
        misconfiguration rather than a transient failure. In-flight
        dispatches are drained for up to ``shutdown_timeout_seconds``.
    """

    def __init__(
        self,
        cluster: RouteSource,
        reconciler: Reconciler,
        sweep_interval_seconds: float = 300,
        backoff: BackoffPolicy | None = None,
        dispatcher: KeyedDispatcher | None = None,
        watch_timeout_seconds: int = 300,
        shutdown_timeout_seconds: float = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.reconciler = reconciler
        self.sweep_interval_seconds = sweep_interval_seconds
        self.backoff = backoff or BackoffPolicy()
        self.logger = logger or logging.getLogger(__name__)
        self.dispatcher = dispatcher or KeyedDispatcher(logger=self.logger)
        self.watch_timeout_seconds = watch_timeout_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds

        self.ready = threading.Event()
        self.watch_state = WatchState.STOPPED
        self._external_stop = threading.Event()
        self._run_stop: threading.Event | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream.

        Also wakes a running loop out of a backoff or reconnect delay.
        """
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
            run_stop = self._run_stop
        if run_stop is not None:
            run_stop.set()
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _wait(self, stop_event: threading.Event, seconds: float) -> None:
        if seconds > 0:
            stop_event.wait(timeout=seconds)

    def dispatch_observe(self, route: HTTPRoute) -> None:
        self.dispatcher.submit(route.key, self.reconciler.observe, route)

    def dispatch_delete(self, route: HTTPRoute) -> None:
        self.dispatcher.submit(route.key, self.reconciler.delete, route)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Route one watch event to the reconciler without waiting for it."""
        try:
            kind = EventKind.parse(event_type)
        except ValueError:
            self.logger.warning("Ignoring watch event of unknown type %r", event_type)
            return

        if kind is EventKind.BOOKMARK:
            return
        if kind is EventKind.ERROR:
            self.logger.warning("Watch error event: %s", obj)
            return

        try:
            route = HTTPRoute.from_object(obj)
        except MalformedObject as exc:
            self.logger.warning("Ignoring malformed HTTPRoute in %s event: %s", kind.value, exc)
            return

        if kind is EventKind.DELETED:
            self.logger.info("HTTPRoute deleted: %s", route.key)
            self.dispatch_delete(route)
        else:
            self.logger.info("HTTPRoute %s: %s", kind.value.lower(), route.key)
            self.dispatch_observe(route)

    def _list_and_observe(self) -> str | None:
        routes, resource_version = self.cluster.list_routes()
        self.logger.info("Found %d HTTPRoute(s)", len(routes))
        for route in routes:
            self.dispatch_observe(route)
        return resource_version

    def _run_sweeps(self, stop: threading.Event) -> None:
        while not stop.wait(timeout=self.sweep_interval_seconds):
            if self._should_stop(stop):
                break
            try:
                self.reconciler.sweep()
            except Exception:
                self.logger.exception("Unexpected error during periodic sweep")

    @staticmethod
    def _is_gone(obj: Any) -> bool:
        return isinstance(obj, dict) and obj.get("code") == 410

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list, then watch HTTPRoutes until shutdown.

        ``401``/``403`` responses are treated as configuration errors
        (RBAC/auth) and stop the loop with a clear log message rather than
        retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        with self._watcher_lock:
            self._run_stop = stop
        self.watch_state = WatchState.RECONNECTING

        resource_version: str | None = None
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_observe()
                self.ready.set()
                self.backoff.reset()
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial HTTPRoute list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self._finish()
                    return
                self.logger.exception("Initial HTTPRoute list failed")
                METRICS.watch_errors_total.inc()
            except ClusterUnavailable as exc:
                self.logger.error("Initial HTTPRoute list failed: %s", exc)
                METRICS.watch_errors_total.inc()
            self._wait(stop, self.backoff.after_error())

        if self._should_stop(stop):
            self._finish()
            return

        sweep_thread = threading.Thread(
            target=self._run_sweeps, args=(stop,), name="routeflare-sweep", daemon=True
        )
        sweep_thread.start()
        self.logger.info(
            "Starting HTTPRoute watch from resourceVersion %s (sweep every %ss)",
            resource_version,
            self.sweep_interval_seconds,
        )

        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            delay = 0.0
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                self.watch_state = WatchState.CONNECTED
                expired = False
                for event in self.cluster.watch_routes(
                    watcher, resource_version, self.watch_timeout_seconds
                ):
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    event_type = str(event.get("type", ""))
                    if event_type == EventKind.ERROR.value and self._is_gone(obj):
                        expired = True
                        break
                    metadata = obj.get("metadata") if isinstance(obj, dict) else None
                    if isinstance(metadata, dict) and metadata.get("resourceVersion"):
                        resource_version = metadata["resourceVersion"]
                    self.handle_event(event_type, obj)

                if expired:
                    raise ApiException(status=410, reason="Gone")
                if not self._should_stop(stop):
                    self.logger.info("HTTPRoute watch stream closed, reconnecting")
                    delay = self.backoff.after_close()
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing HTTPRoutes")
                    try:
                        resource_version = self._list_and_observe()
                        self.backoff.reset()
                    except (ApiException, ClusterUnavailable) as relist_exc:
                        self.logger.error("Failed to re-list after 410: %s", relist_exc)
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                        delay = self.backoff.after_error()
                elif exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    break
                else:
                    self.logger.exception("Kubernetes API watch error")
                    METRICS.watch_errors_total.inc()
                    delay = self.backoff.after_error()
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                delay = self.backoff.after_error()
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

            if not self._should_stop(stop):
                self.watch_state = WatchState.RECONNECTING
                self._wait(stop, delay)

        stop.set()
        sweep_thread.join(timeout=self.shutdown_timeout_seconds)
        self._finish()

    def _finish(self) -> None:
        self.watch_state = WatchState.STOPPED
        if not self.dispatcher.drain(timeout=self.shutdown_timeout_seconds):
            self.logger.warning(
                "%d reconciliation(s) still running after %ss; exiting anyway",
                self.dispatcher.in_flight,
                self.shutdown_timeout_seconds,
            )
        self.dispatcher.shutdown(wait=False)
        self.ready.clear()
        self.logger.info("HTTPRoute watch stopped")
