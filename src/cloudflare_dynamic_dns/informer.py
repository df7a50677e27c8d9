"""List/watch loops that mirror Services and Ingresses into the resource cache.

Every add, update and delete is turned into a reconcile key on the work queue.
The cache is also re-enqueued in full every ``resync_period`` seconds so that
records converge even when no Kubernetes event arrives (e.g. after a public IP
change that happened while a key was being dropped).
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api

from cloudflare_dynamic_dns.resources import (
    ReconcileKey,
    ResourceCache,
    ResourceKind,
    WatchedResource,
)
from cloudflare_dynamic_dns.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30


def resource_from_object(kind: ResourceKind, obj: Any) -> Optional[WatchedResource]:
    """Reduce a Kubernetes API object to a :class:`WatchedResource`."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    return WatchedResource(
        kind=kind,
        namespace=getattr(metadata, "namespace", None) or "default",
        name=name,
        annotations=dict(getattr(metadata, "annotations", None) or {}),
    )


class Informer:
    def __init__(
        self,
        kind: ResourceKind,
        list_func: Callable[..., Any],
        cache: ResourceCache,
        queue: RateLimitingQueue,
        *,
        list_kwargs: Optional[Dict[str, Any]] = None,
        resync_period: float = 300.0,
        watch_timeout: int = 300,
    ):
        self.kind = kind
        self.list_func = list_func
        self.list_kwargs = list_kwargs or {}
        self.cache = cache
        self.queue = queue
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self._external_stop = threading.Event()
        self._active_watcher: Optional[watch.Watch] = None
        self._watcher_lock = threading.Lock()

    @classmethod
    def for_services(
        cls, core_api: CoreV1Api, cache: ResourceCache, queue: RateLimitingQueue, *,
        namespace: str = "", **kwargs: Any
    ) -> "Informer":
        if namespace:
            return cls(
                ResourceKind.SERVICE, core_api.list_namespaced_service, cache, queue,
                list_kwargs={"namespace": namespace}, **kwargs
            )
        return cls(
            ResourceKind.SERVICE, core_api.list_service_for_all_namespaces, cache, queue, **kwargs
        )

    @classmethod
    def for_ingresses(
        cls, networking_api: NetworkingV1Api, cache: ResourceCache, queue: RateLimitingQueue, *,
        namespace: str = "", **kwargs: Any
    ) -> "Informer":
        if namespace:
            return cls(
                ResourceKind.INGRESS, networking_api.list_namespaced_ingress, cache, queue,
                list_kwargs={"namespace": namespace}, **kwargs
            )
        return cls(
            ResourceKind.INGRESS, networking_api.list_ingress_for_all_namespaces, cache, queue,
            **kwargs
        )

    @property
    def has_synced(self) -> bool:
        return self.cache.has_synced(self.kind)

    def _enqueue(self, keys: Iterable[ReconcileKey]) -> None:
        for key in keys:
            self.queue.add(str(key))

    def list_and_enqueue(self) -> Optional[str]:
        """Re-list every object, refresh the cache and enqueue all keys.

        Keys of objects that vanished since the previous listing are enqueued too so
        their records get cleaned up. Returns the list's resourceVersion.
        """
        response = self.list_func(**self.list_kwargs)
        resources: List[WatchedResource] = []
        for item in getattr(response, "items", None) or []:
            resource = resource_from_object(self.kind, item)
            if resource is not None:
                resources.append(resource)

        present, removed = self.cache.replace(self.kind, resources)
        self._enqueue(present)
        self._enqueue(removed)
        logger.info(
            f"Listed {len(present)} {self.kind.value}(s)"
            + (f", {len(removed)} removed since last list" if removed else "")
        )
        return getattr(getattr(response, "metadata", None), "resource_version", None)

    def resync(self) -> None:
        keys = self.cache.keys(self.kind)
        logger.debug(f"Resyncing {len(keys)} {self.kind.value}(s)")
        self._enqueue(keys)

    def handle_event(self, event_type: str, obj: Any) -> None:
        resource = resource_from_object(self.kind, obj)
        if resource is None:
            return

        if event_type in {"ADDED", "MODIFIED"}:
            self.cache.upsert(resource)
        elif event_type == "DELETED":
            self.cache.delete(resource.key)
        else:
            return
        logger.debug(f"{event_type} {resource.key}")
        self.queue.add(str(resource.key))

    def stop(self) -> None:
        """Interrupt any open watch stream and end ``run``."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _backoff(self, stop_event: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop_event.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def run(self, stop_event: threading.Event) -> None:
        """List, then watch from the list's resourceVersion until stopped.

        A ``410 Gone`` (expired resourceVersion) triggers a fresh list. ``401`` and
        ``403`` are configuration problems and end the loop.
        """
        resource_version: Optional[str] = None
        listed = False
        backoff_seconds = 1
        next_resync = time.monotonic() + self.resync_period

        while not self._should_stop(stop_event):
            if not listed:
                try:
                    resource_version = self.list_and_enqueue()
                    listed = True
                    backoff_seconds = 1
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        logger.error(
                            f"Kubernetes API denied listing {self.kind.value}s (status={exc.status}). "
                            "Check the controller's RBAC permissions."
                        )
                        return
                    logger.error(f"Failed to list {self.kind.value}s: {exc}")
                    backoff_seconds = self._backoff(stop_event, backoff_seconds)
                    continue
                except Exception as e:
                    logger.error(f"Unexpected error listing {self.kind.value}s: {e}", exc_info=True)
                    backoff_seconds = self._backoff(stop_event, backoff_seconds)
                    continue

            now = time.monotonic()
            if now >= next_resync:
                self.resync()
                next_resync = now + self.resync_period

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                timeout_seconds = max(1, int(min(self.watch_timeout, next_resync - now)))
                stream = watcher.stream(
                    self.list_func,
                    **self.list_kwargs,
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        logger.warning(f"Watch error event for {self.kind.value}s: {obj}")
                        listed = False
                        break
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self.handle_event(event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    logger.warning(f"Watch resource version for {self.kind.value}s expired, re-listing")
                    listed = False
                    continue
                if exc.status in {401, 403}:
                    logger.error(
                        f"Kubernetes API denied watching {self.kind.value}s (status={exc.status}). "
                        "Check the controller's RBAC permissions."
                    )
                    return
                logger.error(f"Watch error for {self.kind.value}s: {exc}")
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            except Exception as e:
                logger.error(f"Unexpected watch error for {self.kind.value}s: {e}", exc_info=True)
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        logger.info(f"Stopped {self.kind.value} informer")

    def start(self, stop_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run, args=(stop_event,), name=f"{self.kind.value}-informer", daemon=True
        )
        thread.start()
        return thread


def wait_for_cache_sync(
    informers: Iterable[Informer],
    stop_event: threading.Event,
    timeout: Optional[float] = None,
    poll_interval: float = 0.1,
) -> bool:
    """Block until every informer has completed its first list. False on stop or timeout."""
    informers = list(informers)
    deadline = None if timeout is None else time.monotonic() + timeout
    while not stop_event.is_set():
        if all(i.has_synced for i in informers):
            return True
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop_event.wait(poll_interval)
    return False
