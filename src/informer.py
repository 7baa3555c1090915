"""
Informers - watch fed, eventually consistent read caches.

An informer lists a custom resource once, then follows the watch stream,
keeping a local copy of every object keyed by ``namespace/name``. Event
handlers are notified of additions, updates and deletions, and all cached
objects are re-delivered as updates every resync period.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type

from kubernetes_asyncio import watch
from kubernetes_asyncio.client import ApiClient, ApiException, CustomObjectsApi

logger = logging.getLogger(__name__)


def object_key(obj: Dict[str, Any]) -> str:
    """Cache key for a raw object: ``namespace/name`` or ``name``."""
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    name = metadata.get("name", "")
    return f"{namespace}/{name}" if namespace else name


def split_key(key: str):
    """
    Split a cache key into ``(namespace, name)``.

    Raises:
        ValueError: If the key has more than one separator
    """
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


@dataclass
class EventHandler:
    on_add: Optional[Callable[[Any], None]] = None
    on_update: Optional[Callable[[Any, Any], None]] = None
    on_delete: Optional[Callable[[Any], None]] = None


class Informer:
    """List/watch cache for one custom resource type."""

    def __init__(
        self,
        api_client: ApiClient,
        group: str,
        version: str,
        plural: str,
        model: Optional[Type] = None,
        resync_period: float = 30,
        watch_timeout: int = 300,
    ):
        self.group = group
        self.version = version
        self.plural = plural
        self.model = model
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.custom_api = CustomObjectsApi(api_client)

        self._store: Dict[str, Any] = {}
        self._handlers: List[EventHandler] = []
        self._synced = False
        self._tasks: List[asyncio.Task] = []

    @property
    def resource(self) -> str:
        return f"{self.plural}.{self.group}"

    def add_event_handler(
        self,
        on_add: Optional[Callable[[Any], None]] = None,
        on_update: Optional[Callable[[Any, Any], None]] = None,
        on_delete: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self._handlers.append(EventHandler(on_add, on_update, on_delete))

    def has_synced(self) -> bool:
        """True once the initial list has been stored."""
        return self._synced

    def get(self, key: str) -> Optional[Any]:
        return self._store.get(key)

    def list(self, namespace: Optional[str] = None) -> List[Any]:
        """Cached objects, optionally restricted to one namespace."""
        if namespace is None:
            return list(self._store.values())
        prefix = f"{namespace}/"
        return [obj for key, obj in self._store.items() if key.startswith(prefix)]

    def _convert(self, obj: Dict[str, Any]) -> Any:
        return self.model.from_dict(obj) if self.model is not None else obj

    def _notify(self, kind: str, *args: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, kind)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Event handler for {self.resource} failed: {e}", exc_info=True)

    def _upsert(self, raw: Dict[str, Any]) -> None:
        key = object_key(raw)
        obj = self._convert(raw)
        old = self._store.get(key)
        self._store[key] = obj
        if old is None:
            self._notify("on_add", obj)
        else:
            self._notify("on_update", old, obj)

    def _remove(self, raw: Dict[str, Any]) -> None:
        key = object_key(raw)
        old = self._store.pop(key, None)
        self._notify("on_delete", old if old is not None else self._convert(raw))

    def _replace(self, items: List[Dict[str, Any]]) -> None:
        seen = set()
        for raw in items:
            seen.add(object_key(raw))
            self._upsert(raw)
        for key in [k for k in self._store if k not in seen]:
            old = self._store.pop(key)
            self._notify("on_delete", old)

    async def _list(self) -> str:
        result = await self.custom_api.list_cluster_custom_object(
            self.group, self.version, self.plural
        )
        self._replace(result.get("items") or [])
        self._synced = True
        return (result.get("metadata") or {}).get("resourceVersion", "")

    async def _watch(self, resource_version: str) -> Optional[str]:
        """
        Follow the watch stream from a resource version.

        Returns the last seen resource version, or None if the cache must be
        re-listed.
        """
        stream = watch.Watch().stream(
            self.custom_api.list_cluster_custom_object,
            self.group,
            self.version,
            self.plural,
            resource_version=resource_version,
            timeout_seconds=self.watch_timeout,
        )
        async with stream:
            async for event in stream:
                event_type = event.get("type")
                raw = event.get("raw_object") or {}

                if event_type == "ERROR":
                    logger.info(f"Watch on {self.resource} expired: {raw.get('message')}")
                    return None
                if event_type in ("ADDED", "MODIFIED"):
                    self._upsert(raw)
                elif event_type == "DELETED":
                    self._remove(raw)

                resource_version = (raw.get("metadata") or {}).get(
                    "resourceVersion", resource_version
                )
        return resource_version

    async def run(self) -> None:
        """List and watch until cancelled."""
        resource_version: Optional[str] = None
        while True:
            try:
                if resource_version is None:
                    resource_version = await self._list()
                    logger.info(f"Listed {len(self._store)} {self.resource}")
                resource_version = await self._watch(resource_version)
            except asyncio.CancelledError:
                raise
            except ApiException as e:
                if e.status == 410:
                    resource_version = None
                    continue
                logger.error(f"Error watching {self.resource}: {e}")
                resource_version = None
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"Error watching {self.resource}: {e}", exc_info=True)
                resource_version = None
                await asyncio.sleep(1)

    async def _resync(self) -> None:
        while True:
            await asyncio.sleep(self.resync_period)
            for obj in list(self._store.values()):
                self._notify("on_update", obj, obj)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self.run()))
        if self.resync_period and self.resync_period > 0:
            self._tasks.append(asyncio.create_task(self._resync()))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()


async def wait_for_cache_sync(
    stop_event: asyncio.Event, *informers: Informer, poll_interval: float = 0.1
) -> bool:
    """
    Wait until every informer has synced.

    Returns False if ``stop_event`` is set first.
    """
    while not all(informer.has_synced() for informer in informers):
        if stop_event.is_set():
            return False
        await asyncio.sleep(poll_interval)
    return True
