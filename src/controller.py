"""
Controller Runtime - work queue driven reconciliation loop.

Similar to Kubernetes controllers, continuously reconciles desired state with
actual state. Watch events only enqueue keys; a pool of workers pops keys,
reads the current object from the informer cache and reconciles it.
Failures are retried with exponential backoff up to a retry ceiling.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from config import ControllerConfig
from errors import CacheSyncError, handle_error
from informer import Informer, object_key, split_key, wait_for_cache_sync
from workqueue import ExponentialRateLimiter, RateLimitingQueue

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class Controller(ABC):
    """
    Base controller implementing the work queue loop.

    Subclasses name the informers they depend on and implement ``reconcile``
    for a single cached object.
    """

    name = "controller"

    def __init__(self, config: Optional[ControllerConfig] = None):
        self.config = config or ControllerConfig()
        self.max_retries = self.config.max_retries
        self.queue = RateLimitingQueue(
            name=self.name,
            rate_limiter=ExponentialRateLimiter(
                base_delay=self.config.backoff_base_delay,
                max_delay=self.config.backoff_max_delay,
            ),
        )
        self.running = False

    @property
    @abstractmethod
    def informers(self) -> List[Informer]:
        """Informers whose caches must sync before any reconcile runs."""
        pass

    @abstractmethod
    def get_object(self, key: str) -> Optional[Any]:
        """Read the object for a key from the cache."""
        pass

    @abstractmethod
    async def reconcile(self, obj: Any) -> None:
        """Reconcile one object. Raise to have the key retried."""
        pass

    def enqueue(self, obj: Any) -> None:
        """Event handler: push an object's key onto the queue."""
        key = obj.key if hasattr(obj, "key") else object_key(obj)
        self.queue.add(key)

    async def run(self, workers: Optional[int], stop_event: asyncio.Event) -> None:
        """
        Run the controller until ``stop_event`` is set.

        Raises:
            CacheSyncError: If the stop event fires before the caches synced
        """
        workers = workers or self.config.workers
        logger.info(f"Starting {self.name} controller")
        self.running = True

        try:
            logger.info("Waiting for informer caches to sync")
            if not await wait_for_cache_sync(stop_event, *self.informers):
                raise CacheSyncError("failed to wait for caches to sync")

            logger.info(f"Starting {workers} workers")
            tasks = [
                asyncio.create_task(self._run_worker(i)) for i in range(workers)
            ]
            logger.info("Started workers")

            await stop_event.wait()
            logger.info("Shutting down workers")
            self.queue.shutdown()
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self.queue.shutdown()
            self.running = False

    async def _run_worker(self, index: int) -> None:
        """Process items until the queue shuts down, restarting on crashes."""
        while True:
            try:
                while await self.process_next_work_item():
                    pass
                return
            except Exception as e:
                logger.error(f"{self.name} worker {index} crashed: {e}", exc_info=True)
                await asyncio.sleep(self.config.worker_restart_delay)

    async def process_next_work_item(self) -> bool:
        """
        Pop and process one key.

        Returns:
            False once the queue has shut down, True otherwise
        """
        key, shutdown = await self.queue.get()
        if shutdown:
            return False

        try:
            if not isinstance(key, str):
                self.queue.forget(key)
                handle_error(TypeError(f"expected string in workqueue but got {key!r}"))
                return True

            try:
                await self.sync_handler(key)
            except Exception as e:
                self._handle_sync_error(key, e)
                return True

            self.queue.forget(key)
            logger.info(f"Successfully synced {key!r}")
        finally:
            self.queue.done(key)
        return True

    def _handle_sync_error(self, key: str, err: Exception) -> None:
        # Failures so far, including this one
        failures = self.queue.num_requeues(key) + 1
        if failures < self.max_retries:
            logger.error(
                f"Error syncing {key!r} (failure {failures}/{self.max_retries}), "
                f"retrying: {err}"
            )
            self.queue.add_rate_limited(key)
            return

        logger.error(f"Dropping {key!r} out of the queue after {failures} failures")
        self.queue.forget(key)
        handle_error(err)

    async def sync_handler(self, key: str) -> None:
        """Look a key up in the cache and reconcile the current object."""
        try:
            split_key(key)
        except ValueError:
            handle_error(ValueError(f"invalid resource key: {key}"))
            return

        obj = self.get_object(key)
        if obj is None:
            logger.info(f"No last known state for deleted object {key}")
            return

        await self.reconcile(obj)
