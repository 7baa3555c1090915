"""Unit tests for controller.py - work queue driven controller runtime."""

import asyncio
from typing import Any, List, Optional
from unittest.mock import AsyncMock, patch

import pytest

from conftest import StaticInformer, make_instance
from config import ControllerConfig
from controller import Controller
from errors import CacheSyncError


class RecordingController(Controller):
    """Controller reconciling objects of a StaticInformer with a mock."""

    name = "Recording"

    def __init__(self, informer: StaticInformer, config: Optional[ControllerConfig] = None):
        super().__init__(config)
        self.informer = informer
        self.reconcile_mock = AsyncMock()

    @property
    def informers(self) -> List[Any]:
        return [self.informer]

    def get_object(self, key: str):
        return self.informer.get(key)

    async def reconcile(self, obj: Any) -> None:
        await self.reconcile_mock(obj)


@pytest.mark.asyncio
class TestController:
    """Tests for the Controller base class."""

    @pytest.fixture
    def instance(self):
        return make_instance(name="web", namespace="garden")

    @pytest.fixture
    def controller(self, instance):
        config = ControllerConfig(backoff_base_delay=0.001, backoff_max_delay=0.01)
        return RecordingController(StaticInformer([instance]), config=config)

    async def test_enqueue_uses_object_key(self, controller, instance):
        controller.enqueue(instance)
        assert await controller.queue.get() == ("garden/web", False)

    async def test_enqueue_raw_object(self, controller):
        controller.enqueue({"metadata": {"namespace": "garden", "name": "raw"}})
        assert await controller.queue.get() == ("garden/raw", False)

    async def test_successful_sync_forgets_key(self, controller, instance):
        controller.queue.rate_limiter.when("garden/web")
        controller.queue.add("garden/web")

        assert await controller.process_next_work_item() is True

        controller.reconcile_mock.assert_awaited_once_with(instance)
        assert controller.queue.num_requeues("garden/web") == 0
        assert len(controller.queue) == 0

    async def test_failed_sync_is_rate_limited(self, controller):
        controller.reconcile_mock.side_effect = RuntimeError("boom")
        controller.queue.add("garden/web")

        with patch.object(controller.queue, "add_rate_limited") as add_rate_limited:
            await controller.process_next_work_item()

        add_rate_limited.assert_called_once_with("garden/web")

    async def test_failed_sync_retried(self, controller, instance):
        controller.reconcile_mock.side_effect = [RuntimeError("boom"), None]
        controller.queue.add("garden/web")

        await controller.process_next_work_item()
        assert controller.queue.num_requeues("garden/web") == 1

        await asyncio.wait_for(controller.process_next_work_item(), timeout=1)
        assert controller.reconcile_mock.await_count == 2
        assert controller.queue.num_requeues("garden/web") == 0

    async def test_dropped_on_fifteenth_failure(self, controller):
        controller.reconcile_mock.side_effect = RuntimeError("boom")
        key = "garden/web"
        for _ in range(14):
            controller.queue.rate_limiter.when(key)
        controller.queue.add(key)

        with patch("controller.handle_error") as handle_error, patch.object(
            controller.queue, "add_rate_limited"
        ) as add_rate_limited:
            await controller.process_next_work_item()

        add_rate_limited.assert_not_called()
        handle_error.assert_called_once()
        assert controller.queue.num_requeues(key) == 0

    async def test_fourteenth_failure_still_retried(self, controller):
        controller.reconcile_mock.side_effect = RuntimeError("boom")
        key = "garden/web"
        for _ in range(13):
            controller.queue.rate_limiter.when(key)
        controller.queue.add(key)

        with patch("controller.handle_error") as handle_error, patch.object(
            controller.queue, "add_rate_limited"
        ) as add_rate_limited:
            await controller.process_next_work_item()

        add_rate_limited.assert_called_once_with(key)
        handle_error.assert_not_called()

    async def test_missing_object_is_noop(self, controller):
        controller.queue.add("garden/gone")
        assert await controller.process_next_work_item() is True
        controller.reconcile_mock.assert_not_awaited()

    async def test_invalid_key_reported_and_dropped(self, controller):
        controller.queue.add("a/b/c")
        with patch("controller.handle_error") as handle_error:
            await controller.process_next_work_item()

        handle_error.assert_called_once()
        controller.reconcile_mock.assert_not_awaited()
        assert controller.queue.num_requeues("a/b/c") == 0

    async def test_non_string_key_reported_and_dropped(self, controller):
        controller.queue.add(42)
        with patch("controller.handle_error") as handle_error:
            assert await controller.process_next_work_item() is True

        handle_error.assert_called_once()
        controller.reconcile_mock.assert_not_awaited()

    async def test_process_returns_false_after_shutdown(self, controller):
        controller.queue.shutdown()
        assert await controller.process_next_work_item() is False

    async def test_run_reconciles_until_stopped(self, controller, instance):
        stop_event = asyncio.Event()
        run = asyncio.create_task(controller.run(1, stop_event))

        controller.enqueue(instance)
        for _ in range(100):
            if controller.reconcile_mock.await_count:
                break
            await asyncio.sleep(0.01)

        stop_event.set()
        await asyncio.wait_for(run, timeout=1)

        controller.reconcile_mock.assert_awaited_with(instance)
        assert controller.running is False
        assert controller.queue.shutting_down

    async def test_run_fails_if_stopped_before_sync(self):
        controller = RecordingController(StaticInformer(synced=False))
        stop_event = asyncio.Event()
        stop_event.set()

        with pytest.raises(CacheSyncError):
            await controller.run(1, stop_event)
        assert controller.running is False

    async def test_crashed_worker_restarts(self, controller):
        controller.config.worker_restart_delay = 0
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("worker crash")
            return False

        with patch.object(controller, "process_next_work_item", side_effect=flaky):
            await asyncio.wait_for(controller._run_worker(0), timeout=1)

        assert calls == 2
