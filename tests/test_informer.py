"""Unit tests for informer.py - list/watch caches."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kubernetes_asyncio.client import ApiException

from conftest import StaticInformer
from informer import Informer, object_key, split_key, wait_for_cache_sync
from models import AddonManifest


def raw(name, namespace="garden", resource_version="1"):
    return {
        "apiVersion": "garland.io/v1alpha1",
        "kind": "AddonManifest",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
        },
    }


class FakeStream:
    """Async iterable standing in for a watch stream."""

    def __init__(self, events):
        self.events = events

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event


class TestKeys:
    """Tests for object_key and split_key."""

    def test_namespaced_key(self):
        assert object_key(raw("a")) == "garden/a"

    def test_cluster_scoped_key(self):
        assert object_key({"metadata": {"name": "seed"}}) == "seed"

    def test_split_namespaced(self):
        assert split_key("garden/a") == ("garden", "a")

    def test_split_cluster_scoped(self):
        assert split_key("seed") == ("", "seed")

    def test_split_invalid(self):
        with pytest.raises(ValueError):
            split_key("a/b/c")


class TestInformerCache:
    """Tests for the informer's cache bookkeeping."""

    @pytest.fixture
    def informer(self):
        return Informer(
            MagicMock(), "garland.io", "v1alpha1", "addonmanifests", model=AddonManifest
        )

    @pytest.fixture
    def events(self, informer):
        recorded = []
        informer.add_event_handler(
            on_add=lambda obj: recorded.append(("add", obj.key)),
            on_update=lambda old, new: recorded.append(("update", new.key)),
            on_delete=lambda obj: recorded.append(("delete", obj.key)),
        )
        return recorded

    def test_objects_converted_to_model(self, informer):
        informer._upsert(raw("nginx-1.0.0"))
        assert isinstance(informer.get("garden/nginx-1.0.0"), AddonManifest)

    def test_add_then_update(self, informer, events):
        informer._upsert(raw("a"))
        informer._upsert(raw("a", resource_version="2"))
        assert events == [("add", "garden/a"), ("update", "garden/a")]

    def test_remove(self, informer, events):
        informer._upsert(raw("a"))
        informer._remove(raw("a"))
        assert informer.get("garden/a") is None
        assert events[-1] == ("delete", "garden/a")

    def test_replace_emits_deletes_for_vanished(self, informer, events):
        informer._upsert(raw("a"))
        informer._upsert(raw("b"))
        events.clear()

        informer._replace([raw("b", resource_version="2")])

        assert events == [("update", "garden/b"), ("delete", "garden/a")]
        assert [o.key for o in informer.list()] == ["garden/b"]

    def test_list_by_namespace(self, informer):
        informer._upsert(raw("a", namespace="garden"))
        informer._upsert(raw("b", namespace="other"))
        assert [o.name for o in informer.list("other")] == ["b"]
        assert len(informer.list()) == 2

    def test_handler_failure_does_not_stop_others(self, informer):
        seen = []
        informer.add_event_handler(on_add=MagicMock(side_effect=RuntimeError("boom")))
        informer.add_event_handler(on_add=lambda obj: seen.append(obj.key))

        informer._upsert(raw("a"))

        assert seen == ["garden/a"]

    def test_raw_objects_without_model(self):
        informer = Informer(MagicMock(), "g", "v1", "things")
        informer._upsert(raw("a"))
        assert informer.get("garden/a") == raw("a")


@pytest.mark.asyncio
class TestInformerListWatch:
    """Tests for listing and watching."""

    @pytest.fixture
    def informer(self):
        informer = Informer(
            MagicMock(), "garland.io", "v1alpha1", "addonmanifests", model=AddonManifest
        )
        informer.custom_api = MagicMock()
        informer.custom_api.list_cluster_custom_object = AsyncMock(
            return_value={"items": [raw("a")], "metadata": {"resourceVersion": "10"}}
        )
        return informer

    async def test_list_marks_synced(self, informer):
        assert not informer.has_synced()
        assert await informer._list() == "10"
        assert informer.has_synced()
        assert informer.get("garden/a") is not None

    async def test_watch_applies_events(self, informer):
        events = [
            {"type": "ADDED", "raw_object": raw("b", resource_version="11")},
            {"type": "MODIFIED", "raw_object": raw("b", resource_version="12")},
            {"type": "DELETED", "raw_object": raw("a", resource_version="13")},
        ]
        with patch("informer.watch.Watch") as watch_cls:
            watch_cls.return_value.stream.return_value = FakeStream(events)
            assert await informer._watch("10") == "13"

        assert informer.get("garden/a") is None
        assert informer.get("garden/b").metadata.resource_version == "12"
        assert watch_cls.return_value.stream.call_args.kwargs["resource_version"] == "10"

    async def test_watch_error_requests_relist(self, informer):
        events = [{"type": "ERROR", "raw_object": {"code": 410, "message": "too old"}}]
        with patch("informer.watch.Watch") as watch_cls:
            watch_cls.return_value.stream.return_value = FakeStream(events)
            assert await informer._watch("10") is None

    async def test_run_relists_on_gone(self, informer):
        informer._watch = AsyncMock(
            side_effect=[ApiException(status=410, reason="Gone"), asyncio.CancelledError()]
        )

        with pytest.raises(asyncio.CancelledError):
            await informer.run()

        assert informer.custom_api.list_cluster_custom_object.await_count == 2

    async def test_resync_redelivers_cached_objects(self, informer):
        informer.resync_period = 0.01
        updates = []
        informer.add_event_handler(on_update=lambda old, new: updates.append(new.key))
        informer._upsert(raw("a"))

        task = asyncio.create_task(informer._resync())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert "garden/a" in updates

    async def test_start_and_stop(self, informer):
        async def block(resource_version):
            await asyncio.sleep(10)

        informer._watch = AsyncMock(side_effect=block)
        informer.start()
        await asyncio.sleep(0.01)
        assert informer.has_synced()

        await informer.stop()
        assert informer._tasks == []


@pytest.mark.asyncio
class TestWaitForCacheSync:
    """Tests for wait_for_cache_sync."""

    async def test_already_synced(self):
        assert await wait_for_cache_sync(asyncio.Event(), StaticInformer()) is True

    async def test_waits_for_sync(self):
        informer = StaticInformer(synced=False)

        async def mark_synced():
            await asyncio.sleep(0.02)
            informer.synced = True

        asyncio.create_task(mark_synced())
        assert await wait_for_cache_sync(
            asyncio.Event(), informer, poll_interval=0.005
        ) is True

    async def test_stop_before_sync(self):
        stop_event = asyncio.Event()
        stop_event.set()
        assert await wait_for_cache_sync(stop_event, StaticInformer(synced=False)) is False
