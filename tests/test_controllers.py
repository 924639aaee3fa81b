"""Tests for the watch engine: work queue, shared controller and factories."""

import pytest
from kubernetes.client.rest import ApiException

from conftest import FakeResourceClient, make_object
from node_manager import controllers
from node_manager.config import KSMTUNED_KIND, NODE_KIND
from node_manager.controllers import (
    Factory,
    KsmtunedFactory,
    NodeFactory,
    SharedController,
    Store,
    WorkQueue,
    start_all,
)
from node_manager.errors import FactoryError, StartError


# ============================================================================
# Work queue
# ============================================================================


class TestWorkQueue:

    def test_deduplicates_pending_keys(self):
        queue = WorkQueue()
        queue.add("a")
        queue.add("a")
        queue.add("b")

        assert len(queue) == 2
        assert queue.get(0) == "a"
        assert queue.get(0) == "b"

    def test_key_added_while_processing_is_requeued_on_done(self):
        queue = WorkQueue()
        queue.add("a")
        key = queue.get(0)

        queue.add("a")
        assert len(queue) == 0

        queue.done(key)
        assert queue.get(0) == "a"

    def test_get_times_out(self):
        assert WorkQueue().get(0.01) is None

    def test_shut_down_releases_getters(self):
        queue = WorkQueue()
        queue.shut_down()

        assert queue.get() is None
        assert queue.shutting_down is True

    def test_add_after_shut_down_is_ignored(self):
        queue = WorkQueue()
        queue.shut_down()
        queue.add("a")
        assert len(queue) == 0

    def test_rate_limited_requeue_backs_off(self):
        queue = WorkQueue(base_delay=0.001, max_delay=0.002)

        first = queue.add_rate_limited("a")
        second = queue.add_rate_limited("a")
        third = queue.add_rate_limited("a")

        assert first == 0.001
        assert second == 0.002
        assert third == 0.002
        assert queue.num_requeues("a") == 3
        assert queue.get(1) == "a"

        queue.forget("a")
        assert queue.num_requeues("a") == 0


class TestStore:

    def test_replace_returns_dropped_objects(self):
        store = Store()
        store.set("a", {"n": 1})
        store.set("b", {"n": 2})

        dropped = store.replace({"b": {"n": 3}, "c": {"n": 4}})

        assert dropped == {"a": {"n": 1}}
        assert sorted(store.keys()) == ["b", "c"]
        assert store.get("b") == {"n": 3}


# ============================================================================
# Shared controller
# ============================================================================


def make_controller(**kwargs):
    return SharedController(FakeResourceClient(**kwargs), queue=WorkQueue(base_delay=0))


class TestSharedController:

    def test_added_event_updates_cache_and_enqueues(self):
        controller = make_controller()

        version = controller.handle_event({"type": "ADDED", "object": make_object("a", "7")})

        assert version == "7"
        assert controller.cache.get("a")["metadata"]["name"] == "a"
        assert controller.queue.get(0) == "a"

    def test_error_event_is_ignored(self):
        controller = make_controller()

        version = controller.handle_event({"type": "ERROR", "object": {"code": 500}})

        assert version == ""
        assert len(controller.queue) == 0

    def test_deletion_runs_change_and_remove_handlers(self):
        controller = make_controller()
        changes, removals = [], []
        controller.on_change("test", lambda key, obj: changes.append((key, obj)))
        controller.on_remove("test", lambda key, obj: removals.append((key, obj)))
        obj = make_object("a")

        controller.handle_event({"type": "ADDED", "object": obj})
        controller.handle_event({"type": "DELETED", "object": obj})
        controller.sync("a")

        assert changes == [("a", None)]
        assert removals == [("a", obj)]

        controller.sync("a")
        assert len(removals) == 1

    def test_process_next_item_runs_handlers(self):
        controller = make_controller()
        seen = []
        controller.on_change("test", lambda key, obj: seen.append(obj["metadata"]["name"]))
        controller.handle_event({"type": "MODIFIED", "object": make_object("a")})

        assert controller.process_next_item(0) is True
        assert seen == ["a"]

    def test_failed_handler_is_requeued(self):
        controller = make_controller()
        calls = []

        def handler(key, obj):
            calls.append(key)
            if len(calls) == 1:
                raise RuntimeError("transient")

        controller.on_change("flaky", handler)
        controller.enqueue("a")

        controller.process_next_item(0)
        assert controller.queue.num_requeues("a") == 1

        controller.process_next_item(1)
        assert calls == ["a", "a"]
        assert controller.queue.num_requeues("a") == 0

    def test_failed_handler_is_dropped_after_max_retries(self, monkeypatch):
        monkeypatch.setattr(controllers, "MAX_RETRIES", 0)
        controller = make_controller()
        controller.on_change("broken", lambda key, obj: 1 / 0)
        removals = []
        controller.on_remove("test", lambda key, obj: removals.append(key))
        controller.handle_event({"type": "ADDED", "object": make_object("a")})
        controller.handle_event({"type": "DELETED", "object": make_object("a")})

        controller.process_next_item(0)

        assert controller.queue.get(0.05) is None
        assert controller._tombstones == {}
        assert removals == []

    def test_process_next_item_stops_after_shut_down(self):
        controller = make_controller()
        controller.queue.shut_down()
        assert controller.process_next_item() is False

    def test_relist_replaces_cache_and_tombstones_missing(self):
        controller = make_controller(objects=[make_object("b")])
        removals = []
        controller.on_remove("test", lambda key, obj: removals.append(key))
        controller.cache.set("a", make_object("a"))

        assert controller._relist() == "1"
        assert controller.cache.keys() == ["b"]

        keys = {controller.queue.get(0), controller.queue.get(0)}
        assert keys == {"a", "b"}
        controller.sync("a")
        assert removals == ["a"]

    def test_watch_loop_lists_then_streams(self, ctx):
        events = [
            {"type": "ADDED", "object": make_object("b", "2")},
            {"type": "DELETED", "object": make_object("a", "3")},
        ]
        controller = make_controller(
            objects=[make_object("a")], events=events, on_watch_end=ctx.cancel
        )

        controller._watch_loop(ctx)

        assert controller.cache.keys() == ["b"]

    def test_watch_loop_relists_when_expired(self, ctx):
        client = FakeResourceClient(objects=[make_object("a")])
        lists = []
        original_list = client.list

        def list_objects():
            lists.append(1)
            return original_list()

        def watch(resource_version="", timeout=300):
            if len(lists) == 1:
                raise ApiException(status=410, reason="Gone")
            ctx.cancel()
            return iter(())

        client.list = list_objects
        client.watch = watch
        controller = SharedController(client)

        controller._watch_loop(ctx)

        assert len(lists) == 2

    def test_get_falls_back_to_api(self):
        controller = make_controller(objects=[make_object("a")])
        assert controller.get("a")["metadata"]["name"] == "a"
        assert controller.get("missing") is None

    def test_writes_update_cache(self):
        controller = make_controller()

        controller.create(make_object("a"))
        controller.update_status(make_object("a", status={"ok": True}))

        assert controller.cache.get("a")["status"] == {"ok": True}
        assert len(controller.client.created) == 1

    def test_handlers_cannot_be_added_after_start(self, cancelled_ctx):
        controller = make_controller()
        controller.on_change("before", lambda key, obj: None)

        controller.start(cancelled_ctx, 1)

        assert controller.started is True
        with pytest.raises(RuntimeError):
            controller.on_change("after", lambda key, obj: None)
        with pytest.raises(RuntimeError):
            controller.on_remove("after", lambda key, obj: None)


# ============================================================================
# Factories
# ============================================================================


class FakeFactory(Factory):
    kinds = {"Fake": FakeResourceClient}

    def __init__(self, api_client=None):
        super().__init__(api_client)


class TestFactory:

    def test_for_kind_returns_one_controller_per_kind(self, monkeypatch):
        monkeypatch.setattr(NodeFactory, "kinds", {NODE_KIND: lambda api: FakeResourceClient()})
        factory = NodeFactory(None)

        assert factory.node() is factory.for_kind(NODE_KIND)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            NodeFactory(None).for_kind(KSMTUNED_KIND)

    def test_from_config_failure(self, monkeypatch):
        def broken(cfg):
            raise RuntimeError("bad config")

        monkeypatch.setattr(controllers.client, "ApiClient", broken)

        with pytest.raises(FactoryError, match="KsmtunedFactory"):
            KsmtunedFactory.from_config(object())

    def test_start_only_starts_controllers_with_handlers(self, cancelled_ctx):
        factory = FakeFactory()
        watched = factory.for_kind("Fake")
        watched.on_change("test", lambda key, obj: None)

        factory.start(cancelled_ctx, 2)

        assert watched.started is True

    def test_start_skips_controllers_without_handlers(self, cancelled_ctx):
        factory = FakeFactory()
        idle = factory.for_kind("Fake")

        factory.start(cancelled_ctx, 2)

        assert idle.started is False


class TestStartAll:

    def test_starts_factories_in_order(self, ctx):
        started = []

        class Recording:
            def __init__(self, name):
                self.name = name

            def start(self, ctx, threadiness):
                started.append((self.name, threadiness))

        start_all(ctx, 3, Recording("ksmtuneds"), Recording("nodes"))

        assert started == [("ksmtuneds", 3), ("nodes", 3)]

    def test_failure_raises_start_error(self, ctx):
        class Broken:
            def start(self, ctx, threadiness):
                raise RuntimeError("no workers")

        with pytest.raises(StartError, match="no workers"):
            start_all(ctx, 2, Broken())
