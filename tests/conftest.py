"""Shared fixtures and test doubles."""

import pytest

from node_manager.clients import ResourceClient
from node_manager.signals import Context

KSM_FILES = {
    "run": 0,
    "pages_to_scan": 100,
    "sleep_millisecs": 200,
    "merge_across_nodes": 1,
    "pages_shared": 0,
    "pages_sharing": 0,
    "pages_unshared": 0,
    "pages_volatile": 0,
    "full_scans": 0,
    "stable_node_chains": 0,
    "stable_node_dups": 0,
}


def write_meminfo(path, total_kb, available_kb):
    path.write_text(
        f"MemTotal:       {total_kb} kB\n"
        f"MemFree:        {available_kb} kB\n"
        f"MemAvailable:   {available_kb} kB\n"
    )


def read_ksm(ksm_dir, name):
    return int((ksm_dir / name).read_text().strip())


class FakeResourceClient(ResourceClient):
    """In-memory resource client."""

    kind = "Fake"

    def __init__(self, objects=None, events=None, on_watch_end=None):
        super().__init__(None)
        self.objects = {o["metadata"]["name"]: o for o in (objects or [])}
        self.events = list(events or [])
        self.on_watch_end = on_watch_end
        self.created = []
        self.updated = []
        self.status_updates = []

    def list(self):
        return list(self.objects.values()), "1"

    def watch(self, resource_version="", timeout=300):
        for event in self.events:
            yield event
        self.events = []
        if self.on_watch_end is not None:
            self.on_watch_end()

    def get(self, name):
        return self.objects.get(name)

    def create(self, body):
        self.created.append(body)
        self.objects[body["metadata"]["name"]] = body
        return body

    def update(self, body):
        self.updated.append(body)
        self.objects[body["metadata"]["name"]] = body
        return body

    def update_status(self, body):
        self.status_updates.append(body)
        self.objects[body["metadata"]["name"]] = body
        return body


def make_object(name, resource_version="1", **fields):
    obj = {"metadata": {"name": name, "resourceVersion": resource_version}}
    obj.update(fields)
    return obj


@pytest.fixture
def ctx():
    return Context()


@pytest.fixture
def cancelled_ctx():
    context = Context()
    context.cancel()
    return context


@pytest.fixture
def ksm_dir(tmp_path):
    path = tmp_path / "ksm"
    path.mkdir()
    for name, value in KSM_FILES.items():
        (path / name).write_text(f"{value}\n")
    return path


@pytest.fixture
def meminfo(tmp_path):
    path = tmp_path / "meminfo"
    write_meminfo(path, total_kb=1000, available_kb=800)
    return path
