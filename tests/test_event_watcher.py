"""
Tests for the event watcher's event handling and relist logic.
"""
from types import SimpleNamespace

import pytest

from memcached_operator.core import constants
from memcached_operator.workers.event_watcher import EventWatcher, WatchExpired


class Recorder:
    def __init__(self):
        self.events = []
        self.relists = []

    async def on_event(self, event_type, obj):
        self.events.append((event_type, obj["metadata"]["name"]))

    async def on_relist(self, objects):
        self.relists.append([o["metadata"]["name"] for o in objects])


class StubCustomApi:
    def __init__(self, items, resource_version="100"):
        self.items = items
        self.resource_version = resource_version
        self.calls = []

    async def list_namespaced_custom_object(self, **kwargs):
        self.calls.append(("namespaced", kwargs))
        return {"items": self.items, "metadata": {"resourceVersion": self.resource_version}}

    async def list_cluster_custom_object(self, **kwargs):
        self.calls.append(("cluster", kwargs))
        return {"items": self.items, "metadata": {"resourceVersion": self.resource_version}}


def stub_cluster(items=()):
    custom_api = StubCustomApi(list(items))
    return SimpleNamespace(client_set=SimpleNamespace(custom_api=custom_api, api_client=None))


def memcached(name, rv):
    return {"metadata": {"name": name, "namespace": "demo", "resourceVersion": rv}}


@pytest.mark.asyncio
async def test_events_are_forwarded_and_track_resource_version():
    recorder = Recorder()
    watcher = EventWatcher(constants.KIND, stub_cluster(), recorder.on_event)

    await watcher.handle_event({"type": "ADDED", "object": memcached("mc1", "7")})

    assert recorder.events == [("ADDED", "mc1")]
    assert watcher.resource_version == "7"


@pytest.mark.asyncio
async def test_bookmark_only_advances_resource_version():
    recorder = Recorder()
    watcher = EventWatcher(constants.KIND, stub_cluster(), recorder.on_event)

    await watcher.handle_event({"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "42"}}})

    assert recorder.events == []
    assert watcher.resource_version == "42"


@pytest.mark.asyncio
async def test_gone_error_event_raises_watch_expired():
    watcher = EventWatcher(constants.KIND, stub_cluster(), Recorder().on_event)
    with pytest.raises(WatchExpired):
        await watcher.handle_event({"type": "ERROR", "raw_object": {"code": 410, "reason": "Expired"}})


@pytest.mark.asyncio
async def test_other_error_events_are_dropped():
    recorder = Recorder()
    watcher = EventWatcher(constants.KIND, stub_cluster(), recorder.on_event)
    await watcher.handle_event({"type": "ERROR", "raw_object": {"code": 500}})
    assert recorder.events == []


@pytest.mark.asyncio
async def test_relist_feeds_relist_callback():
    recorder = Recorder()
    cluster = stub_cluster([memcached("mc1", "3"), memcached("mc2", "4")])
    watcher = EventWatcher(
        constants.KIND, cluster, recorder.on_event, on_relist=recorder.on_relist, namespace="demo"
    )

    await watcher.relist()

    assert recorder.relists == [["mc1", "mc2"]]
    assert watcher.resource_version == "100"
    scope, kwargs = cluster.client_set.custom_api.calls[0]
    assert scope == "namespaced"
    assert kwargs["namespace"] == "demo"
    assert kwargs["plural"] == constants.PLURAL


@pytest.mark.asyncio
async def test_relist_without_callback_replays_as_added():
    recorder = Recorder()
    cluster = stub_cluster([memcached("mc1", "3")])
    watcher = EventWatcher(constants.KIND, cluster, recorder.on_event)

    await watcher.relist()

    assert recorder.events == [("ADDED", "mc1")]
    assert cluster.client_set.custom_api.calls[0][0] == "cluster"


@pytest.mark.asyncio
async def test_expired_watch_relists_before_streaming_again():
    recorder = Recorder()
    watcher = EventWatcher(constants.KIND, stub_cluster(), recorder.on_event, on_relist=recorder.on_relist)
    streams = []

    async def fake_stream():
        streams.append(watcher.resource_version)
        if len(streams) == 1:
            raise WatchExpired()
        watcher.running = False

    watcher._stream = fake_stream
    await watcher.start()

    assert len(recorder.relists) == 2
    assert streams == ["100", "100"]


def test_unsupported_kind_is_rejected():
    watcher = EventWatcher("ConfigMap", stub_cluster(), Recorder().on_event)
    with pytest.raises(ValueError):
        watcher._list_call()
