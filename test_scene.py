#!/usr/bin/env python3
"""Tests for the scene store and the sync broadcaster."""

import asyncio
import json

import pytest

from xander_draw.scene import SceneStore, SyncBroadcaster


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_text(self, data):
        self.sent.append(json.loads(data))


class BrokenSocket:
    async def send_text(self, data):
        raise ConnectionResetError("gone")


def _drain(broadcaster, *subscribers):
    """Close the subscribers and deliver everything queued for them."""
    async def run():
        for sub in subscribers:
            broadcaster.unsubscribe(sub)
        await asyncio.gather(*(sub.pump() for sub in subscribers))
    asyncio.run(run())


def _update(elements, app_state=None):
    payload = {"elements": elements}
    if app_state is not None:
        payload["appState"] = app_state
    return json.dumps({"type": "scene:update", "payload": payload})


# ============================================================================
# Scene Store
# ============================================================================

def test_append_preserves_order():
    store = SceneStore()
    store.append([{"id": "1"}, {"id": "2"}])
    store.append([{"id": "3"}])

    assert [e["id"] for e in store.export_snapshot()["elements"]] == ["1", "2", "3"]


def test_clear_empties_scene():
    store = SceneStore()
    store.append([{"id": "1"}])
    assert not store.is_empty

    store.clear()

    assert store.is_empty
    assert store.export_snapshot() == {"elements": [], "appState": {}}


def test_replace_with_and_without_app_state():
    store = SceneStore()
    store.replace([{"id": "a"}], {"zoom": {"value": 2}})
    assert store.export_snapshot()["appState"] == {"zoom": {"value": 2}}

    store.replace([{"id": "b"}])

    assert store.export_snapshot() == {"elements": [{"id": "b"}], "appState": {}}


def test_replace_elements_keeps_app_state():
    store = SceneStore()
    store.replace([{"id": "a"}], {"scrollX": 10})
    store.replace_elements([{"id": "b"}])

    assert store.export_snapshot() == {"elements": [{"id": "b"}], "appState": {"scrollX": 10}}


def test_snapshot_is_read_only():
    store = SceneStore()
    store.append([{"id": "1"}])

    snapshot = store.export_snapshot()
    snapshot["elements"].append({"id": "intruder"})
    snapshot["appState"]["zoom"] = 3

    assert store.export_snapshot() == {"elements": [{"id": "1"}], "appState": {}}


# ============================================================================
# Sync Broadcaster
# ============================================================================

def test_subscriber_receives_init_then_updates():
    broadcaster = SyncBroadcaster()
    socket = FakeSocket()
    sub = broadcaster.subscribe(socket)

    broadcaster.append([{"id": "1"}])
    broadcaster.clear()
    _drain(broadcaster, sub)

    assert [m["type"] for m in socket.sent] == ["scene:init", "scene:update", "scene:update"]
    assert socket.sent[0]["payload"]["elements"] == []
    assert socket.sent[1]["payload"]["elements"] == [{"id": "1"}]
    assert socket.sent[2]["payload"]["elements"] == []


def test_late_joiner_gets_current_scene_first():
    broadcaster = SyncBroadcaster()
    early = FakeSocket()
    early_sub = broadcaster.subscribe(early)

    broadcaster.append([{"id": "1"}])
    broadcaster.append([{"id": "2"}])
    broadcaster.replace([{"id": "3"}], {"theme": "dark"})

    late = FakeSocket()
    late_sub = broadcaster.subscribe(late)
    _drain(broadcaster, early_sub, late_sub)

    assert len(early.sent) == 4
    assert late.sent == [{
        "type": "scene:init",
        "payload": {"elements": [{"id": "3"}], "appState": {"theme": "dark"}},
    }]


def test_pushed_update_not_echoed_to_sender():
    broadcaster = SyncBroadcaster()
    a, b, c = FakeSocket(), FakeSocket(), FakeSocket()
    sub_a = broadcaster.subscribe(a)
    sub_b = broadcaster.subscribe(b)
    sub_c = broadcaster.subscribe(c)

    assert broadcaster.handle_message(sub_a, _update([{"id": "drawn"}], {"zoom": 1}))
    _drain(broadcaster, sub_a, sub_b, sub_c)

    assert [m["type"] for m in a.sent] == ["scene:init"]
    for socket in (b, c):
        assert socket.sent[-1] == {
            "type": "scene:update",
            "payload": {"elements": [{"id": "drawn"}], "appState": {"zoom": 1}},
        }
    assert broadcaster.export_snapshot()["elements"] == [{"id": "drawn"}]


def test_burst_of_pushes_keeps_order():
    broadcaster = SyncBroadcaster()
    pusher, viewer = FakeSocket(), FakeSocket()
    sub_p = broadcaster.subscribe(pusher)
    sub_v = broadcaster.subscribe(viewer)

    broadcaster.handle_message(sub_p, _update([{"id": "1"}]))
    broadcaster.append([{"id": "rest"}])
    broadcaster.handle_message(sub_p, _update([{"id": "2"}]))
    _drain(broadcaster, sub_p, sub_v)

    seen = [[e["id"] for e in m["payload"]["elements"]] for m in viewer.sent[1:]]
    assert seen == [["1"], ["1", "rest"], ["2"]]
    assert [[e["id"] for e in m["payload"]["elements"]] for m in pusher.sent[1:]] == [["1", "rest"]]


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2, 3]",
    json.dumps({"type": "scene:update"}),
    json.dumps({"type": "scene:update", "payload": {"elements": "nope"}}),
    json.dumps({"type": "scene:update", "payload": {"elements": [], "appState": 5}}),
    json.dumps({"type": "cursor:move", "payload": {}}),
])
def test_malformed_messages_dropped(raw):
    broadcaster = SyncBroadcaster()
    broadcaster.append([{"id": "keep"}])
    a, b = FakeSocket(), FakeSocket()
    sub_a = broadcaster.subscribe(a)
    sub_b = broadcaster.subscribe(b)

    assert broadcaster.handle_message(sub_a, raw) is False
    _drain(broadcaster, sub_a, sub_b)

    assert broadcaster.export_snapshot()["elements"] == [{"id": "keep"}]
    assert [m["type"] for m in b.sent] == ["scene:init"]


def test_unsubscribed_connection_gets_nothing_more():
    broadcaster = SyncBroadcaster()
    socket = FakeSocket()
    sub = broadcaster.subscribe(socket)
    broadcaster.unsubscribe(sub)

    broadcaster.append([{"id": "1"}])
    asyncio.run(sub.pump())

    assert [m["type"] for m in socket.sent] == ["scene:init"]
    assert broadcaster.client_count == 0


def test_failed_send_marks_connection_dead():
    broadcaster = SyncBroadcaster()
    sub = broadcaster.subscribe(BrokenSocket())
    healthy = broadcaster.subscribe(FakeSocket())
    assert broadcaster.client_count == 2

    asyncio.run(sub.pump())

    assert sub.alive is False
    assert broadcaster.client_count == 1
    broadcaster.append([{"id": "1"}])
    _drain(broadcaster, healthy)


def test_connection_that_stops_reading_is_dropped():
    broadcaster = SyncBroadcaster(max_pending=3)
    stalled = FakeSocket()
    stalled_sub = broadcaster.subscribe(stalled)
    broadcaster.append([{"id": "1"}])
    broadcaster.append([{"id": "2"}])
    assert stalled_sub.alive

    reader = FakeSocket()
    reader_sub = broadcaster.subscribe(reader)
    broadcaster.append([{"id": "3"}])

    assert stalled_sub.alive is False
    assert broadcaster.client_count == 1
    _drain(broadcaster, stalled_sub, reader_sub)
    assert stalled.sent == []
    assert [m["type"] for m in reader.sent] == ["scene:init", "scene:update"]
    assert len(reader.sent[-1]["payload"]["elements"]) == 3
