import pytest

from src.core.exceptions import BroadcastUnavailableError
from src.models.conversation import (
    ConversationState,
    DemoProgress,
    DemoProgressPayload,
    RecordingState,
    RecordingStatePayload,
    SyncStateMessage,
    WorkflowRecordingState,
)
from src.sync.broadcast import BroadcastBus, FrameWindow, LocalBroadcastHub


def progress(index):
    return DemoProgress(payload=DemoProgressPayload(new_index=index))


def test_channel_delivers_to_peers_not_sender():
    hub = LocalBroadcastHub()
    sender = hub.open_channel("sync")
    peer = hub.open_channel("sync")
    other = hub.open_channel("elsewhere")
    sent, received, unrelated = [], [], []
    sender.add_listener(sent.append)
    peer.add_listener(received.append)
    other.add_listener(unrelated.append)

    sender.post_message({"type": "X"})

    assert sent == []
    assert received == [{"type": "X"}]
    assert unrelated == []


def test_closed_channel_refuses_to_post():
    channel = LocalBroadcastHub().open_channel("sync")
    channel.close()

    with pytest.raises(BroadcastUnavailableError):
        channel.post_message({"type": "X"})


def test_bus_mirrors_between_tabs_in_order():
    hub = LocalBroadcastHub()
    tab_a = BroadcastBus.open(hub, "sync")
    tab_b = BroadcastBus.open(hub, "sync")
    received = []
    tab_b.add_listener(received.append)

    assert tab_a.broadcast(progress(1))
    assert tab_a.broadcast(progress(2))

    assert [m.payload.new_index for m in received] == [1, 2]


def test_bus_delivers_a_copy():
    hub = LocalBroadcastHub()
    tab_a = BroadcastBus.open(hub, "sync")
    tab_b = BroadcastBus.open(hub, "sync")
    received = []
    tab_b.add_listener(received.append)
    state = ConversationState(current_index=3)

    tab_a.broadcast(SyncStateMessage(payload=state))

    assert received[0].payload == state
    assert received[0].payload is not state


def test_unavailable_bus_is_a_noop():
    bus = BroadcastBus.unavailable()
    received = []
    bus.add_listener(received.append)

    assert bus.available is False
    assert bus.broadcast(progress(1)) is False
    assert received == []


def test_disposer_removes_listener():
    hub = LocalBroadcastHub()
    tab_a = BroadcastBus.open(hub, "sync")
    tab_b = BroadcastBus.open(hub, "sync")
    received = []
    dispose = tab_b.add_listener(received.append)

    dispose()
    dispose()
    tab_a.broadcast(progress(1))

    assert received == []


def test_iframe_relays_to_parent_with_source_tag():
    parent = FrameWindow()
    frame = FrameWindow(parent=parent)
    parent_bus = BroadcastBus(window=parent)
    frame_bus = BroadcastBus(window=frame)
    raw, received = [], []
    parent.add_listener(raw.append)
    parent_bus.add_listener(received.append)

    frame_bus.broadcast(WorkflowRecordingState(payload=RecordingStatePayload(state=RecordingState.RECORDING)))

    assert raw[0]["source"] == "conversation-sync-iframe"
    assert received[0].payload.state == RecordingState.RECORDING


def test_parent_relays_into_attached_frame():
    parent = FrameWindow()
    frame = FrameWindow(parent=parent)
    parent_bus = BroadcastBus(window=parent)
    frame_bus = BroadcastBus(window=frame)
    parent_bus.attach_frame(frame)
    received = []
    frame_bus.add_listener(received.append)

    parent_bus.broadcast(progress(4))

    assert received[0].payload.new_index == 4


def test_untagged_window_messages_are_ignored():
    window = FrameWindow()
    bus = BroadcastBus(window=window)
    received = []
    bus.add_listener(received.append)

    window.post_message({"type": "DEMO_PROGRESS", "payload": {"newIndex": 1}})

    assert received == []


def test_own_messages_relayed_back_are_dropped():
    parent = FrameWindow()
    frame = FrameWindow(parent=parent)
    bus = BroadcastBus(window=frame)
    bus.attach_frame(frame)
    received = []
    bus.add_listener(received.append)

    bus.broadcast(progress(1))

    assert received == []


def test_malformed_and_failing_listeners_do_not_break_delivery():
    hub = LocalBroadcastHub()
    tab_a = BroadcastBus.open(hub, "sync")
    tab_b = BroadcastBus.open(hub, "sync")
    received = []

    def broken(message):
        raise RuntimeError("listener bug")

    tab_b.add_listener(broken)
    tab_b.add_listener(received.append)
    raw_sender = hub.open_channel("sync")

    raw_sender.post_message({"type": "DEMO_PROGRESS", "payload": {"newIndex": -1}})
    tab_a.broadcast(progress(2))

    assert [m.payload.new_index for m in received] == [2]


def test_closed_bus_stops_receiving():
    hub = LocalBroadcastHub()
    tab_a = BroadcastBus.open(hub, "sync")
    tab_b = BroadcastBus.open(hub, "sync")
    received = []
    tab_b.add_listener(received.append)

    tab_b.close()

    assert tab_a.broadcast(progress(1)) is True
    assert received == []
