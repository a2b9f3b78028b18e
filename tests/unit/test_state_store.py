import asyncio

import pytest
from unittest.mock import Mock

from src.models.conversation import (
    ButtonState,
    ButtonStatePatch,
    ChatStatus,
    ConversationState,
    RecordingState,
)
from src.services.state_store import StateStore
from tests.helpers import make_message, text


@pytest.mark.asyncio
async def test_get_missing_conversation_returns_none(store):
    assert await store.get_conversation("u1") is None


@pytest.mark.asyncio
async def test_get_or_default_returns_documented_default(store):
    state = await store.get_conversation_or_default("u1")

    assert state.messages == []
    assert state.current_index == 0
    assert state.status == ChatStatus.READY
    assert state.is_user_message_in_placeholder is False
    assert state.demo_mode_active is True
    assert state.input == ""


@pytest.mark.asyncio
async def test_set_conversation_publishes_state_update(store, broker):
    events = []
    broker.subscribe("u1", events.append)
    state = ConversationState(messages=[make_message("m0", "ai-agent", text("hi"))], current_index=1)

    await store.set_conversation("u1", state)

    assert [e["type"] for e in events] == ["state_update"]
    assert events[0]["data"]["currentIndex"] == 1
    assert events[0]["data"]["messages"][0]["id"] == "m0"


@pytest.mark.asyncio
async def test_set_conversation_drops_local_input(store):
    await store.set_conversation("u1", ConversationState(input="half typed"))

    stored = await store.get_conversation("u1")

    assert stored.input == ""


@pytest.mark.asyncio
async def test_returned_state_is_a_copy(store):
    await store.set_conversation("u1", ConversationState())

    state = await store.get_conversation("u1")
    state.messages.append(make_message("m0"))

    assert (await store.get_conversation("u1")).messages == []


@pytest.mark.asyncio
async def test_clear_conversation_publishes_clear(store, broker):
    events = []
    broker.subscribe("u1", events.append)
    await store.set_conversation("u1", ConversationState(current_index=3))

    await store.clear_conversation("u1")

    assert events[-1] == {"type": "clear", "data": None}
    assert await store.get_conversation("u1") is None


@pytest.mark.asyncio
async def test_write_stands_when_publish_fails():
    broker = Mock()
    broker.publish.side_effect = RuntimeError("broker down")
    store = StateStore(broker)

    await store.set_conversation("u1", ConversationState(current_index=2))

    assert (await store.get_conversation("u1")).current_index == 2


@pytest.mark.asyncio
async def test_button_state_defaults(store):
    buttons = await store.get_button_state_or_default("u1")

    assert buttons.to_payload() == {
        "isConnectOpenPhoneClicked": False,
        "isConnectThumbtackClicked": False,
        "agentRecordingState": "not_started",
    }


@pytest.mark.asyncio
async def test_button_partial_update_merges_over_default(store, broker):
    events = []
    broker.subscribe("u1", events.append)

    merged = await store.update_button_state("u1", ButtonStatePatch(is_connect_thumbtack_clicked=True))
    merged = await store.update_button_state("u1", ButtonStatePatch(agent_recording_state=RecordingState.RECORDING))

    assert merged.is_connect_thumbtack_clicked is True
    assert merged.is_connect_open_phone_clicked is False
    assert merged.agent_recording_state == RecordingState.RECORDING
    assert [e["type"] for e in events] == ["button_states_update", "button_states_update"]
    assert events[-1]["data"]["agentRecordingState"] == "recording"


@pytest.mark.asyncio
async def test_button_state_clear(store, broker):
    events = []
    broker.subscribe("u1", events.append)
    await store.set_button_state("u1", ButtonState(is_connect_open_phone_clicked=True))

    await store.clear_button_state("u1")

    assert events[-1] == {"type": "button_states_clear", "data": None}
    assert await store.get_button_state("u1") is None


@pytest.mark.asyncio
async def test_users_are_independent(store):
    await store.set_conversation("u1", ConversationState(current_index=4))

    assert (await store.get_conversation_or_default("u2")).current_index == 0
    assert store.user_count() == 1


@pytest.mark.asyncio
async def test_concurrent_patches_all_apply(store):
    await asyncio.gather(
        store.update_button_state("u1", ButtonStatePatch(is_connect_thumbtack_clicked=True)),
        store.update_button_state("u1", ButtonStatePatch(is_connect_open_phone_clicked=True)),
        store.update_button_state("u1", ButtonStatePatch(agent_recording_state=RecordingState.PAUSED)),
    )

    merged = await store.get_button_state("u1")
    assert merged.is_connect_thumbtack_clicked is True
    assert merged.is_connect_open_phone_clicked is True
    assert merged.agent_recording_state == RecordingState.PAUSED
