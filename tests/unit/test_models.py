import pytest
from pydantic import ValidationError

from src.models.conversation import (
    ChatStatus,
    ConversationState,
    DemoProgress,
    SyncStateMessage,
    dump_broadcast,
    parse_broadcast,
)
from tests.helpers import make_message, text


def test_append_is_idempotent_by_id():
    state = ConversationState()
    first = make_message("m0", "ai-agent", text("first"))
    second = make_message("m0", "ai-agent", text("second"))

    state = state.with_message(first).with_message(second)

    assert len(state.messages) == 1
    assert state.messages[0].parts[0].get("text") == "first"


def test_payload_is_camel_case_and_never_carries_input():
    state = ConversationState(input="draft", is_user_message_in_placeholder=True)

    payload = state.to_payload()

    assert payload["input"] == ""
    assert payload["isUserMessageInPlaceholder"] is True
    assert payload["demoModeActive"] is True
    assert "appStatuses" not in payload


def test_legacy_cursor_name_is_accepted():
    state = ConversationState.model_validate({"currentMessageIndex": 5, "status": "streaming"})

    assert state.current_index == 5
    assert state.status == ChatStatus.STREAMING
    assert state.to_payload()["currentIndex"] == 5


def test_negative_cursor_is_rejected():
    with pytest.raises(ValidationError):
        ConversationState(current_index=-1)


def test_unknown_part_fields_survive_a_round_trip():
    message = make_message("m0", "ai-agent", {"type": "reasoning", "text": "thinking", "status": "streaming"})
    state = ConversationState().with_message(message)

    restored = ConversationState.model_validate(state.to_payload())

    assert restored.messages[0].parts[0].get("status") == "streaming"


def test_broadcast_messages_are_discriminated_by_type():
    message = parse_broadcast(
        {"type": "DEMO_PROGRESS", "payload": {"newIndex": 2, "status": "streaming", "isUserMessageInPlaceholder": False}}
    )

    assert isinstance(message, DemoProgress)
    assert message.payload.new_index == 2
    assert message.payload.new_message is None


def test_sync_state_dump_uses_wire_names():
    data = dump_broadcast(SyncStateMessage(payload=ConversationState(current_index=1)))

    assert data["type"] == "SYNC_STATE"
    assert data["payload"]["currentIndex"] == 1


def test_unknown_broadcast_type_is_rejected():
    with pytest.raises(ValidationError):
        parse_broadcast({"type": "SOMETHING_ELSE", "payload": {}})
