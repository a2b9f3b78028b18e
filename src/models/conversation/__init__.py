"""Conversation state models and sync events."""

from src.models.conversation.events import (
    BroadcastMessage,
    DemoProgress,
    DemoProgressPayload,
    EventKind,
    RecordingStatePayload,
    SyncStateMessage,
    UserMessagePayload,
    UserMessageSubmitted,
    WorkflowRecordingState,
    dump_broadcast,
    make_event,
    parse_broadcast,
)
from src.models.conversation.types import (
    AppStatus,
    ButtonState,
    ButtonStatePatch,
    ChatStatus,
    ConversationState,
    Message,
    MessagePart,
    MessageRole,
    PartType,
    RecordingState,
)

__all__ = [
    "AppStatus",
    "BroadcastMessage",
    "ButtonState",
    "ButtonStatePatch",
    "ChatStatus",
    "ConversationState",
    "DemoProgress",
    "DemoProgressPayload",
    "EventKind",
    "Message",
    "MessagePart",
    "MessageRole",
    "PartType",
    "RecordingState",
    "RecordingStatePayload",
    "SyncStateMessage",
    "UserMessagePayload",
    "UserMessageSubmitted",
    "WorkflowRecordingState",
    "dump_broadcast",
    "make_event",
    "parse_broadcast",
]
