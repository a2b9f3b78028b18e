"""Events fanned out to push connections and messages mirrored between surfaces."""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from src.models.conversation.types import (
    ChatStatus,
    ConversationState,
    Message,
    RecordingState,
    WireModel,
)


class EventKind(str, Enum):
    """Types of events pushed to connected clients."""

    INITIAL = "initial"
    STATE_UPDATE = "state_update"
    CLEAR = "clear"
    BUTTON_STATES_UPDATE = "button_states_update"
    BUTTON_STATES_CLEAR = "button_states_clear"
    ERROR = "error"


def make_event(kind: EventKind, data: Optional[dict[str, Any]] = None, **extra: Any) -> dict[str, Any]:
    """Build the ``{"type": ..., "data": ...}`` envelope used on the push channel."""
    event: dict[str, Any] = {"type": kind.value, "data": data}
    event.update(extra)
    return event


class SyncStateMessage(WireModel):
    type: Literal["SYNC_STATE"] = "SYNC_STATE"
    payload: ConversationState


class UserMessagePayload(WireModel):
    message: Message
    new_index: int = Field(ge=0)


class UserMessageSubmitted(WireModel):
    type: Literal["USER_MESSAGE_SUBMITTED"] = "USER_MESSAGE_SUBMITTED"
    payload: UserMessagePayload


class DemoProgressPayload(WireModel):
    new_index: int = Field(ge=0)
    new_message: Optional[Message] = None
    status: ChatStatus = ChatStatus.READY
    is_user_message_in_placeholder: bool = False


class DemoProgress(WireModel):
    type: Literal["DEMO_PROGRESS"] = "DEMO_PROGRESS"
    payload: DemoProgressPayload


class RecordingStatePayload(WireModel):
    state: RecordingState


class WorkflowRecordingState(WireModel):
    type: Literal["WORKFLOW_RECORDING_STATE"] = "WORKFLOW_RECORDING_STATE"
    payload: RecordingStatePayload


BroadcastMessage = Annotated[
    Union[SyncStateMessage, UserMessageSubmitted, DemoProgress, WorkflowRecordingState],
    Field(discriminator="type"),
]

broadcast_message_adapter: TypeAdapter[BroadcastMessage] = TypeAdapter(BroadcastMessage)


def dump_broadcast(message: BroadcastMessage) -> dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_broadcast(data: Any) -> BroadcastMessage:
    return broadcast_message_adapter.validate_python(data)
