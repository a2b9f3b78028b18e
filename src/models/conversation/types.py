"""Common types and data structures for conversation state."""

from enum import Enum
from typing import Any, Iterator, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel


class ChatStatus(str, Enum):
    """Generation status shown by the chat."""

    READY = "ready"
    STREAMING = "streaming"
    SUBMITTED = "submitted"


class MessageRole(str, Enum):
    ASSISTANT = "assistant"
    USER = "user"
    AI_AGENT = "ai-agent"


class RecordingState(str, Enum):
    """Workflow recording indicator."""

    NOT_STARTED = "not_started"
    RECORDING = "recording"
    PAUSED = "paused"
    IDLE = "idle"


class PartType(str, Enum):
    """Part types the sync core reacts to.

    Other part types (reasoning, voice, link, ...) pass through untouched.
    """

    TEXT = "text"
    VOICE = "voice"
    OPTIONS = "options"
    BUTTON = "button"
    OPEN_SIDEBAR = "open-sidebar"
    APP_EVENT = "app-event"
    SUMMARY_ADDED = "summary-added"
    SUMMARY_UPDATED = "summary-updated"
    NEW_WORKFLOW = "new-workflow"
    RECORDING_STATE = "recording-state"
    SYSTEM_EVENT = "system-event"


class WireModel(BaseModel):
    """Base for payloads exchanged with browsers: camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessagePart(BaseModel):
    """A typed part of a message.

    Only ``type`` is declared; every other key is kept as-is so script
    content never has to be modelled here.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    type: str

    def get(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)


class Message(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    role: MessageRole
    parts: tuple[MessagePart, ...] = ()

    def has_part(self, part_type: str) -> bool:
        return any(part.type == part_type for part in self.parts)

    def iter_parts(self, part_type: str) -> Iterator[tuple[int, MessagePart]]:
        """Yield ``(position, part)`` for every part of the given type."""
        for index, part in enumerate(self.parts):
            if part.type == part_type:
                yield index, part

    def first_part(self, part_type: str) -> Optional[MessagePart]:
        return next((part for _, part in self.iter_parts(part_type)), None)


class AppStatus(BaseModel):
    app_id: str
    enabled: bool = False
    connecting: bool = False


class ConversationState(WireModel):
    """Per-user conversation state.

    ``input`` is local to one surface: it always serializes as an empty
    string so typing never leaks into stored or broadcast payloads.
    """

    messages: list[Message] = Field(default_factory=list)
    current_index: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("currentIndex", "currentMessageIndex", "current_index"),
        serialization_alias="currentIndex",
    )
    status: ChatStatus = ChatStatus.READY
    is_user_message_in_placeholder: bool = False
    demo_mode_active: bool = True
    input: str = ""
    app_statuses: Optional[list[AppStatus]] = None

    @field_serializer("input")
    def _never_serialize_input(self, value: str) -> str:
        return ""

    @classmethod
    def default(cls) -> "ConversationState":
        return cls()

    def has_message(self, message_id: str) -> bool:
        return any(message.id == message_id for message in self.messages)

    def with_message(self, message: Message) -> "ConversationState":
        """Return a copy with ``message`` appended.

        Appending an id that is already present returns ``self`` unchanged,
        so the first append wins.
        """
        if self.has_message(message.id):
            return self
        return self.model_copy(update={"messages": [*self.messages, message]})

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ButtonState(WireModel):
    is_connect_open_phone_clicked: bool = False
    is_connect_thumbtack_clicked: bool = False
    agent_recording_state: RecordingState = RecordingState.NOT_STARTED

    @classmethod
    def default(cls) -> "ButtonState":
        return cls()

    def merged(self, patch: "ButtonStatePatch") -> "ButtonState":
        return self.model_copy(update=patch.model_dump(exclude_unset=True, exclude_none=True))

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ButtonStatePatch(WireModel):
    """Partial button state: only the fields that were sent are applied."""

    is_connect_open_phone_clicked: Optional[bool] = None
    is_connect_thumbtack_clicked: Optional[bool] = None
    agent_recording_state: Optional[RecordingState] = None
