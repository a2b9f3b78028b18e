"""Side panel state driven by message parts.

Revealing a message runs the side effect of each of its parts once. The
same state can be rebuilt from persisted history after a reload; workflow
ids are derived from the message id and part position so a replay upserts
instead of duplicating.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Sequence

from src.core.logger import get_logger
from src.models.conversation import (
    AppStatus,
    ButtonState,
    Message,
    MessagePart,
    PartType,
    RecordingState,
)
from src.models.conversation.types import WireModel
from src.sync.clock import Clock, TimerHandle

logger = get_logger("panel")

RECORDING_COMMANDS = {
    "start": RecordingState.RECORDING,
    "pause": RecordingState.PAUSED,
    "stop": RecordingState.IDLE,
}


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class WorkflowEntry(WireModel):
    id: str
    workflow: str
    category: str = "default"
    is_new: bool = False
    is_pretrained: bool = False


class Summary(WireModel):
    heading: str
    subheading: str = ""


def workflow_id(message_id: Optional[str], message_index: int, part_index: int) -> str:
    base = message_id or f"message-{message_index}"
    return f"workflow-{base}-{part_index}"


@dataclass
class PanelEffects:
    """Outward consequences of revealing one message."""

    sidebar_requested: bool = False
    recording_state: Optional[RecordingState] = None
    agent_switch_target: Optional[str] = None


class SidePanel:
    def __init__(
        self,
        clock: Clock,
        pretrained_workflows: Sequence[WorkflowEntry] = (),
        agent_switch_delay: float = 3.0,
        on_open_sidebar: Optional[Callable[[], None]] = None,
    ):
        self._clock = clock
        self._pretrained = [w.model_copy(update={"is_pretrained": True}) for w in pretrained_workflows]
        self._agent_switch_delay = agent_switch_delay
        self._on_open_sidebar = on_open_sidebar
        self._agent_switch_handle: Optional[TimerHandle] = None
        self._hydrated = False
        self.reset()

    def reset(self) -> None:
        if self._agent_switch_handle is not None:
            self._agent_switch_handle.cancel()
        self._agent_switch_handle = None
        self.sidebar_open = False
        self.summary: Optional[Summary] = None
        self.summary_messages: list[str] = []
        self.app_statuses: list[AppStatus] = []
        self.connection_states: dict[str, ConnectionStatus] = {}
        self.workflows: list[WorkflowEntry] = list(self._pretrained)
        self.recording_state = RecordingState.NOT_STARTED
        self.agent_switching = False
        self.agent_switching_text = ""

    def apply_message(self, message: Message, message_index: int) -> PanelEffects:
        effects = PanelEffects()
        for part_index, part in enumerate(message.parts):
            self._apply_part(message, message_index, part_index, part, effects)
        return effects

    def _apply_part(
        self,
        message: Message,
        message_index: int,
        part_index: int,
        part: MessagePart,
        effects: PanelEffects,
    ) -> None:
        if part.type == PartType.OPEN_SIDEBAR:
            self.sidebar_open = True
            effects.sidebar_requested = True
            if self._on_open_sidebar is not None:
                self._on_open_sidebar()

        elif part.type == PartType.SUMMARY_ADDED:
            self.summary = Summary(heading=part.get("heading", ""), subheading=part.get("subheading", ""))
            self.summary_messages = []

        elif part.type == PartType.SUMMARY_UPDATED:
            self.summary_messages = [*self.summary_messages, *part.get("messages", [])]

        elif part.type == PartType.APP_EVENT:
            self.merge_apps(_apps_from_part(part))

        elif part.type == PartType.NEW_WORKFLOW:
            self._upsert_workflow(
                WorkflowEntry(
                    id=workflow_id(message.id, message_index, part_index),
                    workflow=part.get("workflow", ""),
                    category=part.get("category") or "default",
                    is_new=True,
                )
            )

        elif part.type == PartType.RECORDING_STATE:
            state = RECORDING_COMMANDS.get(part.get("state"))
            if state is None:
                logger.warning(f"Unknown recording command {part.get('state')!r} in {message.id}")
                return
            self.recording_state = state
            effects.recording_state = state

        elif part.type == PartType.SYSTEM_EVENT and part.get("event") == "agent-switching":
            metadata = part.get("metadata") or {}
            target = metadata.get("targetAgent") or "Agent"
            self.start_agent_switch(target)
            effects.agent_switch_target = target

    def _upsert_workflow(self, entry: WorkflowEntry) -> None:
        for index, existing in enumerate(self.workflows):
            if existing.id == entry.id:
                self.workflows[index] = existing.model_copy(
                    update={"workflow": entry.workflow, "category": entry.category}
                )
                return
        # Newest learned workflow goes right after the pretrained ones.
        position = sum(1 for w in self.workflows if w.is_pretrained)
        self.workflows.insert(position, entry)

    def rebuild(self, messages: Iterable[Message]) -> None:
        """Reconstruct summary, apps and learned workflows from history."""
        summary: Optional[Summary] = None
        summary_messages: list[str] = []
        latest_apps: list[AppStatus] = []
        learned: list[WorkflowEntry] = []
        mark_new = self._hydrated

        for message_index, message in enumerate(messages):
            for part_index, part in enumerate(message.parts):
                if part.type == PartType.SUMMARY_ADDED:
                    summary = Summary(heading=part.get("heading", ""), subheading=part.get("subheading", ""))
                    summary_messages = []
                elif part.type == PartType.SUMMARY_UPDATED:
                    summary_messages = [*summary_messages, *part.get("messages", [])]
                elif part.type == PartType.APP_EVENT:
                    latest_apps = _apps_from_part(part)
                elif part.type == PartType.NEW_WORKFLOW:
                    learned.insert(
                        0,
                        WorkflowEntry(
                            id=workflow_id(message.id, message_index, part_index),
                            workflow=part.get("workflow", ""),
                            category=part.get("category") or "default",
                            is_new=mark_new,
                        ),
                    )

        if summary is not None:
            self.summary = summary
            self.summary_messages = summary_messages
        if latest_apps:
            self.merge_apps(latest_apps)
        if learned:
            existing = {w.id: w for w in self.workflows}
            merged = [
                existing[w.id].model_copy(
                    update={"workflow": w.workflow, "category": w.category, "is_pretrained": False}
                )
                if w.id in existing
                else w
                for w in learned
            ]
            self.workflows = [w for w in self.workflows if w.is_pretrained] + merged

        self._hydrated = True

    def merge_apps(self, apps: Sequence[AppStatus]) -> None:
        """Merge app statuses without downgrading an app that is enabled or connecting."""
        if not self.app_statuses:
            self.app_statuses = [app.model_copy() for app in apps]
        else:
            merged = list(self.app_statuses)
            for app in apps:
                index = next((i for i, a in enumerate(merged) if a.app_id == app.app_id), None)
                if index is None:
                    merged.append(app.model_copy())
                elif not (merged[index].enabled or merged[index].connecting):
                    merged[index] = app.model_copy()
            self.app_statuses = merged

        for app in apps:
            if self.connection_states.get(app.app_id) == ConnectionStatus.CONNECTED:
                continue
            if app.enabled:
                self.connection_states[app.app_id] = ConnectionStatus.CONNECTED
            elif app.connecting:
                self.connection_states[app.app_id] = ConnectionStatus.CONNECTING
            else:
                self.connection_states[app.app_id] = ConnectionStatus.IDLE

    def begin_connect(self, app_id: str) -> None:
        self.connection_states[app_id] = ConnectionStatus.CONNECTING
        self._set_app(app_id, enabled=False, connecting=True)

    def finish_connect(self, app_id: str) -> None:
        self.connection_states[app_id] = ConnectionStatus.CONNECTED
        self._set_app(app_id, enabled=True, connecting=False)

    def _set_app(self, app_id: str, enabled: bool, connecting: bool) -> None:
        updated = AppStatus(app_id=app_id, enabled=enabled, connecting=connecting)
        if any(app.app_id == app_id for app in self.app_statuses):
            self.app_statuses = [updated if app.app_id == app_id else app for app in self.app_statuses]
        else:
            self.app_statuses = [*self.app_statuses, updated]

    def apply_button_state(self, buttons: ButtonState) -> None:
        """Restore connections and the recording indicator from stored button flags.

        An app still connecting here keeps its own timer to finish.
        """
        for app_id, clicked in (
            ("thumbtack", buttons.is_connect_thumbtack_clicked),
            ("openphone", buttons.is_connect_open_phone_clicked),
        ):
            if clicked and self.connection_states.get(app_id) != ConnectionStatus.CONNECTING:
                self.finish_connect(app_id)
        self.recording_state = buttons.agent_recording_state

    def start_agent_switch(self, target: str) -> None:
        if self._agent_switch_handle is not None:
            self._agent_switch_handle.cancel()
        self.agent_switching = True
        self.agent_switching_text = f"Switching to {target}..."
        self._agent_switch_handle = self._clock.call_later(self._agent_switch_delay, self._end_agent_switch)

    def _end_agent_switch(self) -> None:
        self._agent_switch_handle = None
        self.agent_switching = False
        self.agent_switching_text = ""

    def snapshot(self) -> dict[str, Any]:
        return {
            "sidebarOpen": self.sidebar_open,
            "summary": self.summary.model_dump(by_alias=True) if self.summary else None,
            "summaryMessages": list(self.summary_messages),
            "appStatuses": [app.model_dump() for app in self.app_statuses],
            "connectionStates": {k: v.value for k, v in self.connection_states.items()},
            "workflows": [w.model_dump(by_alias=True) for w in self.workflows],
            "recordingState": self.recording_state.value,
            "agentSwitching": self.agent_switching,
        }


def _apps_from_part(part: MessagePart) -> list[AppStatus]:
    return [
        AppStatus(app_id=app["app_id"], enabled=bool(app.get("enabled", False)), connecting=False)
        for app in part.get("apps", [])
        if isinstance(app, dict) and "app_id" in app
    ]
