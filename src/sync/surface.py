"""One client surface: a tab, window or embedded frame showing the conversation.

The surface owns a progression machine and a side panel, persists its
changes to a backend and mirrors them to sibling surfaces over the
broadcast bus. Changes arriving from the push stream or the bus are
applied with the update source marked ``remote``, so they are never
published back out.
"""

import asyncio
import uuid
from contextlib import aclosing
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Iterable, Optional

from pydantic import ValidationError

from src.core.exceptions import ConversationSyncError, StoreUnavailableError
from src.core.logger import ChannelLogger, get_logger
from src.models.conversation import (
    BroadcastMessage,
    ButtonState,
    ButtonStatePatch,
    ConversationState,
    DemoProgress,
    EventKind,
    Message,
    MessagePart,
    MessageRole,
    PartType,
    RecordingState,
    RecordingStatePayload,
    SyncStateMessage,
    UserMessagePayload,
    UserMessageSubmitted,
    WorkflowRecordingState,
)
from src.sync.backend import StateBackend
from src.sync.broadcast import BroadcastBus
from src.sync.clock import AsyncioClock, Clock, TimerHandle
from src.sync.panel import SidePanel
from src.sync.progression import Phase, ProgressionMachine, Step, Trigger
from src.sync.script import DemoScript
from src.sync.update_source import UpdateSourceTracker

logger = get_logger("surface")

CONNECT_ACTION_PREFIX = "connect_"
START_CAPTURE_ACTION = "start_capture"
OWN_SAVE_HISTORY = 32

# Integrations whose connect button is remembered in the button state.
BUTTON_FLAGS = {
    "thumbtack": "is_connect_thumbtack_clicked",
    "openphone": "is_connect_open_phone_clicked",
}


def is_stale(incoming: ConversationState, current: ConversationState) -> bool:
    """An incoming snapshot behind the local cursor is an old echo.

    The cursor only moves backwards through an explicit clear, which
    arrives as its own event.
    """
    if incoming.current_index != current.current_index:
        return incoming.current_index < current.current_index
    return len(incoming.messages) < len(current.messages)


class ConversationSurface:
    def __init__(
        self,
        backend: StateBackend,
        script: DemoScript,
        clock: Optional[Clock] = None,
        bus: Optional[BroadcastBus] = None,
        thinking_delay: float = 3.0,
        echo_window: float = 0.1,
        agent_switch_delay: float = 3.0,
        connect_delay: float = 3.0,
        name: Optional[str] = None,
    ):
        self.name = name or f"surface-{uuid.uuid4().hex[:6]}"
        self._log = ChannelLogger(logger, self.name)
        self.backend = backend
        self.clock = clock or AsyncioClock()
        self.bus = bus or BroadcastBus.unavailable()
        self.update_source = UpdateSourceTracker(self.clock, echo_window)
        self.machine = ProgressionMachine(script, self.clock, thinking_delay, on_step=self._on_step)
        self.panel = SidePanel(self.clock, script.pretrained_workflows, agent_switch_delay)
        self.buttons = ButtonState.default()
        self.input = ""

        self._connect_delay = connect_delay
        self._connect_timers: Dict[str, TimerHandle] = {}
        self._own_clears = 0
        self._own_saves: list[ConversationState] = []
        self._tasks: set[asyncio.Task] = set()
        self._last_write: Optional[asyncio.Task] = None
        self._push_task: Optional[asyncio.Task] = None
        self._dispose_bus = self.bus.add_listener(self._on_broadcast)

    @property
    def state(self) -> ConversationState:
        return self.machine.state

    @property
    def phase(self) -> Phase:
        return self.machine.phase

    async def initialize(self) -> None:
        """Load persisted state, rebuild the panel and resume the demo."""
        try:
            stored = await self.backend.fetch_state()
        except StoreUnavailableError as e:
            self._log.error(f"could not load conversation state, starting from default: {e}")
            stored = None

        try:
            self.buttons = await self.backend.fetch_button_state()
        except StoreUnavailableError as e:
            self._log.error(f"could not load button state, using default: {e}")
            self.buttons = ButtonState.default()

        self.panel.reset()
        if stored is not None and stored.messages:
            self.machine.restore(stored)
            self._rebuild_panel(stored)
            self._log.info(
                f"restored {len(stored.messages)} messages at index {stored.current_index} "
                f"(demo mode {'on' if stored.demo_mode_active else 'off'})"
            )
        else:
            self.machine.restore(ConversationState.default())
        self.panel.apply_button_state(self.buttons)

        self.machine.start()

    def start_push(self, events: Optional[AsyncGenerator[Dict[str, Any], None]] = None) -> asyncio.Task:
        """Consume the backend push stream in the background."""
        stream = events if events is not None else self.backend.events()
        self._push_task = asyncio.get_running_loop().create_task(self.run_push(stream))
        return self._push_task

    async def run_push(self, events: AsyncGenerator[Dict[str, Any], None]) -> None:
        self._own_clears = 0
        self._own_saves.clear()
        try:
            async with aclosing(events) as stream:
                async for event in stream:
                    self.handle_push_event(event)
        except StoreUnavailableError as e:
            self._log.error(f"push stream ended: {e}")
        self._log.info("push stream closed")

    def handle_push_event(self, event: Dict[str, Any]) -> None:
        kind = event.get("type")
        data = event.get("data")

        if kind in (EventKind.INITIAL.value, EventKind.STATE_UPDATE.value):
            if data is not None:
                try:
                    state = ConversationState.model_validate(data)
                except ValidationError as e:
                    self._log.warning(f"ignoring malformed {kind} event: {e}")
                    return
                if kind == EventKind.STATE_UPDATE.value and self._is_own_save(state):
                    return
                self._apply_remote_state(state)
            buttons = event.get("buttonStates")
            if buttons is not None:
                self._apply_remote_buttons(buttons)

        elif kind == EventKind.CLEAR.value:
            self._apply_remote_clear(from_push=True)

        elif kind == EventKind.BUTTON_STATES_UPDATE.value:
            self._apply_remote_buttons(data or {})

        elif kind == EventKind.BUTTON_STATES_CLEAR.value:
            self._apply_remote_buttons({})

        elif kind == EventKind.ERROR.value:
            self._log.warning(f"push stream reported an error: {data}")

        else:
            self._log.debug(f"ignoring push event {kind!r}")

    def select_option(self, choice: str) -> Step:
        return self.machine.select_option(choice)

    def user_responded(self, text: Optional[str] = None) -> Step:
        return self.machine.user_responded(text)

    def press_button(self, action: str) -> Step:
        return self.machine.press_button(action)

    def take_over(self) -> Step:
        return self.machine.take_over()

    def set_input(self, text: str) -> None:
        """Local draft text. Never persisted nor mirrored."""
        self.input = text

    def submit_message(self, text: Optional[str] = None) -> Message:
        """Submit typed text as a user message.

        While the demo waits for the user's turn this answers that turn.
        Otherwise the user takes over and the message is appended as-is.
        """
        text = self.input if text is None else text
        self.input = ""

        if self.machine.phase is Phase.WAITING_USER_TURN:
            step = self.machine.user_responded(text)
            return next(m for _, m in step.revealed if m.role is MessageRole.USER)

        if self.machine.phase is not Phase.SUSPENDED:
            self.machine.take_over()
        message = Message(
            id=f"user-{uuid.uuid4().hex[:12]}",
            role=MessageRole.USER,
            parts=(MessagePart(type=PartType.TEXT.value, text=text),),
        )
        self._amend(messages=self.state.with_message(message).messages)
        self._publish(
            [UserMessageSubmitted(payload=UserMessagePayload(message=message, new_index=self.state.current_index))]
        )
        return message

    def clear(self) -> None:
        """Reset this user's conversation everywhere and restart the demo."""
        self.machine.clear()
        self.machine.start()

    async def drain(self) -> None:
        """Wait for every pending backend write."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def close(self) -> None:
        self.machine.stop()
        for handle in self._connect_timers.values():
            handle.cancel()
        self._connect_timers.clear()
        self.update_source.cancel()
        self._dispose_bus()
        if self._push_task is not None:
            self._push_task.cancel()
            await asyncio.gather(self._push_task, return_exceptions=True)
            self._push_task = None
        await self.drain()

    def _on_step(self, step: Step) -> None:
        if step.trigger is Trigger.CLEAR:
            self._on_cleared()
            return

        for index, message in step.revealed:
            self._apply_parts(message, index)

        announcements: Iterable[BroadcastMessage] = step.announcements
        if step.action is not None:
            self._run_button_action(step.action)
            announcements = ()

        if step.changed or step.action is not None:
            self._publish(announcements)

    def _on_cleared(self) -> None:
        self.panel.reset()
        for handle in self._connect_timers.values():
            handle.cancel()
        self._connect_timers.clear()
        if not self.update_source.is_self:
            return
        self._log.info("clearing conversation")
        self._own_clears += 1

        async def clear() -> None:
            try:
                await self.backend.clear_state()
            except Exception:
                # No echo will arrive for a clear that never reached the store.
                self._own_clears = max(0, self._own_clears - 1)
                raise

        self._enqueue("clear conversation", clear)
        self.bus.broadcast(SyncStateMessage(payload=ConversationState.default()))

    def _apply_parts(self, message: Message, index: int) -> None:
        effects = self.panel.apply_message(message, index)
        if effects.recording_state is not None:
            self._set_recording_state(effects.recording_state, mirror=False)

    def _run_button_action(self, action: str) -> None:
        if action.startswith(CONNECT_ACTION_PREFIX):
            self._begin_connect(action[len(CONNECT_ACTION_PREFIX) :])
        elif action == START_CAPTURE_ACTION:
            self._set_recording_state(RecordingState.RECORDING, mirror=True)
        else:
            self._log.debug(f"button {action!r} has no side effect")

    def _begin_connect(self, app_id: str) -> None:
        self.panel.begin_connect(app_id)
        self._amend(app_statuses=list(self.panel.app_statuses))
        flag = BUTTON_FLAGS.get(app_id)
        if flag is not None:
            patch = ButtonStatePatch(**{flag: True})
            self.buttons = self.buttons.merged(patch)
            if self.update_source.is_self:
                self._patch_buttons(patch)

        previous = self._connect_timers.pop(app_id, None)
        if previous is not None:
            previous.cancel()
        self._connect_timers[app_id] = self.clock.call_later(self._connect_delay, self._finish_connect, app_id)

    def _finish_connect(self, app_id: str) -> None:
        self._connect_timers.pop(app_id, None)
        self.panel.finish_connect(app_id)
        self._amend(app_statuses=list(self.panel.app_statuses))
        self._log.info(f"{app_id} connected")
        self._publish(())

    def _set_recording_state(self, state: RecordingState, mirror: bool) -> None:
        self.panel.recording_state = state
        self.buttons = self.buttons.model_copy(update={"agent_recording_state": state})
        if not self.update_source.is_self:
            return
        self._patch_buttons(ButtonStatePatch(agent_recording_state=state))
        if mirror:
            self.bus.broadcast(WorkflowRecordingState(payload=RecordingStatePayload(state=state)))

    def _patch_buttons(self, patch: ButtonStatePatch) -> None:
        async def patch_buttons() -> None:
            await self.backend.patch_button_state(patch)

        self._enqueue("update button state", patch_buttons)

    def _amend(self, **fields: Any) -> None:
        self.machine.restore(self.state.model_copy(update=fields))

    def _publish(self, announcements: Iterable[BroadcastMessage]) -> None:
        if not self.update_source.is_self:
            self._log.debug("not republishing a remote change")
            return

        state = self.state
        saved = state.model_copy(update={"input": ""})
        self._own_saves.append(saved)
        del self._own_saves[:-OWN_SAVE_HISTORY]

        async def save() -> None:
            try:
                await self.backend.save_state(state)
            except Exception:
                if saved in self._own_saves:
                    self._own_saves.remove(saved)
                raise

        self._enqueue("save conversation", save)
        messages = list(announcements) or [SyncStateMessage(payload=state)]
        for message in messages:
            self.bus.broadcast(message)

    def _enqueue(self, description: str, operation: Callable[[], Awaitable[Any]]) -> None:
        """Run a backend write after every write queued before it."""
        previous = self._last_write

        async def run() -> None:
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            try:
                await operation()
            except ConversationSyncError as e:
                self._log.error(f"failed to {description}: {e}")
            except Exception as e:
                self._log.error(f"unexpected error trying to {description}: {e}", exc_info=True)

        task = asyncio.get_running_loop().create_task(run())
        self._last_write = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _is_own_save(self, state: ConversationState) -> bool:
        """Consume the echo of one of our saves, together with any older ones still pending."""
        if state not in self._own_saves:
            return False
        del self._own_saves[: self._own_saves.index(state) + 1]
        return True

    def _apply_remote_state(self, state: ConversationState, rebuild: bool = True) -> bool:
        current = self.state
        if state == current:
            return False
        if is_stale(state, current):
            self._log.debug(
                f"ignoring stale snapshot at index {state.current_index} "
                f"(local index {current.current_index})"
            )
            return False

        self.update_source.mark_remote()
        self.machine.restore(state)
        if rebuild:
            self._rebuild_panel(state)
        self._log.debug(f"applied remote state at index {state.current_index}")
        return True

    def _apply_remote_clear(self, from_push: bool = False) -> None:
        if from_push and self._own_clears:
            self._own_clears -= 1
            return
        self.update_source.mark_remote()
        self.machine.clear()
        self._log.info("conversation cleared elsewhere")

    def _apply_remote_buttons(self, data: Dict[str, Any]) -> None:
        try:
            buttons = ButtonState.model_validate(data) if data else ButtonState.default()
        except ValidationError as e:
            self._log.warning(f"ignoring malformed button state: {e}")
            return
        if buttons == self.buttons:
            return
        self.update_source.mark_remote()
        self.buttons = buttons
        self.panel.apply_button_state(buttons)

    def _rebuild_panel(self, state: ConversationState) -> None:
        self.panel.rebuild(state.messages)
        if state.app_statuses:
            self.panel.merge_apps(state.app_statuses)

    def _on_broadcast(self, message: BroadcastMessage) -> None:
        if isinstance(message, SyncStateMessage):
            if message.payload == ConversationState.default() and self.state.messages:
                self._apply_remote_clear()
            else:
                self._apply_remote_state(message.payload)

        elif isinstance(message, UserMessageSubmitted):
            payload = message.payload
            state = self.state.with_message(payload.message).model_copy(
                update={
                    "current_index": max(payload.new_index, self.state.current_index),
                    "is_user_message_in_placeholder": False,
                }
            )
            self._apply_remote_state(state, rebuild=False)

        elif isinstance(message, DemoProgress):
            self._apply_demo_progress(message)

        elif isinstance(message, WorkflowRecordingState):
            self.update_source.mark_remote()
            self.panel.recording_state = message.payload.state
            self.buttons = self.buttons.model_copy(update={"agent_recording_state": message.payload.state})

    def _apply_demo_progress(self, message: DemoProgress) -> None:
        payload = message.payload
        if payload.new_index < self.state.current_index:
            return

        state = self.state
        revealed = None
        if payload.new_message is not None and not state.has_message(payload.new_message.id):
            state = state.with_message(payload.new_message)
            revealed = payload.new_message
        state = state.model_copy(
            update={
                "current_index": payload.new_index,
                "status": payload.status,
                "is_user_message_in_placeholder": payload.is_user_message_in_placeholder,
            }
        )

        if self._apply_remote_state(state, rebuild=False) and revealed is not None:
            self._apply_parts(revealed, len(state.messages) - 1)
