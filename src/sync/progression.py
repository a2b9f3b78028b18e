"""Demo progression state machine.

Drives ``currentIndex`` and ``status`` through a fixed script. The machine
halts on multiple-choice and button messages (``WAITING_OPTIONS``) and on
user-attributed messages (``WAITING_USER_TURN``); agent messages go through
a timed ``THINKING`` phase before they are revealed.

Every trigger is looked up in ``TRANSITIONS``, which lists the effects a
trigger runs in a given phase. A trigger missing from the table is
rejected, so an external call cannot advance the cursor from the wrong
phase.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from src.core.exceptions import ProgressionError
from src.core.logger import get_logger
from src.models.conversation import (
    BroadcastMessage,
    ChatStatus,
    ConversationState,
    DemoProgress,
    DemoProgressPayload,
    Message,
    MessagePart,
    MessageRole,
    PartType,
    UserMessagePayload,
    UserMessageSubmitted,
)
from src.sync.clock import Clock, TimerHandle
from src.sync.script import DemoScript

logger = get_logger("progression")


class Phase(str, Enum):
    IDLE = "idle"
    WAITING_OPTIONS = "waiting_options"
    WAITING_USER_TURN = "waiting_user_turn"
    THINKING = "thinking"
    DORMANT = "dormant"
    SUSPENDED = "suspended"


class Trigger(str, Enum):
    START = "start"
    OPTION_SELECTED = "option_selected"
    USER_RESPONDED = "user_responded"
    BUTTON_PRESSED = "button_pressed"
    TIMER_FIRED = "timer_fired"
    TAKE_OVER = "take_over"
    CLEAR = "clear"


class Effect(str, Enum):
    CANCEL_TIMER = "cancel_timer"
    RESET_STATE = "reset_state"
    DISABLE_DEMO = "disable_demo"
    REVEAL_SCRIPT_MESSAGE = "reveal_script_message"
    APPEND_USER_MESSAGE = "append_user_message"
    CLEAR_PLACEHOLDER = "clear_placeholder"
    ADVANCE_CURSOR = "advance_cursor"
    SET_READY = "set_ready"
    ANNOUNCE_PROGRESS = "announce_progress"
    ANNOUNCE_SUBMISSION = "announce_submission"
    ENTER_CURRENT = "enter_current"


TRANSITIONS: dict[tuple[Phase, Trigger], tuple[Effect, ...]] = {
    **{(phase, Trigger.START): (Effect.ENTER_CURRENT,) for phase in Phase},
    **{(phase, Trigger.CLEAR): (Effect.CANCEL_TIMER, Effect.RESET_STATE) for phase in Phase},
    **{
        (phase, Trigger.TAKE_OVER): (Effect.CANCEL_TIMER, Effect.DISABLE_DEMO, Effect.ENTER_CURRENT)
        for phase in Phase
        if phase is not Phase.SUSPENDED
    },
    (Phase.WAITING_OPTIONS, Trigger.OPTION_SELECTED): (
        Effect.APPEND_USER_MESSAGE,
        Effect.ADVANCE_CURSOR,
        Effect.ANNOUNCE_SUBMISSION,
        Effect.ENTER_CURRENT,
    ),
    (Phase.WAITING_OPTIONS, Trigger.BUTTON_PRESSED): (
        Effect.ADVANCE_CURSOR,
        Effect.ENTER_CURRENT,
    ),
    (Phase.WAITING_USER_TURN, Trigger.USER_RESPONDED): (
        Effect.CLEAR_PLACEHOLDER,
        Effect.APPEND_USER_MESSAGE,
        Effect.ADVANCE_CURSOR,
        Effect.ANNOUNCE_SUBMISSION,
        Effect.ENTER_CURRENT,
    ),
    (Phase.THINKING, Trigger.TIMER_FIRED): (
        Effect.REVEAL_SCRIPT_MESSAGE,
        Effect.ADVANCE_CURSOR,
        Effect.SET_READY,
        Effect.ANNOUNCE_PROGRESS,
        Effect.ENTER_CURRENT,
    ),
}


@dataclass(frozen=True)
class Step:
    """Outcome of one accepted trigger."""

    trigger: Trigger
    source: Phase
    target: Phase
    state: ConversationState
    changed: bool
    revealed: tuple[tuple[int, Message], ...] = ()
    announcements: tuple[BroadcastMessage, ...] = ()
    action: Optional[str] = None


@dataclass
class _StepContext:
    user_message: Optional[Message] = None
    revealed: list[tuple[int, Message]] = field(default_factory=list)
    announcements: list[BroadcastMessage] = field(default_factory=list)


def _default_message_id() -> str:
    return f"user-{uuid.uuid4().hex[:12]}"


def halts_for_input(message: Message) -> bool:
    """True for messages that wait for an option pick or a button press."""
    if message.has_part(PartType.OPTIONS):
        return True
    return any(part.get("action") is not None for _, part in message.iter_parts(PartType.BUTTON))


class ProgressionMachine:
    def __init__(
        self,
        script: DemoScript,
        clock: Clock,
        thinking_delay: float = 3.0,
        on_step: Optional[Callable[[Step], None]] = None,
        message_id_factory: Callable[[], str] = _default_message_id,
    ):
        self._script = script
        self._clock = clock
        self._thinking_delay = thinking_delay
        self._on_step = on_step
        self._message_id_factory = message_id_factory
        self._state = ConversationState.default()
        self._phase = Phase.IDLE
        self._timer: Optional[TimerHandle] = None
        self._timer_index: Optional[int] = None

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def script(self) -> DemoScript:
        return self._script

    @property
    def thinking(self) -> bool:
        return self._timer is not None

    def current_message(self) -> Optional[Message]:
        return self._script.get(self._state.current_index)

    def restore(self, state: ConversationState) -> None:
        """Adopt a state produced elsewhere without running any transition.

        A pending thinking timer survives only when the new state still sits
        on the cursor it was started for.
        """
        phase = self._classify(state)
        if self._timer is not None and not (phase is Phase.THINKING and self._timer_index == state.current_index):
            self._cancel_timer()
        self._state = state
        self._phase = phase

    def start(self) -> Step:
        return self._run(Trigger.START)

    def select_option(self, choice: str) -> Step:
        return self._run(Trigger.OPTION_SELECTED, choice=choice)

    def user_responded(self, text: Optional[str] = None) -> Step:
        return self._run(Trigger.USER_RESPONDED, text=text)

    def press_button(self, action: str) -> Step:
        return self._run(Trigger.BUTTON_PRESSED, action=action)

    def take_over(self) -> Step:
        return self._run(Trigger.TAKE_OVER)

    def clear(self) -> Step:
        return self._run(Trigger.CLEAR)

    def stop(self) -> None:
        """Cancel a pending thinking timer without changing state."""
        self._cancel_timer()

    def _run(
        self,
        trigger: Trigger,
        choice: Optional[str] = None,
        text: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Step:
        effects = TRANSITIONS.get((self._phase, trigger))
        if effects is None:
            raise ProgressionError(f"'{trigger.value}' is not accepted while {self._phase.value}")

        ctx = _StepContext()
        if trigger is Trigger.OPTION_SELECTED:
            ctx.user_message = self._message_for_option(choice)
        elif trigger is Trigger.USER_RESPONDED:
            ctx.user_message = self._message_for_user_turn(text)
        elif trigger is Trigger.BUTTON_PRESSED:
            self._check_button(action)

        source = self._phase
        before = self._state
        for effect in effects:
            self._apply(effect, ctx)

        step = Step(
            trigger=trigger,
            source=source,
            target=self._phase,
            state=self._state,
            changed=self._state != before,
            revealed=tuple(ctx.revealed),
            announcements=tuple(ctx.announcements),
            action=action,
        )
        logger.debug(
            f"{trigger.value}: {source.value} -> {self._phase.value} "
            f"(index={self._state.current_index}, status={self._state.status.value})"
        )
        if self._on_step is not None:
            self._on_step(step)
        return step

    def _apply(self, effect: Effect, ctx: _StepContext) -> None:
        state = self._state

        if effect is Effect.CANCEL_TIMER:
            self._cancel_timer()

        elif effect is Effect.RESET_STATE:
            self._state = ConversationState.default()
            self._phase = Phase.IDLE

        elif effect is Effect.DISABLE_DEMO:
            self._state = state.model_copy(
                update={"demo_mode_active": False, "status": ChatStatus.READY, "is_user_message_in_placeholder": False}
            )

        elif effect is Effect.REVEAL_SCRIPT_MESSAGE:
            message = self._script.get(state.current_index)
            if message is not None:
                self._append(message, ctx)

        elif effect is Effect.APPEND_USER_MESSAGE:
            if ctx.user_message is not None:
                self._append(ctx.user_message, ctx)

        elif effect is Effect.CLEAR_PLACEHOLDER:
            self._state = state.model_copy(update={"is_user_message_in_placeholder": False, "input": ""})

        elif effect is Effect.ADVANCE_CURSOR:
            if state.current_index < len(self._script):
                self._state = state.model_copy(update={"current_index": state.current_index + 1})

        elif effect is Effect.SET_READY:
            self._state = state.model_copy(update={"status": ChatStatus.READY})

        elif effect is Effect.ANNOUNCE_PROGRESS:
            revealed = ctx.revealed[-1][1] if ctx.revealed else None
            ctx.announcements.append(
                DemoProgress(
                    payload=DemoProgressPayload(
                        new_index=state.current_index,
                        new_message=revealed,
                        status=state.status,
                        is_user_message_in_placeholder=False,
                    )
                )
            )

        elif effect is Effect.ANNOUNCE_SUBMISSION:
            if ctx.user_message is not None:
                ctx.announcements.append(
                    UserMessageSubmitted(
                        payload=UserMessagePayload(message=ctx.user_message, new_index=state.current_index)
                    )
                )

        elif effect is Effect.ENTER_CURRENT:
            self._enter_current(ctx)

    def _append(self, message: Message, ctx: _StepContext) -> None:
        appended = self._state.with_message(message)
        if appended is not self._state:
            # Position in the message log, the same index a history rebuild sees.
            ctx.revealed.append((len(self._state.messages), message))
            self._state = appended

    def _enter_current(self, ctx: _StepContext) -> None:
        phase = self._classify(self._state)
        index = self._state.current_index
        message = self._script.get(index)
        before = self._state

        if phase is Phase.WAITING_OPTIONS:
            self._cancel_timer()
            self._append(message, ctx)
            self._state = self._state.model_copy(update={"status": ChatStatus.READY})
            if self._state != before:
                ctx.announcements.append(self._progress(new_message=message))

        elif phase is Phase.WAITING_USER_TURN:
            self._cancel_timer()
            self._state = self._state.model_copy(
                update={"is_user_message_in_placeholder": True, "status": ChatStatus.READY, "input": ""}
            )
            if self._state != before:
                ctx.announcements.append(self._progress())

        elif phase is Phase.THINKING:
            if not (self._timer is not None and self._timer_index == index):
                self._cancel_timer()
                self._state = self._state.model_copy(
                    update={"status": ChatStatus.STREAMING, "is_user_message_in_placeholder": False}
                )
                self._timer_index = index
                self._timer = self._clock.call_later(self._thinking_delay, self._on_timer, index)
                ctx.announcements.append(self._progress())

        else:
            self._cancel_timer()
            if phase is Phase.DORMANT:
                logger.info("Demo script finished; progression is dormant until cleared")

        self._phase = phase

    def _progress(self, new_message: Optional[Message] = None) -> DemoProgress:
        return DemoProgress(
            payload=DemoProgressPayload(
                new_index=self._state.current_index,
                new_message=new_message,
                status=self._state.status,
                is_user_message_in_placeholder=self._state.is_user_message_in_placeholder,
            )
        )

    def _on_timer(self, expected_index: int) -> None:
        self._timer = None
        self._timer_index = None
        if self._phase is not Phase.THINKING or self._state.current_index != expected_index:
            logger.debug(f"Ignoring stale thinking timer for index {expected_index}")
            return
        self._run(Trigger.TIMER_FIRED)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            logger.debug(f"Cancelled thinking timer for index {self._timer_index}")
        self._timer = None
        self._timer_index = None

    def _classify(self, state: ConversationState) -> Phase:
        if not state.demo_mode_active:
            return Phase.SUSPENDED
        message = self._script.get(state.current_index)
        if message is None:
            return Phase.DORMANT
        if halts_for_input(message):
            return Phase.WAITING_OPTIONS
        if message.role is MessageRole.USER:
            return Phase.WAITING_USER_TURN
        return Phase.THINKING

    def _message_for_option(self, choice: Optional[str]) -> Message:
        message = self.current_message()
        options_part = message.first_part(PartType.OPTIONS) if message is not None else None
        if options_part is None:
            raise ProgressionError("The current message offers no options")
        for option in options_part.get("options", []):
            if choice in (option.get("action"), option.get("label")):
                return self._user_text_message(option.get("label") or choice)
        raise ProgressionError(f"Unknown option {choice!r}")

    def _message_for_user_turn(self, text: Optional[str]) -> Message:
        if text is None:
            message = self.current_message()
            voice = message.first_part(PartType.VOICE) if message is not None else None
            text = voice.get("dummyText", "") if voice is not None else ""
        return self._user_text_message(text)

    def _check_button(self, action: Optional[str]) -> None:
        message = self.current_message()
        actions = {part.get("action") for _, part in message.iter_parts(PartType.BUTTON)} if message else set()
        if action is None or action not in actions:
            raise ProgressionError(f"Unknown button action {action!r}")

    def _user_text_message(self, text: str) -> Message:
        return Message(
            id=self._message_id_factory(),
            role=MessageRole.USER,
            parts=(MessagePart(type=PartType.TEXT.value, text=text),),
        )
