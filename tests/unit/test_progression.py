import itertools

import pytest

from src.core.exceptions import ProgressionError
from src.models.conversation import (
    ChatStatus,
    ConversationState,
    DemoProgress,
    MessageRole,
    UserMessageSubmitted,
)
from src.sync.progression import TRANSITIONS, Phase, ProgressionMachine, Trigger
from tests.helpers import button, make_message, make_script, options, text


def machine_for(script, clock, **kwargs):
    ids = (f"user-{n}" for n in itertools.count())
    return ProgressionMachine(script, clock, thinking_delay=3.0, message_id_factory=lambda: next(ids), **kwargs)


def test_option_then_agent_reply(choice_script, clock):
    machine = machine_for(choice_script, clock)

    machine.start()
    assert machine.phase is Phase.WAITING_OPTIONS
    assert [m.id for m in machine.state.messages] == ["m0"]
    assert machine.state.current_index == 0
    assert machine.state.status == ChatStatus.READY

    machine.select_option("A")
    assert machine.state.current_index == 1
    assert machine.state.status == ChatStatus.STREAMING
    assert machine.phase is Phase.THINKING

    clock.advance(3.0)
    assert [m.id for m in machine.state.messages] == ["m0", "user-0", "m1"]
    assert machine.state.current_index == 2
    assert machine.state.status == ChatStatus.READY
    assert machine.phase is Phase.DORMANT


def test_options_halt_without_selection(choice_script, clock):
    machine = machine_for(choice_script, clock)
    machine.start()

    clock.advance(60.0)

    assert machine.phase is Phase.WAITING_OPTIONS
    assert machine.state.current_index == 0
    assert clock.pending() == 0


def test_selected_option_label_becomes_user_message(choice_script, clock):
    machine = machine_for(choice_script, clock)
    machine.start()

    step = machine.select_option("b")

    submitted = step.state.messages[-1]
    assert submitted.role is MessageRole.USER
    assert submitted.parts[0].get("text") == "B"
    assert isinstance(step.announcements[0], UserMessageSubmitted)
    assert step.announcements[0].payload.new_index == 1
    assert isinstance(step.announcements[1], DemoProgress)
    assert step.announcements[1].payload.status == ChatStatus.STREAMING


def test_unknown_option_is_rejected_without_side_effects(choice_script, clock):
    machine = machine_for(choice_script, clock)
    machine.start()
    before = machine.state

    with pytest.raises(ProgressionError):
        machine.select_option("C")

    assert machine.state == before
    assert machine.phase is Phase.WAITING_OPTIONS


def test_user_turn_gate(turn_script, clock):
    machine = machine_for(turn_script, clock)
    machine.start()
    clock.advance(3.0)

    assert machine.phase is Phase.WAITING_USER_TURN
    assert machine.state.is_user_message_in_placeholder is True
    assert machine.state.current_index == 1

    clock.advance(60.0)
    assert machine.state.current_index == 1

    machine.user_responded()

    assert machine.state.is_user_message_in_placeholder is False
    assert machine.state.current_index == 2
    assert machine.state.messages[-1].parts[0].get("text") == "I need help with leads"
    assert machine.phase is Phase.THINKING


def test_user_responded_with_typed_text(turn_script, clock):
    machine = machine_for(turn_script, clock)
    machine.start()
    clock.advance(3.0)

    machine.user_responded("Something else")

    assert machine.state.messages[-1].parts[0].get("text") == "Something else"


def test_calls_from_the_wrong_phase_are_rejected(choice_script, turn_script, clock):
    waiting_options = machine_for(choice_script, clock)
    waiting_options.start()
    with pytest.raises(ProgressionError):
        waiting_options.user_responded()

    thinking = machine_for(turn_script, clock)
    thinking.start()
    with pytest.raises(ProgressionError):
        thinking.select_option("A")
    with pytest.raises(ProgressionError):
        thinking.press_button("continue")


def test_button_press_advances_immediately(clock):
    script = make_script(
        make_message("b0", "ai-agent", text("Ready?"), button("connect_thumbtack")),
        make_message("b1", "ai-agent", text("Connected")),
    )
    machine = machine_for(script, clock)
    machine.start()
    assert machine.phase is Phase.WAITING_OPTIONS

    step = machine.press_button("connect_thumbtack")

    assert step.action == "connect_thumbtack"
    assert machine.state.current_index == 1
    assert machine.phase is Phase.THINKING
    with pytest.raises(ProgressionError):
        machine.press_button("connect_thumbtack")


def test_unknown_button_is_rejected(clock):
    script = make_script(make_message("b0", "ai-agent", button("start_capture")))
    machine = machine_for(script, clock)
    machine.start()

    with pytest.raises(ProgressionError):
        machine.press_button("something_else")


def test_cursor_advances_once_per_transition(clock):
    script = make_script(*(make_message(f"a{i}", "ai-agent", text(str(i))) for i in range(5)))
    machine = machine_for(script, clock)
    machine.start()

    indexes = []
    for _ in range(5):
        clock.advance(3.0)
        indexes.append(machine.state.current_index)

    assert indexes == [1, 2, 3, 4, 5]
    assert [m.id for m in machine.state.messages] == [f"a{i}" for i in range(5)]
    assert machine.phase is Phase.DORMANT

    clock.advance(30.0)
    assert machine.state.current_index == 5


def test_revealed_messages_are_reported_once(clock):
    script = make_script(
        make_message("a0", "ai-agent", text("one")),
        make_message("a1", "ai-agent", options("Yes", "No")),
    )
    steps = []
    machine = machine_for(script, clock, on_step=steps.append)
    machine.start()
    clock.advance(3.0)
    machine.start()

    revealed = [message.id for step in steps for _, message in step.revealed]
    assert revealed == ["a0", "a1"]


def test_revealed_index_is_position_in_message_log(choice_script, clock):
    steps = []
    machine = machine_for(choice_script, clock, on_step=steps.append)
    machine.start()
    machine.select_option("A")
    clock.advance(3.0)

    revealed = [(index, message.id) for step in steps for index, message in step.revealed]
    assert revealed == [(0, "m0"), (1, "user-0"), (2, "m1")]
    assert [m.id for m in machine.state.messages] == ["m0", "user-0", "m1"]


def test_clear_cancels_pending_timer(choice_script, clock):
    machine = machine_for(choice_script, clock)
    machine.start()
    machine.select_option("A")
    assert clock.pending() == 1

    machine.clear()

    assert clock.pending() == 0
    assert machine.state == ConversationState.default()
    assert machine.phase is Phase.IDLE
    clock.advance(10.0)
    assert machine.state.messages == []


def test_stale_timer_does_not_fire_after_restore(clock):
    script = make_script(
        make_message("a0", "ai-agent", text("one")),
        make_message("a1", "ai-agent", text("two")),
    )
    machine = machine_for(script, clock)
    machine.start()

    ahead = ConversationState(messages=[script.messages[0]], current_index=1, status=ChatStatus.STREAMING)
    machine.restore(ahead)
    clock.advance(3.0)

    assert machine.state.current_index == 1
    assert machine.phase is Phase.THINKING
    assert not machine.thinking


def test_restore_keeps_timer_for_same_cursor(clock):
    script = make_script(make_message("a0", "ai-agent", text("one")))
    machine = machine_for(script, clock)
    machine.start()

    machine.restore(machine.state.model_copy())
    clock.advance(3.0)

    assert machine.state.current_index == 1


def test_restart_does_not_double_schedule(clock):
    script = make_script(make_message("a0", "ai-agent", text("one")))
    machine = machine_for(script, clock)

    machine.start()
    step = machine.start()

    assert clock.pending() == 1
    assert step.changed is False


def test_take_over_suspends_progression(choice_script, clock):
    machine = machine_for(choice_script, clock)
    machine.start()
    machine.select_option("A")

    machine.take_over()
    clock.advance(10.0)

    assert machine.phase is Phase.SUSPENDED
    assert machine.state.demo_mode_active is False
    assert machine.state.current_index == 1
    with pytest.raises(ProgressionError):
        machine.take_over()


def test_restored_state_without_demo_mode_stays_suspended(choice_script, clock):
    machine = machine_for(choice_script, clock)

    machine.restore(ConversationState(demo_mode_active=False))
    machine.start()

    assert machine.phase is Phase.SUSPENDED
    assert machine.state.messages == []


def test_every_phase_accepts_clear_and_start():
    for phase in Phase:
        assert (phase, Trigger.CLEAR) in TRANSITIONS
        assert (phase, Trigger.START) in TRANSITIONS
    assert (Phase.THINKING, Trigger.OPTION_SELECTED) not in TRANSITIONS
    assert (Phase.WAITING_OPTIONS, Trigger.TIMER_FIRED) not in TRANSITIONS
