import pytest

from src.core.settings import DEFAULT_SCRIPT_PATH
from src.services.connection_registry import ConnectionRegistry
from src.services.pubsub import PubSubBroker
from src.services.state_store import StateStore
from src.sync.clock import ManualClock
from src.sync.script import load_script
from tests.helpers import make_message, make_script, options, text


@pytest.fixture
def broker():
    return PubSubBroker()


@pytest.fixture
def store(broker):
    return StateStore(broker)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def choice_script():
    """An options prompt followed by one agent reply."""
    return make_script(
        make_message("m0", "assistant", options("A", "B")),
        make_message("m1", "ai-agent", text("hi")),
    )


@pytest.fixture
def turn_script():
    return make_script(
        make_message("a0", "ai-agent", text("What brings you here?")),
        make_message("u1", "user", {"type": "voice", "dummyText": "I need help with leads"}),
        make_message("a2", "ai-agent", text("Happy to help")),
    )


@pytest.fixture
def demo_script():
    return load_script(DEFAULT_SCRIPT_PATH)
