from typing import Any, Dict, Optional

from src.core.logger import logger
from src.models.conversation import (
    ButtonState,
    ButtonStatePatch,
    ConversationState,
    EventKind,
    make_event,
)
from src.services.pubsub import PubSubBroker


class StateStore:
    """Per-user conversation and button state, last write wins.

    Every write is followed by a change event on the user's broker channel.
    The notification is fire-and-forget: if publishing fails the write
    still stands and the failure is only logged.

    No method awaits between reading and writing a user's entry, so each
    update is atomic on the event loop without a lock.
    """

    def __init__(self, broker: PubSubBroker):
        self._broker = broker
        self._conversations: Dict[str, ConversationState] = {}
        self._buttons: Dict[str, ButtonState] = {}

    @property
    def broker(self) -> PubSubBroker:
        return self._broker

    async def get_conversation(self, user_id: str) -> Optional[ConversationState]:
        state = self._conversations.get(user_id)
        return state.model_copy(deep=True) if state is not None else None

    async def get_conversation_or_default(self, user_id: str) -> ConversationState:
        state = await self.get_conversation(user_id)
        return state if state is not None else ConversationState.default()

    async def set_conversation(self, user_id: str, state: ConversationState) -> ConversationState:
        stored = state.model_copy(update={"input": ""}, deep=True)
        self._conversations[user_id] = stored
        self._notify(user_id, make_event(EventKind.STATE_UPDATE, stored.to_payload()))
        logger.debug(
            f"Stored conversation for {user_id}: index={stored.current_index} "
            f"messages={len(stored.messages)} status={stored.status.value}"
        )
        return stored.model_copy(deep=True)

    async def clear_conversation(self, user_id: str) -> None:
        self._conversations.pop(user_id, None)
        self._notify(user_id, make_event(EventKind.CLEAR))
        logger.info(f"Cleared conversation state for {user_id}")

    async def get_button_state(self, user_id: str) -> Optional[ButtonState]:
        state = self._buttons.get(user_id)
        return state.model_copy() if state is not None else None

    async def get_button_state_or_default(self, user_id: str) -> ButtonState:
        state = await self.get_button_state(user_id)
        return state if state is not None else ButtonState.default()

    async def set_button_state(self, user_id: str, state: ButtonState) -> ButtonState:
        self._buttons[user_id] = state.model_copy()
        self._notify(user_id, make_event(EventKind.BUTTON_STATES_UPDATE, state.to_payload()))
        return state.model_copy()

    async def update_button_state(self, user_id: str, patch: ButtonStatePatch) -> ButtonState:
        current = self._buttons.get(user_id) or ButtonState.default()
        merged = current.merged(patch)
        self._buttons[user_id] = merged
        self._notify(user_id, make_event(EventKind.BUTTON_STATES_UPDATE, merged.to_payload()))
        logger.debug(f"Merged button state for {user_id}: {merged.to_payload()}")
        return merged.model_copy()

    async def clear_button_state(self, user_id: str) -> None:
        self._buttons.pop(user_id, None)
        self._notify(user_id, make_event(EventKind.BUTTON_STATES_CLEAR))
        logger.info(f"Cleared button state for {user_id}")

    def user_count(self) -> int:
        return len(self._conversations.keys() | self._buttons.keys())

    def _notify(self, user_id: str, event: Dict[str, Any]) -> None:
        try:
            self._broker.publish(user_id, event)
        except Exception as e:
            logger.error(f"Failed to publish {event.get('type')} for {user_id}: {e}", exc_info=True)
