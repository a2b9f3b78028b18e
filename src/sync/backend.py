"""Where a surface persists its state and hears about other writers.

``LocalBackend`` talks to an in-process ``StateStore``; the HTTP client in
``src.sync.api_client`` implements the same protocol against the API.
"""

from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional, Protocol

from src.models.conversation import ButtonState, ButtonStatePatch, ConversationState
from src.services.connection_registry import ConnectionRegistry
from src.services.push_gateway import PushGateway
from src.services.state_store import StateStore


class StateBackend(Protocol):
    async def fetch_state(self) -> Optional[ConversationState]: ...

    async def save_state(self, state: ConversationState) -> None: ...

    async def clear_state(self) -> None: ...

    async def fetch_button_state(self) -> ButtonState: ...

    async def patch_button_state(self, patch: ButtonStatePatch) -> ButtonState: ...

    def events(self) -> AsyncIterator[Dict[str, Any]]: ...


class LocalBackend:
    """Backend bound to one user's channel on an in-process store."""

    def __init__(
        self,
        store: StateStore,
        user_id: str,
        registry: Optional[ConnectionRegistry] = None,
        queue_size: int = 100,
    ):
        self._store = store
        self.user_id = user_id
        self._registry = registry
        self._queue_size = queue_size

    async def fetch_state(self) -> Optional[ConversationState]:
        return await self._store.get_conversation(self.user_id)

    async def save_state(self, state: ConversationState) -> None:
        await self._store.set_conversation(self.user_id, state)

    async def clear_state(self) -> None:
        await self._store.clear_conversation(self.user_id)

    async def fetch_button_state(self) -> ButtonState:
        return await self._store.get_button_state_or_default(self.user_id)

    async def patch_button_state(self, patch: ButtonStatePatch) -> ButtonState:
        return await self._store.update_button_state(self.user_id, patch)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        gateway = PushGateway(
            self.user_id,
            self._store,
            registry=self._registry,
            transport="local",
            queue_size=self._queue_size,
        )
        async with aclosing(gateway.events()) as events:
            async for event in events:
                if event is not None:
                    yield event
