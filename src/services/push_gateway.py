import asyncio
import json
from contextlib import aclosing, suppress
from typing import Any, AsyncIterator, Callable, Dict, Optional

from src.core.exceptions import PushStreamError
from src.core.logger import ChannelLogger, get_logger
from src.models.conversation import EventKind, make_event
from src.services.connection_registry import ConnectionRegistry, PushConnection
from src.services.state_store import StateStore

Event = Dict[str, Any]
Encoder = Callable[[Event], str]

SSE_KEEPALIVE = ": keepalive\n\n"

_CLOSED = object()

logger = get_logger("push")


def encode_sse(event: Event) -> str:
    return f"data: {json.dumps(event)}\n\n"


def encode_json(event: Event) -> str:
    return json.dumps(event)


class PushGateway:
    """Bridges one user's broker channel to a single long-lived client connection.

    On open the gateway subscribes first and then reads the snapshot, so an
    event published in between is queued behind the ``initial`` event rather
    than lost. Each connection owns a bounded queue: a client that falls
    behind is dropped without slowing the broker or other connections.
    """

    def __init__(
        self,
        user_id: str,
        store: StateStore,
        registry: Optional[ConnectionRegistry] = None,
        transport: str = "sse",
        queue_size: int = 100,
    ):
        self.user_id = user_id
        self._log = ChannelLogger(logger, f"{transport}:{user_id}")
        self._store = store
        self._registry = registry
        self._transport = transport
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._connection: Optional[PushConnection] = None
        self._opened = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection(self) -> Optional[PushConnection]:
        return self._connection

    async def open(self) -> Event:
        """Subscribe to the user channel and return the ``initial`` snapshot event."""
        if self._opened:
            raise PushStreamError(f"Push gateway for {self.user_id} was already opened")
        self._opened = True

        self._unsubscribe = self._store.broker.subscribe(self.user_id, self._on_event)
        if self._registry is not None:
            self._connection = self._registry.register(self.user_id, self._transport)

        try:
            state = await self._store.get_conversation_or_default(self.user_id)
            buttons = await self._store.get_button_state_or_default(self.user_id)
        except Exception:
            self.close()
            raise

        return make_event(EventKind.INITIAL, state.to_payload(), buttonStates=buttons.to_payload())

    def close(self) -> None:
        """Unsubscribe and release the connection. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True

        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception as e:
                self._log.error(f"Error unsubscribing push connection: {e}", exc_info=True)
            self._unsubscribe = None

        if self._registry is not None and self._connection is not None:
            self._registry.release(self._connection.connection_id)

        with suppress(asyncio.QueueFull):
            self._queue.put_nowait(_CLOSED)

    def _on_event(self, event: Event) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._log.warning("Push connection fell behind; closing it")
            self.close()

    async def events(self, keepalive: Optional[float] = None) -> AsyncIterator[Optional[Event]]:
        """Yield the ``initial`` event, then every broker event until closed.

        With ``keepalive`` set, ``None`` is yielded whenever that many seconds
        pass without an event.
        """
        try:
            initial = await self.open()
        except Exception as e:
            self._log.error(f"Failed to open push stream: {e}", exc_info=True)
            yield make_event(EventKind.ERROR, {"message": "Stream error"})
            return

        try:
            yield initial
            while not self._closed:
                try:
                    if keepalive:
                        event = await asyncio.wait_for(self._queue.get(), timeout=keepalive)
                    else:
                        event = await self._queue.get()
                except asyncio.TimeoutError:
                    yield None
                    continue
                if event is _CLOSED or self._closed:
                    break
                yield event
        finally:
            self.close()

    async def stream(
        self,
        encoder: Encoder = encode_sse,
        keepalive: Optional[float] = None,
        keepalive_frame: str = SSE_KEEPALIVE,
    ) -> AsyncIterator[str]:
        """Encode events into transport frames.

        An event that cannot be encoded is fatal for this connection: one
        best-effort error frame is emitted and the stream ends.
        """
        async with aclosing(self.events(keepalive)) as events:
            async for event in events:
                if event is None:
                    yield keepalive_frame
                    continue
                try:
                    frame = encoder(event)
                except (TypeError, ValueError) as e:
                    self._log.error(f"Could not encode {event.get('type')} event: {e}")
                    error_frame = self._error_frame(encoder)
                    if error_frame is not None:
                        yield error_frame
                    break
                if self._connection is not None:
                    self._connection.touch()
                yield frame
        self.close()

    def _error_frame(self, encoder: Encoder) -> Optional[str]:
        try:
            return encoder(make_event(EventKind.ERROR, {"message": "Stream error"}))
        except Exception as e:
            self._log.error(f"Could not encode error frame: {e}")
            return None
