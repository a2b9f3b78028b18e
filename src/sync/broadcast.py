"""Cross-surface broadcast bus.

Mirrors state between the open tabs and iframes of one user on the same
device. ``LocalBroadcastHub`` plays the role of a same-origin broadcast
channel: a message posted on one handle reaches every other handle opened
with the same name, never the sender. ``FrameWindow`` models a browsing
context that can post messages to its parent, which is how an embedded
iframe reaches the page hosting it.
"""

import copy
import uuid
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from src.core.exceptions import BroadcastUnavailableError
from src.core.logger import get_logger
from src.models.conversation import BroadcastMessage, dump_broadcast, parse_broadcast

logger = get_logger("broadcast")

RawListener = Callable[[Dict[str, Any]], None]
Listener = Callable[[BroadcastMessage], None]


def _remove_once(listeners: list, listener: Any) -> Callable[[], None]:
    def dispose() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return dispose


class LocalChannel:
    """One open handle on a named channel."""

    def __init__(self, hub: "LocalBroadcastHub", name: str):
        self.name = name
        self._hub = hub
        self._listeners: List[RawListener] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def post_message(self, data: Dict[str, Any]) -> None:
        if self._closed:
            raise BroadcastUnavailableError(f"Channel {self.name} is closed")
        self._hub._deliver(self, data)

    def add_listener(self, listener: RawListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return _remove_once(self._listeners, listener)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        self._hub._detach(self)

    def _receive(self, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(data)


class LocalBroadcastHub:
    """Registry of named channels shared by every surface of one device."""

    def __init__(self):
        self._channels: Dict[str, List[LocalChannel]] = {}

    def open_channel(self, name: str) -> LocalChannel:
        channel = LocalChannel(self, name)
        self._channels.setdefault(name, []).append(channel)
        return channel

    def _deliver(self, sender: LocalChannel, data: Dict[str, Any]) -> None:
        # Receivers get their own copy, as with structured cloning.
        for channel in list(self._channels.get(sender.name, ())):
            if channel is not sender:
                channel._receive(copy.deepcopy(data))

    def _detach(self, channel: LocalChannel) -> None:
        peers = self._channels.get(channel.name, [])
        if channel in peers:
            peers.remove(channel)
        if not peers:
            self._channels.pop(channel.name, None)


class FrameWindow:
    """A window that receives posted messages, optionally embedded in a parent."""

    def __init__(self, parent: Optional["FrameWindow"] = None):
        self.parent = parent
        self._listeners: List[RawListener] = []

    @property
    def is_embedded(self) -> bool:
        return self.parent is not None

    def post_message(self, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(copy.deepcopy(data))

    def add_listener(self, listener: RawListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return _remove_once(self._listeners, listener)


class BroadcastBus:
    """Typed message bus over a local channel plus the iframe bridge.

    Outgoing messages carry the bus ``origin`` so a surface drops its own
    messages if a relay hands them back. Without any transport the bus is a
    no-op: ``broadcast`` returns False and nothing is delivered.
    """

    def __init__(
        self,
        channel: Optional[LocalChannel] = None,
        window: Optional[FrameWindow] = None,
        source_tag: str = "conversation-sync-iframe",
        origin: Optional[str] = None,
    ):
        self.origin = origin or uuid.uuid4().hex
        self._channel = channel
        self._window = window
        self._source_tag = source_tag
        self._listeners: List[Listener] = []
        self._frames: List[FrameWindow] = []
        self._disposers: List[Callable[[], None]] = []

        if channel is not None:
            self._disposers.append(channel.add_listener(self._dispatch))
        if window is not None:
            self._disposers.append(window.add_listener(self._on_window_message))
        if not self.available:
            logger.debug("No broadcast transport available; running single-surface")

    @classmethod
    def open(
        cls,
        hub: Optional[LocalBroadcastHub],
        channel_name: str,
        window: Optional[FrameWindow] = None,
        source_tag: str = "conversation-sync-iframe",
    ) -> "BroadcastBus":
        channel = hub.open_channel(channel_name) if hub is not None else None
        return cls(channel=channel, window=window, source_tag=source_tag)

    @classmethod
    def unavailable(cls) -> "BroadcastBus":
        return cls()

    @property
    def available(self) -> bool:
        return self._channel is not None or self._window is not None

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return _remove_once(self._listeners, listener)

    def attach_frame(self, frame: FrameWindow) -> Callable[[], None]:
        """Relay every broadcast into an embedded frame as well."""
        self._frames.append(frame)
        return _remove_once(self._frames, frame)

    def broadcast(self, message: BroadcastMessage) -> bool:
        if not self.available and not self._frames:
            return False

        envelope = dump_broadcast(message)
        envelope["origin"] = self.origin
        delivered = False

        if self._channel is not None:
            try:
                self._channel.post_message(envelope)
                delivered = True
            except BroadcastUnavailableError as e:
                logger.debug(f"Broadcast channel unavailable: {e}")

        tagged = {**envelope, "source": self._source_tag}
        if self._window is not None and self._window.parent is not None:
            self._window.parent.post_message(tagged)
            delivered = True
        for frame in list(self._frames):
            frame.post_message(tagged)
            delivered = True

        logger.debug(f"Broadcast {envelope['type']} from {self.origin[:8]}")
        return delivered

    def close(self) -> None:
        for dispose in self._disposers:
            dispose()
        self._disposers.clear()
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        self._window = None
        self._listeners.clear()
        self._frames.clear()

    def _on_window_message(self, data: Any) -> None:
        if not isinstance(data, dict) or data.get("source") != self._source_tag:
            return
        self._dispatch({key: value for key, value in data.items() if key != "source"})

    def _dispatch(self, data: Dict[str, Any]) -> None:
        if data.get("origin") == self.origin:
            return
        try:
            message = parse_broadcast(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed broadcast message {data.get('type')!r}: {e}")
            return

        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error(f"Broadcast listener failed on {data.get('type')}: {e}", exc_info=True)
