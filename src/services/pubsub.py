from typing import Any, Callable, Dict, List

from src.core.exceptions import PublishError
from src.core.logger import logger

EventHandler = Callable[[Dict[str, Any]], None]


class PubSubBroker:
    """In-process fan-out of change events, partitioned by user channel.

    Delivery is at-most-once and non-durable: only handlers subscribed at
    publish time see an event. Handlers run synchronously in subscription
    order, so every subscriber of a channel observes publish order.
    """

    def __init__(self):
        self._channels: Dict[str, List[EventHandler]] = {}

    def subscribe(self, user_id: str, handler: EventHandler) -> Callable[[], None]:
        handlers = self._channels.setdefault(user_id, [])
        handlers.append(handler)
        logger.debug(f"Subscribed to channel {user_id} ({len(handlers)} listeners)")

        def unsubscribe() -> None:
            listeners = self._channels.get(user_id)
            if not listeners or handler not in listeners:
                return
            listeners.remove(handler)
            if not listeners:
                del self._channels[user_id]
            logger.debug(f"Unsubscribed from channel {user_id}")

        return unsubscribe

    def publish(self, user_id: str, event: Dict[str, Any]) -> int:
        """Deliver ``event`` to every current subscriber of ``user_id``.

        Returns the number of handlers that accepted the event. A failing
        handler is logged and skipped; it never prevents delivery to the rest.
        """
        if "type" not in event:
            raise PublishError(f"Refusing to publish an untyped event on channel {user_id}")

        handlers = list(self._channels.get(user_id, ()))
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Subscriber failed on channel {user_id} for {event.get('type')}: {e}",
                    exc_info=True,
                )
        return delivered

    def subscriber_count(self, user_id: str) -> int:
        return len(self._channels.get(user_id, ()))

    def reset(self) -> None:
        self._channels.clear()
