from enum import Enum
from typing import Optional

from src.core.logger import get_logger
from src.sync.clock import Clock, TimerHandle

logger = get_logger("update_source")


class UpdateSource(str, Enum):
    SELF = "self"
    REMOTE = "remote"


class UpdateSourceTracker:
    """Classifies state changes on one surface as self- or remote-originated.

    Applying a change received from the push channel or the broadcast bus
    flips the flag to ``remote`` for a short window, which suppresses the
    outward publish that the resulting local change would otherwise trigger.
    A genuine local action inside that window is suppressed as well; the
    window has to stay short.
    """

    def __init__(self, clock: Clock, reset_delay: float = 0.1):
        self._clock = clock
        self._reset_delay = reset_delay
        self._source = UpdateSource.SELF
        self._reset_handle: Optional[TimerHandle] = None

    @property
    def source(self) -> UpdateSource:
        return self._source

    @property
    def is_self(self) -> bool:
        return self._source is UpdateSource.SELF

    def mark_remote(self) -> None:
        """Enter remote mode and (re)start the window back to ``self``."""
        self._source = UpdateSource.REMOTE
        if self._reset_handle is not None:
            self._reset_handle.cancel()
        self._reset_handle = self._clock.call_later(self._reset_delay, self._reset)

    def _reset(self) -> None:
        self._reset_handle = None
        self._source = UpdateSource.SELF
        logger.debug("Update source back to self")

    def cancel(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
        self._source = UpdateSource.SELF
