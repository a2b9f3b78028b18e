from typing import Optional

from src.core.logger import logger
from src.services.connection_registry import ConnectionRegistry
from src.services.pubsub import PubSubBroker
from src.services.state_store import StateStore


class DependencyContainer:
    _instance: Optional["DependencyContainer"] = None

    def __init__(self):
        self._broker: Optional[PubSubBroker] = None
        self._state_store: Optional[StateStore] = None
        self._connection_registry: Optional[ConnectionRegistry] = None

    @classmethod
    def get_instance(cls) -> "DependencyContainer":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def get_broker(self) -> PubSubBroker:
        if self._broker is None:
            self._broker = PubSubBroker()
            logger.debug("PubSubBroker initialized")
        return self._broker

    def get_state_store(self) -> StateStore:
        if self._state_store is None:
            self._state_store = StateStore(self.get_broker())
            logger.debug("StateStore initialized")
        return self._state_store

    def get_connection_registry(self) -> ConnectionRegistry:
        if self._connection_registry is None:
            self._connection_registry = ConnectionRegistry()
            logger.debug("ConnectionRegistry initialized")
        return self._connection_registry

    def reset(self) -> None:
        self._broker = None
        self._state_store = None
        self._connection_registry = None
        logger.debug("Dependency container reset")


def get_container() -> DependencyContainer:
    return DependencyContainer.get_instance()


def get_state_store() -> StateStore:
    return get_container().get_state_store()


def get_connection_registry() -> ConnectionRegistry:
    return get_container().get_connection_registry()
