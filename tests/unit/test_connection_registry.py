from datetime import datetime


def test_register_connection(registry):
    connection = registry.register("u1", "sse")

    assert connection.connection_id is not None
    assert connection.transport == "sse"
    assert isinstance(connection.opened_at, datetime)
    assert connection.last_event_at is None


def test_get_connection(registry):
    connection = registry.register("u1", "websocket")

    assert registry.get(connection.connection_id) is connection


def test_get_nonexistent_connection(registry):
    assert registry.get("nonexistent-id") is None


def test_touch_counts_events(registry):
    connection = registry.register("u1", "sse")

    connection.touch()
    connection.touch()

    assert connection.events_sent == 2
    assert isinstance(connection.last_event_at, datetime)


def test_release_connection(registry):
    connection = registry.register("u1", "sse")

    assert registry.release(connection.connection_id) is True
    assert registry.get(connection.connection_id) is None


def test_release_nonexistent_connection(registry):
    assert registry.release("nonexistent-id") is False


def test_connections_by_user(registry):
    registry.register("u1", "sse")
    registry.register("u1", "websocket")
    registry.register("u2", "sse")

    assert len(registry.for_user("u1")) == 2
    assert registry.get_active_connection_count() == 3
