from src.sync.clock import ManualClock
from src.sync.update_source import UpdateSource, UpdateSourceTracker


def test_defaults_to_self(clock):
    tracker = UpdateSourceTracker(clock)

    assert tracker.source is UpdateSource.SELF
    assert tracker.is_self


def test_remote_window_resets_after_delay(clock):
    tracker = UpdateSourceTracker(clock, reset_delay=0.125)

    tracker.mark_remote()
    assert not tracker.is_self

    clock.advance(0.0625)
    assert not tracker.is_self

    clock.advance(0.0625)
    assert tracker.is_self


def test_new_remote_apply_restarts_window(clock):
    tracker = UpdateSourceTracker(clock, reset_delay=0.125)

    tracker.mark_remote()
    clock.advance(0.09375)
    tracker.mark_remote()
    clock.advance(0.09375)

    assert not tracker.is_self
    assert clock.pending() == 1

    clock.advance(0.03125)
    assert tracker.is_self


def test_cancel_returns_to_self_immediately(clock):
    tracker = UpdateSourceTracker(clock)

    tracker.mark_remote()
    tracker.cancel()

    assert tracker.is_self
    assert clock.pending() == 0


def test_manual_clock_fires_in_order_including_rescheduled():
    clock = ManualClock()
    fired = []

    def chain():
        fired.append("first")
        clock.call_later(0.5, lambda: fired.append("chained"))

    clock.call_later(2.0, lambda: fired.append("late"))
    clock.call_later(1.0, chain)
    cancelled = clock.call_later(0.5, lambda: fired.append("cancelled"))
    cancelled.cancel()

    clock.advance(3.0)

    assert fired == ["first", "chained", "late"]
    assert clock.now() == 3.0
