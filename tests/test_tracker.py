"""Unit tests for auth/tracker.py -- the periodic activity refresh task."""

import asyncio
import threading

from auth.tracker import ActivityTracker


class RecordingTouch:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.fail = fail
        self.threads: set[int] = set()

    def __call__(self, session_id, current_page=None):
        self.calls.append((session_id, current_page))
        self.threads.add(threading.get_ident())
        if self.fail:
            raise RuntimeError("db unavailable")
        return True


def test_touches_immediately_then_on_interval():
    touch = RecordingTouch()

    async def scenario():
        tracker = ActivityTracker(touch, "abc123", interval_seconds=0.05, current_page="/pos")
        tracker.start()
        await asyncio.sleep(0.18)
        await tracker.stop()

    asyncio.run(scenario())
    assert len(touch.calls) >= 2
    assert touch.calls[0] == ("abc123", "/pos")


def test_touch_runs_off_the_event_loop_thread():
    touch = RecordingTouch()

    async def scenario():
        tracker = ActivityTracker(touch, "abc123", interval_seconds=60)
        await tracker.touch_now()

    asyncio.run(scenario())
    assert threading.get_ident() not in touch.threads


def test_stop_is_idempotent_and_halts_touches():
    touch = RecordingTouch()

    async def scenario():
        tracker = ActivityTracker(touch, "abc123", interval_seconds=0.02)
        tracker.start()
        await asyncio.sleep(0.05)
        await tracker.stop()
        assert tracker.running is False
        count = len(touch.calls)
        await tracker.stop()
        await asyncio.sleep(0.06)
        return count

    count = asyncio.run(scenario())
    assert len(touch.calls) == count


def test_start_twice_keeps_one_task():
    touch = RecordingTouch()

    async def scenario():
        tracker = ActivityTracker(touch, "abc123", interval_seconds=60)
        tracker.start()
        first = tracker._task
        tracker.start()
        assert tracker._task is first
        await asyncio.sleep(0.02)
        await tracker.stop()

    asyncio.run(scenario())
    assert len(touch.calls) == 1


def test_touch_failures_do_not_stop_the_loop():
    touch = RecordingTouch(fail=True)

    async def scenario():
        tracker = ActivityTracker(touch, "abc123", interval_seconds=0.02)
        tracker.start()
        await asyncio.sleep(0.1)
        assert tracker.running
        await tracker.stop()

    asyncio.run(scenario())
    assert len(touch.calls) >= 2


def test_stop_without_start_is_safe():
    asyncio.run(ActivityTracker(RecordingTouch(), "abc123").stop())


def test_loop_ends_when_session_is_gone():
    touch = RecordingTouch()
    touch_results = iter([True, False])
    gone: list[str] = []

    def touch_until_revoked(session_id, current_page=None):
        touch(session_id, current_page)
        return next(touch_results)

    async def scenario():
        tracker = ActivityTracker(
            touch_until_revoked, "abc123", interval_seconds=0.02, on_session_gone=lambda: gone.append("abc123")
        )
        tracker.start()
        await asyncio.sleep(0.15)
        assert tracker.running is False
        await tracker.stop()

    asyncio.run(scenario())
    assert len(touch.calls) == 2
    assert gone == ["abc123"]


def test_unknown_touch_result_keeps_the_loop_running():
    gone: list[str] = []

    async def scenario():
        tracker = ActivityTracker(
            lambda session_id, current_page=None: None,
            "abc123",
            interval_seconds=0.02,
            on_session_gone=lambda: gone.append("abc123"),
        )
        tracker.start()
        await asyncio.sleep(0.08)
        assert tracker.running
        await tracker.stop()

    asyncio.run(scenario())
    assert gone == []
