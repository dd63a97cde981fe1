"""
Tests for ControlState: pause gate, step counting and stop.
"""

import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.control import ControlState, PlaybackState


@pytest.fixture
def control():
    c = ControlState(poll_interval=0.005)
    c.start()
    return c


class TestStateTransitions:
    """Running / paused / stopped flags."""

    def test_new_control_is_idle(self):
        assert ControlState().state == PlaybackState.IDLE

    def test_started_control_is_running(self, control):
        assert control.running
        assert not control.paused
        assert control.state == PlaybackState.RUNNING

    def test_toggle_pause_flips(self, control):
        assert control.toggle_pause() is True
        assert control.state == PlaybackState.PAUSED
        assert control.toggle_pause() is False
        assert control.state == PlaybackState.RUNNING

    def test_stop_clears_running_and_paused(self, control):
        control.toggle_pause()
        control.request_stop()
        assert not control.running
        assert not control.paused
        assert control.state == PlaybackState.STOPPED

    def test_stop_is_idempotent(self, control):
        control.request_stop()
        control.request_stop()
        assert control.state == PlaybackState.STOPPED

    def test_pause_ignored_after_stop(self, control):
        control.request_stop()
        assert control.toggle_pause() is False
        assert not control.paused

    def test_stopped_control_cannot_restart(self, control):
        control.request_stop()
        with pytest.raises(RuntimeError):
            control.start()

    def test_resume_reports_change(self, control):
        assert control.resume() is False
        control.toggle_pause()
        assert control.resume() is True
        assert not control.paused


class TestSteps:
    """Step requests while paused."""

    def test_non_positive_step_rejected(self, control):
        with pytest.raises(ValueError):
            control.request_steps(0)
        with pytest.raises(ValueError):
            control.request_steps(-3)

    def test_steps_accumulate(self, control):
        control.request_steps(2)
        control.request_steps(3)
        assert control.step_count == 5

    def test_steps_ignored_when_not_running(self):
        c = ControlState()
        c.request_steps(4)
        assert c.step_count == 0

    def test_consume_step_never_goes_negative(self, control):
        control.request_steps(1)
        assert control.consume_step() is True
        assert control.consume_step() is False
        assert control.step_count == 0

    def test_clear_steps(self, control):
        control.request_steps(7)
        control.clear_steps()
        assert control.step_count == 0

    def test_paused_worker_advances_exactly_step_count(self, control):
        processed = []
        control.toggle_pause()

        def worker():
            while control.wait_while_paused():
                processed.append(len(processed) + 1)
                control.consume_step()

        thread = threading.Thread(target=worker, daemon=True)
        thread.start()
        time.sleep(0.05)
        assert processed == []

        control.request_steps(3)
        time.sleep(0.1)
        assert processed == [1, 2, 3]

        control.request_stop()
        thread.join(timeout=2.0)
        assert not thread.is_alive()
        assert processed == [1, 2, 3]


class TestPauseGate:
    """wait_while_paused blocking behaviour."""

    def test_returns_immediately_when_running(self, control):
        assert control.wait_while_paused() is True

    def test_returns_false_after_stop(self, control):
        control.request_stop()
        assert control.wait_while_paused() is False

    def test_stop_releases_blocked_worker(self, control):
        control.toggle_pause()
        result = {}

        def worker():
            result["value"] = control.wait_while_paused()

        thread = threading.Thread(target=worker, daemon=True)
        thread.start()
        time.sleep(0.05)
        assert thread.is_alive()

        control.request_stop()
        thread.join(timeout=1.0)
        assert not thread.is_alive()
        assert result["value"] is False

    def test_resume_releases_blocked_worker(self, control):
        control.toggle_pause()
        released = threading.Event()

        def worker():
            control.wait_while_paused()
            released.set()

        threading.Thread(target=worker, daemon=True).start()
        assert not released.wait(0.05)
        control.toggle_pause()
        assert released.wait(1.0)
