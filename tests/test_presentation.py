"""
Tests for the presentation side: mailbox coalescing, snapshots,
UI-owned state and the headless UI thread's marshaling.
"""

import sys
import threading
import time
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.results import FaceFeatures, FrameResult, HeadPose
from core.settings import VisualizationFlags
from threads.mailbox import Mailbox
from threads.presentation import (
    CONTROL_STEP_1,
    CONTROL_STEP_5,
    IDLE_CONTROLS,
    SETUP_CONTROLS,
    PresentationState,
    build_snapshot,
    layout_for,
)
from threads.ui import UIThread


def make_result(frame_index=1, au=None):
    frame = np.zeros((48, 64, 3), dtype=np.uint8)
    features = FaceFeatures(
        confidence=0.8,
        landmarks=np.array([[10, 10], [30, 10], [20, 20], [12, 30], [28, 30]], dtype=np.float32),
        pose=HeadPose(tx=12.7, ty=-3.2, tz=480.0, pitch=0.0, yaw=np.radians(30), roll=0.0),
        au_intensities=au or {"AU12": 2.5, "AU01": 7.0},
        au_presence={"AU12": 1.0, "AU01": 1.0},
    )
    return FrameResult(frame_index=frame_index, timestamp=0.0, frame=frame,
                       detected=True, features=features)


@pytest.fixture
def ui():
    thread = UIThread(headless=True, poll_interval=0.005)
    thread.start()
    yield thread
    thread.stop()
    thread.join(timeout=2.0)


class TestMailbox:
    """Most-recent-wins hand-off."""

    def test_take_empty_returns_none(self):
        assert Mailbox().take() is None

    def test_newer_post_replaces_pending(self):
        box = Mailbox()
        assert box.post(1) is False
        assert box.post(2) is True
        assert box.take() == 2
        assert box.take() is None
        assert box.dropped == 1
        assert box.posted == 2

    def test_clear(self):
        box = Mailbox()
        box.post("x")
        box.clear()
        assert len(box) == 0

    def test_take_waits_for_post(self):
        box = Mailbox()
        threading.Timer(0.02, lambda: box.post("late")).start()
        assert box.take(timeout=1.0) == "late"


class TestSnapshots:
    """Snapshot building from frame results."""

    def test_arrays_are_copied(self):
        result = make_result()
        snapshot = build_snapshot(1, result, 12.0, VisualizationFlags())
        result.frame[:] = 255
        result.features.landmarks[:] = -1
        assert snapshot.frame.max() == 0
        assert snapshot.landmarks.min() >= 0

    def test_au_intensities_scaled_and_clipped(self):
        snapshot = build_snapshot(1, make_result(), 0.0, VisualizationFlags())
        assert snapshot.au_intensities == (("AU01", 1.0), ("AU12", 0.5))

    def test_geometry_readouts_rounded(self):
        snapshot = build_snapshot(1, make_result(), 0.0, VisualizationFlags())
        assert snapshot.position_mm == (12, -3, 480)
        assert snapshot.orientation_deg == (0, 30, 0)

    def test_hidden_panels_not_copied(self):
        flags = VisualizationFlags(show_video=False, show_appearance=False,
                                   show_geometry=True, show_aus=False)
        snapshot = build_snapshot(1, make_result(), 0.0, flags)
        assert snapshot.frame is None
        assert snapshot.au_intensities == ()
        assert snapshot.position_mm == (12, -3, 480)

    def test_key_orders_by_session_then_frame(self):
        a = build_snapshot(1, make_result(9), 0.0, VisualizationFlags())
        b = build_snapshot(2, make_result(1), 0.0, VisualizationFlags())
        assert a.key < b.key


class TestPresentationState:
    """UI-owned state transitions."""

    def test_stale_snapshot_rejected(self):
        state = PresentationState()
        flags = VisualizationFlags()
        assert state.apply_snapshot(build_snapshot(1, make_result(5), 0.0, flags))
        assert not state.apply_snapshot(build_snapshot(1, make_result(4), 0.0, flags))
        assert not state.apply_snapshot(build_snapshot(1, make_result(5), 0.0, flags))
        assert state.snapshot.frame_index == 5
        assert state.rejected == 2

    def test_pause_enables_step_controls(self):
        state = PresentationState()
        state.set_mode_ui(SETUP_CONTROLS)
        state.set_paused(True)
        assert state.is_enabled(CONTROL_STEP_1)
        assert state.is_enabled(CONTROL_STEP_5)
        assert state.pause_label == "Resume"

        state.set_paused(False)
        assert not state.is_enabled(CONTROL_STEP_1)
        assert state.pause_label == "Pause"

    def test_end_mode_clears_display(self):
        state = PresentationState()
        state.apply_snapshot(build_snapshot(1, make_result(), 0.0, VisualizationFlags()))
        state.set_mode_ui(IDLE_CONTROLS, clear=True)
        assert state.snapshot is None
        assert state.enabled_controls == IDLE_CONTROLS

    def test_layout_weights(self):
        layout = layout_for(VisualizationFlags(show_appearance=False))
        assert layout == {"video": 2.1, "appearance": 0.0, "geometry": 1.0, "aus": 1.6}

    def test_notifications_expire(self):
        state = PresentationState()
        state.add_notification("Could not open input", "x.mp4", now=0.0)
        assert len(state.active_notifications(now=1.0)) == 1
        assert state.active_notifications(now=10.0) == []


class TestUIThread:
    """Marshaling onto the headless UI thread."""

    def test_invoke_runs_on_ui_thread(self, ui):
        seen = {}
        assert ui.invoke(lambda: seen.setdefault("thread", threading.current_thread()), timeout=1.0)
        assert seen["thread"] is ui

    def test_invoke_before_start_is_dropped(self):
        thread = UIThread(headless=True)
        assert thread.invoke(lambda: None, timeout=0.1) is False

    def test_invoke_times_out_and_cancels(self, ui):
        started = threading.Event()
        release = threading.Event()
        ran = []

        def block():
            started.set()
            release.wait(2.0)

        ui.post(block)
        assert started.wait(1.0)
        assert ui.invoke(lambda: ran.append(1), timeout=0.1) is False
        release.set()
        time.sleep(0.1)
        assert ran == []
        assert ui.invoke_timeouts == 1

    def test_failing_call_reported_as_not_completed(self, ui):
        def boom():
            raise RuntimeError("bad layout")

        assert ui.invoke(boom, timeout=1.0) is False
        assert ui.invoke(lambda: None, timeout=1.0) is True

    def test_sink_calls_update_state(self, ui):
        assert ui.set_mode_ui(SETUP_CONTROLS, timeout=1.0)
        assert ui.set_paused(True, timeout=1.0)
        assert ui.state.is_enabled(CONTROL_STEP_1)
        assert ui.refresh_layout(VisualizationFlags(show_aus=False), timeout=1.0)
        assert ui.state.layout["aus"] == 0.0

    def test_published_snapshot_applied(self, ui):
        ui.publish(build_snapshot(1, make_result(), 0.0, VisualizationFlags()), deadline=5.0)
        deadline = time.monotonic() + 2.0
        while ui.state.applied == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert ui.state.snapshot.frame_index == 1

    def test_late_snapshot_dropped(self, ui):
        ui.publish(build_snapshot(1, make_result(), 0.0, VisualizationFlags()), deadline=-1.0)
        deadline = time.monotonic() + 2.0
        while ui.late_snapshots == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert ui.late_snapshots == 1
        assert ui.state.snapshot is None


class TestKeyHandling:
    """Keyboard commands respect the enabled controls."""

    def make(self):
        ui = UIThread(headless=True)
        commands = []
        ui.set_command_handler(lambda name, arg: commands.append((name, arg)))
        return ui, commands

    def test_step_ignored_while_not_paused(self):
        ui, commands = self.make()
        ui.state.set_mode_ui(SETUP_CONTROLS)
        ui.handle_key(ord('n'))
        assert commands == []

    def test_step_forwarded_while_paused(self):
        ui, commands = self.make()
        ui.state.set_mode_ui(SETUP_CONTROLS)
        ui.state.set_paused(True)
        ui.handle_key(ord('n'))
        ui.handle_key(ord('N'))
        assert commands == [("step", 1), ("step", 5)]

    def test_pause_ignored_when_idle(self):
        ui, commands = self.make()
        ui.handle_key(ord('p'))
        assert commands == []

    def test_panel_toggle_always_available(self):
        ui, commands = self.make()
        ui.handle_key(ord('4'))
        assert commands == [("toggle", "show_aus")]

    def test_quit(self):
        ui, commands = self.make()
        ui.handle_key(ord('q'))
        assert ui.quit_requested.is_set()
        assert commands == [("quit", None)]
