"""
UI Thread - the single thread that owns presentation state.

Architecture:
- The pipeline worker never touches PresentationState. It posts frame
  snapshots to a single-slot Mailbox (most recent wins) and marshals
  mode/pause/layout changes as callables run here via invoke().
- invoke() waits up to a budget; a call the UI has not started by then is
  cancelled and reported as not delivered. Late snapshots are dropped.
- Conditional rendering: an OpenCV window when a display is available,
  otherwise the same apply loop runs headless.
- Keyboard commands are forwarded to a command handler (the controller).
"""

import os
import queue
import threading
import time
import logging
from typing import Any, Callable, Iterable, Optional

import numpy as np
import cv2

from core.interfaces import PresentationSink
from core.settings import VisualizationFlags
from threads.mailbox import Mailbox
from threads.presentation import (
    CONTROL_PAUSE,
    CONTROL_STEP_1,
    CONTROL_STEP_5,
    CONTROL_STOP,
    PANEL_APPEARANCE,
    PANEL_AUS,
    PANEL_GEOMETRY,
    PANEL_VIDEO,
    FrameSnapshot,
    PresentationState,
)

logger = logging.getLogger(__name__)


def _has_display() -> bool:
    """Check if a display is available."""
    if os.name == 'posix':
        return bool(os.environ.get('DISPLAY') or os.environ.get('WAYLAND_DISPLAY'))
    return True


class _Invocation:
    """A callable queued for the UI thread. Cancellable until it starts."""

    PENDING, RUNNING, CANCELLED, DONE = range(4)

    def __init__(self, fn: Callable[[], Any]):
        self.fn = fn
        self.done = threading.Event()
        self.completed = False
        self.error: Optional[BaseException] = None
        self._state = self.PENDING
        self._lock = threading.Lock()

    def begin(self) -> bool:
        with self._lock:
            if self._state != self.PENDING:
                return False
            self._state = self.RUNNING
            return True

    def cancel(self) -> bool:
        with self._lock:
            if self._state != self.PENDING:
                return False
            self._state = self.CANCELLED
            return True

    def finish(self, error: Optional[BaseException] = None):
        with self._lock:
            self.completed = self._state == self.RUNNING and error is None
            self._state = self.DONE
            self.error = error
        self.done.set()


# Keys -> (command, argument, control that must be enabled)
KEY_COMMANDS = {
    ord('p'): ("pause", None, CONTROL_PAUSE),
    ord(' '): ("pause", None, CONTROL_PAUSE),
    ord('n'): ("step", 1, CONTROL_STEP_1),
    ord('N'): ("step", 5, CONTROL_STEP_5),
    ord('s'): ("stop", None, CONTROL_STOP),
    ord('1'): ("toggle", "show_video", None),
    ord('2'): ("toggle", "show_appearance", None),
    ord('3'): ("toggle", "show_geometry", None),
    ord('4'): ("toggle", "show_aus", None),
}


class UIThread(threading.Thread, PresentationSink):
    """
    Presentation thread for the analysis pipeline.

    Usage:
        ui = UIThread(headless=True)
        ui.set_command_handler(controller.handle_command)
        ui.start()

        # From the worker:
        ui.publish(snapshot, deadline=0.2)
        ui.set_mode_ui(SETUP_CONTROLS, timeout=1.0)

        ui.stop()
    """

    COLORS = {
        'bg_dark': (25, 25, 25),
        'bg_panel': (40, 40, 40),
        'text_primary': (255, 255, 255),
        'text_secondary': (150, 150, 150),
        'text_muted': (100, 100, 100),
        'landmark': (0, 255, 0),
        'box': (0, 0, 255),
        'gaze': (255, 180, 0),
        'bar': (0, 200, 0),
        'warning': (0, 165, 255),
    }

    def __init__(
        self,
        display_width: int = 1280,
        display_height: int = 720,
        window_name: str = "Face Analysis",
        fullscreen: bool = False,
        headless: bool = False,
        flags: VisualizationFlags = VisualizationFlags(),
        poll_interval: float = 0.02,
        target_fps: int = 30,
    ):
        super().__init__(name="UIThread", daemon=True)

        self.display_width = display_width
        self.display_height = display_height
        self.window_name = window_name
        self.fullscreen = fullscreen
        self.headless = headless
        self.poll_interval = poll_interval
        self.target_fps = target_fps

        self.state = PresentationState(flags)
        self._mailbox = Mailbox()
        self._calls: queue.Queue = queue.Queue()
        self._command_handler: Optional[Callable[[str, Any], None]] = None

        self._stop_event = threading.Event()
        self.quit_requested = threading.Event()
        self._gui_available = False

        # Stats
        self.fps = 0.0
        self._frame_count = 0
        self._fps_start_time = time.time()
        self.late_snapshots = 0
        self.invoke_timeouts = 0

    def set_command_handler(self, handler: Callable[[str, Any], None]):
        self._command_handler = handler

    # ========================
    # Thread loop
    # ========================

    def run(self):
        logger.info("UI thread starting")

        if self.headless or not _has_display():
            self._run_headless()
            return

        try:
            cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)
            if self.fullscreen:
                cv2.setWindowProperty(self.window_name, cv2.WND_PROP_FULLSCREEN, cv2.WINDOW_FULLSCREEN)
            else:
                cv2.resizeWindow(self.window_name, self.display_width, self.display_height)
            self._gui_available = True
            logger.info(f"Display window created: {self.display_width}x{self.display_height}")
        except cv2.error as e:
            logger.warning(f"Failed to create window: {e}. Running headless.")
            self._run_headless()
            return

        self._render_loop()
        cv2.destroyAllWindows()
        self._cancel_pending()
        logger.info("UI thread stopped")

    def _run_headless(self):
        """Apply snapshots and marshaled calls without rendering."""
        logger.info("Running in headless mode (no display)")
        while not self._stop_event.is_set():
            self._pump(wait=self.poll_interval)
        self._cancel_pending()
        logger.info("Headless UI thread stopped")

    def _render_loop(self):
        frame_interval = 1.0 / self.target_fps
        last_frame_time = time.time()

        while not self._stop_event.is_set():
            self._pump(wait=0.0)

            canvas = self.render()
            cv2.imshow(self.window_name, canvas)
            self._frame_count += 1

            now = time.time()
            if now - self._fps_start_time >= 1.0:
                self.fps = self._frame_count / (now - self._fps_start_time)
                self._frame_count = 0
                self._fps_start_time = now

            key = cv2.waitKey(1)
            if key != -1:
                self.handle_key(key & 0xFF)

            elapsed = time.time() - last_frame_time
            if elapsed < frame_interval:
                time.sleep(frame_interval - elapsed)
            last_frame_time = time.time()

    def _pump(self, wait: float = 0.0):
        """Apply the pending snapshot, then run queued calls."""
        item = self._mailbox.take()
        if item is not None:
            snapshot, expires_at = item
            if time.monotonic() > expires_at:
                self.late_snapshots += 1
                logger.debug(f"Dropped late snapshot {snapshot.key}")
            else:
                self.state.apply_snapshot(snapshot)

        ran = self._run_calls()
        if not ran and item is None and wait > 0:
            try:
                invocation = self._calls.get(timeout=wait)
            except queue.Empty:
                return
            self._execute(invocation)

    def _run_calls(self) -> int:
        ran = 0
        while True:
            try:
                invocation = self._calls.get_nowait()
            except queue.Empty:
                return ran
            self._execute(invocation)
            ran += 1

    def _execute(self, invocation: _Invocation):
        if not invocation.begin():
            return
        try:
            invocation.fn()
        except Exception as e:
            logger.exception("UI call failed")
            invocation.finish(e)
            return
        invocation.finish()

    def _cancel_pending(self):
        while True:
            try:
                invocation = self._calls.get_nowait()
            except queue.Empty:
                return
            if invocation.cancel():
                invocation.finish()

    # ========================
    # Marshaling
    # ========================

    def invoke(self, fn: Callable[[], Any], timeout: Optional[float] = None) -> bool:
        """
        Run fn on the UI thread and wait for it.

        Returns:
            True if fn ran to completion, False if it was cancelled
            (budget exceeded, UI not running) or raised.
        """
        if threading.current_thread() is self:
            fn()
            return True
        if not self.is_alive() or self._stop_event.is_set():
            logger.debug("UI thread not running, call dropped")
            return False

        invocation = _Invocation(fn)
        self._calls.put(invocation)

        deadline = None if timeout is None else time.monotonic() + timeout
        while not invocation.done.wait(0.05):
            expired = deadline is not None and time.monotonic() >= deadline
            if (expired or not self.is_alive()) and invocation.cancel():
                self.invoke_timeouts += 1
                logger.debug(f"UI call cancelled after {timeout}s budget")
                return False
        return invocation.completed

    def post(self, fn: Callable[[], Any]):
        """Queue fn for the UI thread without waiting."""
        self._calls.put(_Invocation(fn))

    # ========================
    # PresentationSink
    # ========================

    def publish(self, snapshot: FrameSnapshot, deadline: float):
        self._mailbox.post((snapshot, time.monotonic() + deadline))

    def set_mode_ui(self, enabled: Iterable[str], clear: bool = False,
                    timeout: Optional[float] = None) -> bool:
        enabled = frozenset(enabled)

        def apply():
            if clear:
                self._mailbox.clear()
            self.state.set_mode_ui(enabled, clear=clear)

        return self.invoke(apply, timeout)

    def set_paused(self, paused: bool, timeout: Optional[float] = None) -> bool:
        return self.invoke(lambda: self.state.set_paused(paused), timeout)

    def refresh_layout(self, flags: VisualizationFlags, timeout: Optional[float] = None) -> bool:
        return self.invoke(lambda: self.state.apply_layout(flags), timeout)

    def notify(self, title: str, message: str):
        logger.warning(f"{title}: {message}")
        if threading.current_thread() is self:
            self.state.add_notification(title, message)
        else:
            self.post(lambda: self.state.add_notification(title, message))

    # ========================
    # Input
    # ========================

    def handle_key(self, key: int):
        """Translate a key press into a controller command."""
        if key == ord('q'):
            self.quit_requested.set()
            self._dispatch("quit", None)
            return
        if key == ord('f'):
            self._toggle_fullscreen()
            return

        command = KEY_COMMANDS.get(key)
        if command is None:
            return
        name, argument, control = command
        if control is not None and not self.state.is_enabled(control):
            return
        self._dispatch(name, argument)

    def _dispatch(self, name: str, argument: Any):
        if self._command_handler is None:
            return
        try:
            self._command_handler(name, argument)
        except Exception:
            logger.exception(f"Command '{name}' failed")

    def _toggle_fullscreen(self):
        self.fullscreen = not self.fullscreen
        if self._gui_available:
            mode = cv2.WINDOW_FULLSCREEN if self.fullscreen else cv2.WINDOW_NORMAL
            cv2.setWindowProperty(self.window_name, cv2.WND_PROP_FULLSCREEN, mode)

    # ========================
    # Rendering
    # ========================

    def render(self) -> np.ndarray:
        canvas = np.full(
            (self.display_height, self.display_width, 3),
            self.COLORS['bg_dark'],
            dtype=np.uint8,
        )
        status_height = 35
        body_height = self.display_height - status_height

        weights = self.state.layout
        total = sum(weights.values())
        snapshot = self.state.snapshot

        if total > 0 and snapshot is not None:
            x = 0
            for name in (PANEL_VIDEO, PANEL_APPEARANCE, PANEL_GEOMETRY, PANEL_AUS):
                width = int(self.display_width * weights[name] / total)
                if width <= 0:
                    continue
                region = canvas[0:body_height, x:x + width]
                if name == PANEL_VIDEO:
                    self._draw_video(region, snapshot)
                elif name == PANEL_APPEARANCE:
                    self._draw_appearance(region, snapshot)
                elif name == PANEL_GEOMETRY:
                    self._draw_geometry(region, snapshot)
                else:
                    self._draw_aus(region, snapshot)
                x += width
        elif snapshot is None:
            self._draw_centered_text(canvas, "No input", body_height // 2,
                                     font_scale=1.2, color=self.COLORS['text_muted'])

        self._draw_notifications(canvas)
        self._draw_status_bar(canvas, snapshot)
        return canvas

    def _fit(self, image: np.ndarray, region: np.ndarray):
        """Paste image scaled into region, returns (scale, x0, y0)."""
        h, w = image.shape[:2]
        rh, rw = region.shape[:2]
        if h == 0 or w == 0 or rh == 0 or rw == 0:
            return 0.0, 0, 0
        scale = min(rw / w, rh / h)
        new_w, new_h = max(1, int(w * scale)), max(1, int(h * scale))
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        x0, y0 = (rw - new_w) // 2, (rh - new_h) // 2
        region[y0:y0 + new_h, x0:x0 + new_w] = cv2.resize(image, (new_w, new_h))
        return scale, x0, y0

    def _draw_video(self, region: np.ndarray, snapshot: FrameSnapshot):
        if snapshot.frame is None or snapshot.frame.size == 0:
            return
        scale, x0, y0 = self._fit(snapshot.frame, region)

        def to_px(p):
            return int(p[0] * scale + x0), int(p[1] * scale + y0)

        faces = snapshot.faces or ((snapshot.landmarks,) if snapshot.landmarks is not None else ())
        for landmarks in faces:
            for point in landmarks:
                cv2.circle(region, to_px(point), 3, self.COLORS['landmark'], -1)
        for start, end in snapshot.box_lines:
            cv2.line(region, to_px(start), to_px(end), self.COLORS['box'], 2)
        for start, end in snapshot.gaze_lines:
            cv2.line(region, to_px(start), to_px(end), self.COLORS['gaze'], 2)

        # Detection confidence bar
        bar_w = int(region.shape[1] * 0.3)
        cv2.rectangle(region, (10, 10), (10 + bar_w, 20), self.COLORS['bg_panel'], -1)
        cv2.rectangle(region, (10, 10), (10 + int(bar_w * snapshot.confidence), 20),
                      self.COLORS['bar'] if snapshot.detected else self.COLORS['warning'], -1)

    def _draw_appearance(self, region: np.ndarray, snapshot: FrameSnapshot):
        half = region.shape[0] // 2
        if snapshot.aligned_face is not None:
            self._fit(snapshot.aligned_face, region[0:half])
        if snapshot.descriptor_image is not None:
            self._fit(snapshot.descriptor_image, region[half:])

    def _draw_geometry(self, region: np.ndarray, snapshot: FrameSnapshot):
        tx, ty, tz = snapshot.position_mm
        pitch, yaw, roll = snapshot.orientation_deg
        gx, gy = snapshot.gaze_deg
        lines = [
            "Head position (mm)",
            f"  X {tx}  Y {ty}  Z {tz}",
            "Head orientation (deg)",
            f"  Pitch {pitch}  Yaw {yaw}  Roll {roll}",
            "Gaze (deg)",
            f"  X {gx}  Y {gy}",
        ]
        for i, text in enumerate(lines):
            color = self.COLORS['text_secondary'] if text.startswith("  ") else self.COLORS['text_primary']
            cv2.putText(region, text, (10, 30 + i * 28), cv2.FONT_HERSHEY_SIMPLEX, 0.55, color, 1)

    def _draw_aus(self, region: np.ndarray, snapshot: FrameSnapshot):
        if not snapshot.au_intensities:
            cv2.putText(region, "No action units", (10, 30), cv2.FONT_HERSHEY_SIMPLEX,
                        0.55, self.COLORS['text_muted'], 1)
            return
        presence = dict(snapshot.au_presence)
        row_h = max(12, min(28, (region.shape[0] - 20) // len(snapshot.au_intensities)))
        bar_max = region.shape[1] - 90
        for i, (name, value) in enumerate(snapshot.au_intensities):
            y = 10 + i * row_h
            color = self.COLORS['bar'] if presence.get(name, 0.0) > 0 else self.COLORS['text_muted']
            cv2.putText(region, name, (10, y + row_h - 6), cv2.FONT_HERSHEY_SIMPLEX,
                        0.45, self.COLORS['text_primary'], 1)
            cv2.rectangle(region, (70, y + 3), (70 + int(bar_max * value), y + row_h - 3), color, -1)

    def _draw_notifications(self, canvas: np.ndarray):
        for i, note in enumerate(self.state.active_notifications()):
            y = 40 + i * 36
            cv2.rectangle(canvas, (0, y - 26), (canvas.shape[1], y + 8), self.COLORS['bg_panel'], -1)
            cv2.putText(canvas, f"{note.title}: {note.message}", (15, y),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, self.COLORS['warning'], 2)

    def _draw_status_bar(self, canvas: np.ndarray, snapshot: Optional[FrameSnapshot]):
        bar_height = 35
        bar_y = canvas.shape[0] - bar_height
        cv2.rectangle(canvas, (0, bar_y), (canvas.shape[1], canvas.shape[0]),
                      self.COLORS['bg_panel'], -1)

        if snapshot is not None:
            cv2.putText(canvas, f"Frame {snapshot.frame_index}", (15, bar_y + 24),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, self.COLORS['text_primary'], 1)
            cv2.putText(canvas, f"FPS: {snapshot.fps:.1f}", (180, bar_y + 24),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.55, self.COLORS['text_muted'], 1)
            if snapshot.progress >= 0:
                bar_x, bar_w = 300, 200
                cv2.rectangle(canvas, (bar_x, bar_y + 14), (bar_x + bar_w, bar_y + 22),
                              self.COLORS['bg_dark'], -1)
                cv2.rectangle(canvas, (bar_x, bar_y + 14),
                              (bar_x + int(bar_w * snapshot.progress), bar_y + 22),
                              self.COLORS['bar'], -1)

        help_parts = []
        if self.state.is_enabled(CONTROL_PAUSE):
            help_parts.append(f"[P] {self.state.pause_label}")
        if self.state.is_enabled(CONTROL_STEP_1):
            help_parts.append("[N] Step")
        if self.state.is_enabled(CONTROL_STEP_5):
            help_parts.append("[Shift+N] Step 5")
        if self.state.is_enabled(CONTROL_STOP):
            help_parts.append("[S] Stop")
        help_parts.append("[Q] Quit")
        cv2.putText(canvas, " | ".join(help_parts), (canvas.shape[1] - 520, bar_y + 24),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, self.COLORS['text_secondary'], 1)

    def _draw_centered_text(self, canvas: np.ndarray, text: str, y: int,
                            font_scale: float = 1.0, thickness: int = 2,
                            color: tuple = None):
        if color is None:
            color = self.COLORS['text_primary']
        font = cv2.FONT_HERSHEY_SIMPLEX
        text_size = cv2.getTextSize(text, font, font_scale, thickness)[0]
        x = (canvas.shape[1] - text_size[0]) // 2
        cv2.putText(canvas, text, (x, y), font, font_scale, color, thickness)

    # ========================
    # Public API
    # ========================

    def stop(self):
        """Signal thread to stop."""
        self._stop_event.set()

    @property
    def has_window(self) -> bool:
        return self._gui_available

    def get_stats(self) -> dict:
        return {
            "snapshots_posted": self._mailbox.posted,
            "snapshots_coalesced": self._mailbox.dropped,
            "snapshots_late": self.late_snapshots,
            "snapshots_applied": self.state.applied,
            "snapshots_out_of_order": self.state.rejected,
            "invoke_timeouts": self.invoke_timeouts,
        }


def create_ui_thread_from_config(config, flags: VisualizationFlags, headless: bool = False) -> UIThread:
    """Factory function to create UIThread from config object."""
    return UIThread(
        display_width=config.DISPLAY_WIDTH,
        display_height=config.DISPLAY_HEIGHT,
        fullscreen=config.DISPLAY_FULLSCREEN,
        headless=headless or not config.DISPLAY_ENABLED,
        flags=flags,
    )
