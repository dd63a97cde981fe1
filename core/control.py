"""
Playback control shared between the UI thread and the pipeline worker.

States:
    RUNNING  --toggle_pause-->  PAUSED
    PAUSED   --toggle_pause-->  RUNNING
    RUNNING/PAUSED --request_stop--> STOPPED (terminal)

Ownership rules:
- The UI side toggles pause, adds steps and requests stop.
- Only the worker consumes steps.
- running goes True -> False once; a stopped ControlState is never restarted.

The worker parks in wait_while_paused() when paused with no steps left. It
wakes on any command (condition notify) and also re-checks every
poll_interval seconds, so progress never depends on a notify arriving.
"""

import threading
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class PlaybackState(Enum):
    """Observable playback state."""
    IDLE = "idle"           # Created, worker not started yet
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class ControlState:
    """
    Thread-safe running/paused/step flags for one processing run.

    Usage:
        control = ControlState(poll_interval=0.01)
        control.start()

        # Worker loop:
        while control.wait_while_paused():
            process_one_frame()
            control.consume_step()

        # UI thread:
        control.toggle_pause()
        control.request_steps(5)
        control.request_stop()
    """

    def __init__(self, poll_interval: float = 0.01):
        self.poll_interval = poll_interval

        self._cond = threading.Condition()
        self._running = False
        self._paused = False
        self._step_count = 0
        self._stopped = False

    # ========================
    # Snapshot accessors
    # ========================

    @property
    def running(self) -> bool:
        with self._cond:
            return self._running

    @property
    def paused(self) -> bool:
        with self._cond:
            return self._paused

    @property
    def step_count(self) -> int:
        with self._cond:
            return self._step_count

    @property
    def state(self) -> PlaybackState:
        with self._cond:
            if self._stopped:
                return PlaybackState.STOPPED
            if not self._running:
                return PlaybackState.IDLE
            return PlaybackState.PAUSED if self._paused else PlaybackState.RUNNING

    # ========================
    # Lifecycle
    # ========================

    def start(self):
        """Mark the run as started. A stopped control cannot be restarted."""
        with self._cond:
            if self._stopped:
                raise RuntimeError("ControlState already stopped; create a new one for a new run")
            self._running = True

    def request_stop(self):
        """Stop the run. Safe to call repeatedly and from any thread."""
        with self._cond:
            if self._stopped:
                return
            self._running = False
            self._paused = False
            self._stopped = True
            self._cond.notify_all()
        logger.debug("Stop requested")

    # ========================
    # UI-side commands
    # ========================

    def toggle_pause(self) -> bool:
        """Flip paused. Returns the new paused value (always False once stopped)."""
        with self._cond:
            if not self._running:
                return False
            self._paused = not self._paused
            self._cond.notify_all()
            return self._paused

    def resume(self) -> bool:
        """Clear paused. Returns True if the state changed."""
        with self._cond:
            if not self._paused:
                return False
            self._paused = False
            self._cond.notify_all()
            return True

    def request_steps(self, count: int = 1):
        """Ask the worker to advance `count` frames while paused."""
        if count <= 0:
            raise ValueError(f"Step count must be positive, got {count}")
        with self._cond:
            if not self._running:
                return
            self._step_count += count
            self._cond.notify_all()

    # ========================
    # Worker-side
    # ========================

    def wait_while_paused(self) -> bool:
        """
        Block while paused with no pending steps.

        Returns:
            True if the worker should process another frame,
            False if a stop was requested.
        """
        with self._cond:
            while self._running and self._paused and self._step_count == 0:
                self._cond.wait(timeout=self.poll_interval)
            return self._running

    def consume_step(self) -> bool:
        """Decrement the step counter after one processed frame."""
        with self._cond:
            if self._step_count > 0:
                self._step_count -= 1
                return True
            return False

    def clear_steps(self):
        """Drop leftover steps at the end of a loop."""
        with self._cond:
            self._step_count = 0
