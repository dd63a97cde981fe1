"""
Per-input session state owned by the pipeline worker.

A Session covers one input stream (one video, one image sequence, one still
image or one replay). It carries the camera intrinsics, the output name used
by the recorder, the frame counter and FPS statistics.
"""

import time
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

import numpy as np


# Intrinsics guess: 500px focal length for a 640x480 frame
REFERENCE_FOCAL_LENGTH = 500.0
REFERENCE_WIDTH = 640.0
REFERENCE_HEIGHT = 480.0

AUTO = -1.0


class InputMode(Enum):
    """How the input paths are interpreted."""
    VIDEO = "video"         # One or more video files, processed in turn
    SEQUENCE = "sequence"   # Image files forming one synthetic stream
    IMAGES = "images"       # Independent still images
    REPLAY = "replay"       # Video + previously recorded features


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole camera parameters in pixels. Non-positive values mean "auto"."""
    fx: float = AUTO
    fy: float = AUTO
    cx: float = AUTO
    cy: float = AUTO

    @property
    def is_set(self) -> bool:
        return min(self.fx, self.fy, self.cx, self.cy) > 0

    @classmethod
    def estimate(cls, width: int, height: int) -> "CameraIntrinsics":
        """Guess intrinsics from frame size (square pixels, centered principal point)."""
        fx = REFERENCE_FOCAL_LENGTH * (width / REFERENCE_WIDTH)
        fy = REFERENCE_FOCAL_LENGTH * (height / REFERENCE_HEIGHT)
        focal = (fx + fy) / 2.0
        return cls(fx=focal, fy=focal, cx=width / 2.0, cy=height / 2.0)

    def resolve(self, width: int, height: int) -> "CameraIntrinsics":
        """Return self if fully set, otherwise the estimate for this frame size."""
        if self.is_set:
            return self
        return CameraIntrinsics.estimate(width, height)

    def as_matrix(self) -> np.ndarray:
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)


class FpsTracker:
    """Processing rate over a sliding time window."""

    def __init__(self, window_seconds: float = 1.0):
        self.window_seconds = window_seconds
        self._times: deque = deque()
        self._lock = threading.Lock()

    def add_frame(self, now: Optional[float] = None):
        now = time.monotonic() if now is None else now
        with self._lock:
            self._times.append(now)
            self._discard_old(now)

    def get_fps(self, now: Optional[float] = None) -> float:
        now = time.monotonic() if now is None else now
        with self._lock:
            self._discard_old(now)
            if len(self._times) < 2:
                return 0.0
            span = self._times[-1] - self._times[0]
            return (len(self._times) - 1) / span if span > 0 else 0.0

    def reset(self):
        with self._lock:
            self._times.clear()

    def _discard_old(self, now: float):
        while self._times and now - self._times[0] > self.window_seconds:
            self._times.popleft()


def output_name_for_video(path: str) -> str:
    """Recording name for a video: file name without extension."""
    return Path(path).stem


def output_name_for_sequence(paths: List[str]) -> str:
    """Recording name for an image sequence: the directory holding the images."""
    first = Path(paths[0])
    directory = first if first.is_dir() else first.parent
    return directory.resolve().name


@dataclass
class Session:
    """State of one run over one input stream. Owned by the worker thread."""
    session_id: int
    mode: InputMode
    inputs: List[str]
    intrinsics: CameraIntrinsics = field(default_factory=CameraIntrinsics)
    output_name: str = ""
    frame_rate: float = 0.0
    width: int = 0
    height: int = 0
    frame_index: int = 0        # Frames fully processed so far
    fps_tracker: FpsTracker = field(default_factory=FpsTracker)
    started_at: float = field(default_factory=time.time)
    _prepared: bool = field(default=False, repr=False)

    def prepare(self, width: int, height: int, frame_rate: float, default_fps: float = 30.0):
        """
        Fix frame geometry, effective frame rate and intrinsics.

        Runs once; later calls are ignored so intrinsics never change mid-session.
        """
        if self._prepared:
            return
        self.width = width
        self.height = height
        self.frame_rate = frame_rate if frame_rate > 0 else default_fps
        self.intrinsics = self.intrinsics.resolve(width, height)
        self._prepared = True

    @property
    def prepared(self) -> bool:
        return self._prepared

    def timestamp_for(self, frame_index: int) -> float:
        """Seconds from stream start for a zero-based frame index."""
        rate = self.frame_rate if self.frame_rate > 0 else 30.0
        return frame_index / rate

    def get_stats(self) -> dict:
        runtime = time.time() - self.started_at
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "output_name": self.output_name,
            "frames_processed": self.frame_index,
            "runtime_seconds": round(runtime, 1),
            "average_fps": round(self.frame_index / runtime, 1) if runtime > 0 else 0.0,
        }
