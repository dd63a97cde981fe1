"""Fake collaborators for driving the pipeline controller without models or files."""

import threading
import time
from pathlib import Path
import sys

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import SourceOpenError, StageError
from core.interfaces import FrameProcessor, FrameSource, PresentationSink, SourceFactory
from core.results import FaceFeatures, FrameResult

_EMPTY = np.zeros((0, 0, 3), dtype=np.uint8)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.005) -> bool:
    """Poll until predicate() is true or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeSource(FrameSource):
    def __init__(self, name: str, frames: int, fps: float = 30.0, size=(64, 48)):
        self.name = name
        self.frames = frames
        self.fps = fps
        self.size = size
        self.read = 0
        self.dispose_count = 0

    def next_frame(self):
        if self.read >= self.frames:
            return _EMPTY, None, True
        self.read += 1
        w, h = self.size
        frame = np.full((h, w, 3), self.read % 256, dtype=np.uint8)
        return frame, frame[:, :, 0].copy(), False

    def progress(self):
        return self.read / self.frames if self.frames else -1.0

    def frame_rate(self):
        return self.fps

    def dimensions(self):
        return self.size

    def dispose(self):
        self.dispose_count += 1


class FakeSourceFactory(SourceFactory):
    """
    Sources keyed by path: {path: frame count}. Paths not in the map fail
    to open. open_gate, when given, holds the worker inside open_*().
    """

    def __init__(self, videos=None, fps: float = 30.0, open_gate: threading.Event = None):
        self.videos = dict(videos or {})
        self.fps = fps
        self.open_gate = open_gate
        self.opening = threading.Event()
        self.opened = []
        self.sources = []

    def _wait_gate(self):
        self.opening.set()
        if self.open_gate is not None:
            self.open_gate.wait(5.0)

    def _open(self, path, frames, fps):
        source = FakeSource(path, frames, fps)
        self.opened.append(path)
        self.sources.append(source)
        return source

    def open_video(self, path):
        self._wait_gate()
        if path not in self.videos:
            raise SourceOpenError(path, "file does not exist")
        return self._open(path, self.videos[path], self.fps)

    def open_images(self, paths):
        self._wait_gate()
        for p in paths:
            if p not in self.videos:
                raise SourceOpenError(p, "file does not exist")
        return self._open(paths[0], len(paths), 0.0)

    def open_sequence(self, paths):
        self._wait_gate()
        return self._open(paths[0], len(paths), 0.0)


class FakeProcessor(FrameProcessor):
    """Records calls. on_frame(frame_index) runs inside process() on the worker."""

    def __init__(self, on_frame=None, fail_at=None, delay: float = 0.0):
        self.on_frame = on_frame
        self.fail_at = fail_at
        self.delay = delay
        self.processed = []
        self.stills = 0
        self.resets = 0
        self.sessions = []

    @property
    def au_names(self):
        return ("AU01", "AU12")

    def reset(self):
        self.resets += 1

    def process(self, frame, gray, session, frame_index, timestamp):
        if self.fail_at is not None and frame_index == self.fail_at:
            raise StageError("detection", RuntimeError("model exploded"))
        if self.delay:
            time.sleep(self.delay)
        self.processed.append((frame_index, timestamp))
        self.sessions.append(session)
        if self.on_frame is not None:
            self.on_frame(frame_index)
        return FrameResult(
            frame_index=frame_index,
            timestamp=timestamp,
            frame=frame,
            detected=True,
            features=FaceFeatures(confidence=0.9),
        )

    def process_still(self, frame, gray, session):
        self.stills += 1
        self.sessions.append(session)
        return FrameResult(frame_index=1, timestamp=0.0, frame=frame, detected=False,
                           features=FaceFeatures.neutral())

    @property
    def count(self):
        return len(self.processed)


class FakeRecorder:
    """
    Recorder double that also checks no two recorders are ever active at once.
    fail_at makes record_frame() raise at that frame; finish_error is raised by finish().
    """

    _active_lock = threading.Lock()
    active = 0
    max_active = 0
    events = []

    def __init__(self, fail_at=None, finish_error=None):
        self.fail_at = fail_at
        self.finish_error = finish_error
        self.path = None
        self.schema = None
        self.metadata = None
        self.records = []
        self.finish_count = 0

    @classmethod
    def reset_class(cls):
        cls.active = 0
        cls.max_active = 0
        cls.events = []

    @property
    def frames_recorded(self):
        return len(self.records)

    def open(self, path, schema, metadata=None):
        with FakeRecorder._active_lock:
            FakeRecorder.active += 1
            FakeRecorder.max_active = max(FakeRecorder.max_active, FakeRecorder.active)
            FakeRecorder.events.append(("open", path))
        self.path = path
        self.schema = schema
        self.metadata = metadata

    def record_frame(self, frame_index, timestamp, features, detected):
        if self.fail_at is not None and frame_index == self.fail_at:
            raise OSError(28, "No space left on device")
        self.records.append((frame_index, timestamp, detected))

    def finish(self):
        self.finish_count += 1
        with FakeRecorder._active_lock:
            if self.path is not None:
                FakeRecorder.active -= 1
            FakeRecorder.events.append(("finish", self.path))
        if self.finish_error is not None:
            raise self.finish_error
        return {}


class RecorderFactory:
    def __init__(self, **recorder_kwargs):
        self.recorder_kwargs = recorder_kwargs
        self.created = []

    def __call__(self):
        recorder = FakeRecorder(**self.recorder_kwargs)
        self.created.append(recorder)
        return recorder


class FakeSink(PresentationSink):
    """Presentation sink that applies everything inline and keeps a log."""

    def __init__(self):
        self.snapshots = []
        self.modes = []
        self.paused = []
        self.layouts = []
        self.notifications = []

    def publish(self, snapshot, deadline):
        self.snapshots.append(snapshot)

    def set_mode_ui(self, enabled, clear=False, timeout=None):
        self.modes.append((frozenset(enabled), clear))
        return True

    def set_paused(self, paused, timeout=None):
        self.paused.append(paused)
        return True

    def refresh_layout(self, flags, timeout=None):
        self.layouts.append(flags)
        return True

    def notify(self, title, message):
        self.notifications.append((title, message))
