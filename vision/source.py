"""
Frame sources: video files, image sequences and still images.

Every source hands out (frame, grayscale, is_end). End of stream is also
signalled by an empty frame so the pipeline can treat both the same way.
"""

import logging
import threading
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import cv2

from core.errors import SourceOpenError
from core.interfaces import FrameSource, SourceFactory

logger = logging.getLogger(__name__)


VIDEO_EXTENSIONS = (".avi", ".wmv", ".mov", ".mpg", ".mpeg", ".mp4", ".mkv")
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".bmp", ".png", ".gif", ".tif", ".tiff")

_EMPTY = np.zeros((0, 0, 3), dtype=np.uint8)


def to_gray(frame: np.ndarray) -> np.ndarray:
    """Grayscale copy of a BGR (or already gray) frame."""
    if frame.ndim == 2:
        return frame.copy()
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)


def to_bgr(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
    return frame


class VideoFileSource(FrameSource):
    """Frames from a video file via cv2.VideoCapture."""

    def __init__(self, path: str):
        self.path = path
        self._capture = cv2.VideoCapture(path)
        self._lock = threading.Lock()

        if not self._capture.isOpened():
            self._capture.release()
            raise SourceOpenError(path, "file is not a video or the codec is not supported")

        self._width = int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._height = int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self._fps = float(self._capture.get(cv2.CAP_PROP_FPS) or 0.0)
        self._total_frames = int(self._capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        self._frames_read = 0
        self._disposed = False

        logger.info(f"Video opened: {path} ({self._width}x{self._height} @ {self._fps:.2f}fps, "
                    f"{self._total_frames} frames)")

    def next_frame(self) -> Tuple[Optional[np.ndarray], Optional[np.ndarray], bool]:
        with self._lock:
            if self._disposed:
                return _EMPTY, None, True
            ret, frame = self._capture.read()
        if not ret or frame is None or frame.size == 0:
            return _EMPTY, None, True
        self._frames_read += 1
        frame = to_bgr(frame)
        return frame, to_gray(frame), False

    def progress(self) -> float:
        if self._total_frames <= 0:
            return -1.0
        return min(1.0, self._frames_read / self._total_frames)

    def frame_rate(self) -> float:
        return self._fps

    def dimensions(self) -> Tuple[int, int]:
        return self._width, self._height

    def dispose(self):
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            self._capture.release()
        logger.debug(f"Video released: {self.path}")


class ImageListSource(FrameSource):
    """
    Frames read from a list of image files, one per call.

    Used both for image sequences (one synthetic stream) and for single
    still images in batch mode.
    """

    def __init__(self, paths: List[str]):
        if not paths:
            raise SourceOpenError("<empty>", "no image files given")
        self.paths = [str(p) for p in paths]

        # The first image must decode; it fixes the stream geometry
        first = cv2.imread(self.paths[0], cv2.IMREAD_COLOR)
        if first is None or first.size == 0:
            raise SourceOpenError(self.paths[0], "file is not an image or the decoder is not supported")

        self._height, self._width = first.shape[:2]
        self._pending: Optional[np.ndarray] = first
        self._position = 0
        self._disposed = False

    def next_frame(self) -> Tuple[Optional[np.ndarray], Optional[np.ndarray], bool]:
        if self._disposed or self._position >= len(self.paths):
            return _EMPTY, None, True

        if self._pending is not None:
            frame, self._pending = self._pending, None
        else:
            frame = cv2.imread(self.paths[self._position], cv2.IMREAD_COLOR)
        self._position += 1

        if frame is None or frame.size == 0:
            logger.warning(f"Unreadable image ends the stream: {self.paths[self._position - 1]}")
            return _EMPTY, None, True
        return frame, to_gray(frame), False

    def progress(self) -> float:
        return self._position / len(self.paths)

    def frame_rate(self) -> float:
        # Image sequences carry no timing; the pipeline substitutes its default
        return 0.0

    def dimensions(self) -> Tuple[int, int]:
        return self._width, self._height

    def dispose(self):
        self._disposed = True
        self._pending = None


def expand_sequence_paths(paths: List[str]) -> List[str]:
    """A directory expands to its image files (sorted); files are kept in order."""
    expanded = []
    for p in paths:
        path = Path(p)
        if path.is_dir():
            expanded.extend(
                str(f) for f in sorted(path.iterdir())
                if f.suffix.lower() in IMAGE_EXTENSIONS
            )
        else:
            expanded.append(str(path))
    return expanded


class FileSourceFactory(SourceFactory):
    """Opens sources from the local filesystem."""

    def open_video(self, path: str) -> FrameSource:
        if not Path(path).is_file():
            raise SourceOpenError(path, "file does not exist")
        return VideoFileSource(path)

    def open_images(self, paths: List[str]) -> FrameSource:
        for p in paths:
            if not Path(p).is_file():
                raise SourceOpenError(p, "file does not exist")
        return ImageListSource(paths)

    def open_sequence(self, paths: List[str]) -> FrameSource:
        files = expand_sequence_paths(paths)
        if not files:
            raise SourceOpenError(", ".join(paths), "no image files found")
        return self.open_images(files)
