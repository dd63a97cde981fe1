"""
Abstract contracts for the collaborators the pipeline controller drives.

Concrete implementations live in vision/ (sources, detector, analyzers),
storage/ (recorder) and threads/ (presentation). Tests substitute fakes.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, List, Optional, Tuple

import numpy as np

from core.results import FaceFeatures, FrameResult
from core.session import CameraIntrinsics, Session


class FrameSource(ABC):
    """Supplies frames from a video file, image sequence or still image."""

    @abstractmethod
    def next_frame(self) -> Tuple[Optional[np.ndarray], Optional[np.ndarray], bool]:
        """Return (frame, grayscale, is_end). An empty frame also means end of stream."""

    @abstractmethod
    def progress(self) -> float:
        """Fraction of the input consumed in [0, 1], or -1 when unknown."""

    @abstractmethod
    def frame_rate(self) -> float:
        """Frames per second reported by the input (<= 0 when unknown)."""

    @abstractmethod
    def dimensions(self) -> Tuple[int, int]:
        """(width, height) in pixels."""

    @abstractmethod
    def dispose(self):
        """Release the underlying handle. Idempotent."""


class SourceFactory(ABC):
    """Opens frame sources. Implementations raise SourceOpenError on failure."""

    @abstractmethod
    def open_video(self, path: str) -> FrameSource:
        ...

    @abstractmethod
    def open_images(self, paths: List[str]) -> FrameSource:
        ...

    @abstractmethod
    def open_sequence(self, paths: List[str]) -> FrameSource:
        ...


class DetectionStage(ABC):
    """Finds facial landmarks in a grayscale frame."""

    @abstractmethod
    def detect(self, gray: np.ndarray, params: Any) -> Tuple[bool, np.ndarray]:
        """Track one face. Returns (success, landmarks); a miss is (False, empty)."""

    @abstractmethod
    def detect_faces(self, gray: np.ndarray, params: Any) -> List[Tuple[np.ndarray, float]]:
        """Find every face. Returns [(landmarks, score), ...]."""

    @abstractmethod
    def reset(self):
        """Forget tracking state."""

    @property
    def last_score(self) -> float:
        return 0.0


class AnalysisStage(ABC):
    """Derives features from a frame and its landmarks."""

    @abstractmethod
    def analyze(
        self,
        frame: np.ndarray,
        landmarks: np.ndarray,
        detected: bool,
        intrinsics: CameraIntrinsics,
        features: Optional[FaceFeatures] = None,
    ) -> FaceFeatures:
        """Fill in (or create) features. Must tolerate detected=False."""

    @abstractmethod
    def reset(self):
        """Forget temporal state."""

    @property
    def au_names(self) -> Tuple[str, ...]:
        return ()


class FrameProcessor(ABC):
    """Turns one source frame into a FrameResult (live analysis or replay)."""

    @abstractmethod
    def process(
        self,
        frame: np.ndarray,
        gray: np.ndarray,
        session: Session,
        frame_index: int,
        timestamp: float,
    ) -> FrameResult:
        ...

    @abstractmethod
    def reset(self):
        ...

    def process_still(self, frame: np.ndarray, gray: np.ndarray, session: Session) -> FrameResult:
        """Analyze an independent still image (no temporal state)."""
        return self.process(frame, gray, session, 1, 0.0)

    @property
    def au_names(self) -> Tuple[str, ...]:
        return ()


class PresentationSink(ABC):
    """
    The single-threaded presentation layer.

    All methods may be called from the worker thread; implementations
    marshal the actual state change onto their own UI thread.
    """

    @abstractmethod
    def publish(self, snapshot: Any, deadline: float):
        """Fire-and-forget frame update; newer snapshots replace undelivered ones."""

    @abstractmethod
    def set_mode_ui(self, enabled: Iterable[str], clear: bool = False,
                    timeout: Optional[float] = None) -> bool:
        """Enable exactly `enabled` controls (optionally clearing the display)."""

    @abstractmethod
    def set_paused(self, paused: bool, timeout: Optional[float] = None) -> bool:
        """Reflect the pause state in the controls."""

    @abstractmethod
    def refresh_layout(self, flags: Any, timeout: Optional[float] = None) -> bool:
        """Recompute panel layout for the visualization flags."""

    @abstractmethod
    def notify(self, title: str, message: str):
        """Show a recoverable notification."""

    def invoke(self, fn: Callable[[], Any], timeout: Optional[float] = None) -> bool:
        fn()
        return True
