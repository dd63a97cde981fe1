"""
User-adjustable analysis settings.

Visualization flags may change at any time (the UI toggles panels while a
session runs). Recording flags, intrinsics and the record root are only
changed between sessions; the controller enforces that.
"""

import threading
from dataclasses import dataclass, replace
from typing import Tuple

from core.session import CameraIntrinsics
from storage.recorder import OutputSchema


@dataclass(frozen=True)
class VisualizationFlags:
    """Which presentation panels are shown."""
    show_video: bool = True
    show_appearance: bool = True
    show_geometry: bool = True
    show_aus: bool = True


@dataclass(frozen=True)
class RecordingFlags:
    """Which outputs the recorder writes."""
    landmarks_2d: bool = True
    pose: bool = True
    aus: bool = True
    gaze: bool = True
    aligned: bool = False
    hog: bool = False


class AnalysisSettings:
    """Thread-safe holder for visualization, recording and camera settings."""

    def __init__(
        self,
        visualization: VisualizationFlags = VisualizationFlags(),
        recording: RecordingFlags = RecordingFlags(),
        intrinsics: CameraIntrinsics = CameraIntrinsics(),
        record_root: str = "./record",
        image_output_size: int = 112,
    ):
        self._lock = threading.Lock()
        self._visualization = visualization
        self._recording = recording
        self._intrinsics = intrinsics
        self.record_root = record_root
        self.image_output_size = image_output_size

    @classmethod
    def from_config(cls, config) -> "AnalysisSettings":
        return cls(
            visualization=VisualizationFlags(
                show_video=config.SHOW_TRACKED_VIDEO,
                show_appearance=config.SHOW_APPEARANCE,
                show_geometry=config.SHOW_GEOMETRY,
                show_aus=config.SHOW_AUS,
            ),
            recording=RecordingFlags(
                landmarks_2d=config.RECORD_2D_LANDMARKS,
                pose=config.RECORD_POSE,
                aus=config.RECORD_AUS,
                gaze=config.RECORD_GAZE,
                aligned=config.RECORD_ALIGNED,
                hog=config.RECORD_HOG,
            ),
            intrinsics=CameraIntrinsics(
                fx=config.CAMERA_FX,
                fy=config.CAMERA_FY,
                cx=config.CAMERA_CX,
                cy=config.CAMERA_CY,
            ),
            record_root=config.RECORD_ROOT,
            image_output_size=config.IMAGE_OUTPUT_SIZE,
        )

    # ========================
    # Visualization
    # ========================

    @property
    def visualization(self) -> VisualizationFlags:
        with self._lock:
            return self._visualization

    def update_visualization(self, **changes) -> VisualizationFlags:
        """Apply flag changes, returning the new flags."""
        with self._lock:
            self._visualization = replace(self._visualization, **changes)
            return self._visualization

    def toggle_visualization(self, name: str) -> VisualizationFlags:
        with self._lock:
            current = getattr(self._visualization, name)
            self._visualization = replace(self._visualization, **{name: not current})
            return self._visualization

    # ========================
    # Recording / camera
    # ========================

    @property
    def recording(self) -> RecordingFlags:
        with self._lock:
            return self._recording

    def set_recording(self, recording: RecordingFlags):
        with self._lock:
            self._recording = recording

    @property
    def intrinsics(self) -> CameraIntrinsics:
        with self._lock:
            return self._intrinsics

    def set_intrinsics(self, intrinsics: CameraIntrinsics):
        with self._lock:
            self._intrinsics = intrinsics

    def output_schema(self, au_names: Tuple[str, ...] = ()) -> OutputSchema:
        recording = self.recording
        return OutputSchema(
            landmarks_2d=recording.landmarks_2d,
            pose=recording.pose,
            aus=recording.aus,
            gaze=recording.gaze,
            aligned=recording.aligned,
            hog=recording.hog,
            au_names=tuple(au_names),
        )

    # ========================
    # Still-image batches
    # ========================

    def override_for_images(self) -> Tuple[VisualizationFlags, RecordingFlags]:
        """
        Switch to the still-image presentation (video panel only).

        Returns the previous (visualization, recording) pair for
        restore_after_images().
        """
        with self._lock:
            saved = (self._visualization, self._recording)
            self._visualization = VisualizationFlags(
                show_video=True,
                show_appearance=False,
                show_geometry=False,
                show_aus=False,
            )
            return saved

    def restore_after_images(self, saved: Tuple[VisualizationFlags, RecordingFlags]):
        with self._lock:
            self._visualization, self._recording = saved
