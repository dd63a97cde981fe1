"""
Presentation data model.

FrameSnapshot is what the worker hands over: an immutable bundle of array
copies and readouts built from one FrameResult. PresentationState is what
the UI thread owns and mutates; nothing outside the UI thread touches it.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np

from core.results import FrameResult, Line
from core.settings import VisualizationFlags


# ========================
# Controls
# ========================

CONTROL_OPEN = "open"
CONTROL_SETTINGS = "settings"
CONTROL_RECORDING_SETTINGS = "recording_settings"
CONTROL_AU_SETTINGS = "au_settings"
CONTROL_PAUSE = "pause"
CONTROL_STOP = "stop"
CONTROL_STEP_1 = "step_1"
CONTROL_STEP_5 = "step_5"

STEP_CONTROLS = frozenset({CONTROL_STEP_1, CONTROL_STEP_5})

# While a session runs: only playback controls
SETUP_CONTROLS = frozenset({CONTROL_PAUSE, CONTROL_STOP})

# Between sessions: configuration and opening inputs
IDLE_CONTROLS = frozenset({
    CONTROL_OPEN,
    CONTROL_SETTINGS,
    CONTROL_RECORDING_SETTINGS,
    CONTROL_AU_SETTINGS,
})


# ========================
# Layout
# ========================

PANEL_VIDEO = "video"
PANEL_APPEARANCE = "appearance"
PANEL_GEOMETRY = "geometry"
PANEL_AUS = "aus"

# Relative column widths of the visible panels
PANEL_WEIGHTS = {
    PANEL_VIDEO: 2.1,
    PANEL_APPEARANCE: 0.8,
    PANEL_GEOMETRY: 1.0,
    PANEL_AUS: 1.6,
}


def layout_for(flags: VisualizationFlags) -> Dict[str, float]:
    """Panel weights for the flags; hidden panels get 0."""
    visible = {
        PANEL_VIDEO: flags.show_video,
        PANEL_APPEARANCE: flags.show_appearance,
        PANEL_GEOMETRY: flags.show_geometry,
        PANEL_AUS: flags.show_aus,
    }
    return {name: (PANEL_WEIGHTS[name] if shown else 0.0) for name, shown in visible.items()}


# ========================
# Snapshots
# ========================

AU_DISPLAY_SCALE = 5.0


@dataclass(frozen=True, eq=False)
class FrameSnapshot:
    """Read-only copy of one frame's presentable output."""
    session_id: int
    frame_index: int
    detected: bool
    confidence: float
    fps: float
    progress: float
    frame: Optional[np.ndarray] = None
    landmarks: Optional[np.ndarray] = None
    eye_landmarks: Optional[np.ndarray] = None
    faces: Tuple[np.ndarray, ...] = ()
    box_lines: Tuple[Line, ...] = ()
    gaze_lines: Tuple[Line, ...] = ()
    aligned_face: Optional[np.ndarray] = None
    descriptor_image: Optional[np.ndarray] = None
    position_mm: Tuple[int, int, int] = (0, 0, 0)
    orientation_deg: Tuple[int, int, int] = (0, 0, 0)   # pitch, yaw, roll
    gaze_deg: Tuple[int, int] = (0, 0)
    au_intensities: Tuple[Tuple[str, float], ...] = ()  # Scaled to [0, 1]
    au_presence: Tuple[Tuple[str, float], ...] = ()
    created_at: float = field(default_factory=time.monotonic)

    @property
    def key(self) -> Tuple[int, int]:
        return self.session_id, self.frame_index


def _copy(array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    return None if array is None else np.array(array, copy=True)


def build_snapshot(
    session_id: int,
    result: FrameResult,
    fps: float,
    flags: VisualizationFlags,
) -> FrameSnapshot:
    """Copy what the visible panels need out of a FrameResult."""
    features = result.features
    snapshot = {
        "session_id": session_id,
        "frame_index": result.frame_index,
        "detected": result.detected,
        "confidence": float(np.clip(features.confidence, 0.0, 1.0)),
        "fps": fps,
        "progress": result.progress,
    }

    if flags.show_video:
        snapshot["frame"] = _copy(result.frame)
        snapshot["landmarks"] = _copy(features.landmarks)
        snapshot["eye_landmarks"] = _copy(features.eye_landmarks)
        snapshot["faces"] = tuple(_copy(face) for face in result.faces)
        snapshot["box_lines"] = tuple(features.box_lines)
        snapshot["gaze_lines"] = tuple(features.gaze_lines)

    if flags.show_appearance:
        snapshot["aligned_face"] = _copy(features.aligned_face)
        snapshot["descriptor_image"] = _copy(features.descriptor_image)

    if flags.show_geometry:
        pose = features.pose
        snapshot["position_mm"] = (int(pose.tx), int(pose.ty), int(pose.tz))
        snapshot["orientation_deg"] = pose.degrees()
        snapshot["gaze_deg"] = tuple(int(round(np.degrees(a))) for a in features.gaze_angle)

    if flags.show_aus:
        snapshot["au_intensities"] = tuple(
            (name, float(np.clip(value / AU_DISPLAY_SCALE, 0.0, 1.0)))
            for name, value in sorted(features.au_intensities.items())
        )
        snapshot["au_presence"] = tuple(sorted(features.au_presence.items()))

    return FrameSnapshot(**snapshot)


# ========================
# UI-owned state
# ========================

@dataclass
class Notification:
    title: str
    message: str
    expires_at: float


class PresentationState:
    """
    Everything on screen. Mutated only on the UI thread.

    Snapshots are applied in (session_id, frame_index) order; anything not
    newer than the last applied snapshot is rejected.
    """

    NOTIFICATION_SECONDS = 5.0

    def __init__(self, flags: VisualizationFlags = VisualizationFlags()):
        self.snapshot: Optional[FrameSnapshot] = None
        self.enabled_controls: FrozenSet[str] = IDLE_CONTROLS
        self.paused = False
        self.layout: Dict[str, float] = layout_for(flags)
        self.notifications: List[Notification] = []
        self._last_key: Optional[Tuple[int, int]] = None
        self.applied = 0
        self.rejected = 0

    @property
    def pause_label(self) -> str:
        return "Resume" if self.paused else "Pause"

    def is_enabled(self, control: str) -> bool:
        return control in self.enabled_controls

    def apply_snapshot(self, snapshot: FrameSnapshot) -> bool:
        if self._last_key is not None and snapshot.key <= self._last_key:
            self.rejected += 1
            return False
        self._last_key = snapshot.key
        self.snapshot = snapshot
        self.applied += 1
        return True

    def clear(self):
        """Back to the neutral, empty display."""
        self.snapshot = None
        self.paused = False

    def set_mode_ui(self, enabled: Iterable[str], clear: bool = False):
        self.enabled_controls = frozenset(enabled)
        if clear:
            self.clear()

    def set_paused(self, paused: bool):
        """Pause label flips and step controls follow the pause state."""
        self.paused = paused
        if paused:
            self.enabled_controls = self.enabled_controls | STEP_CONTROLS
        else:
            self.enabled_controls = self.enabled_controls - STEP_CONTROLS

    def apply_layout(self, flags: VisualizationFlags) -> Dict[str, float]:
        self.layout = layout_for(flags)
        return self.layout

    def add_notification(self, title: str, message: str, now: Optional[float] = None):
        now = time.monotonic() if now is None else now
        self.notifications.append(Notification(title, message, now + self.NOTIFICATION_SECONDS))

    def active_notifications(self, now: Optional[float] = None) -> List[Notification]:
        now = time.monotonic() if now is None else now
        self.notifications = [n for n in self.notifications if n.expires_at > now]
        return self.notifications
