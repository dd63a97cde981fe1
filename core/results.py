"""Per-frame pipeline outputs."""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np


Point = Tuple[float, float]
Line = Tuple[Point, Point]


def empty_landmarks() -> np.ndarray:
    return np.zeros((0, 2), dtype=np.float32)


@dataclass
class HeadPose:
    """Head position (mm, camera space) and rotation (radians)."""
    tx: float = 0.0
    ty: float = 0.0
    tz: float = 0.0
    pitch: float = 0.0      # Rotation about x
    yaw: float = 0.0        # Rotation about y
    roll: float = 0.0       # Rotation about z

    def as_list(self) -> List[float]:
        return [self.tx, self.ty, self.tz, self.pitch, self.yaw, self.roll]

    def degrees(self) -> Tuple[int, int, int]:
        """(pitch, yaw, roll) rounded to whole degrees."""
        return tuple(int(round(math.degrees(a))) for a in (self.pitch, self.yaw, self.roll))


@dataclass
class FaceFeatures:
    """Everything the analysis stages derive for one face in one frame."""
    confidence: float = 0.0
    landmarks: np.ndarray = field(default_factory=empty_landmarks)
    eye_landmarks: np.ndarray = field(default_factory=empty_landmarks)
    pose: HeadPose = field(default_factory=HeadPose)
    face_scale: float = 0.0
    box_lines: List[Line] = field(default_factory=list)
    gaze_angle: Tuple[float, float] = (0.0, 0.0)   # (x, y) radians
    gaze_lines: List[Line] = field(default_factory=list)
    au_intensities: Dict[str, float] = field(default_factory=dict)
    au_presence: Dict[str, float] = field(default_factory=dict)
    aligned_face: Optional[np.ndarray] = None
    descriptor: Optional[np.ndarray] = None
    descriptor_image: Optional[np.ndarray] = None

    @classmethod
    def neutral(cls) -> "FaceFeatures":
        """Output for a frame where no face was found."""
        return cls()


@dataclass
class FrameResult:
    """
    One frame's pass through the pipeline.

    Lives for one loop iteration; the recorder and the presentation
    snapshot copy what they need out of it.
    """
    frame_index: int                # 1-based
    timestamp: float
    frame: np.ndarray
    detected: bool
    features: FaceFeatures
    progress: float = -1.0
    faces: List[np.ndarray] = field(default_factory=list)   # All faces (image mode)

    @property
    def landmarks(self) -> np.ndarray:
        return self.features.landmarks
