"""
Gaze estimation from head orientation and eye positions.

With only 5-point landmarks there are no pupils to track, so gaze follows
the head: the face normal of the fitted pose gives the direction and the
eye landmarks anchor the two gaze rays drawn on the overlay.
"""

import logging
import math
from typing import List, Optional, Tuple

import numpy as np

from core.interfaces import AnalysisStage
from core.results import FaceFeatures, HeadPose, Line
from core.session import CameraIntrinsics

logger = logging.getLogger(__name__)


# Eye centres in the generic face model (mm), matching vision.analysis.FACE_MODEL_3D
EYE_MODEL_3D = np.array([
    [-32.0, 0.0, 0.0],
    [32.0, 0.0, 0.0],
], dtype=np.float64)

# Facing direction of the model (towards the camera)
MODEL_FORWARD = np.array([0.0, 0.0, -1.0])

GAZE_RAY_LENGTH_MM = 50.0


def euler_to_rotation(pitch: float, yaw: float, roll: float) -> np.ndarray:
    """R = Rx(pitch) @ Ry(yaw) @ Rz(roll)."""
    cp, sp = math.cos(pitch), math.sin(pitch)
    cy, sy = math.cos(yaw), math.sin(yaw)
    cr, sr = math.cos(roll), math.sin(roll)
    Rx = np.array([[1, 0, 0], [0, cp, -sp], [0, sp, cp]])
    Ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    Rz = np.array([[cr, -sr, 0], [sr, cr, 0], [0, 0, 1]])
    return Rx @ Ry @ Rz


def gaze_direction(pose: HeadPose) -> np.ndarray:
    """Unit gaze vector in camera coordinates."""
    R = euler_to_rotation(pose.pitch, pose.yaw, pose.roll)
    direction = R @ MODEL_FORWARD
    return direction / np.linalg.norm(direction)


def gaze_angles(direction: np.ndarray) -> Tuple[float, float]:
    """(x, y) angles in radians; looking straight at the camera is (0, 0)."""
    gx, gy, gz = (float(v) for v in direction)
    return math.atan2(gx, -gz), math.atan2(gy, -gz)


def project_point(point: np.ndarray, intrinsics: CameraIntrinsics) -> Optional[Tuple[float, float]]:
    if point[2] <= 0:
        return None
    return (
        intrinsics.fx * point[0] / point[2] + intrinsics.cx,
        intrinsics.fy * point[1] / point[2] + intrinsics.cy,
    )


def gaze_lines(
    pose: HeadPose,
    direction: np.ndarray,
    intrinsics: CameraIntrinsics,
    ray_length: float = GAZE_RAY_LENGTH_MM,
) -> List[Line]:
    """Image-space rays from each eye along the gaze direction."""
    R = euler_to_rotation(pose.pitch, pose.yaw, pose.roll)
    t = np.array([pose.tx, pose.ty, pose.tz])

    lines = []
    for eye in EYE_MODEL_3D:
        start = R @ eye + t
        end = start + direction * ray_length
        p0 = project_point(start, intrinsics)
        p1 = project_point(end, intrinsics)
        if p0 is not None and p1 is not None:
            lines.append((p0, p1))
    return lines


class GazeAnalyzer(AnalysisStage):
    """
    Head-driven gaze estimator.

    Runs after FaceAnalyzer and reads the pose it filled in.
    """

    def __init__(self, ray_length: float = GAZE_RAY_LENGTH_MM):
        self.ray_length = ray_length

    def reset(self):
        # Stateless
        pass

    def analyze(
        self,
        frame: np.ndarray,
        landmarks: np.ndarray,
        detected: bool,
        intrinsics: CameraIntrinsics,
        features: Optional[FaceFeatures] = None,
    ) -> FaceFeatures:
        features = features or FaceFeatures()
        features.gaze_angle = (0.0, 0.0)
        features.gaze_lines = []

        pose = features.pose
        if not detected or pose.tz <= 0:
            return features

        if len(features.eye_landmarks) == 0 and landmarks is not None and len(landmarks) >= 2:
            features.eye_landmarks = np.asarray(landmarks[:2], dtype=np.float32)

        direction = gaze_direction(pose)
        features.gaze_angle = gaze_angles(direction)
        features.gaze_lines = gaze_lines(pose, direction, intrinsics, self.ray_length)
        return features
