"""
Appearance and geometry analysis of a detected face.

Given a frame and 5-point landmarks this produces:
- an aligned face crop and a gradient-orientation descriptor (plus a
  visualisation of it)
- head pose from solvePnP against a generic 3D face, using the session's
  camera intrinsics, and a projected 3D head box for the overlay
- action unit intensities from an optional ONNX regressor

Frames without a detection get neutral output (zero pose, zero AUs, blank
images) so the recorder still writes a row for them.
"""

import logging
import math
from typing import Dict, List, Optional, Tuple

import numpy as np
import cv2

from core.interfaces import AnalysisStage
from core.results import FaceFeatures, HeadPose, Line, empty_landmarks
from core.session import CameraIntrinsics
from core.singletons import get_onnx_manager
from vision.alignment import align_face

logger = logging.getLogger(__name__)


# Generic face (mm): x right, y down, z away from the camera, origin between the eyes
FACE_MODEL_3D = np.array([
    [-32.0, 0.0, 0.0],      # left eye
    [32.0, 0.0, 0.0],       # right eye
    [0.0, 38.0, -28.0],     # nose tip
    [-25.0, 70.0, -8.0],    # left mouth corner
    [25.0, 70.0, -8.0],     # right mouth corner
], dtype=np.float64)

INTEROCULAR_MM = 64.0

# Head box corners relative to the face model
_BOX_X = (-75.0, 75.0)
_BOX_Y = (-70.0, 105.0)
_BOX_Z = (-40.0, 90.0)
HEAD_BOX_3D = np.array(
    [[x, y, z] for z in _BOX_Z for y in _BOX_Y for x in _BOX_X],
    dtype=np.float64,
)
HEAD_BOX_EDGES = [
    (0, 1), (1, 3), (3, 2), (2, 0),     # near face
    (4, 5), (5, 7), (7, 6), (6, 4),     # far face
    (0, 4), (1, 5), (2, 6), (3, 7),     # connecting edges
]

DEFAULT_AU_NAMES = (
    "AU01", "AU02", "AU04", "AU05", "AU06", "AU07", "AU09", "AU10", "AU12",
    "AU14", "AU15", "AU17", "AU20", "AU23", "AU25", "AU26", "AU45",
)

AU_MAX_INTENSITY = 5.0
AU_PRESENCE_THRESHOLD = 1.0

DESCRIPTOR_CELL = 8
DESCRIPTOR_BINS = 9
DESCRIPTOR_VIS_CELL = 12


def rotation_to_euler(R: np.ndarray) -> Tuple[float, float, float]:
    """(pitch, yaw, roll) in radians for R = Rx(pitch) @ Ry(yaw) @ Rz(roll)."""
    yaw = math.asin(max(-1.0, min(1.0, float(R[0, 2]))))
    pitch = math.atan2(-float(R[1, 2]), float(R[2, 2]))
    roll = math.atan2(-float(R[0, 1]), float(R[0, 0]))
    return pitch, yaw, roll


def estimate_head_pose(
    landmarks: np.ndarray,
    intrinsics: CameraIntrinsics,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """
    Fit the generic face to 5 landmarks.

    Returns:
        (rvec, tvec) or None if solvePnP fails
    """
    if landmarks is None or len(landmarks) < 5:
        return None
    image_points = np.asarray(landmarks[:5], dtype=np.float64).reshape(5, 2)
    success, rvec, tvec = cv2.solvePnP(
        FACE_MODEL_3D,
        image_points,
        intrinsics.as_matrix(),
        np.zeros((4, 1), dtype=np.float64),
        flags=cv2.SOLVEPNP_EPNP,
    )
    if not success or tvec[2, 0] <= 0:
        return None
    return rvec, tvec


def project_head_box(rvec: np.ndarray, tvec: np.ndarray, intrinsics: CameraIntrinsics) -> List[Line]:
    """Image-space line segments of the 3D head box."""
    points, _ = cv2.projectPoints(
        HEAD_BOX_3D, rvec, tvec, intrinsics.as_matrix(), np.zeros((4, 1))
    )
    points = points.reshape(-1, 2)
    return [
        ((float(points[a, 0]), float(points[a, 1])), (float(points[b, 0]), float(points[b, 1])))
        for a, b in HEAD_BOX_EDGES
    ]


def compute_descriptor(face: np.ndarray, cell: int = DESCRIPTOR_CELL,
                       bins: int = DESCRIPTOR_BINS) -> np.ndarray:
    """
    Histogram of gradient orientations per cell.

    Returns:
        (rows, cols, bins) float32, each cell L2-normalised
    """
    gray = cv2.cvtColor(face, cv2.COLOR_BGR2GRAY) if face.ndim == 3 else face
    gray = gray.astype(np.float32)
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=1)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=1)
    magnitude, angle = cv2.cartToPolar(gx, gy, angleInDegrees=True)

    rows, cols = gray.shape[0] // cell, gray.shape[1] // cell
    magnitude = magnitude[:rows * cell, :cols * cell]
    orientation = (angle[:rows * cell, :cols * cell] % 180.0) / (180.0 / bins)
    bin_idx = np.minimum(orientation.astype(np.int32), bins - 1)

    cell_rows = np.repeat(np.arange(rows), cell)[:, None].repeat(cols * cell, axis=1)
    cell_cols = np.repeat(np.arange(cols), cell)[None, :].repeat(rows * cell, axis=0)

    hist = np.zeros((rows, cols, bins), dtype=np.float32)
    np.add.at(hist, (cell_rows, cell_cols, bin_idx), magnitude)

    norms = np.linalg.norm(hist, axis=2, keepdims=True)
    return hist / np.maximum(norms, 1e-6)


def render_descriptor(descriptor: np.ndarray, vis_cell: int = DESCRIPTOR_VIS_CELL) -> np.ndarray:
    """Star-glyph picture of a descriptor, one glyph per cell (grayscale uint8)."""
    rows, cols, bins = descriptor.shape
    image = np.zeros((rows * vis_cell, cols * vis_cell), dtype=np.uint8)
    half = vis_cell / 2.0
    for r in range(rows):
        for c in range(cols):
            cx, cy = c * vis_cell + half, r * vis_cell + half
            for b in range(bins):
                weight = float(descriptor[r, c, b])
                if weight <= 0.05:
                    continue
                # Edges run perpendicular to the gradient direction
                theta = math.radians((b + 0.5) * 180.0 / bins + 90.0)
                dx, dy = math.cos(theta) * half, math.sin(theta) * half
                cv2.line(
                    image,
                    (int(cx - dx), int(cy - dy)), (int(cx + dx), int(cy + dy)),
                    int(min(255, weight * 255)), 1,
                )
    return image


class FaceAnalyzer(AnalysisStage):
    """
    Appearance/geometry analyzer.

    Usage:
        analyzer = FaceAnalyzer(output_size=112, au_model_path="")
        features = analyzer.analyze(frame, landmarks, detected, intrinsics)
    """

    AU_SESSION_NAME = "action_units"

    def __init__(
        self,
        output_size: int = 112,
        au_model_path: str = "",
        au_names: Tuple[str, ...] = DEFAULT_AU_NAMES,
        pose_smoothing: float = 0.0,
    ):
        self.output_size = output_size
        self.pose_smoothing = pose_smoothing

        self._au_session = None
        self._au_input_name = None
        self._au_names: Tuple[str, ...] = ()
        if au_model_path:
            self._au_session = get_onnx_manager().get_session(self.AU_SESSION_NAME, au_model_path)
            if self._au_session is not None:
                self._au_input_name = self._au_session.get_inputs()[0].name
                self._au_names = tuple(au_names)
            else:
                logger.warning("Action unit model unavailable, AU output disabled")

        self._previous_pose: Optional[HeadPose] = None

    @property
    def au_names(self) -> Tuple[str, ...]:
        return self._au_names

    def reset(self):
        self._previous_pose = None

    def analyze(
        self,
        frame: np.ndarray,
        landmarks: np.ndarray,
        detected: bool,
        intrinsics: CameraIntrinsics,
        features: Optional[FaceFeatures] = None,
    ) -> FaceFeatures:
        features = features or FaceFeatures()

        if not detected or landmarks is None or len(landmarks) < 5:
            return self._neutral(features)

        features.landmarks = np.asarray(landmarks, dtype=np.float32)
        features.eye_landmarks = features.landmarks[:2].copy()

        # Geometry
        fit = estimate_head_pose(features.landmarks, intrinsics)
        if fit is not None:
            rvec, tvec = fit
            R, _ = cv2.Rodrigues(rvec)
            pitch, yaw, roll = rotation_to_euler(R)
            pose = HeadPose(
                tx=float(tvec[0, 0]), ty=float(tvec[1, 0]), tz=float(tvec[2, 0]),
                pitch=pitch, yaw=yaw, roll=roll,
            )
            features.pose = self._smooth(pose)
            features.box_lines = project_head_box(rvec, tvec, intrinsics)
            features.face_scale = intrinsics.fx / features.pose.tz if features.pose.tz > 0 else 0.0
        else:
            features.pose = HeadPose()
            eye_distance = float(np.linalg.norm(features.landmarks[1] - features.landmarks[0]))
            features.face_scale = eye_distance / INTEROCULAR_MM

        # Appearance
        aligned = align_face(frame, features.landmarks, self.output_size)
        features.aligned_face = aligned
        features.descriptor = compute_descriptor(aligned)
        features.descriptor_image = render_descriptor(features.descriptor)

        intensities = self._predict_aus(aligned)
        features.au_intensities = intensities
        features.au_presence = {
            name: 1.0 if value >= AU_PRESENCE_THRESHOLD else 0.0
            for name, value in intensities.items()
        }
        return features

    def _neutral(self, features: FaceFeatures) -> FaceFeatures:
        blank = np.zeros((self.output_size, self.output_size, 3), dtype=np.uint8)
        features.landmarks = empty_landmarks()
        features.eye_landmarks = empty_landmarks()
        features.pose = HeadPose()
        features.face_scale = 0.0
        features.box_lines = []
        features.aligned_face = blank
        features.descriptor = compute_descriptor(blank)
        features.descriptor_image = render_descriptor(features.descriptor)
        features.au_intensities = {name: 0.0 for name in self._au_names}
        features.au_presence = {name: 0.0 for name in self._au_names}
        return features

    def _smooth(self, pose: HeadPose) -> HeadPose:
        alpha = self.pose_smoothing
        previous = self._previous_pose
        if previous is not None and alpha > 0:
            pose = HeadPose(*[
                alpha * p + (1.0 - alpha) * c
                for p, c in zip(previous.as_list(), pose.as_list())
            ])
        self._previous_pose = pose
        return pose

    def _predict_aus(self, aligned: np.ndarray) -> Dict[str, float]:
        if self._au_session is None:
            return {}
        rgb = cv2.cvtColor(aligned, cv2.COLOR_BGR2RGB).astype(np.float32)
        tensor = ((rgb / 255.0 - 0.5) / 0.5).transpose(2, 0, 1)[None]
        output = np.asarray(self._au_session.run(None, {self._au_input_name: tensor})[0]).reshape(-1)
        values = np.clip(output[:len(self._au_names)], 0.0, AU_MAX_INTENSITY)
        return {name: float(v) for name, v in zip(self._au_names, values)}
