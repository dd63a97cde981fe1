"""Read recorded feature CSVs back for replay."""

import csv
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from core.errors import SourceOpenError
from core.results import FaceFeatures, HeadPose
from storage.recorder import LANDMARK_COUNT

logger = logging.getLogger(__name__)


def _float(row: dict, key: str, default: float = 0.0) -> float:
    value = row.get(key)
    if value is None or value == "":
        return default
    return float(value)


class FeatureReader:
    """
    Recorded features indexed by frame number.

    Usage:
        reader = FeatureReader("record/clip.csv")
        features, detected = reader.get(12)
    """

    def __init__(self, csv_path: str):
        self.csv_path = csv_path
        if not Path(csv_path).is_file():
            raise SourceOpenError(csv_path, "feature file does not exist")

        self._frames: Dict[int, Tuple[FaceFeatures, bool]] = {}
        self._au_names: Tuple[str, ...] = ()
        self._load()

    @property
    def au_names(self) -> Tuple[str, ...]:
        return self._au_names

    def __len__(self) -> int:
        return len(self._frames)

    def frame_indices(self) -> List[int]:
        return sorted(self._frames)

    def get(self, frame_index: int) -> Optional[Tuple[FaceFeatures, bool]]:
        """(features, detected) for a frame, or None if it was never recorded."""
        return self._frames.get(frame_index)

    def _load(self):
        with open(self.csv_path, newline="") as f:
            reader = csv.DictReader(f)
            columns = reader.fieldnames or []
            if "frame" not in columns:
                raise SourceOpenError(self.csv_path, "missing 'frame' column")

            self._au_names = tuple(c[:-2] for c in columns if c.endswith("_r"))
            has_landmarks = "x_0" in columns

            for row in reader:
                try:
                    index = int(row["frame"])
                    detected = row.get("success", "0") == "1"
                    self._frames[index] = (self._parse_row(row, detected, has_landmarks), detected)
                except (TypeError, ValueError) as e:
                    raise SourceOpenError(
                        self.csv_path, f"malformed row at line {reader.line_num}: {e}"
                    ) from e

        logger.info(f"Loaded {len(self._frames)} recorded frames from {self.csv_path}")

    def _parse_row(self, row: dict, detected: bool, has_landmarks: bool) -> FaceFeatures:
        features = FaceFeatures(confidence=_float(row, "confidence"))
        if detected and has_landmarks:
            features.landmarks = np.array(
                [[_float(row, f"x_{i}"), _float(row, f"y_{i}")] for i in range(LANDMARK_COUNT)],
                dtype=np.float32,
            )
            features.eye_landmarks = features.landmarks[:2].copy()

        features.pose = HeadPose(
            tx=_float(row, "pose_Tx"), ty=_float(row, "pose_Ty"), tz=_float(row, "pose_Tz"),
            pitch=_float(row, "pose_Rx"), yaw=_float(row, "pose_Ry"), roll=_float(row, "pose_Rz"),
        )
        features.gaze_angle = (_float(row, "gaze_angle_x"), _float(row, "gaze_angle_y"))
        features.au_intensities = {name: _float(row, f"{name}_r") for name in self._au_names}
        features.au_presence = {name: _float(row, f"{name}_c") for name in self._au_names}
        return features
