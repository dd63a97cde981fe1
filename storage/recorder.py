"""
Per-session feature recorder.

Writes one CSV row per processed frame, optional aligned-face PNGs and a
descriptor stack, and a JSON metadata file when the session finishes.

Layout for output base `record/clip`:
    record/clip.csv
    record/clip_aligned/frame_det_000001.png
    record/clip_hog.npy
    record/clip_meta.json
"""

import csv
import json
import os
import threading
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import cv2

from core.errors import RecorderError
from core.results import FaceFeatures

logger = logging.getLogger(__name__)


LANDMARK_COUNT = 5
POSE_COLUMNS = ["pose_Tx", "pose_Ty", "pose_Tz", "pose_Rx", "pose_Ry", "pose_Rz"]
GAZE_COLUMNS = ["gaze_angle_x", "gaze_angle_y"]
BASE_COLUMNS = ["frame", "timestamp", "confidence", "success"]


@dataclass(frozen=True)
class OutputSchema:
    """Which feature groups are written."""
    landmarks_2d: bool = True
    pose: bool = True
    aus: bool = True
    gaze: bool = True
    aligned: bool = False
    hog: bool = False
    au_names: Tuple[str, ...] = ()

    def columns(self) -> List[str]:
        columns = list(BASE_COLUMNS)
        if self.landmarks_2d:
            columns += [f"x_{i}" for i in range(LANDMARK_COUNT)]
            columns += [f"y_{i}" for i in range(LANDMARK_COUNT)]
        if self.pose:
            columns += POSE_COLUMNS
        if self.gaze:
            columns += GAZE_COLUMNS
        if self.aus:
            columns += [f"{name}_r" for name in self.au_names]
            columns += [f"{name}_c" for name in self.au_names]
        return columns


class Recorder:
    """
    Append-only recorder for one session.

    Usage:
        recorder = Recorder()
        recorder.open("record/clip", schema, {"fps": 30.0})
        recorder.record_frame(1, 0.0, features, detected=True)
        recorder.finish()

    Frame indices must be strictly increasing; finish() may run once.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._base_path: Optional[str] = None
        self._schema: Optional[OutputSchema] = None
        self._metadata: Dict[str, Any] = {}
        self._file = None
        self._writer = None
        self._last_index = 0
        self._frames = 0
        self._detected_frames = 0
        self._descriptors: List[np.ndarray] = []
        self._finished = False

    @property
    def base_path(self) -> Optional[str]:
        return self._base_path

    @property
    def csv_path(self) -> Optional[str]:
        return f"{self._base_path}.csv" if self._base_path else None

    @property
    def frames_recorded(self) -> int:
        return self._frames

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._finished

    @property
    def finished(self) -> bool:
        return self._finished

    def open(self, path: str, schema: OutputSchema, metadata: Optional[Dict[str, Any]] = None):
        """
        Start recording to `path` (extension-less output base).

        Nothing is committed unless every output could be created.

        Raises:
            RecorderError: if already opened or the outputs cannot be created
        """
        with self._lock:
            if self._base_path is not None:
                raise RecorderError(f"Recorder already opened for {self._base_path}")

            f = None
            try:
                os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
                f = open(f"{path}.csv", "w", newline="")
                writer = csv.writer(f)
                writer.writerow(schema.columns())
                if schema.aligned:
                    os.makedirs(f"{path}_aligned", exist_ok=True)
            except OSError as e:
                if f is not None:
                    f.close()
                raise RecorderError(f"Cannot create recording {path}: {e}") from e

            self._file = f
            self._writer = writer
            self._base_path = path
            self._schema = schema
            self._metadata = dict(metadata or {})

        logger.info(f"Recording to {path}.csv")

    def record_frame(self, frame_index: int, timestamp: float, features: FaceFeatures, detected: bool):
        """
        Append one frame.

        Raises:
            RecorderError: if not open, finished, or frame_index does not increase
        """
        with self._lock:
            if self._writer is None:
                raise RecorderError("record_frame() before open()")
            if self._finished:
                raise RecorderError("record_frame() after finish()")
            if frame_index <= self._last_index:
                raise RecorderError(
                    f"Frame index {frame_index} not after previous frame {self._last_index}"
                )

            self._writer.writerow(self._row(frame_index, timestamp, features, detected))
            self._last_index = frame_index
            self._frames += 1
            if detected:
                self._detected_frames += 1

            schema = self._schema
            if schema.aligned and features.aligned_face is not None:
                name = os.path.join(f"{self._base_path}_aligned", f"frame_det_{frame_index:06d}.png")
                cv2.imwrite(name, features.aligned_face)
            if schema.hog and features.descriptor is not None:
                self._descriptors.append(np.asarray(features.descriptor, dtype=np.float32).reshape(-1))

    def finish(self) -> Dict[str, Any]:
        """
        Flush and close all outputs, write metadata.

        Returns:
            The metadata written

        Raises:
            RecorderError: on a second call, or if an output cannot be written
        """
        with self._lock:
            if self._finished:
                raise RecorderError("finish() called twice")
            self._finished = True

            if self._base_path is None:
                return {}

            metadata = dict(self._metadata)
            metadata.update({
                "frames": self._frames,
                "detected_frames": self._detected_frames,
                "columns": self._schema.columns(),
                "finished_at": datetime.now(timezone.utc).isoformat(),
            })
            try:
                self._file.close()
                self._file = None

                if self._schema.hog and self._descriptors:
                    np.save(f"{self._base_path}_hog.npy", np.stack(self._descriptors))
                    self._descriptors = []

                with open(f"{self._base_path}_meta.json", "w") as f:
                    json.dump(metadata, f, indent=2)
            except OSError as e:
                raise RecorderError(f"Cannot finish recording {self._base_path}: {e}") from e

        logger.info(f"Recording finished: {self._frames} frames -> {self._base_path}.csv")
        return metadata

    def _row(self, frame_index: int, timestamp: float, features: FaceFeatures, detected: bool) -> list:
        schema = self._schema
        row = [frame_index, f"{timestamp:.3f}", f"{features.confidence:.2f}", int(detected)]

        if schema.landmarks_2d:
            points = np.zeros((LANDMARK_COUNT, 2), dtype=np.float32)
            if detected and len(features.landmarks) >= LANDMARK_COUNT:
                points = np.asarray(features.landmarks[:LANDMARK_COUNT], dtype=np.float32)
            row += [f"{v:.1f}" for v in points[:, 0]]
            row += [f"{v:.1f}" for v in points[:, 1]]

        if schema.pose:
            pose = features.pose
            row += [f"{v:.1f}" for v in (pose.tx, pose.ty, pose.tz)]
            row += [f"{v:.3f}" for v in (pose.pitch, pose.yaw, pose.roll)]

        if schema.gaze:
            row += [f"{v:.3f}" for v in features.gaze_angle]

        if schema.aus:
            row += [f"{features.au_intensities.get(name, 0.0):.2f}" for name in schema.au_names]
            row += [f"{features.au_presence.get(name, 0.0):.1f}" for name in schema.au_names]

        return row
