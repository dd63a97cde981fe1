"""
Frame processors: how one frame becomes a FrameResult.

LiveProcessor runs detection -> appearance/geometry -> gaze.
ReplayProcessor looks up features recorded by an earlier run and only
rebuilds the overlay geometry for them.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import cv2

from core.errors import StageError
from core.interfaces import AnalysisStage, DetectionStage, FrameProcessor
from core.results import FaceFeatures, FrameResult
from core.session import Session
from storage.reader import FeatureReader
from vision.analysis import project_head_box
from vision.detector import DetectorParams
from vision.gaze import euler_to_rotation, gaze_direction, gaze_lines

logger = logging.getLogger(__name__)


class LiveProcessor(FrameProcessor):
    """
    Detection followed by the two analysis stages.

    Usage:
        processor = LiveProcessor(detector, FaceAnalyzer(), GazeAnalyzer())
        result = processor.process(frame, gray, session, 1, 0.0)
    """

    def __init__(
        self,
        detector: DetectionStage,
        analyzer: AnalysisStage,
        gaze: AnalysisStage,
        video_params: DetectorParams = DetectorParams.for_video(),
        image_params: DetectorParams = DetectorParams.for_images(),
    ):
        self.detector = detector
        self.analyzer = analyzer
        self.gaze = gaze
        self.video_params = video_params
        self.image_params = image_params

    @property
    def au_names(self) -> Tuple[str, ...]:
        return self.analyzer.au_names

    def reset(self):
        self.detector.reset()
        self.analyzer.reset()
        self.gaze.reset()

    def process(
        self,
        frame: np.ndarray,
        gray: np.ndarray,
        session: Session,
        frame_index: int,
        timestamp: float,
    ) -> FrameResult:
        try:
            detected, landmarks = self.detector.detect(gray, self.video_params)
        except Exception as e:
            raise StageError("detection", e) from e

        features = self._analyze(frame, landmarks, detected, session)
        features.confidence = self.detector.last_score if detected else 0.0

        return FrameResult(
            frame_index=frame_index,
            timestamp=timestamp,
            frame=frame,
            detected=detected,
            features=features,
        )

    def process_still(self, frame: np.ndarray, gray: np.ndarray, session: Session) -> FrameResult:
        """Every face in the image; the first one carries the readouts."""
        try:
            faces = self.detector.detect_faces(gray, self.image_params)
        except Exception as e:
            raise StageError("detection", e) from e

        primary: Optional[FaceFeatures] = None
        box_lines, eye_lines = [], []
        for landmarks, _score in faces:
            self.analyzer.reset()
            features = self._analyze(frame, landmarks, True, session)
            box_lines.extend(features.box_lines)
            eye_lines.extend(features.gaze_lines)
            if primary is None:
                primary = features

        if primary is None:
            primary = self._analyze(frame, np.zeros((0, 2), dtype=np.float32), False, session)
        else:
            primary.confidence = 1.0
            primary.box_lines = box_lines
            primary.gaze_lines = eye_lines

        return FrameResult(
            frame_index=1,
            timestamp=0.0,
            frame=frame,
            detected=bool(faces),
            features=primary,
            faces=[np.asarray(landmarks, dtype=np.float32) for landmarks, _ in faces],
        )

    def _analyze(self, frame: np.ndarray, landmarks: np.ndarray, detected: bool,
                 session: Session) -> FaceFeatures:
        try:
            features = self.analyzer.analyze(frame, landmarks, detected, session.intrinsics)
            return self.gaze.analyze(frame, landmarks, detected, session.intrinsics, features)
        except Exception as e:
            raise StageError("analysis", e) from e


class ReplayProcessor(FrameProcessor):
    """Features read back from a recording instead of computed."""

    def __init__(self, reader: FeatureReader):
        self.reader = reader
        self.missing_frames = 0

    @classmethod
    def from_csv(cls, csv_path: str) -> "ReplayProcessor":
        return cls(FeatureReader(csv_path))

    @property
    def au_names(self) -> Tuple[str, ...]:
        return self.reader.au_names

    def reset(self):
        self.missing_frames = 0

    def process(
        self,
        frame: np.ndarray,
        gray: np.ndarray,
        session: Session,
        frame_index: int,
        timestamp: float,
    ) -> FrameResult:
        entry = self.reader.get(frame_index)
        if entry is None:
            self.missing_frames += 1
            features, detected = FaceFeatures.neutral(), False
        else:
            features, detected = entry
            if detected and features.pose.tz > 0:
                self._rebuild_overlay(features, session)

        return FrameResult(
            frame_index=frame_index,
            timestamp=timestamp,
            frame=frame,
            detected=detected,
            features=features,
        )

    def _rebuild_overlay(self, features: FaceFeatures, session: Session):
        pose = features.pose
        R = euler_to_rotation(pose.pitch, pose.yaw, pose.roll)
        rvec, _ = cv2.Rodrigues(R)
        tvec = np.array([[pose.tx], [pose.ty], [pose.tz]], dtype=np.float64)
        features.box_lines = project_head_box(rvec, tvec, session.intrinsics)
        features.gaze_lines = gaze_lines(pose, gaze_direction(pose), session.intrinsics)
