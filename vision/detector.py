"""
Facial landmark detection with an SCRFD ONNX model.

The model returns face boxes with 5 keypoints (2 eyes, nose tip, 2 mouth
corners). In video mode the detector follows one face from frame to frame;
in image mode it reports every face it finds.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import cv2

from core.interfaces import DetectionStage
from core.results import empty_landmarks
from core.singletons import get_onnx_manager

logger = logging.getLogger(__name__)


@dataclass
class Detection:
    """Face detection result."""
    bbox: np.ndarray        # [x1, y1, x2, y2]
    score: float
    landmarks: np.ndarray   # 5x2


@dataclass(frozen=True)
class DetectorParams:
    """Detection presets for streams and still images."""
    conf_threshold: float = 0.4
    nms_threshold: float = 0.4
    multi_face: bool = False

    @classmethod
    def for_video(cls, conf_threshold: float = 0.4) -> "DetectorParams":
        return cls(conf_threshold=conf_threshold, multi_face=False)

    @classmethod
    def for_images(cls, conf_threshold: float = 0.5) -> "DetectorParams":
        return cls(conf_threshold=conf_threshold, multi_face=True)


def bbox_center(bbox: np.ndarray) -> Tuple[float, float]:
    return (float(bbox[0] + bbox[2]) / 2.0, float(bbox[1] + bbox[3]) / 2.0)


class LandmarkDetector(DetectionStage):
    """
    SCRFD face + 5-point landmark detector.

    Usage:
        detector = LandmarkDetector("models/scrfd_10g_bnkps.onnx")
        success, landmarks = detector.detect(gray, DetectorParams.for_video())
    """

    SESSION_NAME = "landmark_detector"

    def __init__(
        self,
        model_path: str = "models/scrfd_10g_bnkps.onnx",
        input_size: Tuple[int, int] = (640, 640),
    ):
        self.model_path = model_path
        self.input_size = input_size

        # SCRFD feature map strides, 2 anchors per location
        self._feat_stride_fpn = [8, 16, 32]
        self._num_anchors = 2

        self._session = get_onnx_manager().get_session(self.SESSION_NAME, model_path)
        self._input_name = None
        self._output_names = None
        if self._session is not None:
            self._input_name = self._session.get_inputs()[0].name
            self._output_names = [o.name for o in self._session.get_outputs()]
            logger.info(f"Landmark detector ready ({model_path})")

        # Tracking state (video mode)
        self._tracked_center: Optional[Tuple[float, float]] = None
        self._last_score = 0.0

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    @property
    def last_score(self) -> float:
        return self._last_score

    def reset(self):
        """Forget the tracked face."""
        self._tracked_center = None
        self._last_score = 0.0

    # ========================
    # Public API
    # ========================

    def detect(self, gray: np.ndarray, params: DetectorParams) -> Tuple[bool, np.ndarray]:
        """
        Track one face.

        Picks the face nearest the previously tracked one, or the highest
        scoring face when nothing is tracked.
        """
        detections = self._run(gray, params)
        if not detections:
            self._tracked_center = None
            self._last_score = 0.0
            return False, empty_landmarks()

        if self._tracked_center is not None:
            tx, ty = self._tracked_center
            best = min(
                detections,
                key=lambda d: (bbox_center(d.bbox)[0] - tx) ** 2 + (bbox_center(d.bbox)[1] - ty) ** 2,
            )
        else:
            best = max(detections, key=lambda d: d.score)

        self._tracked_center = bbox_center(best.bbox)
        self._last_score = best.score
        return True, best.landmarks

    def detect_faces(self, gray: np.ndarray, params: DetectorParams) -> List[Tuple[np.ndarray, float]]:
        """Every face in the frame as (landmarks, score), best first."""
        detections = sorted(self._run(gray, params), key=lambda d: d.score, reverse=True)
        if not params.multi_face:
            detections = detections[:1]
        self._last_score = detections[0].score if detections else 0.0
        return [(d.landmarks, d.score) for d in detections]

    # ========================
    # Inference
    # ========================

    def _run(self, gray: np.ndarray, params: DetectorParams) -> List[Detection]:
        if self._session is None:
            logger.warning("Detector model not loaded, returning no faces")
            return []

        image = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR) if gray.ndim == 2 else gray
        blob, scale = self._preprocess(image)
        outputs = self._session.run(self._output_names, {self._input_name: blob})
        return self._postprocess(outputs, scale, image.shape[:2], params)

    def _preprocess(self, image: np.ndarray) -> Tuple[np.ndarray, float]:
        """Letterbox into the model input (top-left aligned) and build the blob."""
        h, w = image.shape[:2]
        target_h, target_w = self.input_size

        scale = min(target_w / w, target_h / h)
        new_w, new_h = int(w * scale), int(h * scale)
        resized = cv2.resize(image, (new_w, new_h))
        padded = cv2.copyMakeBorder(
            resized, 0, target_h - new_h, 0, target_w - new_w,
            cv2.BORDER_CONSTANT, value=(0, 0, 0)
        )

        blob = cv2.dnn.blobFromImage(
            padded, 1.0 / 128.0, (target_w, target_h),
            (127.5, 127.5, 127.5), swapRB=True
        )
        return blob, scale

    def _anchor_centers(self, stride: int) -> np.ndarray:
        input_h, input_w = self.input_size
        height, width = input_h // stride, input_w // stride
        centers = np.stack(np.mgrid[:height, :width][::-1], axis=-1).astype(np.float32)
        centers = (centers * stride).reshape(-1, 2)
        if self._num_anchors > 1:
            centers = np.stack([centers] * self._num_anchors, axis=1).reshape(-1, 2)
        return centers

    def _postprocess(
        self,
        outputs: list,
        scale: float,
        orig_size: Tuple[int, int],
        params: DetectorParams,
    ) -> List[Detection]:
        n_levels = len(self._feat_stride_fpn)
        if len(outputs) < n_levels * 3:
            raise ValueError("Detector model has no keypoint outputs; a *_kps SCRFD model is required")

        scores_all, boxes_all, kps_all = [], [], []
        for idx, stride in enumerate(self._feat_stride_fpn):
            scores = outputs[idx].reshape(-1)
            keep = np.where(scores >= params.conf_threshold)[0]
            if len(keep) == 0:
                continue

            centers = self._anchor_centers(stride)
            dist = outputs[idx + n_levels].reshape(-1, 4) * stride
            kps = outputs[idx + n_levels * 2].reshape(-1, 10) * stride

            boxes = np.stack([
                centers[:, 0] - dist[:, 0],
                centers[:, 1] - dist[:, 1],
                centers[:, 0] + dist[:, 2],
                centers[:, 1] + dist[:, 3],
            ], axis=-1)
            points = np.empty_like(kps)
            points[:, 0::2] = centers[:, 0:1] + kps[:, 0::2]
            points[:, 1::2] = centers[:, 1:2] + kps[:, 1::2]

            scores_all.append(scores[keep])
            boxes_all.append(boxes[keep])
            kps_all.append(points[keep])

        if not scores_all:
            return []

        scores = np.concatenate(scores_all)
        boxes = np.concatenate(boxes_all) / scale
        kps = np.concatenate(kps_all) / scale

        h, w = orig_size
        boxes[:, [0, 2]] = np.clip(boxes[:, [0, 2]], 0, w)
        boxes[:, [1, 3]] = np.clip(boxes[:, [1, 3]], 0, h)

        return [
            Detection(
                bbox=boxes[i],
                score=float(scores[i]),
                landmarks=kps[i].reshape(5, 2).astype(np.float32),
            )
            for i in self._nms(boxes, scores, params.nms_threshold)
        ]

    @staticmethod
    def _nms(boxes: np.ndarray, scores: np.ndarray, threshold: float) -> List[int]:
        """Non-Maximum Suppression."""
        x1, y1, x2, y2 = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
        areas = (x2 - x1) * (y2 - y1)
        order = scores.argsort()[::-1]

        keep = []
        while order.size > 0:
            i = order[0]
            keep.append(int(i))
            if order.size == 1:
                break

            xx1 = np.maximum(x1[i], x1[order[1:]])
            yy1 = np.maximum(y1[i], y1[order[1:]])
            xx2 = np.minimum(x2[i], x2[order[1:]])
            yy2 = np.minimum(y2[i], y2[order[1:]])

            inter = np.maximum(0, xx2 - xx1) * np.maximum(0, yy2 - yy1)
            iou = inter / (areas[i] + areas[order[1:]] - inter + 1e-9)
            order = order[np.where(iou <= threshold)[0] + 1]

        return keep
