"""
Tests for the vision stages: alignment, head pose, gaze, appearance
descriptors, detector post-processing, frame sources and processors.
"""

import sys
from pathlib import Path

import numpy as np
import cv2
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import SourceOpenError, StageError
from core.interfaces import DetectionStage
from core.results import FaceFeatures, HeadPose
from core.session import CameraIntrinsics, InputMode, Session
from core.singletons import cleanup_all, get_onnx_manager
from storage.recorder import OutputSchema, Recorder
from vision.alignment import TEMPLATE_112, align_face, estimate_similarity_transform
from vision.analysis import (
    FACE_MODEL_3D,
    FaceAnalyzer,
    compute_descriptor,
    estimate_head_pose,
    render_descriptor,
    rotation_to_euler,
)
from vision.detector import DetectorParams, LandmarkDetector
from vision.gaze import GazeAnalyzer, euler_to_rotation, gaze_angles, gaze_direction
from vision.processors import LiveProcessor, ReplayProcessor
from vision.source import FileSourceFactory, ImageListSource, expand_sequence_paths

VGA = CameraIntrinsics.estimate(640, 480)


def project_face(pitch=0.0, yaw=0.0, roll=0.0, t=(0.0, 0.0, 500.0), intrinsics=VGA):
    """Image landmarks of the generic face at a known pose."""
    rvec, _ = cv2.Rodrigues(euler_to_rotation(pitch, yaw, roll))
    tvec = np.array(t, dtype=np.float64).reshape(3, 1)
    points, _ = cv2.projectPoints(FACE_MODEL_3D, rvec, tvec, intrinsics.as_matrix(), np.zeros((4, 1)))
    return points.reshape(-1, 2).astype(np.float32)


def make_session(intrinsics=VGA):
    session = Session(session_id=1, mode=InputMode.VIDEO, inputs=["clip.mp4"], intrinsics=intrinsics)
    session.prepare(640, 480, 30.0)
    return session


class TestAlignment:
    """Similarity alignment onto the 5-point template."""

    def test_identity_for_template_points(self):
        M = estimate_similarity_transform(TEMPLATE_112, TEMPLATE_112)
        np.testing.assert_allclose(M, [[1, 0, 0], [0, 1, 0]], atol=1e-4)

    def test_recovers_scale_and_translation(self):
        src = TEMPLATE_112 * 2.0 + np.array([30.0, -10.0], dtype=np.float32)
        M = estimate_similarity_transform(src, TEMPLATE_112)
        mapped = src @ M[:, :2].T + M[:, 2]
        np.testing.assert_allclose(mapped, TEMPLATE_112, atol=1e-3)

    def test_aligned_crop_size(self):
        image = np.zeros((480, 640, 3), dtype=np.uint8)
        aligned = align_face(image, project_face(), size=96)
        assert aligned.shape == (96, 96, 3)

    def test_too_few_landmarks(self):
        image = np.zeros((480, 640, 3), dtype=np.uint8)
        assert align_face(image, np.zeros((2, 2), dtype=np.float32)) is None


class TestHeadPose:
    """Pose fitting against the generic face."""

    def test_euler_round_trip(self):
        angles = (0.2, -0.35, 0.1)
        recovered = rotation_to_euler(euler_to_rotation(*angles))
        np.testing.assert_allclose(recovered, angles, atol=1e-9)

    def test_frontal_pose_recovered(self):
        rvec, tvec = estimate_head_pose(project_face(), VGA)
        assert tvec[2, 0] == pytest.approx(500.0, abs=2.0)
        R, _ = cv2.Rodrigues(rvec)
        np.testing.assert_allclose(rotation_to_euler(R), (0, 0, 0), atol=0.02)

    def test_rotated_pose_recovered(self):
        landmarks = project_face(pitch=-0.1, yaw=0.25, roll=0.05, t=(20.0, -15.0, 650.0))
        rvec, tvec = estimate_head_pose(landmarks, VGA)
        R, _ = cv2.Rodrigues(rvec)
        np.testing.assert_allclose(rotation_to_euler(R), (-0.1, 0.25, 0.05), atol=0.02)
        np.testing.assert_allclose(tvec.ravel(), (20.0, -15.0, 650.0), atol=3.0)

    def test_needs_five_points(self):
        assert estimate_head_pose(np.zeros((3, 2)), VGA) is None


class TestGaze:
    """Head-driven gaze direction."""

    def test_frontal_gaze_is_zero(self):
        angles = gaze_angles(gaze_direction(HeadPose(tz=500.0)))
        assert angles == pytest.approx((0.0, 0.0), abs=1e-9)

    def test_yaw_turns_horizontal_gaze(self):
        gx, gy = gaze_angles(gaze_direction(HeadPose(tz=500.0, yaw=0.3)))
        assert abs(gx) == pytest.approx(0.3, abs=1e-6)
        assert gy == pytest.approx(0.0, abs=1e-6)

    def test_analyzer_draws_one_ray_per_eye(self):
        features = FaceFeatures(pose=HeadPose(tz=500.0))
        features = GazeAnalyzer().analyze(None, project_face(), True, VGA, features)
        assert len(features.gaze_lines) == 2
        assert len(features.eye_landmarks) == 2

    def test_no_detection_gives_neutral_gaze(self):
        features = FaceFeatures(pose=HeadPose(tz=500.0, yaw=0.4), gaze_angle=(0.3, 0.3))
        features = GazeAnalyzer().analyze(None, np.zeros((0, 2)), False, VGA, features)
        assert features.gaze_angle == (0.0, 0.0)
        assert features.gaze_lines == []


class TestAppearance:
    """Descriptor and the full face analyzer."""

    def test_descriptor_shape_and_normalisation(self):
        face = (np.random.RandomState(0).rand(112, 112, 3) * 255).astype(np.uint8)
        descriptor = compute_descriptor(face)
        assert descriptor.shape == (14, 14, 9)
        norms = np.linalg.norm(descriptor, axis=2)
        assert np.all(norms <= 1.0 + 1e-5)

    def test_descriptor_render(self):
        image = render_descriptor(np.ones((14, 14, 9), dtype=np.float32) / 3.0)
        assert image.dtype == np.uint8
        assert image.shape == (168, 168)
        assert image.max() > 0

    def test_neutral_output_without_detection(self):
        analyzer = FaceAnalyzer(output_size=112)
        features = analyzer.analyze(np.zeros((480, 640, 3), np.uint8), np.zeros((0, 2)), False, VGA)
        assert features.pose.as_list() == [0.0] * 6
        assert len(features.landmarks) == 0
        assert features.aligned_face.shape == (112, 112, 3)
        assert features.descriptor.shape == (14, 14, 9)
        assert features.au_intensities == {}
        assert analyzer.au_names == ()

    def test_detected_face_outputs(self):
        analyzer = FaceAnalyzer(output_size=112)
        frame = np.zeros((480, 640, 3), np.uint8)
        features = analyzer.analyze(frame, project_face(), True, VGA)
        assert features.pose.tz == pytest.approx(500.0, abs=2.0)
        assert features.face_scale == pytest.approx(1.0, abs=0.01)
        assert len(features.box_lines) == 12
        assert len(features.eye_landmarks) == 2
        assert features.descriptor_image.dtype == np.uint8

    def test_missing_au_model_disables_aus(self, tmp_path):
        analyzer = FaceAnalyzer(au_model_path=str(tmp_path / "missing.onnx"))
        assert analyzer.au_names == ()

    def test_pose_smoothing_blends_with_previous(self):
        analyzer = FaceAnalyzer(pose_smoothing=0.5)
        frame = np.zeros((480, 640, 3), np.uint8)
        analyzer.analyze(frame, project_face(t=(0.0, 0.0, 500.0)), True, VGA)
        features = analyzer.analyze(frame, project_face(t=(0.0, 0.0, 700.0)), True, VGA)
        assert features.pose.tz == pytest.approx(600.0, abs=3.0)

        analyzer.reset()
        features = analyzer.analyze(frame, project_face(t=(0.0, 0.0, 700.0)), True, VGA)
        assert features.pose.tz == pytest.approx(700.0, abs=3.0)


class TestDetector:
    """Detector presets and post-processing without a model."""

    def test_presets(self):
        assert DetectorParams.for_video().multi_face is False
        assert DetectorParams.for_images().multi_face is True
        assert DetectorParams.for_images(0.7).conf_threshold == 0.7

    def test_nms_drops_overlapping_boxes(self):
        boxes = np.array([[0, 0, 10, 10], [1, 1, 11, 11], [50, 50, 60, 60]], dtype=np.float32)
        scores = np.array([0.9, 0.8, 0.7], dtype=np.float32)
        assert LandmarkDetector._nms(boxes, scores, 0.4) == [0, 2]

    def test_missing_model_finds_nothing(self, tmp_path):
        detector = LandmarkDetector(str(tmp_path / "missing.onnx"))
        assert not detector.is_loaded
        detected, landmarks = detector.detect(np.zeros((48, 64), np.uint8), DetectorParams.for_video())
        assert not detected
        assert landmarks.shape == (0, 2)
        assert detector.detect_faces(np.zeros((48, 64), np.uint8), DetectorParams.for_images()) == []


class TestModelSessions:
    """Shared ONNX session manager."""

    def test_one_manager_per_process(self):
        assert get_onnx_manager() is get_onnx_manager()

    def test_missing_model_gives_no_session(self, tmp_path):
        manager = get_onnx_manager()
        assert manager.get_session("missing", str(tmp_path / "missing.onnx")) is None
        cleanup_all()
        assert manager.get_session("missing", str(tmp_path / "missing.onnx")) is None


class TestSources:
    """File-backed frame sources."""

    def write_images(self, directory, count):
        directory.mkdir(parents=True, exist_ok=True)
        paths = []
        for i in range(count):
            path = directory / f"{i:03d}.png"
            cv2.imwrite(str(path), np.full((48, 64, 3), i * 40, dtype=np.uint8))
            paths.append(str(path))
        return paths

    def test_missing_video(self, tmp_path):
        with pytest.raises(SourceOpenError):
            FileSourceFactory().open_video(str(tmp_path / "missing.mp4"))

    def test_unreadable_video(self, tmp_path):
        path = tmp_path / "notes.mp4"
        path.write_text("not a video")
        with pytest.raises(SourceOpenError):
            FileSourceFactory().open_video(str(path))

    def test_unreadable_image(self, tmp_path):
        path = tmp_path / "broken.png"
        path.write_bytes(b"\x00\x01")
        with pytest.raises(SourceOpenError):
            FileSourceFactory().open_images([str(path)])

    def test_image_list_reads_in_order(self, tmp_path):
        paths = self.write_images(tmp_path / "seq", 3)
        source = ImageListSource(paths)
        assert source.dimensions() == (64, 48)
        assert source.frame_rate() == 0.0

        values = []
        while True:
            frame, gray, is_end = source.next_frame()
            if is_end:
                break
            values.append(int(gray[0, 0]))
        assert values == [0, 40, 80]
        assert source.progress() == 1.0
        source.dispose()

    def test_disposed_source_ends(self, tmp_path):
        source = ImageListSource(self.write_images(tmp_path / "seq", 2))
        source.dispose()
        assert source.next_frame()[2] is True

    def test_sequence_directory_expanded_sorted(self, tmp_path):
        paths = self.write_images(tmp_path / "seq", 3)
        (tmp_path / "seq" / "notes.txt").write_text("x")
        assert expand_sequence_paths([str(tmp_path / "seq")]) == paths

    def test_empty_sequence_directory(self, tmp_path):
        (tmp_path / "empty").mkdir()
        with pytest.raises(SourceOpenError):
            FileSourceFactory().open_sequence([str(tmp_path / "empty")])


class StubDetector(DetectionStage):
    def __init__(self, faces=(), fail=False):
        self.faces = list(faces)
        self.fail = fail
        self.resets = 0

    def detect(self, gray, params):
        if self.fail:
            raise RuntimeError("inference failed")
        if not self.faces:
            return False, np.zeros((0, 2), dtype=np.float32)
        return True, self.faces[0]

    def detect_faces(self, gray, params):
        return [(face, 0.9) for face in self.faces]

    def reset(self):
        self.resets += 1

    @property
    def last_score(self):
        return 0.87 if self.faces else 0.0


class TestProcessors:
    """Live and replay frame processors."""

    frame = np.zeros((480, 640, 3), np.uint8)

    def test_live_processing(self):
        processor = LiveProcessor(StubDetector([project_face()]), FaceAnalyzer(), GazeAnalyzer())
        result = processor.process(self.frame, self.frame[:, :, 0], make_session(), 4, 0.1)
        assert result.detected
        assert result.frame_index == 4
        assert result.features.confidence == pytest.approx(0.87)
        assert len(result.features.gaze_lines) == 2

    def test_no_face_gives_zero_confidence(self):
        processor = LiveProcessor(StubDetector(), FaceAnalyzer(), GazeAnalyzer())
        result = processor.process(self.frame, self.frame[:, :, 0], make_session(), 1, 0.0)
        assert not result.detected
        assert result.features.confidence == 0.0
        assert result.features.gaze_angle == (0.0, 0.0)

    def test_detector_fault_is_stage_error(self):
        processor = LiveProcessor(StubDetector(fail=True), FaceAnalyzer(), GazeAnalyzer())
        with pytest.raises(StageError) as info:
            processor.process(self.frame, self.frame[:, :, 0], make_session(), 1, 0.0)
        assert info.value.stage == "detection"

    def test_still_image_reports_every_face(self):
        faces = [project_face(t=(-120.0, 0.0, 600.0)), project_face(t=(120.0, 0.0, 600.0))]
        processor = LiveProcessor(StubDetector(faces), FaceAnalyzer(), GazeAnalyzer())
        result = processor.process_still(self.frame, self.frame[:, :, 0], make_session())
        assert result.detected
        assert len(result.faces) == 2
        assert result.features.confidence == 1.0
        assert len(result.features.box_lines) == 24

    def test_reset_resets_detector(self):
        detector = StubDetector()
        LiveProcessor(detector, FaceAnalyzer(), GazeAnalyzer()).reset()
        assert detector.resets == 1

    def test_replay_uses_recorded_features(self, tmp_path):
        base = str(tmp_path / "clip")
        recorder = Recorder()
        recorder.open(base, OutputSchema())
        recorder.record_frame(1, 0.0, FaceFeatures(
            confidence=0.9,
            landmarks=project_face(),
            pose=HeadPose(tz=500.0, yaw=0.1),
            gaze_angle=(0.1, 0.0),
        ), True)
        recorder.record_frame(2, 0.033, FaceFeatures.neutral(), False)
        recorder.finish()

        processor = ReplayProcessor.from_csv(recorder.csv_path)
        session = make_session()

        first = processor.process(self.frame, None, session, 1, 0.0)
        assert first.detected
        assert first.features.pose.yaw == pytest.approx(0.1)
        assert len(first.features.box_lines) == 12
        assert len(first.features.gaze_lines) == 2

        second = processor.process(self.frame, None, session, 2, 0.033)
        assert not second.detected

        missing = processor.process(self.frame, None, session, 7, 0.2)
        assert not missing.detected
        assert processor.missing_frames == 1

    def test_replay_missing_csv(self, tmp_path):
        with pytest.raises(SourceOpenError):
            ReplayProcessor.from_csv(str(tmp_path / "missing.csv"))
