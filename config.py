"""
Face Analysis Configuration
---------------------------
All settings loaded from environment variables or .env file.
"""
import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_intrinsic(name: str) -> float:
    """Camera intrinsic value; "auto" (or any non-positive number) means estimate."""
    value = os.getenv(name, "-1").strip().lower()
    if value == "auto":
        return -1.0
    return float(value)


@dataclass
class Config:
    """Face analysis front-end configuration."""

    # =========================
    # Recording
    # =========================
    RECORD_ROOT: str = field(default_factory=lambda: os.getenv("RECORD_ROOT", "./record"))
    RECORD_2D_LANDMARKS: bool = field(default_factory=lambda: _env_bool("RECORD_2D_LANDMARKS", "true"))
    RECORD_POSE: bool = field(default_factory=lambda: _env_bool("RECORD_POSE", "true"))
    RECORD_AUS: bool = field(default_factory=lambda: _env_bool("RECORD_AUS", "true"))
    RECORD_GAZE: bool = field(default_factory=lambda: _env_bool("RECORD_GAZE", "true"))
    RECORD_ALIGNED: bool = field(default_factory=lambda: _env_bool("RECORD_ALIGNED", "false"))
    RECORD_HOG: bool = field(default_factory=lambda: _env_bool("RECORD_HOG", "false"))

    # =========================
    # Visualization
    # =========================
    SHOW_TRACKED_VIDEO: bool = field(default_factory=lambda: _env_bool("SHOW_TRACKED_VIDEO", "true"))
    SHOW_APPEARANCE: bool = field(default_factory=lambda: _env_bool("SHOW_APPEARANCE", "true"))
    SHOW_GEOMETRY: bool = field(default_factory=lambda: _env_bool("SHOW_GEOMETRY", "true"))
    SHOW_AUS: bool = field(default_factory=lambda: _env_bool("SHOW_AUS", "true"))

    # =========================
    # Camera intrinsics (-1 / "auto" = estimate from frame size)
    # =========================
    CAMERA_FX: float = field(default_factory=lambda: _env_intrinsic("CAMERA_FX"))
    CAMERA_FY: float = field(default_factory=lambda: _env_intrinsic("CAMERA_FY"))
    CAMERA_CX: float = field(default_factory=lambda: _env_intrinsic("CAMERA_CX"))
    CAMERA_CY: float = field(default_factory=lambda: _env_intrinsic("CAMERA_CY"))

    # =========================
    # Models
    # =========================
    DETECTOR_MODEL_PATH: str = field(default_factory=lambda: os.getenv("DETECTOR_MODEL_PATH", "models/scrfd_10g_bnkps.onnx"))
    # Optional action-unit regressor, empty string disables AU output
    AU_MODEL_PATH: str = field(default_factory=lambda: os.getenv("AU_MODEL_PATH", ""))
    DETECTION_THRESHOLD_VIDEO: float = field(default_factory=lambda: float(os.getenv("DETECTION_THRESHOLD_VIDEO", "0.4")))
    DETECTION_THRESHOLD_IMAGE: float = field(default_factory=lambda: float(os.getenv("DETECTION_THRESHOLD_IMAGE", "0.5")))
    IMAGE_OUTPUT_SIZE: int = field(default_factory=lambda: int(os.getenv("IMAGE_OUTPUT_SIZE", "112")))
    # Weight of the previous frame's head pose in video mode (0 = no smoothing)
    POSE_SMOOTHING: float = field(default_factory=lambda: float(os.getenv("POSE_SMOOTHING", "0.3")))

    # =========================
    # Timing
    # =========================
    DEFAULT_FPS: float = field(default_factory=lambda: float(os.getenv("DEFAULT_FPS", "30")))
    PAUSE_POLL_INTERVAL: float = field(default_factory=lambda: float(os.getenv("PAUSE_POLL_INTERVAL", "0.01")))
    FRAME_UPDATE_BUDGET: float = field(default_factory=lambda: float(os.getenv("FRAME_UPDATE_BUDGET", "0.2")))
    MODE_UPDATE_BUDGET: float = field(default_factory=lambda: float(os.getenv("MODE_UPDATE_BUDGET", "1.0")))
    LAYOUT_UPDATE_BUDGET: float = field(default_factory=lambda: float(os.getenv("LAYOUT_UPDATE_BUDGET", "2.0")))

    # =========================
    # Display
    # =========================
    DISPLAY_ENABLED: bool = field(default_factory=lambda: _env_bool("DISPLAY_ENABLED", "true"))
    DISPLAY_WIDTH: int = field(default_factory=lambda: int(os.getenv("DISPLAY_WIDTH", "1280")))
    DISPLAY_HEIGHT: int = field(default_factory=lambda: int(os.getenv("DISPLAY_HEIGHT", "720")))
    DISPLAY_FULLSCREEN: bool = field(default_factory=lambda: _env_bool("DISPLAY_FULLSCREEN", "false"))

    # =========================
    # Logging
    # =========================
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    LOG_FILE: str = field(default_factory=lambda: os.getenv("LOG_FILE", "face_analysis.log"))


# Global config instance
config = Config()
