"""
Face Analysis Front End
-----------------------
Runs the facial behaviour analysis pipeline over video files, image
sequences and still images, with on-screen playback control.

Components:
- UI thread: OpenCV window (or headless), owns all presentation state
- Pipeline worker: detection -> analysis -> gaze -> recording -> publish
- Main thread: parses arguments, issues the start command, waits

Keys (window focused):
    P / Space   pause / resume
    N           step one frame (paused)
    Shift+N     step five frames (paused)
    S           stop
    1-4         toggle video / appearance / geometry / action unit panels
    F           fullscreen
    Q           quit

Examples:
    python main.py --video clip1.mp4 clip2.mp4
    python main.py --sequence frames/
    python main.py --images a.jpg b.jpg --headless
    python main.py --replay clip1.mp4 record/clip1.csv
"""

import argparse
import signal
import sys
import threading
import logging
from pathlib import Path

from config import config
from core.pipeline import PipelineController
from core.settings import AnalysisSettings
from core.singletons import cleanup_all
from threads import create_ui_thread_from_config
from vision.analysis import FaceAnalyzer
from vision.detector import DetectorParams, LandmarkDetector
from vision.gaze import GazeAnalyzer
from vision.processors import LiveProcessor, ReplayProcessor
from vision.source import FileSourceFactory

logger = logging.getLogger("FaceAnalysis")


def setup_logging(level: str, log_file: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file),
        ]
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Facial behaviour analysis with pause/step/stop playback control",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    inputs = parser.add_mutually_exclusive_group(required=True)
    inputs.add_argument("--video", nargs="+", metavar="PATH",
                        help="Video file(s), processed one after another")
    inputs.add_argument("--images", nargs="+", metavar="PATH",
                        help="Independent still images (not recorded)")
    inputs.add_argument("--sequence", nargs="+", metavar="DIR_OR_FILES",
                        help="Image sequence directory or ordered image files")
    inputs.add_argument("--replay", nargs=2, metavar=("VIDEO", "CSV"),
                        help="Replay a video with previously recorded features")

    parser.add_argument("--record-root", default=None,
                        help=f"Output directory for recordings (default: {config.RECORD_ROOT})")
    parser.add_argument("--headless", action="store_true",
                        help="Run without a display window")
    parser.add_argument("--log-level", default=config.LOG_LEVEL,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    return parser.parse_args(argv)


def build_controller(settings: AnalysisSettings, sink) -> PipelineController:
    """Wire the vision stages, sources and recorder into a controller."""
    detector = LandmarkDetector(config.DETECTOR_MODEL_PATH)
    analyzer = FaceAnalyzer(
        output_size=settings.image_output_size,
        au_model_path=config.AU_MODEL_PATH,
        pose_smoothing=config.POSE_SMOOTHING,
    )
    processor = LiveProcessor(
        detector,
        analyzer,
        GazeAnalyzer(),
        video_params=DetectorParams.for_video(config.DETECTION_THRESHOLD_VIDEO),
        image_params=DetectorParams.for_images(config.DETECTION_THRESHOLD_IMAGE),
    )
    return PipelineController(
        sources=FileSourceFactory(),
        processor=processor,
        sink=sink,
        settings=settings,
        replay_factory=ReplayProcessor.from_csv,
        default_fps=config.DEFAULT_FPS,
        poll_interval=config.PAUSE_POLL_INTERVAL,
        frame_budget=config.FRAME_UPDATE_BUDGET,
        mode_budget=config.MODE_UPDATE_BUDGET,
        layout_budget=config.LAYOUT_UPDATE_BUDGET,
    )


def main(argv=None):
    """Entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level, config.LOG_FILE)

    if args.replay is None and not Path(config.DETECTOR_MODEL_PATH).exists():
        logger.error(f"Detector model not found: {config.DETECTOR_MODEL_PATH}")
        logger.error("Set DETECTOR_MODEL_PATH to an SCRFD model with keypoint outputs")
        sys.exit(1)

    settings = AnalysisSettings.from_config(config)
    if args.record_root:
        settings.record_root = args.record_root

    ui = create_ui_thread_from_config(config, settings.visualization, headless=args.headless)
    controller = build_controller(settings, ui)
    ui.set_command_handler(controller.handle_command)

    stopped = threading.Event()

    def shutdown():
        if stopped.is_set():
            return
        stopped.set()
        controller.stop(wait=True, timeout=5.0)
        ui.stop()
        ui.join(timeout=2.0)
        cleanup_all()
        stats = controller.get_stats()
        logger.info("=" * 50)
        logger.info("Run statistics:")
        logger.info(f"  Frames processed: {stats['frames_processed']}")
        logger.info(f"  Frames recorded: {stats['frames_recorded']}")
        logger.info(f"  Inputs that failed to open: {stats['open_failures']}")
        logger.info(f"  Failed sessions: {stats['sessions_failed']}")
        for key, value in ui.get_stats().items():
            logger.info(f"  {key.replace('_', ' ').capitalize()}: {value}")
        logger.info("=" * 50)

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    ui.start()

    if args.video:
        controller.start_videos(args.video)
    elif args.images:
        controller.start_images(args.images)
    elif args.sequence:
        controller.start_sequence(args.sequence)
    else:
        controller.start_replay(*args.replay)

    try:
        # Wait for the session to end or the user to quit
        while not controller.join(timeout=0.2):
            if ui.quit_requested.is_set():
                logger.info("Quit requested")
                break

        # Keep the window open until the user quits
        while ui.has_window and ui.is_alive() and not ui.quit_requested.wait(0.2):
            pass
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        shutdown()


if __name__ == "__main__":
    main()
