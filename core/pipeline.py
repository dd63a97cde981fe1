"""
Pipeline Controller
-------------------
Owns the worker thread that pulls frames through
detection -> analysis -> recording -> presentation, and the playback
commands (pause, step, stop) that the UI issues while it runs.

Loop variants:
- stream: one video, an image sequence, or a replay. One parameterized
  loop; recording is on for live runs and off for replay.
- still images: each image is an independent zero-state run with no
  recording, wrapped in the still-image presentation override.

Threading:
- At most one worker at a time. A start command stops and joins the
  previous worker before opening anything new.
- The worker owns Session, FrameSource and Recorder. It never touches
  presentation state; it posts snapshots and marshaled calls to the sink.
- ControlState is the only state shared with the UI thread.
"""

import itertools
import os
import threading
import logging
from typing import Callable, List, Optional

from core.control import ControlState
from core.errors import SourceOpenError, StageError
from core.interfaces import FrameProcessor, FrameSource, PresentationSink, SourceFactory
from core.results import FrameResult
from core.session import (
    CameraIntrinsics,
    FpsTracker,
    InputMode,
    Session,
    output_name_for_sequence,
    output_name_for_video,
)
from core.settings import AnalysisSettings, RecordingFlags
from storage.recorder import Recorder
from threads.presentation import IDLE_CONTROLS, SETUP_CONTROLS, build_snapshot

logger = logging.getLogger(__name__)


class PipelineController:
    """
    Runs analysis sessions on a background worker.

    Usage:
        controller = PipelineController(sources, processor, ui, settings)
        controller.start_videos(["a.mp4", "b.mp4"])
        controller.toggle_pause()
        controller.step(5)
        controller.stop()
    """

    def __init__(
        self,
        sources: SourceFactory,
        processor: FrameProcessor,
        sink: PresentationSink,
        settings: AnalysisSettings,
        recorder_factory: Callable[[], Recorder] = Recorder,
        replay_factory: Optional[Callable[[str], FrameProcessor]] = None,
        default_fps: float = 30.0,
        poll_interval: float = 0.01,
        frame_budget: float = 0.2,
        mode_budget: float = 1.0,
        layout_budget: float = 2.0,
    ):
        self.sources = sources
        self.processor = processor
        self.sink = sink
        self.settings = settings
        self.recorder_factory = recorder_factory
        self.replay_factory = replay_factory

        self.default_fps = default_fps
        self.poll_interval = poll_interval
        self.frame_budget = frame_budget
        self.mode_budget = mode_budget
        self.layout_budget = layout_budget

        # Serializes start/stop commands
        self._command_lock = threading.Lock()
        self._control: Optional[ControlState] = None
        self._thread: Optional[threading.Thread] = None
        self._session_ids = itertools.count(1)

        self.stats = {
            "sessions_started": 0,
            "sessions_failed": 0,
            "open_failures": 0,
            "frames_processed": 0,
            "frames_recorded": 0,
        }

    # ========================
    # Start commands
    # ========================

    def start_videos(self, paths: List[str]):
        """Process video files one after another, each recorded separately."""
        paths = list(paths)
        self._start(InputMode.VIDEO, lambda control: self._run_videos(paths, control))

    def start_sequence(self, paths: List[str]):
        """Process image files (or a directory of them) as one stream."""
        paths = list(paths)
        self._start(InputMode.SEQUENCE, lambda control: self._run_sequence(paths, control))

    def start_images(self, paths: List[str]):
        """Process independent still images without recording."""
        paths = list(paths)
        self._start(InputMode.IMAGES, lambda control: self._run_images(paths, control))

    def start_replay(self, video_path: str, features_csv: str):
        """Play a video back with previously recorded features."""
        if self.replay_factory is None:
            raise RuntimeError("Replay is not configured")
        self._start(InputMode.REPLAY,
                    lambda control: self._run_replay(video_path, features_csv, control))

    def _start(self, mode: InputMode, target: Callable[[ControlState], None]):
        with self._command_lock:
            self._stop_and_join()

            control = ControlState(poll_interval=self.poll_interval)
            control.start()
            thread = threading.Thread(
                target=self._worker,
                args=(mode, target, control),
                name=f"PipelineWorker-{mode.value}",
                daemon=True,
            )
            self._control = control
            self._thread = thread
            self.stats["sessions_started"] += 1
            thread.start()
        logger.info(f"Started {mode.value} processing")

    # ========================
    # Playback commands
    # ========================

    @property
    def is_active(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def control(self) -> Optional[ControlState]:
        return self._control

    def toggle_pause(self) -> bool:
        """Pause or resume the running session. Returns the new paused state."""
        control = self._control
        if control is None or not control.running:
            return False
        paused = control.toggle_pause()
        self.sink.set_paused(paused, timeout=self.mode_budget)
        logger.info("Paused" if paused else "Resumed")
        return paused

    def step(self, count: int = 1):
        """Advance `count` frames while paused."""
        control = self._control
        if control is None:
            return
        control.request_steps(count)

    def stop(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Request a cooperative stop.

        With wait=True the call returns once the worker has exited (and
        finished its teardown). Calling from the worker itself never joins.
        """
        # No command lock: a start command may be joining the worker while
        # the UI thread issues a stop
        control, thread = self._control, self._thread
        if control is None:
            return
        control.request_stop()
        if wait and thread is not None and thread.is_alive() and threading.current_thread() is not thread:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Worker did not exit within the stop timeout")

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current worker. Returns True once it has exited."""
        thread = self._thread
        if thread is None or threading.current_thread() is thread:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _stop_and_join(self):
        # Caller holds _command_lock
        if self._control is not None:
            self._control.request_stop()
        thread = self._thread
        if thread is not None and thread.is_alive() and threading.current_thread() is not thread:
            logger.info("Stopping previous session before starting a new one")
            thread.join()

    # ========================
    # Settings
    # ========================

    def set_visualization(self, **flags):
        """Show/hide presentation panels; refreshes the layout."""
        visualization = self.settings.update_visualization(**flags)
        self.sink.refresh_layout(visualization, timeout=self.layout_budget)

    def toggle_visualization(self, name: str):
        visualization = self.settings.toggle_visualization(name)
        self.sink.refresh_layout(visualization, timeout=self.layout_budget)

    def set_recording(self, recording: RecordingFlags):
        if self.is_active:
            raise RuntimeError("Recording settings cannot change while a session is running")
        self.settings.set_recording(recording)

    def set_intrinsics(self, intrinsics: CameraIntrinsics):
        if self.is_active:
            raise RuntimeError("Camera intrinsics cannot change while a session is running")
        self.settings.set_intrinsics(intrinsics)

    def handle_command(self, name: str, argument=None):
        """Keyboard/UI command entry point. Runs on the UI thread."""
        if name == "pause":
            self.toggle_pause()
        elif name == "step":
            self.step(argument or 1)
        elif name in ("stop", "quit"):
            # The worker applies the idle UI itself; joining here would block the UI thread
            self.stop(wait=False)
        elif name == "toggle":
            self.toggle_visualization(argument)
        else:
            logger.warning(f"Unknown command: {name}")

    # ========================
    # Worker
    # ========================

    def _worker(self, mode: InputMode, target: Callable[[ControlState], None], control: ControlState):
        self._setup_mode()
        try:
            target(control)
        except StageError as e:
            self.stats["sessions_failed"] += 1
            logger.exception(f"{mode.value} processing aborted: {e}")
            self.sink.notify("Processing failed", str(e))
        except Exception as e:
            self.stats["sessions_failed"] += 1
            logger.exception(f"Unexpected error in {mode.value} processing")
            self.sink.notify("Processing failed", str(StageError("pipeline", e)))
        finally:
            control.clear_steps()
            if control.resume():
                # Loop ended while paused
                self.sink.set_paused(False, timeout=self.frame_budget)
            control.request_stop()
            self._end_mode()
            logger.info(f"{mode.value} processing finished")

    def _setup_mode(self):
        self.sink.set_paused(False, timeout=self.mode_budget)
        if not self.sink.set_mode_ui(SETUP_CONTROLS, timeout=self.mode_budget):
            logger.debug("Setup mode UI update not delivered")

    def _end_mode(self):
        if not self.sink.set_mode_ui(IDLE_CONTROLS, clear=True, timeout=self.mode_budget):
            logger.debug("End mode UI update not delivered")

    def _new_session(self, mode: InputMode, inputs: List[str], output_name: str = "") -> Session:
        return Session(
            session_id=next(self._session_ids),
            mode=mode,
            inputs=inputs,
            intrinsics=self.settings.intrinsics,
            output_name=output_name,
        )

    def _report_open_failure(self, error: SourceOpenError):
        self.stats["open_failures"] += 1
        logger.warning(str(error))
        self.sink.notify("Could not open input", str(error))

    # ========================
    # Input runners
    # ========================

    def _run_videos(self, paths: List[str], control: ControlState):
        for i, path in enumerate(paths):
            if not control.running:
                logger.info(f"Stop requested, skipping {len(paths) - i} remaining input(s)")
                return
            try:
                source = self.sources.open_video(path)
            except SourceOpenError as e:
                self._report_open_failure(e)
                continue
            session = self._new_session(InputMode.VIDEO, [path], output_name_for_video(path))
            self._run_recorded(session, source, control)

    def _run_sequence(self, paths: List[str], control: ControlState):
        try:
            source = self.sources.open_sequence(paths)
        except SourceOpenError as e:
            self._report_open_failure(e)
            return
        session = self._new_session(InputMode.SEQUENCE, paths, output_name_for_sequence(paths))
        self._run_recorded(session, source, control)

    def _run_replay(self, video_path: str, features_csv: str, control: ControlState):
        try:
            processor = self.replay_factory(features_csv)
            source = self.sources.open_video(video_path)
        except SourceOpenError as e:
            self._report_open_failure(e)
            return
        session = self._new_session(InputMode.REPLAY, [video_path, features_csv])
        try:
            self._run_stream(session, source, processor, control, recorder=None)
        finally:
            source.dispose()
            self._log_session(session)

    def _run_recorded(self, session: Session, source: FrameSource, control: ControlState):
        recorder = self.recorder_factory()
        try:
            self._run_stream(session, source, self.processor, control, recorder)
        finally:
            try:
                recorder.finish()
            except Exception:
                logger.exception(f"Recorder finish failed for session {session.session_id}")
            finally:
                source.dispose()
            self.stats["frames_recorded"] += recorder.frames_recorded
            self._log_session(session)

    def _run_stream(
        self,
        session: Session,
        source: FrameSource,
        processor: FrameProcessor,
        control: ControlState,
        recorder: Optional[Recorder],
    ):
        """
        Pull frames until end of stream or stop.

        Per frame: pause gate, next frame, process, record, publish, then
        consume one pending step.
        """
        width, height = source.dimensions()
        session.prepare(width, height, source.frame_rate(), self.default_fps)
        processor.reset()
        logger.info(f"Session {session.session_id} ({session.mode.value}): {width}x{height} "
                    f"@ {session.frame_rate:.2f}fps, intrinsics fx={session.intrinsics.fx:.1f} "
                    f"fy={session.intrinsics.fy:.1f} cx={session.intrinsics.cx:.1f} cy={session.intrinsics.cy:.1f}")

        if recorder is not None:
            self._open_recorder(recorder, session, processor)

        try:
            while control.wait_while_paused():
                try:
                    frame, gray, is_end = source.next_frame()
                except Exception as e:
                    raise StageError("capture", e) from e
                if is_end or frame is None or frame.size == 0:
                    break

                frame_index = session.frame_index + 1
                timestamp = session.timestamp_for(session.frame_index)
                result = processor.process(frame, gray, session, frame_index, timestamp)
                result.progress = source.progress()

                if recorder is not None:
                    try:
                        recorder.record_frame(frame_index, timestamp, result.features, result.detected)
                    except Exception as e:
                        raise StageError("recording", e) from e

                session.frame_index = frame_index
                session.fps_tracker.add_frame()
                self.stats["frames_processed"] += 1
                self._publish(session, result)

                control.consume_step()
        finally:
            control.clear_steps()

    def _open_recorder(self, recorder: Recorder, session: Session, processor: FrameProcessor):
        root = self.settings.record_root
        intrinsics = session.intrinsics
        metadata = {
            "input": session.inputs,
            "mode": session.mode.value,
            "width": session.width,
            "height": session.height,
            "fps": session.frame_rate,
            "intrinsics": {"fx": intrinsics.fx, "fy": intrinsics.fy,
                           "cx": intrinsics.cx, "cy": intrinsics.cy},
        }
        try:
            recorder.open(
                os.path.join(root, session.output_name),
                self.settings.output_schema(processor.au_names),
                metadata,
            )
        except Exception as e:
            raise StageError("recording", e) from e

    def _run_images(self, paths: List[str], control: ControlState):
        saved = self.settings.override_for_images()
        fps_tracker = FpsTracker()  # Shared: each image has its own session
        self.sink.refresh_layout(self.settings.visualization, timeout=self.layout_budget)
        try:
            for path in paths:
                if not control.wait_while_paused():
                    logger.info("Stop requested, remaining images skipped")
                    return
                try:
                    source = self.sources.open_images([path])
                except SourceOpenError as e:
                    self._report_open_failure(e)
                    continue

                session = self._new_session(InputMode.IMAGES, [path])
                session.fps_tracker = fps_tracker
                try:
                    self._run_still(session, source)
                finally:
                    source.dispose()
                control.consume_step()
        finally:
            control.clear_steps()
            self.settings.restore_after_images(saved)
            self.sink.refresh_layout(self.settings.visualization, timeout=self.layout_budget)

    def _run_still(self, session: Session, source: FrameSource):
        try:
            frame, gray, is_end = source.next_frame()
        except Exception as e:
            raise StageError("capture", e) from e
        if is_end or frame is None or frame.size == 0:
            return

        width, height = source.dimensions()
        session.prepare(width, height, source.frame_rate(), self.default_fps)
        self.processor.reset()

        result = self.processor.process_still(frame, gray, session)
        result.progress = source.progress()
        session.frame_index = 1
        session.fps_tracker.add_frame()
        self.stats["frames_processed"] += 1
        self._publish(session, result)

    # ========================
    # Presentation
    # ========================

    def _publish(self, session: Session, result: FrameResult):
        flags = self.settings.visualization
        if not (flags.show_video or flags.show_appearance or flags.show_geometry or flags.show_aus):
            return
        snapshot = build_snapshot(session.session_id, result, session.fps_tracker.get_fps(), flags)
        self.sink.publish(snapshot, self.frame_budget)

    def _log_session(self, session: Session):
        stats = session.get_stats()
        logger.info("=" * 50)
        logger.info(f"Session {stats['session_id']} ({stats['mode']}) finished:")
        logger.info(f"  Output: {stats['output_name'] or '-'}")
        logger.info(f"  Frames processed: {stats['frames_processed']}")
        logger.info(f"  Runtime: {stats['runtime_seconds']}s")
        logger.info(f"  Average FPS: {stats['average_fps']}")
        logger.info("=" * 50)

    def get_stats(self) -> dict:
        stats = dict(self.stats)
        control = self._control
        stats["state"] = control.state.value if control is not None else "idle"
        return stats
