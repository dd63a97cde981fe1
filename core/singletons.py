"""
Shared ONNX Runtime sessions.

Detection and action-unit models are expensive to load. Sessions are created
lazily, once per model name, and reused across pipeline sessions so that
starting a new video does not reload weights.
"""

import threading
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import onnxruntime as ort

logger = logging.getLogger(__name__)


class SingletonMeta(type):
    """
    Thread-safe Singleton metaclass.

    Usage:
        class MySingleton(metaclass=SingletonMeta):
            pass
    """
    _instances: Dict[type, Any] = {}
    _lock: threading.Lock = threading.Lock()

    def __call__(cls, *args, **kwargs):
        with cls._lock:
            if cls not in cls._instances:
                cls._instances[cls] = super().__call__(*args, **kwargs)
        return cls._instances[cls]


class ONNXSessionManager(metaclass=SingletonMeta):
    """
    One InferenceSession per model name.

    Usage:
        manager = get_onnx_manager()
        session = manager.get_session("detector", "models/scrfd_10g_bnkps.onnx")
    """

    def __init__(self):
        self._sessions: Dict[str, Any] = {}
        self._session_lock = threading.Lock()
        self._providers = self._get_optimal_providers()
        logger.info(f"ONNXSessionManager initialized with providers: {self._providers}")

    def _get_optimal_providers(self) -> List[str]:
        """Priority: CUDA > DirectML > CPU."""
        available = ort.get_available_providers()
        providers = []
        if 'CUDAExecutionProvider' in available:
            providers.append('CUDAExecutionProvider')
        if 'DmlExecutionProvider' in available:
            providers.append('DmlExecutionProvider')
        providers.append('CPUExecutionProvider')
        return providers

    def get_session(self, name: str, model_path: str) -> Optional[Any]:
        """
        Get or create the session for a model.

        Returns:
            ort.InferenceSession, or None if the file is missing or fails to load
        """
        with self._session_lock:
            if name in self._sessions:
                return self._sessions[name]

            if not Path(model_path).exists():
                logger.error(f"Model file not found: {model_path}")
                return None

            try:
                sess_options = ort.SessionOptions()
                sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
                sess_options.intra_op_num_threads = 4
                sess_options.inter_op_num_threads = 2

                session = ort.InferenceSession(
                    model_path,
                    sess_options=sess_options,
                    providers=self._providers,
                )
                self._sessions[name] = session
                logger.info(f"ONNX session '{name}' loaded from {model_path}")
                logger.info(f"  Using providers: {session.get_providers()}")
                return session

            except Exception as e:
                logger.error(f"Failed to create ONNX session '{name}': {e}")
                return None

    def cleanup(self):
        """Release all sessions."""
        with self._session_lock:
            self._sessions.clear()
            logger.info("ONNXSessionManager cleaned up")


def get_onnx_manager() -> ONNXSessionManager:
    """Get the global ONNX session manager."""
    return ONNXSessionManager()


def cleanup_all():
    """Release all shared model sessions."""
    ONNXSessionManager().cleanup()
    logger.info("All singleton resources cleaned up")
