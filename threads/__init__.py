"""Threads module for presentation and UI marshaling."""

from .mailbox import Mailbox
from .presentation import (
    FrameSnapshot,
    PresentationState,
    build_snapshot,
    layout_for,
    IDLE_CONTROLS,
    SETUP_CONTROLS,
)
from .ui import UIThread, create_ui_thread_from_config


__all__ = [
    "Mailbox",
    "FrameSnapshot",
    "PresentationState",
    "build_snapshot",
    "layout_for",
    "IDLE_CONTROLS",
    "SETUP_CONTROLS",
    "UIThread",
    "create_ui_thread_from_config",
]
