"""
Single-slot mailbox between the pipeline worker and the UI thread.

The worker posts frame snapshots faster than a slow display may render
them. Only the most recent undelivered snapshot is kept: a new post
overwrites the pending one and the overwrite is counted as a drop.
"""

import threading
from typing import Any, Optional


class Mailbox:
    """
    Most-recent-wins slot.

    Usage:
        box = Mailbox()
        box.post(snapshot)          # Worker, never blocks
        item = box.take(timeout=0.05)   # UI thread
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._item: Optional[Any] = None
        self._has_item = False
        self.posted = 0
        self.dropped = 0

    def post(self, item: Any) -> bool:
        """Store item. Returns True if it replaced an undelivered one."""
        with self._cond:
            replaced = self._has_item
            if replaced:
                self.dropped += 1
            self._item = item
            self._has_item = True
            self.posted += 1
            self._cond.notify()
            return replaced

    def take(self, timeout: Optional[float] = None) -> Optional[Any]:
        """Remove and return the pending item, waiting up to timeout. None if empty."""
        with self._cond:
            if not self._has_item and timeout:
                self._cond.wait(timeout)
            if not self._has_item:
                return None
            item, self._item = self._item, None
            self._has_item = False
            return item

    def clear(self):
        with self._cond:
            self._item = None
            self._has_item = False

    def __len__(self) -> int:
        with self._cond:
            return 1 if self._has_item else 0
