"""Storage module for per-session feature recording and replay."""

from .recorder import OutputSchema, Recorder
from .reader import FeatureReader

__all__ = ["OutputSchema", "Recorder", "FeatureReader"]
