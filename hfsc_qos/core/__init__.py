"""Core modules for the HFSC shaper: compiler, classifier, stats, session."""

from .config import QoSConfig
from .errors import (
    AllocationError,
    BackendApplyError,
    BackendUnavailableError,
    ConfigError,
    InvalidCurveError,
    QoSError,
    ReconfigurationInProgressError,
)
from .session import ShapingSession

__all__ = [
    "QoSConfig",
    "ShapingSession",
    "QoSError",
    "ConfigError",
    "AllocationError",
    "InvalidCurveError",
    "BackendApplyError",
    "BackendUnavailableError",
    "ReconfigurationInProgressError",
]
