"""Exception hierarchy for the shaping compiler and its backends."""
from __future__ import annotations

from typing import Any, Optional, Sequence


class QoSError(Exception):
    """Base class for every error raised by hfsc_qos."""


class ConfigError(QoSError):
    """The configuration file is missing, malformed or fails validation."""


class CompilationError(QoSError):
    """Invalid share, capacity or curve math for a specific tier."""

    def __init__(self, message: str, tier_id: Optional[int] = None, value: Any = None):
        self.tier_id = tier_id
        self.value = value
        if tier_id is not None:
            message = f"tier {tier_id}: {message}"
        super().__init__(message)


class AllocationError(CompilationError):
    pass


class InvalidCurveError(CompilationError):
    pass


class BackendApplyError(QoSError):
    """A single backend command failed while building the class tree or rules."""

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"command failed ({returncode}): {' '.join(self.cmd)}{detail}")


class BackendUnavailableError(QoSError):
    """The shaping backend could not be queried."""


class ReconfigurationInProgressError(QoSError):
    """Another reconfiguration holds the writer lock."""
