"""Central, test-injectable subprocess runner used by the tc/iptables backends.

- run(cmd, **kwargs): execute through the current runner with text capture
  and a timeout by default
- set_runner(runner): install a callable with the subprocess.run signature
  (tests install tests.utils.fake_subprocess.FakeSubprocess)
- reset_runner(): restore subprocess.run
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10

_runner: Callable = subprocess.run


def run(cmd: Sequence[str], **kwargs):
    """Run ``cmd`` and return a CompletedProcess-like object.

    stdout/stderr are captured as text unless the caller says otherwise.
    """
    kwargs.setdefault("capture_output", True)
    kwargs.setdefault("text", True)
    kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
    logger.debug("Executing: %s", " ".join(str(c) for c in cmd))
    return _runner(list(cmd), **kwargs)


def set_runner(runner: Callable) -> None:
    global _runner
    _runner = runner


def reset_runner() -> None:
    global _runner
    _runner = subprocess.run


def which(tool: str) -> Optional[str]:
    return shutil.which(tool)
