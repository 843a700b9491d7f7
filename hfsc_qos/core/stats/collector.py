"""Poll per-class counters from the shaping backend."""
from __future__ import annotations

import contextlib
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, ContextManager, Dict, Iterator, Optional

from ..errors import BackendUnavailableError
from ..models import ClassStats, StatsSnapshot
from .parser import parse_records

logger = logging.getLogger(__name__)

UNLABELED = "UNKNOWN"
SHAPING_CLASS_KIND = "hfsc"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatsCollector:
    """Turns raw backend counters into :class:`StatsSnapshot` values.

    ``guard`` is entered around each backend read; the session uses it to
    keep reads out of an in-flight reconfiguration.
    """

    def __init__(
        self,
        backend,
        labels: Optional[Dict[str, str]] = None,
        interface: str = "",
        guard: Optional[Callable[[], ContextManager]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.backend = backend
        self.labels = dict(labels or {})
        self.interface = interface or getattr(backend, "interface", "")
        self._guard = guard or contextlib.nullcontext
        self._clock = clock

    def snapshot(self) -> StatsSnapshot:
        with self._guard():
            raw = self.backend.read_counters()
        captured_at = self._clock()
        classes = tuple(
            ClassStats(
                classid=record.classid,
                label=self.labels.get(record.classid, UNLABELED),
                packets=record.packets,
                bytes=record.bytes,
                dropped=record.dropped,
                rate_kbps=record.rate_kbps,
                captured_at=captured_at,
            )
            for record in parse_records(raw, kind=SHAPING_CLASS_KIND)
        )
        return StatsSnapshot(captured_at=captured_at, interface=self.interface, classes=classes)

    def watch(self, interval: float, stop_event: Optional[threading.Event] = None) -> Iterator[StatsSnapshot]:
        """Yield a snapshot every ``interval`` seconds until ``stop_event`` is set.

        A tick whose read fails is logged and skipped. The generator cannot
        be restarted; start a new watch instead.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            try:
                snapshot = self.snapshot()
            except BackendUnavailableError as exc:
                logger.warning("Counter poll failed, retrying in %ss: %s", interval, exc)
            else:
                yield snapshot
            if stop_event.wait(interval):
                return
