"""Bandwidth-delay product buffer sizing."""
from __future__ import annotations

MIN_BUFFER_BYTES = 4096
MAX_BUFFER_BYTES = 131072
DEFAULT_RTT_MS = 50
MTU_FRAME_BYTES = 1514


def buffer_size(rate_kbps: float, rtt_ms: int = DEFAULT_RTT_MS) -> int:
    """Return a queue limit in bytes for a class shaped to ``rate_kbps``.

    The BDP (``rate * rtt / 8``) is padded by half again and clamped so
    slow classes still absorb a burst and fast ones do not build latency.
    """
    bdp = int(rate_kbps * rtt_ms) // 8
    size = bdp * 3 // 2
    return max(MIN_BUFFER_BYTES, min(MAX_BUFFER_BYTES, size))


def buffer_packets(buffer_bytes: int) -> int:
    """Express a byte limit as full-size frames, for packet-limited qdiscs."""
    return max(1, -(-buffer_bytes // MTU_FRAME_BYTES))
