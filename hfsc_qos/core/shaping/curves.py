"""Service curve parameters per priority class."""
from __future__ import annotations

from typing import Dict, Optional, Tuple

from ..errors import InvalidCurveError
from ..models import PriorityClass, ServiceCurve

# priority -> (burst multiplier, burst duration in ms)
BURST_PROFILES: Dict[PriorityClass, Tuple[float, int]] = {
    PriorityClass.REALTIME_STRICT: (2.0, 10),
    PriorityClass.REALTIME_BURSTABLE: (1.5, 20),
}


def _exact(value: float):
    return int(value) if float(value).is_integer() else value


def build_curve(sustained_rate_kbps: float, priority: PriorityClass, tier_id: Optional[int] = None) -> ServiceCurve:
    """Build the curve for a tier shaped to ``sustained_rate_kbps``.

    Realtime tiers get a concave two-segment curve: a short burst above the
    sustained rate, then the sustained rate. Shared and bulk tiers only get
    a link-sharing rate.
    """
    if sustained_rate_kbps is None or sustained_rate_kbps <= 0:
        raise InvalidCurveError(
            "sustained rate must be positive", tier_id=tier_id, value=sustained_rate_kbps
        )
    priority = PriorityClass.parse(priority)
    profile = BURST_PROFILES.get(priority)
    if profile is None:
        return ServiceCurve(sustained_rate_kbps=sustained_rate_kbps)
    multiplier, duration_ms = profile
    return ServiceCurve(
        sustained_rate_kbps=sustained_rate_kbps,
        burst_rate_kbps=_exact(sustained_rate_kbps * multiplier),
        burst_duration_ms=duration_ms,
    )
