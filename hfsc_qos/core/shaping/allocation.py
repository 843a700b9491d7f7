"""Compile tier requests into a concrete HFSC class tree."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from ..errors import AllocationError
from ..models import (
    DEFAULT_TIER_ID,
    ROOT_ID,
    ClassTree,
    LinkCapacity,
    PriorityClass,
    Tier,
    TierKind,
    TierSpec,
    classid,
)
from .buffer import DEFAULT_RTT_MS, buffer_size
from .curves import build_curve

logger = logging.getLogger(__name__)


def default_tier_spec(share_percent: Optional[float] = None) -> TierSpec:
    return TierSpec(
        id=DEFAULT_TIER_ID,
        label="Default",
        kind=TierKind.PERCENTAGE,
        priority=PriorityClass.BULK,
        share_percent=share_percent,
    )


class AllocationCompiler:
    """Turns reservations and percentage shares into rates and curves.

    Reserved tiers are sized first and are not subtracted from the base the
    percentage tiers are computed against, so the nominal total may exceed
    the link. HFSC link-sharing arbitrates that at runtime; the compiler only
    warns about it. A single tier above the link rate is rejected.
    """

    def __init__(self, rtt_ms: int = DEFAULT_RTT_MS):
        self.rtt_ms = rtt_ms

    def compile(
        self,
        capacity: LinkCapacity,
        reserved: Sequence[TierSpec],
        tiers: Sequence[TierSpec],
        default: Optional[TierSpec] = None,
    ) -> ClassTree:
        default = default or default_tier_spec()
        specs = list(reserved) + list(tiers)
        self._check_ids(specs + [default])

        # declared shares are validated before the default takes the remainder
        declared = specs + ([default] if default.share_percent is not None else [])
        for spec in declared:
            self._check_request(spec)
        self._check_share_limits(declared)

        if default.share_percent is None:
            claimed = self._share_totals(specs).get(default.parent_id, 0)
            default = replace(default, share_percent=100 - claimed)
        specs.append(default)

        warnings = self._idle_share_warnings(specs)
        ordered = self._parent_first(specs)

        rates: Dict[int, int] = {ROOT_ID: capacity.rate_kbps}
        compiled: List[Tier] = []
        for spec in ordered:
            rate = self._rate_for(spec, capacity, rates)
            if rate <= 0:
                raise AllocationError("computed rate must be positive", tier_id=spec.id, value=rate)
            if rate > capacity.rate_kbps:
                raise AllocationError(
                    f"computed rate {rate}kbit exceeds link capacity {capacity.rate_kbps}kbit",
                    tier_id=spec.id,
                    value=rate,
                )
            rates[spec.id] = rate
            compiled.append(
                Tier(
                    id=spec.id,
                    label=spec.label,
                    parent_id=spec.parent_id,
                    kind=spec.kind,
                    priority=spec.priority,
                    rate_kbps=rate,
                    curve=build_curve(rate, spec.priority, tier_id=spec.id),
                    buffer_bytes=buffer_size(rate, self.rtt_ms),
                    share_percent=spec.share_percent,
                    is_default=spec is default,
                )
            )
            logger.debug("Tier %s (%s): %skbit %s", classid(spec.id), spec.label, rate, spec.priority.value)

        nominal = sum(t.rate_kbps for t in compiled if t.parent_id == ROOT_ID)
        if nominal > capacity.rate_kbps:
            warnings.append(
                f"guaranteed rates total {nominal}kbit, above the {capacity.rate_kbps}kbit link; "
                "link-sharing will arbitrate"
            )

        for message in warnings:
            logger.warning(message)
        return ClassTree(capacity=capacity, tiers=tuple(compiled), warnings=tuple(warnings))

    # ------------------------------------------------------------------
    # validation helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _check_ids(specs: Sequence[TierSpec]) -> None:
        seen = set()
        for spec in specs:
            if isinstance(spec.id, bool) or not isinstance(spec.id, int) or spec.id <= 0:
                raise AllocationError("tier id must be a positive integer", tier_id=spec.id, value=spec.id)
            if spec.id == ROOT_ID:
                raise AllocationError(f"id {ROOT_ID} is reserved for the root class", tier_id=spec.id)
            # tc reads classid minors as hex
            if int(str(spec.id), 16) > 0xFFFF:
                raise AllocationError("tier id does not fit a classid minor", tier_id=spec.id, value=spec.id)
            if spec.id in seen:
                raise AllocationError("duplicate tier id", tier_id=spec.id)
            seen.add(spec.id)

    @staticmethod
    def _check_request(spec: TierSpec) -> None:
        if spec.kind is TierKind.RESERVED:
            if (spec.rate_kbps is None) == (spec.rate_percent is None):
                raise AllocationError(
                    "reserved tier needs exactly one of rate_kbps or rate_percent", tier_id=spec.id
                )
        elif spec.share_percent is None:
            raise AllocationError("percentage tier needs a share", tier_id=spec.id)
        elif not 0 <= spec.share_percent <= 100:
            raise AllocationError("share must be between 0 and 100", tier_id=spec.id, value=spec.share_percent)

    @staticmethod
    def _share_totals(specs: Sequence[TierSpec]) -> Dict[int, float]:
        shares: Dict[int, float] = defaultdict(float)
        for spec in specs:
            if spec.kind is TierKind.PERCENTAGE:
                shares[spec.parent_id] += spec.share_percent or 0
        return shares

    @classmethod
    def _check_share_limits(cls, specs: Sequence[TierSpec]) -> None:
        for parent_id, total in cls._share_totals(specs).items():
            if total > 100:
                raise AllocationError(
                    f"shares under {classid(parent_id)} sum to {total:g}%, above 100%",
                    value=total,
                )

    @classmethod
    def _idle_share_warnings(cls, specs: Sequence[TierSpec]) -> List[str]:
        return [
            f"shares under {classid(parent_id)} sum to {total:g}%; {100 - total:g}% left idle"
            for parent_id, total in cls._share_totals(specs).items()
            if total < 100
        ]

    @staticmethod
    def _parent_first(specs: Sequence[TierSpec]) -> List[TierSpec]:
        known = {ROOT_ID}
        ids = {s.id for s in specs}
        ordered: List[TierSpec] = []
        pending = list(specs)
        while pending:
            ready = [s for s in pending if s.parent_id in known]
            if not ready:
                spec = pending[0]
                if spec.parent_id not in ids:
                    raise AllocationError(
                        f"parent {classid(spec.parent_id)} does not exist", tier_id=spec.id, value=spec.parent_id
                    )
                raise AllocationError("tier is part of a parent cycle", tier_id=spec.id, value=spec.parent_id)
            for spec in ready:
                ordered.append(spec)
                known.add(spec.id)
            pending = [s for s in pending if s.id not in known]
        return ordered

    @staticmethod
    def _rate_for(spec: TierSpec, capacity: LinkCapacity, rates: Dict[int, int]) -> int:
        if spec.kind is TierKind.RESERVED:
            if spec.rate_kbps is not None:
                return int(spec.rate_kbps)
            return int(capacity.rate_kbps * spec.rate_percent // 100)
        return int(rates[spec.parent_id] * spec.share_percent // 100)
