"""Value types shared by the compiler, the rule engine and the stats collector."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .errors import AllocationError

QDISC_MAJOR = 1
ROOT_ID = 1
DEFAULT_TIER_ID = 999


def classid(minor: int) -> str:
    return f"{QDISC_MAJOR}:{minor}"


class Direction(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class TierKind(str, Enum):
    RESERVED = "reserved"
    PERCENTAGE = "percentage"


class PriorityClass(str, Enum):
    """Scheduling treatment of a tier, most latency sensitive first."""

    REALTIME_STRICT = "realtime_strict"
    REALTIME_BURSTABLE = "realtime_burstable"
    SHARED = "shared"
    BULK = "bulk"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)

    @property
    def is_realtime(self) -> bool:
        return self in (PriorityClass.REALTIME_STRICT, PriorityClass.REALTIME_BURSTABLE)

    @classmethod
    def parse(cls, value: Union[str, "PriorityClass"]) -> "PriorityClass":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_")
        key = _PRIORITY_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown priority class: {value!r}") from None


_PRIORITY_ORDER = [
    PriorityClass.REALTIME_STRICT,
    PriorityClass.REALTIME_BURSTABLE,
    PriorityClass.SHARED,
    PriorityClass.BULK,
]

# legacy names still accepted in configuration files
_PRIORITY_ALIASES = {
    "realtime": "realtime_strict",
    "interactive": "realtime_burstable",
    "normal": "shared",
}


@dataclass(frozen=True)
class LinkCapacity:
    direction: Direction
    rate_kbps: int

    def __post_init__(self) -> None:
        if isinstance(self.rate_kbps, bool) or not isinstance(self.rate_kbps, int) or self.rate_kbps <= 0:
            raise AllocationError("link capacity must be a positive integer", value=self.rate_kbps)


@dataclass(frozen=True)
class ServiceCurve:
    """HFSC curve; burst fields are only set for realtime tiers."""

    sustained_rate_kbps: float
    burst_rate_kbps: Optional[float] = None
    burst_duration_ms: Optional[int] = None

    @property
    def has_burst(self) -> bool:
        return self.burst_rate_kbps is not None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"sustained_kbps": self.sustained_rate_kbps}
        if self.has_burst:
            data["burst_kbps"] = self.burst_rate_kbps
            data["burst_ms"] = self.burst_duration_ms
        return data


@dataclass(frozen=True)
class TierSpec:
    """A tier as requested by configuration, before any rate is computed."""

    id: int
    label: str
    kind: TierKind
    priority: PriorityClass
    share_percent: Optional[float] = None
    rate_kbps: Optional[int] = None
    rate_percent: Optional[float] = None
    parent_id: int = ROOT_ID


@dataclass(frozen=True)
class Tier:
    id: int
    label: str
    parent_id: int
    kind: TierKind
    priority: PriorityClass
    rate_kbps: int
    curve: ServiceCurve
    buffer_bytes: int
    share_percent: Optional[float] = None
    is_default: bool = False

    @property
    def classid(self) -> str:
        return classid(self.id)

    @property
    def parent_classid(self) -> str:
        return classid(self.parent_id)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "classid": self.classid,
            "label": self.label,
            "parent": self.parent_classid,
            "kind": self.kind.value,
            "priority": self.priority.value,
            "share_percent": self.share_percent,
            "rate_kbps": self.rate_kbps,
            "curve": self.curve.as_dict(),
            "buffer_bytes": self.buffer_bytes,
            "default": self.is_default,
        }


@dataclass(frozen=True)
class ClassTree:
    """Compiled shaping hierarchy. Tiers are stored parent before child."""

    capacity: LinkCapacity
    tiers: Tuple[Tier, ...]
    warnings: Tuple[str, ...] = ()

    def __iter__(self) -> Iterator[Tier]:
        return iter(self.tiers)

    def __len__(self) -> int:
        return len(self.tiers)

    def get(self, tier_id: int) -> Tier:
        for tier in self.tiers:
            if tier.id == tier_id:
                return tier
        raise KeyError(tier_id)

    @property
    def default_tier(self) -> Optional[Tier]:
        for tier in self.tiers:
            if tier.is_default:
                return tier
        return None

    def children(self, parent_id: int) -> List[Tier]:
        return [t for t in self.tiers if t.parent_id == parent_id]

    def labels(self) -> Dict[str, str]:
        labels = {classid(ROOT_ID): "ROOT"}
        labels.update({t.classid: t.label for t in self.tiers})
        return labels

    def as_dict(self) -> Dict[str, Any]:
        return {
            "capacity": {
                "direction": self.capacity.direction.value,
                "rate_kbps": self.capacity.rate_kbps,
            },
            "tiers": [t.as_dict() for t in self.tiers],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class MatchSpec:
    """What a classification rule matches.

    kind is one of ``port`` (protocol plus destination or source port range),
    ``protocol`` (every packet of a protocol) or ``address`` (source or
    destination host/subnet).
    """

    kind: str
    protocol: Optional[str] = None
    port_start: Optional[int] = None
    port_end: Optional[int] = None
    side: Optional[str] = None
    address: Optional[str] = None

    @classmethod
    def port(cls, protocol: str, start: int, end: Optional[int] = None, side: str = "dport") -> "MatchSpec":
        return cls(kind="port", protocol=protocol, port_start=start, port_end=end, side=side)

    @classmethod
    def protocol_only(cls, protocol: str) -> "MatchSpec":
        return cls(kind="protocol", protocol=protocol)

    @classmethod
    def for_address(cls, address: str, side: str) -> "MatchSpec":
        return cls(kind="address", address=address, side=side)

    @property
    def port_range(self) -> Optional[str]:
        if self.port_start is None:
            return None
        if self.port_end is None or self.port_end == self.port_start:
            return str(self.port_start)
        return f"{self.port_start}:{self.port_end}"

    def describe(self) -> str:
        if self.kind == "port":
            return f"{self.protocol} {self.side} {self.port_range}"
        if self.kind == "protocol":
            return f"{self.protocol}"
        return f"{self.side} {self.address}"


@dataclass(frozen=True)
class ClassificationRule:
    match: MatchSpec
    mark: int
    precedence: int

    def describe(self) -> str:
        return f"{self.precedence:>3} {self.match.describe()} -> mark {self.mark}"


@dataclass(frozen=True)
class FwFilter:
    """Binds a firewall mark to its HFSC class."""

    mark: int
    classid: str
    prio: int


@dataclass(frozen=True)
class RuleSet:
    rules: Tuple[ClassificationRule, ...] = ()
    filters: Tuple[FwFilter, ...] = ()

    def __iter__(self) -> Iterator[ClassificationRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def for_mark(self, mark: int) -> List[ClassificationRule]:
        return [r for r in self.rules if r.mark == mark]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "rules": [
                {"precedence": r.precedence, "mark": r.mark, "match": asdict(r.match)}
                for r in self.rules
            ],
            "filters": [asdict(f) for f in self.filters],
        }


class _Unknown:
    """Marks a counter that was missing or could not be parsed."""

    _instance: Optional["_Unknown"] = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __str__(self) -> str:
        return "unknown"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()

Counter = Union[int, _Unknown]
Rate = Union[float, _Unknown]


def is_unknown(value: Any) -> bool:
    return value is UNKNOWN


def _plain(value: Any) -> Any:
    return str(UNKNOWN) if value is UNKNOWN else value


@dataclass(frozen=True)
class ClassStats:
    classid: str
    label: str
    packets: Counter
    bytes: Counter
    dropped: Counter
    rate_kbps: Rate
    captured_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "classid": self.classid,
            "label": self.label,
            "packets": _plain(self.packets),
            "bytes": _plain(self.bytes),
            "dropped": _plain(self.dropped),
            "rate_kbps": _plain(self.rate_kbps),
            "captured_at": self.captured_at.isoformat(),
        }


@dataclass(frozen=True)
class StatsSnapshot:
    """Per-class counters from a single poll. Never merged with older polls."""

    captured_at: datetime
    interface: str
    classes: Tuple[ClassStats, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[ClassStats]:
        return iter(self.classes)

    def __len__(self) -> int:
        return len(self.classes)

    def get(self, class_id: str) -> Optional[ClassStats]:
        for stats in self.classes:
            if stats.classid == class_id:
                return stats
        return None

    def by_label(self, label: str) -> Optional[ClassStats]:
        for stats in self.classes:
            if stats.label == label:
                return stats
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "captured_at": self.captured_at.isoformat(),
            "interface": self.interface,
            "classes": {s.classid: s.as_dict() for s in self.classes},
        }
