"""Configuration loading for the shaper.

The YAML file is merged over :data:`DEFAULT_CONFIG`, validated with
jsonschema and turned into an immutable :class:`QoSConfig` that is passed
explicitly to the compiler, the rule engine and the session.
"""
from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import jsonschema
import yaml

from .errors import ConfigError
from .models import (
    DEFAULT_TIER_ID,
    ROOT_ID,
    Direction,
    LinkCapacity,
    MatchSpec,
    PriorityClass,
    TierKind,
    TierSpec,
)

DEFAULT_CONFIG_PATH = Path("/etc/hfsc-qos/qos.yaml")
CONFIG_PATH_ENV = "QOS_CONFIG_PATH"

LEAF_QDISCS = ("sfq", "bfifo", "none")
PROTOCOLS = ("tcp", "udp", "icmp", "sctp", "udplite")

DEFAULT_CONFIG: Dict[str, Any] = {
    "interfaces": {"wan": "eth0", "lan": "br-lan"},
    # set about 5% below the measured line rate to keep the queue local
    "bandwidth": {"upload_kbps": 1000, "download_kbps": 10000},
    "rtt_ms": 50,
    "leaf_qdisc": "sfq",
    "reserved": [
        {
            "id": 10,
            "label": "Interactive",
            "priority": "realtime_strict",
            "rate_percent": 10,
            "matches": [
                {"protocol": "tcp", "dport": 22},
                {"protocol": "tcp", "sport": 22},
                {"protocol": "udp", "dport": 53},
                {"protocol": "tcp", "dport": 53},
                {"protocol": "icmp"},
                {"protocol": "udp", "dport": 123},
            ],
        },
        {
            "id": 20,
            "label": "VoIP",
            "priority": "realtime_strict",
            "rate_percent": 20,
            "matches": [
                {"protocol": "udp", "dport": "5060:5061"},
                {"protocol": "udp", "dport": "10000:20000"},
                {"protocol": "udp", "dport": "3478:3481"},
            ],
        },
    ],
    "tiers": [
        {"id": 100, "label": "High", "share": 50, "priority": "realtime_burstable", "addresses": "192.168.99.3/32"},
        {"id": 200, "label": "Medium", "share": 25, "priority": "shared", "addresses": "192.168.99.4/32"},
        {"id": 300, "label": "Low", "share": 12, "priority": "bulk", "addresses": "192.168.99.5/32"},
    ],
    # no share: the default tier takes what its siblings leave (13% here)
    "default": {"id": DEFAULT_TIER_ID, "label": "Default", "priority": "bulk"},
    "commands": {"tc": "tc", "iptables": "iptables", "ip": "ip"},
    "marking": {"chain": "QOS_MARK", "log_marks": False},
    "state_path": "/var/lib/hfsc-qos/last_applied.json",
    "apply_retries": 1,
}

_PORT = {"type": ["integer", "string"]}
_ADDRESSES = {"type": ["string", "array"], "items": {"type": "string"}}

MATCH_SCHEMA = {
    "type": "object",
    "properties": {
        "protocol": {"type": "string", "enum": list(PROTOCOLS)},
        "dport": _PORT,
        "sport": _PORT,
        "src": {"type": "string"},
        "dst": {"type": "string"},
    },
    "additionalProperties": False,
}

TIER_SCHEMA = {
    "type": "object",
    "required": ["id", "label"],
    "properties": {
        "id": {"type": "integer"},
        "label": {"type": "string", "minLength": 1},
        "priority": {"type": "string"},
        "share": {"type": "number"},
        "rate_kbps": {"type": "integer"},
        "rate_percent": {"type": "number"},
        "parent": {"type": "integer"},
        "matches": {"type": "array", "items": MATCH_SCHEMA},
        "addresses": _ADDRESSES,
    },
    "additionalProperties": False,
}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "interfaces": {
            "type": "object",
            "properties": {"wan": {"type": "string"}, "lan": {"type": "string"}},
        },
        "bandwidth": {
            "type": "object",
            "properties": {
                "upload_kbps": {"type": "integer", "minimum": 1},
                "download_kbps": {"type": "integer", "minimum": 1},
            },
        },
        "rtt_ms": {"type": "integer", "minimum": 1},
        "leaf_qdisc": {"type": "string", "enum": list(LEAF_QDISCS)},
        "reserved": {"type": "array", "items": TIER_SCHEMA},
        "tiers": {"type": "array", "items": TIER_SCHEMA},
        "default": TIER_SCHEMA,
        "commands": {"type": "object", "additionalProperties": {"type": "string"}},
        "marking": {
            "type": "object",
            "properties": {"chain": {"type": "string"}, "log_marks": {"type": "boolean"}},
        },
        "state_path": {"type": "string"},
        "apply_retries": {"type": "integer", "minimum": 0},
    },
    "additionalProperties": False,
}


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _parse_port(value: Any) -> Tuple[int, Optional[int]]:
    if isinstance(value, int):
        start, end = value, None
    else:
        match = re.fullmatch(r"\s*(\d+)\s*(?:[:-]\s*(\d+))?\s*", str(value))
        if not match:
            raise ConfigError(f"Invalid port or port range: {value!r}")
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else None
    for port in (start, end):
        if port is not None and not 0 < port <= 65535:
            raise ConfigError(f"Port out of range: {value!r}")
    if end is not None and end < start:
        raise ConfigError(f"Port range is reversed: {value!r}")
    return start, end


def _parse_match(entry: Mapping[str, Any]) -> MatchSpec:
    sides = [k for k in ("dport", "sport", "src", "dst") if k in entry]
    if len(sides) > 1:
        raise ConfigError(f"Match entry mixes {sides}; use one entry per side")
    if sides and sides[0] in ("src", "dst"):
        return MatchSpec.for_address(entry[sides[0]], sides[0])
    protocol = entry.get("protocol")
    if not protocol:
        raise ConfigError(f"Match entry needs a protocol: {dict(entry)}")
    if not sides:
        return MatchSpec.protocol_only(protocol)
    if protocol not in ("tcp", "udp", "sctp", "udplite"):
        raise ConfigError(f"Protocol {protocol} has no ports")
    start, end = _parse_port(entry[sides[0]])
    return MatchSpec.port(protocol, start, end, side=sides[0])


def _parse_tier(entry: Mapping[str, Any], kind: TierKind, default_priority: str) -> Tuple[TierSpec, List[MatchSpec]]:
    try:
        priority = PriorityClass.parse(entry.get("priority", default_priority))
    except ValueError as exc:
        raise ConfigError(f"Tier {entry.get('id')}: {exc}") from exc
    spec = TierSpec(
        id=entry["id"],
        label=entry["label"],
        kind=kind,
        priority=priority,
        share_percent=entry.get("share") if kind is TierKind.PERCENTAGE else None,
        rate_kbps=entry.get("rate_kbps"),
        rate_percent=entry.get("rate_percent"),
        parent_id=entry.get("parent", ROOT_ID),
    )
    matches = [_parse_match(m) for m in entry.get("matches", [])]
    addresses = entry.get("addresses")
    if addresses:
        joined = addresses if isinstance(addresses, str) else ",".join(addresses)
        matches.append(MatchSpec.for_address(joined, None))
    return spec, matches


@dataclass(frozen=True)
class QoSConfig:
    """Immutable shaper settings built once at startup."""

    wan_interface: str
    lan_interface: str
    capacity: LinkCapacity
    download_kbps: int
    rtt_ms: int
    leaf_qdisc: str
    reserved: Tuple[TierSpec, ...]
    tiers: Tuple[TierSpec, ...]
    default: TierSpec
    matches: Mapping[int, Tuple[MatchSpec, ...]]
    tc_path: str = "tc"
    iptables_path: str = "iptables"
    ip_path: str = "ip"
    mark_chain: str = "QOS_MARK"
    log_marks: bool = False
    state_path: Path = Path(DEFAULT_CONFIG["state_path"])
    apply_retries: int = 1
    source: Optional[Path] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_file(cls, path: str | Path) -> "QoSConfig":
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text())
        except OSError as exc:
            raise ConfigError(f"Cannot read configuration {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a mapping")
        return cls.from_mapping(data, source=path)

    @classmethod
    def load(cls, path: Optional[str | Path] = None) -> "QoSConfig":
        """Load ``path``, else $QOS_CONFIG_PATH, else the system file if present."""
        if path:
            return cls.from_file(path)
        env_path = os.environ.get(CONFIG_PATH_ENV)
        if env_path:
            return cls.from_file(env_path)
        if DEFAULT_CONFIG_PATH.exists():
            return cls.from_file(DEFAULT_CONFIG_PATH)
        return cls.from_mapping({})

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], source: Optional[Path] = None) -> "QoSConfig":
        raw = _merge(DEFAULT_CONFIG, data)
        try:
            jsonschema.validate(raw, CONFIG_SCHEMA)
        except jsonschema.ValidationError as exc:
            where = "/".join(str(p) for p in exc.absolute_path) or "<root>"
            raise ConfigError(f"Invalid configuration at {where}: {exc.message}") from exc
        matches: Dict[int, Tuple[MatchSpec, ...]] = {}

        def collect(entries, kind, default_priority):
            specs = []
            for entry in entries:
                spec, spec_matches = _parse_tier(entry, kind, default_priority)
                specs.append(spec)
                if spec_matches:
                    matches[spec.id] = tuple(spec_matches)
            return tuple(specs)

        reserved = collect(raw["reserved"], TierKind.RESERVED, "realtime_strict")
        tiers = collect(raw["tiers"], TierKind.PERCENTAGE, "shared")
        (default,) = collect([raw["default"]], TierKind.PERCENTAGE, "bulk")

        commands = raw["commands"]
        return cls(
            wan_interface=raw["interfaces"]["wan"],
            lan_interface=raw["interfaces"]["lan"],
            capacity=LinkCapacity(Direction.UPLOAD, raw["bandwidth"]["upload_kbps"]),
            download_kbps=raw["bandwidth"]["download_kbps"],
            rtt_ms=raw["rtt_ms"],
            leaf_qdisc=raw["leaf_qdisc"],
            reserved=reserved,
            tiers=tiers,
            default=default,
            matches=MappingProxyType(matches),
            tc_path=commands.get("tc", "tc"),
            iptables_path=commands.get("iptables", "iptables"),
            ip_path=commands.get("ip", "ip"),
            mark_chain=raw["marking"]["chain"],
            log_marks=bool(raw["marking"]["log_marks"]),
            state_path=Path(raw["state_path"]),
            apply_retries=raw["apply_retries"],
            source=source,
            raw=MappingProxyType(raw),
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.raw.get(key, default)
