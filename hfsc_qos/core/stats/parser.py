"""Parse ``tc -s class show`` output into labeled counter records.

The output is treated as a sequence of records. A record starts at a
``class <kind> <classid> ...`` line and owns every following line up to the
next class line. Counters are located by the label next to them ("Sent",
"pkt", "dropped", "rate"), never by column, because tc has moved fields
between releases. A label that is absent or followed by garbage resolves to
``UNKNOWN`` instead of zero.

Example record::

    class hfsc 1:10 parent 1:1 rt m1 200Kbit d 10.0ms m2 100Kbit ls m1 0bit d 0us m2 100Kbit
     Sent 123456 bytes 1234 pkt (dropped 3, overlimits 0 requeues 0)
     rate 96Kbit 12pps backlog 0b 0p requeues 0
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..models import UNKNOWN, Counter, Rate

CLASS_PATTERN = re.compile(r"^class\s+(?P<kind>\S+)\s+(?P<classid>[0-9a-fA-F]+:[0-9a-fA-F]*)")
RATE_PATTERN = re.compile(r"^(?P<value>\d+(?:\.\d+)?)(?P<unit>[a-zA-Z]*)$")

# multipliers to kbit/s; tc prints "bps" suffixes for bytes per second
RATE_UNITS = {
    "bit": 0.001,
    "kbit": 1.0,
    "mbit": 1000.0,
    "gbit": 1000000.0,
    "tbit": 1000000000.0,
    "bps": 0.008,
    "kbps": 8.0,
    "mbps": 8000.0,
    "gbps": 8000000.0,
}


def tokenize(line: str) -> List[str]:
    return [t for t in re.split(r"[\s,()]+", line) if t]


@dataclass
class CounterRecord:
    kind: str
    classid: str
    header: List[str] = field(default_factory=list)
    tokens: List[str] = field(default_factory=list)

    def after(self, label: str) -> Optional[str]:
        """Token following the first occurrence of ``label`` in the stats lines."""
        try:
            idx = self.tokens.index(label)
        except ValueError:
            return None
        return self.tokens[idx + 1] if idx + 1 < len(self.tokens) else None

    def before(self, label: str) -> Optional[str]:
        try:
            idx = self.tokens.index(label)
        except ValueError:
            return None
        return self.tokens[idx - 1] if idx > 0 else None

    @property
    def bytes(self) -> Counter:
        return parse_count(self.after("Sent"))

    @property
    def packets(self) -> Counter:
        return parse_count(self.before("pkt"))

    @property
    def dropped(self) -> Counter:
        return parse_count(self.after("dropped"))

    @property
    def rate_kbps(self) -> Rate:
        return parse_rate(self.after("rate"))


def parse_count(token: Optional[str]) -> Counter:
    if token is None or not token.isdigit():
        return UNKNOWN
    return int(token)


def parse_rate(token: Optional[str]) -> Rate:
    if token is None:
        return UNKNOWN
    match = RATE_PATTERN.match(token)
    if not match:
        return UNKNOWN
    unit = (match.group("unit") or "bit").lower()
    factor = RATE_UNITS.get(unit)
    if factor is None:
        return UNKNOWN
    return round(float(match.group("value")) * factor, 3)


def parse_records(text: str, kind: Optional[str] = None) -> List[CounterRecord]:
    """Split ``text`` into records, keeping only classes of ``kind`` when given.

    Leaf qdiscs such as sfq list their flow buckets as classes too
    (``class sfq 10:2e5 parent 10:``); those are not shaping classes.
    """
    records: List[CounterRecord] = []
    current: Optional[CounterRecord] = None
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        match = CLASS_PATTERN.match(stripped)
        if match:
            if kind is not None and match.group("kind") != kind:
                current = None
                continue
            current = CounterRecord(
                kind=match.group("kind"),
                classid=match.group("classid"),
                header=tokenize(stripped),
            )
            records.append(current)
        elif current is not None:
            current.tokens.extend(tokenize(stripped))
    return records
