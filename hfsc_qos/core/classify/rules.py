"""Build the ordered mark ruleset for a compiled class tree."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from ipaddress import ip_address, ip_network
from typing import Iterable, List, Mapping, Optional, Sequence, Union

from ..errors import ConfigError
from ..models import ClassificationRule, ClassTree, FwFilter, MatchSpec, RuleSet

logger = logging.getLogger(__name__)

ADDRESS_SIDES = ("src", "dst")


def split_addresses(value: Union[str, Iterable[str]]) -> List[str]:
    """Split a comma or whitespace separated host/subnet list and validate it."""
    if isinstance(value, str):
        items = [p for p in re.split(r"[,\s]+", value) if p]
    else:
        items = [str(p).strip() for p in value if str(p).strip()]
    for item in items:
        try:
            ip_network(item, strict=False)
        except ValueError as exc:
            raise ConfigError(f"Invalid address or subnet: {item!r}") from exc
    return items


def expand(spec: MatchSpec) -> List[MatchSpec]:
    """Address specs without a side cover both directions of a flow."""
    if spec.kind != "address":
        return [spec]
    sides = (spec.side,) if spec.side else ADDRESS_SIDES
    return [MatchSpec.for_address(addr, side) for addr in split_addresses(spec.address or "") for side in sides]


class ClassificationRuleEngine:
    """Orders mark rules by tier priority, then declaration order.

    Precedence numbers start at 1 and follow the emitted order, matching the
    first-match-wins evaluation of a packet filter chain.
    """

    def build(self, tree: ClassTree, matches: Mapping[int, Sequence[MatchSpec]]) -> RuleSet:
        ids = {t.id for t in tree}
        unknown = sorted(set(matches) - ids)
        if unknown:
            raise ConfigError(f"Match rules reference unknown tiers: {unknown}")

        parents = {t.parent_id for t in tree}
        ordered = sorted(tree.tiers, key=lambda t: (t.is_default, t.priority.rank))

        rules: List[ClassificationRule] = []
        filters: List[FwFilter] = []
        for tier in ordered:
            specs = matches.get(tier.id, ())
            if tier.id in parents:
                if specs:
                    raise ConfigError(f"Tier {tier.classid} has child classes and cannot receive traffic")
                continue
            for spec in specs:
                for expanded in expand(spec):
                    rules.append(ClassificationRule(match=expanded, mark=tier.id, precedence=len(rules) + 1))
            if not tier.is_default:
                filters.append(FwFilter(mark=tier.id, classid=tier.classid, prio=len(filters) + 1))

        logger.debug("Built %d mark rules and %d filters", len(rules), len(filters))
        return RuleSet(rules=tuple(rules), filters=tuple(filters))


@dataclass
class Flow:
    """Packet attributes relevant to classification."""

    protocol: str
    src: str = "0.0.0.0"
    dst: str = "0.0.0.0"
    sport: Optional[int] = None
    dport: Optional[int] = None


def _matches(spec: MatchSpec, flow: Flow) -> bool:
    if spec.kind == "address":
        addr = flow.src if spec.side == "src" else flow.dst
        return ip_address(addr) in ip_network(spec.address, strict=False)
    if spec.protocol != flow.protocol.lower():
        return False
    if spec.kind == "protocol":
        return True
    port = flow.dport if spec.side == "dport" else flow.sport
    if port is None:
        return False
    end = spec.port_end if spec.port_end is not None else spec.port_start
    return spec.port_start <= port <= end


def classify(ruleset: RuleSet, flow: Flow, default_mark: Optional[int] = None) -> Optional[int]:
    """Return the mark the ruleset assigns to ``flow``; first match wins."""
    for rule in sorted(ruleset.rules, key=lambda r: r.precedence):
        if _matches(rule.match, flow):
            return rule.mark
    return default_mark
