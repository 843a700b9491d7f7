"""Ordered backend command plans and their executor."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Tuple

from ..models import ClassTree, RuleSet
from ..shaping.buffer import buffer_packets

logger = logging.getLogger(__name__)

SHAPER = "shaper"
MARKING = "marking"


@dataclass(frozen=True)
class PlanStep:
    """One backend call: ``getattr(backend, op)(*args)``."""

    target: str
    op: str
    args: Tuple[Any, ...] = ()

    def describe(self) -> str:
        shown = ", ".join(_short(a) for a in self.args)
        return f"{self.target}.{self.op}({shown})"


def _short(value: Any) -> str:
    describe = getattr(value, "describe", None)
    if callable(describe):
        return describe()
    return repr(value)


@dataclass(frozen=True)
class ShapingPlan:
    steps: Tuple[PlanStep, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def describe(self) -> List[str]:
        return [step.describe() for step in self.steps]


def build_plan(tree: ClassTree, ruleset: RuleSet, leaf_qdisc: str = "sfq", log_marks: bool = False) -> ShapingPlan:
    """Root first, classes parent before child, then marks, then fw filters.

    The marking chain is flushed inside the plan, so applying the same plan
    twice leaves one copy of every rule.
    """
    default = tree.default_tier
    steps: List[PlanStep] = [
        PlanStep(SHAPER, "apply_root", (tree.capacity, default.id if default else 0)),
    ]
    parents = {t.parent_id for t in tree}
    for tier in tree:
        steps.append(PlanStep(SHAPER, "apply_class", (tier.id, tier.parent_id, tier.curve)))
    if leaf_qdisc != "none":
        for tier in tree:
            if tier.id in parents:
                continue
            limit = buffer_packets(tier.buffer_bytes) if leaf_qdisc == "sfq" else tier.buffer_bytes
            steps.append(PlanStep(SHAPER, "apply_leaf_qdisc", (tier.id, leaf_qdisc, limit)))

    steps.append(PlanStep(MARKING, "clear_mark_rules"))
    steps.append(PlanStep(MARKING, "attach"))
    steps.extend(PlanStep(MARKING, "apply_mark_rule", (rule,)) for rule in ruleset)
    if log_marks:
        steps.append(PlanStep(MARKING, "apply_log_rule"))

    steps.extend(PlanStep(SHAPER, "apply_filter", (f,)) for f in ruleset.filters)
    return ShapingPlan(steps=tuple(steps))


class PlanExecutor:
    """Runs plan steps against a shaper and a marking backend."""

    def __init__(self, shaper, marking):
        self.backends: Dict[str, Any] = {SHAPER: shaper, MARKING: marking}

    def execute(self, plan: ShapingPlan) -> None:
        for index, step in enumerate(plan, start=1):
            logger.debug("[%d/%d] %s", index, len(plan), step.describe())
            getattr(self.backends[step.target], step.op)(*step.args)

    def teardown(self) -> None:
        """Remove everything a plan could have installed. Safe when nothing is."""
        self.backends[SHAPER].clear_all()
        self.backends[MARKING].remove_chain()
