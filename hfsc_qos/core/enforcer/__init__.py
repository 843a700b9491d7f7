"""Backend application of compiled shaping plans."""

from .backends import IptablesMarkingBackend, MarkingBackend, ShaperBackend, TcShaperBackend
from .plan import PlanExecutor, PlanStep, ShapingPlan, build_plan

__all__ = [
    "IptablesMarkingBackend",
    "MarkingBackend",
    "ShaperBackend",
    "TcShaperBackend",
    "PlanExecutor",
    "PlanStep",
    "ShapingPlan",
    "build_plan",
]
