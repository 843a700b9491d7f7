"""hfsc-qos - HFSC bandwidth shaping and traffic classification for router uplinks."""

from .core.classify import ClassificationRuleEngine
from .core.config import QoSConfig
from .core.session import ShapingSession
from .core.shaping import AllocationCompiler, buffer_size, build_curve
from .core.stats import StatsCollector

__version__ = "1.0.0"
__all__ = [
    "AllocationCompiler",
    "ClassificationRuleEngine",
    "QoSConfig",
    "ShapingSession",
    "StatsCollector",
    "buffer_size",
    "build_curve",
]
