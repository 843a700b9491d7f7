"""Rate, curve and buffer computation for the HFSC tree."""

from .allocation import AllocationCompiler, default_tier_spec
from .buffer import buffer_packets, buffer_size
from .curves import build_curve

__all__ = ["AllocationCompiler", "default_tier_spec", "buffer_size", "buffer_packets", "build_curve"]
