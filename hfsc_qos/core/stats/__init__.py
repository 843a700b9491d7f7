"""Per-class statistics."""

from .collector import StatsCollector
from .parser import CounterRecord, parse_count, parse_rate, parse_records

__all__ = ["StatsCollector", "CounterRecord", "parse_count", "parse_rate", "parse_records"]
