"""Traffic classification into tier marks."""

from .rules import ClassificationRuleEngine, Flow, classify, expand, split_addresses

__all__ = ["ClassificationRuleEngine", "Flow", "classify", "expand", "split_addresses"]
