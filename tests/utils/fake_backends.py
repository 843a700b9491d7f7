"""In-memory shaper and marking backends that record what a plan does to them.

The recorded state mimics the kernel: adding an existing class or filter
fails the way ``tc`` does, and clearing drops everything.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from hfsc_qos.core.enforcer.backends import MarkingBackend, ShaperBackend
from hfsc_qos.core.errors import BackendApplyError, BackendUnavailableError
from hfsc_qos.core.models import classid

TC_CLASS_STATS = """\
class hfsc 1:1 root sc m1 0bit d 0us m2 1Mbit ul m1 0bit d 0us m2 1Mbit
 Sent 987654 bytes 4321 pkt (dropped 0, overlimits 0 requeues 0)
 backlog 0b 0p requeues 0
class hfsc 1:10 parent 1:1 leaf 10: rt m1 200Kbit d 10.0ms m2 100Kbit ls m1 0bit d 0us m2 100Kbit
 Sent 123456 bytes 1234 pkt (dropped 3, overlimits 0 requeues 0)
 rate 96Kbit 12pps backlog 0b 0p requeues 0
class hfsc 1:100 parent 1:1 leaf 100: rt m1 750Kbit d 20.0ms m2 500Kbit ls m1 0bit d 0us m2 500Kbit
 Sent 5000 bytes 10 pkt (dropped 0, overlimits 2 requeues 0)
 backlog 0b 0p requeues 0
"""

class RecordingShaper(ShaperBackend):
    def __init__(self, interface: str = "eth0", counters: str = ""):
        self.interface = interface
        self.counters = counters
        self.calls: List[Tuple] = []
        self.root: Optional[Tuple] = None
        self.classes: Dict[str, Tuple] = {}
        self.leaf_qdiscs: Dict[int, Tuple[str, int]] = {}
        self.filters: Dict[int, str] = {}
        self.fail_on: Optional[str] = None
        self.failures_left = 0
        self.unavailable = False

    def _maybe_fail(self, op: str) -> None:
        if self.fail_on == op and self.failures_left:
            self.failures_left -= 1
            raise BackendApplyError(["tc", op], 2, "RTNETLINK answers: Invalid argument")

    def apply_root(self, capacity, default_id):
        self.calls.append(("apply_root", capacity.rate_kbps, default_id))
        self._maybe_fail("apply_root")
        if self.root is not None:
            raise BackendApplyError(["tc", "qdisc", "add"], 2, "RTNETLINK answers: File exists")
        self.root = (capacity.rate_kbps, default_id)
        self.classes["1:1"] = ("1:", capacity.rate_kbps)

    def apply_class(self, tier_id, parent_id, curve):
        self.calls.append(("apply_class", tier_id, parent_id))
        self._maybe_fail("apply_class")
        self.classes[classid(tier_id)] = (classid(parent_id), curve)

    def apply_leaf_qdisc(self, tier_id, kind, limit):
        self.calls.append(("apply_leaf_qdisc", tier_id, kind, limit))
        self.leaf_qdiscs[tier_id] = (kind, limit)

    def apply_filter(self, fw_filter):
        self.calls.append(("apply_filter", fw_filter.mark))
        self._maybe_fail("apply_filter")
        self.filters[fw_filter.mark] = fw_filter.classid

    def clear_all(self):
        self.calls.append(("clear_all",))
        self.root = None
        self.classes.clear()
        self.leaf_qdiscs.clear()
        self.filters.clear()

    def read_counters(self):
        if self.unavailable:
            raise BackendUnavailableError("tc exited 1: Cannot find device")
        return self.counters

    def show(self, what):
        if self.unavailable:
            raise BackendUnavailableError("tc exited 1: Cannot find device")
        if what == "qdisc":
            return "qdisc hfsc 1: root refcnt 2 default 999\n" if self.root else ""
        if what == "class":
            return "".join(f"class hfsc {cid} parent {parent}\n" for cid, (parent, _) in self.classes.items())
        if what == "filter":
            return "".join(
                f"filter parent 1: protocol ip pref 1 fw chain 0 handle 0x{mark:x} classid {cid}\n"
                for mark, cid in self.filters.items()
            )
        raise ValueError(what)


class RecordingMarking(MarkingBackend):
    def __init__(self):
        self.calls: List[Tuple] = []
        self.chain_exists = False
        self.hooks = 0
        self.rules: List = []
        self.log_rule = False
        self.marked_packets = 0

    def clear_mark_rules(self):
        self.calls.append(("clear_mark_rules",))
        self.chain_exists = True
        self.rules.clear()
        self.log_rule = False
        self.hooks = 0

    def attach(self):
        self.calls.append(("attach",))
        self.hooks += 1

    def apply_mark_rule(self, rule):
        self.calls.append(("apply_mark_rule", rule.mark))
        self.rules.append(rule)

    def apply_log_rule(self):
        self.calls.append(("apply_log_rule",))
        self.log_rule = True

    def remove_chain(self):
        self.calls.append(("remove_chain",))
        self.chain_exists = False
        self.rules.clear()
        self.hooks = 0

    def list_rules(self):
        lines = ["Chain QOS_MARK (1 references)"]
        for r in self.rules:
            proto = r.match.protocol or "all"
            pkts = self.marked_packets if proto == "icmp" else 0
            lines.append(f"  {pkts:>3}  {pkts * 84:>4} MARK  {proto}  --  *  eth0  0.0.0.0/0  0.0.0.0/0  MARK set 0x{r.mark:x}")
        return "\n".join(lines)
