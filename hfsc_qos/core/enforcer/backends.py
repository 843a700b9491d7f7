"""tc and iptables backends that apply a compiled plan.

Both backends render argv lists and run them through
:mod:`hfsc_qos.utils.cmd_runner`, so tests can swap in a fake runner.
"""
from __future__ import annotations

import logging
import subprocess
from typing import Callable, List, Optional, Sequence

from ...utils import cmd_runner
from ..errors import BackendApplyError, BackendUnavailableError
from ..models import QDISC_MAJOR, ROOT_ID, ClassificationRule, FwFilter, LinkCapacity, ServiceCurve, classid

logger = logging.getLogger(__name__)

MAX_HOOK_COPIES = 8


def _num(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:.3f}".rstrip("0")


def _kbit(value: float) -> str:
    return f"{_num(value)}kbit"


def curve_args(curve: ServiceCurve) -> List[str]:
    """HFSC class parameters: realtime curve plus link-sharing rate."""
    args: List[str] = []
    if curve.has_burst:
        args += [
            "rt",
            "m1", _kbit(curve.burst_rate_kbps),
            "d", f"{curve.burst_duration_ms}ms",
            "m2", _kbit(curve.sustained_rate_kbps),
        ]
    args += ["ls", "rate", _kbit(curve.sustained_rate_kbps)]
    return args


class ShaperBackend:
    """Interface of the queuing-discipline side."""

    interface: str = ""

    def apply_root(self, capacity: LinkCapacity, default_id: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def apply_class(self, tier_id: int, parent_id: int, curve: ServiceCurve) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def apply_leaf_qdisc(self, tier_id: int, kind: str, limit: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def apply_filter(self, fw_filter: FwFilter) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def clear_all(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def read_counters(self) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def show(self, what: str) -> str:  # pragma: no cover - interface
        raise NotImplementedError


class MarkingBackend:
    """Interface of the packet-marking side."""

    def clear_mark_rules(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def attach(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def apply_mark_rule(self, rule: ClassificationRule) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def apply_log_rule(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def remove_chain(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def list_rules(self) -> str:  # pragma: no cover - interface
        raise NotImplementedError


class _CommandBackend:
    def __init__(self, tool: str, runner: Optional[Callable] = None):
        self.tool = tool
        self._runner = runner

    def _exec(self, args: Sequence[str]):
        cmd = [self.tool, *args]
        runner = self._runner or cmd_runner.run
        try:
            return cmd, runner(cmd, capture_output=True, text=True, timeout=cmd_runner.DEFAULT_TIMEOUT)
        except (OSError, subprocess.SubprocessError) as exc:
            return cmd, subprocess.CompletedProcess(cmd, 127, stdout="", stderr=str(exc))

    def _apply(self, *args: str) -> None:
        cmd, proc = self._exec(args)
        if proc.returncode != 0:
            raise BackendApplyError(cmd, proc.returncode, proc.stderr or "")

    def _try(self, *args: str) -> bool:
        """Run a cleanup command whose failure only means there was nothing to remove."""
        cmd, proc = self._exec(args)
        if proc.returncode != 0:
            logger.debug("Ignored failure of %s: %s", " ".join(cmd), (proc.stderr or "").strip())
            return False
        return True

    def _read(self, *args: str) -> str:
        cmd, proc = self._exec(args)
        if proc.returncode != 0:
            raise BackendUnavailableError(
                f"{' '.join(cmd)} exited {proc.returncode}: {(proc.stderr or '').strip()}"
            )
        return proc.stdout or ""


class TcShaperBackend(_CommandBackend, ShaperBackend):
    """HFSC hierarchy on one egress interface via ``tc``."""

    def __init__(self, interface: str, tc: str = "tc", runner: Optional[Callable] = None):
        super().__init__(tc, runner)
        self.interface = interface

    def apply_root(self, capacity: LinkCapacity, default_id: int) -> None:
        self._apply(
            "qdisc", "add", "dev", self.interface, "root",
            "handle", f"{QDISC_MAJOR}:", "hfsc", "default", str(default_id),
        )
        rate = _kbit(capacity.rate_kbps)
        # ul caps the whole tree at the configured link rate
        self._apply(
            "class", "add", "dev", self.interface, "parent", f"{QDISC_MAJOR}:",
            "classid", classid(ROOT_ID), "hfsc", "sc", "rate", rate, "ul", "rate", rate,
        )

    def apply_class(self, tier_id: int, parent_id: int, curve: ServiceCurve) -> None:
        self._apply(
            "class", "add", "dev", self.interface, "parent", classid(parent_id),
            "classid", classid(tier_id), "hfsc", *curve_args(curve),
        )

    def apply_leaf_qdisc(self, tier_id: int, kind: str, limit: int) -> None:
        if kind == "sfq":
            params = ["sfq", "perturb", "10", "limit", str(limit)]
        elif kind == "bfifo":
            params = ["bfifo", "limit", str(limit)]
        else:
            raise ValueError(f"Unsupported leaf qdisc: {kind}")
        self._apply(
            "qdisc", "add", "dev", self.interface, "parent", classid(tier_id),
            "handle", f"{tier_id}:", *params,
        )

    def apply_filter(self, fw_filter: FwFilter) -> None:
        self._apply(
            "filter", "add", "dev", self.interface, "parent", f"{QDISC_MAJOR}:",
            "protocol", "ip", "prio", str(fw_filter.prio),
            "handle", str(fw_filter.mark), "fw", "classid", fw_filter.classid,
        )

    def clear_all(self) -> None:
        # deleting the root qdisc drops every class and filter below it
        self._try("qdisc", "del", "dev", self.interface, "root")
        self._try("qdisc", "del", "dev", self.interface, "ingress")

    def read_counters(self) -> str:
        return self._read("-s", "class", "show", "dev", self.interface)

    def show(self, what: str) -> str:
        if what not in ("qdisc", "class", "filter"):
            raise ValueError(f"Cannot show {what!r}")
        return self._read(what, "show", "dev", self.interface)


class IptablesMarkingBackend(_CommandBackend, MarkingBackend):
    """Marks egress packets in a dedicated mangle chain hooked to POSTROUTING."""

    def __init__(
        self,
        interface: str,
        chain: str = "QOS_MARK",
        iptables: str = "iptables",
        table: str = "mangle",
        runner: Optional[Callable] = None,
    ):
        super().__init__(iptables, runner)
        self.interface = interface
        self.chain = chain
        self.table = table

    def _hook(self) -> List[str]:
        return ["POSTROUTING", "-o", self.interface, "-j", self.chain]

    def _unhook(self) -> None:
        # drop stale copies too, so attach() leaves exactly one hook
        for _ in range(MAX_HOOK_COPIES):
            if not self._try("-t", self.table, "-D", *self._hook()):
                break

    def clear_mark_rules(self) -> None:
        self._try("-t", self.table, "-N", self.chain)
        self._apply("-t", self.table, "-F", self.chain)
        self._unhook()

    def attach(self) -> None:
        self._apply("-t", self.table, "-A", *self._hook())

    def apply_mark_rule(self, rule: ClassificationRule) -> None:
        self._apply("-t", self.table, "-A", self.chain, *match_args(rule), "-j", "MARK", "--set-mark", str(rule.mark))

    def apply_log_rule(self) -> None:
        self._apply(
            "-t", self.table, "-A", self.chain,
            "-j", "LOG", "--log-prefix", "QOS-MARK: ", "--log-level", "debug",
        )

    def remove_chain(self) -> None:
        self._unhook()
        self._try("-t", self.table, "-F", self.chain)
        self._try("-t", self.table, "-X", self.chain)

    def list_rules(self) -> str:
        return self._read("-t", self.table, "-L", self.chain, "-n", "-v")


def match_args(rule: ClassificationRule) -> List[str]:
    spec = rule.match
    if spec.kind == "address":
        return ["-s" if spec.side == "src" else "-d", spec.address]
    args = ["-p", spec.protocol]
    if spec.kind == "port":
        args += [f"--{spec.side}", spec.port_range]
    return args
