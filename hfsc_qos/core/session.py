"""Shaping session: compile, apply, observe.

A session owns the live class tree, ruleset and latest counters for one
interface. Reconfiguration is single-writer across processes: a second
request while one is in flight is rejected, and counter reads wait until the
backend has been rebuilt. Both use flock(2) on files beside ``state_path``.
"""
from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .classify.rules import ClassificationRuleEngine
from .config import QoSConfig
from .enforcer.backends import IptablesMarkingBackend, TcShaperBackend
from .enforcer.plan import PlanExecutor, ShapingPlan, build_plan
from .errors import (
    BackendApplyError,
    BackendUnavailableError,
    CompilationError,
    ConfigError,
    ReconfigurationInProgressError,
)
from .models import ClassTree, RuleSet, StatsSnapshot
from .shaping.allocation import AllocationCompiler
from .stats.collector import StatsCollector

logger = logging.getLogger(__name__)

WRITER_LOCK = "reconfigure.lock"
READ_LOCK = "read.lock"

BackendKey = Tuple[str, str, str, str]


def backend_key(config: QoSConfig) -> BackendKey:
    """The configuration fields a pair of backends is bound to."""
    return (config.wan_interface, config.tc_path, config.iptables_path, config.mark_chain)


def default_backends(config: QoSConfig) -> Tuple[TcShaperBackend, IptablesMarkingBackend]:
    shaper = TcShaperBackend(config.wan_interface, tc=config.tc_path)
    marking = IptablesMarkingBackend(config.wan_interface, chain=config.mark_chain, iptables=config.iptables_path)
    return shaper, marking


@contextlib.contextmanager
def file_lock(path: Path, operation: int):
    """Hold ``flock(operation)`` on ``path``; closing the file releases it.

    With ``LOCK_NB`` a held lock raises :class:`BlockingIOError`.
    """
    with path.open("a+") as fh:
        fcntl.flock(fh.fileno(), operation)
        yield fh


class ReconfigureFence:
    """Readers share; a reconfiguration waits for them and then excludes them."""

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writing = False

    @contextlib.contextmanager
    def reading(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @contextlib.contextmanager
    def writing(self):
        with self._cond:
            self._writing = True
            while self._readers:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


@dataclass(frozen=True)
class AppliedState:
    tree: Optional[ClassTree] = None
    rules: Optional[RuleSet] = None
    plan: Optional[ShapingPlan] = None
    applied_at: Optional[datetime] = None


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str = ""
    # a failed non-fatal check is reported as a warning
    fatal: bool = True


def _icmp_marked(listing: str) -> bool:
    # iptables -L -n -v columns: pkts bytes target prot ...
    for line in listing.splitlines():
        fields = line.split()
        if len(fields) > 3 and fields[2] == "MARK" and fields[3] in ("icmp", "1") and fields[0] != "0":
            return True
    return False


class ShapingSession:
    """Compile, apply and observe shaping for one configuration.

    Backends built from the configuration are rebuilt when a reload moves
    the interface, the tool paths or the mark chain. Backends passed in by
    the caller stay put unless ``backend_factory`` says how to rebuild them.
    """

    def __init__(
        self,
        config: QoSConfig,
        shaper=None,
        marking=None,
        compiler: Optional[AllocationCompiler] = None,
        rule_engine: Optional[ClassificationRuleEngine] = None,
        backend_factory: Optional[Callable[[QoSConfig], Tuple[Any, Any]]] = None,
    ):
        self.config = config
        if backend_factory is None and shaper is None and marking is None:
            backend_factory = default_backends
        self._backend_factory = backend_factory
        if shaper is None or marking is None:
            built_shaper, built_marking = (backend_factory or default_backends)(config)
            shaper = shaper or built_shaper
            marking = marking or built_marking
        self.shaper = shaper
        self.marking = marking
        self._bound_key = backend_key(config)
        self.compiler = compiler or AllocationCompiler(rtt_ms=config.rtt_ms)
        self.rule_engine = rule_engine or ClassificationRuleEngine()
        self.executor = PlanExecutor(self.shaper, self.marking)
        self._writer = threading.Lock()
        self._fence = ReconfigureFence()
        self._state = AppliedState()
        self._latest: Optional[StatsSnapshot] = None
        self.collector = StatsCollector(
            self.shaper,
            labels=self._labels_for(config),
            interface=config.wan_interface,
            guard=self._shared,
        )

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    @property
    def current_tree(self) -> Optional[ClassTree]:
        return self._state.tree

    @property
    def current_rules(self) -> Optional[RuleSet]:
        return self._state.rules

    @property
    def latest_snapshot(self) -> Optional[StatsSnapshot]:
        return self._latest

    # ------------------------------------------------------------------
    # compilation
    # ------------------------------------------------------------------
    def compile(self, config: Optional[QoSConfig] = None) -> Tuple[ClassTree, RuleSet, ShapingPlan]:
        """Pure: never touches a backend."""
        config = config or self.config
        compiler = self.compiler
        if compiler.rtt_ms != config.rtt_ms:
            compiler = AllocationCompiler(rtt_ms=config.rtt_ms)
        tree = compiler.compile(config.capacity, config.reserved, config.tiers, config.default)
        rules = self.rule_engine.build(tree, config.matches)
        plan = build_plan(tree, rules, leaf_qdisc=config.leaf_qdisc, log_marks=config.log_marks)
        return tree, rules, plan

    def _labels_for(self, config: QoSConfig) -> Dict[str, str]:
        try:
            tree = self.compiler.compile(config.capacity, config.reserved, config.tiers, config.default)
        except CompilationError as exc:
            logger.debug("No class labels, configuration does not compile: %s", exc)
            return {}
        return tree.labels()

    # ------------------------------------------------------------------
    # reconfiguration
    # ------------------------------------------------------------------
    @property
    def lock_dir(self) -> Path:
        return Path(self.config.state_path).parent

    @contextlib.contextmanager
    def _exclusive(self):
        if not self._writer.acquire(blocking=False):
            raise ReconfigurationInProgressError("another reconfiguration is in progress")
        try:
            lock_dir = self.lock_dir
            lock_dir.mkdir(parents=True, exist_ok=True)
            with contextlib.ExitStack() as stack:
                try:
                    stack.enter_context(file_lock(lock_dir / WRITER_LOCK, fcntl.LOCK_EX | fcntl.LOCK_NB))
                except BlockingIOError:
                    raise ReconfigurationInProgressError(
                        f"another process holds {lock_dir / WRITER_LOCK}"
                    ) from None
                # local readers drain first, then readers in other processes
                stack.enter_context(self._fence.writing())
                stack.enter_context(file_lock(lock_dir / READ_LOCK, fcntl.LOCK_EX))
                yield
        finally:
            self._writer.release()

    @contextlib.contextmanager
    def _shared(self):
        with self._fence.reading(), contextlib.ExitStack() as stack:
            path = self.lock_dir / READ_LOCK
            try:
                fh = stack.enter_context(path.open("r"))
            except OSError as exc:
                # nothing has reconfigured yet, or the directory is not ours to read
                logger.debug("Reading without %s: %s", path, exc)
            else:
                fcntl.flock(fh.fileno(), fcntl.LOCK_SH)
            yield

    def start(self) -> ClassTree:
        return self._reconfigure(self.config)

    def reload(self, config: Optional[QoSConfig] = None) -> ClassTree:
        if config is None and self.config.source is not None:
            config = QoSConfig.from_file(self.config.source)
        return self._reconfigure(config or self.config)

    def _reconfigure(self, config: QoSConfig) -> ClassTree:
        # compile errors surface here, before the live tree is touched
        tree, rules, plan = self.compile(config)
        rebind = backend_key(config) != self._bound_key
        if rebind and self._backend_factory is None:
            raise ConfigError(
                f"backends are bound to {self._bound_key[0]} (chain {self._bound_key[3]}) "
                "and were supplied without a factory to rebuild them; start a new session"
            )
        attempts = 1 + config.apply_retries
        with self._exclusive():
            if rebind:
                self.executor.teardown()
                self._rebind(config)
            failure: Optional[BackendApplyError] = None
            for attempt in range(1, attempts + 1):
                self.executor.teardown()
                try:
                    self.executor.execute(plan)
                except BackendApplyError as exc:
                    failure = exc
                    logger.error("Applying shaping plan failed (attempt %d/%d): %s", attempt, attempts, exc)
                    continue
                self.config = config
                self._state = AppliedState(tree, rules, plan, datetime.now(timezone.utc))
                self.collector.labels = tree.labels()
                logger.info(
                    "Applied %d classes and %d mark rules on %s (%skbit)",
                    len(tree), len(rules), config.wan_interface, tree.capacity.rate_kbps,
                )
                break
            else:
                self.executor.teardown()
                self._state = AppliedState()
                logger.error("Shaping left cleared on %s", config.wan_interface)
                raise failure
        self._persist()
        return tree

    def _rebind(self, config: QoSConfig) -> None:
        old = self._bound_key
        self.shaper, self.marking = self._backend_factory(config)
        self.executor = PlanExecutor(self.shaper, self.marking)
        self.collector.backend = self.shaper
        self.collector.interface = config.wan_interface
        self._bound_key = backend_key(config)
        logger.info("Shaping moved from %s to %s", old[0], config.wan_interface)

    def stop(self) -> None:
        with self._exclusive():
            self.executor.teardown()
            self._state = AppliedState()
        logger.info("Shaping removed from %s", self.config.wan_interface)

    # ------------------------------------------------------------------
    # observation
    # ------------------------------------------------------------------
    def snapshot(self) -> StatsSnapshot:
        snapshot = self.collector.snapshot()
        self._latest = snapshot
        return snapshot

    def watch(self, interval: float, stop_event: Optional[threading.Event] = None) -> Iterator[StatsSnapshot]:
        for snapshot in self.collector.watch(interval, stop_event):
            self._latest = snapshot
            yield snapshot

    def read(self, what: str) -> str:
        """Raw backend listing: ``qdisc``, ``class``, ``filter`` or ``marks``."""
        with self._shared():
            if what == "marks":
                return self.marking.list_rules()
            return self.shaper.show(what)

    def verify(self) -> List[CheckResult]:
        """Check that what the backend holds matches the compiled configuration."""
        tree, rules, _ = self.compile()
        checks = [
            ("qdisc", "qdisc", lambda out: "qdisc hfsc 1:" in out, "HFSC root qdisc", True),
            (
                "classes",
                "class",
                lambda out: out.count("class hfsc") >= len(tree) + 1,
                f"{len(tree) + 1} classes",
                True,
            ),
            (
                "filters",
                "filter",
                lambda out: sum(1 for line in out.splitlines() if " fw" in line and "handle" in line)
                >= len(rules.filters),
                f"{len(rules.filters)} fw filters",
                True,
            ),
            ("marks", "marks", lambda out: "MARK" in out, "MARK rules", True),
        ]
        if any(rule.match.protocol == "icmp" for rule in rules):
            # an idle ICMP counter only warns
            checks.append(("icmp_marks", "marks", _icmp_marked, "ICMP packets counted by a MARK rule", False))
        results: List[CheckResult] = []
        for name, what, predicate, expected, fatal in checks:
            try:
                output = self.read(what)
            except BackendUnavailableError as exc:
                results.append(CheckResult(name, False, str(exc), fatal))
                continue
            ok = predicate(output)
            results.append(CheckResult(name, ok, f"expected {expected}", fatal))
            logger.debug("Check %s: %s", name, "ok" if ok else "failed")
        return results

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def describe(self) -> Dict[str, Any]:
        state = self._state
        if state.tree is not None:
            tree, rules, plan = state.tree, state.rules, state.plan
        else:
            tree, rules, plan = self.compile()
        return {
            "interface": self.config.wan_interface,
            "applied_at": state.applied_at.isoformat() if state.applied_at else None,
            "tree": tree.as_dict(),
            "rules": rules.as_dict(),
            "plan": plan.describe(),
        }

    def save(self, path: Optional[Path] = None, include_backend: bool = True) -> Path:
        """Write the applied tree, rules and (optionally) raw backend listings as JSON."""
        data = self.describe()
        data["saved_at"] = datetime.now(timezone.utc).isoformat()
        if include_backend:
            dumps: Dict[str, Optional[str]] = {}
            for what in ("qdisc", "class", "filter", "marks"):
                try:
                    dumps[what] = self.read(what)
                except BackendUnavailableError as exc:
                    logger.warning("Could not read %s for saving: %s", what, exc)
                    dumps[what] = None
            data["backend"] = dumps
        path = Path(path or self.config.state_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        with tmp.open("w") as fh:
            json.dump(data, fh, indent=2)
        tmp.replace(path)
        logger.info("Saved shaping state to %s", path)
        return path

    def _persist(self) -> None:
        try:
            self.save(include_backend=False)
        except OSError:
            logger.exception("Failed saving last-applied shaping state")


def load_saved(path: Path) -> Dict[str, Any]:
    with Path(path).open() as fh:
        return json.load(fh)
