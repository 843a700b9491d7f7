"""qosctl - start, stop and inspect HFSC shaping on the WAN uplink."""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Iterable, Optional

from rich import box
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from hfsc_qos.core.config import CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH, QoSConfig
from hfsc_qos.core.errors import BackendUnavailableError, QoSError
from hfsc_qos.core.models import UNKNOWN, ClassTree, StatsSnapshot
from hfsc_qos.core.session import ShapingSession
from hfsc_qos.utils import cmd_runner

LOG = logging.getLogger("hfsc_qos.cli")

MUTATING_COMMANDS = ("start", "stop", "restart", "reload", "save", "test")
APPLYING_COMMANDS = ("start", "restart", "reload")

console = Console()


class PreconditionError(QoSError):
    pass


def configure_logging(debug: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if debug else (logging.WARNING if quiet else logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")
    logging.getLogger().setLevel(level)


def build_session(config: QoSConfig) -> ShapingSession:
    return ShapingSession(config)


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------
def _require_root() -> None:
    if os.geteuid() != 0:
        raise PreconditionError("this command requires root privileges")


def check_prerequisites(config: QoSConfig) -> None:
    missing = [tool for tool in (config.tc_path, config.iptables_path, config.ip_path) if not cmd_runner.which(tool)]
    if missing:
        raise PreconditionError(f"missing tools: {' '.join(missing)}")
    for iface in (config.wan_interface, config.lan_interface):
        proc = cmd_runner.run([config.ip_path, "link", "show", iface])
        if proc.returncode != 0:
            raise PreconditionError(f"interface {iface} not found")
    LOG.info("Prerequisites verified")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------
def _fmt(value, unit: str = "") -> str:
    if value is UNKNOWN or value is None:
        return "-"
    if isinstance(value, float):
        value = f"{value:g}"
    return f"{value}{unit}"


def _human_bytes(n) -> str:
    if n is UNKNOWN:
        return "-"
    x = float(n)
    for u in ["B", "KB", "MB", "GB", "TB"]:
        if x < 1024 or u == "TB":
            return f"{x:.1f} {u}" if u != "B" else f"{int(x)} {u}"
        x /= 1024
    return str(n)


def render_tree(tree: ClassTree) -> Table:
    table = Table(title=f"HFSC classes ({tree.capacity.direction.value} {tree.capacity.rate_kbps}kbit)", box=box.SIMPLE)
    for col in ("Class", "Label", "Priority", "Rate", "Curve", "Buffer"):
        table.add_column(col)
    for tier in tree:
        curve = tier.curve
        shape = (
            f"{_fmt(curve.burst_rate_kbps)}kbit/{curve.burst_duration_ms}ms -> {_fmt(curve.sustained_rate_kbps)}kbit"
            if curve.has_burst
            else "ls only"
        )
        table.add_row(
            tier.classid, tier.label, tier.priority.value, f"{tier.rate_kbps}kbit", shape, _human_bytes(tier.buffer_bytes)
        )
    return table


def render_snapshot(snapshot: StatsSnapshot) -> Table:
    table = Table(title=f"{snapshot.interface}  {snapshot.captured_at:%Y-%m-%d %H:%M:%S}", box=box.SIMPLE)
    for col, justify in (("Class", "left"), ("Label", "left"), ("Packets", "right"), ("Bytes", "right"),
                         ("Rate", "right"), ("Dropped", "right")):
        table.add_column(col, justify=justify)
    for stats in snapshot:
        dropped = _fmt(stats.dropped)
        if stats.dropped is not UNKNOWN and stats.dropped:
            dropped = f"[red]{dropped}[/red]"
        table.add_row(
            stats.classid,
            stats.label,
            _fmt(stats.packets),
            _human_bytes(stats.bytes),
            _fmt(stats.rate_kbps, "kbit"),
            dropped,
        )
    return table


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
def cmd_start(session: ShapingSession) -> int:
    LOG.info("Starting QoS on %s", session.config.wan_interface)
    session.start()
    if cmd_test(session) != 0:
        LOG.error("QoS configuration did not pass the self-test")
        return 1
    LOG.info("QoS started")
    return 0


def cmd_stop(session: ShapingSession) -> int:
    session.stop()
    return 0


def cmd_restart(session: ShapingSession) -> int:
    session.stop()
    return cmd_start(session)


def cmd_reload(session: ShapingSession) -> int:
    LOG.info("Reloading QoS configuration")
    session.reload()
    return 0 if cmd_test(session) == 0 else 1


def cmd_status(session: ShapingSession, output_json: bool = False) -> int:
    config = session.config
    try:
        snapshot = session.snapshot()
    except BackendUnavailableError as exc:
        LOG.error("Cannot read class counters: %s", exc)
        snapshot = None

    if output_json:
        data = session.describe()
        data["stats"] = snapshot.as_dict() if snapshot else None
        print(json.dumps(data, indent=2))
        return 0 if snapshot else 1

    summary = Table.grid(padding=(0, 1))
    summary.add_row("Interface", config.wan_interface)
    summary.add_row("Upload", f"{config.capacity.rate_kbps}kbit")
    summary.add_row("Download", f"{config.download_kbps}kbit")
    summary.add_row("Config", str(config.source or "built-in defaults"))
    console.print(Panel(summary, title="QoS configuration", border_style="cyan"))

    tree = session.current_tree or session.compile()[0]
    console.print(render_tree(tree))
    for warning in tree.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    if snapshot:
        console.print(render_snapshot(snapshot))

    for title, what, limit in (("Active filters", "filter", 20), ("Mark rules", "marks", None)):
        try:
            lines = session.read(what).splitlines()
        except BackendUnavailableError as exc:
            lines = [f"unavailable: {exc}"]
        console.print(Panel("\n".join(lines[:limit]) or "(none)", title=title, border_style="dim"))
    return 0 if snapshot else 1


def cmd_monitor(session: ShapingSession, interval: float, stop_event: Optional[threading.Event] = None) -> int:
    stop_event = stop_event or threading.Event()

    def _stop(signum, frame):
        stop_event.set()

    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGTERM, _stop)

    LOG.info("Monitoring %s every %ss (Ctrl+C to quit)", session.config.wan_interface, interval)
    refresh_per_second = 1.0 / interval if interval > 0 else 1.0
    try:
        with Live(Panel("waiting for counters..."), console=console, refresh_per_second=refresh_per_second) as live:
            for snapshot in session.watch(interval, stop_event):
                live.update(render_snapshot(snapshot))
    except KeyboardInterrupt:
        stop_event.set()
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)
    return 0


def cmd_test(session: ShapingSession) -> int:
    results = session.verify()
    failed = 0
    for result in results:
        if result.ok:
            status = "[green]OK[/green]"
        elif result.fatal:
            status = "[red]FAILED[/red]"
            failed += 1
        else:
            status = "[yellow]WARNING[/yellow]"
        console.print(f"Test {result.name}... {status} ({result.detail})")
    if failed:
        LOG.error("%d test(s) failed", failed)
        return 1
    LOG.info("All tests passed")
    return 0


def cmd_save(session: ShapingSession, path: Optional[str]) -> int:
    target = session.save(Path(path) if path else None)
    console.print(f"Saved to {target}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qosctl",
        description="HFSC QoS control for the WAN uplink",
        epilog=f"Configuration: -c, ${CONFIG_PATH_ENV}, or {DEFAULT_CONFIG_PATH}",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output (default)")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only warnings and errors")
    parser.add_argument("-c", "--config", help="Alternate configuration file")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("start", help="Apply QoS")
    sub.add_parser("stop", help="Remove QoS")
    sub.add_parser("restart", help="Remove then apply QoS")
    sub.add_parser("reload", help="Re-read configuration and re-apply")
    p_status = sub.add_parser("status", help="Show configuration and class statistics")
    p_status.add_argument("--json", action="store_true", help="Output JSON")
    p_monitor = sub.add_parser("monitor", help="Real-time class statistics")
    p_monitor.add_argument("interval", nargs="?", type=float, default=2.0, help="Refresh interval in seconds (default: 2)")
    sub.add_parser("test", help="Verify the applied configuration")
    p_save = sub.add_parser("save", help="Save applied state and backend listings as JSON")
    p_save.add_argument("path", nargs="?", help="Output file (default: state_path from the configuration)")
    sub.add_parser("help", help="Show this message")
    # a bare `qosctl` runs status without its subparser
    parser.set_defaults(json=False)
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    command = args.command or "status"

    if command == "monitor" and args.interval <= 0:
        parser.error("monitor interval must be positive")
    if command == "help":
        parser.print_help()
        return 0

    configure_logging(debug=args.debug, quiet=args.quiet and not args.verbose)

    try:
        config = QoSConfig.load(args.config)
        if command in MUTATING_COMMANDS:
            _require_root()
        if command in APPLYING_COMMANDS:
            check_prerequisites(config)
        session = build_session(config)

        if command == "start":
            return cmd_start(session)
        if command == "stop":
            return cmd_stop(session)
        if command == "restart":
            return cmd_restart(session)
        if command == "reload":
            return cmd_reload(session)
        if command == "status":
            return cmd_status(session, output_json=args.json)
        if command == "monitor":
            return cmd_monitor(session, args.interval)
        if command == "test":
            return cmd_test(session)
        if command == "save":
            return cmd_save(session, args.path)
    except QoSError as exc:
        LOG.error("%s", exc)
        return 1
    except OSError as exc:
        LOG.error("%s", exc)
        return 1

    parser.print_help()
    return 1


def run() -> None:  # pragma: no cover - console script entry
    raise SystemExit(main())
