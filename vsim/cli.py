"""CLI entry points for vsim."""

from __future__ import annotations

import argparse
import dataclasses
import signal
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

from vsim.config import load_topology, parse_env
from vsim.console import GUEST_AGENT_SCRIPT
from vsim.exceptions import Cancelled, ManagerError
from vsim.models import NodeStatus, Settings
from vsim.orchestrator import SessionOrchestrator
from vsim.profiles import BUILTIN_PROFILES, netem_args
from vsim.utils import ensure_directory, log


def build_orchestrator(settings: Settings) -> SessionOrchestrator:
    from vsim.hypervisor import LibvirtHypervisor

    return SessionOrchestrator(settings, LibvirtHypervisor(settings.libvirt_uri))


def show_config(settings: Settings) -> None:
    """Print the resolved runtime settings."""
    for field in dataclasses.fields(settings):
        print(f"  {field.name}: {getattr(settings, field.name)}")


def print_status(statuses: Dict[str, NodeStatus]) -> None:
    if not statuses:
        print("  (no nodes)")
        return
    width = max(len(node_id) for node_id in statuses)
    for node_id, status in statuses.items():
        print(f"  {node_id:<{width}}  {status.summary()}")


class _CancelOnSignal:
    """Turn SIGINT/SIGTERM into a cancellation event for the duration of a block."""

    def __init__(self) -> None:
        self.event = threading.Event()
        self._previous: dict = {}

    def _handler(self, signum, frame) -> None:
        if self.event.is_set():
            return
        log("WARN", f"{signal.Signals(signum).name} received, cancelling")
        self.event.set()

    def __enter__(self) -> threading.Event:
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous[signum] = signal.signal(signum, self._handler)
        return self.event

    def __exit__(self, exc_type, exc, tb) -> None:
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)


def _wait_foreground(orchestrator: SessionOrchestrator) -> None:
    """Hold the session until SIGINT/SIGTERM, then tear it down."""
    with _CancelOnSignal() as stop:
        log("INFO", "Session running in the foreground (Ctrl+C to tear down)")
        while not stop.wait(1.0):
            pass
    orchestrator.down()


def _cmd_up(args, settings: Settings) -> int:
    topology = load_topology(Path(args.topology))
    ensure_directory(settings.state_dir)
    orchestrator = build_orchestrator(settings)
    try:
        with _CancelOnSignal() as cancel:
            statuses = orchestrator.up(topology, cancel=cancel)
        print_status(statuses)
        if args.foreground:
            _wait_foreground(orchestrator)
        return 0 if not any(status.error for status in statuses.values()) else 2
    finally:
        orchestrator.close()


def _cmd_down(args, settings: Settings) -> int:
    orchestrator = build_orchestrator(settings)
    try:
        orchestrator.down()
    finally:
        orchestrator.close()
    return 0


def _cmd_status(args, settings: Settings) -> int:
    orchestrator = build_orchestrator(settings)
    try:
        print_status(orchestrator.status())
    finally:
        orchestrator.close()
    return 0


def _cmd_set_profile(args, settings: Settings) -> int:
    orchestrator = build_orchestrator(settings)
    try:
        if args.all:
            applied = orchestrator.set_profile_all(args.profile)
            log("SUCCESS", f"Profile {args.profile} applied to {len(applied)} port(s)")
        else:
            if not args.node:
                raise ManagerError("set-profile needs a node id or --all")
            orchestrator.set_profile(args.node, args.profile)
            log("SUCCESS", f"Profile {args.profile} applied to {args.node}")
    finally:
        orchestrator.close()
    return 0


def _cmd_exec(args, settings: Settings) -> int:
    words = list(args.command)
    if words and words[0] == "--":
        words = words[1:]
    command = " ".join(words).strip()
    if not command:
        raise ManagerError("exec needs a command")
    orchestrator = build_orchestrator(settings)
    try:
        with _CancelOnSignal() as cancel:
            stdout, status = orchestrator.exec(args.node, command, timeout=args.timeout, cancel=cancel)
    finally:
        orchestrator.close()
    sys.stdout.write(stdout)
    sys.stdout.flush()
    return status


def _cmd_start(args, settings: Settings) -> int:
    orchestrator = build_orchestrator(settings)
    try:
        with _CancelOnSignal() as cancel:
            orchestrator.start_node(args.node, cancel=cancel)
    finally:
        orchestrator.close()
    return 0


def _cmd_stop(args, settings: Settings) -> int:
    orchestrator = build_orchestrator(settings)
    try:
        with _CancelOnSignal() as cancel:
            orchestrator.stop_node(args.node, graceful=not args.force, cancel=cancel)
    finally:
        orchestrator.close()
    return 0


def _cmd_destroy(args, settings: Settings) -> int:
    orchestrator = build_orchestrator(settings)
    try:
        orchestrator.destroy_node(args.node)
    finally:
        orchestrator.close()
    return 0


def _cmd_profiles(args, settings: Settings) -> int:
    catalogue = load_topology(Path(args.topology)).profiles if args.topology else BUILTIN_PROFILES
    width = max(len(name) for name in catalogue)
    for name, profile in sorted(catalogue.items()):
        shaping = " ".join(netem_args(profile)) or "no shaping"
        description = f"  # {profile.description}" if profile.description else ""
        print(f"  {name:<{width}}  {shaping}{description}")
    return 0


def _cmd_render(args, settings: Settings) -> int:
    topology = load_topology(Path(args.topology))
    descriptors = SessionOrchestrator(settings, hypervisor=None).render(topology)
    for descriptor in descriptors:
        if args.node and descriptor.name != args.node:
            continue
        print(f"<!-- {descriptor.name}: {descriptor.performance_note}, digest {descriptor.digest[:12]} -->")
        print(descriptor.xml)
    return 0


def _cmd_agent_script(args, settings: Settings) -> int:
    sys.stdout.write(GUEST_AGENT_SCRIPT)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vsim", description="Nested-virtualization test-bed controller")
    parser.add_argument("--show-config", action="store_true", help="Show resolved settings and exit")
    sub = parser.add_subparsers(dest="subcommand")

    up = sub.add_parser("up", help="Create the fabric and bring every node up")
    up.add_argument("topology", help="Topology YAML file")
    up.add_argument("--foreground", action="store_true", help="Keep running; tear down on Ctrl+C")
    up.set_defaults(handler=_cmd_up)

    sub.add_parser("down", help="Destroy every node and the fabric").set_defaults(handler=_cmd_down)
    sub.add_parser("status", help="Show per-node state, profile and console").set_defaults(handler=_cmd_status)

    set_profile = sub.add_parser("set-profile", help="Apply an impairment profile to a node's port")
    set_profile.add_argument("node", nargs="?", help="Node id")
    set_profile.add_argument("profile", help="Profile name ('default' clears shaping)")
    set_profile.add_argument("--all", action="store_true", help="Apply to every port of the fabric")
    set_profile.set_defaults(handler=_cmd_set_profile)

    exec_ = sub.add_parser("exec", help="Run a shell command inside a node over its console")
    exec_.add_argument("node", help="Node id")
    exec_.add_argument("command", nargs=argparse.REMAINDER, help="Command line")
    exec_.add_argument("--timeout", type=float, default=None, help="Seconds before the command is abandoned")
    exec_.set_defaults(handler=_cmd_exec)

    for name, handler, text in (
        ("start", _cmd_start, "Start a defined or stopped node"),
        ("stop", _cmd_stop, "Shut a node down"),
        ("destroy", _cmd_destroy, "Destroy a node and release its port"),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("node", help="Node id")
        if name == "stop":
            cmd.add_argument("--force", action="store_true", help="Power off without ACPI shutdown")
        cmd.set_defaults(handler=handler)

    profiles = sub.add_parser("profiles", help="List impairment profiles")
    profiles.add_argument("topology", nargs="?", help="Include profiles declared in this topology")
    profiles.set_defaults(handler=_cmd_profiles)

    render = sub.add_parser("render", help="Print the domain XML each node would get")
    render.add_argument("topology", help="Topology YAML file")
    render.add_argument("--node", help="Only this node")
    render.set_defaults(handler=_cmd_render)

    sub.add_parser("agent-script", help="Print the guest-side console agent script").set_defaults(
        handler=_cmd_agent_script
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = parse_env()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(settings)
        return 0
    if not getattr(args, "handler", None):
        parser.print_help()
        return 1

    try:
        return args.handler(args, settings)
    except Cancelled as exc:
        log("WARN", str(exc))
        return 130
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
