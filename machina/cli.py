"""CLI entry points for machina."""

from __future__ import annotations

import argparse
from typing import List, Optional, Sequence

from machina.config import Settings, default_arch, parse_env
from machina.console import follow
from machina.constants import (
    ARCH_ALIASES,
    DEFAULT_CPUS,
    DEFAULT_MACHINE_NAME,
    DEFAULT_MEMORY,
    DEFAULT_RELEASE,
    GB,
    MAX_CPUS,
    MAX_MEMORY,
)
from machina.distribution import DistributionArtifacts
from machina.exceptions import (
    AlreadyRunningError,
    ManagerError,
    NotFoundError,
    ShutdownEscalationError,
)
from machina.keys import generate_keypair
from machina.launcher import DaemonLauncher
from machina.models import Distribution, MachineSpec, MachineState
from machina.network import derive_mac, resolve_ip
from machina.process import LivenessTracker, PidRecord
from machina.shutdown import ShutdownCoordinator, ShutdownResult
from machina.store import SpecStore
from machina.utils import log

LIST_HEADER = ("name", "status", "ip", "release", "arch", "cpu", "memory", "folder")


def _bounded_int(low: int, high: int):
    def parse(raw: str) -> int:
        try:
            value = int(raw)
        except ValueError:
            raise argparse.ArgumentTypeError(f"'{raw}' is not an integer")
        if not low <= value <= high:
            raise argparse.ArgumentTypeError(f"must be between {low} and {high} (got {value})")
        return value

    return parse


def _add_machine_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--cpu", type=_bounded_int(1, MAX_CPUS), default=DEFAULT_CPUS, help="CPUs to allocate")
    parser.add_argument(
        "-m",
        "--memory",
        type=_bounded_int(1, MAX_MEMORY // GB),
        default=DEFAULT_MEMORY // GB,
        help="Memory in GB",
    )
    parser.add_argument("-r", "--release", default=DEFAULT_RELEASE, help="Ubuntu release name (default: focal)")
    parser.add_argument(
        "-a",
        "--arch",
        choices=sorted(ARCH_ALIASES),
        default=None,
        help="Image architecture (default: host architecture)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="machina", description="Lightweight virtual machines for your shell")
    parser.set_defaults(handler=None)
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    init = commands.add_parser("init", help="Generate the operator SSH keypair")
    init.add_argument("--force", action="store_true", help="Replace an existing keypair")
    init.set_defaults(handler=cmd_init)

    launch = commands.add_parser("launch", help="Create and start a new machine")
    launch.add_argument("-n", "--name", default=DEFAULT_MACHINE_NAME, help="Unique machine name")
    _add_machine_options(launch)
    launch.add_argument("-f", "--follow", action="store_true", help="Follow the machine output after launch")
    launch.set_defaults(handler=cmd_launch)

    start = commands.add_parser("start", help="Start an existing machine")
    start.add_argument("name", help="Machine name")
    start.add_argument("-f", "--follow", action="store_true", help="Follow the machine output after start")
    start.set_defaults(handler=cmd_start)

    stop = commands.add_parser("stop", help="Stop a running machine")
    stop.add_argument("name", help="Machine name")
    stop.set_defaults(handler=cmd_stop)

    listing = commands.add_parser("list", help="List machines")
    listing.set_defaults(handler=cmd_list)

    output = commands.add_parser("log", help="Follow the console output of a machine")
    output.add_argument("name", help="Machine name")
    output.set_defaults(handler=cmd_log)

    daemon = commands.add_parser("daemon", help="Worker commands (used internally)")
    daemon_commands = daemon.add_subparsers(dest="daemon_command", metavar="COMMAND")
    worker = daemon_commands.add_parser("launch", help="Run a machine in the foreground")
    worker.add_argument("-n", "--name", required=True, help="Machine name")
    _add_machine_options(worker)
    worker.set_defaults(handler=cmd_daemon_launch)
    return parser


def spec_from_args(args: argparse.Namespace) -> MachineSpec:
    arch = args.arch or default_arch()
    return MachineSpec(
        name=args.name,
        distribution=Distribution(release=args.release, arch=arch),
        cpu=args.cpu,
        ram=args.memory * GB,
    )


def _machine_options(spec: MachineSpec) -> List[str]:
    return [
        "-c", str(spec.cpu),
        "-m", str(spec.ram // GB),
        "-r", spec.distribution.release,
        "-a", spec.distribution.arch,
    ]


def follow_output(store: SpecStore, name: str) -> int:
    try:
        for line in follow(store.output_path(name)):
            print(line, flush=True)
    except KeyboardInterrupt:
        pass
    return 0


def cmd_init(args: argparse.Namespace, settings: Settings) -> int:
    log("INFO", "Initializing operator keypair")
    generate_keypair(settings.ssh_key_path, force=args.force)
    return 0


def cmd_launch(args: argparse.Namespace, settings: Settings) -> int:
    store = SpecStore(settings.workdir)
    if store.exists(args.name):
        raise ManagerError(f"Machine {args.name} already exists (use 'machina start {args.name}')")
    spec = spec_from_args(args)
    DistributionArtifacts(settings.workdir, retries=settings.download_retries).ensure(spec.distribution)
    handle = DaemonLauncher(store).launch_detached(spec.name, _machine_options(spec))
    log("SUCCESS", f"Machine {spec.name} is launching (worker pid {handle.pid}, log {handle.log_path})")
    if args.follow:
        return follow_output(store, spec.name)
    return 0


def cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    store = SpecStore(settings.workdir)
    spec = store.load(args.name)
    record = PidRecord(store.pid_path(spec.name))
    if LivenessTracker().reclaim(record) is MachineState.RUNNING:
        raise AlreadyRunningError(f"Machine {spec.name} is already running")
    DistributionArtifacts(settings.workdir, retries=settings.download_retries).ensure(spec.distribution)
    handle = DaemonLauncher(store).launch_detached(spec.name)
    log("SUCCESS", f"Machine {spec.name} is starting (worker pid {handle.pid}, log {handle.log_path})")
    if args.follow:
        return follow_output(store, spec.name)
    return 0


def cmd_stop(args: argparse.Namespace, settings: Settings) -> int:
    store = SpecStore(settings.workdir)
    result = ShutdownCoordinator(store, settings).stop(args.name)
    if result is ShutdownResult.ALREADY_STOPPED:
        log("INFO", f"Machine {args.name} is stopped")
    return 0


def machine_row(store: SpecStore, tracker: LivenessTracker, settings: Settings, name: str) -> List[str]:
    """One ``list`` row; unreadable machines are reported as ``error``."""
    try:
        spec = store.load(name)
    except ManagerError:
        return [name, "error"] + [""] * (len(LIST_HEADER) - 2)
    try:
        status = tracker.probe(PidRecord(store.pid_path(name))).value
    except ManagerError:
        status = MachineState.ERROR.value
    try:
        ip = resolve_ip(derive_mac(name), settings.leases_path)
    except ManagerError:
        ip = ""
    return [
        spec.name,
        status,
        ip,
        spec.distribution.release,
        spec.distribution.arch,
        str(spec.cpu),
        f"{spec.ram // GB} GB",
        str(store.machine_dir(name, create=False)),
    ]


def format_table(rows: Sequence[Sequence[str]], header: Sequence[str] = LIST_HEADER) -> List[str]:
    widths = [len(title) for title in header]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def render(cells: Sequence[str]) -> str:
        return "  ".join(f"{cell:<{widths[idx]}}" for idx, cell in enumerate(cells)).rstrip()

    lines = [render([title.upper() for title in header])]
    lines.extend(render(row) for row in rows)
    return lines


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    store = SpecStore(settings.workdir)
    tracker = LivenessTracker(log=lambda level, message: None)
    names = store.list_machines()
    if not names:
        log("INFO", f"No machines found in {store.machines_dir}")
        return 0
    rows = [machine_row(store, tracker, settings, name) for name in names]
    for line in format_table(rows):
        print(f"  {line}")
    print(f"  Total: {len(names)}")
    return 0


def cmd_log(args: argparse.Namespace, settings: Settings) -> int:
    store = SpecStore(settings.workdir)
    if not store.machine_dir(args.name, create=False).is_dir():
        raise NotFoundError(f"Machine {args.name} does not exist")
    return follow_output(store, args.name)


def cmd_daemon_launch(args: argparse.Namespace, settings: Settings) -> int:
    # libvirt is only needed by the worker; other commands run without it.
    from machina.console import ConsoleProvisioner
    from machina.hypervisor import LibvirtHypervisor
    from machina.orchestrator import BootOrchestrator

    store = SpecStore(settings.workdir)
    spec = store.load(args.name) if store.exists(args.name) else spec_from_args(args)
    log("INFO", f"Worker for {spec.name} started")
    orchestrator = BootOrchestrator(
        spec,
        store,
        DistributionArtifacts(settings.workdir, retries=settings.download_retries),
        LibvirtHypervisor(settings.libvirt_uri),
        ConsoleProvisioner(settings.public_key_path),
        network=settings.network,
    )
    return orchestrator.run()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.handler is None:
        parser.print_help()
        return 1

    try:
        settings = parse_env()
        return args.handler(args, settings)
    except ShutdownEscalationError as exc:
        log("WARN", str(exc))
        return 0
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
