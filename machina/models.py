"""Data models for machina."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from machina.constants import MACHINE_NAME_RE
from machina.exceptions import ManagerError, SpecFormatError


class MachineState(enum.Enum):
    """Liveness of a machine as seen from its PID record."""

    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


class HypervisorState(enum.Enum):
    """Values carried by the hypervisor's state-change stream."""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    UNKNOWN = "unknown"


class BootPhase(enum.Enum):
    UNCONFIGURED = "unconfigured"
    PROVISIONING = "provisioning"
    CONFIGURED = "configured"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class EventKind(enum.Enum):
    STATE = "state"
    START_COMPLETE = "start-complete"
    SIGNAL = "signal"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    value: Any = None


def validate_machine_name(name: str) -> str:
    if not name or not MACHINE_NAME_RE.match(name):
        raise ManagerError(
            f"Invalid machine name '{name}'. Use letters, digits, '.', '_' or '-' "
            "(must start with a letter or digit)"
        )
    return name


@dataclass(frozen=True)
class Distribution:
    release: str
    arch: str


@dataclass(frozen=True)
class MachineSpec:
    name: str
    distribution: Distribution
    cpu: int
    ram: int

    def __post_init__(self):
        validate_machine_name(self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "distribution": {
                "release": self.distribution.release,
                "arch": self.distribution.arch,
            },
            "specs": {
                "cpu": self.cpu,
                "memory": self.ram,
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MachineSpec":
        """Build a spec from its JSON form, rejecting anything structurally off."""
        if not isinstance(data, dict):
            raise SpecFormatError("machine spec must be a JSON object")
        try:
            name = data["name"]
            distribution = data["distribution"]
            specs = data["specs"]
            release = distribution["release"]
            arch = distribution["arch"]
            cpu = specs["cpu"]
            ram = specs["memory"]
        except (KeyError, TypeError) as exc:
            raise SpecFormatError(f"machine spec is missing field {exc}") from exc
        if not isinstance(name, str) or not isinstance(release, str) or not isinstance(arch, str):
            raise SpecFormatError("machine spec name, release and arch must be strings")
        for label, value in (("cpu", cpu), ("memory", ram)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise SpecFormatError(f"machine spec {label} must be a non-negative integer (got {value!r})")
        try:
            return cls(name=name, distribution=Distribution(release, arch), cpu=cpu, ram=ram)
        except ManagerError as exc:
            raise SpecFormatError(str(exc)) from exc


@dataclass(frozen=True)
class DHCPLeaseEntry:
    name: str = ""
    ip_address: str = ""
    hw_address: str = ""
    identifier: str = ""
    lease: str = ""


@dataclass(frozen=True)
class BootArtifacts:
    kernel: Path
    initrd: Path
    image: Path


@dataclass(frozen=True)
class BootParams:
    """Everything the hypervisor needs for a single boot of a machine."""

    name: str
    arch: str  # libvirt name, e.g. x86_64
    kernel: Path
    initrd: Path
    disk: Path
    cmdline: str
    cpu: int
    ram: int
    mac: str
    console_socket: Path
    console_log: Path
    network: str = "user"
    socket_device: bool = False


@dataclass(frozen=True)
class ConsoleLine:
    text: str
    delay: float = 0.0


@dataclass(frozen=True)
class WorkerHandle:
    pid: int
    log_path: Path
    args: Optional[tuple] = None
