"""Configuration loading and environment variable parsing for machina."""

from __future__ import annotations

import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from machina.constants import (
    DEFAULT_WORKDIR,
    HOST_ARCHES,
    LEASES_PATH,
    LIBVIRT_URI,
    STOP_GRACE_PERIOD,
)
from machina.exceptions import ManagerError
from machina.utils import get_env, parse_int_env


@dataclass
class Settings:
    workdir: Path
    leases_path: Path
    libvirt_uri: str
    network: str
    ssh_key_path: Path
    ssh_user: str
    stop_grace_period: int
    download_retries: int

    @property
    def public_key_path(self) -> Path:
        return self.ssh_key_path.with_name(self.ssh_key_path.name + ".pub")


def default_arch(machine: Optional[str] = None) -> str:
    """Map the host CPU to the Ubuntu cloud image architecture name."""
    raw = (machine or platform.machine()).lower()
    try:
        return HOST_ARCHES[raw]
    except KeyError:
        supported = ", ".join(sorted(set(HOST_ARCHES.values())))
        raise ManagerError(f"Unsupported host architecture '{raw}'. Supported: {supported}")


def _path_env(name: str, default: Path) -> Path:
    raw = (get_env(name) or "").strip()
    if not raw:
        return default
    return Path(raw).expanduser()


def parse_env() -> Settings:
    workdir = _path_env("VMCTLDIR", DEFAULT_WORKDIR)
    network = (get_env("MACHINA_NETWORK") or "user").strip() or "user"
    ssh_user = (get_env("MACHINA_SSH_USER") or "root").strip() or "root"
    return Settings(
        workdir=workdir,
        leases_path=_path_env("MACHINA_LEASES_PATH", LEASES_PATH),
        libvirt_uri=(get_env("LIBVIRT_URI") or LIBVIRT_URI).strip() or LIBVIRT_URI,
        network=network,
        ssh_key_path=_path_env("MACHINA_SSH_KEY", Path.home() / ".ssh" / "id_rsa"),
        ssh_user=ssh_user,
        stop_grace_period=parse_int_env("MACHINA_STOP_GRACE", str(STOP_GRACE_PERIOD), min_val=0),
        download_retries=parse_int_env("MACHINA_DOWNLOAD_RETRIES", "3", min_val=1, max_val=10),
    )
