"""Shared test fixtures for machina."""

from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

import pytest

from machina.config import Settings
from machina.models import BootParams, Distribution, MachineSpec
from machina.store import SpecStore

GB = 1024 * 1024 * 1024


class LogCapture:
    """Stand-in for ``machina.utils.log`` collecting ``(level, message)`` pairs."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, str]] = []

    def __call__(self, level: str, message: str) -> None:
        self.records.append((level, message))

    def messages(self, level: str) -> List[str]:
        return [message for lvl, message in self.records if lvl == level]


@pytest.fixture
def logs() -> LogCapture:
    return LogCapture()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    key = tmp_path / "keys" / "id_rsa"
    key.parent.mkdir()
    return Settings(
        workdir=tmp_path / "vm",
        leases_path=tmp_path / "dhcpd_leases",
        libvirt_uri="qemu:///session",
        network="user",
        ssh_key_path=key,
        ssh_user="root",
        stop_grace_period=10,
        download_retries=3,
    )


@pytest.fixture
def store(settings: Settings, logs: LogCapture) -> SpecStore:
    return SpecStore(settings.workdir, log=logs)


@pytest.fixture
def spec() -> MachineSpec:
    return MachineSpec(
        name="primary",
        distribution=Distribution(release="focal", arch="amd64"),
        cpu=2,
        ram=2 * GB,
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, used to ensure a clean slate.
_PARSE_ENV_VARS = [
    "VMCTLDIR",
    "MACHINA_LEASES_PATH",
    "LIBVIRT_URI",
    "MACHINA_NETWORK",
    "MACHINA_SSH_KEY",
    "MACHINA_SSH_USER",
    "MACHINA_STOP_GRACE",
    "MACHINA_DOWNLOAD_RETRIES",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_params():
    """Factory for ``BootParams`` of a machine called ``primary``."""

    def _make(**overrides) -> BootParams:
        values = dict(
            name="primary",
            arch="x86_64",
            kernel=Path("/vm/primary/vmlinuz"),
            initrd=Path("/vm/primary/initrd"),
            disk=Path("/vm/primary/root.img"),
            cmdline="console=hvc0 root=/dev/vda",
            cpu=2,
            ram=2 * GB,
            mac="02:6e:c6:08:0a:1b",
            console_socket=Path("/vm/primary/console.sock"),
            console_log=Path("/vm/primary/output"),
        )
        values.update(overrides)
        return BootParams(**values)

    return _make
