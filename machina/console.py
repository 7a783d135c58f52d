"""Guest console access for machina: first-boot provisioning and log following."""

from __future__ import annotations

import contextlib
import socket
import time
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from machina.exceptions import ManagerError, ProvisioningKeyMissingError
from machina.models import ConsoleLine
from machina.utils import LogFn, log

CLOUD_INIT_DROP_IN = "/mnt/etc/cloud/cloud.cfg.d/99_user.cfg"

# There is no readiness handshake on the console: the delays give the
# initramfs shell time to come up and to finish each command.
INITIAL_DELAY = 5.0
STEP_DELAY = 1.0


def render_cloud_config(public_key: str) -> str:
    """Cloud-init drop-in enabling key-based root access on the next boot."""
    # Key-only root: the password stays locked, so no password hash is written.
    cfg: Dict[str, object] = {
        "disable_root": False,
        "users": [
            {
                "name": "root",
                "sudo": ["ALL=(ALL) NOPASSWD:ALL"],
                "lock_passwd": True,
                "ssh_authorized_keys": [public_key],
            }
        ],
        "runcmd": [
            ["cp", "/usr/bin/true", "/usr/sbin/flash-kernel"],
            ["apt", "remove", "--purge", "irqbalance", "-y"],
        ],
    }
    return "#cloud-config\n" + yaml.safe_dump(cfg, sort_keys=False, default_flow_style=False, width=4096)


def build_provisioning_script(public_key: str) -> List[ConsoleLine]:
    return [
        ConsoleLine("mkdir /mnt\n", INITIAL_DELAY),
        ConsoleLine("mount /dev/vda /mnt\r", STEP_DELAY),
        ConsoleLine(f"cat << EOF > {CLOUD_INIT_DROP_IN}\r", STEP_DELAY),
        ConsoleLine(render_cloud_config(public_key)),
        ConsoleLine("\rEOF\r"),
        ConsoleLine("sync\n", STEP_DELAY),
        ConsoleLine("poweroff\n"),
    ]


class ConsoleProvisioner:
    """Configure a fresh guest by typing commands on its serial console."""

    def __init__(
        self,
        public_key_path: Path,
        log: LogFn = log,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.public_key_path = public_key_path
        self._log = log
        self._sleep = sleep

    def read_public_key(self) -> str:
        try:
            key = self.public_key_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ProvisioningKeyMissingError(
                f"No ssh public key found at {self.public_key_path} (run 'machina init' to create one)"
            ) from exc
        if not key:
            raise ProvisioningKeyMissingError(f"ssh public key {self.public_key_path} is empty")
        return key

    def provision(self, channel: BinaryIO) -> None:
        """Write the provisioning script to ``channel``; runs to completion once started."""
        script = build_provisioning_script(self.read_public_key())
        self._log("INFO", "Provisioning guest over the serial console")
        for line in script:
            if line.delay:
                self._sleep(line.delay)
            channel.write(line.text.encode("utf-8"))
            channel.flush()
        self._log("SUCCESS", "Provisioning commands sent; waiting for the guest to power off")


@contextlib.contextmanager
def open_console(socket_path: Path, timeout: float = 10.0) -> Iterator[BinaryIO]:
    """Connect to the hypervisor's console socket as a writable byte stream."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(socket_path))
    except OSError as exc:
        sock.close()
        raise ManagerError(f"Cannot connect to console socket {socket_path}: {exc}") from exc
    stream = sock.makefile("wb")
    try:
        yield stream
    finally:
        stream.close()
        sock.close()


def follow(path: Path, interval: float = 0.5, stop: Optional[Callable[[], bool]] = None) -> Iterator[str]:
    """Yield lines of ``path`` from the start, then keep waiting for new ones."""
    while not path.exists():
        if stop is not None and stop():
            return
        time.sleep(interval)
    with open(path, encoding="utf-8", errors="replace") as handle:
        pending = ""
        while True:
            chunk = handle.readline()
            if chunk:
                pending += chunk
                if pending.endswith("\n"):
                    yield pending.rstrip("\r\n")
                    pending = ""
                continue
            if stop is not None and stop():
                if pending:
                    yield pending
                return
            time.sleep(interval)
