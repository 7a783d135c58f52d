"""Graceful-then-forceful shutdown of machina machines."""

from __future__ import annotations

import enum
import time
from typing import Callable, Optional

try:
    import paramiko  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("paramiko is required but not installed") from exc

import psutil

from machina.config import Settings
from machina.constants import SSH_CONNECT_TIMEOUT, SSH_PORT
from machina.exceptions import (
    ManagerError,
    NotFoundError,
    ShutdownEscalationError,
    StaleProcessError,
)
from machina.models import MachineState
from machina.network import derive_mac, resolve_ip
from machina.process import LivenessTracker, PidRecord
from machina.store import SpecStore
from machina.utils import LogFn, log

POWEROFF_COMMAND = "poweroff"


class ShutdownResult(enum.Enum):
    GRACEFUL = "graceful"
    ALREADY_STOPPED = "already-stopped"


class ShutdownCoordinator:
    """Stop a machine over SSH, signalling its controller as a last resort."""

    def __init__(
        self,
        store: SpecStore,
        settings: Settings,
        tracker: Optional[LivenessTracker] = None,
        client_factory: Callable[[], "paramiko.SSHClient"] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep,
        log: LogFn = log,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tracker = tracker or LivenessTracker(log=log)
        self._client_factory = client_factory
        self._sleep = sleep
        self._log = log

    def stop(self, name: str) -> ShutdownResult:
        self.store.load(name)
        record = PidRecord(self.store.pid_path(name))
        if self.tracker.probe(record) is MachineState.STOPPED:
            self._log("INFO", f"Machine {name} is not running")
            return ShutdownResult.ALREADY_STOPPED

        try:
            ip = resolve_ip(derive_mac(name), self.settings.leases_path, log=self._log)
            self.poweroff(ip)
        except ManagerError as exc:
            self._log("WARN", f"Graceful shutdown of {name} failed: {exc}")
            return self._escalate(name, record)
        self._log("SUCCESS", f"Shutdown requested for {name} ({ip})")
        return ShutdownResult.GRACEFUL

    def poweroff(self, ip: str) -> None:
        """Run ``poweroff`` in the guest; the session may drop as the guest goes down."""
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                ip,
                port=SSH_PORT,
                username=self.settings.ssh_user,
                key_filename=str(self.settings.ssh_key_path),
                timeout=SSH_CONNECT_TIMEOUT,
                allow_agent=False,
                look_for_keys=False,
            )
            self._log("DEBUG", f"Connected to {self.settings.ssh_user}@{ip}")
            _, stdout, stderr = client.exec_command(POWEROFF_COMMAND, timeout=SSH_CONNECT_TIMEOUT)
            try:
                code = stdout.channel.recv_exit_status()
            except (paramiko.SSHException, EOFError, OSError) as exc:
                self._log("DEBUG", f"Session to {ip} dropped during poweroff: {exc}")
                code = -1
            self._log("DEBUG", f"poweroff on {ip}: exit_code={code}")
            # -1 means the session closed without an exit status, as when the guest goes down.
            if code > 0:
                detail = stderr.read().decode(errors="replace").strip()
                raise ManagerError(f"poweroff on {ip} failed ({code}): {detail}")
        except (paramiko.SSHException, OSError) as exc:
            raise ManagerError(f"SSH session to {ip} failed: {exc}") from exc
        finally:
            client.close()

    def _escalate(self, name: str, record: PidRecord) -> ShutdownResult:
        grace = self.settings.stop_grace_period
        self._log("INFO", f"Waiting {grace}s for {name} before signalling its controller")
        self._sleep(grace)
        try:
            proc = self.tracker.process(record)
        except StaleProcessError:
            self._log("WARN", f"Removing stale pidfile of {name}")
            record.remove()
            return ShutdownResult.ALREADY_STOPPED
        except NotFoundError:
            self._log("INFO", f"Machine {name} stopped on its own")
            return ShutdownResult.ALREADY_STOPPED

        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            self._log("INFO", f"Machine {name} stopped on its own")
            return ShutdownResult.ALREADY_STOPPED
        raise ShutdownEscalationError(
            f"Machine {name} did not shut down gracefully; sent SIGTERM to controller pid {proc.pid}"
        )
