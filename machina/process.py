"""PID records and process liveness for machina."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Tuple

import psutil

from machina.constants import COMMAND_PREFIX, PID_FILE_MODE
from machina.exceptions import (
    AlreadyStartingError,
    NotFoundError,
    PidRecordError,
    StaleProcessError,
)
from machina.models import MachineState
from machina.utils import LogFn, log


class PidRecord:
    """The ``vmz.pid`` file of one machine."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[int]:
        """Return the recorded PID, ``None`` when there is no record."""
        try:
            content = self.path.read_text(encoding="ascii").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise PidRecordError(f"error reading pidfile {self.path}: {exc}") from exc
        try:
            pid = int(content)
        except ValueError:
            raise PidRecordError(f"pidfile {self.path} does not contain a PID (got {content!r})")
        if pid <= 0:
            raise PidRecordError(f"pidfile {self.path} contains an invalid PID {pid}")
        return pid

    def create(self, pid: int) -> None:
        """Write ``pid`` only if no record exists yet."""
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, PID_FILE_MODE)
        except FileExistsError:
            raise AlreadyStartingError(f"pidfile {self.path} already exists; another start is in progress")
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            handle.write(str(pid))

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)


def _command_line(proc: psutil.Process) -> str:
    """Name, executable and arguments of ``proc``, skipping what we may not read."""
    parts = []
    for getter in (proc.name, proc.exe, proc.cmdline):
        try:
            value = getter()
        except psutil.AccessDenied:
            continue
        if isinstance(value, list):
            parts.extend(value)
        elif value:
            parts.append(value)
    return " ".join(parts)


class LivenessTracker:
    """Decide whether the process named in a PID record is a live controller."""

    def __init__(self, command_prefix: str = COMMAND_PREFIX, log: LogFn = log) -> None:
        self.command_prefix = command_prefix
        self._log = log

    def inspect(self, record: PidRecord) -> Tuple[MachineState, Optional[psutil.Process]]:
        pid = record.read()
        if pid is None:
            return MachineState.STOPPED, None

        try:
            proc = psutil.Process(pid)
            alive = proc.status() != psutil.STATUS_ZOMBIE
            command = _command_line(proc)
        except psutil.NoSuchProcess:
            alive = False
        except psutil.AccessDenied:
            alive, command = True, ""
        if not alive:
            self._log("INFO", f"pid {pid} missing from process table")
            return MachineState.ERROR, None

        if self.command_prefix not in command:
            self._log("INFO", f"pid {pid} is stale, and is being used by {command or 'an unknown process'}")
            return MachineState.ERROR, None
        return MachineState.RUNNING, proc

    def probe(self, record: PidRecord) -> MachineState:
        state, _ = self.inspect(record)
        return state

    def process(self, record: PidRecord) -> psutil.Process:
        """Return the live controller process or explain why there is none."""
        state, proc = self.inspect(record)
        if state is MachineState.STOPPED:
            raise NotFoundError(f"no pidfile at {record.path}")
        if state is MachineState.ERROR or proc is None:
            raise StaleProcessError(f"pidfile {record.path} does not point to a running controller")
        return proc

    def reclaim(self, record: PidRecord) -> MachineState:
        """Drop a stale record and report what was found."""
        state = self.probe(record)
        if state is MachineState.ERROR:
            self._log("WARN", f"Removing stale pidfile {record.path}")
            record.remove()
        return state
