"""On-disk machine descriptors for machina."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import List

from machina.constants import (
    CONSOLE_SOCKET_NAME,
    MACHINES_DIR_NAME,
    OUTPUT_FILE_NAME,
    PID_FILE_NAME,
    PROCESS_LOG_NAME,
    SPEC_FILE_MODE,
    SPEC_FILE_NAME,
)
from machina.exceptions import ManagerError, NotFoundError, SpecFormatError
from machina.models import MachineSpec, validate_machine_name
from machina.utils import LogFn, ensure_directory, log


class SpecStore:
    """Owns ``<workdir>/machines/<name>/spec.json`` for every machine."""

    def __init__(self, workdir: Path, log: LogFn = log) -> None:
        self.workdir = workdir
        self.machines_dir = workdir / MACHINES_DIR_NAME
        self._log = log

    def machine_dir(self, name: str, create: bool = True) -> Path:
        path = self.machines_dir / validate_machine_name(name)
        if create and not path.is_dir():
            ensure_directory(path)
            self._log("DEBUG", f"Machine directory {path} created")
        return path

    def spec_path(self, name: str) -> Path:
        return self.machine_dir(name, create=False) / SPEC_FILE_NAME

    def pid_path(self, name: str) -> Path:
        return self.machine_dir(name, create=False) / PID_FILE_NAME

    def output_path(self, name: str) -> Path:
        return self.machine_dir(name, create=False) / OUTPUT_FILE_NAME

    def console_socket_path(self, name: str) -> Path:
        return self.machine_dir(name, create=False) / CONSOLE_SOCKET_NAME

    def process_log_path(self, name: str) -> Path:
        return self.machine_dir(name, create=False) / PROCESS_LOG_NAME

    def exists(self, name: str) -> bool:
        return self.spec_path(name).is_file()

    def list_machines(self) -> List[str]:
        if not self.machines_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.machines_dir.iterdir() if entry.is_dir())

    def load(self, name: str) -> MachineSpec:
        path = self.spec_path(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError(f"Machine {name} does not exist")
        except OSError as exc:
            raise ManagerError(f"Cannot read machine spec {path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SpecFormatError(f"Machine spec {path} is not valid JSON: {exc}") from exc
        spec = MachineSpec.from_dict(data)
        if spec.name != name:
            raise SpecFormatError(f"Machine spec {path} names '{spec.name}', expected '{name}'")
        return spec

    def save(self, spec: MachineSpec) -> Path:
        path = self.machine_dir(spec.name) / SPEC_FILE_NAME
        content = json.dumps(spec.to_dict(), indent="\t") + "\n"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SPEC_FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(path, SPEC_FILE_MODE)
        self._log("DEBUG", f"Machine spec written to {path}")
        return path
