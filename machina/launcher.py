"""Detached worker processes for machina."""

from __future__ import annotations

import os
import subprocess
import sys
from typing import Callable, Sequence

from machina.models import WorkerHandle
from machina.store import SpecStore
from machina.utils import LogFn, log


class DaemonLauncher:
    """Spawn ``machina daemon launch`` in its own session and return at once.

    The worker writes its own PID record once the machine is running.
    """

    def __init__(
        self,
        store: SpecStore,
        python: str = sys.executable,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        log: LogFn = log,
    ) -> None:
        self.store = store
        self.python = python
        self._popen = popen
        self._log = log

    def command(self, name: str, extra_args: Sequence[str] = ()) -> list:
        return [self.python, "-m", "machina", "daemon", "launch", "-n", name, *extra_args]

    def launch_detached(self, name: str, extra_args: Sequence[str] = ()) -> WorkerHandle:
        self.store.machine_dir(name)
        log_path = self.store.process_log_path(name)
        args = self.command(name, extra_args)
        with open(log_path, "wb") as output:
            proc = self._popen(
                args,
                stdout=output,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=os.getcwd(),
                start_new_session=True,
                close_fds=True,
            )
        self._log("DEBUG", f"Worker for {name} started with pid {proc.pid}: {' '.join(args)}")
        return WorkerHandle(pid=proc.pid, log_path=log_path, args=tuple(args))
