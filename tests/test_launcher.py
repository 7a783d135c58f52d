"""Tests for machina.launcher module."""

from __future__ import annotations

import os
import subprocess
import sys
from unittest.mock import MagicMock

from machina.launcher import DaemonLauncher


def _launcher(store, logs, pid=999):
    popen = MagicMock()
    popen.return_value.pid = pid
    return DaemonLauncher(store, popen=popen, log=logs), popen


class TestLaunchDetached:
    def test_spawns_worker_command(self, store, logs):
        launcher, popen = _launcher(store, logs)
        launcher.launch_detached("primary", ["-c", "4"])
        args = popen.call_args.args[0]
        assert args == [sys.executable, "-m", "machina", "daemon", "launch", "-n", "primary", "-c", "4"]

    def test_detached_session(self, store, logs):
        launcher, popen = _launcher(store, logs)
        launcher.launch_detached("primary")
        kwargs = popen.call_args.kwargs
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["stderr"] is subprocess.STDOUT
        assert kwargs["cwd"] == os.getcwd()

    def test_output_goes_to_process_log(self, store, logs):
        launcher, popen = _launcher(store, logs)
        handle = launcher.launch_detached("primary")
        assert handle.log_path == store.process_log_path("primary")
        assert handle.log_path.exists()
        assert str(popen.call_args.kwargs["stdout"].name) == str(handle.log_path)

    def test_returns_handle_without_pid_record(self, store, logs):
        launcher, _ = _launcher(store, logs, pid=31337)
        handle = launcher.launch_detached("primary")
        assert handle.pid == 31337
        assert handle.args[-1] == "primary"
        assert not store.pid_path("primary").exists()
