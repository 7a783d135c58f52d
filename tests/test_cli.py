"""Tests for machina.cli module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from machina import cli
from machina.exceptions import NotFoundError, ShutdownEscalationError
from machina.models import Distribution, MachineSpec, MachineState, WorkerHandle
from machina.shutdown import ShutdownResult

GB = 1024 * 1024 * 1024


@pytest.fixture
def env(clean_env, mock_env, tmp_path):
    mock_env(
        VMCTLDIR=str(tmp_path / "vm"),
        MACHINA_LEASES_PATH=str(tmp_path / "leases"),
        MACHINA_SSH_KEY=str(tmp_path / "id_rsa"),
    )
    return tmp_path


@pytest.fixture
def launcher():
    with patch("machina.cli.DaemonLauncher") as cls:
        cls.return_value.launch_detached.return_value = WorkerHandle(pid=1234, log_path="process.log")
        yield cls.return_value


@pytest.fixture
def artifacts():
    with patch("machina.cli.DistributionArtifacts") as cls:
        yield cls.return_value


class TestParser:
    def test_launch_defaults(self):
        args = cli.build_parser().parse_args(["launch"])
        assert args.name == "primary"
        assert (args.cpu, args.memory, args.release, args.arch) == (2, 2, "focal", None)
        assert args.follow is False

    def test_launch_options(self):
        args = cli.build_parser().parse_args(["launch", "-n", "web", "-c", "4", "-m", "8", "-a", "arm64", "-f"])
        assert (args.name, args.cpu, args.memory, args.arch, args.follow) == ("web", 4, 8, "arm64", True)

    @pytest.mark.parametrize("argv", [["launch", "-c", "9"], ["launch", "-m", "17"], ["launch", "-c", "x"]])
    def test_launch_limits(self, argv, capsys):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(argv)

    def test_daemon_requires_name(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["daemon", "launch"])

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 1
        assert "usage" in capsys.readouterr().out


class TestLaunch:
    def test_spawns_worker_with_options(self, env, launcher, artifacts):
        assert cli.main(["launch", "-n", "web", "-c", "4", "-m", "8", "-a", "arm64"]) == 0
        name, options = launcher.launch_detached.call_args.args
        assert name == "web"
        assert options == ["-c", "4", "-m", "8", "-r", "focal", "-a", "arm64"]
        artifacts.ensure.assert_called_once_with(Distribution("focal", "arm64"))

    def test_refuses_existing_machine(self, env, launcher, artifacts, capsys):
        cli.SpecStore(env / "vm").save(
            MachineSpec(name="web", distribution=Distribution("focal", "amd64"), cpu=2, ram=2 * GB)
        )
        assert cli.main(["launch", "-n", "web", "-a", "amd64"]) == 1
        launcher.launch_detached.assert_not_called()
        assert "already exists" in capsys.readouterr().out

    def test_invalid_name(self, env, launcher, artifacts):
        assert cli.main(["launch", "-n", "bad name", "-a", "amd64"]) == 1
        launcher.launch_detached.assert_not_called()


class TestStart:
    def _save(self, env):
        spec = MachineSpec(name="web", distribution=Distribution("focal", "amd64"), cpu=2, ram=2 * GB)
        cli.SpecStore(env / "vm").save(spec)
        return spec

    def test_unknown_machine(self, env, launcher, artifacts, capsys):
        assert cli.main(["start", "ghost"]) == 1
        assert "does not exist" in capsys.readouterr().out

    def test_starts_stopped_machine(self, env, launcher, artifacts):
        self._save(env)
        with patch("machina.cli.LivenessTracker") as tracker:
            tracker.return_value.reclaim.return_value = MachineState.STOPPED
            assert cli.main(["start", "web"]) == 0
        launcher.launch_detached.assert_called_once_with("web")

    def test_refuses_running_machine(self, env, launcher, artifacts):
        self._save(env)
        with patch("machina.cli.LivenessTracker") as tracker:
            tracker.return_value.reclaim.return_value = MachineState.RUNNING
            with patch("machina.cli.log") as mock_log:
                assert cli.main(["start", "web"]) == 1
        launcher.launch_detached.assert_not_called()
        level, message = mock_log.call_args.args
        assert level == "ERROR"
        assert "already running" in message

    def test_follow(self, env, launcher, artifacts):
        self._save(env)
        with patch("machina.cli.LivenessTracker") as tracker, patch("machina.cli.follow_output", return_value=0) as follow:
            tracker.return_value.reclaim.return_value = MachineState.STOPPED
            assert cli.main(["start", "web", "-f"]) == 0
        follow.assert_called_once()


class TestStop:
    def test_graceful(self, env):
        with patch("machina.cli.ShutdownCoordinator") as coordinator:
            coordinator.return_value.stop.return_value = ShutdownResult.GRACEFUL
            assert cli.main(["stop", "web"]) == 0
        coordinator.return_value.stop.assert_called_once_with("web")

    def test_escalation_is_a_warning(self, env):
        with patch("machina.cli.ShutdownCoordinator") as coordinator, patch("machina.cli.log") as mock_log:
            coordinator.return_value.stop.side_effect = ShutdownEscalationError("sent SIGTERM")
            assert cli.main(["stop", "web"]) == 0
        mock_log.assert_called_once_with("WARN", "sent SIGTERM")

    def test_not_found(self, env):
        with patch("machina.cli.ShutdownCoordinator") as coordinator:
            coordinator.return_value.stop.side_effect = NotFoundError("Machine web does not exist")
            assert cli.main(["stop", "web"]) == 1


class TestList:
    def test_empty(self, env, capsys):
        assert cli.main(["list"]) == 0
        assert "No machines found" in capsys.readouterr().out

    def test_table(self, env, capsys):
        store = cli.SpecStore(env / "vm")
        store.save(MachineSpec(name="web", distribution=Distribution("jammy", "arm64"), cpu=4, ram=8 * GB))
        store.machine_dir("broken")
        store.spec_path("broken").write_text("{")
        assert cli.main(["list"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].split() == ["NAME", "STATUS", "IP", "RELEASE", "ARCH", "CPU", "MEMORY", "FOLDER"]
        assert lines[1].split() == ["broken", "error"]
        web = lines[2].split()
        assert web[:5] == ["web", "stopped", "jammy", "arm64", "4"]
        assert "8 GB" in lines[2]
        assert lines[-1].strip() == "Total: 2"

    def test_undecodable_lease_database(self, env, capsys):
        store = cli.SpecStore(env / "vm")
        store.save(MachineSpec(name="web", distribution=Distribution("jammy", "amd64"), cpu=1, ram=GB))
        (env / "leases").write_bytes(b"{\n\tname=\xff\xfe\n\tip_address=192.168.64.9\n\thw_address=1,2:0:0:0:0:1\n}\n")
        assert cli.main(["list"]) == 0
        out = capsys.readouterr().out
        assert "Unexpected error" not in out
        assert "Total: 1" in out

    def test_format_table_alignment(self):
        lines = cli.format_table([["a", "running"], ["long-name", "stopped"]], header=("name", "status"))
        assert lines == ["NAME       STATUS", "a          running", "long-name  stopped"]


class TestLog:
    def test_unknown_machine(self, env):
        assert cli.main(["log", "ghost"]) == 1

    def test_follows_output(self, env, capsys):
        store = cli.SpecStore(env / "vm")
        store.machine_dir("web")
        with patch("machina.cli.follow", return_value=iter(["line one", "line two"])):
            assert cli.main(["log", "web"]) == 0
        assert capsys.readouterr().out == "line one\nline two\n"


class TestInit:
    def test_generates_keypair(self, env):
        with patch("machina.cli.generate_keypair") as generate:
            assert cli.main(["init", "--force"]) == 0
        generate.assert_called_once_with(env / "id_rsa", force=True)


class TestMain:
    def test_unexpected_error(self, env, capsys):
        with patch("machina.cli.ShutdownCoordinator", side_effect=RuntimeError("kaboom")):
            assert cli.main(["stop", "web"]) == 1
        assert "Unexpected error: kaboom" in capsys.readouterr().out

    def test_invalid_environment(self, env, mock_env):
        mock_env(MACHINA_STOP_GRACE="later")
        assert cli.main(["list"]) == 1


class TestDaemonLaunch:
    def test_runs_orchestrator_for_new_machine(self, env):
        pytest.importorskip("libvirt")
        with patch("machina.hypervisor.LibvirtHypervisor") as hypervisor, patch(
            "machina.orchestrator.BootOrchestrator"
        ) as orchestrator:
            orchestrator.return_value.run.return_value = 0
            assert cli.main(["daemon", "launch", "-n", "web", "-c", "3", "-m", "4", "-a", "amd64"]) == 0
        spec = orchestrator.call_args.args[0]
        assert spec == MachineSpec(name="web", distribution=Distribution("focal", "amd64"), cpu=3, ram=4 * GB)
        hypervisor.assert_called_once_with("qemu:///session")

    def test_uses_stored_spec(self, env):
        pytest.importorskip("libvirt")
        stored = MachineSpec(name="web", distribution=Distribution("jammy", "arm64"), cpu=6, ram=GB)
        cli.SpecStore(env / "vm").save(stored)
        with patch("machina.hypervisor.LibvirtHypervisor"), patch("machina.orchestrator.BootOrchestrator") as orchestrator:
            orchestrator.return_value.run.return_value = 1
            assert cli.main(["daemon", "launch", "-n", "web"]) == 1
        assert orchestrator.call_args.args[0] == stored
