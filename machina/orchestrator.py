"""Boot state machine for machina.

A worker process runs one :class:`BootOrchestrator` per machine.  The
orchestrator multiplexes three event sources over a single queue:

* hypervisor state changes (delivered from the hypervisor's own thread),
* the single-shot completion of the hypervisor start request,
* ``SIGTERM``/``SIGINT``.

A machine without a stored spec is booted twice: first a minimal
provisioning boot during which commands are typed on the guest console and
the guest powers itself off, then the normal boot with its configured
resources.

The hypervisor object must provide ``configure(params, on_state_change)``
returning a handle with ``start(on_complete)``, ``request_stop()`` and
``release()``.
"""

from __future__ import annotations

import collections
import os
import queue
import signal
import time
from typing import Callable, ContextManager, Deque, Dict, Optional

from machina.console import ConsoleProvisioner, open_console
from machina.constants import (
    ARCH_ALIASES,
    BOOT_CMDLINE,
    DEFAULT_CPUS,
    DEFAULT_MEMORY,
    PROVISIONING_CMDLINE,
    START_TIMEOUT,
)
from machina.distribution import DistributionArtifacts
from machina.exceptions import (
    AlreadyStartingError,
    BootTimeoutError,
    HypervisorStartError,
    ManagerError,
)
from machina.models import (
    BootArtifacts,
    BootParams,
    BootPhase,
    Event,
    EventKind,
    HypervisorState,
    MachineSpec,
    MachineState,
)
from machina.network import derive_mac
from machina.process import LivenessTracker, PidRecord
from machina.store import SpecStore
from machina.utils import LogFn, log

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class BootOrchestrator:
    def __init__(
        self,
        spec: MachineSpec,
        store: SpecStore,
        artifacts: DistributionArtifacts,
        hypervisor,
        provisioner: ConsoleProvisioner,
        tracker: Optional[LivenessTracker] = None,
        network: str = "user",
        console_opener: Callable[..., ContextManager] = open_console,
        start_timeout: float = START_TIMEOUT,
        handle_signals: bool = True,
        pid: Optional[int] = None,
        log: LogFn = log,
    ) -> None:
        self.spec = spec
        self.store = store
        self.artifacts = artifacts
        self.hypervisor = hypervisor
        self.provisioner = provisioner
        self.tracker = tracker or LivenessTracker(log=log)
        self.network = network
        self.start_timeout = start_timeout
        self.record = PidRecord(store.pid_path(spec.name))
        self.phase = BootPhase.CONFIGURED if store.exists(spec.name) else BootPhase.UNCONFIGURED
        self._open_console = console_opener
        self._handle_signals = handle_signals
        self._pid = pid if pid is not None else os.getpid()
        self._log = log
        self._events: "queue.SimpleQueue[Event]" = queue.SimpleQueue()
        self._deferred: Deque[Event] = collections.deque()
        self._handle = None
        self._owns_record = False
        self._provisioned = False

    @property
    def owns_record(self) -> bool:
        return self._owns_record

    # -- event sources ---------------------------------------------------

    def _on_state_change(self, state: HypervisorState) -> None:
        self._events.put(Event(EventKind.STATE, state))

    def _on_start_complete(self, error: Optional[Exception]) -> None:
        self._events.put(Event(EventKind.START_COMPLETE, error))

    def _on_signal(self, signum, frame) -> None:
        # SimpleQueue.put is reentrant, so this is safe inside a signal handler.
        self._events.put(Event(EventKind.SIGNAL, signum))

    def _install_signal_handlers(self) -> Dict[int, object]:
        if not self._handle_signals:
            return {}
        return {signum: signal.signal(signum, self._on_signal) for signum in TERMINATION_SIGNALS}

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, object]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _next_event(self) -> Event:
        if self._deferred:
            return self._deferred.popleft()
        return self._events.get()

    # -- entry point -----------------------------------------------------

    def run(self) -> int:
        """Drive the machine until it stops; returns the process exit status."""
        previous = self._install_signal_handlers()
        try:
            if self.phase is BootPhase.UNCONFIGURED:
                self._provision()
            if self.phase is BootPhase.CONFIGURED:
                self._boot()
            return 0
        except ManagerError as exc:
            self.phase = BootPhase.FAILED
            self._log("ERROR", str(exc))
            return 1
        finally:
            self._release()
            self.cleanup_record()
            self._restore_signal_handlers(previous)

    def cleanup_record(self) -> None:
        """Remove the PID record if this process created it."""
        if self._owns_record:
            self.record.remove()
            self._owns_record = False

    # -- phases ----------------------------------------------------------

    def _provision(self) -> None:
        # Fail before the guest is touched if provisioning cannot succeed.
        self.provisioner.read_public_key()
        artifacts = self._prepare_artifacts()
        params = self._boot_params(
            artifacts,
            cpu=DEFAULT_CPUS,
            ram=DEFAULT_MEMORY,
            cmdline=PROVISIONING_CMDLINE,
            socket_device=False,
        )
        self._log("INFO", f"First boot of {self.spec.name}: provisioning the guest")
        self.phase = BootPhase.PROVISIONING
        if self._run_hypervisor(params):
            self.phase = BootPhase.CONFIGURED
            self._log("SUCCESS", f"Machine {self.spec.name} provisioned")
        else:
            self.phase = BootPhase.STOPPED

    def _boot(self) -> None:
        artifacts = self._prepare_artifacts()
        params = self._boot_params(
            artifacts,
            cpu=self.spec.cpu,
            ram=self.spec.ram,
            cmdline=BOOT_CMDLINE,
            socket_device=True,
        )
        self._log("INFO", f"Booting {self.spec.name} (cpu={self.spec.cpu}, memory={self.spec.ram})")
        self.phase = BootPhase.STARTING
        self._run_hypervisor(params)
        self.phase = BootPhase.STOPPED

    def _prepare_artifacts(self) -> BootArtifacts:
        machine_dir = self.store.machine_dir(self.spec.name)
        return self.artifacts.prepare(self.spec.distribution, machine_dir)

    def _boot_params(
        self,
        artifacts: BootArtifacts,
        cpu: int,
        ram: int,
        cmdline: str,
        socket_device: bool,
    ) -> BootParams:
        arch = self.spec.distribution.arch
        return BootParams(
            name=self.spec.name,
            arch=ARCH_ALIASES.get(arch, arch),
            kernel=artifacts.kernel,
            initrd=artifacts.initrd,
            disk=artifacts.image,
            cmdline=cmdline,
            cpu=cpu,
            ram=ram,
            mac=derive_mac(self.spec.name),
            console_socket=self.store.console_socket_path(self.spec.name),
            console_log=self.store.output_path(self.spec.name),
            network=self.network,
            socket_device=socket_device,
        )

    def _run_hypervisor(self, params: BootParams) -> bool:
        """Boot one configuration; True if the guest stopped on its own."""
        self._handle = self.hypervisor.configure(params, self._on_state_change)
        self._handle.start(self._on_start_complete)
        self.wait_for_state(HypervisorState.RUNNING)
        # A termination request seen while booting wins over claiming and provisioning.
        if not self._deferred:
            self._on_running()
        stopped = self._serve()
        self._release()
        return stopped

    def _serve(self) -> bool:
        while True:
            event = self._next_event()
            if event.kind is EventKind.SIGNAL:
                self._terminate(event.value)
                return False
            if event.kind is EventKind.START_COMPLETE:
                self._check_start(event.value)
                continue

            state = event.value
            if state is HypervisorState.STARTING:
                self._log("INFO", f"Machine {self.spec.name} is starting")
            elif state is HypervisorState.RUNNING:
                self._on_running()
            elif state is HypervisorState.STOPPING:
                self._log("INFO", f"Machine {self.spec.name} is shutting down")
            elif state is HypervisorState.STOPPED:
                self._log("INFO", f"Machine {self.spec.name} stopped")
                return True
            else:
                self._log("DEBUG", f"Ignoring hypervisor state {getattr(state, 'value', state)}")

    def _on_running(self) -> None:
        if self.phase is BootPhase.PROVISIONING:
            if self._provisioned:
                return
            self._claim_record()
            with self._open_console(self.store.console_socket_path(self.spec.name)) as channel:
                self.provisioner.provision(channel)
            self._provisioned = True
            self.store.save(self.spec)
        elif self.phase is BootPhase.STARTING:
            self._claim_record()
            self.store.save(self.spec)
            self.phase = BootPhase.RUNNING
            self._log("SUCCESS", f"Machine {self.spec.name} is running")
        else:
            self._log("DEBUG", f"Machine {self.spec.name} reported running again")

    def _claim_record(self) -> None:
        if self._owns_record:
            return
        try:
            self.record.create(self._pid)
        except AlreadyStartingError:
            if self.record.read() != self._pid:
                if self.tracker.reclaim(self.record) is MachineState.RUNNING:
                    raise
                self.record.create(self._pid)
        self._owns_record = True
        self._log("DEBUG", f"pidfile {self.record.path} written with pid {self._pid}")

    def _check_start(self, error: Optional[Exception]) -> None:
        if error is None:
            return
        if isinstance(error, ManagerError):
            raise error
        raise HypervisorStartError(f"Machine {self.spec.name} failed to start: {error}")

    def _terminate(self, signum) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        self._log("INFO", f"Receiving a termination signal {name}... Bye")
        self.phase = BootPhase.STOPPING
        if self._handle.request_stop():
            try:
                self.wait_for_state(HypervisorState.STOPPED)
                self._log("SUCCESS", f"The machine {self.spec.name} was stopped successfully")
            except BootTimeoutError:
                self._log("WARN", f"The machine {self.spec.name} did not stop in time; forcing it off")
        else:
            self._log("WARN", f"The machine {self.spec.name} was not stopped properly")
        self.phase = BootPhase.STOPPED

    def _release(self) -> None:
        if self._handle is not None:
            handle, self._handle = self._handle, None
            handle.release()

    # -- helpers ---------------------------------------------------------

    def wait_for_state(self, target: HypervisorState, timeout: Optional[float] = None) -> None:
        """Block until the hypervisor reports ``target`` or the timeout expires.

        Termination signals seen meanwhile are kept for the main loop; a
        failed start request aborts the wait.
        """
        timeout = self.start_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise BootTimeoutError(
                    f"Machine {self.spec.name} failed to reach state {target.value} after {timeout}s"
                )
            try:
                event = self._events.get(timeout=remaining)
            except queue.Empty:
                continue
            if event.kind is EventKind.SIGNAL:
                self._deferred.append(event)
            elif event.kind is EventKind.START_COMPLETE:
                self._check_start(event.value)
            elif event.value is target:
                self._log("INFO", f"Machine {self.spec.name} reached state {target.value}")
                return
            else:
                self._log("DEBUG", f"Machine {self.spec.name} is {getattr(event.value, 'value', event.value)}")
