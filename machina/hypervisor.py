"""libvirt-backed hypervisor for machina."""

from __future__ import annotations

import threading
from typing import Callable, Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from machina.constants import LIBVIRT_URI
from machina.domain import domain_name, render_domain_xml
from machina.exceptions import HypervisorConfigurationError, HypervisorStartError, ManagerError
from machina.models import BootParams, HypervisorState
from machina.utils import LogFn, kvm_available, log

StateCallback = Callable[[HypervisorState], None]
CompletionCallback = Callable[[Optional[Exception]], None]

LIFECYCLE_STATES = {
    libvirt.VIR_DOMAIN_EVENT_STARTED: HypervisorState.RUNNING,
    libvirt.VIR_DOMAIN_EVENT_RESUMED: HypervisorState.RUNNING,
    libvirt.VIR_DOMAIN_EVENT_SUSPENDED: HypervisorState.PAUSED,
    libvirt.VIR_DOMAIN_EVENT_SHUTDOWN: HypervisorState.STOPPING,
    libvirt.VIR_DOMAIN_EVENT_STOPPED: HypervisorState.STOPPED,
    libvirt.VIR_DOMAIN_EVENT_CRASHED: HypervisorState.ERROR,
}

_event_loop_lock = threading.Lock()
_event_loop_thread: Optional[threading.Thread] = None


def _run_event_loop() -> None:
    while True:
        libvirt.virEventRunDefaultImpl()


def ensure_event_loop() -> None:
    """Start libvirt's default event loop once per process.

    Must run before the first connection is opened, otherwise no lifecycle
    events are delivered.
    """
    global _event_loop_thread
    with _event_loop_lock:
        if _event_loop_thread is not None:
            return
        libvirt.virEventRegisterDefaultImpl()
        _event_loop_thread = threading.Thread(target=_run_event_loop, name="libvirt-events", daemon=True)
        _event_loop_thread.start()


def _error_message(exc: Exception) -> str:
    if hasattr(exc, "get_error_message"):
        message = exc.get_error_message()
        if message:
            return message
    return str(exc)


class LibvirtMachine:
    """Handle on one defined libvirt domain.

    State changes arrive on libvirt's event thread and are forwarded to the
    ``on_state_change`` callback as :class:`HypervisorState` values.
    """

    def __init__(self, conn, domain, on_state_change: StateCallback, log: LogFn = log) -> None:
        self.conn = conn
        self.domain = domain
        self._notify = on_state_change
        self._log = log
        self._released = False
        self._started = False
        self._callback_id = conn.domainEventRegisterAny(
            domain,
            libvirt.VIR_DOMAIN_EVENT_ID_LIFECYCLE,
            self._on_lifecycle,
            None,
        )

    def _on_lifecycle(self, conn, dom, event, detail, opaque) -> None:
        state = LIFECYCLE_STATES.get(event, HypervisorState.UNKNOWN)
        self._notify(state)

    def start(self, on_complete: CompletionCallback) -> None:
        """Boot the domain and report the outcome exactly once."""
        self._notify(HypervisorState.STARTING)
        try:
            self.domain.create()
        except libvirt.libvirtError as exc:
            on_complete(HypervisorStartError(f"Failed to start domain {self.domain.name()}: {_error_message(exc)}"))
            return
        self._started = True
        on_complete(None)

    def request_stop(self) -> bool:
        """Ask the guest to shut down; ``False`` when the request was refused."""
        try:
            return self.domain.shutdown() == 0
        except libvirt.libvirtError as exc:
            self._log("WARN", f"Shutdown request failed: {_error_message(exc)}")
            return False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self.conn.domainEventDeregisterAny(self._callback_id)
        except libvirt.libvirtError:
            self._log("DEBUG", "Lifecycle callback already deregistered")
        # A domain this handle never booted may be running for another worker.
        if self._started:
            try:
                if self.domain.isActive():
                    self._log("INFO", f"Destroying domain {self.domain.name()}")
                    self.domain.destroy()
            except libvirt.libvirtError as exc:
                self._log("DEBUG", f"Could not destroy domain: {_error_message(exc)}")
            try:
                self.domain.undefine()
            except libvirt.libvirtError as exc:
                self._log("DEBUG", f"Could not undefine domain: {_error_message(exc)}")
        else:
            self._log("DEBUG", f"Domain {self.domain.name()} was not started by this worker, leaving it alone")
        try:
            self.conn.close()
        except libvirt.libvirtError as exc:
            self._log("DEBUG", f"Could not close libvirt connection: {_error_message(exc)}")


class LibvirtHypervisor:
    """Turns :class:`BootParams` into running libvirt domains."""

    def __init__(self, uri: str = LIBVIRT_URI, log: LogFn = log) -> None:
        self.uri = uri
        self._log = log
        self._kvm = kvm_available()

    def configure(self, params: BootParams, on_state_change: StateCallback) -> LibvirtMachine:
        ensure_event_loop()
        xml = render_domain_xml(params, kvm=self._kvm)
        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to open libvirt connection to {self.uri}: {_error_message(exc)}") from exc
        if conn is None:
            raise ManagerError(f"Failed to open libvirt connection to {self.uri}")

        name = domain_name(params.name)
        try:
            existing = conn.lookupByName(name)
        except libvirt.libvirtError:
            existing = None
        if existing is not None and existing.isActive():
            conn.close()
            raise HypervisorConfigurationError(f"Domain {name} is already active")

        try:
            domain = conn.defineXMLFlags(xml, libvirt.VIR_DOMAIN_DEFINE_VALIDATE)
        except libvirt.libvirtError as exc:
            conn.close()
            raise HypervisorConfigurationError(f"validation failed for {name}: {_error_message(exc)}") from exc
        if domain is None:
            conn.close()
            raise HypervisorConfigurationError(f"Failed to define domain {name}")
        self._log("DEBUG", f"Defined domain {name}")
        return LibvirtMachine(conn, domain, on_state_change, log=self._log)
