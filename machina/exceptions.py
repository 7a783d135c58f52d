"""Custom exceptions for machina."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class NotFoundError(ManagerError):
    """A machine spec, DHCP lease or process record does not exist (yet)."""


class SpecFormatError(ManagerError):
    """A stored machine spec is not valid JSON or misses required fields."""


class LeaseParseError(ManagerError):
    """The DHCP lease database contains a line we do not understand."""


class PidRecordError(ManagerError):
    """The PID record exists but cannot be read or parsed."""


class StaleProcessError(ManagerError):
    """The PID record points to a dead process or to a foreign one."""


class AlreadyRunningError(ManagerError):
    """A live controller already owns the machine."""


class AlreadyStartingError(ManagerError):
    """Another controller claimed the machine's PID record first."""


class BootTimeoutError(ManagerError):
    """The hypervisor did not reach the expected state in time."""


class HypervisorStartError(ManagerError):
    """The hypervisor reported an error while starting the machine."""


class HypervisorConfigurationError(ManagerError):
    """The hypervisor rejected the machine configuration."""


class ProvisioningKeyMissingError(ManagerError):
    """The operator public key needed for first boot cannot be read."""


class ShutdownEscalationError(ManagerError):
    """Graceful shutdown failed and the controller process was signalled."""


class DownloadError(ManagerError):
    """A distribution artifact could not be downloaded or unpacked."""
