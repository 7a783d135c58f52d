"""machina package."""

__all__ = [
    "cli",
    "config",
    "console",
    "constants",
    "distribution",
    "domain",
    "exceptions",
    "hypervisor",
    "keys",
    "launcher",
    "models",
    "network",
    "orchestrator",
    "process",
    "shutdown",
    "store",
    "utils",
]
