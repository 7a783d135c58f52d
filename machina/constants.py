"""Global constants and file layout for machina."""

from __future__ import annotations

import os
import re
from pathlib import Path

# Substring every legitimate controller process carries in its command line.
COMMAND_PREFIX = "machina"

DEFAULT_WORKDIR = Path.home() / ".vm"
MACHINES_DIR_NAME = "machines"
IMAGES_DIR_NAME = "images"

SPEC_FILE_NAME = "spec.json"
PID_FILE_NAME = "vmz.pid"
OUTPUT_FILE_NAME = "output"
CONSOLE_SOCKET_NAME = "console.sock"
PROCESS_LOG_NAME = "process.log"
KERNEL_FILE_NAME = "vmlinuz"
INITRD_FILE_NAME = "initrd"
ROOT_DISK_NAME = "root.img"

SPEC_FILE_MODE = 0o644
PID_FILE_MODE = 0o600

LEASES_PATH = Path("/var/db/dhcpd_leases")
LIBVIRT_URI = "qemu:///session"
DOMAIN_PREFIX = "machina-"

GB = 1024 * 1024 * 1024
DEFAULT_CPUS = 2
DEFAULT_MEMORY = 2 * GB
MAX_CPUS = 8
MAX_MEMORY = 16 * GB
ROOT_DISK_SIZE = 15 * GB

DEFAULT_MACHINE_NAME = "primary"
DEFAULT_RELEASE = "focal"

# Kernel command lines for both boot phases.  Without root= the initramfs
# drops to a shell on the console, which is what provisioning writes to.
PROVISIONING_CMDLINE = "console=hvc0"
BOOT_CMDLINE = "console=hvc0 root=/dev/vda"

START_TIMEOUT = 5.0
STOP_GRACE_PERIOD = 10
SSH_PORT = 22
SSH_CONNECT_TIMEOUT = 10.0

CLOUD_IMAGES_URL = "https://cloud-images.ubuntu.com"

# Ubuntu architecture names mapped to the libvirt/QEMU ones.
ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}

HOST_ARCHES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

SUPPORTED_ARCHES = {
    "x86_64": {
        "machine": "q35",
        "features": ("acpi", "apic"),
        "tcg_fallback": "qemu64",
    },
    "aarch64": {
        "machine": "virt",
        "features": ("acpi",),
        "tcg_fallback": "cortex-a72",
    },
}

TRUTHY = {"1", "true", "yes", "on"}

MACHINE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
