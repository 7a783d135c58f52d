"""Operator SSH keypair used to provision and stop machines."""

from __future__ import annotations

import os
from pathlib import Path

try:
    import paramiko  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("paramiko is required but not installed") from exc

from machina.constants import COMMAND_PREFIX
from machina.exceptions import ManagerError
from machina.utils import LogFn, log

KEY_BITS = 2048
PRIVATE_KEY_MODE = 0o600


def public_key_path(private_path: Path) -> Path:
    return private_path.with_name(private_path.name + ".pub")


def generate_keypair(private_path: Path, force: bool = False, bits: int = KEY_BITS, log: LogFn = log) -> Path:
    """Create an RSA keypair at ``private_path``; returns the public key path.

    An existing private key is left untouched unless ``force`` is set.
    """
    public_path = public_key_path(private_path)
    if private_path.exists() and not force:
        log("WARN", f"Keypair already exists at {private_path} (use --force to replace it)")
        return public_path

    try:
        private_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        key = paramiko.RSAKey.generate(bits)
        private_path.unlink(missing_ok=True)
        fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_KEY_MODE)
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            key.write_private_key(handle)
        public_path.write_text(f"{key.get_name()} {key.get_base64()} {COMMAND_PREFIX}\n", encoding="ascii")
    except OSError as exc:
        raise ManagerError(f"Cannot write keypair to {private_path}: {exc}") from exc
    log("SUCCESS", f"Keypair written to {private_path} and {public_path}")
    return public_path
