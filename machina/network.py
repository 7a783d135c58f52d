"""Network identity for machina: deterministic MACs and DHCP lease lookup."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from machina.constants import LEASES_PATH
from machina.exceptions import LeaseParseError, ManagerError, NotFoundError
from machina.models import DHCPLeaseEntry
from machina.utils import LogFn, log

_LEADING_ZERO_RE = re.compile(r"0([A-Fa-f0-9](:|$))")

_LEASE_FIELDS = {"name", "ip_address", "hw_address", "identifier", "lease"}


def derive_mac(name: str) -> str:
    """Return the locally administered MAC address of machine ``name``.

    The first octet is fixed to ``02``; the other five come from the MD5 digest
    of the name, so a machine always asks DHCP for the same lease.
    """
    digest = hashlib.md5(name.encode("utf-8")).hexdigest()
    octets = ["02"] + [digest[i:i + 2] for i in range(0, 10, 2)]
    return ":".join(octets)


def trim_mac(mac: str) -> str:
    """Drop the leading zero of each octet, the way bootpd writes leases."""
    return _LEADING_ZERO_RE.sub(r"\1", mac)


def _normalize(mac: str) -> str:
    return trim_mac(mac.strip().lower())


def parse_leases(lines: Iterable[str]) -> List[DHCPLeaseEntry]:
    """Parse a ``{ key=value ... }`` lease database into entries."""
    entries: List[DHCPLeaseEntry] = []
    current: Optional[Dict[str, str]] = None
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line:
            continue
        if line == "{":
            current = {}
            continue
        if line == "}":
            if current is None:
                raise LeaseParseError(f"unexpected '}}' at line {lineno}")
            entries.append(DHCPLeaseEntry(**current))
            current = None
            continue

        key, sep, value = line.partition("=")
        if not sep:
            raise LeaseParseError(f"invalid line in dhcp leases file: {line}")
        if current is None:
            raise LeaseParseError(f"line {lineno} is outside of a lease block: {line}")
        if key not in _LEASE_FIELDS:
            raise LeaseParseError(f"unable to parse line: {line}")
        if key == "hw_address":
            # bootpd prefixes the hardware type, e.g. "1,"
            value = value[2:]
        current[key] = value
    return entries


def resolve_ip(mac: str, leases_path: Path = LEASES_PATH, log: LogFn = log) -> str:
    """Return the leased IP address for ``mac`` or raise ``NotFoundError``."""
    wanted = _normalize(mac)
    log("DEBUG", f"Searching for {wanted} in {leases_path}")
    try:
        # Hostnames in the database are host-supplied and may not be UTF-8.
        with open(leases_path, encoding="utf-8", errors="replace") as handle:
            entries = parse_leases(handle)
    except FileNotFoundError:
        raise NotFoundError(f"DHCP lease database {leases_path} does not exist")
    except OSError as exc:
        raise ManagerError(f"Cannot read DHCP lease database {leases_path}: {exc}") from exc
    log("DEBUG", f"Found {len(entries)} entries in {leases_path}")
    for entry in entries:
        if _normalize(entry.hw_address) == wanted:
            return entry.ip_address
    raise NotFoundError(f"could not find an IP address for {mac}")
