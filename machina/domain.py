"""libvirt domain XML generation for machina."""

from __future__ import annotations

from typing import Optional
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, SubElement, tostring

from machina.constants import DOMAIN_PREFIX, SUPPORTED_ARCHES
from machina.exceptions import HypervisorConfigurationError
from machina.models import BootParams


def domain_name(machine_name: str) -> str:
    return f"{DOMAIN_PREFIX}{machine_name}"


def _element_to_str(root: Element) -> str:
    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def render_interface(network: str, mac: str, model: str = "virtio") -> Element:
    """Interface element for ``user`` mode networking or a named libvirt network."""
    if network == "user":
        iface = Element("interface", type="user")
    else:
        iface = Element("interface", type="network")
        SubElement(iface, "source", network=network)
    SubElement(iface, "mac", address=mac.lower())
    SubElement(iface, "model", type=model)
    return iface


def render_domain_xml(params: BootParams, kvm: bool, cpu_model: Optional[str] = None) -> str:
    """Render a direct-kernel-boot domain for one boot of a machine."""
    profile = SUPPORTED_ARCHES.get(params.arch)
    if profile is None:
        supported = ", ".join(sorted(SUPPORTED_ARCHES))
        raise HypervisorConfigurationError(f"Unsupported architecture '{params.arch}'. Supported: {supported}")
    if params.cpu < 1:
        raise HypervisorConfigurationError(f"A machine needs at least one CPU (got {params.cpu})")
    if params.ram < 64 * 1024 * 1024:
        raise HypervisorConfigurationError(f"Memory size {params.ram} is too small")

    domain = Element("domain", type="kvm" if kvm else "qemu")
    SubElement(domain, "name").text = domain_name(params.name)
    SubElement(domain, "memory", unit="b").text = str(params.ram)
    SubElement(domain, "vcpu", placement="static").text = str(params.cpu)

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch=params.arch, machine=profile["machine"]).text = "hvm"
    SubElement(os_el, "kernel").text = str(params.kernel)
    SubElement(os_el, "initrd").text = str(params.initrd)
    SubElement(os_el, "cmdline").text = params.cmdline

    features = SubElement(domain, "features")
    for feature in profile["features"]:
        SubElement(features, feature)

    if kvm and cpu_model is None:
        SubElement(domain, "cpu", mode="host-passthrough")
    else:
        cpu_el = SubElement(domain, "cpu", mode="custom", match="exact")
        SubElement(cpu_el, "model", fallback="allow").text = cpu_model or profile["tcg_fallback"]

    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "destroy"

    devices = SubElement(domain, "devices")

    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type="raw")
    SubElement(disk, "source", file=str(params.disk))
    SubElement(disk, "target", dev="vda", bus="virtio")

    devices.append(render_interface(params.network, params.mac))

    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    SubElement(devices, "memballoon", model="virtio")

    # Console served on a unix socket for input; everything the guest prints
    # is also appended to the log file so it can be tailed.
    console = SubElement(devices, "console", type="unix")
    SubElement(console, "source", mode="bind", path=str(params.console_socket))
    SubElement(console, "log", file=str(params.console_log), append="on")
    SubElement(console, "target", type="virtio", port="0")

    if params.socket_device:
        vsock = SubElement(devices, "vsock", model="virtio")
        SubElement(vsock, "cid", auto="yes")

    return _element_to_str(domain)
