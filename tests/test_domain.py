"""Tests for machina.domain module."""

from __future__ import annotations

from xml.etree import ElementTree

import pytest

from machina.domain import domain_name, render_domain_xml, render_interface
from machina.exceptions import HypervisorConfigurationError

GB = 1024 * 1024 * 1024


@pytest.fixture
def render(make_params):
    def _render(kvm=True, **overrides) -> ElementTree.Element:
        return ElementTree.fromstring(render_domain_xml(make_params(**overrides), kvm=kvm))

    return _render


class TestDomainXml:
    def test_identity_and_resources(self, render):
        root = render()
        assert root.get("type") == "kvm"
        assert root.findtext("name") == domain_name("primary") == "machina-primary"
        assert root.findtext("memory") == str(2 * GB)
        assert root.find("memory").get("unit") == "b"
        assert root.findtext("vcpu") == "2"

    def test_direct_kernel_boot(self, render):
        os_el = render().find("os")
        assert os_el.find("type").get("arch") == "x86_64"
        assert os_el.find("type").get("machine") == "q35"
        assert os_el.findtext("kernel") == "/vm/primary/vmlinuz"
        assert os_el.findtext("initrd") == "/vm/primary/initrd"
        assert os_el.findtext("cmdline") == "console=hvc0 root=/dev/vda"

    def test_disk(self, render):
        disk = render().find("devices/disk")
        assert disk.find("source").get("file") == "/vm/primary/root.img"
        assert disk.find("target").get("dev") == "vda"
        assert disk.find("driver").get("type") == "raw"

    def test_console_socket_and_log(self, render):
        console = render().find("devices/console")
        assert console.get("type") == "unix"
        assert console.find("source").get("mode") == "bind"
        assert console.find("source").get("path") == "/vm/primary/console.sock"
        assert console.find("log").get("file") == "/vm/primary/output"
        assert console.find("log").get("append") == "on"
        assert console.find("target").get("type") == "virtio"

    def test_entropy_and_balloon(self, render):
        devices = render().find("devices")
        assert devices.findtext("rng/backend") == "/dev/urandom"
        assert devices.find("memballoon").get("model") == "virtio"

    def test_poweroff_destroys(self, render):
        assert render().findtext("on_poweroff") == "destroy"

    def test_socket_device_only_when_requested(self, render):
        assert render().find("devices/vsock") is None
        assert render(socket_device=True).find("devices/vsock") is not None

    def test_tcg_uses_fallback_cpu(self, render):
        root = render(kvm=False)
        assert root.get("type") == "qemu"
        assert root.find("cpu").get("mode") == "custom"
        assert root.findtext("cpu/model") == "qemu64"

    def test_kvm_host_passthrough(self, render):
        assert render().find("cpu").get("mode") == "host-passthrough"

    def test_aarch64(self, render):
        root = render(arch="aarch64")
        assert root.find("os/type").get("machine") == "virt"

    def test_mac_on_interface(self, render):
        iface = render(mac="02:AA:BB:CC:DD:EE").find("devices/interface")
        assert iface.get("type") == "user"
        assert iface.find("mac").get("address") == "02:aa:bb:cc:dd:ee"

    def test_unsupported_arch(self, make_params):
        with pytest.raises(HypervisorConfigurationError, match="Unsupported architecture"):
            render_domain_xml(make_params(arch="riscv64"), kvm=True)

    def test_zero_cpu(self, make_params):
        with pytest.raises(HypervisorConfigurationError, match="at least one CPU"):
            render_domain_xml(make_params(cpu=0), kvm=True)

    def test_tiny_memory(self, make_params):
        with pytest.raises(HypervisorConfigurationError, match="too small"):
            render_domain_xml(make_params(ram=1024), kvm=True)


class TestRenderInterface:
    def test_named_network(self):
        iface = render_interface("default", "02:00:00:00:00:01")
        assert iface.get("type") == "network"
        assert iface.find("source").get("network") == "default"
        assert iface.find("model").get("type") == "virtio"
