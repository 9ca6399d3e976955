"""Shared fixtures and in-memory libvirt fakes."""

from __future__ import annotations

from typing import Dict, List, Optional
from unittest.mock import patch
from xml.etree.ElementTree import SubElement, fromstring, tostring

import libvirt
import pytest

from kvmdriver.connection import HypervisorConnection
from kvmdriver.models import MachineConfig


class FakeNetwork:
    def __init__(self, xml: str, active: bool = False) -> None:
        self.xml = xml
        self.active = active
        self.autostart = False
        self.leases: List[dict] = []
        self.create_calls = 0
        self.fail_create = False

    def name(self) -> str:
        return fromstring(self.xml).findtext("name")

    def XMLDesc(self, flags=0) -> str:
        return self.xml

    def isActive(self) -> int:
        return 1 if self.active else 0

    def create(self) -> int:
        self.create_calls += 1
        if self.fail_create:
            raise libvirt.libvirtError("network start failed")
        if self.active:
            raise libvirt.libvirtError("network is already active")
        self.active = True
        return 0

    def setAutostart(self, flag) -> int:
        self.autostart = bool(flag)
        return 0

    def DHCPLeases(self, mac=None, flags=0) -> List[dict]:
        return list(self.leases)


class FakeDomain:
    """Domain whose descriptor gains ``<mac>`` elements the way libvirt's does."""

    def __init__(self, conn: "FakeConnection", xml: str) -> None:
        self.conn = conn
        root = fromstring(xml)
        for idx, iface in enumerate(root.findall("devices/interface")):
            if iface.find("mac") is None:
                SubElement(iface, "mac", address=f"52:54:00:aa:bb:{idx:02x}")
        self.xml = tostring(root, encoding="unicode")
        self.state_code = libvirt.VIR_DOMAIN_SHUTOFF
        self.stops_on_shutdown = True
        self.fail_destroy = False
        self.fail_undefine = False
        self.calls: List[str] = []

    def name(self) -> str:
        return fromstring(self.xml).findtext("name")

    def XMLDesc(self, flags=0) -> str:
        return self.xml

    def state(self, flags=0):
        return [self.state_code, 0]

    def create(self) -> int:
        self.calls.append("create")
        self.state_code = libvirt.VIR_DOMAIN_RUNNING
        return 0

    def shutdown(self) -> int:
        self.calls.append("shutdown")
        if self.stops_on_shutdown:
            self.state_code = libvirt.VIR_DOMAIN_SHUTOFF
        return 0

    def destroy(self) -> int:
        self.calls.append("destroy")
        if self.fail_destroy or self.state_code == libvirt.VIR_DOMAIN_SHUTOFF:
            raise libvirt.libvirtError("Requested operation is not valid: domain is not running")
        self.state_code = libvirt.VIR_DOMAIN_SHUTOFF
        return 0

    def undefine(self) -> int:
        self.calls.append("undefine")
        if self.fail_undefine:
            raise libvirt.libvirtError("cannot delete inactive domain with 1 snapshots")
        self.conn.domains.pop(self.name(), None)
        return 0


class FakeConnection:
    def __init__(self) -> None:
        self.domains: Dict[str, FakeDomain] = {}
        self.networks: Dict[str, FakeNetwork] = {}
        self.lookups: List[str] = []
        self.network_defines = 0
        self.closed = False

    def getLibVersion(self) -> int:
        return 8000000

    def lookupByName(self, name: str) -> FakeDomain:
        self.lookups.append(name)
        try:
            return self.domains[name]
        except KeyError:
            raise libvirt.libvirtError(f"Domain not found: no domain with matching name '{name}'")

    def defineXML(self, xml: str) -> FakeDomain:
        domain = FakeDomain(self, xml)
        self.domains[domain.name()] = domain
        return domain

    def networkLookupByName(self, name: str) -> FakeNetwork:
        try:
            return self.networks[name]
        except KeyError:
            raise libvirt.libvirtError(f"Network not found: no network with matching name '{name}'")

    def networkDefineXML(self, xml: str) -> FakeNetwork:
        self.network_defines += 1
        network = FakeNetwork(xml)
        self.networks[network.name()] = network
        return network

    def add_network(self, name: str, xml: Optional[str] = None, active: bool = True) -> FakeNetwork:
        network = FakeNetwork(xml or f"<network><name>{name}</name></network>", active=active)
        self.networks[name] = network
        return network

    def close(self) -> int:
        self.closed = True
        return 0


@pytest.fixture
def fake_conn() -> FakeConnection:
    conn = FakeConnection()
    conn.add_network("default")
    return conn


@pytest.fixture
def connection(fake_conn):
    with patch("kvmdriver.connection.libvirt.open", return_value=fake_conn):
        yield HypervisorConnection("qemu:///system")


@pytest.fixture
def boot_iso(tmp_path):
    iso = tmp_path / "source" / "boot2docker.iso"
    iso.parent.mkdir(parents=True)
    iso.write_bytes(b"ISO" * 100)
    return iso


@pytest.fixture
def machine_config(tmp_path, boot_iso) -> MachineConfig:
    """Return a MachineConfig rooted in a temporary store."""
    return MachineConfig(
        machine_name="test-machine",
        store_path=tmp_path / "store",
        memory_mb=1024,
        disk_size_mb=20000,
        boot_timeout=0,
        boot_image_url=str(boot_iso),
    )


@pytest.fixture
def lease_dir(tmp_path):
    path = tmp_path / "dnsmasq"
    path.mkdir()
    return path


@pytest.fixture
def no_sleep():
    with patch("kvmdriver.utils.time.sleep") as mock_sleep:
        yield mock_sleep
