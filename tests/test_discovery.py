"""Tests for kvmdriver.discovery (guest IP resolution)."""

from __future__ import annotations

from unittest.mock import MagicMock

import libvirt
import pytest

from kvmdriver.discovery import NetworkDiscovery, parse_lease_file
from kvmdriver.exceptions import DriverError, LeaseFileError, NetworkNotFoundError, TopologyError
from kvmdriver.network import NetworkProvisioner, render_network_xml

PRIVATE_MAC = "52:54:00:aa:bb:01"

DOMAIN_XML = (
    "<domain><name>vm</name><devices>"
    "<interface type='network'><mac address='52:54:00:aa:bb:00'/><source network='default'/></interface>"
    f"<interface type='network'><mac address='{PRIVATE_MAC}'/><source network='docker-machines'/></interface>"
    "</devices></domain>"
)


@pytest.fixture
def domain():
    dom = MagicMock()
    dom.XMLDesc.return_value = DOMAIN_XML
    return dom


@pytest.fixture
def discovery(connection, fake_conn, domain, lease_dir):
    fake_conn.add_network("docker-machines", render_network_xml("docker-machines"))
    return NetworkDiscovery(NetworkProvisioner(connection), "docker-machines", lambda: domain, lease_dir=lease_dir)


class TestParseLeaseFile:
    def test_parses_entries(self):
        leases = parse_lease_file("1700000000 52:54:00:aa:bb:01 192.168.42.10 boot2docker *\n")
        assert leases[0].mac == "52:54:00:aa:bb:01"
        assert leases[0].ip == "192.168.42.10"

    def test_empty_lines_skipped(self):
        content = "\n1700000000 52:54:00:aa:bb:01 192.168.42.10 host *\n\n"
        assert len(parse_lease_file(content)) == 1

    def test_short_line_is_fatal(self):
        content = "1700000000 52:54:00:aa:bb:01 192.168.42.10 host *\n1700000000 52:54:00:aa:bb:02\n"
        with pytest.raises(LeaseFileError, match="line 2"):
            parse_lease_file(content)

    def test_any_whitespace_separates_fields(self):
        leases = parse_lease_file("1700000000\t52:54:00:aa:bb:01   192.168.42.10\n")
        assert leases[0].ip == "192.168.42.10"


class TestPrivateMac:
    def test_second_interface(self, discovery):
        assert discovery.private_mac() == PRIVATE_MAC

    def test_too_few_interfaces(self, discovery, domain):
        domain.XMLDesc.return_value = (
            "<domain><devices><interface type='network'><mac address='52:54:00:00:00:01'/></interface></devices></domain>"
        )
        with pytest.raises(TopologyError, match="Expected at least 2, found 1"):
            discovery.private_mac()

    def test_descriptor_failure(self, discovery, domain):
        domain.XMLDesc.side_effect = libvirt.libvirtError("connection reset")
        with pytest.raises(DriverError, match="domain descriptor"):
            discovery.private_mac()


class TestLeaseFile:
    def test_case_insensitive_match(self, discovery, lease_dir):
        (lease_dir / "docker-machines.leases").write_text(
            "1700000000 AA:BB:CC:DD:EE:FF 192.168.42.77 host *\n"
        )
        assert discovery.ip_from_lease_file("aa:bb:cc:dd:ee:ff") == "192.168.42.77"

    def test_missing_file_is_empty(self, discovery):
        assert discovery.ip_from_lease_file(PRIVATE_MAC) == ""

    def test_no_match_is_empty(self, discovery, lease_dir):
        (lease_dir / "docker-machines.leases").write_text("1700000000 52:54:00:00:00:99 192.168.42.5 h *\n")
        assert discovery.ip_from_lease_file(PRIVATE_MAC) == ""

    def test_malformed_line_is_fatal(self, discovery, lease_dir):
        (lease_dir / "docker-machines.leases").write_text("garbage\n")
        with pytest.raises(LeaseFileError):
            discovery.ip_from_lease_file(PRIVATE_MAC)

    def test_non_utf8_hostname(self, discovery, lease_dir):
        (lease_dir / "docker-machines.leases").write_bytes(
            f"1700000000 {PRIVATE_MAC} 192.168.42.10 caf\xe9-host *\n".encode("latin-1")
        )
        assert discovery.ip_from_lease_file(PRIVATE_MAC) == "192.168.42.10"


class TestDhcpLeases:
    def test_first_exact_match(self, discovery, fake_conn):
        fake_conn.networks["docker-machines"].leases = [
            {"mac": "52:54:00:00:00:99", "ipaddr": "192.168.42.3"},
            {"mac": PRIVATE_MAC, "ipaddr": "192.168.42.20"},
            {"mac": PRIVATE_MAC, "ipaddr": "192.168.42.21"},
        ]
        assert discovery.ip_from_dhcp_leases(PRIVATE_MAC) == "192.168.42.20"

    def test_match_is_exact(self, discovery, fake_conn):
        fake_conn.networks["docker-machines"].leases = [{"mac": PRIVATE_MAC.upper(), "ipaddr": "192.168.42.20"}]
        assert discovery.ip_from_dhcp_leases(PRIVATE_MAC) == ""

    def test_missing_network(self, discovery, fake_conn):
        del fake_conn.networks["docker-machines"]
        with pytest.raises(NetworkNotFoundError):
            discovery.ip_from_dhcp_leases(PRIVATE_MAC)

    def test_query_failure(self, discovery, fake_conn, monkeypatch):
        network = fake_conn.networks["docker-machines"]
        monkeypatch.setattr(network, "DHCPLeases", MagicMock(side_effect=libvirt.libvirtError("unsupported")))
        with pytest.raises(DriverError, match="DHCP leases"):
            discovery.ip_from_dhcp_leases(PRIVATE_MAC)


class TestResolveIp:
    def test_lease_file_wins(self, discovery, fake_conn, lease_dir):
        (lease_dir / "docker-machines.leases").write_text(f"1700000000 {PRIVATE_MAC} 192.168.42.10 h *\n")
        fake_conn.networks["docker-machines"].leases = [{"mac": PRIVATE_MAC, "ipaddr": "192.168.42.99"}]
        assert discovery.resolve_ip() == "192.168.42.10"

    def test_falls_back_to_live_query(self, discovery, fake_conn):
        fake_conn.networks["docker-machines"].leases = [{"mac": PRIVATE_MAC, "ipaddr": "192.168.42.99"}]
        assert discovery.resolve_ip() == "192.168.42.99"

    def test_nothing_known_yet(self, discovery):
        assert discovery.resolve_ip() == ""

    def test_lease_file_path(self, discovery, lease_dir):
        assert discovery.lease_file == lease_dir / "docker-machines.leases"
