"""Guest IP discovery for kvm-machine-driver.

The guest's address is looked up by the MAC of its private-network
interface. Two sources are tried in order:

1. the dnsmasq lease file libvirt keeps for the private network;
2. a live ``virNetwork.DHCPLeases()`` query, for libvirt versions that no
   longer write a lease file in the old format.

An empty result is normal right after power-on and is not an error.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from kvmdriver.constants import DNSMASQ_LEASE_DIR
from kvmdriver.domain import parse_interfaces
from kvmdriver.exceptions import DriverError, LeaseFileError, TopologyError
from kvmdriver.models import DHCPLease
from kvmdriver.network import NetworkProvisioner
from kvmdriver.utils import log


def parse_lease_file(content: str) -> List[DHCPLease]:
    """Parse dnsmasq leases (``expiry mac ip hostname client-id`` per line)."""
    leases = []
    for line_num, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        entries = line.split()
        if len(entries) < 3:
            log("WARN", f"Malformed dnsmasq line {line_num}")
            raise LeaseFileError(f"Malformed dnsmasq lease file (line {line_num}: {line!r})")
        leases.append(DHCPLease(mac=entries[1], ip=entries[2]))
    return leases


class NetworkDiscovery:
    def __init__(
        self,
        provisioner: NetworkProvisioner,
        private_network: str,
        domain_fn: Callable[[], "libvirt.virDomain"],
        lease_dir: Path = DNSMASQ_LEASE_DIR,
    ) -> None:
        self.provisioner = provisioner
        self.private_network = private_network
        self._domain_fn = domain_fn
        self.lease_dir = Path(lease_dir)

    @property
    def lease_file(self) -> Path:
        return self.lease_dir / f"{self.private_network}.leases"

    def private_mac(self) -> str:
        domain = self._domain_fn()
        try:
            xml = domain.XMLDesc(0)
        except libvirt.libvirtError as exc:
            raise DriverError(f"Failed to read domain descriptor: {exc}") from exc
        interfaces = parse_interfaces(xml)
        if len(interfaces) < 2:
            raise TopologyError(
                "VM doesn't have enough network interfaces. "
                f"Expected at least 2, found {len(interfaces)}"
            )
        return interfaces[1].mac

    def ip_from_lease_file(self, mac: str) -> str:
        try:
            # dnsmasq writes client hostnames as raw bytes.
            content = self.lease_file.read_bytes().decode("utf-8", errors="replace")
        except OSError:
            log("DEBUG", f"Failed to retrieve dnsmasq leases from {self.lease_file}")
            return ""
        wanted = mac.lower()
        for lease in parse_lease_file(content):
            if lease.mac.lower() == wanted:
                log("DEBUG", f"IP address: {lease.ip}")
                return lease.ip
        return ""

    def ip_from_dhcp_leases(self, mac: str) -> str:
        network = self.provisioner.lookup(self.private_network)
        try:
            leases = network.DHCPLeases()
        except libvirt.libvirtError as exc:
            log("WARN", f"Failed to get DHCP leases: {exc}")
            raise DriverError(f"Failed to query DHCP leases of {self.private_network}: {exc}") from exc
        for lease in leases or []:
            if lease.get("mac") == mac:
                return lease.get("ipaddr", "")
        return ""

    def resolve_ip(self) -> str:
        mac = self.private_mac()
        ip = self.ip_from_lease_file(mac)
        if not ip:
            ip = self.ip_from_dhcp_leases(mac)
        return ip
