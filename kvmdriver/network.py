"""Private/public libvirt network handling for kvm-machine-driver."""

from __future__ import annotations

from typing import Optional
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from kvmdriver.connection import HypervisorConnection
from kvmdriver.constants import (
    PRIVATE_DHCP_END,
    PRIVATE_DHCP_START,
    PRIVATE_NETWORK_ADDRESS,
    PRIVATE_NETWORK_NETMASK,
)
from kvmdriver.exceptions import DriverError, MisconfiguredNetworkError, NetworkNotFoundError
from kvmdriver.models import NetworkAddressing
from kvmdriver.utils import log


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def render_network_xml(
    name: str,
    address: str = PRIVATE_NETWORK_ADDRESS,
    netmask: str = PRIVATE_NETWORK_NETMASK,
    dhcp_start: str = PRIVATE_DHCP_START,
    dhcp_end: str = PRIVATE_DHCP_END,
) -> str:
    """Render an isolated (no ``<forward>``) network with a DHCP range."""
    network = Element("network")
    SubElement(network, "name").text = name
    ip_el = SubElement(network, "ip", address=address, netmask=netmask)
    dhcp = SubElement(ip_el, "dhcp")
    SubElement(dhcp, "range", start=dhcp_start, end=dhcp_end)
    return _element_to_str(network)


def parse_network_addressing(xml: str) -> Optional[NetworkAddressing]:
    """Return the first IPv4 block that carries a DHCP range, if any.

    Accepts both ``netmask`` and ``prefix`` forms since libvirt echoes back
    whichever one the network was defined with.
    """
    try:
        root = fromstring(xml)
    except ParseError as exc:
        raise MisconfiguredNetworkError(f"Network descriptor is not valid XML: {exc}") from exc

    for ip_el in root.findall("ip"):
        if ip_el.get("family", "ipv4") != "ipv4":
            continue
        address = ip_el.get("address")
        range_el = ip_el.find("dhcp/range")
        if not address or range_el is None:
            continue
        start = range_el.get("start")
        end = range_el.get("end")
        if not start or not end:
            continue
        return NetworkAddressing(
            address=address,
            netmask=ip_el.get("netmask") or ip_el.get("prefix"),
            dhcp_start=start,
            dhcp_end=end,
        )
    return None


class NetworkProvisioner:
    def __init__(self, connection: HypervisorConnection) -> None:
        self.connection = connection

    def lookup(self, name: str) -> libvirt.virNetwork:
        conn = self.connection.connect()
        try:
            return conn.networkLookupByName(name)
        except libvirt.libvirtError as exc:
            log("ERROR", f"Unable to locate network {name}")
            raise NetworkNotFoundError(f"libvirt network '{name}' not found: {exc}") from exc

    def ensure_public_network(self, name: str) -> libvirt.virNetwork:
        """The public network is operator-managed; only check it exists."""
        log("DEBUG", f"Validating network {name}")
        return self.lookup(name)

    def ensure_private_network(self, name: str) -> libvirt.virNetwork:
        log("DEBUG", "Validating private network")
        conn = self.connection.connect()
        try:
            network = conn.networkLookupByName(name)
        except libvirt.libvirtError:
            return self._define_private_network(name)

        try:
            xml = network.XMLDesc(0)
        except libvirt.libvirtError as exc:
            raise DriverError(f"Failed to read descriptor of network {name}: {exc}") from exc
        if parse_network_addressing(xml) is None:
            raise MisconfiguredNetworkError(f"{name} network doesn't have DHCP configured properly")

        try:
            active = network.isActive()
        except libvirt.libvirtError as exc:
            log("WARN", f"Could not query state of network {name}: {exc}")
            active = False
        if not active:
            log("DEBUG", f"Reactivating private network {name}")
            try:
                network.create()
            except libvirt.libvirtError as exc:
                log("WARN", f"Failed to start network {name}: {exc}")
        return network

    def _define_private_network(self, name: str) -> libvirt.virNetwork:
        conn = self.connection.connect()
        xml = render_network_xml(name)
        log("INFO", f"Creating private network {name} ({PRIVATE_NETWORK_ADDRESS}/{PRIVATE_NETWORK_NETMASK})")
        try:
            network = conn.networkDefineXML(xml)
        except libvirt.libvirtError as exc:
            log("ERROR", f"Failed to create private network: {exc}")
            raise DriverError(f"Failed to define private network {name}: {exc}") from exc
        if network is None:
            raise DriverError(f"Failed to define private network {name}")
        try:
            network.setAutostart(1)
        except libvirt.libvirtError as exc:
            log("WARN", f"Failed to set private network to autostart: {exc}")
        try:
            network.create()
        except libvirt.libvirtError as exc:
            log("WARN", f"Failed to start network {name}: {exc}")
            raise DriverError(f"Failed to start private network {name}: {exc}") from exc
        log("SUCCESS", f"Private network {name} defined and active")
        return network
