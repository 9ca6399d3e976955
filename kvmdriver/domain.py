"""Domain XML generation and inspection for kvm-machine-driver."""

from __future__ import annotations

from typing import List
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, tostring

from kvmdriver.exceptions import TopologyError
from kvmdriver.models import Interface, MachineConfig


def render_domain_xml(cfg: MachineConfig) -> str:
    """Render the libvirt domain for ``cfg``.

    Output depends only on ``cfg``. Interface order is fixed: the public
    network first, the private network second. Discovery reads the MAC of
    the second interface, so that order must not change.
    """
    domain = Element("domain", type="kvm")

    SubElement(domain, "name").text = cfg.machine_name
    SubElement(domain, "memory", unit="MiB").text = str(cfg.memory_mb)
    SubElement(domain, "vcpu").text = str(cfg.cpus)

    features = SubElement(domain, "features")
    for feature in ("acpi", "apic", "pae"):
        SubElement(features, feature)
    SubElement(domain, "cpu", mode="host-passthrough")

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type").text = "hvm"
    SubElement(os_el, "boot", dev="cdrom")
    SubElement(os_el, "boot", dev="hd")
    SubElement(os_el, "bootmenu", enable="no")

    devices = SubElement(domain, "devices")

    cdrom = SubElement(devices, "disk", type="file", device="cdrom")
    SubElement(cdrom, "source", file=str(cfg.boot_image_path))
    SubElement(cdrom, "target", dev="hdc", bus="ide")
    SubElement(cdrom, "readonly")

    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type="raw", cache=cfg.cache_mode, io=cfg.io_mode)
    SubElement(disk, "source", file=str(cfg.disk_path))
    SubElement(disk, "target", dev="hda", bus="ide")

    # Console endpoints are reachable from the libvirt host only.
    graphics = SubElement(devices, "graphics", type="vnc", autoport="yes", websocket="-1", listen="127.0.0.1")
    SubElement(graphics, "listen", type="address", address="127.0.0.1")
    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    for network_name in (cfg.network, cfg.private_network):
        iface = SubElement(devices, "interface", type="network")
        SubElement(iface, "source", network=network_name)
        SubElement(iface, "model", type="virtio")

    from xml.dom.minidom import parseString

    raw = tostring(domain, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()


def parse_interfaces(xml: str) -> List[Interface]:
    """Return ``(network, mac)`` for every ``<devices><interface>`` in document order."""
    try:
        root = fromstring(xml)
    except ParseError as exc:
        raise TopologyError(f"Domain descriptor is not valid XML: {exc}") from exc

    interfaces = []
    for iface in root.findall("devices/interface"):
        source = iface.find("source")
        mac = iface.find("mac")
        interfaces.append(
            Interface(
                network=source.get("network", "") if source is not None else "",
                mac=mac.get("address", "") if mac is not None else "",
            )
        )
    return interfaces
