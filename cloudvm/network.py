"""Network XML generation for cloudvm."""

from __future__ import annotations

from xml.etree.ElementTree import Element, SubElement

from cloudvm.exceptions import ManagerError
from cloudvm.models import NicConfig


def render_interface(config: NicConfig) -> Element:
    """Build a libvirt <interface> element for the requested network mode."""
    if config.mode == "network":
        iface = Element("interface", type="network")
        SubElement(iface, "source", network=config.source)
    elif config.mode == "bridge":
        iface = Element("interface", type="bridge")
        SubElement(iface, "source", bridge=config.source)
    elif config.mode == "direct":
        iface = Element("interface", type="direct")
        SubElement(iface, "source", dev=config.source, mode="bridge")
    else:
        raise ManagerError(f"Unsupported network mode: {config.mode}")

    SubElement(iface, "mac", address=config.mac_address.lower())
    if config.model == "virtio" and config.mode != "network":
        SubElement(iface, "driver", name="vhost")
    SubElement(iface, "model", type=config.model)
    return iface
