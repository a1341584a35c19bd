"""cloud-init provisioning payload rendering for cloudvm."""

from __future__ import annotations

import base64
import json
import string
import textwrap
import uuid
from typing import Dict, List, Optional
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, SubElement, register_namespace, tostring

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from cloudvm.models import (
    NetworkConfigFormat,
    NetworkSettings,
    ProvisionConfig,
    ProvisioningPayload,
    ProvisioningProtocol,
)
from cloudvm.utils import hash_password, log

OVF_NS = "http://schemas.dmtf.org/ovf/environment/1"
WA_NS = "http://schemas.microsoft.com/windowsazure"

# Parameters available to both this template and custom templates: see
# template_parameters().
USER_DATA_TEMPLATE = """\
#cloud-config
hostname: $hostname
fqdn: $fqdn
manage_etc_hosts: true
timezone: $timezone
locale: $locale
users:
  - name: $user
    sudo: "ALL=(ALL) NOPASSWD:ALL"
    shell: /bin/bash
    lock_passwd: false
    passwd: $password_hash
    ssh_authorized_keys: $ssh_authorized_keys
chpasswd:
  expire: false
ssh_pwauth: true
"""


def template_parameters(cfg: ProvisionConfig) -> Dict[str, str]:
    fqdn = f"{cfg.hostname}.{cfg.domain}" if cfg.domain else cfg.hostname
    return {
        "hostname": cfg.hostname,
        "fqdn": fqdn,
        "domain": cfg.domain or "",
        "user": cfg.login_user,
        "password_hash": json.dumps(hash_password(cfg.password)),
        "ssh_authorized_keys": json.dumps(cfg.ssh_keys),
        "timezone": cfg.timezone,
        "locale": cfg.locale,
        "packages": json.dumps(["qemu-guest-agent"] if cfg.guest_agent else []),
    }


def render_user_data(cfg: ProvisionConfig, parameters: Optional[Dict[str, str]] = None) -> str:
    """Fill the user-data template; a custom template file replaces the built-in one."""
    if parameters is None:
        parameters = template_parameters(cfg)
    template_text = USER_DATA_TEMPLATE
    custom = cfg.user_data_template
    if custom is not None:
        if custom.is_file():
            log("INFO", f"Using user-data template {custom}")
            template_text = custom.read_text(encoding="utf-8")
        else:
            log("WARN", f"User-data template {custom} not found; using the built-in template")
    return string.Template(template_text).safe_substitute(parameters)


def render_meta_data(cfg: ProvisionConfig) -> str:
    instance_id = f"iid-{cfg.hostname}-{uuid.uuid4().hex[:8]}"
    return (
        textwrap.dedent(
            f"""
        instance-id: {instance_id}
        local-hostname: {cfg.hostname}
        """
        ).strip()
        + "\n"
    )


def _network_config_v2(settings: NetworkSettings) -> Dict[str, object]:
    ethernet: Dict[str, object] = {}
    if settings.mac_address:
        ethernet["match"] = {"macaddress": settings.mac_address}
        ethernet["set-name"] = settings.interface_name
    ethernet["dhcp4"] = False
    if settings.ip_address:
        ethernet["addresses"] = [settings.ip_address]
    if settings.gateway:
        ethernet["routes"] = [{"to": "default", "via": settings.gateway}]
    nameservers: Dict[str, List[str]] = {}
    if settings.dns_addresses:
        nameservers["addresses"] = settings.dns_addresses
    if settings.dns_search:
        nameservers["search"] = settings.dns_search
    if nameservers:
        ethernet["nameservers"] = nameservers
    return {"version": 2, "ethernets": {settings.interface_name: ethernet}}


def _network_config_v1(settings: NetworkSettings) -> Dict[str, object]:
    subnet: Dict[str, object] = {"type": "static"}
    if settings.ip_address:
        subnet["address"] = settings.ip_address
    if settings.gateway:
        subnet["gateway"] = settings.gateway
    if settings.dns_addresses:
        subnet["dns_nameservers"] = settings.dns_addresses
    if settings.dns_search:
        subnet["dns_search"] = settings.dns_search
    interface: Dict[str, object] = {"type": "physical", "name": settings.interface_name}
    if settings.mac_address:
        interface["mac_address"] = settings.mac_address
    interface["subnets"] = [subnet]
    return {"version": 1, "config": [interface]}


def render_network_config(settings: NetworkSettings, fmt: NetworkConfigFormat) -> Optional[str]:
    """Return a network-config document, or None when DHCP is in use."""
    if settings.dhcp:
        return None
    if fmt is NetworkConfigFormat.V1:
        document = _network_config_v1(settings)
    else:
        document = _network_config_v2(settings)
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def render_vendor_data(cfg: ProvisionConfig) -> Optional[str]:
    if not cfg.guest_agent:
        return None
    vendor_cfg: Dict[str, object] = {
        "packages": ["qemu-guest-agent"],
        "runcmd": [
            [
                "sh",
                "-c",
                "command -v systemctl >/dev/null 2>&1"
                " && systemctl enable --now qemu-guest-agent"
                " || true",
            ],
        ],
    }
    return "#cloud-config\n" + yaml.safe_dump(vendor_cfg, sort_keys=False, default_flow_style=False)


def render_ovf_env(cfg: ProvisionConfig, user_data: str) -> str:
    """Azure ovf-env.xml carrying the credentials and base64 encoded user-data."""
    register_namespace("", OVF_NS)
    register_namespace("wa", WA_NS)

    def wa(tag: str) -> str:
        return f"{{{WA_NS}}}{tag}"

    root = Element(f"{{{OVF_NS}}}Environment")
    provisioning = SubElement(root, wa("ProvisioningSection"))
    SubElement(provisioning, wa("Version")).text = "1.0"
    linux = SubElement(provisioning, wa("LinuxProvisioningConfigurationSet"))
    SubElement(linux, wa("ConfigurationSetType")).text = "LinuxProvisioningConfiguration"
    SubElement(linux, wa("HostName")).text = cfg.hostname
    SubElement(linux, wa("UserName")).text = cfg.login_user
    SubElement(linux, wa("UserPassword")).text = cfg.password
    SubElement(linux, wa("DisableSshPasswordAuthentication")).text = "false"
    SubElement(linux, wa("CustomData")).text = base64.b64encode(user_data.encode("utf-8")).decode("ascii")
    if cfg.ssh_keys:
        ssh = SubElement(linux, wa("SSH"))
        public_keys = SubElement(ssh, wa("PublicKeys"))
        for key in cfg.ssh_keys:
            entry = SubElement(public_keys, wa("PublicKey"))
            SubElement(entry, wa("Fingerprint"))
            SubElement(entry, wa("Path")).text = f"/home/{cfg.login_user}/.ssh/authorized_keys"
            SubElement(entry, wa("Value")).text = key

    platform = SubElement(root, wa("PlatformSettingsSection"))
    SubElement(platform, wa("Version")).text = "1.0"
    settings = SubElement(platform, wa("PlatformSettings"))
    SubElement(settings, wa("ProvisionGuestAgent")).text = "false"
    SubElement(settings, wa("PreprovisionedVm")).text = "false"

    raw = tostring(root, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ")


def build_payload(cfg: ProvisionConfig) -> ProvisioningPayload:
    user_data = render_user_data(cfg)
    meta_data = render_meta_data(cfg)
    if cfg.protocol is ProvisioningProtocol.AZURE:
        return ProvisioningPayload(meta_data=meta_data, user_data=user_data, ovf_env=render_ovf_env(cfg, user_data))
    return ProvisioningPayload(
        meta_data=meta_data,
        user_data=user_data,
        network_config=render_network_config(cfg.network, cfg.image.network_config_format),
        vendor_data=render_vendor_data(cfg),
    )
