"""Configuration resolution for cloudvm.

Command-line arguments win over environment variables, which win over the
image catalog's per-distribution defaults. The result is a single
ProvisionConfig passed explicitly to every pipeline stage.
"""

from __future__ import annotations

import argparse
import ipaddress
from pathlib import Path
from typing import Iterable, List, Optional

from cloudvm.catalog import resolve_image_spec
from cloudvm.constants import (
    CACHE_DIR,
    LIBVIRT_URI,
    MAC_ADDRESS_RE,
    NETWORK_MODES,
    SUPPORTED_NETWORK_MODELS,
    VM_DIR,
    VM_NAME_RE,
)
from cloudvm.exceptions import ManagerError
from cloudvm.models import (
    Datasource,
    MachineSpec,
    NetworkSettings,
    NicConfig,
    ProvisionConfig,
    ProvisioningProtocol,
)
from cloudvm.utils import (
    deterministic_mac,
    generate_password,
    get_env,
    get_env_bool,
    log,
    parse_int,
    parse_int_env,
    validate_disk_size,
)


def _split_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.replace(";", ",").split(",") if item.strip()]


def _flatten(values: Optional[Iterable[str]]) -> List[str]:
    items: List[str] = []
    for value in values or []:
        items.extend(_split_list(value))
    return items


def resolve_network(
    ip_address: Optional[str] = None,
    gateway: Optional[str] = None,
    dns_addresses: Optional[List[str]] = None,
    dns_search: Optional[List[str]] = None,
    interface_name: str = "eth0",
    mac_address: Optional[str] = None,
) -> NetworkSettings:
    """Return DHCP settings, or static settings if any static field is given.

    Static configuration is all-or-nothing: a single supplied field (for
    example only a gateway) turns DHCP off for the whole interface.
    """
    dns_addresses = list(dns_addresses or [])
    dns_search = list(dns_search or [])
    if not (ip_address or gateway or dns_addresses or dns_search):
        return NetworkSettings(dhcp=True, interface_name=interface_name, mac_address=mac_address)

    if ip_address:
        if "/" not in ip_address:
            raise ManagerError(f"IP address '{ip_address}' must include a prefix length (e.g. 192.0.2.10/24)")
        try:
            ipaddress.ip_interface(ip_address)
        except ValueError:
            raise ManagerError(f"Invalid IP address '{ip_address}'")
    if gateway:
        try:
            ipaddress.ip_address(gateway)
        except ValueError:
            raise ManagerError(f"Invalid gateway '{gateway}'")
    for server in dns_addresses:
        try:
            ipaddress.ip_address(server)
        except ValueError:
            raise ManagerError(f"Invalid DNS server '{server}'")

    return NetworkSettings(
        dhcp=False,
        ip_address=ip_address,
        gateway=gateway,
        dns_addresses=dns_addresses,
        dns_search=dns_search,
        interface_name=interface_name,
        mac_address=mac_address,
    )


def _read_ssh_keys(values: List[str]) -> List[str]:
    keys: List[str] = []
    for value in values:
        candidate = Path(value).expanduser()
        if not value.startswith(("ssh-", "ecdsa-", "sk-")) and candidate.is_file():
            keys.extend(line.strip() for line in candidate.read_text().splitlines() if line.strip())
        else:
            keys.append(value.strip())
    return keys


def resolve_config(args: argparse.Namespace) -> ProvisionConfig:
    distribution = args.distribution or get_env("DISTRO", "ubuntu")
    version = args.version or get_env("VERSION", "24.04")
    image = resolve_image_spec(distribution, version)

    name = (args.name or get_env("GUEST_NAME") or f"{image.distribution}-{image.version}").strip()
    if not VM_NAME_RE.match(name):
        raise ManagerError(
            f"Invalid VM name '{name}'. Use letters, digits, '.', '_' or '-' (max 63 characters)."
        )

    if args.cpus is not None:
        cpus = parse_int("--cpus", str(args.cpus))
    else:
        cpus = parse_int_env("CPUS", "2")
    if args.memory is not None:
        memory_mb = parse_int("--memory", str(args.memory), min_val=256)
    else:
        memory_mb = parse_int_env("MEMORY", "2048", min_val=256)
    disk_size = validate_disk_size(args.disk_size or get_env("DISK_SIZE", "20G") or "20G")

    generation_raw = str(args.generation) if args.generation is not None else get_env("GENERATION", "2")
    generation = parse_int("GENERATION", generation_raw or "2", min_val=1, max_val=2)
    secure_boot = args.secure_boot or get_env_bool("SECURE_BOOT", False)
    if secure_boot and generation == 1:
        raise ManagerError("Secure boot requires a generation 2 (UEFI) machine")

    network_mode = (args.network_mode or get_env("NETWORK_MODE", "network") or "network").strip().lower()
    if network_mode not in NETWORK_MODES:
        raise ManagerError(f"Unsupported network mode '{network_mode}'. Expected one of {', '.join(sorted(NETWORK_MODES))}.")
    network_source = (args.network_source or get_env("NETWORK_SOURCE") or "").strip()
    if not network_source:
        if network_mode != "network":
            raise ManagerError(f"--network-source is required when the network mode is '{network_mode}'")
        network_source = "default"

    mac_raw = args.mac or get_env("NETWORK_MAC")
    mac_address = mac_raw.strip().lower() if mac_raw else deterministic_mac(name)
    if not MAC_ADDRESS_RE.match(mac_address):
        raise ManagerError(f"Invalid MAC address '{mac_raw}'. Use format aa:bb:cc:dd:ee:ff")
    model = (get_env("NETWORK_MODEL", "virtio") or "virtio").strip().lower()
    if model not in SUPPORTED_NETWORK_MODELS:
        raise ManagerError(f"Unsupported NETWORK_MODEL '{model}'. Supported: {', '.join(sorted(SUPPORTED_NETWORK_MODELS))}")

    network = resolve_network(
        ip_address=args.ip_address or get_env("IP_ADDRESS"),
        gateway=args.gateway or get_env("GATEWAY"),
        dns_addresses=_flatten(args.dns) or _split_list(get_env("DNS")),
        dns_search=_flatten(args.dns_search) or _split_list(get_env("DNS_SEARCH")),
        mac_address=mac_address,
    )

    login_user = args.user or get_env("GUEST_USER") or image.login_user
    password = args.password or get_env("GUEST_PASSWORD")
    if not password:
        password = generate_password()
        log("INFO", f"No password set; generated random password: {password}")

    ssh_values = list(args.ssh_key or [])
    env_key = get_env("SSH_PUBKEY")
    if env_key:
        ssh_values.append(env_key)
    ssh_keys = _read_ssh_keys(ssh_values)

    template_raw = args.user_data_template or get_env("USER_DATA_TEMPLATE")
    serial_raw = args.serial_log or get_env("SERIAL_LOG")

    if args.data_dir:
        data_dir = Path(args.data_dir)
        cache_dir, vm_dir = data_dir / "cache", data_dir / "vms"
    else:
        cache_dir, vm_dir = CACHE_DIR, VM_DIR

    cfg = ProvisionConfig(
        image=image,
        machine=MachineSpec(
            name=name,
            cpus=cpus,
            memory_mb=memory_mb,
            disk_size=disk_size,
            nic=NicConfig(mode=network_mode, source=network_source, mac_address=mac_address, model=model),
            generation=generation,
            secure_boot=secure_boot,
            serial_log=Path(serial_raw) if serial_raw else None,
            autostart=args.autostart,
            snapshot=args.snapshot,
        ),
        network=network,
        login_user=login_user,
        password=password,
        ssh_keys=ssh_keys,
        hostname=name,
        domain=args.domain or get_env("GUEST_DOMAIN"),
        timezone=args.timezone or get_env("TIMEZONE", "Etc/UTC") or "Etc/UTC",
        locale=args.locale or get_env("LOCALE", "en_US.UTF-8") or "en_US.UTF-8",
        user_data_template=Path(template_raw) if template_raw else None,
        cache_dir=cache_dir,
        vm_dir=vm_dir,
        libvirt_uri=get_env("LIBVIRT_URI", LIBVIRT_URI) or LIBVIRT_URI,
        check_for_update=not (args.no_update_check or get_env_bool("NO_UPDATE_CHECK", False)),
        clean_cache=args.clean_cache or get_env_bool("CLEAN_CACHE", False),
        offline_datasource=not args.keep_azure_datasource,
        guest_agent=not args.no_guest_agent,
        start=not args.no_start,
        force=args.force,
        proxy=args.proxy or get_env("HTTPS_PROXY") or get_env("HTTP_PROXY"),
    )

    if cfg.protocol is ProvisioningProtocol.AZURE and not network.dhcp:
        raise ManagerError(
            "Static networking cannot be delivered through the Azure datasource; "
            "drop --keep-azure-datasource or use DHCP"
        )
    if image.datasource is Datasource.AZURE and cfg.offline_datasource:
        log("DEBUG", f"{image.name} ships the Azure datasource; it will be switched to NoCloud")
    return cfg
