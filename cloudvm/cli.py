"""CLI entry points for cloudvm."""

from __future__ import annotations

import argparse
import dataclasses
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from cloudvm.catalog import list_versions
from cloudvm.cloudinit import build_payload
from cloudvm.config import resolve_config
from cloudvm.constants import _SENSITIVE_FIELDS, CACHE_DIR
from cloudvm.exceptions import ManagerError
from cloudvm.images import ImageCache, maybe_convert_datasource_mode
from cloudvm.models import ProvisionConfig
from cloudvm.packager import find_authoring_tool, package_payload
from cloudvm.utils import ensure_directory, flock, has_controlling_tty, kvm_available, log, new_session
from cloudvm.vm import VMManager

STAGES = (
    "Acquire image",
    "Remove existing machine",
    "Prepare system disk",
    "Configure datasource",
    "Build provisioning payload",
    "Package provisioning media",
    "Define machine",
    "Snapshot",
    "Start machine",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudvm",
        description="Provision a libvirt virtual machine from a vendor cloud image",
    )
    image = parser.add_argument_group("image")
    image.add_argument("--distribution", help="Distribution name (env DISTRO, default ubuntu)")
    image.add_argument("--version", help="Distribution version or codename (env VERSION, default 24.04)")
    image.add_argument("--no-update-check", action="store_true", help="Reuse the cached image without asking the mirror")
    image.add_argument("--clean-cache", action="store_true", help="Delete the downloaded archive after conversion")
    image.add_argument("--proxy", help="HTTP(S) proxy for downloads (env HTTPS_PROXY/HTTP_PROXY)")
    image.add_argument("--data-dir", help="Root directory for the image cache and machine disks (env DATA_DIR)")

    machine = parser.add_argument_group("machine")
    machine.add_argument("--name", help="Machine name, also used as hostname (env GUEST_NAME)")
    machine.add_argument("--cpus", type=int, help="Virtual CPU count (env CPUS, default 2)")
    machine.add_argument("--memory", type=int, help="Memory in MiB (env MEMORY, default 2048)")
    machine.add_argument("--disk-size", help="System disk size, e.g. 40G (env DISK_SIZE, default 20G)")
    machine.add_argument("--generation", type=int, choices=(1, 2), help="1 = BIOS, 2 = UEFI (env GENERATION)")
    machine.add_argument("--secure-boot", action="store_true", help="Enable UEFI secure boot")
    machine.add_argument("--serial-log", help="Redirect the serial console to this file")
    machine.add_argument("--snapshot", action="store_true", help="Snapshot the machine before its first boot")
    machine.add_argument("--autostart", action="store_true", help="Start the machine with the host")
    machine.add_argument("--no-start", action="store_true", help="Define the machine but do not start it")
    machine.add_argument("--force", action="store_true", help="Replace a machine of the same name without asking")

    net = parser.add_argument_group("network")
    net.add_argument("--network-mode", choices=("network", "bridge", "direct"), help="NIC attachment (env NETWORK_MODE)")
    net.add_argument("--network-source", help="libvirt network, bridge or host device (env NETWORK_SOURCE)")
    net.add_argument("--mac", help="NIC MAC address (env NETWORK_MAC)")
    net.add_argument("--ip-address", help="Static address in CIDR notation; disables DHCP")
    net.add_argument("--gateway", help="Static default gateway; disables DHCP")
    net.add_argument("--dns", action="append", help="DNS server (repeatable); disables DHCP")
    net.add_argument("--dns-search", action="append", help="DNS search domain (repeatable); disables DHCP")

    guest = parser.add_argument_group("guest")
    guest.add_argument("--user", help="Login user (default depends on the distribution)")
    guest.add_argument("--password", help="Login password (env GUEST_PASSWORD, generated if unset)")
    guest.add_argument("--ssh-key", action="append", help="SSH public key or key file (repeatable)")
    guest.add_argument("--user-data-template", help="Custom cloud-config template file")
    guest.add_argument("--domain", help="DNS domain appended to the hostname")
    guest.add_argument("--timezone", help="Guest timezone (default Etc/UTC)")
    guest.add_argument("--locale", help="Guest locale (default en_US.UTF-8)")
    guest.add_argument(
        "--keep-azure-datasource",
        action="store_true",
        help="Boot Azure images with an emulated Azure environment instead of NoCloud",
    )
    guest.add_argument("--no-guest-agent", action="store_true", help="Do not install qemu-guest-agent")

    info = parser.add_argument_group("information")
    info.add_argument("--list-versions", action="store_true", help="List supported distributions and exit")
    info.add_argument("--list-cache", action="store_true", help="List cached images and exit")
    info.add_argument(
        "--purge-cache",
        nargs="?",
        const="",
        default=None,
        metavar="KEY",
        help="Delete cached images (optionally only KEY, e.g. ubuntu-20.04) and exit",
    )
    info.add_argument("--show-config", action="store_true", help="Show the resolved configuration and exit")
    info.add_argument("--dry-run", action="store_true", help="Validate configuration and host tools, then exit")
    return parser


def print_versions() -> None:
    specs = list_versions()
    if not specs:
        log("WARN", "No distributions found")
        return
    width = max(len(spec.cache_key) for spec in specs)
    for spec in specs:
        print(
            f"  {spec.cache_key:<{width}}  {spec.name} ({spec.codename}, "
            f"{spec.archive_kind.value}, datasource={spec.datasource.value})"
        )


def print_cache(cache: ImageCache) -> None:
    entries = cache.list_entries()
    if not entries:
        log("INFO", f"No cached images in {cache.cache_dir}")
        return
    for entry in entries:
        size_mb = entry.path.stat().st_size / (1024 * 1024)
        print(f"  {entry.cache_key}  stamp={entry.stamp}  {size_mb:.0f} MiB  {entry.path}")


def _print_fields(obj, indent: str = "  ") -> None:
    for field in dataclasses.fields(obj):
        value = getattr(obj, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"{indent}{field.name}: ********")
        elif dataclasses.is_dataclass(value):
            print(f"{indent}{field.name}:")
            _print_fields(value, indent + "  ")
        elif isinstance(value, Enum):
            print(f"{indent}{field.name}: {value.value}")
        else:
            print(f"{indent}{field.name}: {value}")


def show_config(cfg: ProvisionConfig) -> None:
    """Print the resolved configuration with secrets masked."""
    _print_fields(cfg)
    print(f"  protocol: {cfg.protocol.value}")


def dry_run(cfg: ProvisionConfig) -> int:
    log("INFO", "=== Configuration ===")
    show_config(cfg)
    log("INFO", "=== Environment Checks ===")
    if kvm_available():
        log("SUCCESS", "KVM:         available (/dev/kvm)")
    else:
        log("WARN", "KVM:         NOT available (will use TCG, much slower)")
    try:
        tool = find_authoring_tool()
        log("SUCCESS", f"ISO tool:    {tool}")
    except ManagerError as exc:
        log("ERROR", f"ISO tool:    {exc}")
    log("INFO", f"Image:       {cfg.image.image_url}")
    if cfg.network.dhcp:
        log("INFO", "Network:     DHCP")
    else:
        log("INFO", f"Network:     static {cfg.network.ip_address or '-'} via {cfg.network.gateway or '-'}")
    log("INFO", f"Protocol:    {cfg.protocol.value}")
    log("INFO", "=== Dry-run complete (no machine created) ===")
    return 0


def _confirm(prompt: str) -> bool:
    answer = input(f"{prompt} [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def print_banner(cfg: ProvisionConfig) -> None:
    lines: List[str] = [
        f"  VM: {cfg.machine.name} ({cfg.image.name})",
        f"  Memory: {cfg.machine.memory_mb} MiB | CPUs: {cfg.machine.cpus} | Disk: {cfg.machine.disk_size}",
        f"  User: {cfg.login_user}",
    ]
    if not cfg.network.dhcp and cfg.network.ip_address:
        address = cfg.network.ip_address.split("/", 1)[0]
        lines.append(f"  SSH:  ssh {cfg.login_user}@{address}")
    if cfg.machine.serial_log is not None:
        lines.append(f"  Serial log: {cfg.machine.serial_log}")
    width = max(len(line) for line in lines) + 2
    colour, reset = "\033[0;36m", "\033[0m"
    print(f"{colour}{'=' * width}{reset}", flush=True)
    for line in lines:
        print(f"{colour}{line}{reset}", flush=True)
    print(f"{colour}{'=' * width}{reset}", flush=True)


def provision(cfg: ProvisionConfig, confirm: Optional[Callable[[str], bool]] = None) -> None:
    """Run every pipeline stage in order; the first failure aborts the run."""
    total = len(STAGES)

    def stage(index: int) -> None:
        log("INFO", f"[{index}/{total}] {STAGES[index - 1]}")

    ensure_directory(cfg.vm_dir)
    with flock(cfg.vm_dir / f"{cfg.machine.name}.lock"):
        stage(1)
        cache = ImageCache(cfg.cache_dir, session=new_session(cfg.proxy), clean_cache=cfg.clean_cache)
        entry = cache.acquire(cfg.image, check_for_update=cfg.check_for_update)

        vm_mgr = VMManager(cfg)
        vm_mgr.connect()
        try:
            stage(2)
            if not vm_mgr.remove_existing(cfg.force, confirm):
                log("DEBUG", f"No existing machine named {cfg.machine.name}")
            stage(3)
            disk = vm_mgr.prepare_disk(entry)
            stage(4)
            if not maybe_convert_datasource_mode(disk, cfg.image, cfg.offline_datasource):
                log("DEBUG", "Datasource left unchanged")
            stage(5)
            payload = build_payload(cfg)
            stage(6)
            package_payload(payload, cfg.protocol, vm_mgr.seed_iso)
            stage(7)
            vm_mgr.define(vm_mgr.seed_iso)
            stage(8)
            if cfg.machine.snapshot:
                vm_mgr.create_snapshot()
            else:
                log("DEBUG", "Snapshot not requested")
            stage(9)
            if cfg.start:
                vm_mgr.start()
            else:
                log("INFO", f"Machine {cfg.machine.name} defined but not started (--no-start)")
        finally:
            vm_mgr.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.list_versions:
        try:
            print_versions()
        except ManagerError as exc:
            log("ERROR", str(exc))
            return 1
        return 0

    if args.list_cache or args.purge_cache is not None:
        cache_dir = CACHE_DIR if not args.data_dir else Path(args.data_dir) / "cache"
        try:
            cache = ImageCache(cache_dir, session=new_session(args.proxy))
            if args.list_cache:
                print_cache(cache)
            if args.purge_cache is not None:
                removed = cache.purge(args.purge_cache or None)
                log("SUCCESS", f"Removed {removed} cached file(s) from {cache_dir}")
        except (ManagerError, OSError) as exc:
            log("ERROR", str(exc))
            return 1
        return 0

    try:
        cfg = resolve_config(args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0
    if args.dry_run:
        return dry_run(cfg)

    log("INFO", f"Distribution: {cfg.image.name} ({cfg.image.cache_key})")
    log(
        "INFO",
        f"VM: {cfg.machine.name} | Memory: {cfg.machine.memory_mb} MiB | CPUs: {cfg.machine.cpus} "
        f"| Disk: {cfg.machine.disk_size} | Generation: {cfg.machine.generation}",
    )
    nic = cfg.machine.nic
    log("INFO", f"NIC: mode={nic.mode}, source={nic.source}, model={nic.model}, mac={nic.mac_address}")

    confirm = _confirm if has_controlling_tty() else None
    try:
        provision(cfg, confirm=confirm)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1

    log("SUCCESS", f"Machine {cfg.machine.name} provisioned")
    print_banner(cfg)
    return 0
