"""libvirt machine provisioning for cloudvm."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Callable, List, Optional
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

from cloudvm.constants import AZURE_CHASSIS_ASSET_TAG, NOCLOUD_SYSTEM_SERIAL
from cloudvm.exceptions import ManagerError, PlatformAPIError
from cloudvm.models import CacheEntry, ProvisionConfig, ProvisioningProtocol
from cloudvm.network import render_interface
from cloudvm.utils import command_error, ensure_directory, kvm_available, log, parse_size_to_bytes, run


def load_libvirt():
    """Import the libvirt bindings on first use."""
    try:
        import libvirt  # type: ignore
    except ImportError as exc:
        raise PlatformAPIError(f"libvirt python bindings not available: {exc}") from exc
    return libvirt


def _error_message(exc: Exception) -> str:
    getter = getattr(exc, "get_error_message", None)
    return getter() if callable(getter) else str(exc)


class VMManager:
    def __init__(self, cfg: ProvisionConfig) -> None:
        self.cfg = cfg
        self.machine = cfg.machine
        self.libvirt = None
        self.conn = None
        self.domain = None
        self.machine_dir = cfg.vm_dir / self.machine.name
        self.disk_path = self.machine_dir / f"{self.machine.name}.qcow2"
        self.seed_iso = self.machine_dir / "seed.iso"
        self._kvm_available = kvm_available()

    def connect(self) -> None:
        self.libvirt = load_libvirt()
        try:
            self.conn = self.libvirt.open(self.cfg.libvirt_uri)
        except self.libvirt.libvirtError as exc:
            raise PlatformAPIError(
                f"Failed to open libvirt connection to {self.cfg.libvirt_uri}: {_error_message(exc)}"
            ) from exc
        if self.conn is None:
            raise PlatformAPIError(f"Failed to open libvirt connection to {self.cfg.libvirt_uri}")

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except self.libvirt.libvirtError:
                log("DEBUG", "libvirt connection already closed")
            self.conn = None

    def _require_conn(self):
        if self.conn is None:
            raise ManagerError("libvirt connection not established")
        return self.conn

    def _lookup(self):
        conn = self._require_conn()
        try:
            return conn.lookupByName(self.machine.name)
        except self.libvirt.libvirtError:
            return None

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    @staticmethod
    def _file_backed_disks(xml_desc: str) -> List[Path]:
        root = fromstring(xml_desc)
        disks: List[Path] = []
        for disk in root.findall("./devices/disk"):
            if disk.get("type") != "file":
                continue
            source = disk.find("source")
            if source is not None and source.get("file"):
                disks.append(Path(source.get("file")))
        return disks

    def remove_existing(self, force: bool, confirm: Optional[Callable[[str], bool]] = None) -> bool:
        """Delete a same-named domain and its disks. Returns True if one was removed."""
        domain = self._lookup()
        if domain is None:
            return False

        name = self.machine.name
        if not force:
            prompt = f"Machine '{name}' already exists. Delete it and its disks?"
            if confirm is None or not confirm(prompt):
                raise ManagerError(f"Machine '{name}' already exists; use --force to replace it")

        lv = self.libvirt
        try:
            disks = self._file_backed_disks(domain.XMLDesc(0))
            if domain.isActive():
                log("INFO", f"Stopping existing machine {name}")
                domain.destroy()
            domain.undefineFlags(
                lv.VIR_DOMAIN_UNDEFINE_NVRAM
                | lv.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA
                | lv.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
            )
        except lv.libvirtError as exc:
            raise PlatformAPIError(f"Failed to remove existing machine {name}: {_error_message(exc)}") from exc

        for disk in disks:
            if disk.exists():
                log("INFO", f"Deleting disk {disk}")
                disk.unlink()
        log("SUCCESS", f"Removed existing machine {name}")
        return True

    # ------------------------------------------------------------------
    # Disk
    # ------------------------------------------------------------------

    def _virtual_size(self, disk: Path) -> int:
        result = run(["qemu-img", "info", "--output=json", str(disk)], check=False)
        if result.returncode != 0:
            raise PlatformAPIError(f"qemu-img info failed for {disk} ({command_error(result)})")
        return int(json.loads(result.stdout)["virtual-size"])

    def prepare_disk(self, entry: CacheEntry) -> Path:
        """Copy the cached image into the machine directory and grow it to the requested size."""
        ensure_directory(self.machine_dir)
        log("INFO", f"Copying {entry.path.name} to {self.disk_path}")
        self.disk_path.unlink(missing_ok=True)
        shutil.copy2(entry.path, self.disk_path)

        wanted = parse_size_to_bytes(self.machine.disk_size)
        current = self._virtual_size(self.disk_path)
        if wanted > current:
            result = run(["qemu-img", "resize", str(self.disk_path), str(wanted)], check=False)
            if result.returncode != 0:
                raise PlatformAPIError(f"qemu-img resize failed ({command_error(result)})")
            log("INFO", f"Resized system disk to {self.machine.disk_size}")
        elif wanted < current:
            log("WARN", f"Requested disk size {self.machine.disk_size} is smaller than the image; keeping {current} bytes")
        return self.disk_path

    # ------------------------------------------------------------------
    # Domain
    # ------------------------------------------------------------------

    def _render_domain_xml(self, seed_iso: Path) -> str:
        machine = self.machine
        domain = Element("domain", type="kvm" if self._kvm_available else "qemu")
        SubElement(domain, "name").text = machine.name
        SubElement(domain, "memory", unit="MiB").text = str(machine.memory_mb)
        SubElement(domain, "vcpu", placement="static").text = str(machine.cpus)

        # SMBIOS identity read by cloud-init's datasource detection
        sysinfo = SubElement(domain, "sysinfo", type="smbios")
        if self.cfg.protocol is ProvisioningProtocol.AZURE:
            chassis = SubElement(sysinfo, "chassis")
            SubElement(chassis, "entry", name="asset").text = AZURE_CHASSIS_ASSET_TAG
        else:
            system = SubElement(sysinfo, "system")
            SubElement(system, "entry", name="serial").text = NOCLOUD_SYSTEM_SERIAL

        os_attrs = {"firmware": "efi"} if machine.generation == 2 else {}
        os_el = SubElement(domain, "os", **os_attrs)
        SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
        if machine.generation == 2:
            firmware = SubElement(os_el, "firmware")
            secure = "yes" if machine.secure_boot else "no"
            SubElement(firmware, "feature", enabled=secure, name="secure-boot")
            SubElement(firmware, "feature", enabled=secure, name="enrolled-keys")
        SubElement(os_el, "boot", dev="hd")
        SubElement(os_el, "smbios", mode="sysinfo")

        features = SubElement(domain, "features")
        SubElement(features, "acpi")
        SubElement(features, "apic")
        if machine.secure_boot:
            SubElement(features, "smm", state="on")

        if self._kvm_available:
            SubElement(domain, "cpu", mode="host-passthrough")
        SubElement(domain, "on_poweroff").text = "destroy"
        SubElement(domain, "on_reboot").text = "restart"
        SubElement(domain, "on_crash").text = "destroy"

        devices = SubElement(domain, "devices")
        disk = SubElement(devices, "disk", type="file", device="disk")
        SubElement(disk, "driver", name="qemu", type="qcow2", discard="unmap")
        SubElement(disk, "source", file=str(self.disk_path))
        SubElement(disk, "target", dev="vda", bus="virtio")

        cdrom = SubElement(devices, "disk", type="file", device="cdrom")
        SubElement(cdrom, "driver", name="qemu", type="raw")
        SubElement(cdrom, "source", file=str(seed_iso))
        SubElement(cdrom, "target", dev="sda", bus="sata")
        SubElement(cdrom, "readonly")

        devices.append(render_interface(machine.nic))

        if machine.serial_log is not None:
            serial = SubElement(devices, "serial", type="file")
            SubElement(serial, "source", path=str(machine.serial_log), append="on")
        else:
            serial = SubElement(devices, "serial", type="pty")
        SubElement(serial, "target", port="0")
        if machine.serial_log is None:
            console = SubElement(devices, "console", type="pty")
            SubElement(console, "target", type="serial", port="0")

        channel = SubElement(devices, "channel", type="unix")
        SubElement(channel, "target", type="virtio", name="org.qemu.guest_agent.0")
        rng = SubElement(devices, "rng", model="virtio")
        SubElement(rng, "backend", model="random").text = "/dev/urandom"

        raw = tostring(domain, encoding="unicode")
        return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()

    def define(self, seed_iso: Path) -> None:
        conn = self._require_conn()
        xml = self._render_domain_xml(seed_iso)
        try:
            self.domain = conn.defineXML(xml)
        except self.libvirt.libvirtError as exc:
            raise PlatformAPIError(f"Failed to define machine {self.machine.name}: {_error_message(exc)}") from exc
        if self.domain is None:
            raise PlatformAPIError("Failed to define libvirt domain")
        log("SUCCESS", f"Defined machine {self.machine.name}")

        if self.machine.autostart:
            try:
                self.domain.setAutostart(1)
            except self.libvirt.libvirtError as exc:
                raise PlatformAPIError(f"Failed to enable autostart: {_error_message(exc)}") from exc
            log("INFO", f"Autostart enabled for {self.machine.name}")

    def create_snapshot(self, name: str = "pristine") -> None:
        """Record a snapshot of the freshly defined, not yet booted machine."""
        if self.domain is None:
            raise ManagerError("Domain not defined")
        snapshot = Element("domainsnapshot")
        SubElement(snapshot, "name").text = name
        SubElement(snapshot, "description").text = f"{self.cfg.image.name} before first boot"
        try:
            self.domain.snapshotCreateXML(tostring(snapshot, encoding="unicode"), 0)
        except self.libvirt.libvirtError as exc:
            raise PlatformAPIError(f"Failed to create snapshot '{name}': {_error_message(exc)}") from exc
        log("SUCCESS", f"Snapshot '{name}' created")

    def start(self) -> None:
        if self.domain is None:
            raise ManagerError("Domain not defined")
        if self.domain.isActive():
            log("INFO", f"Machine {self.machine.name} already running")
            return
        try:
            self.domain.create()
        except self.libvirt.libvirtError as exc:
            raise PlatformAPIError(f"Failed to start machine {self.machine.name}: {_error_message(exc)}") from exc
        log("SUCCESS", f"Machine {self.machine.name} started")
