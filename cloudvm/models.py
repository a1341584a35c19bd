"""Data models for cloudvm."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from cloudvm.archives import ArchiveKind


class HashAlgorithm(Enum):
    SHA256 = "sha256"
    SHA512 = "sha512"

    def new(self):
        return hashlib.new(self.value)


class Datasource(Enum):
    NOCLOUD = "nocloud"
    AZURE = "azure"


class ProvisioningProtocol(Enum):
    NOCLOUD = "nocloud"
    AZURE = "azure"


class NetworkConfigFormat(Enum):
    V1 = "v1"
    V2 = "v2"


@dataclass(frozen=True)
class ImageSpec:
    distribution: str
    version: str
    codename: str
    name: str
    base_url: str
    filename: str
    archive_kind: ArchiveKind
    checksum_file: str
    hash_algorithm: HashAlgorithm
    manifest_file: str
    datasource: Datasource = Datasource.NOCLOUD
    login_user: str = "cloud"
    network_config_format: NetworkConfigFormat = NetworkConfigFormat.V2

    @property
    def image_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.filename}"

    @property
    def checksum_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.checksum_file}"

    @property
    def manifest_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.manifest_file}"

    @property
    def cache_key(self) -> str:
        return f"{self.distribution}-{self.version}"


@dataclass
class CacheEntry:
    cache_key: str
    stamp: str
    path: Path


@dataclass
class NetworkSettings:
    dhcp: bool = True
    ip_address: Optional[str] = None  # CIDR notation
    gateway: Optional[str] = None
    dns_addresses: List[str] = field(default_factory=list)
    dns_search: List[str] = field(default_factory=list)
    interface_name: str = "eth0"
    mac_address: Optional[str] = None


@dataclass
class ProvisioningPayload:
    meta_data: str
    user_data: str
    network_config: Optional[str] = None
    vendor_data: Optional[str] = None
    ovf_env: Optional[str] = None


@dataclass
class NicConfig:
    mode: str
    source: str
    mac_address: str
    model: str = "virtio"


@dataclass
class MachineSpec:
    name: str
    cpus: int
    memory_mb: int
    disk_size: str
    nic: NicConfig
    generation: int = 2
    secure_boot: bool = False
    serial_log: Optional[Path] = None
    autostart: bool = False
    snapshot: bool = False


@dataclass
class ProvisionConfig:
    image: ImageSpec
    machine: MachineSpec
    network: NetworkSettings
    login_user: str
    password: str
    ssh_keys: List[str]
    hostname: str
    domain: Optional[str]
    timezone: str
    locale: str
    user_data_template: Optional[Path]
    cache_dir: Path
    vm_dir: Path
    libvirt_uri: str
    check_for_update: bool = True
    clean_cache: bool = False
    offline_datasource: bool = True
    guest_agent: bool = True
    start: bool = True
    force: bool = False
    proxy: Optional[str] = None

    @property
    def protocol(self) -> ProvisioningProtocol:
        if self.image.datasource is Datasource.AZURE and not self.offline_datasource:
            return ProvisioningProtocol.AZURE
        return ProvisioningProtocol.NOCLOUD
