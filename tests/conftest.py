"""Shared test fixtures."""

from __future__ import annotations

import types
from typing import Optional
from unittest.mock import MagicMock

import pytest

from cloudvm.archives import ArchiveKind
from cloudvm.models import (
    Datasource,
    HashAlgorithm,
    ImageSpec,
    MachineSpec,
    NetworkConfigFormat,
    NetworkSettings,
    NicConfig,
    ProvisionConfig,
)


@pytest.fixture
def azure_spec() -> ImageSpec:
    """Ubuntu 20.04: zipped VHD, Azure datasource."""
    return ImageSpec(
        distribution="ubuntu",
        version="20.04",
        codename="focal",
        name="Ubuntu 20.04",
        base_url="https://cloud-images.ubuntu.com/releases/focal/release",
        filename="ubuntu-20.04-server-cloudimg-amd64-azure.vhd.zip",
        archive_kind=ArchiveKind.ZIP,
        checksum_file="SHA256SUMS",
        hash_algorithm=HashAlgorithm.SHA256,
        manifest_file="ubuntu-20.04-server-cloudimg-amd64.manifest",
        datasource=Datasource.AZURE,
        login_user="ubuntu",
    )


@pytest.fixture
def nocloud_spec() -> ImageSpec:
    """Debian 12: tar.xz raw image, NoCloud datasource."""
    return ImageSpec(
        distribution="debian",
        version="12",
        codename="bookworm",
        name="Debian 12",
        base_url="https://cloud.debian.org/images/cloud/bookworm/latest",
        filename="debian-12-genericcloud-amd64.tar.xz",
        archive_kind=ArchiveKind.TAR_XZ,
        checksum_file="SHA512SUMS",
        hash_algorithm=HashAlgorithm.SHA512,
        manifest_file="debian-12-genericcloud-amd64.json",
        login_user="debian",
        network_config_format=NetworkConfigFormat.V1,
    )


@pytest.fixture
def make_config(tmp_path, nocloud_spec):
    """Factory for ProvisionConfig objects rooted in tmp_path."""

    def _make(image: Optional[ImageSpec] = None, **overrides) -> ProvisionConfig:
        values = dict(
            image=image or nocloud_spec,
            machine=MachineSpec(
                name="test-vm",
                cpus=2,
                memory_mb=2048,
                disk_size="20G",
                nic=NicConfig(mode="network", source="default", mac_address="52:54:00:aa:bb:cc"),
            ),
            network=NetworkSettings(mac_address="52:54:00:aa:bb:cc"),
            login_user="cloud",
            password="s3cret",
            ssh_keys=["ssh-ed25519 AAAAC3Nza test@example"],
            hostname="test-vm",
            domain=None,
            timezone="Etc/UTC",
            locale="en_US.UTF-8",
            user_data_template=None,
            cache_dir=tmp_path / "cache",
            vm_dir=tmp_path / "vms",
            libvirt_uri="qemu:///system",
        )
        values.update(overrides)
        return ProvisionConfig(**values)

    return _make


@pytest.fixture
def fake_libvirt():
    """Object standing in for the libvirt module behind cloudvm.vm.load_libvirt."""

    class libvirtError(Exception):
        def get_error_message(self):
            return str(self)

    return types.SimpleNamespace(
        libvirtError=libvirtError,
        open=MagicMock(return_value=MagicMock()),
        VIR_DOMAIN_UNDEFINE_MANAGED_SAVE=1,
        VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA=2,
        VIR_DOMAIN_UNDEFINE_NVRAM=4,
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Environment variables read by resolve_config().
_CONFIG_ENV_VARS = [
    "DISTRO",
    "VERSION",
    "GUEST_NAME",
    "CPUS",
    "MEMORY",
    "DISK_SIZE",
    "GENERATION",
    "SECURE_BOOT",
    "NETWORK_MODE",
    "NETWORK_SOURCE",
    "NETWORK_MAC",
    "NETWORK_MODEL",
    "IP_ADDRESS",
    "GATEWAY",
    "DNS",
    "DNS_SEARCH",
    "GUEST_USER",
    "GUEST_PASSWORD",
    "SSH_PUBKEY",
    "USER_DATA_TEMPLATE",
    "SERIAL_LOG",
    "GUEST_DOMAIN",
    "TIMEZONE",
    "LOCALE",
    "LIBVIRT_URI",
    "NO_UPDATE_CHECK",
    "CLEAN_CACHE",
    "HTTPS_PROXY",
    "HTTP_PROXY",
    "IMAGE_CATALOG",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every environment variable resolve_config() reads."""
    for key in _CONFIG_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
