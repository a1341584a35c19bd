"""Global constants and path configuration for cloudvm."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "images.yaml"

# DATA_DIR provides a single root for the image cache and VM disks.
DATA_DIR = Path(os.environ.get("DATA_DIR", "/var/lib/cloudvm"))
CACHE_DIR = DATA_DIR / "cache"
VM_DIR = DATA_DIR / "vms"
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")

_SENSITIVE_FIELDS = {"password"}

USER_AGENT = "cloudvm/1.0"
HTTP_TIMEOUT = 60
DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB

STAMP_FORMAT = "%Y%m%d%H%M%S"
DEFAULT_DISK_FORMAT = "qcow2"

# Files an extracted cloud image archive may contain as its system disk.
DISK_IMAGE_SUFFIXES = {".vhd", ".vhdx", ".raw", ".img", ".qcow2", ".vmdk"}

NETWORK_MODES = {"network", "bridge", "direct"}
SUPPORTED_NETWORK_MODELS = {"virtio", "e1000", "e1000e", "rtl8139"}

# cloud-init ds-identify looks for these DMI values.
NOCLOUD_SYSTEM_SERIAL = "ds=nocloud"
AZURE_CHASSIS_ASSET_TAG = "7783-7084-3265-9085-8269-3286-77"

NOCLOUD_VOLUME_ID = "cidata"
AZURE_VOLUME_ID = "OVF-ENV"

# Written into the guest when an Azure image is forced onto the disc datasource.
DATASOURCE_CONFIG_PATH = Path("etc/cloud/cloud.cfg.d/90_dpkg.cfg")
NOCLOUD_DATASOURCE_LIST = "datasource_list: [ NoCloud, None ]\n"
