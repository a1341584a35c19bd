"""Image catalog loading and version resolution for cloudvm."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from cloudvm.archives import ArchiveKind
from cloudvm.constants import DEFAULT_CATALOG_PATH
from cloudvm.exceptions import ManagerError, UnsupportedVersionError
from cloudvm.models import Datasource, HashAlgorithm, ImageSpec, NetworkConfigFormat
from cloudvm.utils import get_env

_REQUIRED_FIELDS = ("base_url", "filename", "manifest", "checksum_file", "hash")


def load_catalog(config_path: Optional[Path] = None) -> Dict[str, dict]:
    if config_path is None:
        override = get_env("IMAGE_CATALOG")
        config_path = Path(override) if override else DEFAULT_CATALOG_PATH
    if not config_path.exists():
        raise ManagerError(f"Image catalog missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"Image catalog {config_path} contains invalid YAML: {exc}")
    distros = data.get("distributions")
    if not isinstance(distros, dict):
        raise ManagerError(f"Image catalog {config_path} has no 'distributions' mapping")
    return distros


def _find_version(versions: Dict[str, dict], version: str) -> Optional[Tuple[str, dict]]:
    key = str(version).strip().lower()
    for name, entry in versions.items():
        if str(name).lower() == key:
            return str(name), entry
    # Codenames work as aliases ("focal" -> "20.04").
    for name, entry in versions.items():
        if str((entry or {}).get("codename", "")).lower() == key:
            return str(name), entry
    return None


def resolve_image_spec(
    distribution: str,
    version: str,
    catalog: Optional[Dict[str, dict]] = None,
) -> ImageSpec:
    """Map a distribution + version string to its catalog ImageSpec."""
    if catalog is None:
        catalog = load_catalog()
    distro_key = distribution.strip().lower()
    distro = catalog.get(distro_key)
    if distro is None:
        available = ", ".join(sorted(catalog))
        raise UnsupportedVersionError(f"Unknown distribution '{distribution}'. Available: {available}")

    versions = distro.get("versions") or {}
    found = _find_version(versions, version)
    if found is None:
        available = ", ".join(str(v) for v in versions)
        raise UnsupportedVersionError(
            f"Unsupported {distro.get('name', distro_key)} version '{version}'. Supported: {available}"
        )
    version_key, entry = found

    merged = {k: v for k, v in distro.items() if k != "versions"}
    merged.update(entry or {})
    missing = [name for name in _REQUIRED_FIELDS if not merged.get(name)]
    if missing:
        raise ManagerError(
            f"Catalog entry {distro_key} {version_key} is missing: {', '.join(missing)}"
        )

    try:
        hash_algorithm = HashAlgorithm(str(merged["hash"]).lower())
        datasource = Datasource(str(merged.get("datasource", "nocloud")).lower())
        network_format = NetworkConfigFormat(str(merged.get("network_config", "v2")).lower())
        archive_kind = (
            ArchiveKind(str(merged["archive"]).lower())
            if merged.get("archive")
            else ArchiveKind.from_filename(merged["filename"])
        )
    except ValueError as exc:
        raise ManagerError(f"Catalog entry {distro_key} {version_key} is invalid: {exc}")

    return ImageSpec(
        distribution=distro_key,
        version=version_key,
        codename=str(merged.get("codename", version_key)),
        name=f"{merged.get('name', distro_key)} {version_key}",
        base_url=str(merged["base_url"]),
        filename=str(merged["filename"]),
        archive_kind=archive_kind,
        checksum_file=str(merged["checksum_file"]),
        hash_algorithm=hash_algorithm,
        manifest_file=str(merged["manifest"]),
        datasource=datasource,
        login_user=str(merged.get("login_user", "cloud")),
        network_config_format=network_format,
    )


def list_versions(catalog: Optional[Dict[str, dict]] = None) -> List[ImageSpec]:
    if catalog is None:
        catalog = load_catalog()
    specs: List[ImageSpec] = []
    for distro_key in sorted(catalog):
        for version in catalog[distro_key].get("versions") or {}:
            specs.append(resolve_image_spec(distro_key, str(version), catalog))
    return specs
