"""Cloud image archive kinds and their extraction handlers."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List

from cloudvm.constants import DISK_IMAGE_SUFFIXES
from cloudvm.exceptions import ConversionError
from cloudvm.utils import command_error, log, run


class ArchiveKind(Enum):
    ZIP = "zip"
    TAR_GZ = "tar.gz"
    TAR_XZ = "tar.xz"
    RAW = "raw"

    @classmethod
    def from_filename(cls, filename: str) -> "ArchiveKind":
        lower = filename.lower()
        if lower.endswith(".zip"):
            return cls.ZIP
        if lower.endswith((".tar.gz", ".tgz")):
            return cls.TAR_GZ
        if lower.endswith((".tar.xz", ".txz")):
            return cls.TAR_XZ
        return cls.RAW

    def suffix(self, filename: str) -> str:
        """Suffix used for the cached copy of *filename*."""
        if self is ArchiveKind.RAW:
            return Path(filename).suffix
        return f".{self.value}"

    def extract(self, archive: Path, workdir: Path) -> Path:
        """Unpack *archive* into *workdir* and return the disk image to convert."""
        return _HANDLERS[self](archive, workdir)


def disk_image_candidates(directory: Path) -> List[Path]:
    """Disk image files below *directory*, newest first."""
    found = [
        path
        for path in directory.rglob("*")
        if path.is_file() and path.suffix.lower() in DISK_IMAGE_SUFFIXES
    ]
    return sorted(found, key=lambda p: p.stat().st_mtime, reverse=True)


def newest_disk_image(directory: Path) -> Path:
    candidates = disk_image_candidates(directory)
    if not candidates:
        raise ConversionError(f"No disk image found after extraction in {directory}")
    if len(candidates) > 1:
        names = ", ".join(p.name for p in candidates)
        log("WARN", f"Archive contains several disk images ({names}); using the newest: {candidates[0].name}")
    return candidates[0]


def _run_extractor(cmd: List[str], archive: Path) -> None:
    try:
        result = run(cmd, check=False)
    except FileNotFoundError as exc:
        raise ConversionError(f"{cmd[0]} is required to extract {archive.name} but was not found") from exc
    if result.returncode != 0:
        raise ConversionError(f"Failed to extract {archive.name} ({command_error(result)})")


def _extract_zip(archive: Path, workdir: Path) -> Path:
    _run_extractor(["unzip", "-o", "-q", str(archive), "-d", str(workdir)], archive)
    return newest_disk_image(workdir)


def _extract_tar_gz(archive: Path, workdir: Path) -> Path:
    _run_extractor(["tar", "-xzf", str(archive), "-C", str(workdir)], archive)
    return newest_disk_image(workdir)


def _extract_tar_xz(archive: Path, workdir: Path) -> Path:
    _run_extractor(["tar", "-xJf", str(archive), "-C", str(workdir)], archive)
    return newest_disk_image(workdir)


def _extract_raw(archive: Path, workdir: Path) -> Path:
    return archive


_HANDLERS: Dict[ArchiveKind, Callable[[Path, Path], Path]] = {
    ArchiveKind.ZIP: _extract_zip,
    ArchiveKind.TAR_GZ: _extract_tar_gz,
    ArchiveKind.TAR_XZ: _extract_tar_xz,
    ArchiveKind.RAW: _extract_raw,
}

if set(_HANDLERS) != set(ArchiveKind):  # pragma: no cover
    raise RuntimeError("Every ArchiveKind needs an extraction handler")
