"""Cloud image acquisition and caching for cloudvm.

A cached image is keyed by ``<distribution>-<version>`` and a version stamp
derived from the ``Last-Modified`` header of the release manifest. Layout of
the cache directory for one key::

    ubuntu-20.04.stamp                       last observed stamp
    ubuntu-20.04-20240315120000.zip          downloaded archive
    ubuntu-20.04-20240315120000.qcow2        converted, ready-to-copy disk
    ubuntu-20.04.lock                        advisory lock

Only one stamp per key is kept; older archives and disks are deleted once a
newer stamp has been downloaded or converted.
"""

from __future__ import annotations

import re
import shutil
import tempfile
from datetime import timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Dict, List, Optional

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from cloudvm.archives import ArchiveKind
from cloudvm.constants import (
    DATASOURCE_CONFIG_PATH,
    DEFAULT_DISK_FORMAT,
    HTTP_TIMEOUT,
    NOCLOUD_DATASOURCE_LIST,
    STAMP_FORMAT,
)
from cloudvm.exceptions import ConversionError, DatasourceError, IntegrityError, NetworkError
from cloudvm.models import CacheEntry, Datasource, ImageSpec
from cloudvm.utils import (
    command_error,
    download_file,
    ensure_directory,
    file_digest,
    flock,
    log,
    new_session,
    run,
)


def parse_checksum_manifest(text: str) -> Dict[str, str]:
    """Parse ``<hex-digest>  <filename>`` lines into {filename: digest}."""
    sums: Dict[str, str] = {}
    for line in text.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            continue
        digest, name = parts
        sums[name.lstrip("*").strip()] = digest.lower()
    return sums


def stamp_from_last_modified(header: str) -> str:
    """Format an HTTP date as a sortable UTC stamp (yyyyMMddHHmmss)."""
    try:
        moment = parsedate_to_datetime(header)
    except (TypeError, ValueError) as exc:
        raise NetworkError(f"Unparseable Last-Modified header '{header}'") from exc
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(STAMP_FORMAT)


class ImageCache:
    """Keep one converted, ready-to-attach disk image per catalog entry."""

    def __init__(
        self,
        cache_dir: Path,
        session: Optional[requests.Session] = None,
        disk_format: str = DEFAULT_DISK_FORMAT,
        clean_cache: bool = False,
    ) -> None:
        self.cache_dir = cache_dir
        self.session = session or new_session()
        self.disk_format = disk_format
        self.clean_cache = clean_cache
        ensure_directory(self.cache_dir)

    # -- paths ---------------------------------------------------------------

    def stamp_path(self, spec: ImageSpec) -> Path:
        return self.cache_dir / f"{spec.cache_key}.stamp"

    def lock_path(self, spec: ImageSpec) -> Path:
        return self.cache_dir / f"{spec.cache_key}.lock"

    def archive_suffix(self, spec: ImageSpec) -> str:
        suffix = spec.archive_kind.suffix(spec.filename)
        # An unpacked download must never share a name with the converted disk.
        if suffix == f".{self.disk_format}":
            suffix += ".orig"
        return suffix

    def archive_path(self, spec: ImageSpec, stamp: str) -> Path:
        return self.cache_dir / f"{spec.cache_key}-{stamp}{self.archive_suffix(spec)}"

    def disk_path(self, spec: ImageSpec, stamp: str) -> Path:
        return self.cache_dir / f"{spec.cache_key}-{stamp}.{self.disk_format}"

    def read_cached_stamp(self, spec: ImageSpec) -> Optional[str]:
        path = self.stamp_path(spec)
        if not path.exists():
            return None
        stamp = path.read_text(encoding="utf-8").strip()
        return stamp or None

    # -- pipeline ------------------------------------------------------------

    def acquire(self, spec: ImageSpec, check_for_update: bool = True) -> CacheEntry:
        """Return a cache entry for the current version of *spec*."""
        with flock(self.lock_path(spec)):
            stamp = self.resolve_version_stamp(spec, check_for_update, self.read_cached_stamp(spec))
            disk = self.disk_path(spec, stamp)
            if disk.exists():
                log("INFO", f"Using cached image {disk.name}")
                return CacheEntry(cache_key=spec.cache_key, stamp=stamp, path=disk)
            archive = self.ensure_raw_image_downloaded(spec, stamp)
            disk = self.ensure_extracted_and_converted(archive, spec, stamp)
            return CacheEntry(cache_key=spec.cache_key, stamp=stamp, path=disk)

    def resolve_version_stamp(
        self,
        spec: ImageSpec,
        check_for_update: bool,
        cached_stamp: Optional[str] = None,
    ) -> str:
        if not check_for_update and cached_stamp:
            log("DEBUG", f"Skipping update check for {spec.name}; using stamp {cached_stamp}")
            return cached_stamp

        log("INFO", f"Checking {spec.manifest_url} for updates")
        try:
            response = self.session.head(spec.manifest_url, allow_redirects=True, timeout=HTTP_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as exc:
            if cached_stamp:
                log("WARN", f"Update check failed ({exc}); keeping cached stamp {cached_stamp}")
                return cached_stamp
            raise NetworkError(f"Cannot reach {spec.manifest_url}: {exc}") from exc

        last_modified = response.headers.get("Last-Modified")
        if not last_modified:
            if cached_stamp:
                log("WARN", f"No Last-Modified header on {spec.manifest_url}; keeping stamp {cached_stamp}")
                return cached_stamp
            raise NetworkError(f"{spec.manifest_url} did not report a Last-Modified time")

        try:
            stamp = stamp_from_last_modified(last_modified)
        except NetworkError as exc:
            if cached_stamp:
                log("WARN", f"{exc}; keeping stamp {cached_stamp}")
                return cached_stamp
            raise
        self.stamp_path(spec).write_text(stamp + "\n", encoding="utf-8")
        if stamp != cached_stamp:
            log("INFO", f"{spec.name} version stamp: {stamp}")
        return stamp

    def ensure_raw_image_downloaded(self, spec: ImageSpec, stamp: str) -> Path:
        destination = self.archive_path(spec, stamp)
        if destination.exists():
            log("INFO", f"Using cached download {destination.name}")
            return destination

        self._remove_stale(spec, keep=None, suffix=self.archive_suffix(spec))
        self._remove_stale(spec, keep=None, suffix=self.archive_suffix(spec) + ".tmp")

        # Size lookup only feeds the progress bar.
        total_bytes = None
        try:
            head = self.session.head(spec.image_url, allow_redirects=True, timeout=HTTP_TIMEOUT)
            head.raise_for_status()
        except requests.RequestException as exc:
            log("DEBUG", f"HEAD {spec.image_url} failed ({exc}); size unknown until download")
        else:
            length = head.headers.get("Content-Length")
            if length and length.isdigit():
                total_bytes = int(length)

        download_file(self.session, spec.image_url, destination, total_bytes, label=f"Downloading {spec.name}")
        self.verify_checksum(spec, destination)
        return destination

    def verify_checksum(self, spec: ImageSpec, path: Path) -> None:
        log("INFO", f"Verifying {spec.hash_algorithm.value} checksum")
        try:
            response = self.session.get(spec.checksum_url, timeout=HTTP_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as exc:
            path.unlink(missing_ok=True)
            raise NetworkError(f"Cannot fetch checksum manifest {spec.checksum_url}: {exc}") from exc

        sums = parse_checksum_manifest(response.text)
        digest = file_digest(path, spec.hash_algorithm.new())
        if digest not in sums.values():
            path.unlink(missing_ok=True)
            raise IntegrityError(
                f"Checksum {digest} of {spec.filename} not found in {spec.checksum_file}; download removed"
            )
        expected = sums.get(spec.filename)
        if expected is not None and expected != digest:
            log("WARN", f"{spec.checksum_file} lists a different digest for {spec.filename}")
        log("SUCCESS", "Checksum verified")

    def ensure_extracted_and_converted(self, archive: Path, spec: ImageSpec, stamp: str) -> Path:
        target = self.disk_path(spec, stamp)
        if target.exists():
            return target

        workdir = Path(tempfile.mkdtemp(prefix=f"{spec.cache_key}-{stamp}.", suffix=".extract", dir=self.cache_dir))
        partial = target.with_name(target.name + ".partial")
        try:
            if spec.archive_kind is not ArchiveKind.RAW:
                log("INFO", f"Extracting {archive.name}")
            source = spec.archive_kind.extract(archive, workdir)
            self._convert(source, partial)
            partial.replace(target)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        self._compact(target)
        self._remove_stale(spec, keep=target, suffix=f".{self.disk_format}")
        if self.clean_cache and archive != target:
            log("INFO", f"Removing downloaded archive {archive.name}")
            archive.unlink(missing_ok=True)
        log("SUCCESS", f"Image ready: {target}")
        return target

    def _convert(self, source: Path, destination: Path) -> None:
        log("INFO", f"Converting {source.name} to {self.disk_format}")
        attempts = [
            ["qemu-img", "convert", "-O", self.disk_format, str(source), str(destination)],
            ["virt-sparsify", "--quiet", "--convert", self.disk_format, str(source), str(destination)],
        ]
        failures: List[str] = []
        for cmd in attempts:
            try:
                result = run(cmd, check=False)
            except FileNotFoundError:
                failures.append(f"{cmd[0]}: not installed")
                continue
            if result.returncode == 0 and destination.exists():
                return
            failures.append(f"{cmd[0]}: {command_error(result)}")
            destination.unlink(missing_ok=True)
            log("WARN", f"{cmd[0]} could not convert {source.name}")
        raise ConversionError(f"Could not convert {source.name} to {self.disk_format} ({'; '.join(failures)})")

    def _compact(self, disk: Path) -> None:
        try:
            result = run(["virt-sparsify", "--quiet", "--in-place", str(disk)], check=False)
        except FileNotFoundError:
            log("DEBUG", "virt-sparsify not installed; skipping compaction")
            return
        if result.returncode != 0:
            log("WARN", f"Could not compact {disk.name} ({command_error(result)})")

    def _entries(self, cache_key: str, suffix: str) -> List[Path]:
        """Stamped cache files of *cache_key* ending in *suffix*."""
        pattern = re.compile(re.escape(cache_key) + r"-\d{14}" + re.escape(suffix))
        return sorted(
            path
            for path in self.cache_dir.glob(f"{cache_key}-*{suffix}")
            if pattern.fullmatch(path.name) and path.is_file()
        )

    def _remove_stale(self, spec: ImageSpec, keep: Optional[Path], suffix: str) -> None:
        for path in self._entries(spec.cache_key, suffix):
            if path == keep:
                continue
            log("INFO", f"Removing superseded cache file {path.name}")
            path.unlink(missing_ok=True)

    # -- maintenance ---------------------------------------------------------

    def list_entries(self) -> List[CacheEntry]:
        pattern = re.compile(r"(?P<key>.+)-(?P<stamp>\d{14})" + re.escape(f".{self.disk_format}"))
        entries: List[CacheEntry] = []
        for path in sorted(self.cache_dir.glob(f"*.{self.disk_format}")):
            match = pattern.fullmatch(path.name)
            if match:
                entries.append(CacheEntry(cache_key=match["key"], stamp=match["stamp"], path=path))
        return entries

    def purge(self, cache_key: Optional[str] = None) -> int:
        """Delete cached files (all keys, or only *cache_key*); returns the count."""
        if cache_key:
            keys = {cache_key}
        else:
            pattern = re.compile(r"(?P<key>.+?)(\.stamp|-\d{14}\..+)")
            keys = set()
            for path in self.cache_dir.iterdir():
                match = pattern.fullmatch(path.name)
                if match:
                    keys.add(match["key"])
        removed = 0
        for key in sorted(keys):
            # Blocks while acquire() holds the same key.
            with flock(self.cache_dir / f"{key}.lock"):
                removed += self._purge_key(key)
        return removed

    def _purge_key(self, cache_key: str) -> int:
        pattern = re.compile(re.escape(cache_key) + r"(\.stamp|-\d{14}\..+)")
        removed = 0
        for path in self.cache_dir.iterdir():
            if not pattern.fullmatch(path.name):
                continue
            if path.is_dir():
                shutil.rmtree(path, ignore_errors=True)
            else:
                path.unlink(missing_ok=True)
            log("DEBUG", f"Removed {path}")
            removed += 1
        return removed


def maybe_convert_datasource_mode(disk: Path, spec: ImageSpec, wants_offline_mode: bool) -> bool:
    """Force an Azure-flavoured image onto the disc-based NoCloud datasource.

    The guest filesystem is mounted out-of-band with libguestfs' guestmount
    and a single cloud-init configuration file is rewritten. Returns True
    when the disk was modified.
    """
    if spec.datasource is not Datasource.AZURE or not wants_offline_mode:
        return False
    for tool in ("guestmount", "guestunmount"):
        if shutil.which(tool) is None:
            raise DatasourceError(
                f"{tool} (libguestfs-tools) is required to switch the image to the NoCloud datasource"
            )

    log("INFO", f"Switching {disk.name} to the NoCloud datasource")
    with tempfile.TemporaryDirectory(prefix="cloudvm-mnt-") as mountpoint:
        result = run(["guestmount", "-a", str(disk), "-i", "--rw", mountpoint], check=False)
        if result.returncode != 0:
            raise DatasourceError(f"Cannot mount guest filesystem of {disk} ({command_error(result)})")
        try:
            config = Path(mountpoint) / DATASOURCE_CONFIG_PATH
            config.parent.mkdir(parents=True, exist_ok=True)
            config.write_text(NOCLOUD_DATASOURCE_LIST, encoding="utf-8")
        except OSError as exc:
            raise DatasourceError(f"Cannot rewrite /{DATASOURCE_CONFIG_PATH} in {disk}: {exc}") from exc
        finally:
            unmount = run(["guestunmount", mountpoint], check=False)
            if unmount.returncode != 0:
                log("WARN", f"guestunmount {mountpoint} failed ({command_error(unmount)})")
    log("SUCCESS", "Datasource switched to NoCloud")
    return True
