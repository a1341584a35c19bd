"""Utility functions for cloudvm."""

from __future__ import annotations

import fcntl
import hashlib
import os
import secrets
import string
import subprocess
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from cloudvm.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    DOWNLOAD_CHUNK_SIZE,
    HTTP_TIMEOUT,
    TRUTHY,
    USER_AGENT,
)
from cloudvm.exceptions import ManagerError, NetworkError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level prefixes."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    return parse_int(name, raw, min_val=min_val, max_val=max_val)


def parse_int(name: str, raw: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ManagerError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def parse_size_to_bytes(raw: str) -> int:
    """Convert a qemu-img style size ('20G', '512M', '1024') to bytes."""
    validate_disk_size(raw)
    units = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    suffix = raw[-1].upper()
    if suffix in units:
        return int(raw[:-1]) * units[suffix]
    return int(raw)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    octets[3] = octets[3] | 0x02  # ensure locally administered bit
    octets[3] = octets[3] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)


def generate_password(length: int = 16) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging; stdout/stderr are captured unless overridden."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    kwargs.setdefault("capture_output", True)
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def command_error(result: subprocess.CompletedProcess) -> str:
    """Summarise a failed command for an error message."""
    detail = (result.stderr or result.stdout or "").strip()
    if len(detail) > 500:
        detail = "..." + detail[-500:]
    message = f"exit status {result.returncode}"
    if detail:
        message += f": {detail}"
    return message


@contextmanager
def flock(path: Path) -> Iterator[None]:
    """Blocking exclusive advisory lock held for the duration of the block."""
    ensure_directory(path.parent)
    with open(path, "a") as fh:
        log("DEBUG", f"Waiting for lock {path}")
        fcntl.flock(fh, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


def new_session(proxy: Optional[str] = None) -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    if proxy:
        session.proxies.update({"http": proxy, "https": proxy})
    return session


def download_file(
    session: requests.Session,
    url: str,
    destination: Path,
    total_bytes: Optional[int] = None,
    label: str = "Downloading",
) -> None:
    """Stream *url* into ``<destination>.tmp`` and rename it once complete."""
    log("INFO", f"{label}: {url}")
    tmp_path = destination.with_name(destination.name + ".tmp")
    downloaded = 0
    start_time = time.time()
    try:
        with session.get(url, stream=True, timeout=HTTP_TIMEOUT) as response:
            response.raise_for_status()
            if total_bytes is None:
                length = response.headers.get("Content-Length")
                total_bytes = int(length) if length else None
            with open(tmp_path, "wb") as tmp:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    tmp.write(chunk)
                    downloaded += len(chunk)
                    _print_progress(downloaded, total_bytes, start_time)
        print(flush=True)  # newline after progress
        tmp_path.replace(destination)
    except requests.RequestException as exc:
        tmp_path.unlink(missing_ok=True)
        raise NetworkError(f"Failed to download {url}: {exc}") from exc
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def _print_progress(downloaded: int, total_bytes: Optional[int], start_time: float) -> None:
    elapsed = time.time() - start_time
    speed = downloaded / elapsed if elapsed > 0 else 0
    downloaded_mb = downloaded / (1024 * 1024)
    if total_bytes:
        total_mb = total_bytes / (1024 * 1024)
        pct = min(downloaded * 100 / total_bytes, 100.0)
        remaining = (total_bytes - downloaded) / speed if speed > 0 else 0
        eta_str = time.strftime("%M:%S", time.gmtime(max(remaining, 0)))
        bar_len = 30
        filled = min(int(bar_len * downloaded / total_bytes), bar_len)
        bar = "#" * filled + "-" * (bar_len - filled)
        print(
            f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
            f"({speed / (1024 * 1024):.1f} MiB/s, ETA {eta_str})",
            end="", flush=True,
        )
    else:
        print(
            f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
            end="", flush=True,
        )


def file_digest(path: Path, hasher) -> str:
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(1024 * 1024), b""):
            hasher.update(block)
    return hasher.hexdigest()
