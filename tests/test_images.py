"""Tests for cloudvm.images module."""

from __future__ import annotations

import hashlib
import subprocess
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from cloudvm.constants import DATASOURCE_CONFIG_PATH, NOCLOUD_DATASOURCE_LIST
from cloudvm.exceptions import ConversionError, DatasourceError, IntegrityError, NetworkError
from cloudvm.images import (
    ImageCache,
    maybe_convert_datasource_mode,
    parse_checksum_manifest,
    stamp_from_last_modified,
)

LAST_MODIFIED = "Fri, 15 Mar 2024 12:00:00 GMT"
STAMP = "20240315120000"
ARCHIVE_BYTES = b"zipped vhd"


def _response(status=200, headers=None, text=""):
    resp = MagicMock()
    resp.headers = headers or {}
    resp.text = text
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} Error")
    return resp


def _completed(cmd, returncode=0, stderr=""):
    return subprocess.CompletedProcess(cmd, returncode, "", stderr)


def _session_for(spec, payload=ARCHIVE_BYTES, manifest_status=200):
    """requests.Session double serving the manifest, image and checksum URLs."""
    session = MagicMock()

    def head(url, **kwargs):
        if url == spec.manifest_url:
            return _response(manifest_status, {"Last-Modified": LAST_MODIFIED})
        return _response(200, {"Content-Length": str(len(payload))})

    digest = hashlib.new(spec.hash_algorithm.value, payload).hexdigest()
    session.head.side_effect = head
    session.get.return_value = _response(text=f"{digest} *{spec.filename}\n")
    return session


def _fake_download(payload=ARCHIVE_BYTES):
    def _download(session, url, destination, total_bytes=None, label=""):
        destination.write_bytes(payload)

    return _download


def _fake_tools(calls):
    """Simulate unzip/tar extraction and qemu-img conversion on the filesystem."""

    def _run(cmd, check=True, **kwargs):
        calls.append(cmd)
        if cmd[0] == "unzip":
            workdir = Path(cmd[cmd.index("-d") + 1])
            (workdir / "livecd.ubuntu-cpc.azure.vhd").write_bytes(b"vhd")
        elif cmd[0] == "tar":
            workdir = Path(cmd[cmd.index("-C") + 1])
            (workdir / "disk.raw").write_bytes(b"raw")
        elif cmd[0] == "qemu-img":
            Path(cmd[-1]).write_bytes(b"qcow2")
        return _completed(cmd)

    return _run


class TestParseChecksumManifest:
    def test_text_and_binary_markers(self):
        text = "abc123  image-a.zip\nDEF456 *image-b.tar.gz\n\ngarbage\n"
        assert parse_checksum_manifest(text) == {"image-a.zip": "abc123", "image-b.tar.gz": "def456"}


class TestStampFromLastModified:
    def test_gmt(self):
        assert stamp_from_last_modified(LAST_MODIFIED) == STAMP

    def test_offset_converted_to_utc(self):
        assert stamp_from_last_modified("Fri, 15 Mar 2024 14:00:00 +0200") == STAMP

    def test_unparseable(self):
        with pytest.raises(NetworkError, match="Unparseable"):
            stamp_from_last_modified("not a date")


class TestResolveVersionStamp:
    def test_skips_network_when_not_checking(self, tmp_path, azure_spec):
        session = MagicMock()
        cache = ImageCache(tmp_path, session=session)
        assert cache.resolve_version_stamp(azure_spec, False, cached_stamp="20200101000000") == "20200101000000"
        session.head.assert_not_called()

    def test_writes_stamp_file(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=_session_for(azure_spec))
        assert cache.resolve_version_stamp(azure_spec, True) == STAMP
        assert cache.read_cached_stamp(azure_spec) == STAMP

    def test_checks_even_without_cache_when_check_disabled(self, tmp_path, azure_spec):
        session = _session_for(azure_spec)
        cache = ImageCache(tmp_path, session=session)
        assert cache.resolve_version_stamp(azure_spec, False, cached_stamp=None) == STAMP
        session.head.assert_called_once()

    def test_failure_falls_back_to_cached_stamp(self, tmp_path, azure_spec, capsys):
        cache = ImageCache(tmp_path, session=_session_for(azure_spec, manifest_status=503))
        assert cache.resolve_version_stamp(azure_spec, True, cached_stamp="20200101000000") == "20200101000000"
        assert "[WARN]" in capsys.readouterr().out

    def test_failure_without_cache_raises(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=_session_for(azure_spec, manifest_status=404))
        with pytest.raises(NetworkError, match="Cannot reach"):
            cache.resolve_version_stamp(azure_spec, True)

    def test_unparseable_last_modified_falls_back_to_cached_stamp(self, tmp_path, azure_spec, capsys):
        session = MagicMock()
        session.head.return_value = _response(200, {"Last-Modified": "yesterday"})
        cache = ImageCache(tmp_path, session=session)
        assert cache.resolve_version_stamp(azure_spec, True, cached_stamp="20200101000000") == "20200101000000"
        assert "[WARN]" in capsys.readouterr().out
        assert not cache.stamp_path(azure_spec).exists()

    def test_unparseable_last_modified_without_cache_raises(self, tmp_path, azure_spec):
        session = MagicMock()
        session.head.return_value = _response(200, {"Last-Modified": "yesterday"})
        cache = ImageCache(tmp_path, session=session)
        with pytest.raises(NetworkError, match="Unparseable"):
            cache.resolve_version_stamp(azure_spec, True)

    def test_missing_last_modified_without_cache_raises(self, tmp_path, azure_spec):
        session = MagicMock()
        session.head.return_value = _response(200, {})
        cache = ImageCache(tmp_path, session=session)
        with pytest.raises(NetworkError, match="Last-Modified"):
            cache.resolve_version_stamp(azure_spec, True)


class TestEnsureRawImageDownloaded:
    def test_cached_archive_is_reused(self, tmp_path, azure_spec):
        session = MagicMock()
        cache = ImageCache(tmp_path, session=session)
        archive = cache.archive_path(azure_spec, STAMP)
        archive.write_bytes(ARCHIVE_BYTES)
        assert cache.ensure_raw_image_downloaded(azure_spec, STAMP) == archive
        session.head.assert_not_called()
        session.get.assert_not_called()

    def test_downloads_and_verifies(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=_session_for(azure_spec))
        with patch("cloudvm.images.download_file", side_effect=_fake_download()) as mock_download:
            archive = cache.ensure_raw_image_downloaded(azure_spec, STAMP)
        assert archive.name == f"ubuntu-20.04-{STAMP}.zip"
        assert archive.read_bytes() == ARCHIVE_BYTES
        assert mock_download.call_args[0][3] == len(ARCHIVE_BYTES)

    def test_digest_mismatch_removes_download(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=_session_for(azure_spec))
        with patch("cloudvm.images.download_file", side_effect=_fake_download(b"tampered")):
            with pytest.raises(IntegrityError, match="not found in SHA256SUMS"):
                cache.ensure_raw_image_downloaded(azure_spec, STAMP)
        assert not cache.archive_path(azure_spec, STAMP).exists()

    def test_checksum_fetch_failure_removes_download(self, tmp_path, azure_spec):
        session = _session_for(azure_spec)
        session.get.return_value = _response(500)
        cache = ImageCache(tmp_path, session=session)
        with patch("cloudvm.images.download_file", side_effect=_fake_download()):
            with pytest.raises(NetworkError, match="checksum manifest"):
                cache.ensure_raw_image_downloaded(azure_spec, STAMP)
        assert not cache.archive_path(azure_spec, STAMP).exists()

    def test_removes_previous_archives_and_partials(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=_session_for(azure_spec))
        old = tmp_path / "ubuntu-20.04-20200101000000.zip"
        stray = tmp_path / "ubuntu-20.04-20200101000000.zip.tmp"
        other_key = tmp_path / "ubuntu-20.04-generic-20200101000000.zip"
        for path in (old, stray, other_key):
            path.write_bytes(b"x")
        with patch("cloudvm.images.download_file", side_effect=_fake_download()):
            cache.ensure_raw_image_downloaded(azure_spec, STAMP)
        assert not old.exists()
        assert not stray.exists()
        assert other_key.exists()

    def test_refused_image_head_still_downloads(self, tmp_path, azure_spec):
        session = _session_for(azure_spec)
        serve_head = session.head.side_effect

        def head(url, **kwargs):
            if url == azure_spec.image_url:
                raise requests.HTTPError("405 Method Not Allowed")
            return serve_head(url, **kwargs)

        session.head.side_effect = head
        cache = ImageCache(tmp_path, session=session)
        with patch("cloudvm.images.download_file", side_effect=_fake_download()) as mock_download:
            path = cache.ensure_raw_image_downloaded(azure_spec, STAMP)
        assert path.read_bytes() == ARCHIVE_BYTES
        assert mock_download.call_args[0][3] is None

    def test_failed_get_raises_and_leaves_no_tmp(self, tmp_path, azure_spec):
        session = _session_for(azure_spec)
        session.get.side_effect = requests.ConnectionError("connection reset")
        cache = ImageCache(tmp_path, session=session)
        with pytest.raises(NetworkError, match="Failed to download"):
            cache.ensure_raw_image_downloaded(azure_spec, STAMP)
        assert not cache.archive_path(azure_spec, STAMP).exists()
        assert list(tmp_path.glob("*.tmp")) == []


class TestEnsureExtractedAndConverted:
    def test_zip_extracted_and_converted(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=MagicMock())
        archive = cache.archive_path(azure_spec, STAMP)
        archive.write_bytes(ARCHIVE_BYTES)
        calls = []
        with patch("cloudvm.images.run", side_effect=_fake_tools(calls)), patch(
            "cloudvm.archives.run", side_effect=_fake_tools(calls)
        ):
            disk = cache.ensure_extracted_and_converted(archive, azure_spec, STAMP)
        assert disk == tmp_path / f"ubuntu-20.04-{STAMP}.qcow2"
        assert disk.read_bytes() == b"qcow2"
        tools = [cmd[0] for cmd in calls]
        assert tools == ["unzip", "qemu-img", "virt-sparsify"]
        assert calls[1][-2].endswith(".vhd")
        assert "--in-place" in calls[2]
        assert not list(tmp_path.glob("*.extract"))
        assert not list(tmp_path.glob("*.partial"))

    def test_existing_disk_skips_work(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=MagicMock())
        disk = cache.disk_path(azure_spec, STAMP)
        disk.write_bytes(b"qcow2")
        with patch("cloudvm.images.run") as mock_run, patch("cloudvm.archives.run") as mock_extract:
            assert cache.ensure_extracted_and_converted(cache.archive_path(azure_spec, STAMP), azure_spec, STAMP) == disk
        mock_run.assert_not_called()
        mock_extract.assert_not_called()

    def test_falls_back_to_virt_sparsify(self, tmp_path, nocloud_spec):
        cache = ImageCache(tmp_path, session=MagicMock())
        archive = cache.archive_path(nocloud_spec, STAMP)
        archive.write_bytes(b"tar")
        calls = []
        extract = _fake_tools(calls)

        def run(cmd, check=True, **kwargs):
            calls.append(cmd)
            if cmd[0] == "qemu-img":
                return _completed(cmd, 1, "unsupported format")
            if "--convert" in cmd:
                Path(cmd[-1]).write_bytes(b"qcow2")
            return _completed(cmd)

        with patch("cloudvm.images.run", side_effect=run), patch("cloudvm.archives.run", side_effect=extract):
            disk = cache.ensure_extracted_and_converted(archive, nocloud_spec, STAMP)
        assert disk.exists()
        assert ["tar", "qemu-img", "virt-sparsify", "virt-sparsify"] == [cmd[0] for cmd in calls]
        assert calls[0][1] == "-xJf"

    def test_both_conversions_fail(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=MagicMock())
        archive = cache.archive_path(azure_spec, STAMP)
        archive.write_bytes(ARCHIVE_BYTES)

        def run(cmd, check=True, **kwargs):
            # Leave a half-written file behind, as a crashing converter would.
            Path(cmd[-1]).write_bytes(b"half")
            return _completed(cmd, 1, "boom")

        with patch("cloudvm.images.run", side_effect=run), patch("cloudvm.archives.run", side_effect=_fake_tools([])):
            with pytest.raises(ConversionError, match="qemu-img: exit status 1: boom"):
                cache.ensure_extracted_and_converted(archive, azure_spec, STAMP)
        assert not cache.disk_path(azure_spec, STAMP).exists()
        assert not list(tmp_path.glob("*.partial"))
        assert not list(tmp_path.glob("*.extract"))
        assert archive.exists()

    def test_missing_tools(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=MagicMock())
        archive = cache.archive_path(azure_spec, STAMP)
        archive.write_bytes(ARCHIVE_BYTES)
        with patch("cloudvm.images.run", side_effect=FileNotFoundError), patch(
            "cloudvm.archives.run", side_effect=_fake_tools([])
        ):
            with pytest.raises(ConversionError, match="not installed"):
                cache.ensure_extracted_and_converted(archive, azure_spec, STAMP)

    def test_compaction_failure_only_warns(self, tmp_path, azure_spec, capsys):
        cache = ImageCache(tmp_path, session=MagicMock())
        archive = cache.archive_path(azure_spec, STAMP)
        archive.write_bytes(ARCHIVE_BYTES)
        convert = _fake_tools([])

        def run(cmd, check=True, **kwargs):
            if "--in-place" in cmd:
                return _completed(cmd, 1, "no space")
            return convert(cmd, check, **kwargs)

        with patch("cloudvm.images.run", side_effect=run), patch("cloudvm.archives.run", side_effect=convert):
            disk = cache.ensure_extracted_and_converted(archive, azure_spec, STAMP)
        assert disk.exists()
        assert "Could not compact" in capsys.readouterr().out

    def test_superseded_disks_removed_and_clean_cache(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=MagicMock(), clean_cache=True)
        old_disk = tmp_path / "ubuntu-20.04-20200101000000.qcow2"
        other_key = tmp_path / "ubuntu-20.04-generic-20200101000000.qcow2"
        old_disk.write_bytes(b"old")
        other_key.write_bytes(b"other")
        archive = cache.archive_path(azure_spec, STAMP)
        archive.write_bytes(ARCHIVE_BYTES)
        with patch("cloudvm.images.run", side_effect=_fake_tools([])), patch(
            "cloudvm.archives.run", side_effect=_fake_tools([])
        ):
            cache.ensure_extracted_and_converted(archive, azure_spec, STAMP)
        assert not old_disk.exists()
        assert other_key.exists()
        assert not archive.exists()

    def test_raw_image_is_converted_directly(self, tmp_path, nocloud_spec):
        from dataclasses import replace

        from cloudvm.archives import ArchiveKind

        spec = replace(nocloud_spec, filename="debian-12.qcow2", archive_kind=ArchiveKind.RAW)
        cache = ImageCache(tmp_path, session=MagicMock())
        archive = cache.archive_path(spec, STAMP)
        assert archive.name.endswith(".qcow2.orig")
        archive.write_bytes(b"img")
        calls = []
        with patch("cloudvm.images.run", side_effect=_fake_tools(calls)):
            disk = cache.ensure_extracted_and_converted(archive, spec, STAMP)
        assert calls[0][-2] == str(archive)
        assert disk != archive


class TestAcquire:
    def test_ubuntu_2004_first_run_then_cache_hit(self, tmp_path, azure_spec):
        session = _session_for(azure_spec)
        cache = ImageCache(tmp_path, session=session)
        calls = []
        with patch("cloudvm.images.download_file", side_effect=_fake_download()) as mock_download, patch(
            "cloudvm.images.run", side_effect=_fake_tools(calls)
        ), patch("cloudvm.archives.run", side_effect=_fake_tools(calls)):
            entry = cache.acquire(azure_spec)
            assert entry.stamp == STAMP
            assert entry.path.name == f"ubuntu-20.04-{STAMP}.qcow2"
            assert mock_download.call_count == 1
            conversions = len(calls)

            rerun = cache.acquire(azure_spec)

        assert rerun == entry
        assert mock_download.call_count == 1
        assert len(calls) == conversions
        assert session.get.call_count == 1  # checksum manifest, first run only

    def test_stamp_checked_at_most_once_without_update_check(self, tmp_path, azure_spec):
        session = _session_for(azure_spec)
        cache = ImageCache(tmp_path, session=session)
        with patch("cloudvm.images.download_file", side_effect=_fake_download()), patch(
            "cloudvm.images.run", side_effect=_fake_tools([])
        ), patch("cloudvm.archives.run", side_effect=_fake_tools([])):
            first = cache.acquire(azure_spec, check_for_update=False)
            content = first.path.read_bytes()
            second = cache.acquire(azure_spec, check_for_update=False)
        manifest_heads = [c for c in session.head.call_args_list if c[0][0] == azure_spec.manifest_url]
        assert len(manifest_heads) == 1
        assert second.path.read_bytes() == content

    def test_rerun_without_update_check_is_offline(self, tmp_path, azure_spec):
        cache = ImageCache(tmp_path, session=MagicMock())
        cache.stamp_path(azure_spec).write_text(STAMP)
        cache.disk_path(azure_spec, STAMP).write_bytes(b"qcow2")
        entry = cache.acquire(azure_spec, check_for_update=False)
        assert entry.path == cache.disk_path(azure_spec, STAMP)
        cache.session.head.assert_not_called()
        cache.session.get.assert_not_called()


class TestCacheMaintenance:
    def test_list_entries(self, tmp_path):
        cache = ImageCache(tmp_path, session=MagicMock())
        (tmp_path / "ubuntu-20.04-20240315120000.qcow2").write_bytes(b"a")
        (tmp_path / "debian-12-20240101000000.qcow2").write_bytes(b"b")
        (tmp_path / "debian-12-20240101000000.qcow2.partial").write_bytes(b"c")
        entries = cache.list_entries()
        assert [(e.cache_key, e.stamp) for e in entries] == [
            ("debian-12", "20240101000000"),
            ("ubuntu-20.04", "20240315120000"),
        ]

    def test_purge_single_key(self, tmp_path):
        cache = ImageCache(tmp_path, session=MagicMock())
        keep = tmp_path / "ubuntu-20.04-generic-20240315120000.qcow2"
        for name in ("ubuntu-20.04.stamp", "ubuntu-20.04-20240315120000.qcow2", "ubuntu-20.04-20240315120000.zip"):
            (tmp_path / name).write_bytes(b"x")
        keep.write_bytes(b"x")
        assert cache.purge("ubuntu-20.04") == 3
        assert keep.exists()

    def test_purge_all_keeps_locks(self, tmp_path):
        cache = ImageCache(tmp_path, session=MagicMock())
        (tmp_path / "debian-12.stamp").write_text(STAMP)
        (tmp_path / "debian-12-20240315120000.tar.xz").write_bytes(b"x")
        (tmp_path / "debian-12.lock").write_text("")
        assert cache.purge() == 2
        assert (tmp_path / "debian-12.lock").exists()

    def test_purge_holds_each_key_lock(self, tmp_path):
        cache = ImageCache(tmp_path, session=MagicMock())
        (tmp_path / "debian-12.stamp").write_text(STAMP)
        (tmp_path / "debian-12-20240315120000.qcow2.partial").write_bytes(b"x")
        (tmp_path / "ubuntu-20.04-20240315120000.zip").write_bytes(b"x")
        events = []

        @contextmanager
        def fake_flock(path):
            events.append(("lock", path.name))
            yield
            events.append(("unlock", path.name, sorted(p.name for p in tmp_path.iterdir())))

        with patch("cloudvm.images.flock", side_effect=fake_flock):
            assert cache.purge() == 3

        assert [e[:2] for e in events] == [
            ("lock", "debian-12.lock"),
            ("unlock", "debian-12.lock"),
            ("lock", "ubuntu-20.04.lock"),
            ("unlock", "ubuntu-20.04.lock"),
        ]
        # debian-12 files are gone before its lock is released, ubuntu ones are not yet touched
        assert events[1][2] == ["ubuntu-20.04-20240315120000.zip"]


class TestMaybeConvertDatasourceMode:
    def test_nocloud_image_untouched(self, tmp_path, nocloud_spec):
        with patch("cloudvm.images.run") as mock_run:
            assert maybe_convert_datasource_mode(tmp_path / "d.qcow2", nocloud_spec, True) is False
        mock_run.assert_not_called()

    def test_azure_image_kept_when_not_offline(self, tmp_path, azure_spec):
        with patch("cloudvm.images.run") as mock_run:
            assert maybe_convert_datasource_mode(tmp_path / "d.qcow2", azure_spec, False) is False
        mock_run.assert_not_called()

    def test_missing_guestmount(self, tmp_path, azure_spec):
        with patch("cloudvm.images.shutil.which", return_value=None):
            with pytest.raises(DatasourceError, match="guestmount"):
                maybe_convert_datasource_mode(tmp_path / "d.qcow2", azure_spec, True)

    def test_missing_guestunmount_checked_before_mounting(self, tmp_path, azure_spec):
        def which(tool):
            return "/usr/bin/guestmount" if tool == "guestmount" else None

        with patch("cloudvm.images.shutil.which", side_effect=which), patch("cloudvm.images.run") as mock_run:
            with pytest.raises(DatasourceError, match="guestunmount"):
                maybe_convert_datasource_mode(tmp_path / "d.qcow2", azure_spec, True)
        mock_run.assert_not_called()

    def test_rewrites_datasource_list(self, tmp_path, azure_spec):
        written = {}

        def run(cmd, check=True, **kwargs):
            if cmd[0] == "guestunmount":
                written["content"] = (Path(cmd[1]) / DATASOURCE_CONFIG_PATH).read_text()
            return _completed(cmd)

        with patch("cloudvm.images.shutil.which", return_value="/usr/bin/guestmount"), patch(
            "cloudvm.images.run", side_effect=run
        ) as mock_run:
            assert maybe_convert_datasource_mode(tmp_path / "d.qcow2", azure_spec, True) is True
        assert written["content"] == NOCLOUD_DATASOURCE_LIST
        mount_cmd = mock_run.call_args_list[0][0][0]
        assert mount_cmd[:5] == ["guestmount", "-a", str(tmp_path / "d.qcow2"), "-i", "--rw"]

    def test_mount_failure(self, tmp_path, azure_spec):
        with patch("cloudvm.images.shutil.which", return_value="/usr/bin/guestmount"), patch(
            "cloudvm.images.run", return_value=_completed(["guestmount"], 1, "no kernel")
        ) as mock_run:
            with pytest.raises(DatasourceError, match="Cannot mount"):
                maybe_convert_datasource_mode(tmp_path / "d.qcow2", azure_spec, True)
        assert mock_run.call_count == 1
