"""Tests for deterministic release archives and digests."""

from __future__ import annotations

import hashlib
import os
import zipfile

import pytest

from pants_buf_plugins._archive import (
    IMAGE_TAR,
    calculate_digest,
    create_plugin_zip,
    parse_digest,
    plugin_zip_name,
    verify_digest,
)
from pants_buf_plugins._exceptions import DigestMismatch


def fake_save(image_id, path):
    with open(path, "wb") as f:
        f.write(f"image {image_id}".encode())


class TestPluginZip:
    def test_name(self, plugin_tree):
        plugin_tree.add("connectrpc/go", "v1.11.0")
        assert plugin_zip_name(plugin_tree.load("connectrpc/go", "v1.11.0")) == "connectrpc-go-v1.11.0.zip"

    def test_entries(self, plugin_tree, tmp_path):
        plugin_tree.add("connectrpc/go", "v1.11.0")
        plugin = plugin_tree.load("connectrpc/go", "v1.11.0")
        out = tmp_path / "out"
        out.mkdir()
        zip_path, digest = create_plugin_zip(str(out), plugin, "sha256:abc", fake_save)

        assert os.path.basename(zip_path) == "connectrpc-go-v1.11.0.zip"
        assert os.listdir(out) == ["connectrpc-go-v1.11.0.zip"]
        with zipfile.ZipFile(zip_path) as archive:
            assert archive.namelist() == ["buf.plugin.yaml", IMAGE_TAR]
            assert archive.read(IMAGE_TAR) == b"image sha256:abc"
            info = archive.getinfo(IMAGE_TAR)
            assert info.date_time == (1980, 1, 1, 0, 0, 0)
            assert (info.external_attr >> 16) & 0o777 == 0o644
        assert digest == calculate_digest(zip_path)

    def test_deterministic(self, plugin_tree, tmp_path):
        plugin_tree.add("connectrpc/go", "v1.11.0")
        plugin = plugin_tree.load("connectrpc/go", "v1.11.0")
        first, second = tmp_path / "a", tmp_path / "b"
        first.mkdir()
        second.mkdir()
        _, digest_a = create_plugin_zip(str(first), plugin, "id", fake_save)
        os.utime(plugin.path, (0, 0))
        _, digest_b = create_plugin_zip(str(second), plugin, "id", fake_save)
        assert digest_a == digest_b

    def test_multi_chunk_image(self, plugin_tree, tmp_path):
        plugin_tree.add("connectrpc/go", "v1.11.0")
        plugin = plugin_tree.load("connectrpc/go", "v1.11.0")
        image = os.urandom(1024 * 1024) * 3 + b"tail"

        def large_save(image_id, path):
            with open(path, "wb") as f:
                f.write(image)

        out = tmp_path / "out"
        out.mkdir()
        zip_path, _ = create_plugin_zip(str(out), plugin, "id", large_save)
        with zipfile.ZipFile(zip_path) as archive:
            info = archive.getinfo(IMAGE_TAR)
            assert info.file_size == len(image)
            assert info.compress_type == zipfile.ZIP_DEFLATED
            assert archive.read(IMAGE_TAR) == image
            assert archive.testzip() is None

    def test_scratch_removed_on_failure(self, plugin_tree, tmp_path):
        plugin_tree.add("connectrpc/go", "v1.11.0")
        plugin = plugin_tree.load("connectrpc/go", "v1.11.0")

        def failing_save(image_id, path):
            raise RuntimeError("docker save failed")

        with pytest.raises(RuntimeError):
            create_plugin_zip(str(tmp_path), plugin, "id", failing_save)
        assert [p.name for p in tmp_path.iterdir()] == ["plugins"]


class TestDigests:
    def test_calculate(self, tmp_path):
        path = tmp_path / "f"
        path.write_bytes(b"hello")
        assert calculate_digest(str(path)) == "sha256:" + hashlib.sha256(b"hello").hexdigest()

    def test_verify(self, tmp_path):
        path = tmp_path / "f"
        path.write_bytes(b"hello")
        verify_digest(str(path), calculate_digest(str(path)))
        with pytest.raises(DigestMismatch) as excinfo:
            verify_digest(str(path), "sha256:" + "0" * 64)
        assert excinfo.value.expected == "sha256:" + "0" * 64

    def test_parse(self):
        assert parse_digest("sha256:" + "a" * 64) == ("sha256", "a" * 64)
        for bad in ("sha256:abc", "md5:" + "a" * 64, "a" * 64):
            with pytest.raises(ValueError):
                parse_digest(bad)
