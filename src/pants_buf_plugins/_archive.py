"""Deterministic plugin release archives (no Pants dependencies).

Each archive holds exactly two entries at its root, in this order::

    buf.plugin.yaml
    image.tar
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import tempfile
import zipfile
from typing import Callable, Tuple

from pants_buf_plugins._exceptions import DigestMismatch, PluginIOError
from pants_buf_plugins._plugin import Plugin

logger = logging.getLogger(__name__)

IMAGE_TAR = "image.tar"

# Earliest timestamp a zip entry can carry.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
_ENTRY_MODE = 0o644
_CHUNK_SIZE = 1024 * 1024
_DIGEST = re.compile(r"^sha256:[0-9a-f]{64}$")

# save_image(image_id, destination_path)
ImageSaver = Callable[[str, str], None]


def plugin_zip_name(plugin: Plugin) -> str:
    """``<owner>-<name>-<version>.zip``."""
    return f"{plugin.owner}-{plugin.short_name}-{plugin.plugin_version}.zip"


def calculate_digest(path: str) -> str:
    """Return ``sha256:<hex>`` of the file at ``path``."""
    sha = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                sha.update(chunk)
    except OSError as exc:
        raise PluginIOError(path, exc.strerror or str(exc)) from exc
    return f"sha256:{sha.hexdigest()}"


def parse_digest(value: str) -> Tuple[str, str]:
    """Split ``sha256:<hex>`` into ``("sha256", "<hex>")``.

    Raises:
        ValueError: If ``value`` is not a sha256 digest.
    """
    if not _DIGEST.match(value):
        raise ValueError(f"invalid digest: {value!r}")
    algorithm, _, hexdigest = value.partition(":")
    return algorithm, hexdigest


def verify_digest(path: str, expected: str) -> None:
    actual = calculate_digest(path)
    if actual != expected:
        raise DigestMismatch(path, expected, actual)


def _add_entry(archive: zipfile.ZipFile, source: str, name: str) -> None:
    info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
    info.compress_type = zipfile.ZIP_DEFLATED
    # ZipFile.open ignores the archive's compresslevel for explicit ZipInfo.
    info._compresslevel = 9
    info.create_system = 3
    info.external_attr = (_ENTRY_MODE | 0o100000) << 16
    # Sized up front so large images are written with zip64 headers.
    info.file_size = os.path.getsize(source)
    with open(source, "rb") as src, archive.open(info, "w") as dst:
        shutil.copyfileobj(src, dst, _CHUNK_SIZE)


def create_plugin_zip(
    tmp_dir: str,
    plugin: Plugin,
    image_id: str,
    save_image: ImageSaver,
) -> Tuple[str, str]:
    """Package ``plugin`` and its image as ``tmp_dir/<owner>-<name>-<version>.zip``.

    The image is exported into a scratch directory under ``tmp_dir`` which
    is removed afterwards. Entry order, timestamps and permissions are fixed,
    so the archive bytes depend only on the two inputs.

    Returns:
        ``(zip_path, "sha256:<hex>")``
    """
    scratch = tempfile.mkdtemp(prefix="plugin-zip-", dir=tmp_dir)
    try:
        image_path = os.path.join(scratch, IMAGE_TAR)
        save_image(image_id, image_path)
        zip_path = os.path.join(tmp_dir, plugin_zip_name(plugin))
        try:
            with zipfile.ZipFile(
                zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
            ) as archive:
                _add_entry(archive, plugin.path, os.path.basename(plugin.path))
                _add_entry(archive, image_path, IMAGE_TAR)
        except OSError as exc:
            raise PluginIOError(zip_path, exc.strerror or str(exc)) from exc
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
    digest = calculate_digest(zip_path)
    logger.info("created %s (%s)", os.path.basename(zip_path), digest)
    return zip_path, digest
