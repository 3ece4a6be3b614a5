"""Download and verify the archives of a release (no Pants dependencies)."""

from __future__ import annotations

import hashlib
import logging
import os
import posixpath
import tempfile
from typing import List, Optional, Sequence
from urllib.parse import urlparse

import requests

from pants_buf_plugins._archive import calculate_digest, parse_digest
from pants_buf_plugins._exceptions import DigestMismatch, PluginIOError, UpstreamFailure
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins._releases import PluginRelease

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


def archive_filename(release: PluginRelease) -> str:
    """Base name of the release's download URL."""
    return posixpath.basename(urlparse(release.url).path)


def has_matching_archive(release: PluginRelease, directory: str) -> bool:
    path = os.path.join(directory, archive_filename(release))
    if not os.path.isfile(path):
        return False
    return calculate_digest(path) == release.zip_digest


def download_archive(
    release: PluginRelease,
    directory: str,
    session: requests.Session,
    *,
    cancellation: Optional[Cancellation] = None,
) -> str:
    """Stream one archive into ``directory``, verifying its sha256.

    The file only appears under its final name once the digest matched.

    Raises:
        DigestMismatch: If the downloaded bytes do not match ``zip_digest``.
        UpstreamFailure: On transport or status errors.
    """
    try:
        _algorithm, expected = parse_digest(release.zip_digest)
    except ValueError as exc:
        raise DigestMismatch(release.url, release.zip_digest, "") from exc
    if cancellation is not None:
        cancellation.check(f"GET {release.url}")
    target = os.path.join(directory, archive_filename(release))
    fd, tmp_path = tempfile.mkstemp(prefix="." + release.name.replace("/", "-"), dir=directory)
    logger.info("downloading: %s", release.url)
    try:
        sha = hashlib.sha256()
        with os.fdopen(fd, "wb") as f:
            try:
                with session.get(release.url, stream=True) as response:
                    if response.status_code != 200:
                        raise UpstreamFailure(
                            "download", f"received status code {response.status_code}", url=release.url
                        )
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if cancellation is not None:
                            cancellation.check(f"GET {release.url}")
                        sha.update(chunk)
                        f.write(chunk)
            except requests.RequestException as exc:
                raise UpstreamFailure("download", str(exc), url=release.url) from exc
        actual = sha.hexdigest()
        if actual != expected:
            raise DigestMismatch(release.url, expected, actual)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, target)
    except OSError as exc:
        raise PluginIOError(target, exc.strerror or str(exc)) from exc
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
    return target


def download_plugin_archives(
    releases: Sequence[PluginRelease],
    directory: str,
    session: requests.Session,
    *,
    cancellation: Optional[Cancellation] = None,
) -> List[str]:
    """Download every archive of ``releases`` that is not already present.

    Returns:
        Paths of the archives that were downloaded.
    """
    os.makedirs(directory, exist_ok=True)
    downloaded = []
    for release in releases:
        if has_matching_archive(release, directory):
            logger.info("already downloaded: %s", archive_filename(release))
            continue
        downloaded.append(download_archive(release, directory, session, cancellation=cancellation))
    return downloaded
