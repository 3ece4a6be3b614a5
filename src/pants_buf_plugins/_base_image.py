"""Catalog of canonical base images in ``.github/docker`` (no Pants dependencies).

Every ``Dockerfile*`` in the catalog directory names one base image and its
latest tag on its ``FROM`` line. The files are kept current by dependabot,
and the materializer uses them to bump base images in new plugin versions.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from pants_buf_plugins._exceptions import (
    DuplicateBaseImage,
    DuplicateDistrolessFamily,
    MalformedManifest,
    PluginIOError,
)

logger = logging.getLogger(__name__)

DISTROLESS_PREFIX = "gcr.io/distroless/"

_DIGITS = re.compile(r"\d")


def distroless_family_name(image_name: str) -> str:
    """Return a distroless image name with all digits removed.

    Returns "" for non-distroless images and for names without digits::

        gcr.io/distroless/java17-debian11 -> gcr.io/distroless/java-debian
        gcr.io/distroless/static          -> ""
    """
    if not image_name.startswith(DISTROLESS_PREFIX) or not _DIGITS.search(image_name):
        return ""
    return _DIGITS.sub("", image_name)


def split_image_reference(image: str) -> Tuple[str, str]:
    """Split ``name[:tag][@digest]`` into ``(name, tag)``.

    A ``:`` before the last ``/`` belongs to a registry port, not a tag.
    """
    image = image.split("@", 1)[0]
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1 :]
    return image, ""


def _from_image(line: str) -> Optional[str]:
    """Return the image token of a ``FROM`` line, or None for other lines."""
    fields = line.split()
    if len(fields) < 2 or fields[0].lower() != "from":
        return None
    for token in fields[1:]:
        if not token.startswith("--"):
            return token
    return ""


def parse_base_image_content(content: str, path: str) -> Tuple[str, str]:
    """Return ``(image_name, tag)`` from the first ``FROM`` line of ``content``.

    Raises:
        MalformedManifest: If there is no usable ``FROM`` line.
    """
    for line in content.splitlines():
        image = _from_image(line.strip())
        if image is None:
            continue
        if not image:
            raise MalformedManifest(f"missing image in FROM: {line.strip()!r}", path=path)
        name, tag = split_image_reference(image)
        if not tag:
            raise MalformedManifest(f"invalid FROM line: {line.strip()!r}", path=path)
        return name, tag
    raise MalformedManifest("failed to detect base image", path=path)


def parse_base_image(path: str) -> Tuple[str, str]:
    try:
        with open(path, encoding="utf-8") as f:
            content = f.read()
    except OSError as exc:
        raise PluginIOError(path, exc.strerror or str(exc)) from exc
    return parse_base_image_content(content, path)


@dataclass(frozen=True)
class BaseImages:
    """Latest tags of the tracked base images."""

    latest_versions: Dict[str, str] = field(default_factory=dict)
    distroless_families: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, directory: str) -> "BaseImages":
        """Read every ``Dockerfile*`` file in ``directory``.

        Raises:
            DuplicateBaseImage: If two files declare the same image.
            DuplicateDistrolessFamily: If two distroless images share a family.
        """
        try:
            entries = sorted(os.listdir(directory))
        except OSError as exc:
            raise PluginIOError(directory, exc.strerror or str(exc)) from exc
        contents: Dict[str, str] = {}
        for entry in entries:
            path = os.path.join(directory, entry)
            if not entry.startswith("Dockerfile") or os.path.isdir(path):
                continue
            try:
                with open(path, encoding="utf-8") as f:
                    contents[path] = f.read()
            except OSError as exc:
                raise PluginIOError(path, exc.strerror or str(exc)) from exc
        images = cls.from_contents(contents)
        logger.debug("loaded %d base images from %s", len(images.latest_versions), directory)
        return images

    @classmethod
    def from_contents(cls, contents: Mapping[str, str]) -> "BaseImages":
        """Build the catalog from ``{path: content}`` of ``Dockerfile*`` files."""
        latest: Dict[str, str] = {}
        families: Dict[str, str] = {}
        for path in sorted(contents, key=os.path.basename):
            if not os.path.basename(path).startswith("Dockerfile"):
                continue
            name, tag = parse_base_image_content(contents[path], path)
            if name in latest:
                raise DuplicateBaseImage(name)
            latest[name] = tag
            family = distroless_family_name(name)
            if family:
                if family in families:
                    raise DuplicateDistrolessFamily(family)
                families[family] = name
        return cls(latest_versions=latest, distroless_families=families)

    def _canonical_name(self, image_name: str) -> str:
        family = distroless_family_name(image_name)
        if family:
            return self.distroless_families.get(family, "")
        return image_name

    def image_name_and_version(self, image_name: str) -> str:
        """Return ``<canonical name>:<latest tag>``, or "" if untracked."""
        canonical = self._canonical_name(image_name)
        tag = self.latest_versions.get(canonical)
        if tag is None:
            return ""
        return f"{canonical}:{tag}"

    def image_version(self, image_name: str) -> str:
        """Return the latest tag for ``image_name``, or "" if untracked."""
        return self.latest_versions.get(self._canonical_name(image_name), "")


def find_base_image_dir(start: str) -> str:
    """Walk up from ``start`` until a ``.github/docker`` directory is found.

    Raises:
        PluginIOError: If the filesystem root is reached first.
    """
    current = os.path.abspath(start)
    while True:
        candidate = os.path.join(current, ".github", "docker")
        if os.path.isdir(candidate):
            return candidate
        parent = os.path.dirname(current)
        if parent == current:
            raise PluginIOError(start, "failed to find .github/docker directory")
        current = parent


def parse_dockerfile_build_stages(content: str) -> List[str]:
    """Return the names of ``FROM ... AS <stage>`` build stages in order."""
    stages = []
    for line in content.splitlines():
        fields = line.split()
        if len(fields) < 4 or fields[0].lower() != "from":
            continue
        for i, token in enumerate(fields[1:-1], start=1):
            if token.lower() == "as":
                stages.append(fields[i + 1])
                break
    return stages
