"""New plugin version directories by copy-and-rewrite (no Pants dependencies).

A new version directory is created next to the previous one and every file
is copied across. A handful of well-known files are rewritten on the way:

* ``Dockerfile`` / ``Dockerfile.wasm``: version strings, ``FROM`` images,
  the ``# syntax=`` frontend and Bazel download URLs.
* ``build.csproj`` / ``package.json`` / ``requirements.txt``: version strings.
* ``buf.plugin.yaml``: dependency pins, then version strings.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from typing import Callable, Dict, Mapping

from pants_buf_plugins import _version
from pants_buf_plugins._base_image import BaseImages, split_image_reference
from pants_buf_plugins._exceptions import (
    AlreadyExists,
    NestedDirectory,
    NoVersions,
    PluginIOError,
)
from pants_buf_plugins._plugin import PLUGIN_YAML, parse_plugin_yaml

logger = logging.getLogger(__name__)

BAZEL_IMAGE = "gcr.io/bazel-public/bazel"
DOCKERFILE_FRONTEND_IMAGE = "docker/dockerfile"
SYNTAX_PREFIX = "# syntax=docker/dockerfile:"

_BAZEL_DOWNLOAD = re.compile(r"bazelbuild/bazel/releases/download/[^/]+/bazel-[^-]+-linux")
_TOKEN = re.compile(r"\S+")


class _Rewrite:
    """Everything a file rewriter needs to know about one version bump."""

    def __init__(
        self,
        previous_version: str,
        new_version: str,
        base_images: BaseImages,
        latest_versions: Mapping[str, str],
    ):
        self.previous = _version.strip_v(previous_version)
        self.new = _version.strip_v(new_version)
        self.base_images = base_images
        self.latest_versions = latest_versions

    def substitute(self, text: str) -> str:
        return text.replace(self.previous, self.new)


# =============================================================================
# Rewriters
# =============================================================================


def rewrite_from_line(line: str, base_images: BaseImages) -> str:
    """Swap the image of a ``FROM`` line for the catalog's latest, if tracked.

    Only the image token changes. Flags, stage names and whitespace are kept.
    """
    tokens = list(_TOKEN.finditer(line))
    if len(tokens) < 2 or tokens[0].group().lower() != "from":
        return line
    for token in tokens[1:]:
        if token.group().startswith("--"):
            continue
        name, _tag = split_image_reference(token.group())
        replacement = base_images.image_name_and_version(name) if name else ""
        if not replacement:
            return line
        return line[: token.start()] + replacement + line[token.end() :]
    return line


def rewrite_dockerfile(text: str, rewrite: _Rewrite) -> str:
    bazel_version = rewrite.base_images.image_version(BAZEL_IMAGE)
    frontend = rewrite.base_images.image_name_and_version(DOCKERFILE_FRONTEND_IMAGE)
    lines = []
    for line in text.split("\n"):
        line = rewrite.substitute(line)
        if bazel_version:
            line = _BAZEL_DOWNLOAD.sub(
                f"bazelbuild/bazel/releases/download/{bazel_version}/bazel-{bazel_version}-linux",
                line,
            )
        if line.startswith(SYNTAX_PREFIX):
            if frontend:
                line = "# syntax=" + frontend
        else:
            line = rewrite_from_line(line, rewrite.base_images)
        lines.append(line)
    return "\n".join(lines)


def rewrite_versions_only(text: str, rewrite: _Rewrite) -> str:
    return rewrite.substitute(text)


def update_plugin_deps(content: str, latest_versions: Mapping[str, str], *, path: str = PLUGIN_YAML) -> str:
    """Repoint dependency pins at the latest known version of each dependency.

    The manifest is parsed to find the pins, and each stale pin is then
    replaced in the original text so comments and key order survive.
    Pins on plugins missing from ``latest_versions`` are left alone.
    """
    plugin = parse_plugin_yaml(content, path)
    for dep in plugin.deps:
        latest = latest_versions.get(dep.qualified_name(plugin.remote))
        if latest is None:
            latest = latest_versions.get(dep.name)
        if not latest or latest == dep.version:
            continue
        new_pin = f"{dep.name}:{latest}"
        pattern = re.compile(r"(?<![\w./:-])" + re.escape(dep.plugin) + r"(?![\w.+-])")
        content, count = pattern.subn(lambda m: new_pin, content)
        if count:
            logger.info("%s: updated dependency %s -> %s", plugin.name, dep.plugin, new_pin)
    return content


def rewrite_plugin_yaml(text: str, rewrite: _Rewrite) -> str:
    return rewrite.substitute(update_plugin_deps(text, rewrite.latest_versions))


_REWRITERS: Dict[str, Callable[[str, _Rewrite], str]] = {
    "Dockerfile": rewrite_dockerfile,
    "Dockerfile.wasm": rewrite_dockerfile,
    "build.csproj": rewrite_versions_only,
    "package.json": rewrite_versions_only,
    "requirements.txt": rewrite_versions_only,
    PLUGIN_YAML: rewrite_plugin_yaml,
}


# =============================================================================
# Directory operations
# =============================================================================


def _copy_file(src: str, dest: str, rewrite: _Rewrite) -> None:
    rewriter = _REWRITERS.get(os.path.basename(src))
    try:
        if rewriter is None:
            shutil.copy2(src, dest)
            return
        with open(src, encoding="utf-8", newline="") as f:
            text = f.read()
        with open(dest, "w", encoding="utf-8", newline="") as f:
            f.write(rewriter(text, rewrite))
        shutil.copymode(src, dest)
    except OSError as exc:
        raise PluginIOError(src, exc.strerror or str(exc)) from exc


def create_plugin_dir(
    plugin_dir: str,
    previous_version: str,
    new_version: str,
    base_images: BaseImages,
    latest_versions: Mapping[str, str],
) -> str:
    """Materialize ``plugin_dir/new_version`` from ``plugin_dir/previous_version``.

    Args:
        plugin_dir: The ``<owner>/<name>`` directory holding version dirs.
        previous_version: Version directory to copy from.
        new_version: Version directory to create.
        base_images: Catalog used to bump base images.
        latest_versions: Plugin name to latest known version, used to bump
            dependency pins.

    Returns:
        Path of the new version directory.

    Raises:
        AlreadyExists: If the new version directory already exists.
        NestedDirectory: If the previous version contains a subdirectory.

    The new directory is removed again if anything fails.
    """
    source = os.path.join(plugin_dir, previous_version)
    target = os.path.join(plugin_dir, new_version)
    try:
        os.mkdir(target)
    except FileExistsError as exc:
        raise AlreadyExists(target) from exc
    except OSError as exc:
        raise PluginIOError(target, exc.strerror or str(exc)) from exc

    rewrite = _Rewrite(previous_version, new_version, base_images, latest_versions)
    try:
        for entry in sorted(os.listdir(source)):
            src = os.path.join(source, entry)
            if os.path.isdir(src):
                raise NestedDirectory(source)
            _copy_file(src, os.path.join(target, entry), rewrite)
    except BaseException:
        shutil.rmtree(target, ignore_errors=True)
        raise
    return target


def latest_version_dir(plugin_dir: str) -> str:
    """Return the highest semver-named subdirectory of ``plugin_dir``.

    Raises:
        NoVersions: If no subdirectory is a valid version.
    """
    try:
        entries = os.listdir(plugin_dir)
    except OSError as exc:
        raise PluginIOError(plugin_dir, exc.strerror or str(exc)) from exc
    versions = [
        entry
        for entry in entries
        if _version.is_valid(entry) and os.path.isdir(os.path.join(plugin_dir, entry))
    ]
    if not versions:
        raise NoVersions(plugin_dir)
    return _version.max_version(versions)
