"""Plugin selection by allow-list or by changed files (no Pants dependencies).

Two independent modes narrow the discovered plugins:

* ``PLUGINS`` allow-list: ``connect-go bufbuild/es:v1.2.0 grpc/go:latest``
* CI changed files: ``ANY_MODIFIED`` and ``ALL_MODIFIED_FILES``
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from pants_buf_plugins import _version
from pants_buf_plugins._exceptions import InvalidVersion
from pants_buf_plugins._plugin import Plugin, latest_plugin_versions

logger = logging.getLogger(__name__)

LATEST = "latest"

_FIELD_SEPARATOR = re.compile(r"[\s,]+")
_BASE_DIRS = ("base", "base-build")


# =============================================================================
# Allow-list mode
# =============================================================================


@dataclass(frozen=True)
class IncludePlugin:
    """One ``[owner/]name[:version]`` pattern from the allow-list."""

    name: str
    version: str = ""

    def matches(self, plugin_name: str, plugin_version: str, latest_version: str) -> bool:
        if not plugin_name.endswith("/" + self.name):
            return False
        if not self.version:
            return True
        if self.version == LATEST:
            return plugin_version == latest_version
        return self.version == plugin_version


def parse_plugins_env(value: str) -> List[IncludePlugin]:
    """Split an allow-list on whitespace or commas.

    Raises:
        InvalidVersion: If a pattern carries a version that is neither a
            valid semver nor ``latest``.
    """
    includes: List[IncludePlugin] = []
    for entry in _FIELD_SEPARATOR.split(value.strip()):
        if not entry:
            continue
        name, sep, version = entry.partition(":")
        if sep:
            if version != LATEST and not _version.is_valid(version):
                raise InvalidVersion(version, context=entry)
            includes.append(IncludePlugin(name=name, version=version))
        else:
            includes.append(IncludePlugin(name=name))
    return includes


def filter_by_plugins_env(plugins: Sequence[Plugin], value: str) -> List[Plugin]:
    """Return the plugins matched by a ``PLUGINS`` value.

    An empty value selects nothing and ``all`` (any case) selects everything.
    Input order is preserved.
    """
    value = value.strip()
    if not value:
        return []
    if value.lower() == "all":
        return list(plugins)
    includes = parse_plugins_env(value)
    latest = latest_plugin_versions(plugins)
    selected: List[Plugin] = []
    for plugin in plugins:
        if any(
            include.matches(plugin.name, plugin.plugin_version, latest[plugin.name])
            for include in includes
        ):
            logger.info("including plugin: %s", plugin.relpath)
            selected.append(plugin)
    return selected


def format_plugins_env(plugins: Sequence[Plugin]) -> str:
    """Render plugins as a ``PLUGINS`` value (``owner/name:version ...``)."""
    return " ".join(f"{p.release_name}:{p.plugin_version}" for p in plugins)


# =============================================================================
# Changed-files mode
# =============================================================================


def parse_changed_files_env(
    any_modified: Optional[str], all_modified_files: Optional[str]
) -> Tuple[Optional[bool], List[str]]:
    """Parse the CI signals into ``(any_modified, modified_files)``.

    An unset or empty ``ANY_MODIFIED`` yields None, meaning no signal.

    Raises:
        ValueError: If ``ANY_MODIFIED`` is not a boolean string.
    """
    flag: Optional[bool] = None
    if any_modified is not None and any_modified.strip():
        normalized = any_modified.strip().lower()
        if normalized in ("1", "t", "true", "yes"):
            flag = True
        elif normalized in ("0", "f", "false", "no"):
            flag = False
        else:
            raise ValueError(f"invalid ANY_MODIFIED value: {any_modified!r}")
    files = [f for f in _FIELD_SEPARATOR.split(all_modified_files or "") if f]
    return flag, files


def _includes_all(path: str) -> bool:
    if path == "Makefile":
        return True
    return path.startswith("tests/") and (path.endswith(".go") or path.endswith(".bin.gz"))


def _changed_dir(path: str) -> str:
    directory = posixpath.dirname(path)
    if posixpath.basename(directory) in _BASE_DIRS:
        directory = posixpath.dirname(directory)
    return directory


def _is_within(path: str, directory: str) -> bool:
    return path == directory or path.startswith(directory + "/")


def filter_by_changed_files(
    plugins: Sequence[Plugin],
    any_modified: Optional[bool],
    modified_files: Sequence[str],
    *,
    base: str = "",
) -> List[Plugin]:
    """Return the plugins affected by a set of modified files.

    Args:
        plugins: Candidate plugins.
        any_modified: The CI "any modified" signal. None selects everything.
        modified_files: Repository-relative paths of modified files.
        base: Repository-relative path of the directory plugins were
            discovered from, so their ``relpath`` can be compared against
            repository-relative paths.
    """
    if any_modified is None:
        return list(plugins)
    if not any_modified:
        return []
    if any(_includes_all(path) for path in modified_files):
        logger.info("including all plugins: shared test or build files changed")
        return list(plugins)

    base = posixpath.normpath(base).strip("/") if base else ""
    if base == ".":
        base = ""
    changed_dirs = []
    for path in modified_files:
        directory = _changed_dir(path[2:] if path.startswith("./") else path)
        if directory and directory != ".":
            changed_dirs.append(directory)

    selected: List[Plugin] = []
    for plugin in plugins:
        repo_relpath = posixpath.join(base, plugin.relpath) if base else plugin.relpath
        testdata_dir = f"tests/testdata/{plugin.name}/{plugin.plugin_version}"
        if any(
            _is_within(repo_relpath, directory) or _is_within(directory, testdata_dir)
            for directory in changed_dirs
        ):
            logger.info("including plugin: %s", plugin.relpath)
            selected.append(plugin)
    return selected
