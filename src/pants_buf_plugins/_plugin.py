"""Plugin manifest loading and discovery (no Pants dependencies).

Each plugin version lives in its own directory::

    plugins/<owner>/<name>/<version>/buf.plugin.yaml
    plugins/<owner>/<name>/<version>/Dockerfile
    plugins/<owner>/<name>/<version>/.dockerignore

The directory name must equal ``plugin_version`` and a ``.dockerignore``
must sit next to the manifest.
"""

from __future__ import annotations

import logging
import os
import posixpath
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from pants_buf_plugins import _version
from pants_buf_plugins._exceptions import MalformedManifest, PluginIOError
from pants_buf_plugins._graph import sort_by_dependency_order

logger = logging.getLogger(__name__)

PLUGIN_YAML = "buf.plugin.yaml"
DOCKERIGNORE = ".dockerignore"

_SKIPPED_DIRS = frozenset({"testdata", "vendor"})
_BASE_DIRS = frozenset({"base", "base-build"})


@dataclass(frozen=True)
class PluginIdentity:
    """``remote/owner/plugin`` split into its parts."""

    remote: str
    owner: str
    plugin: str

    def __str__(self) -> str:
        return f"{self.remote}/{self.owner}/{self.plugin}"

    @classmethod
    def parse(cls, name: str) -> "PluginIdentity":
        parts = name.split("/")
        if len(parts) != 3 or not all(parts):
            raise MalformedManifest(
                f"plugin name must be in the form remote/owner/plugin, got {name!r}"
            )
        return cls(remote=parts[0], owner=parts[1], plugin=parts[2])


@dataclass(frozen=True)
class PluginDependency:
    """A pin on another plugin, ``[remote/]owner/name:version``."""

    plugin: str
    revision: int = 0

    @property
    def name(self) -> str:
        return self.plugin.partition(":")[0]

    @property
    def version(self) -> str:
        return self.plugin.partition(":")[2]

    def qualified_name(self, remote: str) -> str:
        """Return the plugin name with the remote prefixed when it was omitted."""
        if self.name.count("/") == 1:
            return f"{remote}/{self.name}"
        return self.name

    def qualified(self, remote: str) -> str:
        return f"{self.qualified_name(remote)}:{self.version}"


def parse_dependency_pin(pin: str, *, revision: int = 0) -> PluginDependency:
    name, sep, version = pin.partition(":")
    if not sep or not name or not version:
        raise MalformedManifest(f"invalid plugin dependency: {pin!r}")
    if name.count("/") not in (1, 2):
        raise MalformedManifest(f"invalid plugin dependency name: {pin!r}")
    if not _version.is_valid(version):
        raise MalformedManifest(f"invalid plugin dependency version: {pin!r}")
    return PluginDependency(plugin=pin, revision=revision)


@dataclass(frozen=True)
class Plugin:
    """A parsed ``buf.plugin.yaml`` together with where it was found."""

    name: str
    plugin_version: str
    path: str
    relpath: str
    deps: Tuple[PluginDependency, ...] = ()
    default_opts: Tuple[str, ...] = ()
    spdx_license_id: str = ""
    license_url: str = ""
    description: str = ""
    source_url: str = ""
    registry: Optional[Mapping[str, Any]] = field(default=None, compare=False, hash=False)
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def identity(self) -> PluginIdentity:
        return PluginIdentity.parse(self.name)

    @property
    def remote(self) -> str:
        return self.identity.remote

    @property
    def owner(self) -> str:
        return self.identity.owner

    @property
    def short_name(self) -> str:
        return self.identity.plugin

    @property
    def plugin_dir(self) -> str:
        """Directory holding the version directory (``.../<owner>/<name>``)."""
        return os.path.dirname(os.path.dirname(self.path))

    @property
    def version_dir(self) -> str:
        return os.path.dirname(self.path)

    @property
    def name_version(self) -> str:
        return f"{self.name}:{self.plugin_version}"

    @property
    def release_name(self) -> str:
        """Name without the remote, as stored in the release manifest."""
        return f"{self.owner}/{self.short_name}"

    def __str__(self) -> str:
        return f"{self.release_name}:{self.plugin_version}"


def _expect_str(doc: Mapping[str, Any], key: str, path: str) -> str:
    value = doc.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MalformedManifest(f"{key} must be a string", path=path)
    return value


def _parse_deps(doc: Mapping[str, Any], path: str) -> Tuple[PluginDependency, ...]:
    raw_deps = doc.get("deps") or []
    if not isinstance(raw_deps, list):
        raise MalformedManifest("deps must be a list", path=path)
    deps: List[PluginDependency] = []
    for entry in raw_deps:
        if not isinstance(entry, dict) or not isinstance(entry.get("plugin"), str):
            raise MalformedManifest("deps entries must have a plugin key", path=path)
        revision = entry.get("revision", 0) or 0
        if not isinstance(revision, int):
            raise MalformedManifest("deps revision must be an integer", path=path)
        try:
            deps.append(parse_dependency_pin(entry["plugin"], revision=revision))
        except MalformedManifest as exc:
            raise MalformedManifest(str(exc), path=path) from exc
    return tuple(deps)


def parse_plugin_yaml(content: str | bytes, path: str, relpath: str = "") -> Plugin:
    """Parse manifest content into a :class:`Plugin` without touching disk."""
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise MalformedManifest(f"invalid YAML: {exc}", path=path) from exc
    if not isinstance(doc, dict):
        raise MalformedManifest("expected a mapping at the top level", path=path)

    name = _expect_str(doc, "name", path)
    if not name:
        raise MalformedManifest("missing required field: name", path=path)
    try:
        PluginIdentity.parse(name)
    except MalformedManifest as exc:
        raise MalformedManifest(str(exc), path=path) from exc

    plugin_version = _expect_str(doc, "plugin_version", path)
    if not plugin_version:
        raise MalformedManifest("missing required field: plugin_version", path=path)
    if not _version.is_valid(plugin_version):
        raise MalformedManifest(f"invalid plugin_version: {plugin_version!r}", path=path)

    default_opts = doc.get("default_opts") or []
    if not isinstance(default_opts, list):
        raise MalformedManifest("default_opts must be a list", path=path)

    registry = doc.get("registry")
    if registry is not None and not isinstance(registry, dict):
        raise MalformedManifest("registry must be a mapping", path=path)

    return Plugin(
        name=name,
        plugin_version=plugin_version,
        path=path,
        relpath=relpath,
        deps=_parse_deps(doc, path),
        default_opts=tuple(str(opt) for opt in default_opts),
        spdx_license_id=_expect_str(doc, "spdx_license_id", path),
        license_url=_expect_str(doc, "license_url", path),
        description=_expect_str(doc, "description", path),
        source_url=_expect_str(doc, "source_url", path),
        registry=registry,
        raw=doc,
    )


def _check_layout(plugin: Plugin, has_dockerignore: bool) -> Plugin:
    version_dir = posixpath.dirname(plugin.path)
    if posixpath.basename(version_dir) != plugin.plugin_version:
        raise MalformedManifest(
            f"directory name {posixpath.basename(version_dir)!r} does not match "
            f"plugin_version {plugin.plugin_version!r}",
            path=plugin.path,
        )
    if not has_dockerignore:
        raise MalformedManifest(f"missing {DOCKERIGNORE} next to manifest", path=plugin.path)
    return plugin


def load_plugin(path: str, basedir: str) -> Plugin:
    """Load the ``buf.plugin.yaml`` at ``path``.

    Args:
        path: Path of the manifest file.
        basedir: Walk root; ``relpath`` is computed against it.

    Raises:
        PluginIOError: If the manifest cannot be read.
        MalformedManifest: If required fields are missing or the directory
            layout does not match the manifest.
    """
    abspath = os.path.abspath(path)
    try:
        with open(abspath, "rb") as f:
            content = f.read()
    except OSError as exc:
        raise PluginIOError(abspath, exc.strerror or str(exc)) from exc

    relpath = os.path.relpath(abspath, os.path.abspath(basedir)).replace(os.sep, "/")
    plugin = parse_plugin_yaml(content, abspath.replace(os.sep, "/"), relpath)
    has_dockerignore = os.path.isfile(os.path.join(os.path.dirname(abspath), DOCKERIGNORE))
    return _check_layout(plugin, has_dockerignore)


def _walk(root: str):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in _SKIPPED_DIRS
        )
        yield dirpath, dirnames, sorted(filenames)


def find_plugins(root: str) -> List[Plugin]:
    """Return every plugin beneath ``root`` in dependency order.

    Plugins are first sorted by (name, semver) so that the dependency sort,
    which is stable, produces a deterministic result.
    """
    root = os.path.abspath(root)
    if not os.path.isdir(root):
        raise PluginIOError(root, "not a directory")
    unsorted: List[Plugin] = []
    for dirpath, _dirnames, filenames in _walk(root):
        if PLUGIN_YAML in filenames:
            unsorted.append(load_plugin(os.path.join(dirpath, PLUGIN_YAML), root))
    return _dependency_sorted(unsorted, root)


def _dependency_sorted(unsorted: List[Plugin], root: str) -> List[Plugin]:
    unsorted.sort(key=lambda p: (p.name, _version.sort_key(p.plugin_version)))
    logger.debug("found %d plugins under %s", len(unsorted), root)
    return sort_by_dependency_order(unsorted)


def _is_walked(relpath: str) -> bool:
    return not any(
        part.startswith(".") or part in _SKIPPED_DIRS for part in relpath.split("/")[:-1]
    )


def plugins_from_contents(root: str, contents: Mapping[str, bytes]) -> List[Plugin]:
    """Like :func:`find_plugins`, over file contents already read into memory.

    Args:
        root: Absolute path of the plugins root.
        contents: Absolute path to content, holding at least every
            ``buf.plugin.yaml`` and ``.dockerignore`` beneath ``root``.
    """
    root = posixpath.normpath(root.replace(os.sep, "/"))
    paths = {posixpath.normpath(p.replace(os.sep, "/")): c for p, c in contents.items()}
    unsorted: List[Plugin] = []
    for path in sorted(paths):
        if posixpath.basename(path) != PLUGIN_YAML:
            continue
        relpath = posixpath.relpath(path, root)
        if relpath.startswith("../") or not _is_walked(relpath):
            continue
        plugin = parse_plugin_yaml(paths[path], path, relpath)
        dockerignore = posixpath.join(posixpath.dirname(path), DOCKERIGNORE)
        unsorted.append(_check_layout(plugin, dockerignore in paths))
    return _dependency_sorted(unsorted, root)


def latest_plugin_versions(plugins: Sequence[Plugin]) -> Dict[str, str]:
    """Map each plugin name to its highest version among ``plugins``."""
    latest: Dict[str, str] = {}
    for plugin in plugins:
        current = latest.get(plugin.name)
        if current is None or _version.compare(current, plugin.plugin_version) < 0:
            latest[plugin.name] = plugin.plugin_version
    return latest


def get_base_dockerfiles(root: str) -> List[str]:
    """Return Dockerfiles in ``base``/``base-build`` dirs, relative to ``root``.

    Shallower files come first so that shared base images are built before
    the version-specific base images that extend them.
    """
    root = os.path.abspath(root)
    found: List[str] = []
    for dirpath, _dirnames, filenames in _walk(root):
        if os.path.basename(dirpath) not in _BASE_DIRS:
            continue
        for filename in filenames:
            if filename == "Dockerfile":
                rel = os.path.relpath(os.path.join(dirpath, filename), root)
                found.append(rel.replace(os.sep, "/"))
    found.sort(key=lambda p: (p.count("/"), p))
    return found
