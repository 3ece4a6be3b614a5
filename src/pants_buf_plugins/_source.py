"""Upstream source descriptors (``source.yaml``) (no Pants dependencies).

Format::

    source:
      disabled: false
      ignore_versions:
        - v1.2.3
      github:
        owner: grpc
        repository: grpc
    include_prerelease: false

Exactly one origin (``github``, ``dart_flutter``, ``goproxy``,
``npm_registry`` or ``maven``) must be present. Unknown keys fail loading.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Tuple, Union

import yaml

from pants_buf_plugins._exceptions import MalformedSource, PluginIOError, SourceFileNotFound

logger = logging.getLogger(__name__)

SOURCE_YAML = "source.yaml"

_SKIPPED_DIRS = frozenset({"cmd", "internal", "tests"})


class SourceKind(enum.Enum):
    GITHUB = "github"
    DART_FLUTTER = "dart_flutter"
    GOPROXY = "goproxy"
    NPM_REGISTRY = "npm_registry"
    MAVEN = "maven"


@dataclass(frozen=True)
class GitHubSource:
    owner: str
    repository: str

    @property
    def cache_key(self) -> str:
        return f"{self.owner}-{self.repository}"


@dataclass(frozen=True)
class DartFlutterSource:
    name: str

    @property
    def cache_key(self) -> str:
        return self.name


@dataclass(frozen=True)
class GoProxySource:
    name: str

    @property
    def cache_key(self) -> str:
        return self.name


@dataclass(frozen=True)
class NpmRegistrySource:
    name: str

    @property
    def cache_key(self) -> str:
        return self.name


@dataclass(frozen=True)
class MavenSource:
    group: str
    name: str

    @property
    def cache_key(self) -> str:
        return f"{self.group}-{self.name}"


Origin = Union[GitHubSource, DartFlutterSource, GoProxySource, NpmRegistrySource, MavenSource]

# kind -> (origin class, required coordinate fields)
_ORIGINS: Dict[SourceKind, Tuple[type, Tuple[str, ...]]] = {
    SourceKind.GITHUB: (GitHubSource, ("owner", "repository")),
    SourceKind.DART_FLUTTER: (DartFlutterSource, ("name",)),
    SourceKind.GOPROXY: (GoProxySource, ("name",)),
    SourceKind.NPM_REGISTRY: (NpmRegistrySource, ("name",)),
    SourceKind.MAVEN: (MavenSource, ("group", "name")),
}

# Origins whose upstream reports a single latest version.
_NO_IGNORE_VERSIONS = frozenset({SourceKind.GOPROXY, SourceKind.NPM_REGISTRY})

_TOP_LEVEL_KEYS = frozenset({"source", "include_prerelease"})
_SOURCE_KEYS = frozenset({"disabled", "ignore_versions"} | {k.value for k in SourceKind})


@dataclass(frozen=True)
class SourceConfig:
    """A loaded ``source.yaml``."""

    filename: str
    kind: SourceKind
    origin: Origin
    disabled: bool = False
    include_prerelease: bool = False
    ignore_versions: Tuple[str, ...] = ()

    @property
    def cache_key(self) -> str:
        """Key shared by every descriptor that resolves to the same answer."""
        key = f"{self.kind.value}-{self.origin.cache_key}-{str(self.include_prerelease).lower()}"
        if self.ignore_versions:
            key += "-" + ",".join(sorted(self.ignore_versions))
        return key

    @property
    def plugin_dir(self) -> str:
        return os.path.dirname(self.filename)


def _check_keys(doc: Mapping[str, Any], allowed: frozenset, where: str, filename: str) -> None:
    unknown = sorted(set(doc) - allowed)
    if unknown:
        raise MalformedSource(f"unknown field(s) in {where}: {', '.join(map(str, unknown))}", path=filename)


def _expect_bool(value: Any, name: str, filename: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise MalformedSource(f"{name} must be a boolean", path=filename)
    return value


def parse_source_config(text: Union[str, bytes], filename: str) -> SourceConfig:
    """Decode ``source.yaml`` content with strict field checking.

    Raises:
        MalformedSource: On invalid YAML, unknown keys, missing or duplicate
            origins, missing coordinates or mistyped flags.
    """
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MalformedSource(f"invalid YAML: {exc}", path=filename) from exc
    if not isinstance(doc, dict):
        raise MalformedSource("expected a mapping at the top level", path=filename)
    _check_keys(doc, _TOP_LEVEL_KEYS, "source file", filename)

    source = doc.get("source")
    if not isinstance(source, dict):
        raise MalformedSource("missing source section", path=filename)
    _check_keys(source, _SOURCE_KEYS, "source", filename)

    kinds = [kind for kind in SourceKind if kind.value in source]
    if len(kinds) != 1:
        raise MalformedSource(
            f"expected exactly one origin, found {len(kinds)}", path=filename
        )
    kind = kinds[0]
    origin_cls, required = _ORIGINS[kind]
    coordinates = source[kind.value]
    if not isinstance(coordinates, dict):
        raise MalformedSource(f"{kind.value} must be a mapping", path=filename)
    _check_keys(coordinates, frozenset(required), kind.value, filename)
    values = {}
    for field_name in required:
        value = coordinates.get(field_name)
        if not isinstance(value, str) or not value:
            raise MalformedSource(f"{kind.value}.{field_name} is required", path=filename)
        values[field_name] = value

    ignore_versions = source.get("ignore_versions") or []
    if not isinstance(ignore_versions, list) or not all(isinstance(v, str) for v in ignore_versions):
        raise MalformedSource("ignore_versions must be a list of strings", path=filename)
    if ignore_versions and kind in _NO_IGNORE_VERSIONS:
        raise MalformedSource(f"ignore_versions is not supported for {kind.value}", path=filename)

    return SourceConfig(
        filename=filename,
        kind=kind,
        origin=origin_cls(**values),
        disabled=_expect_bool(source.get("disabled"), "disabled", filename),
        include_prerelease=_expect_bool(doc.get("include_prerelease"), "include_prerelease", filename),
        ignore_versions=tuple(ignore_versions),
    )


def load_source_config(filename: str) -> SourceConfig:
    try:
        with open(filename, "rb") as f:
            content = f.read()
    except OSError as exc:
        raise PluginIOError(filename, exc.strerror or str(exc)) from exc
    return parse_source_config(content, filename)


def gather_source_configs(root: str) -> List[SourceConfig]:
    """Load every ``source.yaml`` beneath ``root`` in path order.

    Raises:
        SourceFileNotFound: If no source files exist.
    """
    if not os.path.isdir(root):
        raise PluginIOError(root, "not a directory")
    configs: List[SourceConfig] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in _SKIPPED_DIRS
        )
        if SOURCE_YAML in filenames:
            configs.append(load_source_config(os.path.join(dirpath, SOURCE_YAML)))
    if not configs:
        raise SourceFileNotFound(root)
    logger.debug("found %d source files under %s", len(configs), root)
    return configs
