"""Release manifest: load, classify, emit and sign (no Pants dependencies).

The manifest lists every plugin release ever published::

    {"releases": [{"name": "bufbuild/connect-go", "version": "v1.1.0", ...}]}

It is rewritten in full for every release, sorted by (name, semver), and a
detached minisign signature of its exact bytes is published next to it.
"""

from __future__ import annotations

import datetime
import enum
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pants_buf_plugins import _minisign, _version
from pants_buf_plugins._archive import calculate_digest
from pants_buf_plugins._exceptions import (
    DuplicateInReleases,
    MalformedManifest,
    MalformedReleaseTag,
    PluginIOError,
    SignatureMismatch,
    UnsupportedRevision,
)
from pants_buf_plugins._graph import sort_releases_by_dependency_order, strip_remote
from pants_buf_plugins._plugin import Plugin

logger = logging.getLogger(__name__)

PLUGIN_RELEASES_FILE = "plugin-releases.json"
PLUGIN_RELEASES_SIGNATURE_FILE = PLUGIN_RELEASES_FILE + ".minisig"

# Not carried into the "latest plugins" view.
EXCLUDED_OWNERS = frozenset({"community"})
DEPRECATED_PLUGINS = frozenset(
    {
        "bufbuild/connect-es",
        "bufbuild/connect-go",
        "bufbuild/connect-kotlin",
        "bufbuild/connect-query",
        "bufbuild/connect-swift",
        "bufbuild/connect-swift-mocks",
        "bufbuild/connect-web",
    }
)

_FIELDS = (
    "name",
    "version",
    "zip_digest",
    "yaml_digest",
    "image_id",
    "registry_image",
    "release_tag",
    "url",
    "last_updated",
    "dependencies",
)
_OPTIONAL_FIELDS = frozenset({"dependencies"})


# =============================================================================
# Types
# =============================================================================


class ReleaseStatus(enum.Enum):
    """Classification of a release within one run. Never persisted."""

    EXISTING = "existing"
    NEW = "new"
    UPDATED = "updated"


def format_timestamp(value: datetime.datetime) -> str:
    """RFC3339 in UTC, truncated to seconds (``2022-11-21T12:00:00Z``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    value = value.astimezone(datetime.timezone.utc).replace(microsecond=0)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Raises:
        ValueError: If ``value`` is not RFC3339.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat only accepts up to microseconds before Python 3.11.
    if "." in text:
        head, _, rest = text.partition(".")
        digits = len(rest) - len(rest.lstrip("0123456789"))
        text = head + "." + rest[:digits][:6].ljust(6, "0") + rest[digits:]
    parsed = datetime.datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"missing timezone: {value!r}")
    return parsed.astimezone(datetime.timezone.utc)


@dataclass(frozen=True)
class PluginRelease:
    """One published ``(name, version)``."""

    name: str
    version: str
    zip_digest: str
    yaml_digest: str
    image_id: str
    registry_image: str
    release_tag: str
    url: str
    last_updated: datetime.datetime
    dependencies: Tuple[str, ...] = ()
    status: ReleaseStatus = field(default=ReleaseStatus.EXISTING, compare=False)

    @property
    def key(self) -> Tuple[str, str]:
        return self.name, self.version

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "zip_digest": self.zip_digest,
            "yaml_digest": self.yaml_digest,
            "image_id": self.image_id,
            "registry_image": self.registry_image,
            "release_tag": self.release_tag,
            "url": self.url,
            "last_updated": format_timestamp(self.last_updated),
        }
        if self.dependencies:
            data["dependencies"] = list(self.dependencies)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PluginRelease":
        """Build a release from its JSON object.

        Raises:
            MalformedManifest: On unknown, missing or mistyped fields.
        """
        if not isinstance(data, Mapping):
            raise MalformedManifest("release entries must be objects", path=PLUGIN_RELEASES_FILE)
        unknown = sorted(set(data) - set(_FIELDS))
        if unknown:
            raise MalformedManifest(
                f"unknown release fields: {', '.join(unknown)}", path=PLUGIN_RELEASES_FILE
            )
        missing = [f for f in _FIELDS if f not in data and f not in _OPTIONAL_FIELDS]
        if missing:
            raise MalformedManifest(
                f"missing release fields: {', '.join(missing)}", path=PLUGIN_RELEASES_FILE
            )
        for key in _FIELDS:
            if key in _OPTIONAL_FIELDS:
                continue
            if not isinstance(data[key], str):
                raise MalformedManifest(f"{key} must be a string", path=PLUGIN_RELEASES_FILE)
        dependencies = data.get("dependencies") or []
        if not isinstance(dependencies, list) or not all(isinstance(d, str) for d in dependencies):
            raise MalformedManifest("dependencies must be a list of strings", path=PLUGIN_RELEASES_FILE)
        try:
            last_updated = parse_timestamp(data["last_updated"])
        except ValueError as exc:
            raise MalformedManifest(
                f"invalid last_updated: {data['last_updated']!r}", path=PLUGIN_RELEASES_FILE
            ) from exc
        return cls(
            name=data["name"],
            version=data["version"],
            zip_digest=data["zip_digest"],
            yaml_digest=data["yaml_digest"],
            image_id=data["image_id"],
            registry_image=data["registry_image"],
            release_tag=data["release_tag"],
            url=data["url"],
            last_updated=last_updated,
            dependencies=tuple(dependencies),
        )


def sort_releases(releases: Iterable[PluginRelease]) -> List[PluginRelease]:
    """Sort by name, then by semantic version."""
    return sorted(releases, key=lambda r: (r.name, _version.sort_key(r.version)))


@dataclass(frozen=True)
class PluginReleases:
    """The full release history."""

    releases: Tuple[PluginRelease, ...] = ()

    @classmethod
    def load_bytes(cls, content: bytes) -> "PluginReleases":
        try:
            doc = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedManifest(f"invalid JSON: {exc}", path=PLUGIN_RELEASES_FILE) from exc
        if not isinstance(doc, dict) or not isinstance(doc.get("releases", []), list):
            raise MalformedManifest("expected {\"releases\": [...]}", path=PLUGIN_RELEASES_FILE)
        return cls(releases=tuple(PluginRelease.from_dict(r) for r in doc.get("releases") or []))

    def to_json_bytes(self, *, sort: bool = True) -> bytes:
        """Serialize releases: two-space indent, UTF-8, trailing newline.

        Releases are sorted by (name, semver) unless ``sort`` is False.
        """
        releases = sort_releases(self.releases) if sort else self.releases
        doc = {"releases": [r.to_dict() for r in releases]}
        return (json.dumps(doc, indent=2, ensure_ascii=False) + "\n").encode("utf-8")

    def index(self) -> Dict[Tuple[str, str], PluginRelease]:
        """Map ``(name, version)`` to its release.

        Raises:
            DuplicateInReleases: If a ``(name, version)`` appears twice.
        """
        by_key: Dict[Tuple[str, str], PluginRelease] = {}
        for release in self.releases:
            if release.key in by_key:
                raise DuplicateInReleases(release.name, release.version)
            by_key[release.key] = release
        return by_key


# =============================================================================
# Load / write / sign
# =============================================================================


def load_plugin_releases(
    manifest_bytes: Optional[bytes],
    signature_bytes: Optional[bytes] = None,
    public_key: Optional[_minisign.PublicKey] = None,
) -> PluginReleases:
    """Decode a published manifest, verifying it when a key is configured.

    A missing manifest is the bootstrap case and yields an empty history.

    Raises:
        SignatureMismatch: If a key is configured and the signature is
            missing or does not verify.
        MalformedManifest: If the manifest cannot be decoded.
        DuplicateInReleases: If a ``(name, version)`` appears twice.
    """
    if manifest_bytes is None:
        logger.info("no current release found")
        return PluginReleases()
    if public_key is not None:
        if signature_bytes is None:
            raise SignatureMismatch(PLUGIN_RELEASES_FILE, "missing signature")
        if not _minisign.verify(public_key, manifest_bytes, signature_bytes):
            raise SignatureMismatch(PLUGIN_RELEASES_FILE)
    releases = PluginReleases.load_bytes(manifest_bytes)
    releases.index()
    return releases


def write_plugin_releases(directory: str, releases: Sequence[PluginRelease]) -> str:
    """Write ``plugin-releases.json`` into ``directory`` atomically."""
    path = os.path.join(directory, PLUGIN_RELEASES_FILE)
    content = PluginReleases(releases=tuple(releases)).to_json_bytes()
    fd, tmp_path = tempfile.mkstemp(prefix=".plugin-releases-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except OSError as exc:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise PluginIOError(path, exc.strerror or str(exc)) from exc
    return path


def sign_plugin_releases(
    directory: str, private_key: Optional[_minisign.PrivateKey]
) -> Optional[str]:
    """Write the detached signature of the manifest in ``directory``.

    Returns:
        Path of the signature file, or None when no key is configured.
    """
    path = os.path.join(directory, PLUGIN_RELEASES_FILE)
    if private_key is None:
        logger.info("skipping signing of %s", path)
        return None
    logger.info("signing: %s", path)
    signature_path = os.path.join(directory, PLUGIN_RELEASES_SIGNATURE_FILE)
    try:
        with open(path, "rb") as f:
            content = f.read()
        with open(signature_path, "wb") as f:
            f.write(_minisign.sign(private_key, content))
    except OSError as exc:
        raise PluginIOError(path, exc.strerror or str(exc)) from exc
    return signature_path


# =============================================================================
# Classification
# =============================================================================

# resolve_image(plugin) -> (registry_image, image_id), or None if unpublished
ImageResolver = Callable[[Plugin], Optional[Tuple[str, str]]]
# create_archive(tmp_dir, plugin, registry_image, image_id) -> zip digest
ArchiveCreator = Callable[[str, Plugin, str, str], str]
# download_url(plugin, release_tag) -> url
DownloadURL = Callable[[Plugin, str], str]


def plugin_dependencies(plugin: Plugin) -> Tuple[str, ...]:
    """Sorted dependency pins of ``plugin``.

    Raises:
        UnsupportedRevision: If a pin carries a nonzero revision.
    """
    pins = []
    for dep in plugin.deps:
        if dep.revision != 0:
            raise UnsupportedRevision(plugin.name, dep.plugin, dep.revision)
        pins.append(dep.plugin)
    return tuple(sorted(pins))


def calculate_new_release_plugins(
    plugins: Sequence[Plugin],
    current: PluginReleases,
    release_name: str,
    now: datetime.datetime,
    tmp_dir: str,
    resolve_image: ImageResolver,
    create_archive: ArchiveCreator,
    download_url: DownloadURL,
) -> List[PluginRelease]:
    """Classify on-disk plugins against the current manifest.

    A plugin is new when it has no incumbent release and updated when its
    image ID or ``buf.plugin.yaml`` digest changed; both get a fresh archive.
    Unchanged plugins carry their incumbent forward with refreshed
    dependencies. Incumbents with no plugin on disk are carried forward
    untouched, since published releases are never removed.

    Args:
        plugins: On-disk plugins, in dependency order.
        current: The previously published manifest.
        release_name: Tag of the release being built.
        now: Timestamp recorded on new and updated entries.
        tmp_dir: Directory receiving archives.
        resolve_image: Looks up the published image of a plugin.
        create_archive: Writes the archive for a plugin, returning its digest.
        download_url: Computes the archive download URL.

    Returns:
        The full sorted release list, or ``[]`` if nothing is new or updated.
    """
    incumbents = current.index()
    now = now.astimezone(datetime.timezone.utc).replace(microsecond=0)
    changed: List[PluginRelease] = []
    carried: List[PluginRelease] = []
    seen = set()
    for plugin in plugins:
        yaml_digest = calculate_digest(plugin.path)
        resolved = resolve_image(plugin)
        if not resolved or not resolved[0] or not resolved[1]:
            logger.info("unable to detect registry image and image ID for plugin %s", plugin)
            continue
        registry_image, image_id = resolved
        key = (plugin.release_name, plugin.plugin_version)
        seen.add(key)
        incumbent = incumbents.get(key)
        dependencies = plugin_dependencies(plugin)
        if incumbent is not None and incumbent.image_id == image_id and incumbent.yaml_digest == yaml_digest:
            logger.info("plugin %s unchanged", plugin)
            carried.append(
                replace(incumbent, dependencies=dependencies, status=ReleaseStatus.EXISTING)
            )
            continue
        status = ReleaseStatus.NEW if incumbent is None or not incumbent.image_id else ReleaseStatus.UPDATED
        zip_digest = create_archive(tmp_dir, plugin, registry_image, image_id)
        logger.info("plugin %s %s", plugin, status.value)
        changed.append(
            PluginRelease(
                name=plugin.release_name,
                version=plugin.plugin_version,
                zip_digest=zip_digest,
                yaml_digest=yaml_digest,
                image_id=image_id,
                registry_image=registry_image,
                release_tag=release_name,
                url=download_url(plugin, release_name),
                last_updated=now,
                dependencies=dependencies,
                status=status,
            )
        )

    if not changed:
        return []
    for key, incumbent in incumbents.items():
        if key not in seen:
            carried.append(replace(incumbent, status=ReleaseStatus.EXISTING))
    return sort_releases(changed + carried)


def calculate_next_release(now: datetime.datetime, latest_tag: Optional[str]) -> str:
    """Allocate the next ``yyyyMMdd.N`` tag (UTC).

    Raises:
        MalformedReleaseTag: If today's latest tag has a non-numeric suffix.
    """
    if now.tzinfo is not None:
        now = now.astimezone(datetime.timezone.utc)
    current_date = now.strftime("%Y%m%d")
    if not latest_tag or not latest_tag.startswith(current_date + "."):
        return f"{current_date}.1"
    revision = latest_tag[len(current_date) + 1 :]
    if not (revision.isascii() and revision.isdigit()):
        raise MalformedReleaseTag(latest_tag)
    return f"{current_date}.{int(revision) + 1}"


def release_asset_url(owner: str, repo: str, tag: str, filename: str) -> str:
    return f"https://github.com/{owner}/{repo}/releases/download/{tag}/{filename}"


def _plugin_table(title: str, releases: Sequence[PluginRelease]) -> str:
    lines = [
        f"## {title}",
        "",
        "| Plugin | Version | Link |",
        "|--------|---------|------|",
    ]
    for release in releases:
        lines.append(f"| {release.name} | {release.version} | [Download]({release.url}) |")
    return "\n".join(lines) + "\n\n"


def create_release_body(
    name: str,
    releases: Sequence[PluginRelease],
    public_key: Optional[_minisign.PublicKey],
    *,
    owner: str,
    repo: str,
) -> str:
    """Render the markdown body of a GitHub release."""
    by_status: Dict[ReleaseStatus, List[PluginRelease]] = {status: [] for status in ReleaseStatus}
    for release in releases:
        by_status[release.status].append(release)
    releases_file = release_asset_url(owner, repo, name, PLUGIN_RELEASES_FILE)

    body = f"# Buf Remote Plugins Release {name}\n\n"
    if by_status[ReleaseStatus.NEW]:
        body += _plugin_table("New Plugins", by_status[ReleaseStatus.NEW])
    if by_status[ReleaseStatus.UPDATED]:
        body += _plugin_table("Updated Plugins", by_status[ReleaseStatus.UPDATED])
    if by_status[ReleaseStatus.EXISTING]:
        body += (
            "## Previously Released Plugins\n\n"
            f"The previously released plugins can be found in the "
            f"[{PLUGIN_RELEASES_FILE}]({releases_file}) file.\n"
        )
    if public_key is not None:
        body += (
            "## Verifying a release\n\n"
            "Releases are signed using our [minisign](https://github.com/jedisct1/minisign) public key:\n\n"
            f"```\n{public_key}\n```\n\n"
            "The release assets can be verified using this command (assuming that minisign is installed):\n\n"
            f"```\ncurl -OL {releases_file} && \\\n"
            f"  curl -OL {releases_file}.minisig && \\\n"
            f"  minisign -Vm {PLUGIN_RELEASES_FILE} -P {public_key}\n```\n"
        )
    return body


# =============================================================================
# Latest plugins view
# =============================================================================


def _is_excluded(name: str) -> bool:
    owner, sep, _short = name.partition("/")
    if not sep:
        raise MalformedManifest(f"failed to split plugin name into owner/name: {name!r}")
    return owner in EXCLUDED_OWNERS or name in DEPRECATED_PLUGINS


def latest_plugins_and_dependencies(releases: PluginReleases) -> List[PluginRelease]:
    """Latest version of each supported plugin plus everything it depends on.

    Community and deprecated plugins are left out unless another included
    plugin depends on them. The result is in dependency order.
    """
    by_pin: Dict[str, PluginRelease] = {}
    latest: Dict[str, PluginRelease] = {}
    for release in releases.releases:
        if _is_excluded(release.name):
            continue
        by_pin[f"{release.name}:{release.version}"] = release
        best = latest.get(release.name)
        if best is None or _version.compare(best.version, release.version) < 0:
            latest[release.name] = release

    included = set()
    pending = set()
    for release in latest.values():
        included.add(f"{release.name}:{release.version}")
        pending.update(strip_remote(dep) for dep in release.dependencies)
    while pending:
        next_pending = set()
        for pin in pending:
            if pin in included:
                continue
            included.add(pin)
            dependency = by_pin.get(pin)
            if dependency is not None:
                next_pending.update(strip_remote(dep) for dep in dependency.dependencies)
        pending = next_pending

    selected = [r for r in releases.releases if f"{r.name}:{r.version}" in included]
    return sort_releases_by_dependency_order(selected)
