"""Exception hierarchy for the plugin release backend."""

from __future__ import annotations

from typing import Iterable, Sequence


class PluginReleaseError(Exception):
    """Base for all plugin release errors."""


class PluginIOError(PluginReleaseError):
    """Reading or writing a file on disk failed."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class MalformedManifest(PluginReleaseError):
    """A buf.plugin.yaml (or release manifest) failed validation."""

    def __init__(self, message: str, *, path: str | None = None):
        self.path = path
        prefix = f"{path}: " if path else ""
        super().__init__(f"{prefix}{message}")


class MalformedSource(PluginReleaseError):
    """A source.yaml failed strict decoding."""

    def __init__(self, message: str, *, path: str | None = None):
        self.path = path
        prefix = f"{path}: " if path else ""
        super().__init__(f"{prefix}{message}")


class SourceFileNotFound(PluginReleaseError):
    """No source.yaml files were found beneath the plugins root."""

    def __init__(self, root: str):
        self.root = root
        super().__init__(f"source file not found: {root}")


class MalformedReleaseTag(PluginReleaseError):
    """A release tag does not match yyyyMMdd.N."""

    def __init__(self, tag: str):
        self.tag = tag
        super().__init__(f"malformed latest release tag name: {tag!r}")


class DependencyCycle(PluginReleaseError):
    """The dependency resolver made no progress in a round."""

    def __init__(self, residual: Sequence[str]):
        self.residual = tuple(residual)
        super().__init__(
            f"failed to resolve dependencies: [{', '.join(self.residual)}]"
        )


class UnsupportedRevision(PluginReleaseError):
    """A plugin dependency pins a nonzero revision."""

    def __init__(self, plugin: str, dependency: str, revision: int):
        self.plugin = plugin
        self.dependency = dependency
        self.revision = revision
        super().__init__(
            f"{plugin}: unsupported plugin dependency revision {revision} for {dependency}"
        )


class InvalidVersion(PluginReleaseError):
    """A version string is not semver with a leading 'v'."""

    def __init__(self, version: str, *, context: str | None = None):
        self.version = version
        self.context = context
        suffix = f" ({context})" if context else ""
        super().__init__(f"invalid version: {version!r}{suffix}")


class DuplicateBaseImage(PluginReleaseError):
    """Two base-image files declare the same image name."""

    def __init__(self, image: str):
        self.image = image
        super().__init__(f"found duplicate dockerfiles for image {image!r}")


class DuplicateDistrolessFamily(PluginReleaseError):
    """Two distroless base images collapse to the same family name."""

    def __init__(self, family: str):
        self.family = family
        super().__init__(f"found duplicate distroless dockerfiles for image {family!r}")


class NestedDirectory(PluginReleaseError):
    """A plugin version directory contains a subdirectory."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"failed to copy directory, expecting files only: {path}")


class AlreadyExists(PluginReleaseError):
    """The target version directory already exists."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"directory already exists: {path}")


class UpstreamFailure(PluginReleaseError):
    """An upstream registry request failed."""

    def __init__(self, source: str, message: str, *, url: str | None = None):
        self.source = source
        self.url = url
        location = f" retrieving {url!r}" if url else ""
        super().__init__(f"{source}: {message}{location}")


class SemverPrerelease(PluginReleaseError):
    """The upstream's latest version is a prerelease (recoverable)."""

    def __init__(self, source: str, version: str):
        self.source = source
        self.version = version
        super().__init__(f"{source}: pre-release versions are not supported: {version}")


class NoVersions(PluginReleaseError):
    """No candidate versions remained after filtering."""

    def __init__(self, where: str):
        self.where = where
        super().__init__(f"no versions found: {where}")


class SignatureMismatch(PluginReleaseError):
    """A manifest failed minisign verification."""

    def __init__(self, filename: str, message: str = "doesn't match signature"):
        self.filename = filename
        super().__init__(f"{filename}: {message}")


class DigestMismatch(PluginReleaseError):
    """A file's digest differs from the expected value."""

    def __init__(self, path: str, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"checksum mismatch for {path}: {expected!r} (expected) != {actual!r} (actual)"
        )


class SubprocessFailure(PluginReleaseError):
    """An external command exited non-zero."""

    def __init__(self, argv: Iterable[str], returncode: int, output: str = ""):
        self.argv = tuple(argv)
        self.returncode = returncode
        self.output = output
        message = f"command {' '.join(self.argv)!r} failed with exit code {returncode}"
        if output:
            message += f"\noutput:\n{output}"
        super().__init__(message)


class DuplicateInReleases(PluginReleaseError):
    """The same (name, version) appears twice in a release manifest."""

    def __init__(self, name: str, version: str):
        self.name = name
        self.version = version
        super().__init__(f"duplicate plugin discovered in releases file: {name}:{version}")


class ReleaseNotFound(PluginReleaseError):
    """The requested GitHub release (or asset) does not exist."""

    def __init__(self, what: str):
        self.what = what
        super().__init__(f"release not found: {what}")


class Cancelled(PluginReleaseError):
    """The run was cancelled before the operation completed."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"cancelled: {operation}")
