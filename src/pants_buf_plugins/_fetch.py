"""Upstream version resolution for source descriptors (no Pants dependencies).

A single operation, :meth:`FetchClient.fetch`, turns a :class:`SourceConfig`
into the latest upstream version as a ``v``-prefixed semver string.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from pants_buf_plugins import _version
from pants_buf_plugins._exceptions import (
    InvalidVersion,
    NoVersions,
    SemverPrerelease,
    UpstreamFailure,
)
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins._source import (
    DartFlutterSource,
    GitHubSource,
    GoProxySource,
    MavenSource,
    NpmRegistrySource,
    SourceConfig,
    SourceKind,
)

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DART_FLUTTER_API_URL = "https://pub.dev/api/packages"
GOPROXY_URL = "https://proxy.golang.org"
NPM_REGISTRY_URL = "https://registry.npmjs.org"
MAVEN_SEARCH_URL = "https://search.maven.org/solrsearch/select"

_GITHUB_PAGE_SIZE = 100
_MAVEN_ROWS = 200


def ensure_semver_prefix(version: str, *, include_prerelease: bool = False) -> Optional[str]:
    """Return ``version`` with a ``v`` prefix if it is usable, else None.

    Prereleases are rejected unless ``include_prerelease`` is set.
    """
    if not version:
        return None
    if not version.startswith("v"):
        version = "v" + version
    if not _version.is_valid(version):
        return None
    if _version.prerelease(version) and not include_prerelease:
        return None
    return version


class FetchClient:
    """Resolves source descriptors against upstream registries.

    Results are memoized by :attr:`SourceConfig.cache_key`, so descriptors
    sharing an upstream only cause one request and always observe the same
    version.
    """

    def __init__(
        self,
        session: requests.Session,
        *,
        github_session: Optional[requests.Session] = None,
        cancellation: Optional[Cancellation] = None,
    ):
        self._session = session
        self._github_session = github_session or session
        self._cancellation = cancellation or Cancellation()
        self._cache: Dict[str, str] = {}
        self._handlers: Dict[SourceKind, Callable[[Any, SourceConfig], str]] = {
            SourceKind.GITHUB: self._fetch_github,
            SourceKind.DART_FLUTTER: self._fetch_dart_flutter,
            SourceKind.GOPROXY: self._fetch_goproxy,
            SourceKind.NPM_REGISTRY: self._fetch_npm_registry,
            SourceKind.MAVEN: self._fetch_maven,
        }

    def fetch(self, config: SourceConfig) -> str:
        """Return the latest upstream version for ``config``.

        Raises:
            SemverPrerelease: If the latest version is a prerelease and the
                descriptor does not include prereleases.
            UpstreamFailure: On transport, status or decoding errors.
            NoVersions: If nothing usable was published.
            InvalidVersion: If the upstream answer is not semver.
        """
        key = config.cache_key
        if key in self._cache:
            logger.debug("%s: using cached version %s", key, self._cache[key])
            return self._cache[key]

        raw = self._handlers[config.kind](config.origin, config)
        version = raw if raw.startswith("v") else "v" + raw
        if not _version.is_valid(version):
            raise InvalidVersion(version, context=config.kind.value)
        if _version.prerelease(version) and not config.include_prerelease:
            raise SemverPrerelease(config.kind.value, version)
        logger.info("%s: latest upstream version is %s", config.filename, version)
        self._cache[key] = version
        return version

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    def _get(
        self,
        source: str,
        url: str,
        *,
        session: Optional[requests.Session] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        self._cancellation.check(f"GET {url}")
        try:
            response = (session or self._session).get(url, params=params)
        except requests.RequestException as exc:
            raise UpstreamFailure(source, str(exc), url=url) from exc
        if response.status_code != 200:
            raise UpstreamFailure(
                source, f"received status code {response.status_code}", url=url
            )
        return response

    @staticmethod
    def _json(source: str, response: requests.Response, url: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamFailure(source, f"invalid JSON response: {exc}", url=url) from exc

    @staticmethod
    def _pick_latest(versions: Iterable[str], ignore: Iterable[str], where: str) -> str:
        ignored = set(ignore)
        candidates = [v for v in versions if v not in ignored]
        if not candidates:
            raise NoVersions(where)
        return _version.max_version(candidates)

    # -------------------------------------------------------------------------
    # Per-origin handlers
    # -------------------------------------------------------------------------

    def _fetch_github(self, origin: GitHubSource, config: SourceConfig) -> str:
        url: Optional[str] = f"{GITHUB_API_URL}/repos/{origin.owner}/{origin.repository}/tags"
        params: Optional[Dict[str, Any]] = {"per_page": _GITHUB_PAGE_SIZE}
        versions: List[str] = []
        while url:
            response = self._get("github", url, session=self._github_session, params=params)
            for tag in self._json("github", response, url) or []:
                name = tag.get("name") if isinstance(tag, dict) else None
                version = ensure_semver_prefix(
                    name or "", include_prerelease=config.include_prerelease
                )
                if version:
                    versions.append(version)
            # The next link already carries the query string.
            url = (getattr(response, "links", None) or {}).get("next", {}).get("url")
            params = None
        return self._pick_latest(
            versions, config.ignore_versions, f"github {origin.owner}/{origin.repository}"
        )

    def _fetch_dart_flutter(self, origin: DartFlutterSource, config: SourceConfig) -> str:
        url = f"{DART_FLUTTER_API_URL}/{origin.name.lstrip('/')}"
        data = self._json("dart_flutter", self._get("dart_flutter", url), url)
        if not config.ignore_versions:
            try:
                return data["latest"]["version"]
            except (KeyError, TypeError) as exc:
                raise UpstreamFailure("dart_flutter", "missing latest.version", url=url) from exc
        versions = []
        for entry in data.get("versions") or []:
            version = ensure_semver_prefix(
                entry.get("version", ""), include_prerelease=config.include_prerelease
            )
            if version:
                versions.append(version)
        return self._pick_latest(versions, config.ignore_versions, f"dart source {origin.name}")

    def _fetch_goproxy(self, origin: GoProxySource, config: SourceConfig) -> str:
        url = f"{GOPROXY_URL}/{origin.name.lstrip('/')}/@latest"
        data = self._json("goproxy", self._get("goproxy", url), url)
        version = data.get("Version") if isinstance(data, dict) else None
        if not version:
            raise UpstreamFailure("goproxy", "missing Version field", url=url)
        return version

    def _fetch_npm_registry(self, origin: NpmRegistrySource, config: SourceConfig) -> str:
        url = f"{NPM_REGISTRY_URL}/{origin.name.lstrip('/')}"
        data = self._json("npm_registry", self._get("npm_registry", url), url)
        try:
            return data["dist-tags"]["latest"]
        except (KeyError, TypeError) as exc:
            raise UpstreamFailure("npm_registry", "missing dist-tags.latest", url=url) from exc

    def _fetch_maven(self, origin: MavenSource, config: SourceConfig) -> str:
        params = {
            "q": f'g:"{origin.group}" AND a:"{origin.name}"',
            "core": "gav",
            "rows": _MAVEN_ROWS,
            "wt": "json",
        }
        data = self._json("maven", self._get("maven", MAVEN_SEARCH_URL, params=params), MAVEN_SEARCH_URL)
        docs = ((data or {}).get("response") or {}).get("docs") or []
        versions = []
        for doc in docs:
            version = ensure_semver_prefix(doc.get("v", ""))
            if version:
                versions.append(_version.canonical(version))
        return self._pick_latest(
            versions, config.ignore_versions, f"maven {origin.group}:{origin.name}"
        )
