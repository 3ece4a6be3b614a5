"""GitHub releases API client (no Pants dependencies).

Only the handful of endpoints the release flow needs are wrapped. A missing
release or asset raises :class:`ReleaseNotFound`; any other non-2xx answer
raises :class:`UpstreamFailure`.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from pants_buf_plugins._exceptions import PluginIOError, ReleaseNotFound, UpstreamFailure
from pants_buf_plugins._minisign import PublicKey
from pants_buf_plugins._process import Cancellation
from pants_buf_plugins._releases import (
    PLUGIN_RELEASES_FILE,
    PLUGIN_RELEASES_SIGNATURE_FILE,
    PluginReleases,
    load_plugin_releases,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_OWNER = "bufbuild"
GITHUB_REPO = "plugins"
GITHUB_ACCEPT = "application/vnd.github+json"
OCTET_STREAM = "application/octet-stream"

_SOURCE = "github"


@dataclass(frozen=True)
class ReleaseAsset:
    id: int
    name: str
    url: str
    browser_download_url: str = ""
    updated_at: str = ""

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "ReleaseAsset":
        return cls(
            id=int(data["id"]),
            name=data["name"],
            url=data["url"],
            browser_download_url=data.get("browser_download_url") or "",
            updated_at=data.get("updated_at") or "",
        )


@dataclass(frozen=True)
class GitHubRelease:
    id: int
    tag_name: str
    name: str
    url: str
    upload_url: str
    draft: bool
    assets: Tuple[ReleaseAsset, ...] = ()

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "GitHubRelease":
        try:
            return cls(
                id=int(data["id"]),
                tag_name=data.get("tag_name") or "",
                name=data.get("name") or "",
                url=data.get("url") or "",
                upload_url=data.get("upload_url") or "",
                draft=bool(data.get("draft")),
                assets=tuple(ReleaseAsset.from_json(a) for a in data.get("assets") or []),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamFailure(_SOURCE, f"unexpected release payload: {exc}") from exc

    def asset(self, name: str) -> ReleaseAsset:
        for asset in self.assets:
            if asset.name == name:
                return asset
        raise ReleaseNotFound(f"{self.tag_name or self.id}: asset {name}")


class GitHubReleaseClient:
    """Releases of one ``owner/repo``."""

    def __init__(
        self,
        session: requests.Session,
        owner: str,
        repo: str,
        *,
        api_url: str = GITHUB_API_URL,
        cancellation: Optional[Cancellation] = None,
    ):
        self._session = session
        self.owner = owner
        self.repo = repo
        self._api_url = api_url.rstrip("/")
        self._cancellation = cancellation or Cancellation()

    @property
    def _repo_url(self) -> str:
        return f"{self._api_url}/repos/{self.owner}/{self.repo}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        not_found: str = "",
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> requests.Response:
        self._cancellation.check(f"{method} {url}")
        request_headers = {"Accept": GITHUB_ACCEPT}
        request_headers.update(headers or {})
        try:
            response = self._session.request(method, url, headers=request_headers, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamFailure(_SOURCE, str(exc), url=url) from exc
        if response.status_code == 404 and not_found:
            raise ReleaseNotFound(not_found)
        if not 200 <= response.status_code < 300:
            raise UpstreamFailure(
                _SOURCE, f"received status code {response.status_code}", url=url
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamFailure(_SOURCE, f"invalid JSON response: {exc}", url=response.url) from exc

    # -------------------------------------------------------------------------
    # Releases
    # -------------------------------------------------------------------------

    def get_latest_release(self) -> GitHubRelease:
        """Return the latest published release.

        Raises:
            ReleaseNotFound: If the repository has no releases.
        """
        response = self._request(
            "GET", f"{self._repo_url}/releases/latest", not_found=f"{self.owner}/{self.repo} latest"
        )
        return GitHubRelease.from_json(self._json(response))

    def get_release_by_tag(self, tag: str) -> GitHubRelease:
        response = self._request(
            "GET", f"{self._repo_url}/releases/tags/{tag}", not_found=f"{self.owner}/{self.repo} {tag}"
        )
        return GitHubRelease.from_json(self._json(response))

    def create_release(
        self,
        tag: str,
        *,
        name: str = "",
        body: str = "",
        draft: bool = True,
        target_commitish: str = "",
    ) -> GitHubRelease:
        payload: Dict[str, Any] = {"tag_name": tag, "name": name or tag, "body": body, "draft": draft}
        if target_commitish:
            payload["target_commitish"] = target_commitish
        response = self._request("POST", f"{self._repo_url}/releases", json=payload)
        release = GitHubRelease.from_json(self._json(response))
        logger.info("created release %s (draft=%s)", tag, draft)
        return release

    def edit_release(self, release_id: int, **changes: Any) -> GitHubRelease:
        response = self._request("PATCH", f"{self._repo_url}/releases/{release_id}", json=changes)
        return GitHubRelease.from_json(self._json(response))

    def delete_release(self, release_id: int) -> None:
        self._request("DELETE", f"{self._repo_url}/releases/{release_id}")

    def upload_release_asset(self, release: GitHubRelease, path: str) -> ReleaseAsset:
        """Upload the file at ``path`` under its base name."""
        name = os.path.basename(path)
        # upload_url is a URI template: .../assets{?name,label}
        url = release.upload_url.split("{", 1)[0]
        if not url:
            raise UpstreamFailure(_SOURCE, f"release {release.tag_name} has no upload URL")
        logger.info("uploading: %s", name)
        try:
            with open(path, "rb") as f:
                response = self._request(
                    "POST",
                    url,
                    params={"name": name},
                    headers={"Content-Type": OCTET_STREAM},
                    data=f,
                )
        except OSError as exc:
            raise PluginIOError(path, exc.strerror or str(exc)) from exc
        return ReleaseAsset.from_json(self._json(response))

    def list_tags(self) -> List[str]:
        url: Optional[str] = f"{self._repo_url}/tags"
        params: Optional[Dict[str, Any]] = {"per_page": 100}
        tags: List[str] = []
        while url:
            response = self._request("GET", url, params=params)
            tags.extend(tag["name"] for tag in self._json(response) or [])
            url = (getattr(response, "links", None) or {}).get("next", {}).get("url")
            params = None
        return tags

    # -------------------------------------------------------------------------
    # Assets
    # -------------------------------------------------------------------------

    def download_asset(self, release: GitHubRelease, name: str) -> Tuple[bytes, str]:
        """Return ``(content, updated_at)`` of the asset called ``name``.

        Raises:
            ReleaseNotFound: If the release has no such asset.
        """
        asset = release.asset(name)
        response = self._request(
            "GET",
            asset.url,
            not_found=f"{release.tag_name}: asset {name}",
            headers={"Accept": OCTET_STREAM},
        )
        return response.content, asset.updated_at

    def download_plugin_releases(
        self,
        release: GitHubRelease,
        public_key: Optional[PublicKey] = None,
        directory: Optional[str] = None,
    ) -> PluginReleases:
        """Download and verify ``plugin-releases.json`` of ``release``.

        The signature is optional unless ``public_key`` is set. When
        ``directory`` is given, both files are saved there with their
        modification time set to the asset's upload time.

        Raises:
            ReleaseNotFound: If the release has no manifest.
            SignatureMismatch: If verification fails.
        """
        manifest, manifest_updated = self.download_asset(release, PLUGIN_RELEASES_FILE)
        try:
            signature, signature_updated = self.download_asset(release, PLUGIN_RELEASES_SIGNATURE_FILE)
        except ReleaseNotFound:
            signature, signature_updated = None, ""
        releases = load_plugin_releases(manifest, signature, public_key)
        if directory is not None:
            _save(os.path.join(directory, PLUGIN_RELEASES_FILE), manifest, manifest_updated)
            if signature is not None:
                _save(
                    os.path.join(directory, PLUGIN_RELEASES_SIGNATURE_FILE),
                    signature,
                    signature_updated,
                )
        return releases


def _save(path: str, content: bytes, updated_at: str) -> None:
    directory = os.path.dirname(path) or "."
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix="." + os.path.basename(path) + "-", dir=directory)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(tmp_path, 0o644)
        if updated_at:
            mtime = parse_timestamp(updated_at).timestamp()
            os.utime(tmp_path, (mtime, mtime))
        os.replace(tmp_path, path)
    except OSError as exc:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise PluginIOError(path, exc.strerror or str(exc)) from exc
