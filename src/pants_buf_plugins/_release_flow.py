"""Release and packaging flows (no Pants dependencies).

The release flow classifies on-disk plugins against the manifest of the
latest published release, archives what changed into a scratch directory,
then either publishes everything as one GitHub release or, in dry-run mode,
leaves the scratch directory behind for inspection.
"""

from __future__ import annotations

import datetime
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from pants_buf_plugins._archive import create_plugin_zip, plugin_zip_name
from pants_buf_plugins._docker import (
    DEFAULT_DOCKER_ORG,
    fetch_registry_image_and_image_id,
    image_name,
    local_image_id,
    pull_image,
    save_image,
)
from pants_buf_plugins._exceptions import PluginIOError, PluginReleaseError, ReleaseNotFound
from pants_buf_plugins._github import GitHubRelease, GitHubReleaseClient
from pants_buf_plugins._minisign import PrivateKey, PublicKey
from pants_buf_plugins._plugin import Plugin
from pants_buf_plugins._process import Cancellation, run_command
from pants_buf_plugins._releases import (
    ArchiveCreator,
    ImageResolver,
    PluginRelease,
    PluginReleases,
    ReleaseStatus,
    calculate_new_release_plugins,
    calculate_next_release,
    create_release_body,
    release_asset_url,
    sign_plugin_releases,
    write_plugin_releases,
)

logger = logging.getLogger(__name__)

RELEASE_NOTES_FILE = "RELEASE.md"


@dataclass(frozen=True)
class ReleaseOutcome:
    """What a release run produced.

    ``releases`` is empty when nothing changed since the latest release.
    ``directory`` is only set for dry runs, where the scratch directory
    is kept.
    """

    tag: str
    releases: Tuple[PluginRelease, ...] = ()
    directory: str = ""
    published: bool = False

    @property
    def changed(self) -> Tuple[PluginRelease, ...]:
        return tuple(r for r in self.releases if r.status is not ReleaseStatus.EXISTING)


# =============================================================================
# Keys
# =============================================================================


def load_signing_keys(
    private_key_path: str = "",
    public_key_path: str = "",
    password: str = "",
) -> Tuple[Optional[PrivateKey], Optional[PublicKey]]:
    """Load the minisign keys configured for a release.

    The private key is only loaded when both its path and password are set.
    Without an explicit public key, the private key's public half is used.
    """
    private_key = None
    if private_key_path and password:
        private_key = PrivateKey.from_file(private_key_path, password)
    elif private_key_path:
        logger.info("minisign password not set, releases will not be signed")
    if public_key_path:
        public_key: Optional[PublicKey] = PublicKey.from_file(public_key_path)
    elif private_key is not None:
        public_key = private_key.public_key()
    else:
        public_key = None
    return private_key, public_key


# =============================================================================
# Collaborators
# =============================================================================


def registry_image_resolver(
    owner: str, *, runner=run_command, cancellation: Optional[Cancellation] = None
) -> ImageResolver:
    def resolve(plugin: Plugin) -> Optional[Tuple[str, str]]:
        return fetch_registry_image_and_image_id(
            plugin, owner, runner=runner, cancellation=cancellation
        )

    return resolve


def registry_archive_creator(
    *, runner=run_command, cancellation: Optional[Cancellation] = None
) -> ArchiveCreator:
    """Pull the published image, then archive it by image ID."""

    def create(tmp_dir: str, plugin: Plugin, registry_image: str, image_id: str) -> str:
        logger.info("pulling image: %s", registry_image)
        pull_image(registry_image, runner=runner, cancellation=cancellation)
        _path, digest = create_plugin_zip(
            tmp_dir,
            plugin,
            image_id,
            lambda image, path: save_image(image, path, runner=runner, cancellation=cancellation),
        )
        return digest

    return create


# =============================================================================
# Release
# =============================================================================


def latest_release(client: GitHubReleaseClient) -> Optional[GitHubRelease]:
    try:
        return client.get_latest_release()
    except ReleaseNotFound:
        logger.info("no latest release for %s/%s", client.owner, client.repo)
        return None


def publish_release(
    client: GitHubReleaseClient,
    tag: str,
    body: str,
    directory: str,
    *,
    commit: str = "",
) -> GitHubRelease:
    """Publish every file of ``directory`` as the release ``tag``.

    The release is created as a draft and only made public once every asset
    has been uploaded. A failed upload deletes the draft again.
    """
    draft = client.create_release(tag, name=tag, body=body, draft=True, target_commitish=commit)
    try:
        for name in sorted(os.listdir(directory)):
            path = os.path.join(directory, name)
            if os.path.isfile(path):
                client.upload_release_asset(draft, path)
        return client.edit_release(draft.id, draft=False)
    except PluginReleaseError:
        try:
            client.delete_release(draft.id)
        except PluginReleaseError as exc:
            logger.warning("failed to delete draft release %s: %s", tag, exc)
        raise


def run_release(
    plugins: Sequence[Plugin],
    client: GitHubReleaseClient,
    *,
    resolve_image: ImageResolver,
    create_archive: ArchiveCreator,
    private_key: Optional[PrivateKey] = None,
    public_key: Optional[PublicKey] = None,
    commit: str = "",
    dry_run: bool = False,
    now: Optional[datetime.datetime] = None,
) -> ReleaseOutcome:
    """Release every new or updated plugin of ``plugins``.

    Args:
        plugins: All on-disk plugins, in dependency order.
        client: Client of the repository releases are published to.
        resolve_image: Looks up the published image of a plugin.
        create_archive: Writes the archive for a plugin, returning its digest.
        private_key: Signs the manifest when set.
        public_key: Verifies the previous manifest when set.
        commit: Commit the release tag points at.
        dry_run: Keep the scratch directory and write the release notes
            into it instead of publishing.
        now: Release time, defaults to the current UTC time.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    latest = latest_release(client)
    current = PluginReleases()
    if latest is not None:
        current = client.download_plugin_releases(latest, public_key)
    tag = calculate_next_release(now, latest.tag_name if latest else None)

    tmp_dir = tempfile.mkdtemp(prefix="plugins-release-")
    keep = dry_run
    try:
        releases = calculate_new_release_plugins(
            plugins,
            current,
            tag,
            now,
            tmp_dir,
            resolve_image,
            create_archive,
            lambda plugin, release_tag: release_asset_url(
                client.owner, client.repo, release_tag, plugin_zip_name(plugin)
            ),
        )
        if not releases:
            logger.info("no changes to plugins since %s", latest.tag_name if latest else "the start")
            keep = False
            return ReleaseOutcome(tag=tag)

        write_plugin_releases(tmp_dir, releases)
        sign_plugin_releases(tmp_dir, private_key)
        body = create_release_body(
            tag,
            releases,
            private_key.public_key() if private_key is not None else None,
            owner=client.owner,
            repo=client.repo,
        )
        if dry_run:
            notes = os.path.join(tmp_dir, RELEASE_NOTES_FILE)
            try:
                with open(notes, "w", encoding="utf-8") as f:
                    f.write(body)
            except OSError as exc:
                raise PluginIOError(notes, exc.strerror or str(exc)) from exc
            logger.info("skipping GitHub release creation in dry-run mode, output in %s", tmp_dir)
            return ReleaseOutcome(tag=tag, releases=tuple(releases), directory=tmp_dir)

        publish_release(client, tag, body, tmp_dir, commit=commit)
        logger.info("published release %s", tag)
        return ReleaseOutcome(tag=tag, releases=tuple(releases), published=True)
    except BaseException:
        if keep:
            logger.warning("release failed, partial output kept in %s", tmp_dir)
        raise
    finally:
        if not keep:
            shutil.rmtree(tmp_dir, ignore_errors=True)


# =============================================================================
# Local packaging
# =============================================================================


def package_plugins(
    plugins: Sequence[Plugin],
    out_dir: str,
    org: str = DEFAULT_DOCKER_ORG,
    *,
    runner=run_command,
    cancellation: Optional[Cancellation] = None,
) -> List[Tuple[str, str]]:
    """Archive the locally built image of each plugin into ``out_dir``.

    Returns:
        ``(zip_path, digest)`` per plugin, in input order.
    """
    os.makedirs(out_dir, exist_ok=True)
    created = []
    for plugin in plugins:
        image_id = local_image_id(image_name(plugin, org), runner=runner, cancellation=cancellation)
        created.append(
            create_plugin_zip(
                out_dir,
                plugin,
                image_id,
                lambda image, path: save_image(image, path, runner=runner, cancellation=cancellation),
            )
        )
        logger.info("created zip for plugin %s", plugin)
    return created
