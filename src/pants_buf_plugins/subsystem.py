"""Global buf plugin release configuration subsystem."""

from __future__ import annotations

import os

from pants.option.option_types import IntOption, StrOption
from pants.option.subsystem import Subsystem

from pants_buf_plugins._config import DOCKER_ORG_ENV, first_set


class PluginReleaseSubsystem(Subsystem):
    """Global configuration for the buf plugin release pipeline."""

    options_scope = "buf-plugins"
    help = "Configuration for discovering, building and releasing buf plugins."

    plugins_dir = StrOption(
        default="plugins",
        help="Directory holding <owner>/<name>/<version>/buf.plugin.yaml, relative to the build root.",
    )

    docker_org = StrOption(
        default="",
        help="Docker organization for built images. Can also be set via DOCKER_ORG env var (default: bufbuild).",
    )

    github_owner = StrOption(
        default="bufbuild",
        help="Owner of the ghcr.io packages the published images live in.",
    )

    github_release_owner = StrOption(
        default="bufbuild",
        help="Owner of the GitHub repository releases are published to.",
    )

    github_repo = StrOption(
        default="plugins",
        help="GitHub repository releases are published to.",
    )

    minisign_private_key = StrOption(
        default="",
        help=(
            "Path to the minisign private key used to sign plugin-releases.json. "
            "The password is read from MINISIGN_PRIVATE_KEY_PASSWORD."
        ),
    )

    minisign_public_key = StrOption(
        default="",
        help="Path to the minisign public key used to verify plugin-releases.json.",
    )

    build_cache_dir = StrOption(
        default="",
        help="Local buildx cache directory. Empty disables the local cache.",
    )

    max_parallel_builds = IntOption(
        default=8,
        help="Maximum number of plugin image groups built at once (capped at 8).",
    )

    def resolved_docker_org(self) -> str:
        """Subsystem option > DOCKER_ORG environment variable > bufbuild."""
        return first_set(self.docker_org, os.environ.get(DOCKER_ORG_ENV), default="bufbuild")
