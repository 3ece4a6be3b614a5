"""Docker CLI driver for plugin images (no Pants dependencies).

Everything here shells out to ``docker`` (and ``git`` for revision labels)
through :func:`run_command`, so every call honours the run's cancellation.
"""

from __future__ import annotations

import datetime
import json
import logging
import os
import platform
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence, Tuple

from pants_buf_plugins._base_image import parse_dockerfile_build_stages
from pants_buf_plugins._exceptions import PluginIOError, SubprocessFailure, UpstreamFailure
from pants_buf_plugins._plugin import Plugin
from pants_buf_plugins._process import Cancellation, run_command

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_ORG = "bufbuild"
REGISTRY = "ghcr.io"
IMAGE_SOURCE = "https://github.com/bufbuild/plugins"
IMAGE_VENDOR = "Buf Technologies, Inc."
DEFAULT_MAX_PARALLEL_BUILDS = 8

# Bazel-built plugins of one release share most of their build; each group
# is built serially so later builds hit the cache left by the first one.
_GROUPED_BUILDS = {
    "grpc": frozenset({"cpp", "csharp", "objc", "php", "python", "ruby"}),
    "protocolbuffers": frozenset(
        {"cpp", "csharp", "java", "kotlin", "objc", "php", "pyi", "python", "ruby"}
    ),
}


def host_arch() -> str:
    machine = platform.machine().lower()
    if machine in ("arm64", "aarch64"):
        return "arm64"
    if machine in ("x86_64", "amd64"):
        return "amd64"
    return machine


def image_repository(plugin: Plugin, org: str, arch: Optional[str] = None) -> str:
    prefix = "plugins-arm64" if (arch or host_arch()) == "arm64" else "plugins"
    return f"{org}/{prefix}-{plugin.owner}-{plugin.short_name}"


def image_name(plugin: Plugin, org: str, arch: Optional[str] = None) -> str:
    """``<org>/plugins-<owner>-<name>:<version>`` (``plugins-arm64`` on arm64)."""
    return f"{image_repository(plugin, org, arch)}:{plugin.plugin_version}"


def registry_image_name(plugin: Plugin, owner: str) -> str:
    """Name of the published image, without tag or digest."""
    return f"{REGISTRY}/{owner}/plugins-{plugin.owner}-{plugin.short_name}"


# =============================================================================
# Git
# =============================================================================


def git_commit(plugin: Plugin, *, runner=run_command, cancellation: Optional[Cancellation] = None) -> str:
    """Return the last commit touching the plugin's version directory.

    Returns "" if the directory has uncommitted changes or git fails.
    """
    version_dir = plugin.version_dir
    try:
        status = runner(
            ["git", "status", "--porcelain", version_dir], capture=True, cancellation=cancellation
        )
        if status.stdout.strip():
            return ""
        log = runner(
            ["git", "log", "-n", "1", "--pretty=%H", version_dir],
            capture=True,
            cancellation=cancellation,
        )
    except SubprocessFailure as exc:
        logger.warning("failed to calculate git commit for %s: %s", plugin, exc)
        return ""
    return log.stdout.strip()


# =============================================================================
# Build / push
# =============================================================================


def build_labels(
    plugin: Plugin,
    *,
    created: Optional[datetime.datetime] = None,
    revision: str = "",
) -> List[str]:
    created = created or datetime.datetime.now(datetime.timezone.utc)
    labels = {
        "build.buf.plugins.config.owner": plugin.owner,
        "build.buf.plugins.config.name": plugin.short_name,
        "build.buf.plugins.config.version": plugin.plugin_version,
        "org.opencontainers.image.source": IMAGE_SOURCE,
        "org.opencontainers.image.created": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "org.opencontainers.image.description": plugin.description,
        "org.opencontainers.image.licenses": plugin.spdx_license_id,
        "org.opencontainers.image.vendor": IMAGE_VENDOR,
    }
    if revision:
        labels["org.opencontainers.image.revision"] = revision
    args: List[str] = []
    for key, value in labels.items():
        args += ["--label", f"{key}={value}"]
    return args


def build_plugin_image(
    plugin: Plugin,
    org: str = DEFAULT_DOCKER_ORG,
    *,
    cache_dir: str = "",
    extra_args: Sequence[str] = (),
    runner=run_command,
    cancellation: Optional[Cancellation] = None,
) -> str:
    """Build the plugin's image and return its tagged name.

    Named stages of a multi-stage Dockerfile are built and tagged first
    (``<image>-<stage>``) so they are cached independently.
    """
    context_dir = plugin.version_dir
    dockerfile = os.path.join(context_dir, "Dockerfile")
    try:
        with open(dockerfile, encoding="utf-8") as f:
            stages = parse_dockerfile_build_stages(f.read())
    except OSError as exc:
        raise PluginIOError(dockerfile, exc.strerror or str(exc)) from exc

    common = ["docker", "buildx", "build", "--load"]
    common += build_labels(plugin, revision=git_commit(plugin, runner=runner, cancellation=cancellation))
    common += ["--progress", "plain"]
    if cache_dir:
        cache_dir = os.path.abspath(cache_dir)
        os.makedirs(cache_dir, exist_ok=True)
        common += [
            "--cache-to",
            f"type=local,dest={cache_dir},mode=max,compression=zstd",
            "--cache-from",
            f"type=local,src={cache_dir}",
        ]
    common += list(extra_args)
    common += ["-f", dockerfile]

    image = image_name(plugin, org)
    for stage in stages:
        runner(
            common + ["--target", stage, "-t", f"{image}-{stage}", context_dir],
            capture=True,
            cancellation=cancellation,
        )
    runner(common + ["-t", image, context_dir], capture=True, cancellation=cancellation)
    return image


def build_group_key(plugin: Plugin) -> str:
    grouped = _GROUPED_BUILDS.get(plugin.owner)
    if grouped and plugin.short_name in grouped:
        return f"{plugin.owner}/{plugin.plugin_version}"
    return plugin.name_version


def group_builds(plugins: Sequence[Plugin]) -> Dict[str, List[Plugin]]:
    groups: Dict[str, List[Plugin]] = {}
    for plugin in plugins:
        groups.setdefault(build_group_key(plugin), []).append(plugin)
    return groups


def build_plugins(
    plugins: Sequence[Plugin],
    org: str = DEFAULT_DOCKER_ORG,
    *,
    max_parallel: int = DEFAULT_MAX_PARALLEL_BUILDS,
    cache_dir: str = "",
    extra_args: Sequence[str] = (),
    runner=run_command,
    cancellation: Optional[Cancellation] = None,
) -> List[str]:
    """Build images for ``plugins`` with at most ``max_parallel`` groups at once.

    The first failure cancels the remaining builds and is re-raised.

    Returns:
        The built image names, in input order.
    """
    if not plugins:
        return []
    cancellation = cancellation or Cancellation()
    limit = max(1, min(max_parallel, os.cpu_count() or 1, DEFAULT_MAX_PARALLEL_BUILDS))
    built: Dict[str, str] = {}

    def build_group(group: List[Plugin]) -> None:
        for plugin in group:
            logger.info("building: %s", plugin)
            start = time.monotonic()
            built[plugin.name_version] = build_plugin_image(
                plugin,
                org,
                cache_dir=cache_dir,
                extra_args=extra_args,
                runner=runner,
                cancellation=cancellation,
            )
            logger.info("built: %s in %.0fs", plugin, time.monotonic() - start)

    with ThreadPoolExecutor(max_workers=limit) as executor:
        futures = [executor.submit(build_group, group) for group in group_builds(plugins).values()]
        done, _pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [f for f in done if f.exception() is not None]
        if failed:
            cancellation.cancel()
            wait(futures)
            raise failed[0].exception()
    return [built[p.name_version] for p in plugins]


def push_plugin_image(
    plugin: Plugin,
    org: str = DEFAULT_DOCKER_ORG,
    *,
    runner=run_command,
    cancellation: Optional[Cancellation] = None,
) -> str:
    image = image_name(plugin, org)
    runner(["docker", "push", image], capture=True, cancellation=cancellation)
    logger.info("pushed plugin %s", plugin)
    return image


def pull_image(image: str, *, runner=run_command, cancellation: Optional[Cancellation] = None) -> None:
    runner(["docker", "pull", image], capture=True, cancellation=cancellation)


def tag_image(source: str, target: str, *, runner=run_command, cancellation: Optional[Cancellation] = None) -> None:
    runner(["docker", "tag", source, target], capture=True, cancellation=cancellation)


def local_image_id(image: str, *, runner=run_command, cancellation: Optional[Cancellation] = None) -> str:
    """Return the ID of a locally built image (``docker inspect``)."""
    result = runner(
        ["docker", "inspect", "--format={{.Id}}", image], capture=True, cancellation=cancellation
    )
    return result.stdout.strip()


def save_image(image: str, path: str, *, runner=run_command, cancellation: Optional[Cancellation] = None) -> None:
    """Export ``image`` as a tarball at ``path``."""
    runner(["docker", "save", image, "-o", path], capture=True, cancellation=cancellation)


# =============================================================================
# Registry lookup
# =============================================================================


def parse_manifest_inspect(output: str) -> Tuple[str, str]:
    """Return ``(manifest_digest, config_digest)`` from ``docker manifest inspect --verbose``."""
    source = "docker manifest inspect"
    try:
        doc = json.loads(output)
    except ValueError as exc:
        raise UpstreamFailure(source, f"unable to parse output: {exc}") from exc
    if not isinstance(doc, dict):
        raise UpstreamFailure(source, "expected a single-platform manifest")
    descriptor = (doc.get("Descriptor") or {}).get("digest") or ""
    if not descriptor:
        raise UpstreamFailure(source, "unable to parse descriptor digest")
    config = (((doc.get("SchemaV2Manifest") or {}).get("config")) or {}).get("digest") or ""
    if not config:
        raise UpstreamFailure(source, "unable to parse image config digest")
    return descriptor, config


def fetch_registry_image_and_image_id(
    plugin: Plugin,
    owner: str,
    *,
    runner=run_command,
    cancellation: Optional[Cancellation] = None,
) -> Optional[Tuple[str, str]]:
    """Return ``(registry_image, image_id)`` of the published image.

    ``registry_image`` is ``ghcr.io/<owner>/plugins-<owner>-<name>@<digest>``.
    Returns None when the image has not been pushed yet.
    """
    name = registry_image_name(plugin, owner)
    try:
        result = runner(
            ["docker", "manifest", "inspect", "--verbose", f"{name}:{plugin.plugin_version}"],
            capture=True,
            cancellation=cancellation,
        )
    except SubprocessFailure as exc:
        logger.debug("manifest inspect failed for %s: %s", plugin, exc)
        return None
    descriptor, config = parse_manifest_inspect(result.stdout)
    return f"{name}@{descriptor}", config
