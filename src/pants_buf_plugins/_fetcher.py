"""Fetch flow: bump plugins whose upstream published a new version.

Sources are processed in plugin dependency order so that a dependent
plugin created in the same run pins the version of its dependency that was
just created, rather than the one that existed when the run started.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

from pants_buf_plugins._base_image import BaseImages, find_base_image_dir
from pants_buf_plugins._exceptions import PluginIOError, SemverPrerelease
from pants_buf_plugins._materialize import create_plugin_dir, latest_version_dir
from pants_buf_plugins._plugin import PLUGIN_YAML, find_plugins, latest_plugin_versions, load_plugin
from pants_buf_plugins._process import Cancellation, run_command
from pants_buf_plugins._source import SourceConfig, gather_source_configs

logger = logging.getLogger(__name__)


class VersionFetcher(Protocol):
    def fetch(self, config: SourceConfig) -> str: ...


@dataclass(frozen=True)
class CreatedPlugin:
    """A version directory created by the fetch flow."""

    org: str
    name: str
    plugin_dir: str
    previous_version: str
    new_version: str

    @property
    def version_dir(self) -> str:
        return os.path.join(self.plugin_dir, self.new_version)

    @property
    def ref(self) -> str:
        return f"{self.org}/{self.name}:{self.new_version}"


def order_sources(configs: Sequence[SourceConfig], plugin_dirs: Sequence[str]) -> List[SourceConfig]:
    """Sort sources by where their plugin first appears in ``plugin_dirs``.

    Sources without a discovered plugin keep their relative order at the end.
    """
    position: Dict[str, int] = {}
    for index, plugin_dir in enumerate(plugin_dirs):
        position.setdefault(os.path.normpath(plugin_dir), index)
    last = len(position)
    return sorted(
        configs,
        key=lambda c: position.get(os.path.normpath(os.path.abspath(c.plugin_dir)), last),
    )


def run_fetch(
    root: str,
    fetcher: VersionFetcher,
    *,
    base_images: Optional[BaseImages] = None,
) -> List[CreatedPlugin]:
    """Create a new version directory for every source with a newer upstream.

    Args:
        root: Repository (or plugins) directory to scan.
        fetcher: Resolves a source descriptor to its latest upstream version.
        base_images: Base-image catalog. Loaded from the nearest
            ``.github/docker`` directory when omitted.

    Returns:
        The created directories, in the order they were created.
    """
    start = time.monotonic()
    root = os.path.abspath(root)
    if base_images is None:
        base_images = BaseImages.load(find_base_image_dir(root))
    configs = gather_source_configs(root)
    plugins = find_plugins(root)

    latest_versions = latest_plugin_versions(plugins)
    name_by_dir: Dict[str, str] = {}
    for plugin in plugins:
        name_by_dir.setdefault(os.path.normpath(plugin.plugin_dir), plugin.name)

    versions_by_key: Dict[str, str] = {}
    created: List[CreatedPlugin] = []
    for config in order_sources(configs, [p.plugin_dir for p in plugins]):
        if config.disabled:
            logger.info("skipping source: %s", config.filename)
            continue
        new_version = versions_by_key.get(config.cache_key)
        if new_version is None:
            try:
                new_version = fetcher.fetch(config)
            except SemverPrerelease as exc:
                logger.info("skipping source: %s: %s", config.filename, exc)
                continue
            versions_by_key[config.cache_key] = new_version

        plugin_dir = os.path.abspath(config.plugin_dir)
        target = os.path.join(plugin_dir, new_version)
        if os.path.exists(target):
            if not os.path.isdir(target):
                raise PluginIOError(target, "expecting directory")
            continue
        previous_version = latest_version_dir(plugin_dir)
        create_plugin_dir(plugin_dir, previous_version, new_version, base_images, latest_versions)
        logger.info("created %s/%s", plugin_dir, new_version)

        name = name_by_dir.get(os.path.normpath(plugin_dir))
        if name is None:
            name = load_plugin(os.path.join(target, PLUGIN_YAML), root).name
        latest_versions[name] = new_version
        created.append(
            CreatedPlugin(
                org=os.path.basename(os.path.dirname(plugin_dir)),
                name=os.path.basename(plugin_dir),
                plugin_dir=plugin_dir,
                previous_version=previous_version,
                new_version=new_version,
            )
        )
    logger.info("finished fetching in %.2fs", time.monotonic() - start)
    return created


# =============================================================================
# Post-processing
# =============================================================================


def post_process_created(
    created: Sequence[CreatedPlugin],
    *,
    cwd: Optional[str] = None,
    runner=run_command,
    cancellation: Optional[Cancellation] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> None:
    """Refresh lock files of created plugins and generate their test sums.

    ``go mod tidy`` runs where a ``go.mod`` was copied, ``package-lock.json``
    is recreated with ``npm install``, then ``make test`` runs once for all
    created plugins with empty plugin sums allowed.
    """
    if not created:
        return
    for plugin in created:
        version_dir = plugin.version_dir
        if os.path.isfile(os.path.join(version_dir, "go.mod")):
            logger.info("running go mod tidy for %s", plugin.ref)
            runner(["go", "mod", "tidy"], cwd=version_dir, cancellation=cancellation)
        package_lock = os.path.join(version_dir, "package-lock.json")
        if os.path.isfile(package_lock):
            os.remove(package_lock)
            logger.info("recreating package-lock.json for %s", plugin.ref)
            runner(["npm", "install"], cwd=version_dir, cancellation=cancellation)

    env = dict(os.environ if environ is None else environ)
    env["ALLOW_EMPTY_PLUGIN_SUM"] = "true"
    plugins_env = ",".join(plugin.ref for plugin in created)
    start = time.monotonic()
    logger.info("running tests for %d plugins", len(created))
    runner(
        ["make", "test", f"PLUGINS={plugins_env}"],
        cwd=cwd,
        env=env,
        cancellation=cancellation,
    )
    logger.info("finished running tests in %.2fs", time.monotonic() - start)
