"""Plugin discovery rule: buf.plugin.yaml files to dependency-ordered plugins."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Tuple

from pants.base.build_environment import get_buildroot
from pants.engine.fs import DigestContents, PathGlobs
from pants.engine.rules import Get, collect_rules, rule

from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._plugin import DOCKERIGNORE, PLUGIN_YAML, Plugin, plugins_from_contents

logger = logging.getLogger(__name__)


# =============================================================================
# Request / Result types
# =============================================================================


@dataclass(frozen=True)
class PluginsRequest:
    """Request to discover every plugin beneath a directory.

    ``root`` is relative to the build root.
    """

    root: str


@dataclass(frozen=True)
class DiscoveredPlugins:
    """Plugins found beneath ``root``, in dependency order.

    ``error`` is set instead of raising so goals can pick the exit code;
    ``usage_error`` marks errors caused by how the goal was invoked.
    """

    root: str
    plugins: Tuple[Plugin, ...] = ()
    error: str = ""
    usage_error: bool = False

    @property
    def ok(self) -> bool:
        return not self.error


def _glob(root: str, pattern: str) -> str:
    root = os.path.normpath(root)
    return pattern if root == "." else f"{root}/{pattern}"


# =============================================================================
# Rules
# =============================================================================


@rule(desc="Discover buf plugins")
async def discover_plugins(request: PluginsRequest) -> DiscoveredPlugins:
    buildroot = get_buildroot()
    root = os.path.normpath(os.path.join(buildroot, request.root))
    if not os.path.isdir(root):
        return DiscoveredPlugins(
            root=root,
            error=f"plugins directory not found: {request.root}",
            usage_error=True,
        )

    contents = await Get(
        DigestContents,
        PathGlobs(
            [
                _glob(request.root, f"**/{PLUGIN_YAML}"),
                _glob(request.root, f"**/{DOCKERIGNORE}"),
            ]
        ),
    )
    files = {os.path.join(buildroot, fc.path): fc.content for fc in contents}
    try:
        plugins = plugins_from_contents(root, files)
    except PluginReleaseError as exc:
        return DiscoveredPlugins(root=root, error=str(exc))

    logger.info("discovered %d plugins under %s", len(plugins), request.root)
    return DiscoveredPlugins(root=root, plugins=tuple(plugins))


def rules():
    return collect_rules()
