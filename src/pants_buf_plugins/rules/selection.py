"""Plugin selection rule: narrow discovered plugins by PLUGINS or changed files."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from pants.engine.rules import Get, collect_rules, rule

from pants_buf_plugins._exceptions import PluginReleaseError
from pants_buf_plugins._plugin import Plugin
from pants_buf_plugins._selection import (
    filter_by_changed_files,
    filter_by_plugins_env,
    parse_changed_files_env,
)
from pants_buf_plugins.rules.discovery import DiscoveredPlugins, PluginsRequest

logger = logging.getLogger(__name__)


# =============================================================================
# Request / Result types
# =============================================================================


@dataclass(frozen=True)
class SelectedPluginsRequest:
    """Request to select plugins beneath ``root``.

    With ``changed_files`` set, selection follows the CI signals
    ``any_modified``/``all_modified_files``; otherwise it follows the
    ``plugins`` allow-list.
    """

    root: str
    plugins: str = "all"
    changed_files: bool = False
    any_modified: Optional[str] = None
    all_modified_files: Optional[str] = None


@dataclass(frozen=True)
class SelectedPlugins:
    """Selected plugins, in dependency order."""

    root: str
    plugins: Tuple[Plugin, ...] = ()
    error: str = ""
    usage_error: bool = False

    @property
    def ok(self) -> bool:
        return not self.error


# =============================================================================
# Rules
# =============================================================================


@rule(desc="Select buf plugins")
async def select_plugins(request: SelectedPluginsRequest) -> SelectedPlugins:
    discovered = await Get(DiscoveredPlugins, PluginsRequest(request.root))
    if not discovered.ok:
        return SelectedPlugins(
            root=discovered.root,
            error=discovered.error,
            usage_error=discovered.usage_error,
        )

    if request.changed_files:
        try:
            any_modified, modified_files = parse_changed_files_env(
                request.any_modified, request.all_modified_files
            )
        except ValueError as exc:
            return SelectedPlugins(root=discovered.root, error=str(exc), usage_error=True)
        selected = filter_by_changed_files(
            discovered.plugins, any_modified, modified_files, base=request.root
        )
    else:
        try:
            selected = filter_by_plugins_env(discovered.plugins, request.plugins)
        except PluginReleaseError as exc:
            return SelectedPlugins(
                root=discovered.root,
                error=f"failed to filter plugins by PLUGINS: {exc}",
                usage_error=True,
            )

    logger.info("selected %d of %d plugins", len(selected), len(discovered.plugins))
    return SelectedPlugins(root=discovered.root, plugins=tuple(selected))


def rules():
    return collect_rules()
